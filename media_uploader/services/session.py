"""Per-login session state: copy tool location, user and show credentials."""

import threading

from media_uploader.services.commands import split_credential
from media_uploader.services.errors import CredentialUnavailableError
from media_uploader.services.log_service import get_log_service


class SessionContext:
    """Credentials and tool configuration for one login session.

    Credentials are time-limited SAS URLs handed in by the authentication layer,
    one per show. They are held in memory only and dropped by ``close()``.
    """

    def __init__(self, tool_path: str, user_id: str = "") -> None:
        self.tool_path = tool_path
        self.user_id = user_id
        self._credentials: dict[str, str] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def set_credential(self, show_name: str, credential: str) -> None:
        """Store the SAS URL for a show.

        Raises:
            ValueError: If the credential is not a URL with a query string
        """
        split_credential(credential)
        with self._lock:
            self._credentials[show_name] = credential
            self._closed = False

        get_log_service().info(
            "session",
            "credential_stored",
            f"Credential stored for {show_name}",
            {"show_name": show_name, "user_id": self.user_id},
        )

    def credential_for(self, show_name: str) -> str:
        """Return the cached credential for a show.

        Raises:
            CredentialUnavailableError: If none was stored
        """
        with self._lock:
            credential = self._credentials.get(show_name)
        if not credential:
            raise CredentialUnavailableError(show_name)
        return credential

    def has_credential(self, show_name: str) -> bool:
        with self._lock:
            return show_name in self._credentials

    def shows(self) -> list[str]:
        with self._lock:
            return sorted(self._credentials)

    def close(self) -> None:
        """Forget every credential."""
        with self._lock:
            count = len(self._credentials)
            self._credentials.clear()
            self._closed = True

        get_log_service().info(
            "session",
            "session_closed",
            "Session closed",
            {"user_id": self.user_id, "credentials_cleared": count},
        )
