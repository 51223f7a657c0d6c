"""AzCopy command line construction."""

from collections.abc import Sequence
from urllib.parse import quote

REDACTED = "<redacted>"


def split_credential(credential: str) -> tuple[str, str]:
    """Split a SAS URL into its container URL and its query.

    Raises:
        ValueError: If either part is missing
    """
    base, separator, query = credential.partition("?")
    if not separator or not query or "://" not in base or base.endswith("://"):
        raise ValueError("Credential is not a SAS URL with a query string")
    return base.rstrip("/"), query


def build_destination_url(credential: str, path: str) -> str:
    """Splice a destination path into a SAS URL.

    ``https://acct.blob.core.windows.net/show?sig=abc`` with ``a/b.json`` gives
    ``https://acct.blob.core.windows.net/show/a/b.json?sig=abc``.

    Raises:
        ValueError: If the credential has no query part
    """
    base, query = split_credential(credential)
    return base + "/" + quote(path.lstrip("/"), safe="/") + "?" + query


def redact_url(value: str) -> str:
    """Replace the query (the SAS signature) of a URL-looking argument."""
    if "://" not in value or "?" not in value:
        return value
    base, _, _ = value.partition("?")
    return f"{base}?{REDACTED}"


def redact_arguments(arguments: Sequence[str]) -> list[str]:
    """Arguments safe for logs and API responses."""
    return [redact_url(arg) for arg in arguments]


def metadata_upload_arguments(metadata_path: str, destination_url: str) -> list[str]:
    return ["copy", metadata_path, destination_url]


def data_upload_arguments(source_path: str, destination_url: str) -> list[str]:
    return ["copy", source_path, destination_url, "--recursive", "--put-md5"]


def remove_arguments(destination_url: str) -> list[str]:
    return ["rm", destination_url, "--recursive=true"]


def existence_check_arguments(destination_url: str) -> list[str]:
    return ["list", destination_url]
