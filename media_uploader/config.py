"""Configuration management for media_uploader"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variable names for configuration
ENV_SETTINGS_FILE = "MEDIA_UPLOADER_SETTINGS_FILE"
ENV_AZCOPY_PATH = "MEDIA_UPLOADER_AZCOPY_PATH"
ENV_MAX_WORKERS = "MEDIA_UPLOADER_MAX_WORKERS"
ENV_SETTLING_DELAY = "MEDIA_UPLOADER_SETTLING_DELAY"
ENV_LOG_DIRECTORY = "MEDIA_UPLOADER_LOG_DIRECTORY"

CONFLICT_POLICIES = ("overwrite", "ignore", "abort")


def get_settings_file() -> Path:
    """Get the path of the user settings file, honouring the env override."""
    override = os.environ.get(ENV_SETTINGS_FILE)
    if override:
        return Path(override)
    return BASE_DIR / "settings.json"


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


class Settings:
    """Manages application settings stored in JSON format."""

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        """Singleton pattern to ensure only one settings instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. settings.json (user-saved settings)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        defaults: dict[str, Any] = {
            "azcopy_path": "/usr/local/bin/azcopy",
            "max_workers": 4,
            "settling_delay_seconds": 10.0,
            "conflict_policy": "ignore",
            "metadata_directory": "metadata",
            "log_directory": "logs",
            "folder_overrides": {},
            "display_name": "Media Uploader",
        }

        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        settings_file = get_settings_file()
        if settings_file.exists():
            with open(settings_file, encoding="utf-8") as f:
                defaults.update(json.load(f))

        env_overrides = {
            "azcopy_path": os.environ.get(ENV_AZCOPY_PATH),
            "max_workers": os.environ.get(ENV_MAX_WORKERS),
            "settling_delay_seconds": os.environ.get(ENV_SETTLING_DELAY),
            "log_directory": os.environ.get(ENV_LOG_DIRECTORY),
        }

        # Only apply non-None environment values
        for key, value in env_overrides.items():
            if value is not None:
                defaults[key] = value

        self._settings = defaults

        if not settings_file.exists():
            self._save_settings()

    def _save_settings(self) -> None:
        """Save current settings to file."""
        settings_file = get_settings_file()
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        with open(settings_file, "w", encoding="utf-8") as f:
            json.dump(self._settings, f, indent=4)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key."""
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a setting value and save to file."""
        self._settings[key] = value
        self._save_settings()

    def update(self, data: dict[str, Any]) -> None:
        """Update multiple settings at once."""
        self._settings.update(data)
        self._save_settings()

    def all(self) -> dict[str, Any]:
        """Get all settings as a dictionary."""
        return self._settings.copy()

    def reload(self) -> None:
        """Reload settings from file."""
        self._load_settings()

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def azcopy_path(self) -> str:
        """Get the absolute path of the AzCopy executable."""
        return str(self._settings.get("azcopy_path", "/usr/local/bin/azcopy"))

    @property
    def max_workers(self) -> int:
        """Get the upload worker pool size."""
        return max(1, int(self._settings.get("max_workers", 4)))

    @property
    def settling_delay_seconds(self) -> float:
        """Get the pause between a metadata upload and its data uploads."""
        return max(0.0, float(self._settings.get("settling_delay_seconds", 10.0)))

    @property
    def conflict_policy(self) -> str:
        """Get what to do when a destination already exists remotely."""
        policy = str(self._settings.get("conflict_policy", "ignore")).lower()
        return policy if policy in CONFLICT_POLICIES else "ignore"

    @property
    def metadata_directory(self) -> Path:
        """Get the directory where metadata.json files are staged."""
        return self._resolve(str(self._settings.get("metadata_directory", "metadata")))

    @property
    def log_directory(self) -> Path:
        """Get the JSONL log directory."""
        return self._resolve(str(self._settings.get("log_directory", "logs")))

    @property
    def folder_overrides(self) -> dict[str, str]:
        """Get destination folder names keyed by folder type."""
        overrides = self._settings.get("folder_overrides") or {}
        return {str(k): str(v) for k, v in overrides.items()}

    @property
    def display_name(self) -> str:
        """Get the application display name."""
        return str(self._settings.get("display_name", "Media Uploader"))


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
