"""
Application Configuration.

Pydantic Settings model for the authcore session layer.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Backend transport ---
    API_BASE_URL: str = ""
    API_APP_ID: str = "2"
    API_TIMEOUT_S: float = 10.0
    LOGOUT_TIMEOUT_S: float = 5.0

    # --- Credential rules ---
    PHONE_COUNTRY_CODE: str = "84"
    PHONE_MIN_NATIONAL_DIGITS: int = 9
    PHONE_MAX_NATIONAL_DIGITS: int = 10
    MIN_PASSWORD_LENGTH: int = 6
    OTP_CODE_LENGTH: int = 6

    # --- OTP flows ---
    OTP_RESEND_DELAY_S: int = 30
    OTP_AUTO_SUBMIT: bool = True

    # --- Token lifecycle ---
    TOKEN_REFRESH_THRESHOLD_S: int = 300  # 5 minutes before expiry
    REFRESH_MAX_FAILURES: int = 3
    REFRESH_CIRCUIT_RESET_S: float = 60.0
    REFRESH_COOLDOWN_S: float = 5.0

    # --- Reactive cache ---
    PROFILE_STALE_S: float = 300.0

    # --- Durable storage ---
    STORAGE_PATH: str = "authcore_local.db"
    STORAGE_KDF_ITERATIONS: int = 600_000
    STORAGE_SALT_PATH: str = ""  # empty -> ~/.authcore_storage_salt

    # --- Biometric ---
    BIOMETRIC_PROMPT_MESSAGE: str = "Confirm your identity to sign in"

    # --- Logging ---
    LOG_FILE: str = "authcore.log"  # empty string disables the file handler
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing.
        This validator logs a warning so operators know the session layer
        is running without a backend.
        """
        _log = logging.getLogger("authcore.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found - all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.API_BASE_URL:
            _log.warning(
                "API_BASE_URL is empty - every backend call will fail with "
                "NetworkUnavailable until it is configured."
            )

        return self

    @property
    def storage_salt_path(self) -> Path:
        """Resolved location of the per-machine storage salt file."""
        if self.STORAGE_SALT_PATH:
            return Path(self.STORAGE_SALT_PATH)
        return Path.home() / ".authcore_storage_salt"


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern so the fast path never takes the lock.

    Prefer constructor injection of ``AppConfig``; this factory serves
    modules such as the logger that are created before the service graph.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
