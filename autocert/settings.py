"""
Certificate manager configuration settings.

Manages the ACME account, certificate directory, renewal policy and
listener configuration.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional, Literal

from pydantic import BaseModel, field_validator


logger = logging.getLogger(__name__)

# ACME directory URLs
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "./config"))
SETTINGS_FILE = CONFIG_DIR / "autocert_settings.json"


class AutocertSettings(BaseModel):
    """Certificate lifecycle configuration."""

    # Directory holding acmeAccountUrl, acmePkey.pem, cert.pem, certPkey.pem
    cert_dir: str = "./cert"

    # Domain name for the certificate (e.g., www.example.com)
    domain: str = ""

    # Let's Encrypt / ACME settings
    acme_email: str = ""
    use_staging: bool = False
    directory_url: str = ""  # Empty means derive from use_staging

    # Key generation
    key_type: Literal["ec", "rsa"] = "ec"
    account_key_size: int = 4096

    # Renewal settings
    check_interval: int = 3600  # Seconds between renewal checks
    renew_days_before_expiry: int = 30
    order_timeout: int = 90  # Seconds to wait for order finalization
    network_timeout: int = 45
    self_check: bool = False  # Probe challenge URL before answering
    corrupted_certificate_policy: Literal["reissue", "error"] = "reissue"

    # Listeners
    http_host: str = "0.0.0.0"
    http_port: int = 80
    https_host: str = "0.0.0.0"
    https_port: int = 443

    log_level: str = "INFO"

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        """Validate domain format."""
        if v:
            v = v.strip().lower()
            # Remove protocol if accidentally included
            if v.startswith("http://"):
                v = v[7:]
            elif v.startswith("https://"):
                v = v[8:]
            v = v.rstrip("/")
        return v

    @field_validator("acme_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Validate email format."""
        if v:
            v = v.strip().lower()
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v

    def get_directory_url(self) -> str:
        """ACME directory to talk to."""
        if self.directory_url:
            return self.directory_url
        return LETSENCRYPT_STAGING if self.use_staging else LETSENCRYPT_PRODUCTION

    def get_cert_dir(self) -> Path:
        return Path(self.cert_dir)


# In-memory cache of settings
_cached_settings: Optional[AutocertSettings] = None


def load_settings(path: Optional[Path] = None) -> AutocertSettings:
    """Load settings from file or return defaults."""
    global _cached_settings

    if _cached_settings is not None and path is None:
        return _cached_settings

    settings_file = path or SETTINGS_FILE
    logger.info("[TLS-SETTINGS] Loading settings from %s", settings_file)

    if settings_file.exists():
        try:
            data = json.loads(settings_file.read_text())
            _cached_settings = AutocertSettings(**data)
            logger.info(
                "[TLS-SETTINGS] Loaded settings, domain: %s, cert_dir: %s",
                _cached_settings.domain, _cached_settings.cert_dir,
            )
            return _cached_settings
        except Exception as e:
            logger.error("[TLS-SETTINGS] Failed to load settings: %s", e)

    logger.info("[TLS-SETTINGS] Using default settings (no config file found)")
    _cached_settings = AutocertSettings()
    return _cached_settings


def save_settings(settings: AutocertSettings, path: Optional[Path] = None) -> bool:
    """Save settings to file. Returns True if successful."""
    global _cached_settings

    settings_file = path or SETTINGS_FILE
    try:
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        settings_file.write_text(json.dumps(settings.model_dump(), indent=2))
        os.chmod(settings_file, 0o600)
        _cached_settings = settings
        logger.info("[TLS-SETTINGS] Settings saved to %s", settings_file)
        return True
    except (PermissionError, OSError) as e:
        logger.warning("[TLS-SETTINGS] Cannot save settings to %s: %s", settings_file, e)
        _cached_settings = settings
        return False


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.info("[TLS-SETTINGS] Settings cache cleared")


def get_settings() -> AutocertSettings:
    """Get the current settings."""
    return load_settings()
