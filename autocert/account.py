"""
ACME account persistence.

The account is identified by a private key (acmePkey.pem) and the account
URL the CA returned at registration (acmeAccountUrl).
"""
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from josepy import JWKRSA

from .errors import ConfigurationError
from .storage import ACCOUNT_KEY_FILENAME, ACCOUNT_URL_FILENAME, write_file_atomic


logger = logging.getLogger(__name__)


def account_url_path(cert_dir: Union[str, Path]) -> Path:
    return Path(cert_dir) / ACCOUNT_URL_FILENAME


def account_key_path(cert_dir: Union[str, Path]) -> Path:
    return Path(cert_dir) / ACCOUNT_KEY_FILENAME


def read_account_url(cert_dir: Union[str, Path]) -> Optional[str]:
    """
    Read the registered ACME account URL.

    Returns:
        The account URL, or None if no account has been registered
    """
    try:
        url = account_url_path(cert_dir).read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError):
        return None
    return url or None


def write_account_url(cert_dir: Union[str, Path], account_url: str) -> None:
    path = account_url_path(cert_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    write_file_atomic(path, account_url.encode("ascii"), 0o600)
    logger.info("[TLS-ACME] Account URL saved to %s", path)


def _create_exclusive(path: Path, data: bytes, mode: int) -> None:
    """Write data to a temporary sibling, then hard-link it to path.

    Raises FileExistsError if path already exists; readers never see a
    partially written file.
    """
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.link(tmp_name, path)
    finally:
        os.unlink(tmp_name)


class AccountKeyStore:
    """Loads or creates the key identifying the ACME account."""

    def __init__(self, key_size: int = 4096):
        self.key_size = key_size
        self._lock = threading.Lock()

    def get_or_create(self, cert_dir: Union[str, Path]) -> JWKRSA:
        """
        Load the account key, creating and persisting it on first use.

        Creation is serialized in-process by a lock and across processes by
        exclusive file creation: a key written by someone else first wins.
        The key only becomes visible once fully written.
        """
        path = account_key_path(cert_dir)
        with self._lock:
            try:
                return self._load(path)
            except FileNotFoundError:
                pass

            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=self.key_size,
            )
            key_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )

            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                _create_exclusive(path, key_pem, 0o600)
            except FileExistsError:
                logger.info("[TLS-ACME] Account key created concurrently, using existing key")
                return self._load(path)

            logger.info("[TLS-ACME] Created and saved new ACME account key")
            return JWKRSA(key=private_key)

    def _load(self, path: Path) -> JWKRSA:
        key_data = path.read_bytes()
        try:
            private_key = serialization.load_pem_private_key(key_data, password=None)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Cannot load ACME account key {path}: {e}") from e
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ConfigurationError(f"ACME account key {path} is not an RSA key")
        logger.debug("[TLS-ACME] Loaded existing ACME account key")
        return JWKRSA(key=private_key)
