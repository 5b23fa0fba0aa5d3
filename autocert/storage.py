"""
Certificate storage.

Persists the certificate chain and its private key as two files in the
certificate directory and reads them back as an explicit Found / Absent
result.
"""
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization


logger = logging.getLogger(__name__)

ACCOUNT_URL_FILENAME = "acmeAccountUrl"
ACCOUNT_KEY_FILENAME = "acmePkey.pem"
CERT_FILENAME = "cert.pem"
CERT_KEY_FILENAME = "certPkey.pem"


def load_certificate_chain(chain_pem: bytes) -> list[x509.Certificate]:
    """Parse every certificate of a PEM chain, leaf first."""
    return x509.load_pem_x509_certificates(chain_pem)


@dataclass(frozen=True)
class CertificateBundle:
    """A certificate chain and the private key it was issued for."""

    private_key: bytes
    certificate_chain: bytes

    @property
    def leaf(self) -> x509.Certificate:
        return load_certificate_chain(self.certificate_chain)[0]

    @property
    def not_after(self) -> datetime:
        """Expiry of the leaf certificate (UTC, timezone-aware)."""
        return self.leaf.not_valid_after_utc


@dataclass(frozen=True)
class Found:
    bundle: CertificateBundle


@dataclass(frozen=True)
class Absent:
    # "missing": a file does not exist; "corrupted": it exists but is unusable
    reason: Literal["missing", "corrupted"] = "missing"
    detail: str = ""


CertificateLookup = Union[Found, Absent]


def _key_matches_certificate(key_pem: bytes, cert: x509.Certificate) -> bool:
    key = serialization.load_pem_private_key(key_pem, password=None)
    encoding = serialization.Encoding.DER
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    return key.public_key().public_bytes(encoding, fmt) == cert.public_key().public_bytes(encoding, fmt)


def write_file_atomic(path: Path, data: bytes, mode: int) -> None:
    """Write data to a temporary sibling of path, then rename it into place."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class CertificateStore:
    """Reads and writes the certificate/key pair of a certificate directory."""

    def cert_path(self, cert_dir: Union[str, Path]) -> Path:
        return Path(cert_dir) / CERT_FILENAME

    def key_path(self, cert_dir: Union[str, Path]) -> Path:
        return Path(cert_dir) / CERT_KEY_FILENAME

    def ensure_directory(self, cert_dir: Union[str, Path]) -> None:
        """Ensure the certificate directory exists with owner-only access."""
        path = Path(cert_dir)
        if not path.exists():
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, 0o700)

    def load(self, cert_dir: Union[str, Path]) -> CertificateLookup:
        """
        Load the certificate and key from disk.

        Returns:
            Found(bundle) if both files are present and usable, Absent otherwise
        """
        cert_path = self.cert_path(cert_dir)
        key_path = self.key_path(cert_dir)

        try:
            key_pem = key_path.read_bytes()
            cert_pem = cert_path.read_bytes()
        except FileNotFoundError as e:
            logger.debug("[TLS-STORAGE] No certificate in %s: %s", cert_dir, e)
            return Absent("missing", str(e))
        except OSError as e:
            logger.warning("[TLS-STORAGE] Failed to read certificate files: %s", e)
            return Absent("corrupted", str(e))

        try:
            chain = load_certificate_chain(cert_pem)
            if not _key_matches_certificate(key_pem, chain[0]):
                raise ValueError("private key does not match certificate")
        except (ValueError, TypeError) as e:
            logger.warning("[TLS-STORAGE] Stored certificate in %s is unusable: %s", cert_dir, e)
            return Absent("corrupted", str(e))

        return Found(CertificateBundle(private_key=key_pem, certificate_chain=cert_pem))

    def save(self, cert_dir: Union[str, Path], bundle: CertificateBundle) -> None:
        """
        Save the certificate and key to disk.

        Each file is replaced atomically, the key first.
        """
        self.ensure_directory(cert_dir)
        write_file_atomic(self.key_path(cert_dir), bundle.private_key, 0o600)
        write_file_atomic(self.cert_path(cert_dir), bundle.certificate_chain, 0o640)
        logger.info("[TLS-STORAGE] Certificate saved to %s", self.cert_path(cert_dir))

    def has_certificate(self, cert_dir: Union[str, Path]) -> bool:
        """Check if both certificate files exist."""
        return self.cert_path(cert_dir).exists() and self.key_path(cert_dir).exists()
