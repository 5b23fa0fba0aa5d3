"""Expiry-based renewal policy."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from .storage import CertificateBundle, load_certificate_chain

# Renew when less than this much validity is left
RENEWAL_THRESHOLD = timedelta(days=30)


def get_certificate_expiry(cert_pem: bytes) -> datetime:
    """Get the expiry (UTC) of the leaf certificate of a PEM chain."""
    return load_certificate_chain(cert_pem)[0].not_valid_after_utc


def time_until_expiry(bundle: CertificateBundle, now: Optional[datetime] = None) -> timedelta:
    now = now or datetime.now(timezone.utc)
    return bundle.not_after - now


def should_renew(
    bundle: Optional[CertificateBundle],
    now: Optional[datetime] = None,
    threshold: timedelta = RENEWAL_THRESHOLD,
) -> bool:
    """
    Check if a certificate should be renewed.

    Args:
        bundle: The current certificate, or None if there is none
        now: Reference time (defaults to the current UTC time)
        threshold: Remaining validity below which renewal is due

    Returns:
        True if there is no certificate or it expires within the threshold
    """
    if bundle is None:
        return True
    return time_until_expiry(bundle, now) < threshold
