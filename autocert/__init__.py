"""
Automatic TLS certificate management.

Provides:
- Let's Encrypt certificate issuance via ACME HTTP-01 challenges
- On-disk certificate persistence
- Periodic renewal with in-process certificate hot-swap
"""

__version__ = "0.1.0"

from .challenges import ChallengeRegistry, HTTPChallengeServer, challenge_registry
from .errors import (
    AutocertError,
    CertificateCorruptedError,
    ConfigurationError,
    IssuanceError,
)
from .issuer import CertificateIssuer
from .manager import CertificateManager, get_certificate_and_key
from .policy import should_renew
from .renewal import RenewalOutcome, RenewalScheduler
from .settings import AutocertSettings, get_settings
from .storage import Absent, CertificateBundle, CertificateStore, Found

__all__ = [
    "AutocertError",
    "AutocertSettings",
    "Absent",
    "CertificateBundle",
    "CertificateCorruptedError",
    "CertificateIssuer",
    "CertificateManager",
    "CertificateStore",
    "ChallengeRegistry",
    "ConfigurationError",
    "Found",
    "HTTPChallengeServer",
    "IssuanceError",
    "RenewalOutcome",
    "RenewalScheduler",
    "challenge_registry",
    "get_certificate_and_key",
    "get_settings",
    "should_renew",
]
