"""
Exceptions raised by the certificate lifecycle manager.
"""


class AutocertError(Exception):
    """Base class for all autocert errors."""


class ConfigurationError(AutocertError):
    """The certificate directory or settings cannot be used as-is.

    Raised before any network call, e.g. when no ACME account has been
    registered for the certificate directory.
    """


class CertificateCorruptedError(ConfigurationError):
    """Stored certificate files exist but cannot be used."""


class IssuanceError(AutocertError):
    """Obtaining a certificate from the ACME server failed."""

    def __init__(self, message: str, domain: str = ""):
        super().__init__(message)
        self.domain = domain
