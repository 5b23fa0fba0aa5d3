"""
Certificate lifecycle manager.

Wires the account client, issuer, store and renewal scheduler for one
certificate directory and domain.
"""
import logging
from datetime import timedelta
from pathlib import Path
from typing import Literal, Optional, Union

from .account import AccountKeyStore, read_account_url
from .acme_client import AccountClientFactory, configure_client_factory
from .challenges import ChallengeRegistry, challenge_registry
from .errors import CertificateCorruptedError, ConfigurationError
from .issuer import CertificateIssuer
from .policy import RENEWAL_THRESHOLD, should_renew
from .renewal import CertificateSwapHook, RenewalScheduler
from .settings import AutocertSettings
from .storage import CertificateBundle, CertificateStore, Found


logger = logging.getLogger(__name__)

CorruptedPolicy = Literal["reissue", "error"]


async def get_certificate_and_key(
    cert_dir: Union[str, Path],
    domain: str,
    issuer: Optional[CertificateIssuer] = None,
    store: Optional[CertificateStore] = None,
    threshold: timedelta = RENEWAL_THRESHOLD,
    corrupted_policy: CorruptedPolicy = "reissue",
) -> CertificateBundle:
    """
    Get the certificate and private key, issuing a new one when needed.

    Args:
        cert_dir: Directory where the certificate is stored
        domain: Domain for the certificate
        corrupted_policy: "reissue" treats unusable files like missing ones,
            "error" raises CertificateCorruptedError instead

    Raises:
        ConfigurationError: No ACME account is registered (no network call is made)
    """
    if read_account_url(cert_dir) is None:
        raise ConfigurationError(
            f"Need an ACME account in {cert_dir}, run 'autocert register' first"
        )

    store = store or CertificateStore()
    lookup = store.load(cert_dir)

    if isinstance(lookup, Found):
        if not should_renew(lookup.bundle, threshold=threshold):
            return lookup.bundle
        logger.info(
            "[TLS-ACME] Stored certificate expires %s, renewing",
            lookup.bundle.not_after.isoformat(),
        )
    elif lookup.reason == "corrupted":
        if corrupted_policy == "error":
            raise CertificateCorruptedError(
                f"Stored certificate in {cert_dir} is unusable: {lookup.detail}"
            )
        logger.warning("[TLS-ACME] Stored certificate is unusable, issuing a new one")

    issuer = issuer or CertificateIssuer(store=store)
    return await issuer.issue(cert_dir, domain)


class CertificateManager:
    """One domain, one certificate directory, one renewal scheduler."""

    def __init__(
        self,
        settings: AutocertSettings,
        registry: Optional[ChallengeRegistry] = None,
        client_factory: Optional[AccountClientFactory] = None,
        store: Optional[CertificateStore] = None,
        issuer: Optional[CertificateIssuer] = None,
    ):
        if not settings.domain:
            raise ConfigurationError("No domain configured")

        self.settings = settings
        self.cert_dir = settings.get_cert_dir()
        self.domain = settings.domain
        self.registry = registry if registry is not None else challenge_registry
        self.store = store or CertificateStore()

        if client_factory is None:
            client_factory = AccountClientFactory(
                key_store=AccountKeyStore(key_size=settings.account_key_size),
                directory_url=settings.get_directory_url(),
                network_timeout=settings.network_timeout,
            )
            configure_client_factory(client_factory)
        self.client_factory = client_factory

        self.issuer = issuer or CertificateIssuer(
            client_factory=self.client_factory,
            store=self.store,
            responder=self.registry,
            key_type=settings.key_type,
            order_timeout=settings.order_timeout,
            self_check=settings.self_check,
        )
        self.threshold = timedelta(days=settings.renew_days_before_expiry)
        self.scheduler: Optional[RenewalScheduler] = None

    async def get_certificate_and_key(self) -> CertificateBundle:
        return await get_certificate_and_key(
            self.cert_dir,
            self.domain,
            issuer=self.issuer,
            store=self.store,
            threshold=self.threshold,
            corrupted_policy=self.settings.corrupted_certificate_policy,
        )

    def current_certificate(self) -> Optional[CertificateBundle]:
        lookup = self.store.load(self.cert_dir)
        return lookup.bundle if isinstance(lookup, Found) else None

    def start_renewal(self, on_renewed: Optional[CertificateSwapHook] = None) -> RenewalScheduler:
        """Start periodic renewal; on_renewed receives each new bundle."""
        if self.scheduler is None:
            self.scheduler = RenewalScheduler(
                self.cert_dir,
                self.domain,
                on_renewed=on_renewed,
                issuer=self.issuer,
                store=self.store,
                check_interval=self.settings.check_interval,
                threshold=self.threshold,
            )
        self.scheduler.start()
        return self.scheduler

    def stop_renewal(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
