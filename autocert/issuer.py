"""
Certificate issuance over ACME with HTTP-01 validation.

The protocol exchange itself (JWS, nonces, polling) is done by the acme
library; the issuer bridges its challenges to a ChallengeResponder and
persists the result.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Literal, Optional, Protocol, Union

from acme import challenges, messages
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from .account import read_account_url
from .acme_client import AccountClientFactory, get_client_factory
from .challenges import challenge_registry, verify_http_challenge_reachable
from .errors import AutocertError, ConfigurationError, IssuanceError
from .storage import CertificateBundle, CertificateStore


logger = logging.getLogger(__name__)

KeyType = Literal["ec", "rsa"]


class ChallengeResponder(Protocol):
    """Something that can publish and withdraw HTTP-01 responses."""

    def put(self, token: str, content: str) -> None: ...

    def remove(self, token: str) -> None: ...


def create_private_key_and_csr(domain: str, key_type: KeyType = "ec") -> tuple[bytes, bytes]:
    """
    Generate a certificate key and a CSR for a single domain.

    Returns:
        Tuple of (key_pem, csr_pem)
    """
    if key_type == "ec":
        cert_key = ec.generate_private_key(ec.SECP256R1())
    else:
        cert_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
        )

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain)]),
            critical=False,
        )
        .sign(cert_key, hashes.SHA256())
    )

    key_pem = cert_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return key_pem, csr.public_bytes(serialization.Encoding.PEM)


def select_http01(authzr: messages.AuthorizationResource) -> messages.ChallengeBody:
    """Pick the HTTP-01 challenge of an authorization."""
    for challb in authzr.body.challenges:
        if isinstance(challb.chall, challenges.HTTP01):
            return challb
    domain = authzr.body.identifier.value if authzr.body.identifier else "unknown"
    raise IssuanceError(f"No HTTP-01 challenge offered for {domain}", domain)


class CertificateIssuer:
    """Obtains a new certificate for a domain and stores it."""

    def __init__(
        self,
        client_factory: Optional[AccountClientFactory] = None,
        store: Optional[CertificateStore] = None,
        responder: Optional[ChallengeResponder] = None,
        key_type: KeyType = "ec",
        order_timeout: int = 90,
        self_check: bool = False,
    ):
        self.client_factory = client_factory or get_client_factory()
        self.store = store or CertificateStore()
        self.responder = responder if responder is not None else challenge_registry
        self.key_type = key_type
        self.order_timeout = order_timeout
        self.self_check = self_check

    async def issue(self, cert_dir: Union[str, Path], domain: str) -> CertificateBundle:
        """
        Request, validate and persist a new certificate.

        Raises:
            ConfigurationError: No ACME account is registered for cert_dir
            IssuanceError: The order could not be completed
        """
        if read_account_url(cert_dir) is None:
            raise ConfigurationError(
                f"No ACME account registered in {cert_dir}, run 'autocert register' first"
            )

        acme_client = await self.client_factory.get_client(cert_dir)

        logger.info("[TLS-ACME] Requesting certificate for %s", domain)
        try:
            key_pem, csr_pem = await asyncio.to_thread(
                create_private_key_and_csr, domain, self.key_type
            )
            orderr = await asyncio.to_thread(acme_client.new_order, csr_pem)
            orderr = await self._validate_and_finalize(acme_client, orderr, domain)

            bundle = CertificateBundle(
                private_key=key_pem,
                certificate_chain=orderr.fullchain_pem.encode("ascii"),
            )
            self.store.save(cert_dir, bundle)
        except AutocertError:
            raise
        except Exception as e:
            raise IssuanceError(f"Failed to obtain certificate for {domain}: {e}", domain) from e

        logger.info(
            "[TLS-ACME] Certificate issued for %s, expires %s",
            domain, bundle.not_after.isoformat(),
            extra={"expiry": bundle.not_after.isoformat()},
        )
        return bundle

    async def _validate_and_finalize(self, acme_client, orderr, domain: str):
        account_key = acme_client.net.key
        registered: list[str] = []
        try:
            for authzr in orderr.authorizations:
                if authzr.body.status == messages.STATUS_VALID:
                    continue

                challb = select_http01(authzr)
                response, validation = challb.response_and_validation(account_key)
                token = challb.chall.encode("token")

                self.responder.put(token, validation)
                registered.append(token)

                if self.self_check:
                    ok, error = await verify_http_challenge_reachable(domain, token, validation)
                    if not ok:
                        logger.warning("[TLS-ACME] Challenge self-check failed for %s: %s", domain, error)

                logger.info("[TLS-ACME] Responding to http-01 challenge for %s", domain)
                await asyncio.to_thread(acme_client.answer_challenge, challb, response)

            deadline = datetime.now() + timedelta(seconds=self.order_timeout)
            logger.info("[TLS-ACME] Finalizing certificate order for %s", domain)
            return await asyncio.to_thread(acme_client.poll_and_finalize, orderr, deadline)
        finally:
            for token in registered:
                self.responder.remove(token)
