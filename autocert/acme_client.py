"""
ACME client bootstrapping.

Builds the one acme.client.ClientV2 of the process, bound to the account
key and account URL of the certificate directory, and registers accounts.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Union

from acme import client, errors, messages

from .account import AccountKeyStore, read_account_url, write_account_url
from .errors import ConfigurationError
from .settings import LETSENCRYPT_PRODUCTION


logger = logging.getLogger(__name__)

USER_AGENT = "autocert"

ClientBuilder = Callable[[Union[str, Path]], Any]


class AccountClientFactory:
    """
    Lazily constructs a single ACME client and hands out that instance.

    Concurrent first callers wait on the lock instead of racing the
    construction; once the slot is filled it is read without locking.
    """

    def __init__(
        self,
        key_store: Optional[AccountKeyStore] = None,
        directory_url: str = LETSENCRYPT_PRODUCTION,
        network_timeout: int = 45,
        builder: Optional[ClientBuilder] = None,
    ):
        self.key_store = key_store or AccountKeyStore()
        self.directory_url = directory_url
        self.network_timeout = network_timeout
        self._builder = builder or self._build_client
        self._client: Optional[Any] = None
        self._lock = asyncio.Lock()

    @property
    def cached_client(self) -> Optional[Any]:
        """The cached client, or None before the first construction."""
        return self._client

    async def get_client(self, cert_dir: Union[str, Path]) -> client.ClientV2:
        """Get the process-wide ACME client, constructing it on first use."""
        if self._client is not None:
            return self._client

        async with self._lock:
            if self._client is None:
                # acme is a blocking library; keep the event loop free
                self._client = await asyncio.to_thread(self._builder, cert_dir)
                logger.info("[TLS-ACME] ACME client ready for %s", self.directory_url)
            return self._client

    def reset(self) -> None:
        """Drop the cached client (next call rebuilds it)."""
        self._client = None

    def _build_client(self, cert_dir: Union[str, Path]) -> client.ClientV2:
        account_key = self.key_store.get_or_create(cert_dir)
        account_url = read_account_url(cert_dir)

        regr = None
        if account_url:
            regr = messages.RegistrationResource(
                body=messages.Registration(),
                uri=account_url,
            )

        net = client.ClientNetwork(
            account_key,
            account=regr,
            user_agent=USER_AGENT,
            timeout=self.network_timeout,
        )
        directory = client.ClientV2.get_directory(self.directory_url, net)
        logger.info("[TLS-ACME] Fetched ACME directory from %s", self.directory_url)
        return client.ClientV2(directory, net=net)


# Process-wide factory
_factory: Optional[AccountClientFactory] = None


def configure_client_factory(factory: Optional[AccountClientFactory]) -> None:
    """Install the process-wide factory (call before first use). None resets it."""
    global _factory
    _factory = factory


def get_client_factory() -> AccountClientFactory:
    global _factory
    if _factory is None:
        _factory = AccountClientFactory()
    return _factory


async def get_acme_client(cert_dir: Union[str, Path]) -> client.ClientV2:
    """Get the process-wide ACME client for a certificate directory."""
    return await get_client_factory().get_client(cert_dir)


async def register_account(
    cert_dir: Union[str, Path],
    email: str,
    factory: Optional[AccountClientFactory] = None,
) -> str:
    """
    Register an account with the ACME server and store the account URL.

    Args:
        cert_dir: Directory where the account files are stored
        email: Account admin email

    Returns:
        The account URL
    """
    factory = factory or get_client_factory()
    acme_client = await factory.get_client(cert_dir)

    new_reg = messages.NewRegistration.from_data(
        email=email,
        terms_of_service_agreed=True,
    )
    try:
        regr = await asyncio.to_thread(acme_client.new_account, new_reg)
    except errors.ConflictError as e:
        # The key is already registered; the conflict carries the account URL
        logger.info("[TLS-ACME] Account already exists for this key, reusing it")
        account_url = str(e.location)
        acme_client.net.account = messages.RegistrationResource(
            body=messages.Registration(),
            uri=account_url,
        )
    else:
        status = regr.body.status
        if status is not None and status != messages.STATUS_VALID:
            raise ConfigurationError(f"Can not register account (status: {status})")
        account_url = regr.uri

    if not account_url:
        raise ConfigurationError("ACME server did not return an account URL")

    write_account_url(cert_dir, account_url)
    logger.info("[TLS-ACME] ACME account registered: %s", account_url)
    return account_url
