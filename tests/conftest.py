"""
Shared fixtures for the autocert test suite.

Certificates are signed by a throwaway CA generated per session and the
ACME server is replaced by FakeACMEClient, so no test touches the network.
"""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from acme import challenges, messages
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID
from josepy import JWKRSA

from autocert.storage import ACCOUNT_URL_FILENAME, CertificateBundle


ACCOUNT_URL = "https://acme.test/acme/acct/12345"


class ThrowawayCA:
    """Minimal CA issuing leaf certificates for tests."""

    def __init__(self):
        self.key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "autocert test CA")])
        now = datetime.now(timezone.utc)
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.key, hashes.SHA256())
        )

    def issue(self, public_key, domain: str, days_valid: float) -> bytes:
        """Sign a leaf for public_key; returns leaf + CA as a PEM chain."""
        now = datetime.now(timezone.utc)
        leaf = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
            .issuer_name(self.cert.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=days_valid))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(self.key, hashes.SHA256())
        )
        return (
            leaf.public_bytes(serialization.Encoding.PEM)
            + self.cert.public_bytes(serialization.Encoding.PEM)
        )

    def bundle(self, domain: str = "example.com", days_valid: float = 60) -> CertificateBundle:
        key = ec.generate_private_key(ec.SECP256R1())
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return CertificateBundle(
            private_key=key_pem,
            certificate_chain=self.issue(key.public_key(), domain, days_valid),
        )


class FakeACMEClient:
    """
    Stands in for acme.client.ClientV2.

    Offers one pending HTTP-01 challenge per order and signs the CSR with
    the test CA on poll_and_finalize.
    """

    def __init__(self, account_key: JWKRSA, ca: ThrowawayCA, validity_days: float = 90, registry=None):
        self.net = SimpleNamespace(key=account_key, account=None)
        self.ca = ca
        self.validity_days = validity_days
        self.registry = registry
        self.offer_http01 = True
        self.finalize_error = None

        self.orders = []
        self.answered = []
        self.finalized = []
        self.served_during_validation = {}

    def new_order(self, csr_pem: bytes):
        token = f"token{len(self.orders)}".encode().ljust(16, b"0")
        chall = challenges.HTTP01(token=token) if self.offer_http01 else challenges.DNS01(token=token)
        challb = messages.ChallengeBody(
            chall=chall,
            uri=f"https://acme.test/chall/{len(self.orders)}",
            status=messages.STATUS_PENDING,
        )
        authzr = SimpleNamespace(
            body=SimpleNamespace(
                status=messages.STATUS_PENDING,
                challenges=[challb],
                identifier=SimpleNamespace(value="example.com"),
            ),
        )
        orderr = SimpleNamespace(authorizations=[authzr], csr_pem=csr_pem, fullchain_pem=None)
        self.orders.append(orderr)
        return orderr

    def answer_challenge(self, challb, response):
        self.answered.append((challb, response))
        if self.registry is not None:
            token = challb.chall.encode("token")
            self.served_during_validation[token] = self.registry.get(token)

    def poll_and_finalize(self, orderr, deadline=None):
        self.finalized.append(deadline)
        if self.finalize_error is not None:
            raise self.finalize_error
        csr = x509.load_pem_x509_csr(orderr.csr_pem)
        domain = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
        chain = self.ca.issue(csr.public_key(), domain, self.validity_days)
        return SimpleNamespace(
            authorizations=orderr.authorizations,
            csr_pem=orderr.csr_pem,
            fullchain_pem=chain.decode("ascii"),
        )


@pytest.fixture(scope="session")
def test_ca():
    return ThrowawayCA()


@pytest.fixture(scope="session")
def account_key():
    return JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=2048))


@pytest.fixture
def cert_dir(tmp_path):
    """Empty certificate directory."""
    path = tmp_path / "cert"
    path.mkdir()
    return path


@pytest.fixture
def account_dir(cert_dir):
    """Certificate directory with a registered account and no certificate."""
    (cert_dir / ACCOUNT_URL_FILENAME).write_text(ACCOUNT_URL)
    return cert_dir


@pytest.fixture
def make_bundle(test_ca):
    """Factory for bundles expiring in a given number of days."""
    def _make(days_valid: float = 60, domain: str = "example.com") -> CertificateBundle:
        return test_ca.bundle(domain, days_valid)
    return _make


@pytest.fixture
def fake_acme(account_key, test_ca):
    return FakeACMEClient(account_key, test_ca)


@pytest.fixture
def fake_factory(fake_acme):
    """Client factory that hands out fake_acme without touching the network."""
    from autocert.acme_client import AccountClientFactory

    return AccountClientFactory(builder=lambda cert_dir: fake_acme)


@pytest.fixture
def account_url():
    return ACCOUNT_URL
