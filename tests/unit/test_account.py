"""
Unit tests for ACME account persistence.
"""
import os
import stat
import threading
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from autocert.account import AccountKeyStore, account_key_path, read_account_url, write_account_url
from autocert.errors import ConfigurationError
from autocert.storage import ACCOUNT_KEY_FILENAME, ACCOUNT_URL_FILENAME


class TestAccountUrl:
    """Tests for reading and writing the account URL."""

    def test_missing_url_is_none(self, cert_dir):
        assert read_account_url(cert_dir) is None

    def test_missing_directory_is_none(self, tmp_path):
        assert read_account_url(tmp_path / "nope") is None

    def test_empty_url_is_none(self, cert_dir):
        (cert_dir / ACCOUNT_URL_FILENAME).write_text("  \n")
        assert read_account_url(cert_dir) is None

    def test_write_then_read(self, cert_dir):
        write_account_url(cert_dir, "https://acme.test/acct/1")
        assert read_account_url(cert_dir) == "https://acme.test/acct/1"
        mode = stat.S_IMODE(os.stat(cert_dir / ACCOUNT_URL_FILENAME).st_mode)
        assert mode == 0o600

    def test_surrounding_whitespace_is_stripped(self, cert_dir):
        (cert_dir / ACCOUNT_URL_FILENAME).write_text("https://acme.test/acct/2\n")
        assert read_account_url(cert_dir) == "https://acme.test/acct/2"


class TestAccountKeyStore:
    """Tests for AccountKeyStore.get_or_create()."""

    def test_creates_key_once(self, cert_dir):
        store = AccountKeyStore(key_size=2048)
        first = store.get_or_create(cert_dir)
        assert (cert_dir / ACCOUNT_KEY_FILENAME).exists()

        second = store.get_or_create(cert_dir)
        assert first.thumbprint() == second.thumbprint()

    def test_key_file_is_owner_only(self, cert_dir):
        AccountKeyStore(key_size=2048).get_or_create(cert_dir)
        mode = stat.S_IMODE(os.stat(account_key_path(cert_dir)).st_mode)
        assert mode == 0o600

    def test_loads_existing_key(self, cert_dir, account_key):
        pem = account_key.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        account_key_path(cert_dir).write_bytes(pem)

        loaded = AccountKeyStore().get_or_create(cert_dir)
        assert loaded.thumbprint() == account_key.thumbprint()

    def test_concurrent_creation_yields_one_key(self, cert_dir):
        """Two stores racing on one directory end up with the same key."""
        stores = [AccountKeyStore(key_size=2048) for _ in range(4)]
        results = []
        barrier = threading.Barrier(len(stores))

        def create(store):
            barrier.wait()
            results.append(store.get_or_create(cert_dir).thumbprint())

        threads = [threading.Thread(target=create, args=(s,)) for s in stores]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 4
        assert len(set(results)) == 1

    def test_unparsable_key_raises(self, cert_dir):
        account_key_path(cert_dir).write_bytes(b"garbage")
        with pytest.raises(ConfigurationError):
            AccountKeyStore().get_or_create(cert_dir)

    def test_non_rsa_key_raises(self, cert_dir):
        pem = ec.generate_private_key(ec.SECP256R1()).private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        account_key_path(cert_dir).write_bytes(pem)
        with pytest.raises(ConfigurationError, match="not an RSA key"):
            AccountKeyStore().get_or_create(cert_dir)

    def test_creation_leaves_no_temporary_files(self, cert_dir):
        AccountKeyStore(key_size=2048).get_or_create(cert_dir)
        assert os.listdir(cert_dir) == [ACCOUNT_KEY_FILENAME]

    def test_lost_race_uses_winning_key(self, cert_dir, account_key):
        """A key that appears between the first read and the link wins."""
        winner = account_key.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        real_link = os.link

        def link_after_other_writer(src, dst):
            with open(dst, "wb") as f:
                f.write(winner)
            real_link(src, dst)

        with patch("autocert.account.os.link", side_effect=link_after_other_writer):
            key = AccountKeyStore(key_size=2048).get_or_create(cert_dir)

        assert key.thumbprint() == account_key.thumbprint()
        assert account_key_path(cert_dir).read_bytes() == winner
        assert os.listdir(cert_dir) == [ACCOUNT_KEY_FILENAME]
