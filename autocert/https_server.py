"""
HTTPS server with a hot-swappable certificate.

Runs uvicorn in-process with an SSL context whose certificate can be
replaced after renewal without restarting the listener.
"""
import asyncio
import logging
import os
import ssl
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

import uvicorn

from .storage import CERT_FILENAME, CERT_KEY_FILENAME, CertificateBundle


logger = logging.getLogger(__name__)


def create_ssl_context(bundle: CertificateBundle) -> ssl.SSLContext:
    """Build a server-side SSL context for a certificate bundle."""
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)

    # load_cert_chain only reads from files
    with tempfile.TemporaryDirectory() as tmp:
        cert_file = os.path.join(tmp, "cert.pem")
        key_file = os.path.join(tmp, "key.pem")
        with open(cert_file, "wb") as f:
            f.write(bundle.certificate_chain)
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(bundle.private_key)
        context.load_cert_chain(cert_file, key_file)

    return context


class SecureContextSwitcher:
    """
    Hands every TLS handshake the most recently installed context.

    The listener keeps its original (master) context; its SNI callback
    switches each new connection to the current one. Existing connections
    keep the certificate they were established with.
    """

    def __init__(self, bundle: Optional[CertificateBundle] = None):
        self._current: Optional[ssl.SSLContext] = None
        if bundle is not None:
            self._current = create_ssl_context(bundle)

    @property
    def current(self) -> Optional[ssl.SSLContext]:
        return self._current

    def install(self, master: ssl.SSLContext) -> None:
        """Attach the switcher to the listener's context."""
        master.sni_callback = self._sni_callback

    def swap(self, bundle: CertificateBundle) -> None:
        """Serve a new certificate from the next handshake on."""
        self._current = create_ssl_context(bundle)
        logger.info(
            "[TLS-SERVER] TLS context replaced, certificate expires %s",
            bundle.not_after.isoformat(),
            extra={"expiry": bundle.not_after.isoformat()},
        )

    def _sni_callback(self, ssl_object, server_name, master: ssl.SSLContext) -> None:
        current = self._current
        if current is not None and current is not master:
            ssl_object.context = current
        return None


class HTTPSServerManager:
    """
    Manages the in-process HTTPS server.

    The certificate files of the certificate directory are loaded at start;
    renewed certificates are installed with swap_certificate().
    """

    def __init__(
        self,
        app: Any,
        cert_dir: Union[str, Path],
        host: str = "0.0.0.0",
        port: int = 443,
    ):
        self.app = app
        self.cert_dir = Path(cert_dir)
        self.host = host
        self.port = port
        self.switcher = SecureContextSwitcher()
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """Check if HTTPS server is running."""
        return self._task is not None and not self._task.done()

    def _build_config(self) -> uvicorn.Config:
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            ssl_certfile=str(self.cert_dir / CERT_FILENAME),
            ssl_keyfile=str(self.cert_dir / CERT_KEY_FILENAME),
            log_config=None,
        )
        config.load()
        self.switcher.install(config.ssl)
        return config

    async def start(self) -> None:
        """Start the HTTPS server with the stored certificate."""
        async with self._lock:
            if self.is_running:
                logger.debug("[TLS-SERVER] HTTPS server already running")
                return

            config = self._build_config()
            self._server = uvicorn.Server(config)
            self._task = asyncio.create_task(self._server.serve())
            logger.info("[TLS-SERVER] HTTPS server starting on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        """Stop the HTTPS server."""
        async with self._lock:
            if not self.is_running:
                logger.debug("[TLS-SERVER] HTTPS server not running")
                return

            self._server.should_exit = True
            await self._task
            self._server = None
            self._task = None
            logger.info("[TLS-SERVER] HTTPS server stopped")

    async def wait(self) -> None:
        """Wait until the server exits."""
        if self._task is not None:
            await self._task

    def swap_certificate(self, bundle: CertificateBundle) -> None:
        """Replace the served certificate without restarting the listener."""
        self.switcher.swap(bundle)

    def get_status(self) -> dict:
        """Get current HTTPS server status."""
        return {
            "running": self.is_running,
            "host": self.host,
            "port": self.port,
        }
