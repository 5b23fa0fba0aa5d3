"""
ACME HTTP-01 challenge handling.

This module keeps the pending challenge responses and serves them on the
well-known path, either from a standalone listener or through the routes
in autocert.routes.
"""
import logging
import threading
from typing import Optional, Dict

import httpx
from aiohttp import web


logger = logging.getLogger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"


class ChallengeRegistry:
    """
    Pending HTTP-01 challenges, token -> key authorization.

    Written by the issuer, read by the HTTP responder. Access is guarded by
    a lock so readers on other threads never see a half-applied update.
    """

    def __init__(self):
        self._responses: Dict[str, str] = {}
        self._lock = threading.Lock()

    def put(self, token: str, content: str) -> None:
        """Register the response to serve for a token."""
        with self._lock:
            self._responses[token] = content
        logger.info("[TLS-CHALLENGE] Registered HTTP-01 challenge: %s", token)

    def remove(self, token: str) -> None:
        """Forget a token. Unknown tokens are ignored."""
        with self._lock:
            removed = self._responses.pop(token, None)
        if removed is not None:
            logger.info("[TLS-CHALLENGE] Cleared HTTP-01 challenge: %s", token)

    def get(self, token: str) -> Optional[str]:
        """
        Get the response for a token.

        Returns:
            The key authorization string, or None if not found
        """
        with self._lock:
            return self._responses.get(token)

    def clear(self) -> None:
        with self._lock:
            self._responses.clear()
        logger.info("[TLS-CHALLENGE] Cleared all HTTP-01 challenges")

    def __len__(self) -> int:
        with self._lock:
            return len(self._responses)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._responses


# Registry shared by the issuer and the HTTP responders
challenge_registry = ChallengeRegistry()


async def verify_http_challenge_reachable(
    domain: str,
    token: str,
    expected_response: str,
    timeout: float = 10.0,
) -> tuple[bool, Optional[str]]:
    """
    Verify that an HTTP-01 challenge is reachable from the outside.

    This is a self-test to check if the challenge endpoint is working
    before telling the ACME server to validate.

    Args:
        domain: The domain being validated
        token: The challenge token
        expected_response: The expected key authorization
        timeout: Request timeout in seconds

    Returns:
        Tuple of (success, error_message)
    """
    url = f"http://{domain}{CHALLENGE_PATH_PREFIX}{token}"

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url, follow_redirects=False)

            if resp.status_code != 200:
                return False, f"HTTP {resp.status_code} (expected 200)"

            if resp.text.strip() != expected_response:
                return False, "Response does not match expected key authorization"

            return True, None

    except httpx.TimeoutException:
        return False, f"Timeout connecting to {url}"
    except httpx.HTTPError as e:
        return False, f"Connection error: {e}"


class HTTPChallengeServer:
    """
    Standalone plain-HTTP listener for ACME HTTP-01 challenges.

    Must be running before any issuance is attempted, since the CA fetches
    the challenge from port 80 of the domain.
    """

    def __init__(
        self,
        registry: Optional[ChallengeRegistry] = None,
        host: str = "0.0.0.0",
        port: int = 80,
    ):
        self.registry = registry if registry is not None else challenge_registry
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(CHALLENGE_PATH_PREFIX + "{token}", self._handle_challenge)
        app.router.add_get(CHALLENGE_PATH_PREFIX, self._handle_missing_token)
        return app

    @property
    def is_running(self) -> bool:
        return self._site is not None

    async def start(self) -> None:
        """Start the HTTP challenge listener."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await self._site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise

        logger.info("[TLS-CHALLENGE] HTTP challenge server started on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        """Stop the HTTP challenge listener."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("[TLS-CHALLENGE] HTTP challenge server stopped")

    async def _handle_challenge(self, request: web.Request) -> web.Response:
        token = request.match_info.get("token", "")
        if not token:
            raise web.HTTPBadRequest(text="Missing challenge token")

        response = self.registry.get(token)
        if response is None:
            logger.warning("[TLS-CHALLENGE] Challenge not found for token: %s", token)
            raise web.HTTPNotFound(text="Challenge not found")

        logger.info("[TLS-CHALLENGE] Serving challenge response for token: %s", token)
        return web.Response(text=response, content_type="text/plain")

    async def _handle_missing_token(self, request: web.Request) -> web.Response:
        raise web.HTTPBadRequest(text="Missing challenge token")
