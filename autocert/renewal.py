"""
Automatic certificate renewal.

Provides a background task that periodically checks certificate expiry,
renews the certificate before it expires and hands the new one to the
running HTTPS server.
"""
import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .issuer import CertificateIssuer
from .policy import RENEWAL_THRESHOLD, should_renew
from .storage import CertificateBundle, CertificateStore, Found


logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 3600  # 1 hour

# Hook receiving the renewed bundle; may be sync or async
CertificateSwapHook = Callable[[CertificateBundle], Any]

# Certificate directories with a renewal cycle in progress
_in_flight: set[str] = set()


class RenewalOutcome(str, Enum):
    NOT_DUE = "not_due"
    RENEWED = "renewed"
    FAILED = "failed"
    MISSING = "missing"
    SKIPPED = "skipped"


def _flight_key(cert_dir: Union[str, Path]) -> str:
    return str(Path(cert_dir).resolve())


class RenewalScheduler:
    """
    Periodic renewal check for one certificate directory.

    Each period fires one renewal cycle. A cycle never overlaps another
    cycle for the same directory: if one is still running the firing is
    skipped and the next period re-evaluates.
    """

    def __init__(
        self,
        cert_dir: Union[str, Path],
        domain: str,
        on_renewed: Optional[CertificateSwapHook] = None,
        issuer: Optional[CertificateIssuer] = None,
        store: Optional[CertificateStore] = None,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        threshold: timedelta = RENEWAL_THRESHOLD,
    ):
        self.cert_dir = cert_dir
        self.domain = domain
        self.on_renewed = on_renewed
        self.store = store or CertificateStore()
        self.issuer = issuer or CertificateIssuer(store=self.store)
        self.check_interval = check_interval
        self.threshold = threshold

        self.last_outcome: Optional[RenewalOutcome] = None
        self.last_check_at: Optional[datetime] = None

        self._task: Optional[asyncio.Task] = None
        self._cycles: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        """Check if the renewal timer is running."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the renewal timer. Requires a running event loop."""
        if self.is_running:
            logger.warning("[TLS-RENEWAL] Renewal task already running")
            return

        self._task = asyncio.create_task(self._timer())
        logger.info(
            "[TLS-RENEWAL] Certificate renewal task started (checking every %s seconds)",
            self.check_interval,
        )

    def stop(self) -> None:
        """Stop the timer and any cycle still running."""
        if self._task and not self._task.done():
            self._task.cancel()
        for cycle in list(self._cycles):
            cycle.cancel()
        self._task = None
        logger.info("[TLS-RENEWAL] Certificate renewal task stopped")

    async def _timer(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.check_interval)
                cycle = asyncio.create_task(self.run_once())
                self._cycles.add(cycle)
                cycle.add_done_callback(self._cycles.discard)
        except asyncio.CancelledError:
            logger.info("[TLS-RENEWAL] Certificate renewal task cancelled")
            raise

    async def run_once(self) -> RenewalOutcome:
        """
        Run one renewal cycle.

        Never raises: every failure is logged and reported as an outcome,
        and the previous certificate keeps serving.
        """
        key = _flight_key(self.cert_dir)
        if key in _in_flight:
            logger.warning("[TLS-RENEWAL] Previous renewal still in progress, skipping this check")
            return self._record(RenewalOutcome.SKIPPED)

        _in_flight.add(key)
        try:
            return self._record(await self._cycle())
        except Exception as e:
            logger.exception("[TLS-RENEWAL] Unexpected error while renewing certificate: %s", e)
            return self._record(RenewalOutcome.FAILED)
        finally:
            _in_flight.discard(key)

    async def _cycle(self) -> RenewalOutcome:
        logger.debug("[TLS-RENEWAL] Checking if certificate should be renewed")

        lookup = self.store.load(self.cert_dir)
        if not isinstance(lookup, Found):
            logger.error(
                "[TLS-RENEWAL] No certificate found in %s while checking for renewal (%s)",
                self.cert_dir, lookup.reason,
            )
            return RenewalOutcome.MISSING

        current = lookup.bundle
        if not should_renew(current, threshold=self.threshold):
            logger.debug(
                "[TLS-RENEWAL] Certificate renewal not needed yet (expires %s)",
                current.not_after.isoformat(),
            )
            return RenewalOutcome.NOT_DUE

        logger.info(
            "[TLS-RENEWAL] Renewing certificate, expires %s",
            current.not_after.isoformat(),
            extra={"expiry": current.not_after.isoformat()},
        )

        try:
            renewed = await self.issuer.issue(self.cert_dir, self.domain)
        except Exception as e:
            logger.error("[TLS-RENEWAL] Failed to renew certificate: %s", e)
            return RenewalOutcome.FAILED

        if self.on_renewed is not None:
            try:
                result = self.on_renewed(renewed)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("[TLS-RENEWAL] Failed to install renewed certificate: %s", e)
                return RenewalOutcome.FAILED

        logger.info(
            "[TLS-RENEWAL] Certificate renewed, expires %s",
            renewed.not_after.isoformat(),
            extra={"expiry": renewed.not_after.isoformat()},
        )
        return RenewalOutcome.RENEWED

    def _record(self, outcome: RenewalOutcome) -> RenewalOutcome:
        self.last_outcome = outcome
        self.last_check_at = datetime.now(timezone.utc)
        return outcome
