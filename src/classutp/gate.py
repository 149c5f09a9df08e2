"""Request admission: single-flight gate, pool-mode pass-through and quotas.

Single-flight mode admits exactly one scrape per process. A flag left set by
a session that never reached its cleanup is released automatically once it
is older than the session ceiling, so the service cannot wedge itself.
Pool mode admits everything and lets the pool queue requests in ``acquire``.
Quotas bound how often a single client may start a scrape.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Literal

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from src.classutp.errors import CapacityRejected, RateLimitExceeded
from src.classutp.logging import get_logger
from src.classutp.models import GateStatus

log = get_logger(__name__)

Clock = Callable[[], float]


@dataclass
class GateTicket:
    """Proof of admission; handed back to ``RequestGate.release``."""

    owner: str | None
    client_id: str | None
    admitted_at: float
    started: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released: bool = False


class QuotaLimiter:
    """Moving-window request quota per client identity.

    The (limit + 1)-th request from the same identity inside ``window``
    seconds is rejected. Counting and expiry are delegated to the ``limits``
    in-memory moving-window strategy, which drops expired entries on its
    own timer.
    """

    def __init__(self, limit: int, window: float) -> None:
        self.limit = limit
        self.window = window
        self._item = RateLimitItemPerSecond(limit, max(1, int(window)))
        self._limiter = MovingWindowRateLimiter(MemoryStorage())

    def hit(self, identity: str) -> None:
        """Record one request for ``identity``.

        Raises:
            RateLimitExceeded: If the identity is already at its limit.
        """
        if self._limiter.hit(self._item, "scrape", identity):
            return
        stats = self._limiter.get_window_stats(self._item, "scrape", identity)
        retry_after = max(1, int(stats.reset_time - time.time()) + 1)
        log.warning("rate_limited", client=identity, retry_after=retry_after)
        raise RateLimitExceeded(retry_after=retry_after)


class RequestGate:
    """Admission control in ``single`` (one in flight) or ``pool`` mode."""

    def __init__(
        self,
        mode: Literal["single", "pool"] = "single",
        *,
        ceiling: float = 300.0,
        retry_after: int = 30,
        quota: QuotaLimiter | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.mode = mode
        self.ceiling = ceiling
        self.retry_after = retry_after
        self.quota = quota
        self._clock = clock
        self._current: GateTicket | None = None
        self._started = clock()

    def admit(self, client_id: str | None = None, owner: str | None = None) -> GateTicket:
        """Admit one request or raise.

        Raises:
            RateLimitExceeded: The client exceeded its quota.
            CapacityRejected: Single-flight mode and a session is in flight.
        """
        if self.quota is not None and client_id is not None:
            self.quota.hit(client_id)

        ticket = GateTicket(owner=owner, client_id=client_id, admitted_at=self._clock())
        if self.mode == "pool":
            return ticket

        self._expire_stuck()
        if self._current is not None:
            elapsed = self._clock() - self._current.admitted_at
            log.info("gate_busy", busy_seconds=round(elapsed, 1))
            raise CapacityRejected(retry_after=self.retry_after)
        self._current = ticket
        log.debug("gate_admitted", owner=owner)
        return ticket

    def release(self, ticket: GateTicket) -> None:
        """Release an admission. Idempotent; stale tickets are ignored."""
        if ticket.released:
            return
        ticket.released = True
        if self._current is ticket:
            self._current = None
            log.debug("gate_released", owner=ticket.owner)

    @property
    def busy(self) -> bool:
        if self.mode == "pool":
            return False
        self._expire_stuck()
        return self._current is not None

    def status(self) -> GateStatus:
        busy = self.busy
        current = self._current if busy else None
        return GateStatus(
            mode=self.mode,
            busy=busy,
            current_session_masked=current.owner if current else None,
            busy_since=current.started if current else None,
            uptime=round(self._clock() - self._started, 3),
        )

    def _expire_stuck(self) -> None:
        current = self._current
        if current is None:
            return
        elapsed = self._clock() - current.admitted_at
        if elapsed > self.ceiling:
            log.warning(
                "gate_watchdog_release",
                owner=current.owner,
                busy_seconds=round(elapsed, 1),
                ceiling_seconds=self.ceiling,
            )
            current.released = True
            self._current = None
