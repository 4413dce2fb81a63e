"""
Link Telemetry
==============

[TELEMETRY] Per-peer link quality, observed passively on the transport:
- outbound REQUEST: remember rpc_id -> (peer, send time)
- inbound RESPONSE with a known rpc_id: latency sample + success
- request never answered within `request_timeout`: failure

[SCORING]
- latency: EWMA (alpha = 0.3)
- reliability: responses / requests (0.5 while unknown)
- unreachable: UNREACHABLE_AFTER consecutive failures

Samples survive restarts in telemetry.dat (JSON) when a path is given.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..contact import Contact
from .base import Transport, TransportDecorator
from .message import Message, MessageKind

logger = logging.getLogger(__name__)


LATENCY_ALPHA = 0.3
UNREACHABLE_AFTER = 3
TELEMETRY_VERSION = 1


@dataclass
class LinkStats:
    """Observed link quality for one peer."""
    fingerprint: str

    requests: int = 0
    responses: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    avg_latency_ms: float = 0.0

    last_seen: float = 0.0

    def update_latency(self, latency_ms: float) -> None:
        """EWMA latency."""
        if self.avg_latency_ms == 0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = LATENCY_ALPHA * latency_ms + (1 - LATENCY_ALPHA) * self.avg_latency_ms

    def record_success(self, latency_ms: float) -> None:
        self.responses += 1
        self.consecutive_failures = 0
        self.update_latency(latency_ms)
        self.last_seen = time.time()

    def record_failure(self) -> None:
        self.failures += 1
        self.consecutive_failures += 1

    @property
    def is_reachable(self) -> bool:
        return self.consecutive_failures < UNREACHABLE_AFTER

    @property
    def reliability_score(self) -> float:
        """Reliability (0-1)."""
        if self.requests == 0:
            return 0.5
        return min(1.0, self.responses / self.requests)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinkStats":
        return cls(
            fingerprint=str(data["fingerprint"]),
            requests=int(data.get("requests", 0)),
            responses=int(data.get("responses", 0)),
            failures=int(data.get("failures", 0)),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            avg_latency_ms=float(data.get("avg_latency_ms", 0.0)),
            last_seen=float(data.get("last_seen", 0.0)),
        )


@dataclass(frozen=True)
class TelemetryOptions:
    # telemetry.dat; None keeps samples in memory only
    path: Optional[Path] = None

    # seconds after which an unanswered request counts as a failure
    request_timeout: float = 5.0


class TelemetryTransport(TransportDecorator):
    """
    Transport layer recording link quality of every peer we talk to.

    [USAGE]
    ```python
    transport = TelemetryTransport.wrap(inner, TelemetryOptions(path=datadir / "telemetry.dat"))
    score = transport.confidence(contact.fingerprint)
    ```
    """

    def __init__(self, inner: Transport, options: Optional[TelemetryOptions] = None):
        super().__init__(inner, options or TelemetryOptions())
        self._stats: Dict[str, LinkStats] = {}
        self._outstanding: Dict[str, Tuple[str, float]] = {}

        inner.before("serialize", self._observe_outbound)
        inner.before("receive", self._observe_inbound)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _observe_outbound(self, message: Message, contact: Contact) -> None:
        if message.kind is not MessageKind.REQUEST:
            return
        self.expire_outstanding()
        self._outstanding[message.rpc_id] = (contact.fingerprint, time.monotonic())
        self.stats_for(contact.fingerprint).requests += 1

    def _observe_inbound(self, message: Message, contact: Contact) -> None:
        stats = self.stats_for(contact.fingerprint)
        stats.last_seen = time.time()

        if message.kind is not MessageKind.RESPONSE:
            return
        pending = self._outstanding.pop(message.rpc_id, None)
        if pending is None:
            return

        fingerprint, sent_at = pending
        if fingerprint != contact.fingerprint:
            # answered by someone we did not ask
            self._outstanding[message.rpc_id] = pending
            return
        stats.record_success((time.monotonic() - sent_at) * 1000)

    def expire_outstanding(self) -> int:
        """Count requests unanswered past request_timeout as failures."""
        deadline = time.monotonic() - self.options.request_timeout
        expired = [rpc_id for rpc_id, (_, sent_at) in self._outstanding.items() if sent_at < deadline]
        for rpc_id in expired:
            fingerprint, _ = self._outstanding.pop(rpc_id)
            self.record_failure(fingerprint)
        return len(expired)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def stats_for(self, fingerprint: str) -> LinkStats:
        stats = self._stats.get(fingerprint)
        if stats is None:
            stats = LinkStats(fingerprint=fingerprint)
            self._stats[fingerprint] = stats
        return stats

    def record_failure(self, fingerprint: str) -> None:
        stats = self.stats_for(fingerprint)
        stats.record_failure()
        if stats.consecutive_failures == UNREACHABLE_AFTER:
            logger.info(f"[TELEMETRY] Peer {fingerprint[:8]} marked unreachable")

    def confidence(self, fingerprint: str) -> float:
        """Reachability confidence (0-1); 0.5 for peers never measured."""
        stats = self._stats.get(fingerprint)
        if stats is None:
            return 0.5
        if not stats.is_reachable:
            return 0.0
        return stats.reliability_score

    def is_reachable(self, fingerprint: str) -> bool:
        stats = self._stats.get(fingerprint)
        return stats is None or stats.is_reachable

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {fingerprint: stats.to_dict() for fingerprint, stats in self._stats.items()}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        path = self.options.path
        if path is None or not Path(path).exists():
            return 0

        try:
            document = json.loads(Path(path).read_text(encoding="utf-8"))
            links = [LinkStats.from_dict(item) for item in document.get("links", [])]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"[TELEMETRY] Ignoring unreadable {path}: {e}")
            return 0

        for stats in links:
            self._stats[stats.fingerprint] = stats
        logger.debug(f"[TELEMETRY] Loaded {len(links)} link records from {path}")
        return len(links)

    def save(self) -> None:
        path = self.options.path
        if path is None:
            return

        document = {
            "version": TELEMETRY_VERSION,
            "links": [stats.to_dict() for stats in self._stats.values()],
        }
        try:
            Path(path).write_text(json.dumps(document, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"[TELEMETRY] Cannot write {path}: {e}")

    async def open(self) -> None:
        self.load()
        await self.inner.open()

    async def close(self) -> None:
        self.expire_outstanding()
        self.save()
        await self.inner.close()
