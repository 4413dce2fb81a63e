"""
Bootstrap Sequencer
===================

[BOOTSTRAP] Runs once, when the transport reports ready:
- connect to every seed in parallel through the engine
- each failed seed produces exactly one warning
- always completes; joining with zero reachable seeds is allowed

No retries: a node that could not reach any seed still answers inbound
traffic and learns peers from it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from .contact import Contact

logger = logging.getLogger(__name__)


@dataclass
class BootstrapReport:
    connected: List[Contact] = field(default_factory=list)
    failed: List[Tuple[Contact, Exception]] = field(default_factory=list)

    @property
    def joined_any(self) -> bool:
        return bool(self.connected)


class BootstrapSequencer:
    """
    Connects a node to its seed list.

    [USAGE]
    ```python
    report = await BootstrapSequencer(engine, config.seeds).run()
    ```
    """

    def __init__(self, engine, seeds: Sequence[Contact]):
        self.engine = engine
        self.seeds = list(seeds)

    async def run(self) -> BootstrapReport:
        report = BootstrapReport()
        if not self.seeds:
            logger.info("[BOOTSTRAP] No seeds configured, waiting for inbound peers")
            return report

        logger.info(f"[BOOTSTRAP] Connecting to {len(self.seeds)} seeds")
        results = await asyncio.gather(
            *(self.engine.connect(seed) for seed in self.seeds),
            return_exceptions=True,
        )

        for seed, result in zip(self.seeds, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"[BOOTSTRAP] Seed {seed} failed: {result}")
                report.failed.append((seed, result))
            else:
                report.connected.append(seed)

        logger.info(
            f"[BOOTSTRAP] Complete: {len(report.connected)} connected, {len(report.failed)} failed"
        )
        return report
