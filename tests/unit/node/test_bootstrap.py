"""
Bootstrap Sequencer Unit Tests
==============================

[UNIT] Tests for dhtnode/bootstrap.py with a fake engine.
"""

import asyncio
import logging

import pytest

from dhtnode.bootstrap import BootstrapSequencer
from dhtnode.errors import PeerUnreachable, RequestTimeout


class FakeEngine:
    """Engine double whose connect() outcome is chosen per seed port."""

    def __init__(self, failing=(), delay: float = 0.0):
        self.failing = set(failing)
        self.delay = delay
        self.connected = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def connect(self, contact):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if contact.port in self.failing:
                raise RequestTimeout(f"PING to {contact} timed out")
            self.connected.append(contact)
            return contact
        finally:
            self.in_flight -= 1


def bootstrap_warnings(caplog):
    return [
        r for r in caplog.records
        if r.name == "dhtnode.bootstrap" and r.levelno == logging.WARNING
    ]


class TestBootstrapSequencer:
    """Test joining through seeds."""

    @pytest.mark.asyncio
    async def test_no_seeds(self, caplog):
        """Test an empty seed list completes with nothing to do."""
        engine = FakeEngine()
        with caplog.at_level("INFO", logger="dhtnode.bootstrap"):
            report = await BootstrapSequencer(engine, []).run()

        assert report.connected == []
        assert report.failed == []
        assert not report.joined_any
        assert bootstrap_warnings(caplog) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [1, 3, 5])
    async def test_one_warning_per_failed_seed(self, contact_factory, caplog, failures):
        """Test every unreachable seed is reported exactly once."""
        seeds = [contact_factory(port) for port in range(1, 6)]
        engine = FakeEngine(failing=range(1, failures + 1))

        with caplog.at_level("WARNING", logger="dhtnode.bootstrap"):
            report = await BootstrapSequencer(engine, seeds).run()

        assert len(bootstrap_warnings(caplog)) == failures
        assert len(report.failed) == failures
        assert len(report.connected) == 5 - failures
        assert report.joined_any == (failures < 5)
        for seed, error in report.failed:
            assert isinstance(error, PeerUnreachable)

    @pytest.mark.asyncio
    async def test_seeds_contacted_in_parallel(self, contact_factory):
        """Test seeds are not tried one after another."""
        seeds = [contact_factory(port) for port in range(1, 5)]
        engine = FakeEngine(delay=0.05)

        await BootstrapSequencer(engine, seeds).run()

        assert engine.max_in_flight == len(seeds)
        assert set(engine.connected) == set(seeds)

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(self, contact_factory, caplog):
        """Test non-network failures count as failed seeds too."""
        class BrokenEngine:
            async def connect(self, contact):
                raise RuntimeError("bad seed record")

        with caplog.at_level("WARNING", logger="dhtnode.bootstrap"):
            report = await BootstrapSequencer(BrokenEngine(), [contact_factory(1)]).run()

        assert len(report.failed) == 1
        assert len(bootstrap_warnings(caplog)) == 1
        assert "bad seed record" in bootstrap_warnings(caplog)[0].message
