"""
Node Lifecycle
==============

    CREATED -> TRANSPORT_STARTING -> TRANSPORT_READY -> JOINING_NETWORK -> JOINED

Any state may move to STOPPED. Transitions are driven by one owner task
consuming transport events; everyone else only observes.
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import InvalidTransition

logger = logging.getLogger(__name__)


class NodeState(Enum):
    CREATED = "created"
    TRANSPORT_STARTING = "transport_starting"
    TRANSPORT_READY = "transport_ready"
    JOINING_NETWORK = "joining_network"
    JOINED = "joined"
    STOPPED = "stopped"


TRANSITIONS: Dict[NodeState, FrozenSet[NodeState]] = {
    NodeState.CREATED: frozenset({NodeState.TRANSPORT_STARTING, NodeState.STOPPED}),
    NodeState.TRANSPORT_STARTING: frozenset({NodeState.TRANSPORT_READY, NodeState.STOPPED}),
    NodeState.TRANSPORT_READY: frozenset({NodeState.JOINING_NETWORK, NodeState.STOPPED}),
    NodeState.JOINING_NETWORK: frozenset({NodeState.JOINED, NodeState.STOPPED}),
    NodeState.JOINED: frozenset({NodeState.STOPPED}),
    NodeState.STOPPED: frozenset(),
}


class Lifecycle:
    """Explicit state machine with awaitable states."""

    def __init__(self, label: str = "node"):
        self.label = label
        self._state = NodeState.CREATED
        self._reached: Dict[NodeState, asyncio.Event] = {}

    @property
    def state(self) -> NodeState:
        return self._state

    def _event(self, state: NodeState) -> asyncio.Event:
        event = self._reached.get(state)
        if event is None:
            event = asyncio.Event()
            self._reached[state] = event
        return event

    def can_advance(self, target: NodeState) -> bool:
        return target in TRANSITIONS[self._state]

    def advance(self, target: NodeState) -> NodeState:
        """
        Move to `target`.

        Raises:
            InvalidTransition: target is not reachable from the current state
        """
        if not self.can_advance(target):
            raise InvalidTransition(f"{self._state.name} -> {target.name} is not allowed")

        previous, self._state = self._state, target
        self._event(target).set()
        logger.info(f"[NODE] {self.label}: {previous.name} -> {target.name}")
        return target

    def has_reached(self, state: NodeState) -> bool:
        return self._event(state).is_set()

    async def wait_for(self, state: NodeState, timeout: Optional[float] = None) -> NodeState:
        """Wait until `state` has been entered (returns at once if it already was)."""
        await asyncio.wait_for(self._event(state).wait(), timeout=timeout)
        return state
