"""
Validator Hook
==============

Policy gate for key-value pairs offered by peers. The engine asks the
validator about every inbound STORE; local puts are never validated.

A validator is `validate(key, value) -> bool`, plain or async.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)


Validator = Callable[[str, Any], Union[bool, Awaitable[bool]]]


def accept_all(key: str, value: Any) -> bool:
    """Default policy: accept every pair."""
    logger.debug(f"[VALIDATOR] Accepting {key[:16]}...: {value!r}")
    return True


async def run_validator(validator: Validator, key: str, value: Any) -> bool:
    """Invoke a plain or async validator and coerce its verdict to bool."""
    verdict = validator(key, value)
    if asyncio.iscoroutine(verdict):
        verdict = await verdict
    return bool(verdict)
