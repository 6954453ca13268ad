"""
Ordered fallback chains for multi-step remote mutations.

A chain is a list of steps tried in order until one succeeds. Failed steps
contribute their reason to the diagnostics; if the chain runs out, or a step
marked terminal fails, a FallbackExhaustedError carrying every reason is
raised.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from core.error_handler import DriveError, FallbackExhaustedError, log_event


logger = logging.getLogger(__name__)


class StepSkipped(Exception):
    """Raised by a step that does not apply; recorded without counting as a failure."""
    pass


@dataclass
class FallbackStep:
    """
    One attempt in a fallback chain.

    ``attempt`` returns the chain result on success and raises on failure.
    When ``terminal`` is set, a failure of this step ends the chain at once.
    """
    name: str
    attempt: Callable[[], Awaitable[Any]]
    terminal: bool = False


async def run_fallback_chain(
    operation: str,
    steps: List[FallbackStep],
    entity_id: Optional[str] = None,
) -> Any:
    """
    Run steps in order and return the first successful result.

    Only DriveError failures (transport errors and the like) move the chain
    forward; anything else, such as a store error, propagates unchanged.

    Raises:
        FallbackExhaustedError: If no step succeeded
    """
    attempts: List[Tuple[str, str]] = []
    for step in steps:
        try:
            result = await step.attempt()
        except StepSkipped as e:
            log_event(logger, logging.DEBUG, f"{operation}_step_skipped",
                      entity_id=entity_id, step=step.name, reason=str(e))
            continue
        except DriveError as e:
            attempts.append((step.name, str(e)))
            log_event(logger, logging.WARNING, f"{operation}_step_failed",
                      entity_id=entity_id, step=step.name, error=str(e))
            if step.terminal:
                raise FallbackExhaustedError(operation, attempts, final=str(e))
            continue
        if attempts:
            log_event(logger, logging.INFO, f"{operation}_recovered",
                      entity_id=entity_id, step=step.name, failed_steps=len(attempts))
        return result
    raise FallbackExhaustedError(operation, attempts)
