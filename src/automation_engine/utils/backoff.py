"""Backoff between webhook attempts."""
import asyncio
from automation_engine.config.logging import get_logger

logger = get_logger("backoff")


class AttemptBackoff:
    """Delay that grows linearly with the attempt number, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 2.0, max_delay: float = 60.0):
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * max(attempt, 1), self.max_delay)

    async def wait(self, attempt: int) -> None:
        delay = self.delay_for(attempt)
        if delay <= 0:
            return
        logger.warning("Attempt failed, retrying with backoff",
                       attempt=attempt,
                       delay_seconds=delay)
        await asyncio.sleep(delay)
