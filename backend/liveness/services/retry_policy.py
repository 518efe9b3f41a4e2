"""
Attempt counter and backoff timer for detector initialization
"""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List


@dataclass
class RetryPolicy:
    """
    Bounded retries with a fixed backoff.

    The counter and the waits are plain state so tests can inspect how many
    attempts were made and how long the policy slept between them.
    """
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    attempt_timeout: float = 15.0
    attempts: int = 0
    waits: List[float] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def begin_attempt(self) -> int:
        if self.exhausted:
            raise RuntimeError(f"No attempts left ({self.attempts}/{self.max_attempts})")
        self.attempts += 1
        return self.attempts

    async def backoff(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.waits.append(self.backoff_seconds)
        await sleep(self.backoff_seconds)
