"""
Request-scoped execution context.

A `Context` carries the deadline applied to a database round trip.
Cancellation is plain asyncio task cancellation: cancelling the task that
awaits an operation aborts it at the next driver await.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from sqlrepo.errors import OperationTimeoutError


@dataclass(frozen=True)
class Context:
    """
    Deadline for database work.

    Attributes
    ----------
    timeout : float | None
        Seconds allowed for each operation run under this context.
        None means no deadline.
    """

    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")

    @classmethod
    def background(cls) -> "Context":
        """Context without a deadline."""
        return _BACKGROUND

    @classmethod
    def with_timeout(cls, seconds: float) -> "Context":
        return cls(timeout=seconds)

    @asynccontextmanager
    async def scope(self, operation: str) -> AsyncIterator[None]:
        """
        Run the enclosed block under this context's deadline.

        Raises
        ------
        OperationTimeoutError
            If the deadline expires first. A `TimeoutError` raised by the block
            itself while the deadline still holds propagates unchanged.
        """
        if self.timeout is None:
            yield
            return
        deadline = asyncio.timeout(self.timeout)
        try:
            async with deadline:
                yield
        except TimeoutError as error:
            if not deadline.expired():
                raise
            raise OperationTimeoutError(
                f"deadline of {self.timeout}s exceeded", operation
            ) from error


_BACKGROUND = Context()


__all__ = ["Context"]
