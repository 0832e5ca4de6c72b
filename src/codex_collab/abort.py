"""AbortController and AbortSignal helpers for cancelling turn and approval waits."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Union

AbortReason = Union[str, BaseException]


@dataclass
class AbortSignal:
    """Signal object observed by a running wait."""

    _event: asyncio.Event = field(default_factory=asyncio.Event)
    _reason: AbortReason | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> AbortReason | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to `delay` seconds; return True if aborted meanwhile."""
        if self.aborted:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


class AbortController:
    """Controller used to trigger cancellation for an AbortSignal."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: AbortReason | None = None) -> None:
        self.signal._reason = reason
        self.signal._event.set()
