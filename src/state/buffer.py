from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol


logger = logging.getLogger(__name__)

DEFAULT_FLUSH_DELAY = 2.0


class HostWriteError(RuntimeError):
    """The host rejected or failed a state write or touch."""


class HostStateChannel(Protocol):
    """Host side of state persistence for the current module instance."""

    async def write_state(self, state: Any) -> None: ...

    async def touch_state(self) -> None: ...


@dataclass
class _PendingWrite:
    state: Any = None
    touch: bool = False


class DeferredStateWriter:
    """
    Batches state writes to the host.

    Only the latest pending write is kept; it is sent `delay` seconds after it
    was queued unless `flush()` sends it first. A touch (timestamp bump with
    no content change) is queued the same way and replaced by any later write.
    Timers are scheduled on the running event loop.
    """

    def __init__(self, host: HostStateChannel, *, delay: float = DEFAULT_FLUSH_DELAY) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self._host = host
        self._delay = delay
        self._pending: Optional[_PendingWrite] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def set_state(self, state: Any) -> None:
        self._pending = _PendingWrite(state=state)
        self._schedule()

    def touch(self) -> None:
        self._pending = _PendingWrite(touch=True)
        self._schedule()

    async def flush(self) -> None:
        """
        Send the pending write now (no-op when nothing is pending).

        Host failures are raised as HostWriteError with the host's message.
        """
        self._cancel_timer()
        pending, self._pending = self._pending, None
        if pending is None:
            return
        try:
            if pending.touch:
                await self._host.touch_state()
            else:
                await self._host.write_state(pending.state)
        except Exception as ex:
            raise HostWriteError(str(ex)) from ex

    def _schedule(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_task = asyncio.ensure_future(self._flush_from_timer())

    async def _flush_from_timer(self) -> None:
        try:
            await self.flush()
        except Exception:
            # detached from any caller
            logger.exception("Deferred state flush failed")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
