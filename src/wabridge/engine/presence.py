"""Presence emulation and batched read receipts.

Design notes / invariants:
- Timers are plain `asyncio` tasks owned by their coordinator (they outlive
  any single handler call, so a task group scope does not fit). Replacing a
  timer cancels the previous task; `aclose()` cancels everything pending.
- Presence updates are rate limited to one per conversation per
  `min_interval`; calls inside the window are dropped, not queued.
- Read receipts accumulate per conversation. The flush timer starts on the
  first enqueue of a window; later enqueues join the same batch.
- Presence and receipt failures are logged and never propagate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

from ..source.protocol import Presence, SourceClient

logger = logging.getLogger(__name__)


def _cancel(task: asyncio.Task[None] | None) -> None:
    if task is not None and not task.done():
        task.cancel()


def _schedule(delay: float, action: Callable[[], Awaitable[None]], *, name: str) -> asyncio.Task[None]:
    async def _run() -> None:
        await asyncio.sleep(delay)
        await action()

    return asyncio.create_task(_run(), name=name)


async def _cancel_and_wait(tasks: list[asyncio.Task[None]]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        with suppress(asyncio.CancelledError):
            await task


class PresenceCoordinator:
    def __init__(
        self,
        source: SourceClient,
        *,
        enabled: bool = True,
        min_interval_seconds: float = 1.0,
        typing_pause_seconds: float = 3.0,
        available_delay_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.enabled = enabled
        self.min_interval_seconds = min_interval_seconds
        self.typing_pause_seconds = typing_pause_seconds
        self.available_delay_seconds = available_delay_seconds
        self._clock = clock
        self._last_sent: dict[str, float] = {}
        self._pause_task: asyncio.Task[None] | None = None
        self._available_tasks: dict[str, asyncio.Task[None]] = {}

    async def send_presence(self, jid: str, presence: Presence) -> bool:
        """Publish `presence` unless one was sent for `jid` within the window.

        Returns whether the update was sent.
        """

        if not self.enabled:
            return False
        now = self._clock()
        last = self._last_sent.get(jid)
        if last is not None and now - last < self.min_interval_seconds:
            logger.debug("Presence %s for %s dropped (rate limited)", presence, jid)
            return False
        self._last_sent[jid] = now
        try:
            await self.source.send_presence_update(presence, jid)
        except Exception as e:
            logger.warning("Presence %s for %s failed: %s", presence, jid, e)
            return False
        return True

    async def _send_unthrottled(self, jid: str, presence: Presence) -> None:
        try:
            await self.source.send_presence_update(presence, jid)
        except Exception as e:
            logger.warning("Presence %s for %s failed: %s", presence, jid, e)
        else:
            self._last_sent[jid] = self._clock()

    async def send_typing(self, jid: str) -> None:
        """`composing` now, `paused` after the pause delay."""

        if not self.enabled:
            return
        await self.send_presence(jid, "composing")
        # One pending pause for the whole coordinator; newer typing wins.
        _cancel(self._pause_task)
        self._pause_task = _schedule(
            self.typing_pause_seconds,
            lambda: self._send_unthrottled(jid, "paused"),
            name=f"wabridge-presence-pause:{jid}",
        )

    async def emulate_typing(self, jid: str) -> None:
        """`composing` now, `available` after the available delay."""

        if not self.enabled:
            return
        await self.send_presence(jid, "composing")
        _cancel(self._available_tasks.get(jid))

        async def _available() -> None:
            try:
                await self._send_unthrottled(jid, "available")
            finally:
                if self._available_tasks.get(jid) is asyncio.current_task():
                    del self._available_tasks[jid]

        self._available_tasks[jid] = _schedule(
            self.available_delay_seconds,
            _available,
            name=f"wabridge-presence-available:{jid}",
        )

    def pending_timers(self) -> int:
        pending = sum(1 for task in self._available_tasks.values() if not task.done())
        if self._pause_task is not None and not self._pause_task.done():
            pending += 1
        return pending

    async def aclose(self) -> None:
        tasks = [t for t in self._available_tasks.values() if not t.done()]
        if self._pause_task is not None and not self._pause_task.done():
            tasks.append(self._pause_task)
        self._available_tasks.clear()
        self._pause_task = None
        await _cancel_and_wait(tasks)


class ReadReceiptQueue:
    def __init__(
        self,
        source: SourceClient,
        *,
        enabled: bool = True,
        delay_seconds: float = 2.0,
    ) -> None:
        self.source = source
        self.enabled = enabled
        self.delay_seconds = delay_seconds
        self._pending: dict[str, list[dict[str, Any]]] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}

    def pending(self, jid: str) -> list[dict[str, Any]]:
        return list(self._pending.get(jid, ()))

    def enqueue(self, jid: str, key: dict[str, Any]) -> None:
        if not self.enabled:
            return
        batch = self._pending.setdefault(jid, [])
        batch.append(key)
        if jid in self._timers:
            return
        self._timers[jid] = _schedule(
            self.delay_seconds,
            lambda: self._flush_from_timer(jid),
            name=f"wabridge-read-receipts:{jid}",
        )

    async def _flush_from_timer(self, jid: str) -> None:
        self._timers.pop(jid, None)
        await self._send(jid)

    async def _send(self, jid: str) -> int:
        keys = self._pending.pop(jid, None)
        if not keys:
            return 0
        try:
            await self.source.read_messages(keys)
        except Exception as e:
            logger.warning("Read receipts for %s failed (%d keys): %s", jid, len(keys), e)
            return 0
        logger.debug("Marked %d messages read in %s", len(keys), jid)
        return len(keys)

    async def flush(self, jid: str) -> int:
        """Send the pending batch for `jid` now. Returns the number of keys sent."""

        _cancel(self._timers.pop(jid, None))
        return await self._send(jid)

    async def flush_all(self) -> int:
        sent = 0
        for jid in list(self._pending):
            sent += await self.flush(jid)
        return sent

    async def aclose(self) -> None:
        timers = [t for t in self._timers.values() if not t.done()]
        self._timers.clear()
        await _cancel_and_wait(timers)
        await self.flush_all()
