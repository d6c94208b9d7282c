"""Connectivity state and periodic ticks used to trigger drains."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Set, Union


Callback = Callable[[], Union[None, Awaitable[None]]]
Probe = Callable[[], Union[bool, Awaitable[bool]]]

logger = logging.getLogger("outbox.network")


async def _call(callback: Callable, *args):
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class NetworkObserver:
    """Reports online/offline transitions and drives periodic ticks.

    The host application reports connectivity with :meth:`set_online`. When a
    ``probe`` is given it is polled on every tick and its answer is fed into
    :meth:`set_online` before the tick callback runs.
    """

    def __init__(self, online: bool = True, probe: Optional[Probe] = None) -> None:
        self._online = online
        self._probe = probe
        self._on_online: List[Callback] = []
        self._on_offline: List[Callback] = []
        self._tick_tasks: Set[asyncio.Task] = set()

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        changed = online != self._online
        self._online = online
        if not changed:
            return
        logger.info("Network %s", "online" if online else "offline")
        for callback in list(self._on_online if online else self._on_offline):
            self._fire(callback)

    def _fire(self, callback: Callback) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("Network callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_failure)

    def on_online(self, callback: Callback) -> Callable[[], None]:
        self._on_online.append(callback)
        return lambda: _discard(self._on_online, callback)

    def on_offline(self, callback: Callback) -> Callable[[], None]:
        self._on_offline.append(callback)
        return lambda: _discard(self._on_offline, callback)

    async def refresh(self) -> bool:
        if self._probe is not None:
            try:
                online = bool(await _call(self._probe))
            except Exception:
                logger.exception("Connectivity probe failed")
                online = False
            self.set_online(online)
        return self._online

    def on_tick(self, interval_ms: int, callback: Callback) -> Callable[[], None]:
        """Call ``callback`` every ``interval_ms``; needs a running event loop."""

        interval = interval_ms / 1000.0

        async def _loop():
            while True:
                await asyncio.sleep(interval)
                await self.refresh()
                try:
                    await _call(callback)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Tick callback failed")

        task = asyncio.get_running_loop().create_task(_loop())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

        def _cancel() -> None:
            task.cancel()

        return _cancel

    def stop(self) -> None:
        for task in list(self._tick_tasks):
            task.cancel()
        self._tick_tasks.clear()
        self._on_online.clear()
        self._on_offline.clear()


def _discard(items: list, item) -> None:
    try:
        items.remove(item)
    except ValueError:
        pass


def _log_failure(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Network callback failed: %s", exc)


__all__ = ["NetworkObserver"]
