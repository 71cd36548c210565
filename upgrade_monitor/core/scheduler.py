"""
Scheduled task helpers.

Timers are returned as explicit ``ScheduledTask`` handles so that owners can
cancel them on connection switch or teardown. Callbacks are spawned as their
own tasks: a callback may cancel the timer that fired it without cancelling
itself.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Set

from upgrade_monitor.core.logging import logger

Callback = Callable[[], Awaitable[None]]


class ScheduledTask:
    """可取消的定时任务句柄"""

    def __init__(self, name: str, delay: float, repeat: bool):
        self.name = name
        self.delay = delay
        self.repeat = repeat
        self._timer: Optional[asyncio.Task] = None
        self._cancelled = False
        self._finished = False

    def attach(self, timer: asyncio.Task) -> None:
        self._timer = timer
        timer.add_done_callback(lambda _: self.mark_finished())

    def mark_finished(self) -> None:
        self._finished = True

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        logger.debug("定时任务已取消: %s", self.name)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not self._cancelled and not self._finished

    def __repr__(self) -> str:
        kind = "every" if self.repeat else "once"
        return f"<ScheduledTask {self.name} {kind} {self.delay}s active={self.active}>"


class Scheduler:
    """基于 asyncio 的定时调度器"""

    def __init__(self):
        self._timers: Set[ScheduledTask] = set()
        self._callbacks: Set[asyncio.Task] = set()

    def call_later(self, delay: float, callback: Callback, name: str = "once") -> ScheduledTask:
        """延迟 delay 秒后执行一次 callback"""
        handle = ScheduledTask(name, delay, repeat=False)

        async def once() -> None:
            await asyncio.sleep(delay)
            if not handle.cancelled:
                self._spawn(callback, name)

        self._start(handle, once)
        return handle

    def call_every(self, interval: float, callback: Callback, name: str = "every") -> ScheduledTask:
        """每隔 interval 秒执行一次 callback，直到被取消"""
        handle = ScheduledTask(name, interval, repeat=True)

        async def tick() -> None:
            while not handle.cancelled:
                await asyncio.sleep(interval)
                if not handle.cancelled:
                    self._spawn(callback, name)

        self._start(handle, tick)
        return handle

    def _start(self, handle: ScheduledTask, body: Callable[[], Awaitable[None]]) -> None:
        timer = asyncio.get_running_loop().create_task(body(), name=f"timer:{handle.name}")
        handle.attach(timer)
        self._timers.add(handle)
        timer.add_done_callback(lambda _: self._timers.discard(handle))

    def _spawn(self, callback: Callback, name: str) -> None:
        task = asyncio.get_running_loop().create_task(callback(), name=f"callback:{name}")
        self._callbacks.add(task)
        task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._callbacks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("定时任务回调异常 (%s): %s", task.get_name(), exc, exc_info=exc)

    @property
    def active_timers(self) -> int:
        return sum(1 for handle in self._timers if handle.active)

    async def shutdown(self) -> None:
        """取消所有定时器及仍在运行的回调"""
        for handle in list(self._timers):
            handle.cancel()
        pending = [task for task in self._callbacks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._timers.clear()
        self._callbacks.clear()
