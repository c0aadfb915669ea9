import logging

import asyncio

from enum import IntEnum
from typing import Callable

from conf import TIMER_TICK_SECONDS


class State(IntEnum):
    IDLE = 1
    RUNNING = 2
    EXPIRED = 3
    CANCELLED = 4


class StageTimer:
    """Countdown for a single stage.

    The timer only ever decrements its counter; what happens at zero is up to the
    on_expire callback. A duration of 0 makes the timer inert: it never starts and
    never expires, the stage waits for an explicit advance.

    Usable as an async context manager so the countdown is always released when the
    stage is left.
    """

    def __init__(
        self,
        duration_seconds: int,
        on_expire: Callable[[], None] | None = None,
        tick_seconds: float = TIMER_TICK_SECONDS,
    ) -> None:
        if duration_seconds < 0:
            raise ValueError("[ StageTimer.__init__ ] Duration cannot be negative")
        if tick_seconds <= 0:
            raise ValueError("[ StageTimer.__init__ ] Tick has to be positive")
        self.duration_seconds = duration_seconds
        self.remaining = duration_seconds
        self.on_expire = on_expire
        self.tick_seconds = tick_seconds
        self.state = State.IDLE
        self._task: asyncio.Task | None = None

    @property
    def is_inert(self) -> bool:
        return self.duration_seconds == 0

    @property
    def is_running(self) -> bool:
        return self.state == State.RUNNING

    def start(self) -> None:
        if self.state == State.RUNNING:
            raise RuntimeError("[ StageTimer.start ] The timer is already running")
        if self.is_inert or self.remaining <= 0:
            return
        self.state = State.RUNNING
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self.state == State.RUNNING:
            self.state = State.CANCELLED

    def reset(self) -> None:
        self.cancel()
        self.remaining = self.duration_seconds
        self.state = State.IDLE
        self.start()

    async def _run(self) -> None:
        while self.remaining > 0:
            await asyncio.sleep(self.tick_seconds)
            self.remaining -= 1

        self.state = State.EXPIRED
        self._task = None
        logging.info("[ StageTimer._run ] Timer expired")
        if self.on_expire is not None:
            self.on_expire()

    async def __aenter__(self) -> "StageTimer":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()
