import asyncio
import inspect
from typing import Any, Callable, Optional

from orbitour.base import setup_logger

logger = setup_logger(__name__)

DEFAULT_INTERVAL_SEC = 0.5


class AutoplayTimer:
    """
    Repeating timer that advances the tour while autoplay is on.

    The task is created once by ``start()`` and keeps running; every tick calls
    whatever ``action`` currently holds, so owners swap the action instead of
    restarting the timer. Ticks only happen while the gate is open.
    """

    def __init__(self, interval_sec: float = DEFAULT_INTERVAL_SEC, action: Optional[Callable[[], Any]] = None):
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec}")
        self.interval_sec = interval_sec
        self.action = action
        self._speed = 1.0
        self._gate = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def speed(self) -> float:
        return self._speed

    @speed.setter
    def speed(self, value: float) -> None:
        if value <= 0:
            raise ValueError(f"Playback speed must be positive, got {value}")
        self._speed = value

    @property
    def interval(self) -> float:
        return self.interval_sec / self._speed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def gate_open(self) -> bool:
        return self._gate.is_set()

    def set_gate(self, is_open: bool) -> None:
        if is_open:
            self._gate.set()
        else:
            self._gate.clear()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await self._gate.wait()
            await asyncio.sleep(self.interval)
            if not self._gate.is_set() or self.action is None:
                continue
            self.ticks += 1
            try:
                result = self.action()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Autoplay action failed")
