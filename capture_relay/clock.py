import asyncio
import time
from typing import Optional, Protocol

from loguru import logger

from capture_relay.models import SchedulerState
from capture_relay.store import DurableStore


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    def now_ms(self) -> int:
        return int(time.time() * 1000)


class WakeTimer:
    """
    One-shot wake-up that survives restarts.

    The target time is written to the store before the in-process timer is
    scheduled, so a restarted process can call ``resume`` and fire at the
    same moment (or right away if that moment already passed).
    """

    def __init__(self, store: DurableStore, clock: Clock):
        self.store = store
        self.clock = clock
        self.logger = logger
        self._handle: Optional[asyncio.TimerHandle] = None
        self._event = asyncio.Event()

    @property
    def next_wake_at(self) -> Optional[int]:
        return self.store.get_scheduler_state().next_wake_at

    def arm(self, delay_ms: int) -> int:
        """Persists and schedules a wake-up ``delay_ms`` from now, replacing any earlier one"""
        wake_at = self.clock.now_ms() + max(0, int(delay_ms))
        self.store.set_scheduler_state(SchedulerState(next_wake_at=wake_at))
        self._schedule(max(0, int(delay_ms)))
        self.logger.debug(f"Wake timer armed for {delay_ms}ms")
        return wake_at

    def resume(self) -> Optional[int]:
        """Re-arms from the persisted wake time after a restart"""
        wake_at = self.next_wake_at
        if wake_at is None:
            return None
        delay = max(0, wake_at - self.clock.now_ms())
        self._schedule(delay)
        self.logger.debug(f"Wake timer resumed, firing in {delay}ms")
        return wake_at

    def disarm(self) -> None:
        self._cancel_handle()
        self.store.set_scheduler_state(SchedulerState(next_wake_at=None))

    def suspend(self) -> None:
        """Drops the in-process timer but keeps the persisted wake time for ``resume``"""
        self._cancel_handle()

    def fire(self) -> None:
        self._handle = None
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
        self._event.clear()

    def _schedule(self, delay_ms: int) -> None:
        self._cancel_handle()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_ms / 1000, self.fire)

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
