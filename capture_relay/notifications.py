import asyncio
import inspect
from typing import Any, Callable, Optional

from loguru import logger

from capture_relay.models import NotificationEvent

Consumer = Callable[[NotificationEvent], Any]
Settled = Callable[[bool], None]


class _Receipt:
    """Counts down the consumers an event was queued for"""

    def __init__(self, pending: int, on_settled: Settled):
        self.pending = pending
        self.delivered = 0
        self.on_settled = on_settled

    def settle(self, delivered: bool) -> bool:
        """Returns True once the last consumer has settled"""
        self.pending -= 1
        if delivered:
            self.delivered += 1
        return self.pending == 0


class _Subscription:
    def __init__(self, consumer: Consumer):
        self.consumer = consumer
        self.queue: asyncio.Queue = asyncio.Queue()
        self.worker: Optional[asyncio.Task] = None


class NotificationBridge:
    """
    Fans progress and terminal events out to UI consumers.

    ``notify`` only enqueues, so it never waits on a consumer. Each consumer
    drains its own queue in its own task, in order, and a consumer that
    raises is logged and kept subscribed.

    A caller that needs to know when an event has actually reached the
    consumers passes ``on_settled``. It is called once every consumer the
    event was queued for has handled it or gone away, with True when at
    least one of them received it.
    """

    def __init__(self):
        self.logger = logger
        self._subscriptions: dict[int, _Subscription] = {}
        self._next_id = 0

    @property
    def consumer_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, consumer: Consumer) -> Callable[[], None]:
        sub_id = self._next_id
        self._next_id += 1
        self._subscriptions[sub_id] = _Subscription(consumer)

        def unsubscribe() -> None:
            sub = self._subscriptions.pop(sub_id, None)
            if sub is None:
                return
            while not sub.queue.empty():
                _, receipt = sub.queue.get_nowait()
                sub.queue.task_done()
                self._settle(receipt, delivered=False)
            if sub.worker is not None:
                sub.worker.cancel()

        return unsubscribe

    def notify(self, request_id: str, event: NotificationEvent, on_settled: Optional[Settled] = None) -> int:
        """
        Queues ``event`` for every consumer and returns how many it was queued for.

        With no consumers nothing is queued and ``on_settled`` is never called.
        """
        if not self._subscriptions:
            self.logger.debug(f"No consumers for {event.kind} event of {request_id}")
            return 0
        subs = list(self._subscriptions.values())
        receipt = _Receipt(len(subs), on_settled) if on_settled is not None else None
        for sub in subs:
            sub.queue.put_nowait((event, receipt))
            self._ensure_worker(sub)
        self.logger.debug(f"Queued {event.kind} event for {request_id} to {len(subs)} consumers")
        return len(subs)

    def _ensure_worker(self, sub: _Subscription) -> None:
        if sub.worker is None or sub.worker.done():
            sub.worker = asyncio.get_running_loop().create_task(self._deliver(sub))

    async def _deliver(self, sub: _Subscription) -> None:
        while True:
            event, receipt = await sub.queue.get()
            try:
                await self._hand_over(sub.consumer, event)
            except asyncio.CancelledError:
                self._settle(receipt, delivered=False)
                raise
            else:
                self._settle(receipt, delivered=True)
            finally:
                sub.queue.task_done()

    async def _hand_over(self, consumer: Consumer, event: NotificationEvent) -> None:
        try:
            outcome = consumer(event)
            if inspect.isawaitable(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception(f"Consumer failed handling {event.kind} event for {event.request_id}")

    def _settle(self, receipt: Optional[_Receipt], delivered: bool) -> None:
        if receipt is None or not receipt.settle(delivered):
            return
        try:
            receipt.on_settled(receipt.delivered > 0)
        except Exception:
            self.logger.exception("Delivery callback failed")

    async def flush(self) -> None:
        """Waits until every queued event has been handed to its consumer"""
        await asyncio.gather(*(sub.queue.join() for sub in list(self._subscriptions.values())))

    async def close(self, timeout: float = 5.0) -> None:
        try:
            await asyncio.wait_for(self.flush(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Notification consumers did not drain before shutdown")
        workers = [sub.worker for sub in self._subscriptions.values() if sub.worker is not None]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for sub in self._subscriptions.values():
            sub.worker = None
