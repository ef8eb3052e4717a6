import asyncio
from typing import Optional

from loguru import logger

from capture_relay.classifier import parse_status
from capture_relay.clock import Clock, SystemClock, WakeTimer
from capture_relay.dispatcher import HttpDispatcher
from capture_relay.errors import DispatchError, NetworkError
from capture_relay.models import PollStatus, ProgressEvent, TerminalEvent, TrackedRequest
from capture_relay.notifications import NotificationBridge
from capture_relay.tracker import RequestTracker


class PollScheduler:
    """
    Drives status polls for every tracked request.

    Each wake-up runs ``tick``: time out overdue requests, then start one
    poll task for every request whose interval has elapsed. Polls run as
    independent tasks so a slow backend response for one request never
    delays another. After any change the durable wake timer is re-armed for
    the earliest upcoming poll or timeout deadline.
    """

    def __init__(
        self,
        tracker: RequestTracker,
        dispatcher: HttpDispatcher,
        notifier: NotificationBridge,
        timer: WakeTimer,
        clock: Optional[Clock] = None,
    ):
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.timer = timer
        self.clock = clock or tracker.clock or SystemClock()
        self.logger = logger
        self._polls: dict[str, asyncio.Task] = {}
        self._delivering: set[str] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def config(self):
        return self.tracker.config

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> set[str]:
        return set(self._polls)

    def deadline_of(self, request: TrackedRequest) -> int:
        """First instant at which the request counts as timed out"""
        return request.created_at + self.config.max_duration_ms + 1

    def next_due_at(self, request: TrackedRequest) -> int:
        if request.poll_in_flight:
            return self.deadline_of(request)
        return min(request.next_poll_at(), self.deadline_of(request))

    # lifecycle

    async def start(self) -> None:
        """Recovers persisted state and starts the wake-up loop"""
        if self._running:
            return
        self.recover()
        self._running = True
        self._loop_task = asyncio.get_running_loop().create_task(self._run())
        self.logger.info(f"Poll scheduler started with {len(self.tracker.active())} active requests")

    def recover(self) -> None:
        """Makes the persisted state consistent again after a restart"""
        self.tracker.release_stale_guards()
        self.deliver_outstanding()
        self.timer.resume()

    def deliver_outstanding(self) -> None:
        """Notifies every terminal record whose outcome no consumer has received yet"""
        for leftover in self.tracker.terminal():
            if leftover.request_id not in self._delivering:
                self.logger.info(f"Delivering outstanding {leftover.status.value} outcome for {leftover.request_id}")
                self._finalize(leftover)

    async def stop(self) -> None:
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        polls = list(self._polls.values())
        for task in polls:
            task.cancel()
        await asyncio.gather(*polls, return_exceptions=True)
        self.timer.suspend()
        # records still awaiting delivery stay stored and are notified again on start
        self._delivering.clear()
        self.logger.info("Poll scheduler stopped")

    async def drain(self) -> None:
        """Waits until no poll is in flight"""
        while self._polls:
            await asyncio.gather(*list(self._polls.values()), return_exceptions=True)

    async def _run(self) -> None:
        self._safe_tick()
        while self._running:
            await self.timer.wait()
            self._safe_tick()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            self.logger.exception("Scheduling tick failed")
            self.timer.arm(self.config.initial_interval_ms)

    # scheduling

    def track(self, request: TrackedRequest) -> None:
        """Called once a new request is stored, so the timer accounts for it"""
        self.logger.debug(f"Scheduling first poll of {request.request_id} at {request.next_poll_at()}")
        self._rearm()

    def tick(self) -> list[str]:
        """Runs one scheduling pass and returns the ids of the polls it started"""
        now = self.clock.now_ms()
        started = []

        self.deliver_outstanding()

        for request in self.tracker.active():
            timed_out = self.tracker.check_timeout(request.request_id, now)
            if timed_out is not None:
                self._finalize(timed_out)
                continue
            if request.poll_in_flight or request.request_id in self._polls:
                continue
            if now >= request.next_poll_at() and self._launch(request.request_id):
                started.append(request.request_id)

        self._rearm()
        return started

    async def cancel(self, request_id: str, reason: str = "Request was cancelled") -> Optional[TrackedRequest]:
        """Fails the request right away; an in-flight poll's later result is discarded"""
        cancelled = self.tracker.cancel(request_id, reason)
        if cancelled is not None:
            self._finalize(cancelled)
            self._rearm()
        return cancelled

    def _launch(self, request_id: str) -> bool:
        claimed = self.tracker.begin_poll(request_id)
        if claimed is None:
            return False
        task = asyncio.get_running_loop().create_task(self._poll(claimed))
        self._polls[request_id] = task
        task.add_done_callback(lambda _: self._polls.pop(request_id, None))
        return True

    async def _poll(self, request: TrackedRequest) -> None:
        request_id = request.request_id
        self.logger.info(f"Polling {request_id} (attempt {request.poll_count}): {request.status_url}")
        try:
            raw = await self.dispatcher.send(
                "GET",
                request.status_url,
                headers=self.config.headers,
                timeout_ms=self.config.request_timeout_ms,
            )
            payload = parse_status(raw)
        except asyncio.CancelledError:
            self.tracker.release_poll(request_id)
            raise
        except DispatchError as e:
            if e.retryable:
                self.logger.warning(f"Transient error polling {request_id}: {e.message}")
            updated = self.tracker.record_poll_error(request_id, e)
        except Exception as e:
            # no traceback: the dispatcher frames hold the unredacted headers
            self.logger.error(f"Unexpected error polling {request_id}: {type(e).__name__}: {e}")
            updated = self.tracker.record_poll_error(request_id, NetworkError(str(e)))
        else:
            updated = self.tracker.apply_poll_result(request_id, payload)
            if updated is not None and payload.status is PollStatus.processing and not updated.status.is_terminal:
                self.logger.info(f"Request {request_id} still processing, next poll in {updated.current_interval_ms}ms")
                self.notifier.notify(
                    request_id,
                    ProgressEvent(
                        request_id=request_id,
                        context_ref=updated.context_ref,
                        poll_count=updated.poll_count,
                        progress=updated.progress,
                        message=updated.message,
                    ),
                )

        if updated is not None and updated.status.is_terminal:
            self._finalize(updated)
        self._rearm()

    def _finalize(self, request: TrackedRequest) -> None:
        """
        Hands the terminal outcome to the bridge.

        The record stays in the store until a consumer has received the
        event, so an outcome queued but not yet delivered when the process
        dies is delivered again after the restart.
        """
        request_id = request.request_id
        if request_id in self._delivering:
            return
        queued = self.notifier.notify(
            request_id,
            TerminalEvent.from_request(request),
            on_settled=lambda delivered: self._collect(request_id, delivered),
        )
        if queued:
            self._delivering.add(request_id)
        else:
            self.logger.warning(f"No consumer for the outcome of {request_id}, keeping it until one subscribes")

    def _collect(self, request_id: str, delivered: bool) -> None:
        self._delivering.discard(request_id)
        if not delivered:
            self.logger.warning(f"Outcome of {request_id} did not reach a consumer, keeping it for redelivery")
            return
        self.tracker.remove(request_id)

    def _rearm(self) -> None:
        active = self.tracker.active()
        if not active:
            self.timer.disarm()
            return
        now = self.clock.now_ms()
        next_at = min(self.next_due_at(r) for r in active)
        self.timer.arm(max(0, next_at - now))
