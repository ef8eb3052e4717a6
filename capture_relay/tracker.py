from typing import Callable, Optional

from loguru import logger

from capture_relay.clock import Clock, SystemClock
from capture_relay.errors import (
    CANCELLED,
    POLL_TIMEOUT,
    DispatchError,
    InvalidTransitionError,
    PollTimeoutError,
)
from capture_relay.models import (
    ErrorInfo,
    PollStatus,
    RelayConfig,
    RequestStatus,
    StatusPayload,
    TrackedRequest,
)
from capture_relay.store import DurableStore


class RequestTracker:
    """
    Owns every state transition of a TrackedRequest.

    pending -> polling -> completed | failed | timed_out

    All changes go through ``DurableStore.update_request`` so each one is an
    atomic compare-and-set on the stored record. ``poll_in_flight`` is the
    per-request guard: ``begin_poll`` sets it, and the matching result,
    error, timeout or cancellation clears it.
    """

    def __init__(self, store: DurableStore, config: RelayConfig, clock: Optional[Clock] = None):
        self.store = store
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logger

    def get(self, request_id: str) -> Optional[TrackedRequest]:
        return self.store.get_request(request_id)

    def active(self) -> list[TrackedRequest]:
        return [r for r in self.store.list_requests() if not r.status.is_terminal]

    def terminal(self) -> list[TrackedRequest]:
        return [r for r in self.store.list_requests() if r.status.is_terminal]

    def create(
        self,
        request_id: str,
        context_ref: str = "",
        estimated_duration_ms: Optional[int] = None,
    ) -> TrackedRequest:
        now = self.clock.now_ms()
        request = TrackedRequest(
            request_id=request_id,
            context_ref=context_ref,
            status=RequestStatus.pending,
            created_at=now,
            last_polled_at=now,
            poll_count=0,
            current_interval_ms=self.config.initial_interval_ms,
            status_url=self.config.status_url_for(request_id),
            estimated_duration_ms=estimated_duration_ms,
        )
        self.store.insert_request(request)
        self.logger.info(f"Tracking request {request_id} for {context_ref or 'unknown capture'}")
        return request

    def _transition(
        self, request_id: str, mutate: Callable[[TrackedRequest], Optional[TrackedRequest]]
    ) -> Optional[TrackedRequest]:
        """Runs ``mutate`` atomically; returns the new record only if it changed"""
        changed: list[TrackedRequest] = []

        def apply(current: TrackedRequest) -> Optional[TrackedRequest]:
            updated = mutate(current)
            if updated is not None:
                changed.append(updated)
            return updated

        self.store.update_request(request_id, apply)
        return changed[0] if changed else None

    def _timed_out(self, current: TrackedRequest, now: int) -> Optional[TrackedRequest]:
        if current.status.is_terminal or current.age_ms(now) <= self.config.max_duration_ms:
            return None
        timeout = PollTimeoutError(current.request_id, self.config.max_duration_ms)
        return current.model_copy(
            update={
                "status": RequestStatus.timed_out,
                "poll_in_flight": False,
                "error": ErrorInfo(code=POLL_TIMEOUT, message=str(timeout)),
                "completed_at": now,
            }
        )

    def begin_poll(self, request_id: str) -> Optional[TrackedRequest]:
        """Claims the poll slot; None means no poll may be issued right now"""
        now = self.clock.now_ms()

        def mutate(current: TrackedRequest) -> Optional[TrackedRequest]:
            if current.status.is_terminal or current.poll_in_flight:
                return None
            return current.model_copy(
                update={
                    "status": RequestStatus.polling,
                    "poll_in_flight": True,
                    "poll_count": current.poll_count + 1,
                    "last_polled_at": now,
                }
            )

        claimed = self._transition(request_id, mutate)
        if claimed is None:
            self.logger.debug(f"Poll for {request_id} skipped: terminal, unknown or already in flight")
        return claimed

    def apply_poll_result(self, request_id: str, payload: StatusPayload) -> Optional[TrackedRequest]:
        """Applies a status response; a no-op for terminal records, where timeout beats the result"""
        now = self.clock.now_ms()

        def mutate(current: TrackedRequest) -> Optional[TrackedRequest]:
            if current.status.is_terminal:
                return None
            timed_out = self._timed_out(current, now)
            if timed_out is not None:
                return timed_out

            if payload.status is PollStatus.processing:
                # backoff_multiplier >= 1, so this never shrinks below the current interval
                next_interval = min(
                    round(current.current_interval_ms * self.config.backoff_multiplier),
                    self.config.max_interval_ms,
                )
                return current.model_copy(
                    update={
                        "status": RequestStatus.polling,
                        "poll_in_flight": False,
                        "progress": payload.progress if payload.progress is not None else current.progress,
                        "message": payload.message if payload.message is not None else current.message,
                        "current_interval_ms": next_interval,
                    }
                )

            if payload.status is PollStatus.completed:
                return current.model_copy(
                    update={
                        "status": RequestStatus.completed,
                        "poll_in_flight": False,
                        "progress": 1.0,
                        "message": payload.message,
                        "result": payload.result,
                        "completed_at": now,
                    }
                )

            return current.model_copy(
                update={
                    "status": RequestStatus.failed,
                    "poll_in_flight": False,
                    "message": payload.message,
                    "error": payload.error,
                    "completed_at": now,
                }
            )

        updated = self._transition(request_id, mutate)
        if updated is None:
            self.logger.debug(f"Discarded {payload.status.value} result for {request_id}")
        elif updated.status.is_terminal:
            self.logger.info(f"Request {request_id} reached {updated.status.value}")
        return updated

    def record_poll_error(self, request_id: str, error: DispatchError) -> Optional[TrackedRequest]:
        """
        Releases the poll slot after a failed status call.

        Retryable errors leave the record polling with its interval unchanged;
        anything else (a 4xx, an unusable body) fails the request.
        """
        now = self.clock.now_ms()

        def mutate(current: TrackedRequest) -> Optional[TrackedRequest]:
            if current.status.is_terminal:
                return None
            timed_out = self._timed_out(current, now)
            if timed_out is not None:
                return timed_out
            if error.retryable:
                return current.model_copy(update={"poll_in_flight": False})
            return current.model_copy(
                update={
                    "status": RequestStatus.failed,
                    "poll_in_flight": False,
                    "error": ErrorInfo(code=error.code, message=error.message),
                    "completed_at": now,
                }
            )

        updated = self._transition(request_id, mutate)
        if updated is not None and updated.status is RequestStatus.failed:
            self.logger.warning(f"Request {request_id} failed on non-retryable error: {error.message}")
        return updated

    def check_timeout(self, request_id: str, now: Optional[int] = None) -> Optional[TrackedRequest]:
        """Forces timed_out when the request is older than max_duration_ms; returns it if so"""
        now = self.clock.now_ms() if now is None else now
        updated = self._transition(request_id, lambda current: self._timed_out(current, now))
        if updated is not None:
            self.logger.warning(f"Polling timeout exceeded for {request_id}")
        return updated

    def cancel(self, request_id: str, reason: str = "Request was cancelled") -> Optional[TrackedRequest]:
        now = self.clock.now_ms()

        def mutate(current: TrackedRequest) -> Optional[TrackedRequest]:
            if current.status.is_terminal:
                return None
            return current.model_copy(
                update={
                    "status": RequestStatus.failed,
                    "poll_in_flight": False,
                    "error": ErrorInfo(code=CANCELLED, message=reason),
                    "completed_at": now,
                }
            )

        updated = self._transition(request_id, mutate)
        if updated is not None:
            self.logger.info(f"Request {request_id} cancelled")
        return updated

    def remove(self, request_id: str) -> bool:
        current = self.store.get_request(request_id)
        if current is None:
            return False
        if not current.status.is_terminal:
            raise InvalidTransitionError(
                f"Cannot remove request {request_id} in state {current.status.value}"
            )
        removed = self.store.delete_request(request_id)
        self.logger.debug(f"Removed request {request_id}")
        return removed

    def release_poll(self, request_id: str) -> Optional[TrackedRequest]:
        """Frees the poll slot without recording any outcome"""
        return self._transition(
            request_id,
            lambda current: current.model_copy(update={"poll_in_flight": False})
            if current.poll_in_flight and not current.status.is_terminal
            else None,
        )

    def release_stale_guards(self) -> list[str]:
        """Clears poll slots left claimed by a process that died mid-poll"""
        released = []
        for request in self.active():
            if request.poll_in_flight and self.release_poll(request.request_id) is not None:
                released.append(request.request_id)
        if released:
            self.logger.info(f"Released {len(released)} interrupted polls: {released}")
        return released
