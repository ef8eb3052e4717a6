from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from capture_relay.classifier import FAILED_STATUSES, classify, parse_error
from capture_relay.clock import Clock, SystemClock, WakeTimer
from capture_relay.dispatcher import HttpDispatcher
from capture_relay.errors import ConfigError, MalformedResponseError
from capture_relay.models import (
    CaptureResult,
    Deferred,
    Immediate,
    Malformed,
    RelayConfig,
    TrackedRequest,
)
from capture_relay.notifications import Consumer, NotificationBridge
from capture_relay.scheduler import PollScheduler
from capture_relay.store import DuplicateRequestError, DurableStore
from capture_relay.tracker import RequestTracker


class CaptureRelay:
    """Sends captures to the configured backend and follows deferred ones to completion"""

    def __init__(
        self,
        config: RelayConfig,
        store: Union[DurableStore, str, Path] = "capture_relay.sqlite3",
        dispatcher: Optional[HttpDispatcher] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationBridge] = None,
    ):
        self.logger = logger
        self.clock = clock or SystemClock()
        self._owns_store = not isinstance(store, DurableStore)
        self.store = store if isinstance(store, DurableStore) else DurableStore(store)
        self.dispatcher = dispatcher or HttpDispatcher(config.sensitive_headers)
        self.notifier = notifier or NotificationBridge()
        self.tracker = RequestTracker(self.store, config, self.clock)
        self.scheduler = PollScheduler(
            self.tracker,
            self.dispatcher,
            self.notifier,
            WakeTimer(self.store, self.clock),
            self.clock,
        )

    @property
    def config(self) -> RelayConfig:
        return self.tracker.config

    def reconfigure(self, config: RelayConfig) -> None:
        """Swaps in a new settings snapshot; records already tracked keep their status URL"""
        self.tracker.config = config
        self.logger.info("Relay configuration updated")

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.notifier.close()
        await self.dispatcher.close()
        if self._owns_store:
            self.store.close()

    async def __aenter__(self) -> "CaptureRelay":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def subscribe(self, consumer: Consumer):
        """Registers a UI consumer; outcomes that found nobody listening are delivered to it"""
        unsubscribe = self.notifier.subscribe(consumer)
        if self.scheduler.running:
            self.scheduler.deliver_outstanding()
        return unsubscribe

    async def submit(self, payload: Any, context_ref: str = "") -> CaptureResult:
        """
        POST a capture and classify the reply.

        Client errors, malformed replies and transport failures are raised to
        the caller. A deferred reply is tracked and polled in the background;
        the caller gets control back immediately.
        """
        config = self.config
        if not config.endpoint_url:
            raise ConfigError("No endpoint URL configured")

        self.logger.info(f"Sending capture {context_ref or '<unnamed>'} to {config.endpoint_url}")
        raw = await self.dispatcher.send(
            "POST",
            config.endpoint_url,
            body=payload,
            headers=config.headers,
            timeout_ms=config.request_timeout_ms,
        )
        outcome = classify(raw)

        if isinstance(outcome, Malformed):
            self.logger.error(f"Malformed response for capture {context_ref}: {outcome.reason}")
            raise MalformedResponseError(outcome.reason, url=config.endpoint_url)

        if isinstance(outcome, Immediate):
            body = outcome.payload
            status = body.get("status") if isinstance(body.get("status"), str) else None
            result = body["result"] if status == "completed" and "result" in body else body
            error = parse_error(body.get("error")) if status in FAILED_STATUSES else None
            return CaptureResult(kind="immediate", context_ref=context_ref, result=result, status=status, error=error)

        if isinstance(outcome, Deferred):
            return self._track(outcome, context_ref, config)

        self.logger.info(f"Request {outcome.request_id} already {outcome.status}, not tracking")
        return CaptureResult(
            kind="terminal",
            context_ref=context_ref,
            request_id=outcome.request_id,
            status=outcome.status,
            result=outcome.result,
            error=outcome.error,
        )

    def _track(self, deferred: Deferred, context_ref: str, config: RelayConfig) -> CaptureResult:
        result = CaptureResult(
            kind="deferred",
            context_ref=context_ref,
            request_id=deferred.request_id,
            status=deferred.status,
        )
        if not config.enable_polling:
            self.logger.info(f"Polling disabled, not tracking {deferred.request_id}")
            return result

        try:
            request = self.tracker.create(deferred.request_id, context_ref, deferred.estimated_duration_ms)
        except DuplicateRequestError:
            self.logger.warning(f"Request {deferred.request_id} is already being tracked")
        else:
            self.scheduler.track(request)
        return result.model_copy(update={"tracked": True})

    async def cancel(self, request_id: str) -> Optional[TrackedRequest]:
        return await self.scheduler.cancel(request_id)

    def status(self, request_id: str) -> Optional[TrackedRequest]:
        return self.tracker.get(request_id)

    def active_requests(self) -> list[TrackedRequest]:
        return self.tracker.active()
