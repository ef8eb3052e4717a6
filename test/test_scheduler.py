import asyncio

import pytest
from fakes import ENDPOINT, Gate, ScriptedDispatcher, json_response
from loguru import logger

from capture_relay.clock import WakeTimer
from capture_relay.errors import HttpError, NetworkError
from capture_relay.models import ErrorInfo, ProgressEvent, RequestStatus, TerminalEvent
from capture_relay.notifications import NotificationBridge
from capture_relay.scheduler import PollScheduler
from capture_relay.store import DurableStore
from capture_relay.tracker import RequestTracker

PROCESSING = json_response({"status": "processing"})


def status_url(request_id: str) -> str:
    return f"{ENDPOINT}/status/{request_id}"


def terminal_events(events):
    return [e for e in events if isinstance(e, TerminalEvent)]


async def step(scheduler, clock):
    """Jumps the clock to the next moment anything is due and runs one tick."""
    active = scheduler.tracker.active()
    if active:
        clock.now = max(clock.now, min(scheduler.next_due_at(r) for r in active))
    scheduler.tick()
    await scheduler.drain()


@pytest.mark.asyncio
async def test_deferred_request_polls_until_completed(scheduler, tracker, dispatcher, notifier, events, clock):
    """Pending -> processing with backoff -> completed, notified, then removed."""
    url = status_url("r1")
    dispatcher.script(
        url,
        json_response({"status": "processing", "progress": 0.4}),
        json_response({"status": "completed", "result": {"score": 0.9}}),
    )
    scheduler.track(tracker.create("r1", "post-1", estimated_duration_ms=10000))

    assert scheduler.tick() == []
    clock.advance(1999)
    assert scheduler.tick() == []

    clock.advance(1)
    assert scheduler.tick() == ["r1"]
    await scheduler.drain()
    record = tracker.get("r1")
    assert record.status is RequestStatus.polling
    assert record.progress == 0.4
    assert record.current_interval_ms == 3000

    clock.advance(2999)
    assert scheduler.tick() == []
    clock.advance(1)
    assert scheduler.tick() == ["r1"]
    await scheduler.drain()
    await notifier.flush()

    assert tracker.get("r1") is None
    assert dispatcher.calls_to(url) == 2
    assert isinstance(events[0], ProgressEvent)
    assert events[0].progress == 0.4
    assert events[-1] == TerminalEvent(
        request_id="r1", context_ref="post-1", status=RequestStatus.completed, result={"score": 0.9}
    )


@pytest.mark.asyncio
async def test_status_polls_reuse_configured_headers(scheduler, tracker, dispatcher, clock):
    dispatcher.script(status_url("r1"), PROCESSING)
    tracker.create("r1")
    clock.advance(2000)

    scheduler.tick()
    await scheduler.drain()

    call = dispatcher.calls[0]
    assert call["method"] == "GET"
    assert call["headers"]["Authorization"] == "Bearer s3cret"


@pytest.mark.asyncio
async def test_endless_processing_times_out(scheduler, tracker, notifier, events, clock, config):
    """A request that never finishes is timed out within max_duration + max_interval."""
    scheduler.dispatcher.default = PROCESSING
    t0 = tracker.create("r1").created_at

    while tracker.active():
        await step(scheduler, clock)
    await notifier.flush()

    assert tracker.get("r1") is None
    assert clock.now <= t0 + config.max_duration_ms + config.max_interval_ms
    [terminal] = terminal_events(events)
    assert terminal.status is RequestStatus.timed_out
    assert terminal.error.code == "POLL_TIMEOUT"


@pytest.mark.asyncio
async def test_transient_errors_do_not_fail_request(scheduler, tracker, dispatcher, notifier, events, clock):
    url = status_url("r1")
    dispatcher.script(
        url,
        NetworkError("connection refused"),
        NetworkError("connection refused"),
        NetworkError("connection refused"),
        json_response({"status": "completed", "result": "ok"}),
    )
    tracker.create("r1")

    for attempt in range(1, 4):
        await step(scheduler, clock)
        record = tracker.get("r1")
        assert record.status is RequestStatus.polling
        assert record.poll_count == attempt
        assert record.current_interval_ms == 2000

    await step(scheduler, clock)
    await notifier.flush()
    assert tracker.get("r1") is None
    assert terminal_events(events)[0].status is RequestStatus.completed


@pytest.mark.asyncio
async def test_cancel_while_poll_in_flight(scheduler, tracker, dispatcher, notifier, events, clock):
    gate = Gate(json_response({"status": "completed", "result": "too late"}))
    dispatcher.script(status_url("r7"), gate)
    tracker.create("r7", "post-7")
    clock.advance(2000)
    scheduler.tick()
    await gate.entered.wait()

    cancelled = await scheduler.cancel("r7")

    assert cancelled.status is RequestStatus.failed
    assert cancelled.error == ErrorInfo(code="cancelled", message="Request was cancelled")
    assert tracker.get("r7").status is RequestStatus.failed

    gate.release()
    await scheduler.drain()
    await notifier.flush()
    assert tracker.get("r7") is None
    [terminal] = terminal_events(events)
    assert terminal.status is RequestStatus.failed
    assert terminal.error.code == "cancelled"


@pytest.mark.asyncio
async def test_only_one_poll_in_flight_per_request(scheduler, tracker, dispatcher, clock):
    gate = Gate(PROCESSING)
    dispatcher.script(status_url("r1"), gate)
    tracker.create("r1")
    clock.advance(2000)

    assert scheduler.tick() == ["r1"]
    await gate.entered.wait()
    clock.advance(60000)
    assert scheduler.tick() == []
    assert scheduler._launch("r1") is False

    gate.release()
    await scheduler.drain()
    assert dispatcher.calls_to(status_url("r1")) == 1


@pytest.mark.asyncio
async def test_timeout_wins_over_in_flight_result(scheduler, tracker, dispatcher, notifier, events, clock, config):
    gate = Gate(json_response({"status": "completed", "result": "late"}))
    dispatcher.script(status_url("r1"), gate)
    tracker.create("r1")
    clock.advance(2000)
    scheduler.tick()
    await gate.entered.wait()

    clock.advance(config.max_duration_ms)
    scheduler.tick()
    gate.release()
    await scheduler.drain()
    await notifier.flush()

    [terminal] = terminal_events(events)
    assert terminal.status is RequestStatus.timed_out
    assert terminal.result is None


@pytest.mark.asyncio
async def test_client_error_on_status_poll_fails_request(scheduler, tracker, dispatcher, notifier, events, clock):
    dispatcher.script(status_url("r1"), HttpError(404, "Not Found"))
    tracker.create("r1")

    await step(scheduler, clock)
    await notifier.flush()

    [terminal] = terminal_events(events)
    assert terminal.status is RequestStatus.failed
    assert terminal.error.code == "HTTP_404"
    assert tracker.get("r1") is None


@pytest.mark.asyncio
async def test_malformed_status_fails_request(scheduler, tracker, dispatcher, notifier, events, clock):
    dispatcher.script(status_url("r1"), json_response({"status": "sideways"}))
    tracker.create("r1")

    await step(scheduler, clock)
    await notifier.flush()

    assert terminal_events(events)[0].error.code == "MALFORMED_RESPONSE"


@pytest.mark.asyncio
async def test_ten_requests_progress_independently(scheduler, tracker, dispatcher, notifier, events, clock):
    """Request i needs i processing replies; one slow reply never holds up the others."""
    ids = [f"r{i}" for i in range(10)]
    gates = {}
    for i, request_id in enumerate(ids):
        gates[request_id] = Gate(PROCESSING if i else json_response({"status": "failed"}))
        dispatcher.script(status_url(request_id), gates[request_id])
        dispatcher.script(status_url(request_id), *([PROCESSING] * (i - 1)))
        dispatcher.script(status_url(request_id), json_response({"status": "completed", "result": i}))
        tracker.create(request_id, f"post-{i}")
        clock.advance(10)

    clock.advance(2000)
    assert sorted(scheduler.tick()) == sorted(ids)
    await asyncio.gather(*(gate.entered.wait() for gate in gates.values()))

    # release every gate except r9, whose first poll stays outstanding
    for request_id in reversed(ids[:-1]):
        gates[request_id].release()
    while len(tracker.active()) > 1:
        await asyncio.sleep(0)
        active = [r for r in tracker.active() if not r.poll_in_flight]
        if active:
            clock.now = max(clock.now, min(scheduler.next_due_at(r) for r in active))
        scheduler.tick()
        await asyncio.sleep(0)

    assert [r.request_id for r in tracker.active()] == ["r9"]
    gates["r9"].release()
    await scheduler.drain()
    while tracker.active():
        await step(scheduler, clock)
    await notifier.flush()

    outcomes = {e.request_id: e for e in terminal_events(events)}
    assert outcomes["r0"].status is RequestStatus.failed
    for i, request_id in enumerate(ids[1:], start=1):
        assert outcomes[request_id].status is RequestStatus.completed
        assert outcomes[request_id].result == i
        assert dispatcher.calls_to(status_url(request_id)) == i + 1


@pytest.mark.asyncio
async def test_restart_resumes_with_original_created_at(db_path, config, clock):
    """A process killed mid-poll leaves a claimed record; the next process picks it up."""
    store = DurableStore(db_path)
    first = RequestTracker(store, config, clock)
    created_at = first.create("r1", "post-1").created_at
    clock.advance(2000)
    first.begin_poll("r1")
    store.close()

    clock.advance(5000)
    store = DurableStore(db_path)
    tracker = RequestTracker(store, config, clock)
    dispatcher = ScriptedDispatcher()
    dispatcher.script(status_url("r1"), json_response({"status": "completed", "result": "resumed"}))
    events = []
    notifier = NotificationBridge()
    notifier.subscribe(events.append)
    scheduler = PollScheduler(tracker, dispatcher, notifier, WakeTimer(store, clock), clock)

    scheduler.recover()
    record = tracker.get("r1")
    assert record.created_at == created_at
    assert record.poll_count == 1
    assert not record.poll_in_flight

    await step(scheduler, clock)
    await notifier.flush()
    assert tracker.get("r1") is None
    assert terminal_events(events)[0].result == "resumed"
    store.close()


@pytest.mark.asyncio
async def test_recover_delivers_terminal_leftovers(scheduler, tracker, notifier, events):
    """An outcome reached just before a crash is still delivered once, then collected."""
    tracker.create("r1", "post-1")
    tracker.cancel("r1")

    scheduler.recover()
    await notifier.flush()

    assert tracker.get("r1") is None
    assert terminal_events(events)[0].error.code == "cancelled"


@pytest.mark.asyncio
async def test_wake_time_is_persisted(scheduler, tracker, store, clock):
    request = tracker.create("r1")
    scheduler.track(request)

    assert store.get_scheduler_state().next_wake_at == request.created_at + 2000

    await scheduler.cancel("r1")
    assert store.get_scheduler_state().next_wake_at is None


@pytest.mark.asyncio
async def test_started_scheduler_polls_on_its_own(config, store, dispatcher, notifier, events):
    """The wake loop drives polls without manual ticks."""
    fast = config.model_copy(update={"initial_interval_ms": 10, "max_interval_ms": 20})
    tracker = RequestTracker(store, fast)
    dispatcher.script(status_url("r1"), PROCESSING, json_response({"status": "completed", "result": 1}))
    scheduler = PollScheduler(tracker, dispatcher, notifier, WakeTimer(store, tracker.clock))
    done = asyncio.Event()
    notifier.subscribe(lambda e: done.set() if isinstance(e, TerminalEvent) else None)

    await scheduler.start()
    scheduler.track(tracker.create("r1"))
    await asyncio.wait_for(done.wait(), timeout=5)
    await scheduler.stop()

    assert terminal_events(events)[0].result == 1
    assert not scheduler.running


@pytest.mark.asyncio
async def test_outcome_survives_crash_before_delivery(db_path, config, clock):
    """The process dies while the terminal event is still queued; the next one delivers it."""
    store = DurableStore(db_path)
    tracker = RequestTracker(store, config, clock)
    dispatcher = ScriptedDispatcher()
    dispatcher.script(status_url("r1"), json_response({"status": "completed", "result": "precious"}))
    notifier = NotificationBridge()
    stuck = asyncio.Event()

    async def slow_consumer(event):
        await stuck.wait()

    notifier.subscribe(slow_consumer)
    scheduler = PollScheduler(tracker, dispatcher, notifier, WakeTimer(store, clock), clock)
    tracker.create("r1", "post-1")
    await step(scheduler, clock)
    await notifier.close(timeout=0.05)
    store.close()

    store = DurableStore(db_path)
    tracker = RequestTracker(store, config, clock)
    [leftover] = store.list_requests()
    assert leftover.status is RequestStatus.completed

    received = []
    notifier = NotificationBridge()
    notifier.subscribe(received.append)
    scheduler = PollScheduler(tracker, ScriptedDispatcher(), notifier, WakeTimer(store, clock), clock)
    scheduler.recover()
    await notifier.flush()

    assert [e.result for e in received] == ["precious"]
    assert tracker.get("r1") is None
    store.close()


@pytest.mark.asyncio
async def test_outcome_is_kept_until_a_consumer_subscribes(tracker, dispatcher, store, clock):
    notifier = NotificationBridge()
    scheduler = PollScheduler(tracker, dispatcher, notifier, WakeTimer(store, clock), clock)
    dispatcher.script(status_url("r2"), json_response({"status": "completed", "result": "kept"}))
    tracker.create("r2", "post-2")

    await step(scheduler, clock)
    scheduler.tick()

    assert tracker.get("r2").status is RequestStatus.completed

    received = []
    notifier.subscribe(received.append)
    scheduler.deliver_outstanding()
    scheduler.deliver_outstanding()
    await notifier.flush()

    assert [(e.request_id, e.result) for e in received] == [("r2", "kept")]
    assert tracker.get("r2") is None


@pytest.mark.asyncio
async def test_unsubscribed_consumer_leaves_outcome_stored(scheduler, tracker, dispatcher, clock):
    notifier = NotificationBridge()
    scheduler.notifier = notifier
    stuck = asyncio.Event()

    async def slow_consumer(event):
        await stuck.wait()

    unsubscribe = notifier.subscribe(slow_consumer)
    dispatcher.script(status_url("r3"), json_response({"status": "failed", "error": {"code": "E", "message": "no"}}))
    tracker.create("r3")
    await step(scheduler, clock)
    await asyncio.sleep(0)

    unsubscribe()
    await asyncio.sleep(0)

    assert tracker.get("r3").status is RequestStatus.failed
    received = []
    notifier.subscribe(received.append)
    scheduler.deliver_outstanding()
    await notifier.flush()
    assert received[0].error.code == "E"
    assert tracker.get("r3") is None


@pytest.mark.asyncio
async def test_unexpected_poll_error_keeps_headers_out_of_the_log(scheduler, tracker, dispatcher, clock):
    messages = []
    sink_id = logger.add(messages.append, level="DEBUG", backtrace=True, diagnose=True)
    dispatcher.script(status_url("r1"), RuntimeError("socket exploded"))
    tracker.create("r1")
    try:
        await step(scheduler, clock)
    finally:
        logger.remove(sink_id)

    assert any("Unexpected error polling r1: RuntimeError: socket exploded" in m for m in messages)
    assert not any("s3cret" in m for m in messages)
    assert all(m.record["exception"] is None for m in messages)
    assert tracker.get("r1").status is RequestStatus.polling
