import asyncio
import tempfile
from pathlib import Path

from capture_relay.logging_setup import configure_logging
from capture_relay.models import RelayConfig
from capture_relay.relay import CaptureRelay
from relay_server import RelayServer


async def on_event(event):
    if event.kind == "progress":
        print(f"[{event.request_id}] progress {event.progress} after {event.poll_count} polls")
    else:
        print(f"[{event.request_id}] finished as {event.status.value}")
        print(f"Result: {event.result if event.error is None else event.error.message}")


async def main():
    configure_logging(development=True)
    PORT = 8000
    server = RelayServer(completion_time=12.0, error_rate=0.05)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = RelayConfig(
        endpoint_url=f"http://localhost:{PORT}/",
        initial_interval_ms=1000,
        max_interval_ms=4000,
        max_duration_ms=60000,
        headers={"Authorization": "Bearer example-secret"},
    )

    with tempfile.TemporaryDirectory() as tmp:
        async with CaptureRelay(config, store=Path(tmp) / "relay.sqlite3") as relay:
            relay.subscribe(on_event)
            capture = {"postId": "1790000000000000000", "text": "hello from the example"}
            result = await relay.submit(capture, context_ref=capture["postId"])
            print(f"Submitted: {result.kind} {result.request_id or ''}")

            while relay.active_requests():
                await asyncio.sleep(0.5)
            await relay.notifier.flush()

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
