import asyncio
import random
import time
import uuid
from typing import Optional

from aiohttp import web
from loguru import logger


class RelayServer:
    """
    Development backend for the capture relay.

    POST / accepts a capture. In async mode it answers with a pending
    requestId and GET /status/{requestId} reports processing (with progress)
    until ``completion_time`` has passed, then the completed result. A
    capture may carry a ``simulate`` object to override completion_time,
    force an outcome ("completed" / "failed"), or slow down status replies.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.0,
        async_mode: bool = True,
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.async_mode = async_mode
        self.requests: dict[str, dict] = {}
        self.status_hits: dict[str, int] = {}
        self.received_headers: list[dict] = []
        self.app = web.Application()
        self.app.router.add_post("/", self.handle_capture)
        self.app.router.add_get("/status/{request_id}", self.handle_status)
        self.logger = logger
        self._runner: Optional[web.AppRunner] = None

    async def handle_capture(self, request: web.Request) -> web.Response:
        self.received_headers.append(dict(request.headers))
        try:
            capture = await request.json()
        except ValueError:
            return web.json_response(
                {"status": "error", "error": {"code": "PARSE_ERROR", "message": "Failed to parse request body"}},
                status=400,
            )

        if not self.async_mode:
            self.logger.info("Returning completed capture synchronously")
            return web.json_response({"status": "completed", "result": capture})

        simulate = (capture.get("simulate") or {}) if isinstance(capture, dict) else {}
        request_id = f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"
        completion_time = float(simulate.get("completion_time", self.completion_time))
        self.requests[request_id] = {
            "capture": capture,
            "created_at": time.monotonic(),
            "completion_time": completion_time,
            "outcome": simulate.get("outcome", "completed"),
            "status_delay": float(simulate.get("status_delay", 0.0)),
        }
        self.logger.info(f"Created async request {request_id}, completes in {completion_time:.1f}s")
        return web.json_response(
            {"status": "pending", "requestId": request_id, "estimatedDuration": completion_time}
        )

    async def handle_status(self, request: web.Request) -> web.Response:
        request_id = request.match_info["request_id"]
        self.status_hits[request_id] = self.status_hits.get(request_id, 0) + 1
        entry = self.requests.get(request_id)
        if entry is None:
            self.logger.info(f"Status check for unknown request {request_id}")
            return web.json_response(
                {"status": "error", "error": {"code": "NOT_FOUND", "message": f"Request {request_id} not found"}},
                status=404,
            )

        if entry["status_delay"]:
            await asyncio.sleep(entry["status_delay"])

        if random.random() < self.error_rate:
            self.logger.info("Returning error status")
            return web.json_response(
                {"status": "failed", "error": {"code": "PROCESSING_ERROR", "message": "Simulated failure"}}
            )

        elapsed = time.monotonic() - entry["created_at"]
        if elapsed < entry["completion_time"]:
            progress = min(elapsed / entry["completion_time"], 0.99) if entry["completion_time"] else 0.0
            self.logger.info(f"Returning processing status for {request_id} (elapsed: {elapsed:.1f}s)")
            return web.json_response(
                {"status": "processing", "progress": round(progress, 2), "message": "Processing capture"}
            )

        if entry["outcome"] == "failed":
            self.logger.info(f"Returning failed status for {request_id}")
            return web.json_response(
                {"status": "failed", "error": {"code": "PROCESSING_ERROR", "message": "Backend could not process capture"}}
            )

        self.logger.info(f"Returning completed status for {request_id}")
        return web.json_response(
            {
                "status": "completed",
                "result": [
                    {"type": "text", "content": "Capture processed", "metadata": {"title": "Summary"}},
                    {"type": "debug", "content": entry["capture"], "title": "Original capture"},
                ],
            }
        )

    async def start(self, port: int = 8080) -> web.TCPSite:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
