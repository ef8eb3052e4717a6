from enum import Enum
from typing import Any, Literal, Optional, Union
from urllib.parse import quote, urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_SENSITIVE_HEADERS = frozenset({"authorization", "api-key", "x-api-key", "bearer"})


class RequestStatus(str, Enum):
    pending = "pending"
    polling = "polling"
    completed = "completed"
    failed = "failed"
    timed_out = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.completed, RequestStatus.failed, RequestStatus.timed_out)


class RelayConfig(BaseModel):
    """Read-only snapshot of the user's backend settings"""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    endpoint_url: str = ""
    status_url_pattern: str = "{endpoint}/status/{requestId}"
    initial_interval_ms: int = Field(default=2000, ge=1)
    max_interval_ms: int = Field(default=10000, ge=1)
    backoff_multiplier: float = Field(default=1.5, ge=1.0)
    max_duration_ms: int = Field(default=300000, gt=0)
    request_timeout_ms: int = Field(default=30000, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)
    sensitive_headers: frozenset[str] = DEFAULT_SENSITIVE_HEADERS
    enable_polling: bool = True

    @field_validator("endpoint_url")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        if value:
            parsed = urlparse(value)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValueError("endpoint_url must be an http or https URL")
        return value

    @field_validator("sensitive_headers")
    @classmethod
    def _lower_sensitive(cls, value: frozenset[str]) -> frozenset[str]:
        return frozenset(name.lower() for name in value)

    @model_validator(mode="after")
    def _check_intervals(self) -> "RelayConfig":
        if self.max_interval_ms < self.initial_interval_ms:
            raise ValueError("max_interval_ms must be >= initial_interval_ms")
        if "{requestId}" not in self.status_url_pattern:
            raise ValueError("status_url_pattern must contain {requestId}")
        return self

    def status_url_for(self, request_id: str) -> str:
        endpoint = self.endpoint_url.rstrip("/")
        return self.status_url_pattern.replace("{endpoint}", endpoint).replace(
            "{requestId}", quote(request_id, safe="")
        )


class ErrorInfo(BaseModel):
    code: str
    message: str


class TrackedRequest(BaseModel):
    request_id: str
    context_ref: str = ""
    status: RequestStatus = RequestStatus.pending
    created_at: int
    last_polled_at: int
    poll_count: int = Field(default=0, ge=0)
    current_interval_ms: int
    status_url: str
    poll_in_flight: bool = False
    progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    message: Optional[str] = None
    estimated_duration_ms: Optional[int] = None
    result: Any = None
    error: Optional[ErrorInfo] = None
    completed_at: Optional[int] = None

    def age_ms(self, now: int) -> int:
        return now - self.created_at

    def next_poll_at(self) -> int:
        # A fresh record has never been polled, but the first poll still
        # waits one interval after creation.
        return self.last_polled_at + self.current_interval_ms


class RawResponse(BaseModel):
    status_code: int
    body: bytes = b""
    headers: dict[str, str] = Field(default_factory=dict)


class Immediate(BaseModel):
    kind: Literal["immediate"] = "immediate"
    payload: Any


class Deferred(BaseModel):
    kind: Literal["deferred"] = "deferred"
    request_id: str
    status: str
    estimated_duration_ms: Optional[int] = None
    message: Optional[str] = None


class Terminal(BaseModel):
    kind: Literal["terminal"] = "terminal"
    request_id: str
    status: str
    payload: Any = None
    result: Any = None
    error: Optional[ErrorInfo] = None


class Malformed(BaseModel):
    kind: Literal["malformed"] = "malformed"
    reason: str


Classification = Union[Immediate, Deferred, Terminal, Malformed]


class PollStatus(str, Enum):
    processing = "processing"
    completed = "completed"
    failed = "failed"


class StatusPayload(BaseModel):
    """Validated body of a status poll response"""

    status: PollStatus
    progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    message: Optional[str] = None
    result: Any = None
    error: Optional[ErrorInfo] = None


class ProgressEvent(BaseModel):
    kind: Literal["progress"] = "progress"
    request_id: str
    context_ref: str
    poll_count: int
    progress: Optional[float] = None
    message: Optional[str] = None


class TerminalEvent(BaseModel):
    kind: Literal["terminal"] = "terminal"
    request_id: str
    context_ref: str
    status: RequestStatus
    result: Any = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def from_request(cls, request: TrackedRequest) -> "TerminalEvent":
        return cls(
            request_id=request.request_id,
            context_ref=request.context_ref,
            status=request.status,
            result=request.result,
            error=request.error,
        )


NotificationEvent = Union[ProgressEvent, TerminalEvent]


class CaptureResult(BaseModel):
    """What the capture caller gets back from a submit"""

    kind: Literal["immediate", "deferred", "terminal"]
    context_ref: str
    result: Any = None
    request_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[ErrorInfo] = None
    tracked: bool = False


class SchedulerState(BaseModel):
    next_wake_at: Optional[int] = None
