from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, NamedTuple, Optional

from pydantic import BaseModel, Field


class ResourceCategory(str, Enum):
    flight = "flight"
    hotel = "hotel"
    visa = "visa"
    insurance = "insurance"
    package = "package"

    @property
    def requires_resource_id(self) -> bool:
        """Visa applications and insurance policies verify against their own id"""
        return self in (ResourceCategory.visa, ResourceCategory.insurance)


class PollingKey(NamedTuple):
    category: ResourceCategory
    reference: str

    @classmethod
    def of(cls, category: Any, reference: str) -> "PollingKey":
        return cls(ResourceCategory(category), str(reference))


class SessionState(str, Enum):
    idle = "idle"
    active = "active"
    completed = "completed"
    stopped = "stopped"
    errored = "errored"


class VerificationOutcome(str, Enum):
    pending = "pending"
    verifying = "verifying"
    success = "success"
    failure = "failure"
    timeout = "timeout"
    stopped = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (
            VerificationOutcome.success,
            VerificationOutcome.failure,
            VerificationOutcome.timeout,
        )


class PaymentState(str, Enum):
    success = "success"
    failed = "failed"
    pending = "pending"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(BaseModel):
    status: str
    last_updated: datetime = Field(default_factory=_utcnow)
    details: dict = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "BookingStatus":
        """Normalize whatever a status fetcher returned into a BookingStatus.

        Accepts an existing BookingStatus, or a mapping carrying ``status`` and
        an optional ``lastUpdated``/``last_updated`` timestamp. Remaining keys
        are kept in ``details``. Raises ``ValueError`` when no status string
        can be found.
        """
        if isinstance(payload, BookingStatus):
            return payload
        if not isinstance(payload, Mapping):
            raise ValueError(f"Expected a mapping, got {type(payload).__name__}")

        data = dict(payload)
        status = data.pop("status", None)
        if not isinstance(status, str) or not status:
            raise ValueError(f"Status payload has no status string: {payload!r}")

        camel = data.pop("lastUpdated", None)
        snake = data.pop("last_updated", None)
        last_updated = camel or snake
        if last_updated is None:
            return cls(status=status, details=data)
        return cls(status=status, last_updated=last_updated, details=data)


_PENDING_TOKENS = ("pending", "processing")


class VerificationResult(BaseModel):
    state: PaymentState
    message: Optional[str] = None
    raw: dict = Field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.state is PaymentState.success

    @property
    def is_failure(self) -> bool:
        return self.state is PaymentState.failed

    @classmethod
    def from_payload(cls, payload: Any) -> "VerificationResult":
        """Collapse the response shapes payment backends return into one result.

        Success is any of ``success: true``, ``status == "success"``,
        ``verified: true`` or ``paymentStatus == "success"`` (top level or
        under ``data``). A definite failure is ``success: false``,
        ``status == "failed"``, a non-empty ``error`` or
        ``paymentStatus == "failed"``, unless the status still reads pending.
        """
        if isinstance(payload, VerificationResult):
            return payload
        raw = dict(payload) if isinstance(payload, Mapping) else {}
        nested = raw.get("data") if isinstance(raw.get("data"), Mapping) else {}

        status = str(raw.get("status") or "").lower()
        payment_status = str(
            raw.get("paymentStatus") or nested.get("paymentStatus") or ""
        ).lower()
        message = raw.get("message") or raw.get("error") or None
        if message is not None:
            message = str(message)

        if (
            raw.get("success") is True
            or status == "success"
            or raw.get("verified") is True
            or payment_status == "success"
        ):
            return cls(state=PaymentState.success, message=message, raw=raw)

        if status in _PENDING_TOKENS or payment_status in _PENDING_TOKENS:
            return cls(state=PaymentState.pending, message=message, raw=raw)

        if (
            raw.get("success") is False
            or status == "failed"
            or raw.get("error")
            or payment_status == "failed"
        ):
            return cls(state=PaymentState.failed, message=message, raw=raw)

        return cls(state=PaymentState.pending, message=message, raw=raw)


class PollingItem(BaseModel):
    id: str
    category: ResourceCategory
    reference: str
    status: Optional[BookingStatus] = None
    poll_count: int = 0
    max_poll_attempts: int
    current_interval_ms: int
    state: SessionState


class PollingStatusSummary(BaseModel):
    active_polls: int
    max_concurrent_polls: int
    polling_items: list[PollingItem]


class VerificationItem(BaseModel):
    id: str
    reference: str
    category: ResourceCategory
    resource_id: Optional[str] = None
    attempt: int = 0
    max_retries: int
    outcome: VerificationOutcome
    result: Optional[VerificationResult] = None
    error: Optional[str] = None
    started_at: datetime
    last_checked: Optional[datetime] = None


class VerificationStatusSummary(BaseModel):
    active_verifications: int
    verification_items: list[VerificationItem]


class PollingConfig(BaseModel):
    max_concurrent_polls: int = Field(default=10, gt=0)
    default_poll_interval_ms: int = Field(default=30_000, gt=0)
    enable_intelligent_polling: bool = True
    max_finished_sessions: int = Field(default=100, ge=0)


class VerificationConfig(BaseModel):
    max_retries: int = Field(default=40, gt=0)
    retry_interval: float = Field(default=10.0, ge=0)  # seconds
    timeout: float = Field(default=420.0, gt=0)  # 7 minutes
    max_finished_verifications: int = Field(default=100, ge=0)
