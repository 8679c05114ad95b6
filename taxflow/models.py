from __future__ import annotations

import base64
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_ERROR = "error"
QUEUE_NEEDS_REVIEW = "needs_review"

QUEUE_STATUSES: tuple[str, ...] = (
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    QUEUE_COMPLETED,
    QUEUE_ERROR,
    QUEUE_NEEDS_REVIEW,
)
QUEUE_TERMINAL_STATUSES = frozenset({QUEUE_COMPLETED, QUEUE_ERROR, QUEUE_NEEDS_REVIEW})

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_ERROR = "error"

SYNC_JOB_STATUSES: tuple[str, ...] = (JOB_PENDING, JOB_PROCESSING, JOB_COMPLETED, JOB_ERROR)
SYNC_JOB_TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_ERROR})

# Record statuses that mean a human confirmed the document.
CONFIRMED_RECORD_STATUSES = frozenset({"validated"})


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class DocumentPayload:
    data: bytes
    media_type: str
    filename: str = ""

    @property
    def size(self) -> int:
        return len(self.data)

    def as_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"


@dataclass
class QueueItem:
    id: str
    owner_id: str
    target_id: str
    payload: DocumentPayload
    status: str = QUEUE_PENDING
    extracted_fields: dict[str, Any] | None = None
    confidence: float | None = None
    warnings: list[str] = field(default_factory=list)
    error_message: str | None = None
    attempts: int = 0
    fiscal_year: int | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in QUEUE_TERMINAL_STATUSES

    def to_dict(self, *, include_payload: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "owner_id": self.owner_id,
            "target_id": self.target_id,
            "filename": self.payload.filename,
            "media_type": self.payload.media_type,
            "size": self.payload.size,
            "status": self.status,
            "extracted_fields": self.extracted_fields,
            "confidence": self.confidence,
            "warnings": list(self.warnings),
            "error_message": self.error_message,
            "attempts": self.attempts,
            "fiscal_year": self.fiscal_year,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
        if include_payload:
            data["payload_b64"] = base64.b64encode(self.payload.data).decode("ascii")
        return data


@dataclass
class SyncJob:
    id: str
    batch_id: str
    target_id: str
    requested_by: str
    period: int
    status: str = JOB_PENDING
    error_message: str | None = None
    units_synced: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in SYNC_JOB_TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchProgress:
    batch_id: str
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    errors: int = 0
    units_synced: int = 0

    @property
    def is_done(self) -> bool:
        return self.pending == 0 and self.processing == 0

    @property
    def percent_complete(self) -> float:
        if self.total <= 0:
            return 0.0
        return round((self.completed + self.errors) * 100.0 / self.total, 2)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["is_done"] = self.is_done
        data["percent_complete"] = self.percent_complete
        return data


@dataclass
class DuplicateGroup:
    key: str
    members: list[dict[str, Any]]
    keep_id: str

    @property
    def delete_ids(self) -> list[str]:
        return [str(m["id"]) for m in self.members if str(m["id"]) != self.keep_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "keep_id": self.keep_id,
            "delete_ids": self.delete_ids,
            "members": [
                {
                    "id": str(m["id"]),
                    "status": m.get("status"),
                    "created_at": m.get("created_at"),
                    "keep": str(m["id"]) == self.keep_id,
                }
                for m in self.members
            ],
        }


@dataclass(frozen=True)
class GateResult:
    confidence: float
    warnings: list[str]
    critical_failure: bool = False
    failed_field: str | None = None

    @property
    def admitted(self) -> bool:
        return not self.critical_failure and self.confidence > 0


SYNC_TRANSPORT_FAILURE = "transport_failure"
SYNC_APPLICATION_FAILURE = "application_failure"
SYNC_SUCCESS = "success"


@dataclass(frozen=True)
class SyncOutcome:
    """Three-state result of one external sync call; transport success alone is not success."""

    kind: str
    units_synced: int = 0
    message: str = ""
    http_status: int | None = None

    @property
    def ok(self) -> bool:
        return self.kind == SYNC_SUCCESS

    @classmethod
    def success(cls, *, units_synced: int, http_status: int | None = None) -> "SyncOutcome":
        return cls(kind=SYNC_SUCCESS, units_synced=max(0, int(units_synced)), http_status=http_status)

    @classmethod
    def transport_failure(cls, message: str, *, http_status: int | None = None) -> "SyncOutcome":
        return cls(kind=SYNC_TRANSPORT_FAILURE, message=message, http_status=http_status)

    @classmethod
    def application_failure(cls, message: str, *, http_status: int | None = None) -> "SyncOutcome":
        return cls(kind=SYNC_APPLICATION_FAILURE, message=message, http_status=http_status)
