# models.py
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Job states
PENDING = "pending"
CLAIMED = "claimed"
COMPLETED = "completed"
FAILED = "failed"

JOB_STATES = (PENDING, CLAIMED, COMPLETED, FAILED)

MAX_ERROR_LENGTH = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: datetime) -> str:
    return ts.isoformat(timespec="microseconds")


@dataclass
class ExecutionJob:
    id: str
    signal_id: Optional[str] = None
    signal: Optional[Dict[str, Any]] = None
    status: str = PENDING   # pending | claimed | completed | failed
    attempt: int = 0
    claimed_at: Optional[str] = None
    last_error: Optional[str] = None
    created_at: str = field(default_factory=lambda: to_iso(utcnow()))
    updated_at: str = field(default_factory=lambda: to_iso(utcnow()))
    finished_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "ExecutionJob":
        signal = json.loads(row["signal"]) if row["signal"] else None
        return cls(
            id=row["id"],
            signal_id=row["signal_id"],
            signal=signal,
            status=row["status"],
            attempt=row["attempt"],
            claimed_at=row["claimed_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            finished_at=row["finished_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "signal_id": self.signal_id,
            "signal": self.signal,
            "status": self.status,
            "attempt": self.attempt,
            "claimed_at": self.claimed_at,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
        }


@dataclass
class BatchResult:
    """Outcome of one worker cycle."""
    recycled: int = 0
    claimed: int = 0
    ok: int = 0
    failed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"recycled": self.recycled, "claimed": self.claimed, "ok": self.ok, "failed": self.failed}
        if self.error:
            data["error"] = self.error
        return data
