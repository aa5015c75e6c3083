"""Data models for the self-check status document.

Plain dataclasses with to_dict/from_dict. The persisted JSON keeps the
camelCase field names the dashboard reads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from compose_guardian.utils import format_timestamp, parse_timestamp, utc_now


class OverallStatus(Enum):
    """Outcome of the most recent self-check run."""

    NEVER_RUN = "never_run"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    CONNECTION_FAILED = "connection_failed"


@dataclass
class ScriptResult:
    """Outcome of one self-check step (a script or the integrity check)."""

    success: bool
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.duration_ms is not None:
            data["duration"] = self.duration_ms
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScriptResult:
        return cls(
            success=bool(data["success"]),
            message=str(data.get("message", "")),
            timestamp=parse_timestamp(data.get("timestamp")) or utc_now(),
            duration_ms=data.get("duration"),
        )


@dataclass
class SelfCheckStatus:
    """The ``selfcheck-status`` document."""

    is_running: bool = False
    overall_status: OverallStatus = OverallStatus.NEVER_RUN
    scripts: dict[str, ScriptResult] = field(default_factory=dict)
    last_run: datetime | None = None
    integrity_check: ScriptResult | None = None
    connection_error: str | None = None

    @classmethod
    def default(cls) -> SelfCheckStatus:
        return cls()

    def validate(self) -> None:
        """Raise ValueError if the document breaks its invariants."""
        if not isinstance(self.is_running, bool):
            raise ValueError("isRunning must be a boolean")
        if not isinstance(self.overall_status, OverallStatus):
            raise ValueError(f"invalid overallStatus: {self.overall_status!r}")
        if self.is_running and self.overall_status is not OverallStatus.NEVER_RUN:
            raise ValueError("a running self-check has no overall status yet")
        if not all(isinstance(r, ScriptResult) for r in self.scripts.values()):
            raise ValueError("scripts must map names to ScriptResult")

    def summary(self) -> dict[str, Any]:
        """Counts for status displays."""
        results = list(self.scripts.values())
        return {
            "totalScripts": len(results),
            "successCount": sum(1 for r in results if r.success),
            "failureCount": sum(1 for r in results if not r.success),
            "isRunning": self.is_running,
            "overallStatus": self.overall_status.value,
            "lastRun": format_timestamp(self.last_run),
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "lastRun": format_timestamp(self.last_run),
            "isRunning": self.is_running,
            "overallStatus": self.overall_status.value,
            "scripts": {name: result.to_dict() for name, result in self.scripts.items()},
        }
        if self.integrity_check is not None:
            data["integrityCheck"] = self.integrity_check.to_dict()
        if self.connection_error is not None:
            data["connectionError"] = self.connection_error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SelfCheckStatus:
        integrity = data.get("integrityCheck")
        return cls(
            is_running=data.get("isRunning", False),
            overall_status=OverallStatus(data.get("overallStatus", "never_run")),
            scripts={
                name: ScriptResult.from_dict(result)
                for name, result in (data.get("scripts") or {}).items()
            },
            last_run=parse_timestamp(data.get("lastRun")),
            integrity_check=ScriptResult.from_dict(integrity) if integrity else None,
            connection_error=data.get("connectionError"),
        )
