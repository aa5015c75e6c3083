"""Data models for the docker update status document."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from compose_guardian.utils import format_timestamp, parse_timestamp, utc_now


class ImageStatus(Enum):
    """Outcome of checking one image."""

    UP_TO_DATE = "up-to-date"
    UPDATE_AVAILABLE = "update-available"
    ERROR = "error"


class ApplyStatus(Enum):
    """How an update was carried out."""

    INITIATED = "initiated"  # detached on the host, still running
    COMPLETED = "completed"  # synchronous fallback finished


@dataclass
class ImageInfo:
    """Digest comparison for one compose image."""

    name: str
    current_digest: str
    has_update: bool
    latest_digest: str | None = None
    digest: str | None = None
    status: ImageStatus = ImageStatus.UP_TO_DATE
    error: str | None = None
    last_checked: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "currentDigest": self.current_digest,
            "latestDigest": self.latest_digest,
            "hasUpdate": self.has_update,
            "lastChecked": format_timestamp(self.last_checked),
            "status": self.status.value,
        }
        if self.digest is not None:
            data["digest"] = self.digest
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageInfo:
        return cls(
            name=data["name"],
            current_digest=data["currentDigest"],
            has_update=bool(data["hasUpdate"]),
            latest_digest=data.get("latestDigest"),
            digest=data.get("digest"),
            status=ImageStatus(data.get("status", "up-to-date")),
            error=data.get("error"),
            last_checked=parse_timestamp(data.get("lastChecked")) or utc_now(),
        )


@dataclass
class DockerUpdateStatus:
    """The ``docker-update-status`` document."""

    timestamp: datetime = field(default_factory=utc_now)
    images: list[ImageInfo] = field(default_factory=list)
    total_images: int = 0
    has_updates: bool = False
    is_checking: bool = False
    check_started_at: datetime | None = None
    is_applying: bool = False
    last_error: str | None = None
    check_duration_ms: int | None = None

    @classmethod
    def default(cls) -> DockerUpdateStatus:
        return cls()

    def set_images(self, images: list[ImageInfo]) -> None:
        """Replace the image list and recompute the derived totals."""
        self.images = list(images)
        self.total_images = len(self.images)
        self.has_updates = any(image.has_update for image in self.images)

    def validate(self) -> None:
        """Raise ValueError if the derived totals disagree with the images."""
        if self.total_images != len(self.images):
            raise ValueError(
                f"totalImages is {self.total_images} but {len(self.images)} images are listed"
            )
        if self.has_updates != any(image.has_update for image in self.images):
            raise ValueError("hasUpdates does not match the per-image hasUpdate flags")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": format_timestamp(self.timestamp),
            "images": [image.to_dict() for image in self.images],
            "totalImages": self.total_images,
            "hasUpdates": self.has_updates,
            "isChecking": self.is_checking,
            "isApplying": self.is_applying,
        }
        if self.check_started_at is not None:
            data["checkStartedAt"] = format_timestamp(self.check_started_at)
        if self.last_error is not None:
            data["lastError"] = self.last_error
        if self.check_duration_ms is not None:
            data["checkDuration"] = self.check_duration_ms
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DockerUpdateStatus:
        return cls(
            timestamp=parse_timestamp(data.get("timestamp")) or utc_now(),
            images=[ImageInfo.from_dict(image) for image in data.get("images") or []],
            total_images=int(data.get("totalImages", 0)),
            has_updates=bool(data.get("hasUpdates", False)),
            is_checking=bool(data.get("isChecking", False)),
            check_started_at=parse_timestamp(data.get("checkStartedAt")),
            is_applying=bool(data.get("isApplying", False)),
            last_error=data.get("lastError"),
            check_duration_ms=data.get("checkDuration"),
        )


@dataclass
class ApplyResult:
    """Result of dispatching an update to the host."""

    status: ApplyStatus
    message: str
    log_path: str | None = None
    output: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "logPath": self.log_path,
            "output": self.output,
        }
