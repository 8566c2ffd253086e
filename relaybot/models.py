import dataclasses
import enum
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

ProgressCallback = Callable[[float], None]


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def generate_tag() -> str:
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclasses.dataclass
class Job:
    url: str
    platform: str
    tag: str = dataclasses.field(default_factory=generate_tag)
    status: JobStatus = JobStatus.QUEUED
    retry_count: int = 0
    created_at: float = dataclasses.field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    result_size: int | None = None
    error_message: str | None = None
    # Opaque to the core: stored and handed back unchanged.
    caller_context: dict[str, Any] = dataclasses.field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "tag": self.tag,
            "url": self.url,
            "platform": self.platform,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
        }


@dataclasses.dataclass(frozen=True)
class Metadata:
    title: str = "video"
    uploader: str = "unknown_user"
    uploader_id: str | None = None
    description: str | None = None
    duration: float = 0
    resolution: str | None = None
    filesize: int | None = None
    url: str = ""

    @property
    def is_placeholder(self) -> bool:
        return self.uploader == "unknown_user" and self.title == "video"


@dataclasses.dataclass(frozen=True)
class Artifact:
    path: Path
    size: int
    platform: str
    strategy: str
    metadata: Metadata

    @property
    def filename(self) -> str:
        return self.path.name
