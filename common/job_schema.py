import uuid
from enum import Enum
from pathlib import Path
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from common.config import DEFAULT_QUALITY


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class TargetFormat(str, Enum):
    WEBP = "webp"
    PNG = "png"
    JPEG = "jpeg"

    @classmethod
    def parse(cls, value) -> "TargetFormat":
        """Accepts enum members or strings; 'jpg' is an alias for jpeg."""
        if isinstance(value, cls):
            return value
        normalised = str(value).strip().lower()
        if normalised == "jpg":
            normalised = "jpeg"
        return cls(normalised)

    @property
    def content_type(self) -> str:
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return "jpg" if self is TargetFormat.JPEG else self.value


class InvalidTransition(Exception):
    """Raised when a job is moved along a path its status does not allow."""


def validate_quality(quality: int) -> int:
    if isinstance(quality, bool) or not isinstance(quality, int) or not 1 <= quality <= 100:
        raise ValueError(f"quality must be an integer between 1 and 100, got {quality!r}")
    return quality


# ---------- sources ----------

class BytesSource(BaseModel):
    kind: Literal["bytes"] = "bytes"
    filename: str
    content_type: str = "application/octet-stream"
    data: bytes


class StagedSource(BaseModel):
    kind: Literal["staged"] = "staged"
    filename: str
    key: str                 # object key in the staging bucket/container


Source = Annotated[Union[BytesSource, StagedSource], Field(discriminator="kind")]


# ---------- results ----------

class InlineResult(BaseModel):
    kind: Literal["inline"] = "inline"
    data: bytes
    format: TargetFormat
    size: int
    width: Optional[int] = None
    height: Optional[int] = None


class RemoteResult(BaseModel):
    kind: Literal["remote"] = "remote"
    url: str
    format: TargetFormat
    size: int
    width: Optional[int] = None
    height: Optional[int] = None


Result = Annotated[Union[InlineResult, RemoteResult], Field(discriminator="kind")]


class ConversionRequest(BaseModel):
    source: Source
    target_format: TargetFormat
    quality: int = Field(default=DEFAULT_QUALITY, ge=1, le=100)

    @field_validator("target_format", mode="before")
    @classmethod
    def _normalise_format(cls, value):
        return TargetFormat.parse(value)


class Job(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source: Source
    target_format: TargetFormat
    quality: int = Field(default=DEFAULT_QUALITY, ge=1, le=100)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    result: Optional[Result] = None
    preview: Optional[Path] = None

    @field_validator("target_format", mode="before")
    @classmethod
    def _normalise_format(cls, value):
        return TargetFormat.parse(value)

    @property
    def is_large(self) -> bool:
        return isinstance(self.source, StagedSource)

    @property
    def staging_key(self) -> Optional[str]:
        return self.source.key if isinstance(self.source, StagedSource) else None

    def _require(self, *allowed: JobStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransition(f"job {self.id} cannot leave status {self.status.value} this way")

    def start(self) -> None:
        self._require(JobStatus.PENDING)
        self.status = JobStatus.PROCESSING
        self.progress = 0

    def complete(self, result: Union[InlineResult, RemoteResult]) -> None:
        self._require(JobStatus.PROCESSING)
        self.status = JobStatus.COMPLETED
        self.progress = 100
        self.result = result
        self.error = None

    def fail(self, message: str) -> None:
        self._require(JobStatus.PROCESSING)
        self.status = JobStatus.ERROR
        self.error = message
        self.result = None

    def reset(self, quality: Optional[int] = None) -> None:
        self._require(JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.PENDING)
        if quality is not None:
            self.quality = validate_quality(quality)
        self.status = JobStatus.PENDING
        self.progress = 0
        self.error = None
        self.result = None


class StagingTarget(BaseModel):
    """Where a large file is uploaded before conversion."""
    url: str
    method: Literal["POST", "PUT"] = "PUT"
    fields: Dict[str, str] = Field(default_factory=dict)     # form fields for POST uploads
    headers: Dict[str, str] = Field(default_factory=dict)    # headers for PUT uploads
    key: str
