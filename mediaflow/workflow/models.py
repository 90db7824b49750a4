"""
Pydantic models and enums for the generation workflow.

Covers the run/step state machine records, the credit ledger entries,
produced assets, the transient provider job tracked by the poller, the
progress events pushed to observers, and the HTTP request/response bodies.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def canonical_uuid(value: str, field: str = "id") -> str:
    """Normalise a UUID string; raises ValueError for anything else."""
    try:
        return str(UUID(value.strip()))
    except (ValueError, AttributeError):
        raise ValueError(f"{field} must be a UUID")


# ── Enums ────────────────────────────────────────────────────────────────────

class PipelineVariant(str, Enum):
    COMPLETE = "complete"
    IMAGE_ONLY = "image-only"
    VIDEO_FROM_IMAGE = "video-from-image"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImageStyle(str, Enum):
    NATURAL = "natural"
    VIVID = "vivid"


class ImageQuality(str, Enum):
    STANDARD = "standard"
    HD = "hd"


class ImageSize(str, Enum):
    SQUARE = "1024x1024"
    LANDSCAPE = "1792x1024"
    PORTRAIT = "1024x1792"


class VideoResolution(str, Enum):
    HD_720 = "720p"
    FULL_HD = "1080p"
    UHD_4K = "4k"


VIDEO_DURATIONS = (5, 8, 15, 30, 60)

VIDEO_DIMENSIONS = {
    VideoResolution.HD_720: (1280, 720),
    VideoResolution.FULL_HD: (1920, 1080),
    VideoResolution.UHD_4K: (3840, 2160),
}


class AssetKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class AssetStatus(str, Enum):
    READY = "ready"
    FAILED = "failed"


class ProviderJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Per-variant configuration ────────────────────────────────────────────────

class ImageConfig(BaseModel):
    style: ImageStyle = ImageStyle.VIVID
    quality: ImageQuality = ImageQuality.HD
    size: ImageSize = ImageSize.PORTRAIT

    @property
    def dimensions(self) -> tuple[int, int]:
        width, height = self.size.value.split("x")
        return int(width), int(height)


class VideoConfig(BaseModel):
    duration: int = Field(8, description="Clip length in seconds")
    resolution: VideoResolution = VideoResolution.FULL_HD
    generate_audio: bool = True

    @field_validator("duration")
    @classmethod
    def _supported_duration(cls, value: int) -> int:
        if value not in VIDEO_DURATIONS:
            raise ValueError(f"duration must be one of {VIDEO_DURATIONS}")
        return value


# ── Run / Step ───────────────────────────────────────────────────────────────

class Step(BaseModel):
    id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[dict] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    cost: int = 0
    charged: int = 0  # credits currently held by this step
    transaction_id: Optional[str] = None


class WorkflowRun(BaseModel):
    id: str
    user_id: str
    variant: PipelineVariant
    project_id: Optional[str] = None
    image_prompt: Optional[str] = None
    video_prompt: Optional[str] = None
    source_image_url: Optional[str] = None
    image_config: ImageConfig = Field(default_factory=ImageConfig)
    video_config: VideoConfig = Field(default_factory=VideoConfig)
    status: RunStatus = RunStatus.QUEUED
    steps: list[Step] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_cost: int = 0
    refunded: int = 0
    result: Optional[dict] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def processing_step(self) -> Optional[Step]:
        return next((s for s in self.steps if s.status == StepStatus.PROCESSING), None)


# ── Ledger ───────────────────────────────────────────────────────────────────

class CreditTransaction(BaseModel):
    id: str
    user_id: str
    amount: int  # negative = debit, positive = grant/refund
    reason: str
    run_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ── Assets ───────────────────────────────────────────────────────────────────

class Asset(BaseModel):
    id: str
    user_id: str
    run_id: str
    kind: AssetKind
    storage_key: Optional[str] = None
    public_url: str
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[int] = None
    size_bytes: Optional[int] = None
    provider: str
    prompt: Optional[str] = None
    source_asset_id: Optional[str] = None
    status: AssetStatus = AssetStatus.READY
    created_at: datetime = Field(default_factory=utcnow)


# ── Provider job (poller-held) ───────────────────────────────────────────────

class ProviderJob(BaseModel):
    job_id: str
    provider: str
    submitted_at: datetime = Field(default_factory=utcnow)
    last_status: ProviderJobStatus = ProviderJobStatus.QUEUED
    attempts: int = 0


# ── Progress events ──────────────────────────────────────────────────────────

class EventType(str, Enum):
    STATUS = "status"
    STEP_UPDATE = "step-update"
    COMPLETE = "complete"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


class WorkflowEvent(BaseModel):
    type: EventType
    run_id: str
    seq: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class StatusEvent(WorkflowEvent):
    type: Literal[EventType.STATUS] = EventType.STATUS
    status: RunStatus


class StepUpdateEvent(WorkflowEvent):
    type: Literal[EventType.STEP_UPDATE] = EventType.STEP_UPDATE
    step: Optional[Step] = None
    steps: list[Step] = Field(default_factory=list)


class RunCompleteEvent(WorkflowEvent):
    type: Literal[EventType.COMPLETE] = EventType.COMPLETE
    status: RunStatus
    result: Optional[dict] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    total_cost: int = 0
    refunded: int = 0


class ErrorEvent(WorkflowEvent):
    type: Literal[EventType.ERROR] = EventType.ERROR
    code: str
    message: str
    step_id: Optional[str] = None


class HeartbeatEvent(WorkflowEvent):
    type: Literal[EventType.HEARTBEAT] = EventType.HEARTBEAT


AnyWorkflowEvent = Union[StatusEvent, StepUpdateEvent, RunCompleteEvent, ErrorEvent, HeartbeatEvent]


# ── API Request / Response Models ────────────────────────────────────────────

class WorkflowStartRequest(BaseModel):
    """Start a generation run."""
    variant: PipelineVariant = PipelineVariant.COMPLETE
    image_prompt: Optional[str] = Field(None, max_length=2000)
    video_prompt: Optional[str] = Field(None, max_length=1000)
    source_image_url: Optional[str] = Field(
        None, description="Existing image to animate (video-from-image only)"
    )
    image_config: ImageConfig = Field(default_factory=ImageConfig)
    video_config: VideoConfig = Field(default_factory=VideoConfig)
    project_id: Optional[str] = None

    @field_validator("project_id")
    @classmethod
    def _project_uuid(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return canonical_uuid(value, "project_id")


class WorkflowStartResponse(BaseModel):
    run_id: str
    status: RunStatus
    estimated_cost: int
    stream_url: str


class CancelResponse(BaseModel):
    run_id: str
    status: RunStatus
    refunded: int


class CreditBalanceResponse(BaseModel):
    user_id: str
    balance: int
    recent_transactions: list[CreditTransaction] = Field(default_factory=list)


class CostCheckResponse(BaseModel):
    has_enough: bool
    balance: int
    required: int
    shortage: int = 0
    breakdown: dict[str, int] = Field(default_factory=dict)
