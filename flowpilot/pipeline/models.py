"""
Pydantic models and enums for projects, job progress and the control API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..errors import InvalidTransitionError


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enums ────────────────────────────────────────────────────────────────────

class GenerationMode(str, Enum):
    FRAMES_TO_VIDEO = "frames-to-video"
    TEXT_TO_VIDEO = "text-to-video"
    CREATE_IMAGE = "create-image"


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ERROR = "error"


class Phase(str, Enum):
    IMAGES = "images"
    VIDEOS = "videos"
    TEXT_TO_VIDEO = "text-to-video"
    CREATE_IMAGE = "create-image"
    DOWNLOADS = "downloads"


class JobState(str, Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    IMAGE_PHASE = "image-phase"
    VIDEO_PHASE = "video-phase"
    TEXT_TO_VIDEO_PHASE = "text-to-video-phase"
    CREATE_IMAGE_PHASE = "create-image-phase"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class ItemStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    SUBMITTED = "submitted"
    DOWNLOADED = "downloaded"
    ERROR = "error"


class ReferenceMethod(str, Enum):
    AUTO = "auto"
    ADD_TO_PROMPT = "add-to-prompt"
    UPLOAD = "upload"


# Forward-only item lifecycle. Same-state moves are allowed as no-ops.
_ITEM_TRANSITIONS: dict[ItemStatus, set[ItemStatus]] = {
    ItemStatus.PENDING: {ItemStatus.GENERATING},
    ItemStatus.GENERATING: {ItemStatus.READY, ItemStatus.SUBMITTED, ItemStatus.ERROR},
    ItemStatus.READY: {ItemStatus.DOWNLOADED},
    ItemStatus.SUBMITTED: {ItemStatus.DOWNLOADED},
    ItemStatus.DOWNLOADED: set(),
    ItemStatus.ERROR: set(),
}

DONE_STATUSES = {ItemStatus.READY, ItemStatus.SUBMITTED, ItemStatus.DOWNLOADED}


# ── Project ──────────────────────────────────────────────────────────────────

class ProjectSettings(BaseModel):
    image_timeout: float = 120.0  # seconds
    max_retries: int = Field(default=3, ge=0)
    reference_method: ReferenceMethod = ReferenceMethod.AUTO
    fast_fire: bool = True
    auto_download: bool = False


class Project(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = "Untitled"
    mode: GenerationMode = GenerationMode.FRAMES_TO_VIDEO
    aspect_ratio: str = "9:16"
    output_count: int = 1
    image_model: str = "nano-banana-pro"
    video_model: str = "veo-3.1-fast"
    image_prompts: list[str] = Field(default_factory=list)
    animation_prompts: list[str] = Field(default_factory=list)
    video_prompts: list[str] = Field(default_factory=list)
    reference_urls: list[str] = Field(default_factory=list)
    chain_mode: bool = False
    chain_first_ref: Optional[str] = None
    single_image_mode: bool = False
    settings: ProjectSettings = Field(default_factory=ProjectSettings)
    status: ProjectStatus = ProjectStatus.DRAFT
    remote_url: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


# ── Item results ─────────────────────────────────────────────────────────────

class ItemResult(BaseModel):
    index: int
    filename: str
    status: ItemStatus = ItemStatus.PENDING
    retry_count: int = 0
    error: Optional[str] = None
    verified: bool = True
    completed_at: Optional[str] = None
    download_path: Optional[str] = None
    start_scene: Optional[int] = None
    end_scene: Optional[int] = None

    @property
    def done(self) -> bool:
        return self.status in DONE_STATUSES

    def advance(self, status: ItemStatus) -> None:
        """Move forward through the item lifecycle; raise on a backwards move."""
        if status == self.status:
            return
        if status not in _ITEM_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Item {self.index}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status in DONE_STATUSES:
            self.completed_at = now_iso()
            self.error = None

    def reset(self) -> None:
        """Explicit restart of an item when its phase is re-entered."""
        self.status = ItemStatus.PENDING
        self.error = None
        self.verified = True
        self.completed_at = None


def _image_results(count: int, prefix: str) -> list[ItemResult]:
    return [ItemResult(index=i, filename=f"{prefix}_{i + 1:02d}.png") for i in range(count)]


def expected_video_count(image_count: int, animation_count: int, single_image_mode: bool) -> int:
    if single_image_mode:
        return animation_count
    transitions = max(image_count - 1, 0)
    extra = 1 if animation_count > transitions else 0
    return transitions + extra


def build_video_results(image_count: int, animation_count: int, single_image_mode: bool) -> list[ItemResult]:
    results = []
    total = expected_video_count(image_count, animation_count, single_image_mode)
    transitions = max(image_count - 1, 0)
    for i in range(total):
        if single_image_mode:
            start, end = min(i, max(image_count - 1, 0)), None
            filename = f"video_single_{i + 1:02d}.mp4"
        elif i < transitions:
            start, end = i, i + 1
            filename = f"video_{i + 1:02d}_{i + 1:02d}-{i + 2:02d}.mp4"
        else:
            start, end = image_count - 1, None
            filename = f"video_{i + 1:02d}_extra.mp4"
        results.append(ItemResult(index=i, filename=filename, start_scene=start, end_scene=end))
    return results


# ── Job progress ─────────────────────────────────────────────────────────────

class JobProgress(BaseModel):
    project_id: str
    phase: Phase
    current_state: JobState = JobState.IDLE
    current_index: int = -1
    total_images: int = 0
    total_videos: int = 0
    image_results: list[ItemResult] = Field(default_factory=list)
    video_results: list[ItemResult] = Field(default_factory=list)
    retry_count: int = 0
    last_error: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    paused_phase: Optional[Phase] = None
    paused_state: Optional[JobState] = None
    fsm_history: list[dict] = Field(default_factory=list)

    @classmethod
    def for_frames_to_video(cls, project: Project) -> "JobProgress":
        images = len(project.image_prompts)
        animations = len(project.animation_prompts)
        return cls(
            project_id=project.id,
            phase=Phase.IMAGES,
            total_images=images,
            total_videos=expected_video_count(images, animations, project.single_image_mode),
            image_results=_image_results(images, "scene"),
            video_results=build_video_results(images, animations, project.single_image_mode),
        )

    @classmethod
    def for_text_to_video(cls, project: Project) -> "JobProgress":
        count = len(project.video_prompts)
        return cls(
            project_id=project.id,
            phase=Phase.TEXT_TO_VIDEO,
            total_videos=count,
            video_results=[
                ItemResult(index=i, filename=f"video_{i + 1:02d}.mp4") for i in range(count)
            ],
        )

    @classmethod
    def for_create_image(cls, project: Project) -> "JobProgress":
        count = len(project.image_prompts)
        return cls(
            project_id=project.id,
            phase=Phase.CREATE_IMAGE,
            total_images=count,
            image_results=_image_results(count, "img"),
        )

    @classmethod
    def for_project(cls, project: Project) -> "JobProgress":
        if project.mode == GenerationMode.TEXT_TO_VIDEO:
            return cls.for_text_to_video(project)
        if project.mode == GenerationMode.CREATE_IMAGE:
            return cls.for_create_image(project)
        return cls.for_frames_to_video(project)

    def all_results(self) -> list[ItemResult]:
        return self.image_results + self.video_results

    def has_errors(self) -> bool:
        return any(r.status == ItemStatus.ERROR for r in self.all_results())

    def count(self, results: list[ItemResult]) -> int:
        return sum(1 for r in results if r.done)


# ── Run history ──────────────────────────────────────────────────────────────

class RunRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    project_name: str
    status: ProjectStatus
    started_at: Optional[str] = None
    finished_at: str = Field(default_factory=now_iso)
    duration_ms: Optional[int] = None
    total_images: int = 0
    total_videos: int = 0
    images_completed: int = 0
    videos_completed: int = 0
    error: Optional[str] = None


class InterruptedJob(BaseModel):
    project_id: str
    project_name: str
    phase: Phase
    current_index: int
    total_images: int
    total_videos: int
    images_completed: int


# ── Control API ──────────────────────────────────────────────────────────────

class StatusResponse(BaseModel):
    running: bool = False
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    remote_url: Optional[str] = None
    phase: Optional[Phase] = None
    state: JobState = JobState.IDLE
    current_index: int = -1
    total_images: int = 0
    total_videos: int = 0
    image_results: list[ItemResult] = Field(default_factory=list)
    video_results: list[ItemResult] = Field(default_factory=list)
    last_error: Optional[str] = None


class ControlResponse(BaseModel):
    ok: bool = True
    project_id: Optional[str] = None
    message: str = ""


# ── Batch queue ──────────────────────────────────────────────────────────────

class BatchStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


class BatchEntryStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class BatchEntry(BaseModel):
    project_id: str
    status: BatchEntryStatus = BatchEntryStatus.QUEUED
    error: Optional[str] = None


class BatchQueue(BaseModel):
    entries: list[BatchEntry] = Field(default_factory=list)
    status: BatchStatus = BatchStatus.IDLE
    current_index: int = -1
    waiting_until: Optional[float] = None

    def ids(self) -> list[str]:
        return [e.project_id for e in self.entries]


class BatchReorderRequest(BaseModel):
    project_ids: list[str]
