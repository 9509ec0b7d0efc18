from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ProjectStatus(str, Enum):
    DRAFT = "DRAFT"
    GENERATING_CONTENT = "GENERATING_CONTENT"
    GENERATING_DOCUMENTS = "GENERATING_DOCUMENTS"
    TRANSLATING = "TRANSLATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ProjectStatus.COMPLETED, ProjectStatus.FAILED)


# Forward phase order; FAILED is reachable from any non-terminal state.
STATUS_ORDER: List[ProjectStatus] = [
    ProjectStatus.DRAFT,
    ProjectStatus.GENERATING_CONTENT,
    ProjectStatus.GENERATING_DOCUMENTS,
    ProjectStatus.TRANSLATING,
    ProjectStatus.COMPLETED,
]


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    """
    Check whether the project state machine allows ``current -> target``.

    Staying in the same non-terminal state is allowed so a resumed run can
    re-enter the phase it was interrupted in. Moving forward may skip phases
    (a resumed run jumps straight to the first incomplete one), but never
    backwards, and nothing leaves a terminal state.
    """
    if current.is_terminal:
        return False
    if target == ProjectStatus.FAILED:
        return True
    return STATUS_ORDER.index(target) >= STATUS_ORDER.index(current)


class JobState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class DocumentFormat(str, Enum):
    PDF = "PDF"
    DOCX = "DOCX"

    @property
    def extension(self) -> str:
        return self.value.lower()

    @property
    def content_type(self) -> str:
        if self == DocumentFormat.PDF:
            return "application/pdf"
        return "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class Language(str, Enum):
    ENGLISH = "ENGLISH"
    GERMAN = "GERMAN"
    FRENCH = "FRENCH"
    SPANISH = "SPANISH"
    ITALIAN = "ITALIAN"


class QueueName(str, Enum):
    BOOK_GENERATION = "book-generation"
    CONTENT_GENERATION = "content-generation"
    DOCUMENT_GENERATION = "document-generation"
    DOCUMENT_TRANSLATION = "document-translation"


class BackoffPolicy(BaseModel):
    type: Literal["fixed", "linear", "exponential"] = "exponential"
    delay: float = 5.0
    max_delay: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before redelivering after failed attempt number ``attempt`` (1-based)."""
        attempt = max(attempt, 1)
        if self.type == "fixed":
            return self.delay
        if self.type == "linear":
            return self.delay * attempt
        return min(self.delay * (2 ** (attempt - 1)), self.max_delay)


class JobOptions(BaseModel):
    priority: Optional[int] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)
    backoff: Optional[BackoffPolicy] = None


class TitleMetadata(BaseModel):
    title: str
    subtitle: Optional[str] = None
    author: str


class InlineAssetReference(BaseModel):
    path: str
    original_name: str
    mime_type: str = "application/octet-stream"
    caption: Optional[str] = None
    chapter_number: Optional[int] = None
    is_map: bool = False


class GenerationParameters(BaseModel):
    number_of_chapters: Optional[int] = Field(default=None, ge=1)
    formats: Optional[List[DocumentFormat]] = None
    target_languages: Optional[List[Language]] = None
    image_chapter_numbers: Optional[List[int]] = None
    map_caption: Optional[str] = None


class GenerateBookPayload(BaseModel):
    project_id: str
    request_parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    inline_asset_references: List[InlineAssetReference] = Field(default_factory=list)


class GenerateContentPayload(BaseModel):
    project_id: str
    number_of_chapters: int


class RenderDocumentPayload(BaseModel):
    project_id: str
    format: DocumentFormat
    language: Language
    title_metadata: TitleMetadata


class TranslateDocumentPayload(BaseModel):
    project_id: str
    format: DocumentFormat
    source_language: Language
    target_language: Language


class JobProgress(BaseModel):
    percent: int = 0
    current_step: Optional[str] = None


class JobTimestamps(BaseModel):
    enqueued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobStatusResponse(BaseModel):
    job_id: str
    queue_name: Optional[str] = None
    status: str
    progress: JobProgress = Field(default_factory=JobProgress)
    result: Optional[Any] = None
    failure_reason: Optional[str] = None
    attempts_made: int = 0
    timestamps: JobTimestamps = Field(default_factory=JobTimestamps)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobState.COMPLETED.value, JobState.FAILED.value)


class QueueMetrics(BaseModel):
    queue_name: str
    waiting: int
    active: int
    completed: int
    failed: int
    total: int


class ProjectCreate(BaseModel):
    title: str
    subtitle: Optional[str] = None
    author: str
    base_language: Language = Language.ENGLISH
    number_of_chapters: int = Field(default=10, ge=1)


class ProjectSummary(BaseModel):
    id: str
    title: str
    subtitle: Optional[str] = None
    author: str
    base_language: Language
    number_of_chapters: int
    status: ProjectStatus
    created_at: datetime
    updated_at: datetime


class DocumentSummary(BaseModel):
    id: str
    project_id: str
    format: DocumentFormat
    language: Language
    filename: str
    url: str
    size: int
    created_at: datetime


class GenerationAccepted(BaseModel):
    project_id: str
    job_id: str
    status: ProjectStatus


@dataclass
class Job:
    """Internal job row as stored by the job status store."""

    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any]
    status: JobState
    priority: int
    max_attempts: int
    backoff: BackoffPolicy
    attempts_made: int = 0
    progress: int = 0
    current_step: Optional[str] = None
    result: Optional[Any] = None
    failure_reason: Optional[str] = None
    available_at: float = 0.0
    heartbeat_at: Optional[float] = None
    enqueued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_status(self) -> JobStatusResponse:
        external = "waiting" if self.status == JobState.PENDING else self.status.value
        return JobStatusResponse(
            job_id=self.id,
            queue_name=self.queue_name,
            status=external,
            progress=JobProgress(percent=self.progress, current_step=self.current_step),
            result=self.result,
            failure_reason=self.failure_reason,
            attempts_made=self.attempts_made,
            timestamps=JobTimestamps(
                enqueued_at=self.enqueued_at,
                started_at=self.started_at,
                finished_at=self.finished_at,
            ),
        )


@dataclass
class Project:
    id: str
    title: str
    subtitle: Optional[str]
    author: str
    base_language: Language
    number_of_chapters: int
    status: ProjectStatus
    created_at: datetime
    updated_at: datetime

    def to_summary(self) -> ProjectSummary:
        return ProjectSummary(
            id=self.id,
            title=self.title,
            subtitle=self.subtitle,
            author=self.author,
            base_language=self.base_language,
            number_of_chapters=self.number_of_chapters,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def title_metadata(self) -> TitleMetadata:
        return TitleMetadata(title=self.title, subtitle=self.subtitle, author=self.author)


@dataclass
class Chapter:
    order: int
    title: str
    content: str


@dataclass
class Asset:
    id: str
    project_id: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    url: str
    storage_key: str
    chapter_number: Optional[int] = None
    position: Optional[int] = None
    caption: Optional[str] = None
    is_map: bool = False


@dataclass
class DocumentRecord:
    id: str
    project_id: str
    format: DocumentFormat
    language: Language
    filename: str
    url: str
    storage_key: str
    size: int
    created_at: datetime

    def to_summary(self, url: Optional[str] = None) -> DocumentSummary:
        return DocumentSummary(
            id=self.id,
            project_id=self.project_id,
            format=self.format,
            language=self.language,
            filename=self.filename,
            url=url or self.url,
            size=self.size,
            created_at=self.created_at,
        )

    def to_result(self, skipped: bool = False) -> Dict[str, Any]:
        return {"document_id": self.id, "filename": self.filename, "url": self.url, "skipped": skipped}


@dataclass
class TranslationBundle:
    project_id: str
    language: Language
    title: str
    subtitle: Optional[str]
    chapters: List[Chapter] = field(default_factory=list)
