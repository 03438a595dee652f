#Tablolar (ORM modelleri) – Job tablosu ve durum sabitleri burada

from enum import Enum
from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import JSON, Index
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    QUEUED = "queued"
    PREPARING = "preparing"
    DOWNLOADING = "downloading"
    ENCODING = "encoding"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


# pipeline sırası; failed her non-terminal durumdan erişilebilir
PIPELINE_ORDER = (
    JobState.QUEUED,
    JobState.PREPARING,
    JobState.DOWNLOADING,
    JobState.ENCODING,
    JobState.FINALIZING,
    JobState.DONE,
)
TERMINAL_STATES = frozenset({JobState.DONE, JobState.FAILED})
# claim edilmiş ama bitmemiş işler (orphan adayları)
ACTIVE_STATES = (
    JobState.PREPARING,
    JobState.DOWNLOADING,
    JobState.ENCODING,
    JobState.FINALIZING,
)


class ErrorCode(str, Enum):
    VALIDATION = "Validation"
    ASSET_DOWNLOAD = "AssetDownload"
    ENCODER_SPAWN = "EncoderSpawn"
    ENCODER_EXEC = "EncoderExec"
    TIMEOUT = "Timeout"
    SYSTEM_RESTART = "SystemRestart"
    INTERNAL = "Internal"


class Job(SQLModel, table=True):
    __tablename__ = "jobs"

    id: str = Field(primary_key=True)
    state: str = Field(default=JobState.QUEUED.value)
    input: dict = Field(default_factory=dict, sa_type=JSON)
    progress_pct: int = Field(default=0)
    output: Optional[dict] = Field(default=None, sa_type=JSON)
    error: Optional[dict] = Field(default=None, sa_type=JSON)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    worker_owner: Optional[str] = None

    __table_args__ = (
        Index("idx_jobs_state_created", "state", "created_at"),
    )
