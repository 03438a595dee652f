# Execution Plan tipleri ve API'nin dışarı döndüğü Pydantic şemaları

from typing import Optional, List, Any
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime


class _Closed(BaseModel):
    # bilinmeyen alan gelirse reddet
    model_config = ConfigDict(extra="forbid")


# -------------------------------------------------------------------
# Execution Plan
# -------------------------------------------------------------------
class OutputFormat(_Closed):
    width: int = Field(default=1080, gt=0)
    height: int = Field(default=1920, gt=0)


class TimelineSegment(_Closed):
    asset_url: str = Field(min_length=1)
    trim_start_ms: int = Field(default=0, ge=0)
    # None: kaynağın sonuna kadar
    trim_end_ms: Optional[int] = Field(default=None, ge=0)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.trim_end_ms is None:
            return None
        return self.trim_end_ms - self.trim_start_ms


class AudioTrack(_Closed):
    asset_url: str = Field(min_length=1)
    trim_start_ms: int = Field(default=0, ge=0)
    timeline_start_ms: int = Field(default=0, ge=0)
    timeline_end_ms: int = Field(ge=0)
    volume: float = Field(default=1.0, ge=0)


class TextOverlay(_Closed):
    text: str
    start_ms: int = Field(ge=0)
    end_ms: int = Field(ge=0)
    x: str = "(w-text_w)/2"
    y: str = "(h-text_h)/2"
    font_size: int = Field(default=48, gt=0)
    color: str = "white"
    font_file: Optional[str] = None
    box: bool = False
    box_color: str = "black@0.5"


class ExecutionPlan(_Closed):
    timeline: List[TimelineSegment]
    audio_tracks: List[AudioTrack] = Field(default_factory=list)
    text_overlays: List[TextOverlay] = Field(default_factory=list)
    output_format: OutputFormat = Field(default_factory=OutputFormat)

    def asset_urls(self) -> list[str]:
        """Plan içindeki tüm asset referansları, ilk görülme sırasıyla (tekrarsız)."""
        seen: dict[str, None] = {}
        for seg in self.timeline:
            seen.setdefault(seg.asset_url, None)
        for track in self.audio_tracks:
            seen.setdefault(track.asset_url, None)
        return list(seen)

    def expected_duration_ms(self) -> Optional[int]:
        total = 0
        for seg in self.timeline:
            if seg.duration_ms is None:
                return None
            total += seg.duration_ms
        return total


# -------------------------------------------------------------------
# Job input (legacy tek kaynak veya plan)
# -------------------------------------------------------------------
class TrimWindow(_Closed):
    # saniye cinsinden (eski API ile uyumlu)
    start: float = Field(default=0, ge=0)
    end: Optional[float] = Field(default=None, ge=0)


class JobInput(_Closed):
    source_url: Optional[str] = None
    trim: Optional[TrimWindow] = None
    plan: Optional[ExecutionPlan] = None
    output_format: Optional[OutputFormat] = None

    def to_plan(self) -> Optional[ExecutionPlan]:
        """
        Plan varsa onu döner; yoksa legacy `source_url` + `trim` alanlarından
        tek segmentlik bir plan üretir. İkisi de yoksa None.
        """
        if self.plan is not None:
            if self.output_format is not None:
                return self.plan.model_copy(update={"output_format": self.output_format})
            return self.plan
        if not self.source_url:
            return None
        trim = self.trim or TrimWindow()
        segment = TimelineSegment(
            asset_url=self.source_url,
            trim_start_ms=int(round(trim.start * 1000)),
            trim_end_ms=None if trim.end is None else int(round(trim.end * 1000)),
        )
        return ExecutionPlan(timeline=[segment], output_format=self.output_format or OutputFormat())

    def asset_urls(self) -> list[str]:
        plan = self.to_plan()
        return plan.asset_urls() if plan is not None else []


# -------------------------------------------------------------------
# Job sonuçları
# -------------------------------------------------------------------
class JobOutput(BaseModel):
    output_path: str
    output_url: str
    file_size: int
    duration_ms: int


class JobErrorInfo(BaseModel):
    code: str
    message: str
    detail: Optional[dict[str, Any]] = None


# JobOut'un API yanıtı için şeması (örneğin /api/jobs/{job_id})
class JobOut(BaseModel):
    job_id: str
    state: str
    progress_pct: int
    output: Optional[JobOutput] = None
    error: Optional[JobErrorInfo] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# JobListItem'ın API yanıtı için şeması (/api/jobs listesi)
class JobListItem(BaseModel):
    job_id: str
    state: str
    progress_pct: int
    created_at: datetime
