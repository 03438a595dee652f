# renderflow/main.py
# FastAPI servis sınırı: iş gönderme ve durum okuma (render işini worker yapar)

from typing import List
from uuid import uuid4
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, HTTPException, Depends, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .config import settings
from .compiler import validate_plan
from .db import engine, init_db
from .errors import DuplicateJobError, JobNotFoundError, PlanValidationError
from .fetcher import is_remote_url
from .log import setup_logging
from .models import Job
from .schemas import JobInput, JobOut, JobListItem
from .store import JobStore

logger = structlog.get_logger(__name__)

# -------------------------------------------------------------------
# Klasörler
# -------------------------------------------------------------------
settings.ensure_dirs()

# -------------------------------------------------------------------
# FastAPI & CORS
# -------------------------------------------------------------------
app = FastAPI(title="RenderFlow", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(settings.OUTPUT_URL_PREFIX, StaticFiles(directory=settings.OUTPUT_DIR), name="outputs")

@app.on_event("startup")
def on_startup():
    setup_logging(settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    init_db(engine)
    logger.info("api_started", database=engine.url.render_as_string(hide_password=True))

@app.get("/health")
def health():
    return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}

# -------------------------------------------------------------------
# Yardımcılar
# -------------------------------------------------------------------
def get_store() -> JobStore:
    return JobStore(engine)

def _job_out(job: Job) -> JobOut:
    return JobOut(
        job_id=job.id,
        state=job.state,
        progress_pct=job.progress_pct,
        output=job.output,
        error=job.error,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )

# -------------------------------------------------------------------
# Routes
# -------------------------------------------------------------------

# Job oluşturma endpointi: işi kuyruğa yazar, 202 döner; render'ı worker yapar
@app.post("/api/jobs", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
def create_job(body: JobInput, store: JobStore = Depends(get_store)):
    plan = body.to_plan()
    if plan is None:
        raise HTTPException(status_code=422, detail="Provide either 'plan' or 'source_url'")
    try:
        validate_plan(plan)
    except PlanValidationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())

    # yerel dosya yolları sadece worker'a doğrudan yazılan işler için; HTTP'den sadece http(s)
    refs = dict.fromkeys([body.source_url, *plan.asset_urls()])
    local_refs = [u for u in refs if u and not is_remote_url(u)]
    if local_refs:
        error = PlanValidationError(
            "asset references must be http(s) URLs", detail={"asset_urls": local_refs}
        )
        raise HTTPException(status_code=422, detail=error.to_dict())

    job_id = uuid4().hex
    try:
        job = store.insert(job_id, body.model_dump(mode="json", exclude_none=True))
    except DuplicateJobError:
        raise HTTPException(status_code=409, detail="Job id collision, retry")
    logger.info("job_queued", job_id=job.id, segments=len(plan.timeline))
    return _job_out(job)


# Job detay endpointi (ID ile); client bu endpointi poll eder
@app.get("/api/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str, store: JobStore = Depends(get_store)):
    try:
        job = store.get(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_out(job)


# Son işler (yeniden eskiye)
@app.get("/api/jobs", response_model=List[JobListItem])
def list_jobs(limit: int = Query(default=50, ge=1, le=500), store: JobStore = Depends(get_store)):
    return [
        JobListItem(job_id=j.id, state=j.state, progress_pct=j.progress_pct, created_at=j.created_at)
        for j in store.list_recent(limit)
    ]
