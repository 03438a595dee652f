# Job Store: kalıcı iş tablosu üzerinde atomik claim, durum geçişi ve terminal yazımlar.
# Süreçler arası tüm koordinasyon burada, koşullu UPDATE'ler ile yapılır.

from typing import Any, Optional, Union

import structlog
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, col

from .errors import DuplicateJobError, JobNotFoundError
from .models import (
    ACTIVE_STATES,
    PIPELINE_ORDER,
    TERMINAL_STATES,
    ErrorCode,
    Job,
    JobState,
    utcnow,
)
from .schemas import JobErrorInfo, JobOutput

logger = structlog.get_logger(__name__)

SYSTEM_RESTART_MESSAGE = "Job failed due to system crash/restart"

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATES]


class JobStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ---------------------------------------------------------------
    # Okuma / yazma
    # ---------------------------------------------------------------
    def insert(self, job_id: str, input: dict[str, Any]) -> Job:
        job = Job(id=job_id, state=JobState.QUEUED.value, input=input, created_at=utcnow())
        with Session(self.engine) as session:
            if session.get(Job, job_id) is not None:
                raise DuplicateJobError(job_id)
            session.add(job)
            try:
                session.commit()
            except IntegrityError:
                # get() ile commit arasında başka bir süreç aynı id'yi yazmış
                session.rollback()
                raise DuplicateJobError(job_id) from None
            session.refresh(job)
            return job

    def get(self, job_id: str) -> Job:
        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

    def list_recent(self, limit: int = 50) -> list[Job]:
        with Session(self.engine) as session:
            stmt = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            return list(session.exec(stmt).all())

    # ---------------------------------------------------------------
    # Claim
    # ---------------------------------------------------------------
    def claim_next(self, worker_owner: str) -> Optional[Job]:
        """
        En eski `queued` işi atomik olarak `preparing` durumuna alır ve döner.

        Aday seçimi ile güncelleme ayrı adımlardır; güncelleme `state = 'queued'`
        koşulunu tekrar kontrol ettiği için aynı satırı iki çağıran kazanamaz.
        Yarışı kaybeden çağıran bir sonraki adaya geçer. Kuyruk boşsa None.
        """
        while True:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job.id)
                    .where(Job.state == JobState.QUEUED.value)
                    .order_by(col(Job.created_at).asc(), col(Job.id).asc())
                    .limit(1)
                ).first()
            if candidate is None:
                return None

            # queued bir satır daha önce hiç claim edilmemiştir: started_at burada bir kez set edilir
            stmt = (
                update(Job)
                .where(col(Job.id) == candidate, col(Job.state) == JobState.QUEUED.value)
                .values(
                    state=JobState.PREPARING.value,
                    worker_owner=worker_owner,
                    started_at=utcnow(),
                )
            )
            with self.engine.begin() as conn:
                claimed = conn.execute(stmt).rowcount == 1
            if claimed:
                logger.info("job_claimed", job_id=candidate, worker_owner=worker_owner)
                return self.get(candidate)
            logger.debug("claim_lost", job_id=candidate, worker_owner=worker_owner)

    # ---------------------------------------------------------------
    # Durum geçişleri
    # ---------------------------------------------------------------
    def advance_state(self, job_id: str, state: Union[JobState, str]) -> bool:
        """
        Pipeline içi bir duruma geçiş. Aynı durumu iki kez yazmak etkisizdir;
        geri gitme ve terminal durumdan çıkma koşul ile engellenir.
        """
        state = JobState(state)
        if state not in ACTIVE_STATES:
            raise ValueError(f"not a pipeline-internal state: {state.value}")
        reachable_from = [
            s.value for s in PIPELINE_ORDER[: PIPELINE_ORDER.index(state) + 1]
            if s in ACTIVE_STATES
        ]
        stmt = (
            update(Job)
            .where(col(Job.id) == job_id, col(Job.state).in_(reachable_from))
            .values(state=state.value)
        )
        with self.engine.begin() as conn:
            changed = conn.execute(stmt).rowcount == 1
        if changed:
            logger.info("job_state", job_id=job_id, state=state.value)
        return changed

    def update_progress(self, job_id: str, pct: int) -> bool:
        # 100 sadece mark_done ile yazılır
        pct = max(0, min(99, int(pct)))
        stmt = (
            update(Job)
            .where(
                col(Job.id) == job_id,
                col(Job.state) == JobState.ENCODING.value,
                col(Job.progress_pct) <= pct,
            )
            .values(progress_pct=pct)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def mark_done(self, job_id: str, output: Union[JobOutput, dict[str, Any]]) -> bool:
        if isinstance(output, JobOutput):
            output = output.model_dump()
        applied = self._terminal_write(
            job_id,
            state=JobState.DONE.value,
            output=output,
            progress_pct=100,
        )
        if applied:
            logger.info("job_done", job_id=job_id, output_path=output.get("output_path"))
        else:
            logger.warning("terminal_write_ignored", job_id=job_id, attempted=JobState.DONE.value)
        return applied

    def mark_fail(self, job_id: str, error: Union[JobErrorInfo, dict[str, Any]]) -> bool:
        if isinstance(error, JobErrorInfo):
            error = error.model_dump(exclude_none=True)
        applied = self._terminal_write(job_id, state=JobState.FAILED.value, error=error)
        if applied:
            logger.warning("job_failed", job_id=job_id, code=error.get("code"), message=error.get("message"))
        else:
            logger.warning("terminal_write_ignored", job_id=job_id, attempted=JobState.FAILED.value)
        return applied

    def _terminal_write(self, job_id: str, **values: Any) -> bool:
        # ilk yazan kazanır: terminal bir satır bir daha değişmez
        stmt = (
            update(Job)
            .where(col(Job.id) == job_id, col(Job.state).not_in(_TERMINAL_VALUES))
            .values(completed_at=utcnow(), worker_owner=None, **values)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    # ---------------------------------------------------------------
    # Crash recovery
    # ---------------------------------------------------------------
    def recover_orphans(self) -> int:
        """
        Worker başlarken, poll döngüsünden önce bir kez çalışır.
        Claim edilmiş ama bitmemiş her işi `SystemRestart` koduyla `failed` yapar;
        önceki süreçteki encoder'ın hayatta kalıp kalmadığı bilinemez.
        """
        stmt = (
            update(Job)
            .where(col(Job.state).in_([s.value for s in ACTIVE_STATES]))
            .values(
                state=JobState.FAILED.value,
                completed_at=utcnow(),
                worker_owner=None,
                error={"code": ErrorCode.SYSTEM_RESTART.value, "message": SYSTEM_RESTART_MESSAGE},
            )
        )
        with self.engine.begin() as conn:
            count = conn.execute(stmt).rowcount
        if count:
            logger.warning("orphans_recovered", count=count)
        return count
