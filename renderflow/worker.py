# Worker Engine: poll döngüsü, job pipeline'ı, watchdog ve orphan recovery

import argparse
import os
import queue
import signal
import socket
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, NamedTuple, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .compiler import compile_plan, validate_plan
from .config import Settings, settings
from .db import engine, init_db
from .encoder import ProgressTracker, classify_failure, run_encoder
from .errors import (
    EncoderExecError,
    JobTimeoutError,
    PlanValidationError,
    RenderError,
)
from .fetcher import AssetFetcher
from .log import setup_logging
from .models import Job, JobState
from .schemas import JobInput, JobOutput
from .store import JobStore

logger = structlog.get_logger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


# -------------------------------------------------------------------
# Watchdog
# -------------------------------------------------------------------
class TimeoutNotice(NamedTuple):
    job_id: str
    reason: str


class Watchdog:
    """
    Tek bir işin duvar saati limitini denetleyen periyodik zamanlayıcı.

    Limit aşılınca bağlı encoder sürecini SIGKILL ile öldürür ve worker'a
    "job X zaman aşımı" mesajı gönderir. Job store'a yazmaz; terminal
    sonucu yalnızca worker döngüsü yazar.
    """

    def __init__(
        self,
        job_id: str,
        notices: "queue.Queue[TimeoutNotice]",
        *,
        max_runtime: float,
        interval: float,
        stall_timeout: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job_id = job_id
        self.max_runtime = max_runtime
        self.interval = interval
        self.stall_timeout = stall_timeout
        self._notices = notices
        self._clock = clock
        self._started = clock()
        self._last_activity = self._started
        self._process: Optional[subprocess.Popen] = None
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"watchdog-{job_id}", daemon=True)
        self.fired = False

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()

    def attach(self, process: subprocess.Popen) -> None:
        self._process = process
        self.touch()

    def detach(self) -> None:
        self._process = None

    def touch(self) -> None:
        self._last_activity = self._clock()

    def check(self) -> Optional[str]:
        """Limit aşıldıysa sebebini döner."""
        now = self._clock()
        elapsed = now - self._started
        if elapsed > self.max_runtime:
            return f"Job exceeded max runtime of {self.max_runtime:g}s"
        if self.stall_timeout and self._process is not None:
            idle = now - self._last_activity
            if idle > self.stall_timeout:
                return f"Encoder produced no output for {idle:.1f}s"
        return None

    def _run(self) -> None:
        while not self._cancelled.wait(self.interval):
            reason = self.check()
            if reason:
                self._fire(reason)
                return

    def _fire(self, reason: str) -> None:
        # iş bu arada bittiyse dokunma
        if self._cancelled.is_set():
            return
        self.fired = True
        # mesaj kill'den önce: worker encoder'dan döndüğünde mesaj kuyrukta olmalı
        self._notices.put(TimeoutNotice(self.job_id, reason))
        process = self._process
        if process is not None and process.poll() is None:
            logger.error("watchdog_kill", job_id=self.job_id, reason=reason, pid=process.pid)
            process.kill()
        else:
            logger.error("watchdog_timeout", job_id=self.job_id, reason=reason)


# -------------------------------------------------------------------
# Worker
# -------------------------------------------------------------------
class Worker:
    """
    Tek süreçli kontrol döngüsü: bir seferde tek iş.
    Birden fazla worker süreci aynı store'u paylaşabilir; karşılıklı dışlama
    sadece `JobStore.claim_next` ile sağlanır.
    """

    def __init__(
        self,
        store: JobStore,
        config: Settings,
        *,
        fetcher: Optional[AssetFetcher] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        owner: Optional[str] = None,
    ):
        self.store = store
        self.config = config
        self.fetcher = fetcher or AssetFetcher(config.TEMP_DIR, timeout=config.DOWNLOAD_TIMEOUT)
        self.popen = popen
        self.owner = owner or default_owner()
        self.current_job_id: Optional[str] = None
        self._notices: "queue.Queue[TimeoutNotice]" = queue.Queue()
        self._timed_out: dict[str, TimeoutNotice] = {}
        self._stop = threading.Event()

    # ---------------------------------------------------------------
    # Döngü
    # ---------------------------------------------------------------
    def start(self, once: bool = False) -> int:
        """
        Süreç başlangıç kancası: önce orphan recovery, sonra poll döngüsü.
        `once=True` ise en fazla bir iş işlenir ve döner.
        """
        recovered = self.store.recover_orphans()
        logger.info("worker_started", owner=self.owner, recovered_orphans=recovered)
        if once:
            return int(self.run_once())
        return self.run()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> int:
        processed = 0
        while not self._stop.is_set():
            try:
                handled = self.run_once()
            except Exception:
                # store geçici olarak erişilemez olabilir; bir sonraki tick'te tekrar dene
                logger.exception("poll_error", owner=self.owner)
                handled = False
            if handled:
                processed += 1
                continue
            self._stop.wait(self.config.POLL_INTERVAL)
        logger.info("worker_stopped", owner=self.owner, processed=processed)
        return processed

    def run_once(self) -> bool:
        if self.current_job_id is not None:
            return False
        job = self.store.claim_next(self.owner)
        if job is None:
            return False
        self.process_job(job)
        return True

    # ---------------------------------------------------------------
    # İş işleme
    # ---------------------------------------------------------------
    def process_job(self, job: Job) -> None:
        """İşi terminal bir duruma (done/failed) kadar senkron olarak sürer."""
        log = logger.bind(job_id=job.id)
        self.current_job_id = job.id
        self._drain_notices()
        watchdog = Watchdog(
            job.id,
            self._notices,
            max_runtime=self.config.MAX_RUNTIME_SECONDS,
            interval=self.config.WATCHDOG_INTERVAL,
            stall_timeout=self.config.STALL_TIMEOUT_SECONDS,
        )
        watchdog.start()
        try:
            output = self._run_pipeline(job, watchdog)
        except RenderError as e:
            self._fail(job.id, e)
        except Exception as e:
            log.exception("job_crashed")
            self._fail(job.id, RenderError(f"unexpected error: {e}"))
        else:
            self.store.mark_done(job.id, output)
        finally:
            watchdog.cancel()
            self._reset(job.id)

    def _run_pipeline(self, job: Job, watchdog: Watchdog) -> JobOutput:
        # preparing: girdiyi planla çöz, encoder'dan önce doğrula
        job_input = parse_job_input(job.input)
        plan = job_input.to_plan()
        if plan is None:
            raise PlanValidationError("job input has neither an execution plan nor a source_url")
        validate_plan(plan)
        self._raise_if_timed_out(job.id)

        # downloading
        self.store.advance_state(job.id, JobState.DOWNLOADING)
        local_paths = self.fetcher.resolve(job_input.asset_urls())
        self._raise_if_timed_out(job.id)

        output_dir = Path(self.config.OUTPUT_DIR)
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / f"{job.id}.mp4"
        program, args = compile_plan(
            plan,
            local_paths,
            str(output_path),
            program=self.config.ENCODER_BINARY,
            preset=self.config.VIDEO_PRESET,
        )

        # encoding
        self.store.advance_state(job.id, JobState.ENCODING)
        tracker = ProgressTracker(plan.expected_duration_ms())

        def on_line(line: str) -> None:
            watchdog.touch()
            pct = tracker.feed(line)
            if pct is not None:
                self._report_progress(job.id, pct)

        logger.info("encoder_start", job_id=job.id, program=program, inputs=args.count("-i"))
        run = run_encoder(program, args, on_line=on_line, on_spawn=watchdog.attach, popen=self.popen)
        watchdog.detach()
        self._raise_if_timed_out(job.id)
        if run.returncode != 0:
            failure = classify_failure(run.tail)
            raise EncoderExecError(
                f"encoder exited with code {run.returncode}: {failure['message']}",
                detail={
                    "exit_code": run.returncode,
                    "reason": failure["reason"],
                    "last_line": failure["last_line"],
                    "tail": run.tail[-10:],
                },
            )

        # finalizing
        self.store.advance_state(job.id, JobState.FINALIZING)
        if not output_path.is_file():
            raise EncoderExecError(
                "encoder exited successfully but produced no output file",
                detail={"output_path": str(output_path)},
            )
        duration_ms = tracker.position_ms or tracker.total_ms or 0
        return JobOutput(
            output_path=str(output_path),
            output_url=f"{self.config.OUTPUT_URL_PREFIX.rstrip('/')}/{output_path.name}",
            file_size=output_path.stat().st_size,
            duration_ms=duration_ms,
        )

    def _report_progress(self, job_id: str, pct: int) -> None:
        # ilerleme sadece gözlem içindir; yazılamazsa encode devam eder
        try:
            self.store.update_progress(job_id, pct)
        except SQLAlchemyError as e:
            logger.warning("progress_write_failed", job_id=job_id, pct=pct, error=str(e))

    def _fail(self, job_id: str, error: RenderError) -> None:
        notice = self._timeout_notice(job_id)
        if notice is not None and not isinstance(error, JobTimeoutError):
            # watchdog'un kill'i encoder'ı non-zero çıkışa zorladı; asıl sebep timeout
            error = JobTimeoutError(notice.reason, detail={"interrupted": error.to_dict()})
        self.store.mark_fail(job_id, error.to_dict())

    # ---------------------------------------------------------------
    # Watchdog mesajları
    # ---------------------------------------------------------------
    def _drain_notices(self) -> None:
        while True:
            try:
                notice = self._notices.get_nowait()
            except queue.Empty:
                return
            self._timed_out[notice.job_id] = notice

    def _timeout_notice(self, job_id: str) -> Optional[TimeoutNotice]:
        self._drain_notices()
        return self._timed_out.get(job_id)

    def _raise_if_timed_out(self, job_id: str) -> None:
        notice = self._timeout_notice(job_id)
        if notice is not None:
            raise JobTimeoutError(notice.reason)

    def _reset(self, job_id: str) -> None:
        self.current_job_id = None
        self._drain_notices()
        self._timed_out.clear()


def parse_job_input(raw: dict[str, Any]) -> JobInput:
    try:
        return JobInput.model_validate(raw or {})
    except ValidationError as e:
        raise PlanValidationError(
            "job input is malformed",
            detail={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


# -------------------------------------------------------------------
# CLI
# -------------------------------------------------------------------
def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="renderflow-worker", description="Run the render job worker loop.")
    parser.add_argument("--owner", default=None, help="worker identifier stored on claimed jobs")
    parser.add_argument("--once", action="store_true", help="process at most one job and exit")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    args = parser.parse_args(argv)

    setup_logging(args.log_level or settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    settings.ensure_dirs()
    init_db(engine)

    worker = Worker(JobStore(engine), settings, owner=args.owner)

    def _shutdown(signum, _frame):
        logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    worker.start(once=args.once)
    return 0


if __name__ == "__main__":
    sys.exit(main())
