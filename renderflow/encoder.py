# Encoder (ffmpeg) alt sürecini çalıştırma, ilerleme ayrıştırma ve hata sınıflandırma

import re
import subprocess
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from .errors import EncoderSpawnError

logger = structlog.get_logger(__name__)

DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")

# terminal yazım 100'ü set edene kadar üst sınır
MAX_RUNNING_PCT = 99
TAIL_LINES = 40


def _to_ms(hours: str, minutes: str, seconds: str) -> int:
    return int(round((int(hours) * 3600 + int(minutes) * 60 + float(seconds)) * 1000))


class ProgressTracker:
    """
    Encoder çıktısındaki `Duration:` ve `time=` işaretlerinden yüzde hesaplar.

    Payda olarak planın beklenen süresi kullanılır; bilinmiyorsa (ör. trim sonu
    verilmemiş segment) encoder'ın bildirdiği son `Duration:` değeri kullanılır.
    Yüzde hiç azalmaz ve MAX_RUNNING_PCT'yi geçmez.
    """

    def __init__(self, expected_duration_ms: Optional[int] = None):
        self.expected_duration_ms = expected_duration_ms
        self.reported_duration_ms: Optional[int] = None
        self.position_ms: Optional[int] = None
        self.pct = 0

    @property
    def total_ms(self) -> Optional[int]:
        return self.expected_duration_ms or self.reported_duration_ms

    def feed(self, line: str) -> Optional[int]:
        """Satırı işler; yüzde arttıysa yeni değeri, yoksa None döner."""
        m = DURATION_RE.search(line)
        if m:
            self.reported_duration_ms = _to_ms(*m.groups())
            return None

        m = TIME_RE.search(line)
        if not m:
            return None
        position = _to_ms(*m.groups())
        if self.position_ms is None or position > self.position_ms:
            self.position_ms = position

        total = self.total_ms
        if not total:
            return None
        pct = min(MAX_RUNNING_PCT, int(self.position_ms * 100 / total))
        if pct > self.pct:
            self.pct = pct
            return pct
        return None


@dataclass
class EncoderRun:
    returncode: int
    tail: list[str] = field(default_factory=list)


def run_encoder(
    program: str,
    args: list[str],
    *,
    on_line: Optional[Callable[[str], None]] = None,
    on_spawn: Optional[Callable[[subprocess.Popen], None]] = None,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
) -> EncoderRun:
    """
    Encoder'ı başlatır ve çıkana kadar bloklar. stdout+stderr birleşik okunur;
    text modda '\\r' ile biten ilerleme satırları da ayrı satır olarak gelir.

    Süreç dışarıdan öldürülürse (watchdog) pipe kapanır ve fonksiyon döner.
    """
    cmd = [program, *args]
    logger.debug("encoder_spawn", cmd=" ".join(cmd))
    try:
        process = popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
        )
    except OSError as e:
        raise EncoderSpawnError(
            f"could not start encoder {program!r}: {e}", detail={"program": program}
        ) from e

    if on_spawn:
        on_spawn(process)

    tail: deque[str] = deque(maxlen=TAIL_LINES)
    try:
        for raw in iter(process.stdout.readline, ""):
            line = raw.strip()
            if not line:
                continue
            tail.append(line)
            if on_line:
                on_line(line)
        returncode = process.wait()
    finally:
        # okuma sırasında hata olursa süreç geride kalmasın
        if process.poll() is None:
            process.kill()
            process.wait()
        if process.stdout:
            process.stdout.close()
    return EncoderRun(returncode=returncode, tail=list(tail))


# -------------------------------------------------------------------
# stderr -> anlamlı hata
# -------------------------------------------------------------------
_FAILURE_PATTERNS = [
    (("unknown encoder", "unknown codec", "codec not found", "encoder not found"),
     "invalid_codec", "Requested codec not supported"),
    (("no such filter", "filter not found"),
     "invalid_filter", "Encoder filter not available"),
    (("matches no streams", "stream specifier", "cannot find a matching stream"),
     "missing_stream", "Input is missing a required audio or video stream"),
    (("invalid data found", "moov atom not found", "invalid file"),
     "corrupted_input", "Source file is corrupted or invalid"),
    (("could not write header", "incompatible"),
     "incompatible_formats", "Input formats are incompatible"),
    (("permission denied", "access denied"),
     "permission_denied", "Permission denied writing output file"),
    (("no space left", "disk full"),
     "disk_full", "Server disk space full"),
    (("out of memory", "cannot allocate"),
     "out_of_memory", "Insufficient memory to process video"),
]


def last_error_line(tail: list[str]) -> Optional[str]:
    for line in reversed(tail):
        lower = line.lower()
        if "error" in lower or "invalid" in lower or "failed" in lower:
            return line
    return tail[-1] if tail else None


def classify_failure(tail: list[str]) -> dict[str, Optional[str]]:
    """Encoder çıktısının son satırlarından hata nedeni çıkarır."""
    text = "\n".join(tail).lower()
    for needles, reason, message in _FAILURE_PATTERNS:
        if any(n in text for n in needles):
            return {"reason": reason, "message": message, "last_line": last_error_line(tail)}
    return {"reason": "unknown", "message": "Encoder processing failed", "last_line": last_error_line(tail)}
