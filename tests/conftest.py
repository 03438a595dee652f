import threading
from pathlib import Path

import httpx
import pytest

from renderflow.config import Settings
from renderflow.db import create_db_engine, init_db
from renderflow.fetcher import AssetFetcher
from renderflow.store import JobStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATA_DIR=tmp_path,
        TEMP_DIR=tmp_path / "temp",
        OUTPUT_DIR=tmp_path / "output",
        DATABASE_URL=f"sqlite:///{tmp_path / 'renderflow.db'}",
        POLL_INTERVAL=0.01,
        WATCHDOG_INTERVAL=0.05,
        MAX_RUNTIME_SECONDS=30,
    )


@pytest.fixture
def engine(settings):
    eng = create_db_engine(settings.DATABASE_URL)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return JobStore(engine)


@pytest.fixture
def source_file(tmp_path) -> Path:
    path = tmp_path / "assets" / "source.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"not really a video")
    return path


def mock_fetcher(cache_dir, handler) -> AssetFetcher:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return AssetFetcher(cache_dir, client=client)


# -------------------------------------------------------------------
# Sahte encoder süreci (gerçek ffmpeg çalışmaz)
# -------------------------------------------------------------------
class FakeStream:
    def __init__(self, lines, killed: threading.Event, hang: bool):
        self._lines = list(lines)
        self._killed = killed
        self._hang = hang
        self.closed = False

    def readline(self):
        if self._lines and not self._killed.is_set():
            return self._lines.pop(0) + "\n"
        if self._hang:
            self._killed.wait(10)
        return ""

    def close(self):
        self.closed = True


class FakeProcess:
    pid = 4242

    def __init__(self, lines=(), returncode=0, hang=False):
        self.killed = threading.Event()
        self.kill_calls = 0
        self.returncode = None
        self._final = returncode
        self._hang = hang
        self.stdout = FakeStream(lines, self.killed, hang)

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self._hang:
            self.killed.wait(10)
        if self.returncode is None:
            self.returncode = -9 if self.killed.is_set() else self._final
        return self.returncode

    def kill(self):
        self.kill_calls += 1
        self.killed.set()


class FakeEncoder:
    """
    `popen` yerine geçer. Her çağrıda sıradaki davranışı kullanır; başarılı
    çıkışta (write_output) komutun son argümanındaki çıktı dosyasını oluşturur.
    """

    def __init__(self, *behaviours):
        self.behaviours = list(behaviours) or [{}]
        self.calls = []
        self.processes = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        behaviour = self.behaviours.pop(0) if len(self.behaviours) > 1 else self.behaviours[0]
        if behaviour.get("spawn_error"):
            raise FileNotFoundError(2, "No such file or directory", cmd[0])
        returncode = behaviour.get("returncode", 0)
        if returncode == 0 and behaviour.get("write_output", True) and not behaviour.get("hang"):
            Path(cmd[-1]).write_bytes(b"\x00" * 2048)
        proc = FakeProcess(
            lines=behaviour.get("lines", ()),
            returncode=returncode,
            hang=behaviour.get("hang", False),
        )
        self.processes.append(proc)
        return proc
