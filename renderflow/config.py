# renderflow/config.py
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent

class Settings(BaseSettings):
    # Klasörler
    DATA_DIR: Path = BASE_DIR / "data"
    TEMP_DIR: Path = BASE_DIR / "data" / "temp"
    OUTPUT_DIR: Path = BASE_DIR / "data" / "output"
    OUTPUT_URL_PREFIX: str = "/outputs"

    # DB
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'renderflow.db'}"

    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Worker
    POLL_INTERVAL: float = 1.0
    MAX_RUNTIME_SECONDS: float = 30 * 60    # hard cap per job
    WATCHDOG_INTERVAL: float = 5.0
    STALL_TIMEOUT_SECONDS: float = 0        # 0 = kapalı
    DOWNLOAD_TIMEOUT: float = 120

    # Encoder
    ENCODER_BINARY: str = "ffmpeg"
    VIDEO_PRESET: str = "fast"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # pydantic v2 settings
    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        extra="ignore",         # fazladan anahtar gelirse görmezden gelir
        case_sensitive=False,   # .env'de büyük/küçük farkı önemsemez
    )

    def ensure_dirs(self) -> None:
        for d in (self.DATA_DIR, self.TEMP_DIR, self.OUTPUT_DIR):
            Path(d).mkdir(parents=True, exist_ok=True)

settings = Settings()
