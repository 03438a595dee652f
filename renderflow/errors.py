# Hata sınıfları: store hataları + iş (job) pipeline hataları

from typing import Any, Optional

from .models import ErrorCode


class DuplicateJobError(Exception):
    def __init__(self, job_id: str):
        super().__init__(f"job already exists: {job_id}")
        self.job_id = job_id


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class RenderError(Exception):
    """
    Pipeline içinde oluşan ve job'u `failed` durumuna taşıyan hata.
    `code` stabil hata kodudur; mesaj ve detail kullanıcıya aynen döner.
    """

    code: ErrorCode = ErrorCode.INTERNAL

    def __init__(self, message: str, detail: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.detail:
            data["detail"] = self.detail
        return data


class PlanValidationError(RenderError):
    code = ErrorCode.VALIDATION


class AssetDownloadError(RenderError):
    code = ErrorCode.ASSET_DOWNLOAD


class EncoderSpawnError(RenderError):
    code = ErrorCode.ENCODER_SPAWN


class EncoderExecError(RenderError):
    code = ErrorCode.ENCODER_EXEC


class JobTimeoutError(RenderError):
    code = ErrorCode.TIMEOUT
