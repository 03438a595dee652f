# Asset Fetcher: plan'daki uzak URL'leri yerel cache klasörüne indirir

import hashlib
import os
import uuid
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import unquote, urlparse

import httpx
import structlog

from .errors import AssetDownloadError

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 1024 * 256


def cache_filename(url: str) -> str:
    """URL'in md5'i + orijinal uzantı (query string hariç)."""
    digest = hashlib.md5(url.encode("utf-8")).hexdigest()
    suffix = Path(urlparse(url).path).suffix
    return f"{digest}{suffix}"


REMOTE_SCHEMES = ("http", "https")


def is_remote_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in REMOTE_SCHEMES and bool(parsed.netloc)


def _local_source(url: str) -> Optional[Path]:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme in ("http", "https"):
        return None
    # şemasız: yerel yol olarak dene
    path = Path(url)
    if path.is_absolute() and path.exists():
        return path
    return None


class AssetFetcher:
    """
    `resolve(urls)` her farklı URL'i yerel bir dosyaya çözer.
    Dosya zaten cache'te varsa tekrar indirilmez (işler arası paylaşılan cache).
    Tek bir URL bile başarısız olursa tüm çağrı AssetDownloadError ile biter.
    """

    def __init__(
        self,
        cache_dir: Path,
        timeout: float = 120,
        client: Optional[httpx.Client] = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.timeout = timeout
        self._client = client

    def resolve(self, urls: Iterable[str]) -> dict[str, str]:
        unique = list(dict.fromkeys(u for u in urls if u))
        if not unique:
            return {}
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        resolved: dict[str, str] = {}
        if self._client is not None:
            for url in unique:
                resolved[url] = str(self._resolve_one(self._client, url))
            return resolved

        with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
            for url in unique:
                resolved[url] = str(self._resolve_one(client, url))
        return resolved

    def _resolve_one(self, client: httpx.Client, url: str) -> Path:
        local = _local_source(url)
        if local is not None:
            if not local.is_file():
                raise AssetDownloadError(f"local asset not found: {url}", detail={"url": url})
            return local

        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise AssetDownloadError(f"unsupported asset url: {url}", detail={"url": url})

        target = self.cache_dir / cache_filename(url)
        if target.exists():
            logger.debug("asset_cached", url=url, path=str(target))
            return target

        logger.info("asset_download", url=url, path=str(target))
        # önce .part dosyasına yaz, sonra atomik rename; yarım dosya cache'e girmez
        part = target.with_name(f"{target.name}.{uuid.uuid4().hex}.part")
        try:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                with part.open("wb") as f:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        f.write(chunk)
            os.replace(part, target)
        except httpx.HTTPStatusError as e:
            raise AssetDownloadError(
                f"failed to download {url}: HTTP {e.response.status_code}",
                detail={"url": url, "status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise AssetDownloadError(
                f"failed to download {url}: {e}", detail={"url": url}
            ) from e
        except OSError as e:
            raise AssetDownloadError(
                f"failed to store {url}: {e}", detail={"url": url}
            ) from e
        finally:
            part.unlink(missing_ok=True)
        return target
