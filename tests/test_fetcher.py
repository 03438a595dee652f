import httpx
import pytest

from renderflow.errors import AssetDownloadError
from renderflow.fetcher import AssetFetcher, cache_filename, is_remote_url
from renderflow.models import ErrorCode

from conftest import mock_fetcher

CLIP = "https://cdn.example.com/media/clip.mp4?token=abc"
MUSIC = "https://cdn.example.com/music.mp3"


def test_cache_filename_is_hash_plus_extension():
    name = cache_filename(CLIP)
    assert name.endswith(".mp4")
    assert "?" not in name
    assert name == cache_filename(CLIP)
    assert name != cache_filename(MUSIC)


def test_resolve_downloads_each_url_once(tmp_path):
    requests = []

    def handler(request):
        requests.append(str(request.url))
        return httpx.Response(200, content=b"payload:" + request.url.path.encode())

    fetcher = mock_fetcher(tmp_path / "cache", handler)
    resolved = fetcher.resolve([CLIP, MUSIC, CLIP])

    assert list(resolved) == [CLIP, MUSIC]
    assert len(requests) == 2
    clip_path = tmp_path / "cache" / cache_filename(CLIP)
    assert resolved[CLIP] == str(clip_path)
    assert clip_path.read_bytes() == b"payload:/media/clip.mp4"
    # .part dosyası kalmaz
    assert not list((tmp_path / "cache").glob("*.part"))


def test_existing_file_is_reused_without_fetching(tmp_path):
    cache = tmp_path / "cache"
    cache.mkdir()
    (cache / cache_filename(MUSIC)).write_bytes(b"cached")

    def handler(request):
        raise AssertionError("should not hit the network")

    resolved = mock_fetcher(cache, handler).resolve([MUSIC])
    assert resolved == {MUSIC: str(cache / cache_filename(MUSIC))}


def test_http_error_fails_whole_resolve(tmp_path):
    def handler(request):
        if request.url.path.endswith(".mp3"):
            return httpx.Response(404)
        return httpx.Response(200, content=b"ok")

    with pytest.raises(AssetDownloadError) as exc:
        mock_fetcher(tmp_path / "cache", handler).resolve([CLIP, MUSIC])
    assert exc.value.code == ErrorCode.ASSET_DOWNLOAD
    assert exc.value.detail == {"url": MUSIC, "status_code": 404}
    assert not (tmp_path / "cache" / cache_filename(MUSIC)).exists()


def test_network_error_is_asset_download_error(tmp_path):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AssetDownloadError) as exc:
        mock_fetcher(tmp_path / "cache", handler).resolve([CLIP])
    assert "connection refused" in exc.value.message


def test_local_paths_resolve_to_themselves(tmp_path, source_file):
    fetcher = AssetFetcher(tmp_path / "cache")
    resolved = fetcher.resolve([str(source_file), source_file.as_uri()])
    assert resolved == {str(source_file): str(source_file), source_file.as_uri(): str(source_file)}


def test_missing_local_file_and_unknown_scheme(tmp_path):
    fetcher = AssetFetcher(tmp_path / "cache")
    with pytest.raises(AssetDownloadError):
        fetcher.resolve([(tmp_path / "missing.mp4").as_uri()])
    with pytest.raises(AssetDownloadError):
        fetcher.resolve(["ftp://example.com/a.mp4"])


def test_empty_url_list(tmp_path):
    assert AssetFetcher(tmp_path / "cache").resolve([]) == {}


@pytest.mark.parametrize("url,remote", [
    (CLIP, True),
    ("http://cdn.example.com/a.mp4", True),
    ("file:///etc/passwd", False),
    ("/etc/hostname", False),
    ("https:///no-host.mp4", False),
    ("ftp://example.com/a.mp4", False),
])
def test_is_remote_url(url, remote):
    assert is_remote_url(url) is remote
