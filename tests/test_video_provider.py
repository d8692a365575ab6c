import httpx
import pytest

from playground.config import Settings
from playground.service.errors import (
    RemoteNotFoundError,
    RemoteUnavailableError,
    ValidationError,
)
from playground.service.video import (
    MEBIBYTE,
    ByteRange,
    GoogleDriveVideoProvider,
    extract_drive_file_id,
    parse_range,
)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="video-provider-test-secret-0123456789",
        shared_fs_root=str(tmp_path),
        google_api_key="api-key",
    )


def _provider(settings, handler):
    return GoogleDriveVideoProvider(settings, transport=httpx.MockTransport(handler))


DRIVE_FILE = {
    "name": "Holiday.mp4",
    "size": "123456",
    "mimeType": "video/mp4",
    "videoMediaMetadata": {"durationMillis": "61000", "width": 1920, "height": 1080},
}


class TestParseRange:
    def test_no_header_reads_first_chunk(self):
        assert parse_range(None) == ByteRange(0, 16 * MEBIBYTE - 1)

    def test_open_range_from_zero_uses_first_chunk(self):
        assert parse_range("bytes=0-", first_chunk=100, chunk=10) == ByteRange(0, 99)

    def test_open_range_mid_file_uses_chunk(self):
        assert parse_range("bytes=500-", first_chunk=100, chunk=10) == ByteRange(500, 509)

    def test_closed_range_is_passed_through(self):
        assert parse_range("bytes=10-20") == ByteRange(10, 20)

    def test_end_before_start_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_range("bytes=20-10")

    def test_suffix_range_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_range("bytes=-500")

    def test_unparseable_header_reads_from_start(self):
        assert parse_range("items=3", first_chunk=100, chunk=10) == ByteRange(0, 99)

    def test_header_rendering(self):
        assert ByteRange(5, 9).header() == "bytes=5-9"


class TestExtractDriveFileId:
    def test_bare_id(self):
        assert extract_drive_file_id(" abc123 ") == "abc123"

    def test_share_link(self):
        link = "https://drive.google.com/file/d/1AbC-xyz_9/view?usp=sharing"
        assert extract_drive_file_id(link) == "1AbC-xyz_9"

    def test_link_without_id(self):
        with pytest.raises(ValidationError):
            extract_drive_file_id("https://drive.google.com/drive/folders")

    def test_empty(self):
        with pytest.raises(ValidationError):
            extract_drive_file_id("   ")


class TestFetchMetadata:
    async def test_maps_drive_fields(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=DRIVE_FILE)

        remote = await _provider(settings, handler).fetch_video_metadata("vid123")

        assert seen["path"] == "/drive/v3/files/vid123"
        assert seen["params"]["key"] == "api-key"
        assert seen["params"]["fields"] == "name,size,videoMediaMetadata,mimeType"
        assert remote.remote_id == "vid123"
        assert remote.default_name == "Holiday.mp4"
        assert (remote.duration_millis, remote.width, remote.height) == (61000, 1920, 1080)
        assert remote.size_bytes == 123456
        assert remote.default_thumbnail.endswith("id=vid123")

    async def test_missing_video(self, settings):
        provider = _provider(settings, lambda request: httpx.Response(404, json={}))

        with pytest.raises(RemoteNotFoundError):
            await provider.fetch_video_metadata("gone")

    async def test_not_a_video(self, settings):
        provider = _provider(
            settings,
            lambda request: httpx.Response(200, json={"name": "notes.txt", "mimeType": "text/plain"}),
        )

        with pytest.raises(ValidationError):
            await provider.fetch_video_metadata("doc")

    async def test_provider_error_is_unavailable(self, settings):
        provider = _provider(settings, lambda request: httpx.Response(500))

        with pytest.raises(RemoteUnavailableError):
            await provider.fetch_video_metadata("vid123")

    async def test_transport_error_is_unavailable(self, settings):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(RemoteUnavailableError):
            await _provider(settings, handler).fetch_video_metadata("vid123")


class TestOpenStream:
    async def test_forwards_range_and_reports_partial(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["range"] = request.headers.get("Range")
            seen["params"] = dict(request.url.params)
            return httpx.Response(
                206,
                content=b"0123456789",
                headers={"Content-Type": "video/mp4", "Content-Range": "bytes 0-9/100"},
            )

        chunk = await _provider(settings, handler).open_video_stream("vid123", ByteRange(0, 9))

        assert seen["range"] == "bytes=0-9"
        assert seen["params"] == {"export": "download", "confirm": "yTib", "id": "vid123"}
        assert chunk.partial is True
        assert chunk.content == b"0123456789"
        assert chunk.content_length == 10
        assert chunk.content_range == "bytes 0-9/100"
        assert chunk.content_type == "video/mp4"

    async def test_full_response_is_not_partial(self, settings):
        provider = _provider(settings, lambda request: httpx.Response(200, content=b"abc"))

        chunk = await provider.open_video_stream("vid123", ByteRange(0, 100))

        assert chunk.partial is False
        assert chunk.content_range is None

    async def test_unsatisfiable_range(self, settings):
        provider = _provider(settings, lambda request: httpx.Response(416))

        with pytest.raises(ValidationError):
            await provider.open_video_stream("vid123", ByteRange(10_000, 10_010))
