import asyncio
import inspect
import os
import tempfile

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="playground_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)
os.environ.pop("LOGIN_REDIRECT", None)

import pytest  # noqa: E402

from playground.service.errors import RemoteNotFoundError  # noqa: E402
from playground.service.runtime import reset_runtime_for_tests  # noqa: E402
from playground.service.video import RemoteVideo, VideoChunk  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own snapshot directory so memory store state never leaks
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeVideoProvider:
    """In-process video host keyed by remote id."""

    def __init__(self):
        self.videos = {
            "vid123": RemoteVideo(
                remote_id="vid123",
                default_name="Holiday.mp4",
                duration_millis=61000,
                width=1920,
                height=1080,
                mime_type="video/mp4",
                size_bytes=4096,
                default_thumbnail="https://drive.google.com/thumbnail?id=vid123",
            )
        }
        self.content = {"vid123": bytes(range(256)) * 16}
        self.requests = []

    async def fetch_video_metadata(self, remote_id):
        self.requests.append(("metadata", remote_id))
        if remote_id not in self.videos:
            raise RemoteNotFoundError("video not found on provider", detail={"remote_id": remote_id})
        return self.videos[remote_id]

    async def open_video_stream(self, remote_id, byte_range):
        self.requests.append(("stream", remote_id, byte_range))
        data = self.content.get(remote_id)
        if data is None:
            raise RemoteNotFoundError("video not found on provider", detail={"remote_id": remote_id})
        end = min(byte_range.end, len(data) - 1)
        chunk = data[byte_range.start : end + 1]
        return VideoChunk(
            content=chunk,
            content_type="video/mp4",
            content_length=len(chunk),
            content_range=f"bytes {byte_range.start}-{end}/{len(data)}",
            partial=True,
        )


@pytest.fixture
def fake_videos(reset_runtime_state):
    provider = FakeVideoProvider()
    reset_runtime_for_tests(video_provider=provider)
    return provider
