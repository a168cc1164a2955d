import base64
import shutil
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from main import app
from routers import rate_limit
from services.errors import PollTransientError, ProviderRequestError, StorageUploadError, WatermarkError
from services.providers.types import (
    GeneratedVideo,
    GenerationRequest,
    ObjectStorage,
    PollResult,
    VideoProvider,
    Watermarker,
)


VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42fake-video"


class FrozenClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeVideoProvider(VideoProvider):
    """Scripted provider: each poll pops the next queued outcome, the last one repeats."""

    def __init__(self):
        self.submitted: List[GenerationRequest] = []
        self.submit_error: Optional[ProviderRequestError] = None
        self.poll_outcomes: List[object] = [PollResult(done=False)]
        self.poll_calls = 0
        self.fetch_error: Optional[Exception] = None

    async def submit(self, request: GenerationRequest) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(request)
        return f"operations/op-{len(self.submitted)}"

    async def poll(self, operation_name: str) -> PollResult:
        self.poll_calls += 1
        outcome = self.poll_outcomes.pop(0) if len(self.poll_outcomes) > 1 else self.poll_outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_video(self, video: GeneratedVideo) -> bytes:
        if self.fetch_error is not None:
            raise self.fetch_error
        return base64.b64decode(video.bytes_base64)

    def finish_with_video(self, payload: bytes = VIDEO_BYTES):
        self.poll_outcomes = [
            PollResult(
                done=True,
                videos=[GeneratedVideo(bytes_base64=base64.b64encode(payload).decode("ascii"))],
            )
        ]

    def finish_with_error(self, message: str):
        self.poll_outcomes = [PollResult(done=True, error_message=message)]

    def fail_transiently(self):
        self.poll_outcomes = [PollTransientError("connection reset")]


class FakeStorage(ObjectStorage):
    def __init__(self):
        self.uploads = []
        self.fail = False

    async def upload(self, local_path: str, destination_key: str) -> str:
        if self.fail:
            raise StorageUploadError("bucket gs://private-bucket unreachable")
        with open(local_path, "rb") as f:
            self.uploads.append((destination_key, f.read()))
        return f"https://storage.googleapis.com/test-bucket/{destination_key}"


class FakeWatermarker(Watermarker):
    def __init__(self):
        self.available = True
        self.fail = False
        self.applied = []

    async def is_available(self) -> bool:
        return self.available

    async def apply(self, input_path, *, text, font_size, opacity, position, output_path=None) -> str:
        if self.fail:
            raise WatermarkError("drawtext failed")
        target = output_path or input_path.replace(".mp4", "_watermarked.mp4")
        shutil.copyfile(input_path, target)
        with open(target, "ab") as f:
            f.write(b"|wm")
        self.applied.append((input_path, text, font_size, opacity, position))
        return target


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def fake_provider():
    return FakeVideoProvider()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_watermarker():
    return FakeWatermarker()


@pytest.fixture
def source_image(tmp_path):
    path = tmp_path / "rex.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\nfake-image")
    return path
