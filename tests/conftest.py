"""Shared fixtures: in-memory store, scripted providers, a wired service."""

from dataclasses import replace

import pytest

from personaliz import metrics
from personaliz.config import Settings, StagePolicy
from personaliz.pipeline.models import (
    GenerationStatus,
    LogType,
    PollResult,
    PollState,
    StatusAxis,
    VideoGenerateRequest,
)
from personaliz.pipeline.orchestrator import VideoRequestService
from personaliz.pipeline.store import InMemoryRequestStore

AUDIO_URL = "https://cdn.test/audio/a1.mp3"
VIDEO_URL = "https://cdn.test/videos/v1.mp4"


def pending(raw_status: str = "processing") -> PollResult:
    return PollResult(state=PollState.PENDING, raw_status=raw_status)


def completed(url: str) -> PollResult:
    return PollResult(state=PollState.COMPLETED, url=url, raw_status="completed")


def failed(error: str) -> PollResult:
    return PollResult(state=PollState.FAILED, error=error, raw_status="failed")


class ScriptedGenerator:
    """
    SyncLabs stand-in that replays scripted poll results.

    Each script is consumed in order; the last item repeats forever. An
    exception in the script is raised instead of returned.
    """

    def __init__(self, synthesis=None, combine=None, job_id: str = "job_1"):
        self.synthesis = list(synthesis or [completed(AUDIO_URL)])
        self.combine = list(combine or [completed(VIDEO_URL)])
        self.job_id = job_id
        self.calls: list[tuple] = []

    @staticmethod
    def _next(script: list):
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def submit_synthesis(self, text, voice_id):
        self.calls.append(("submit_synthesis", text, voice_id))
        return "audio_1"

    async def poll_synthesis(self, audio_id):
        self.calls.append(("poll_synthesis", audio_id))
        return self._next(self.synthesis)

    async def submit_combine(self, audio_url, template_url, voice_id, webhook_url=None):
        self.calls.append(("submit_combine", audio_url, template_url, voice_id, webhook_url))
        return self.job_id

    async def poll_combine(self, job_id):
        self.calls.append(("poll_combine", job_id))
        return self._next(self.combine)

    async def health_check(self):
        return True

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class RecordingChannel:
    """WhatsApp stand-in; raises `error` on send when set."""

    def __init__(self, message_id: str = "wamid.1", error: Exception = None):
        self.message_id = message_id
        self.error = error
        self.sent: list[dict] = []

    async def send_media(self, phone_number, video_url, caption=None):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": phone_number, "video_url": video_url, "caption": caption})
        return self.message_id

    async def send_text(self, phone_number, message):
        self.sent.append({"to": phone_number, "text": message})
        return self.message_id

    async def health_check(self):
        return True


def make_settings(**overrides) -> Settings:
    base = Settings(
        use_mock_providers=True,
        synthesis_policy=StagePolicy("synthesis", poll_interval=0, max_attempts=3),
        combine_policy=StagePolicy("combine", poll_interval=0, max_attempts=3),
    )
    return replace(base, **overrides)


def make_service(generator=None, channel=None, settings=None) -> VideoRequestService:
    service = VideoRequestService(
        store=InMemoryRequestStore(),
        generator=generator or ScriptedGenerator(),
        channel=channel or RecordingChannel(),
        settings=settings or make_settings(),
    )
    service.presenters.seed_defaults()
    return service


def new_payload(**overrides) -> VideoGenerateRequest:
    fields = {
        "user_name": "Ana",
        "user_city": "Lima",
        "user_phone": "+51999999999",
        "actor_id": "actor_2",
    }
    fields.update(overrides)
    return VideoGenerateRequest(**fields)


def completed_request(service: VideoRequestService, artifact_url: str = VIDEO_URL):
    """A request already through generation, ready for delivery."""
    request = service.state.create(new_payload(), "voice_michael_002")
    service.state.transition(
        request.id,
        StatusAxis.GENERATION,
        GenerationStatus.COMPLETED,
        "Video generated successfully",
        LogType.SUCCESS,
        changes={"artifact_url": artifact_url},
    )
    return service.state.get(request.id)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def service(generator, channel):
    return make_service(generator, channel)
