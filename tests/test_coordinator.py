import asyncio
import re

import pytest

from personaliz import metrics
from personaliz.config import StagePolicy
from personaliz.errors import ProviderTransportError
from personaliz.pipeline.coordinator import build_script
from personaliz.pipeline.models import (
    DeliveryStatus,
    GenerationCallback,
    GenerationStatus,
    LogType,
    StatusAxis,
)
from personaliz.pipeline.orchestrator import VideoRequestService
from personaliz.pipeline.store import InMemoryRequestStore
from personaliz.synclabs import MockSyncLabsClient
from personaliz.whatsapp import MockWhatsAppClient

from conftest import (
    AUDIO_URL,
    VIDEO_URL,
    RecordingChannel,
    ScriptedGenerator,
    completed,
    completed_request,
    failed,
    make_service,
    make_settings,
    new_payload,
    pending,
)


def _errors(service, request_id):
    return [log for log in service.audit.history(request_id) if log.log_type is LogType.ERROR]


def test_build_script_is_deterministic():
    script = build_script("Ana", "Lima")

    assert script == build_script("Ana", "Lima")
    assert script.startswith("Hello Ana! Welcome to our amazing platform.")
    assert "joining us from Lima." in script


@pytest.mark.anyio
async def test_happy_path_completes_and_dispatches(service, generator, channel):
    request = await service.submit(new_payload())
    assert service.state.get(request.id).generation_status is GenerationStatus.PROCESSING

    await service.drain(timeout=5)

    stored = service.state.get(request.id)
    assert stored.generation_status is GenerationStatus.COMPLETED
    assert stored.artifact_url == VIDEO_URL
    assert stored.generation_job_id == "job_1"
    assert stored.delivery_status is DeliveryStatus.SENT
    assert stored.delivery_message_id == "wamid.1"

    assert channel.sent == [{
        "to": "+51999999999",
        "video_url": VIDEO_URL,
        "caption": "Hi Ana! Here's your personalized video from Lima!",
    }]
    submit_combine = next(call for call in generator.calls if call[0] == "submit_combine")
    assert submit_combine[1] == AUDIO_URL
    assert submit_combine[3] == "voice_michael_002"

    messages = [log.message for log in reversed(service.audit.history(request.id))]
    assert messages[0] == "Video request created"
    assert "Video generated successfully" in messages
    assert messages[-1] == "Video sent via WhatsApp"
    assert metrics.get_counter("generation.completed") == 1


@pytest.mark.anyio
async def test_mock_providers_scenario():
    service = VideoRequestService(
        store=InMemoryRequestStore(),
        generator=MockSyncLabsClient(),
        channel=MockWhatsAppClient(),
        settings=make_settings(),
    )
    service.presenters.seed_defaults()

    request = await service.submit(new_payload(user_name="Ana", user_city="Lima", actor_id="actor_2"))
    assert request.generation_status is GenerationStatus.PROCESSING

    await service.drain(timeout=5)

    stored = service.state.get(request.id)
    assert stored.generation_status is GenerationStatus.COMPLETED
    assert re.fullmatch(r"https://example\.com/videos/mock_job_[0-9a-f]{12}\.mp4", stored.artifact_url)
    assert stored.delivery_status is DeliveryStatus.SENT
    assert stored.delivery_message_id.startswith("mock_msg_")


@pytest.mark.anyio
async def test_stage_b_failure_never_dispatches():
    generator = ScriptedGenerator(combine=[pending(), failed("face not detected")])
    channel = RecordingChannel()
    service = make_service(generator, channel)

    request = await service.submit(new_payload())
    await service.drain(timeout=5)

    stored = service.state.get(request.id)
    assert stored.generation_status is GenerationStatus.FAILED
    assert stored.delivery_status is DeliveryStatus.PENDING
    assert stored.artifact_url is None
    assert channel.sent == []
    errors = _errors(service, request.id)
    assert len(errors) == 1
    assert "face not detected" in errors[0].message


@pytest.mark.anyio
async def test_stage_a_timeout_is_a_timeout_not_a_provider_error():
    generator = ScriptedGenerator(synthesis=[pending()])
    channel = RecordingChannel()
    service = make_service(generator, channel)

    request = await service.submit(new_payload())
    await service.drain(timeout=5)

    stored = service.state.get(request.id)
    assert stored.generation_status is GenerationStatus.FAILED
    assert stored.delivery_status is DeliveryStatus.PENDING
    assert generator.count("poll_synthesis") == 3
    assert generator.count("submit_combine") == 0

    errors = _errors(service, request.id)
    assert len(errors) == 1
    assert "timed out" in errors[0].message
    assert errors[0].data["timeout"] is True
    assert "API error" not in errors[0].message
    assert metrics.get_counter("generation.timeout") == 1
    assert channel.sent == []


@pytest.mark.anyio
async def test_transport_errors_consume_attempts_then_recover():
    blip = ProviderTransportError("SyncLabs", "ReadTimeout", None)
    generator = ScriptedGenerator(synthesis=[blip, blip, completed(AUDIO_URL)])
    service = make_service(generator)

    request = await service.submit(new_payload())
    await service.drain(timeout=5)

    assert generator.count("poll_synthesis") == 3
    assert service.state.get(request.id).generation_status is GenerationStatus.COMPLETED


@pytest.mark.anyio
async def test_transport_errors_to_the_end_fail_with_the_provider_error():
    generator = ScriptedGenerator(combine=[ProviderTransportError("SyncLabs", "Bad Gateway", 502)])
    service = make_service(generator)

    request = await service.submit(new_payload())
    await service.drain(timeout=5)

    assert service.state.get(request.id).generation_status is GenerationStatus.FAILED
    errors = _errors(service, request.id)
    assert len(errors) == 1
    assert "Bad Gateway" in errors[0].message
    assert "timed out" not in errors[0].message


@pytest.mark.anyio
async def test_callback_mode_hands_off_to_webhook_and_dispatches_once():
    settings = make_settings(
        generation_resolution="callback",
        combine_policy=StagePolicy("combine", poll_interval=0.01, max_attempts=500),
    )
    generator = ScriptedGenerator()
    channel = RecordingChannel()
    service = make_service(generator, channel, settings)

    request = await service.submit(new_payload())
    for _ in range(200):
        if service.state.get(request.id).generation_job_id:
            break
        await asyncio.sleep(0.01)

    result = service.reconciler.apply_generation_callback(
        GenerationCallback(job_id="job_1", status="completed", video_url=VIDEO_URL)
    )
    assert result.outcome.value == "applied"

    await service.drain(timeout=5)

    stored = service.state.get(request.id)
    assert stored.generation_status is GenerationStatus.COMPLETED
    assert stored.delivery_status is DeliveryStatus.SENT
    assert len(channel.sent) == 1
    assert generator.count("poll_combine") == 0


@pytest.mark.anyio
async def test_callback_mode_times_out_without_a_webhook():
    settings = make_settings(generation_resolution="callback")
    service = make_service(settings=settings)

    request = await service.submit(new_payload())
    await service.drain(timeout=5)

    stored = service.state.get(request.id)
    assert stored.generation_status is GenerationStatus.FAILED
    errors = _errors(service, request.id)
    assert len(errors) == 1
    assert "combine stage" in errors[0].message
    assert "timed out" in errors[0].message


@pytest.mark.anyio
async def test_crash_in_background_job_stays_in_the_background():
    class ExplodingGenerator(ScriptedGenerator):
        async def submit_synthesis(self, text, voice_id):
            raise RuntimeError("kaboom")

    service = make_service(ExplodingGenerator())

    request = await service.submit(new_payload())
    await service.drain(timeout=5)

    stored = service.state.get(request.id)
    assert stored.generation_status is GenerationStatus.FAILED
    assert service.active_jobs == 0


@pytest.mark.anyio
async def test_callback_landing_after_last_poll_is_not_counted_as_a_failure():
    class LateWebhookGenerator(ScriptedGenerator):
        service = None

        async def poll_combine(self, job_id):
            result = await super().poll_combine(job_id)
            if self.count("poll_combine") == 3:
                request_id = self.service.store.find_by_generation_job_id(job_id).id
                self.service.state.transition(
                    request_id,
                    StatusAxis.GENERATION,
                    GenerationStatus.COMPLETED,
                    "Video generated successfully",
                    LogType.SUCCESS,
                    changes={"artifact_url": VIDEO_URL},
                )
            return result

    generator = LateWebhookGenerator(combine=[pending()])
    service = make_service(generator)
    generator.service = service

    request = await service.submit(new_payload())
    await service.drain(timeout=5)

    assert service.state.get(request.id).generation_status is GenerationStatus.COMPLETED
    assert metrics.get_counter("generation.failed") == 0
    assert metrics.get_counter("generation.timeout") == 0
    assert metrics.get_snapshot()["recent_errors"] == []


@pytest.mark.anyio
async def test_drain_waits_for_deliveries_scheduled_during_shutdown():
    class SlowChannel(RecordingChannel):
        async def send_media(self, phone_number, video_url, caption=None):
            await asyncio.sleep(0.01)
            return await super().send_media(phone_number, video_url, caption)

    channel = SlowChannel()
    service = make_service(channel=channel)
    request = completed_request(service)

    async def finish_then_deliver():
        await asyncio.sleep(0.01)
        service.schedule_delivery(request.id)

    service._spawn(finish_then_deliver(), "finisher")
    still_running = await service.drain(timeout=5)

    assert still_running == 0
    assert service.active_jobs == 0
    assert len(channel.sent) == 1
    assert service.state.get(request.id).delivery_status is DeliveryStatus.SENT


@pytest.mark.anyio
async def test_drain_reports_jobs_left_after_the_grace_period():
    service = make_service()
    sleeper = service._spawn(asyncio.sleep(1), "sleeper")

    assert await service.drain(timeout=0.01) == 1

    sleeper.cancel()
    with pytest.raises(asyncio.CancelledError):
        await sleeper
