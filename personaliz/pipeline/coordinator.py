"""
Generation Job Coordinator.

Turns (user_name, user_city, voice_id) into a clip URL with two chained
SyncLabs jobs:
  Stage A - synthesis: personalized script → cloned-voice audio
  Stage B - combine:   audio + template video → lipsynced clip

Each stage resolves on a fixed-interval polling budget. An attempt is either
pending (sleep, retry), completed (return the URL) or failed (abort now).
Transport errors burn attempts; running out while pending is a timeout.

In callback mode stage B never asks the provider: it waits, on the same
budget, for the webhook reconciler to land the result on the request.
Either way, if the request becomes terminal while we wait, whoever made it
terminal owns what happens next and the coordinator just stops.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .. import metrics
from ..config import StagePolicy
from ..errors import ProviderJobFailedError, ProviderTransportError, StageTimeoutError
from .audit import AuditLog
from .dispatcher import DeliveryDispatcher
from .models import GenerationStatus, LogType, PollResult, PollState, StatusAxis
from .state_machine import RequestStateMachine, is_terminal

logger = logging.getLogger(__name__)

SCRIPT_TEMPLATE = (
    "Hello {name}! Welcome to our amazing platform. We're so excited to have you "
    "joining us from {city}. This personalized video was created just for you, and "
    "we hope you enjoy this unique experience. Thank you for being part of our community!"
)

Probe = Callable[[str], Awaitable[PollResult]]


def build_script(user_name: str, user_city: str) -> str:
    """The text the presenter speaks. Deterministic in name and city."""
    return SCRIPT_TEMPLATE.format(name=user_name.strip(), city=user_city.strip())


class _ResolvedElsewhere(Exception):
    """The request went terminal under us (webhook landed first)."""

    def __init__(self, status: GenerationStatus):
        super().__init__(status.value)
        self.status = status


class GenerationJobCoordinator:

    def __init__(
        self,
        provider,
        state_machine: RequestStateMachine,
        audit: AuditLog,
        dispatcher: DeliveryDispatcher,
        synthesis_policy: StagePolicy,
        combine_policy: StagePolicy,
        template_url: str,
        webhook_url: Optional[str] = None,
        resolution: str = "poll",
    ):
        self._provider = provider
        self._state = state_machine
        self._audit = audit
        self._dispatcher = dispatcher
        self.synthesis_policy = synthesis_policy
        self.combine_policy = combine_policy
        self.template_url = template_url
        self.webhook_url = webhook_url
        self.resolution = resolution

    async def run(self, request_id: str) -> Optional[str]:
        """
        Drive one request's generation to a terminal outcome.

        Returns:
            The artifact URL when this run completed the request, else None.
        """
        request = self._state.get(request_id)
        self._audit.record(request_id, LogType.INFO, "Starting video generation", {
            "voiceId": request.voice_id,
            "resolution": self.resolution,
        })

        stage = self.synthesis_policy.name
        try:
            # ── Stage A: synthesis ───────────────────────────────────
            script = build_script(request.user_name, request.user_city)
            audio_job_id = await self._provider.submit_synthesis(script, request.voice_id)
            self._audit.record(request_id, LogType.INFO, "Audio synthesis submitted", {
                "audioJobId": audio_job_id,
            })
            audio_url = await self._resolve(self.synthesis_policy, audio_job_id, self._provider.poll_synthesis)
            self._audit.record(request_id, LogType.INFO, "Audio synthesis completed", {
                "audioJobId": audio_job_id,
                "audioUrl": audio_url,
            })

            # ── Stage B: combine ─────────────────────────────────────
            stage = self.combine_policy.name
            job_id = await self._provider.submit_combine(
                audio_url, self.template_url, request.voice_id, self.webhook_url
            )
            self._state.attach_generation_job(request_id, job_id)
            self._audit.record(request_id, LogType.INFO, "Lipsync job submitted", {"jobId": job_id})

            probe = self._provider.poll_combine if self.resolution == "poll" else self._await_callback
            video_url = await self._resolve(self.combine_policy, job_id, probe, request_id=request_id)

        except _ResolvedElsewhere as e:
            logger.info(f"[{request_id}] Generation already {e.status.value} via callback, coordinator stopping")
            return None

        except StageTimeoutError as e:
            timed_out = self._fail(request_id, f"Video generation timed out during {e.stage} stage after {e.attempts} attempts", {
                "stage": e.stage,
                "jobId": e.job_id,
                "attempts": e.attempts,
                "timeout": True,
            })
            if timed_out:
                metrics.inc_counter("generation.timeout")
            return None

        except ProviderJobFailedError as e:
            self._fail(request_id, f"Video generation failed during {e.stage} stage: {e.reason}", {
                "stage": e.stage,
                "jobId": e.job_id,
                "error": e.reason,
            })
            return None

        except ProviderTransportError as e:
            self._fail(request_id, f"Video generation failed during {stage} stage: {e}", {
                "stage": stage,
                "error": e.detail,
                "statusCode": e.status_code,
            })
            return None

        except Exception as e:
            logger.error(f"[{request_id}] Unexpected generation failure: {e}", exc_info=True)
            self._fail(request_id, "Video generation failed: internal error", {"stage": stage})
            return None

        result = self._state.transition(
            request_id,
            StatusAxis.GENERATION,
            GenerationStatus.COMPLETED,
            "Video generated successfully",
            LogType.SUCCESS,
            {"jobId": job_id, "videoUrl": video_url},
            changes={"artifact_url": video_url},
        )
        if not result.accepted:
            # A callback finished the request between our last poll and now
            logger.info(f"[{request_id}] Completion already recorded ({result.reason}), not dispatching")
            return None

        metrics.inc_counter("generation.completed")
        await self._dispatcher.dispatch(request_id)
        return video_url

    async def _resolve(
        self,
        policy: StagePolicy,
        job_id: str,
        probe: Probe,
        request_id: Optional[str] = None,
    ) -> str:
        """Poll `probe` on the stage budget until the job is terminal."""
        last_error: Optional[ProviderTransportError] = None

        for attempt in range(1, policy.max_attempts + 1):
            if request_id is not None:
                self._raise_if_terminal(request_id)

            try:
                result = await probe(job_id)
            except ProviderTransportError as e:
                last_error = e
                logger.warning(
                    f"{policy.name} poll #{attempt}/{policy.max_attempts} for {job_id} errored: {e}"
                )
            else:
                last_error = None
                if result.state is PollState.COMPLETED:
                    logger.info(f"{policy.name} job {job_id} completed after {attempt} poll(s)")
                    return result.url
                if result.state is PollState.FAILED:
                    raise ProviderJobFailedError(policy.name, job_id, result.error or "Unknown error")
                logger.info(
                    f"{policy.name} poll #{attempt}/{policy.max_attempts}: "
                    f"status={result.raw_status or 'pending'}"
                )

            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.poll_interval)

        if last_error is not None:
            raise last_error
        raise StageTimeoutError(policy.name, job_id, policy.max_attempts, policy.poll_interval)

    async def _await_callback(self, job_id: str) -> PollResult:
        # The webhook moves the request; _raise_if_terminal notices it
        return PollResult(state=PollState.PENDING, raw_status="awaiting callback")

    def _raise_if_terminal(self, request_id: str):
        status = self._state.get(request_id).generation_status
        if is_terminal(StatusAxis.GENERATION, status):
            raise _ResolvedElsewhere(status)

    def _fail(self, request_id: str, message: str, data: dict) -> bool:
        """Move the request to FAILED. False when something else already finished it."""
        result = self._state.transition(
            request_id,
            StatusAxis.GENERATION,
            GenerationStatus.FAILED,
            message,
            LogType.ERROR,
            data,
        )
        if result.accepted:
            metrics.inc_counter("generation.failed")
            metrics.record_error("coordinator", data.get("stage", "unknown"), message, request_id)
        return result.accepted
