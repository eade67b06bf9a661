"""
SyncLabs generation provider.

Two chained jobs produce the final clip:
  Stage A - POST /generate-audio   → audio_id,  GET /audio-status/{id}
  Stage B - POST /lipsync          → job_id,    GET /lipsync-status/{id}

Submits back off on 429/5xx. Status polls do not: the coordinator owns the
polling budget and decides when a stage is out of attempts.
"""

import asyncio
import logging
import random
from typing import Optional
from uuid import uuid4

import httpx

from .config import ProviderConfig
from .errors import ProviderTransportError
from .pipeline.models import PollResult, PollState

logger = logging.getLogger(__name__)

PROVIDER = "SyncLabs"

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

VOICE_SETTINGS = {
    "stability": 0.75,
    "similarity_boost": 0.75,
    "style": 0.0,
    "use_speaker_boost": True,
}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


def _json_object(response: httpx.Response, path: str) -> dict:
    """The response body as a JSON object; anything else is a transport error."""
    try:
        body = response.json()
    except ValueError as e:
        raise ProviderTransportError(
            PROVIDER, f"invalid JSON body from {path}: {response.text[:200]!r}", response.status_code
        ) from e
    if not isinstance(body, dict):
        raise ProviderTransportError(
            PROVIDER, f"unexpected JSON body from {path}: {type(body).__name__}", response.status_code
        )
    return body


def parse_poll(body: dict, url_key: str) -> PollResult:
    """Normalize a status response into pending / completed / failed."""
    raw_status = str(body.get("status", "")).lower()
    if raw_status == "completed":
        url = body.get(url_key) or body.get("url")
        if not url:
            return PollResult(
                state=PollState.FAILED,
                error=f"completed without {url_key}",
                raw_status=raw_status,
            )
        return PollResult(state=PollState.COMPLETED, url=url, raw_status=raw_status)
    if raw_status in ("failed", "error"):
        return PollResult(
            state=PollState.FAILED,
            error=str(body.get("error") or body.get("message") or "Unknown error"),
            raw_status=raw_status,
        )
    return PollResult(state=PollState.PENDING, raw_status=raw_status)


class SyncLabsClient:
    """Stateless REST client; one instance per process, shared by every coordinator."""

    def __init__(
        self,
        config: ProviderConfig,
        model: str = "sync-1.6.0",
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
    ):
        self.config = config
        self.model = model
        self.max_retries = max_retries
        self.base_delay = base_delay

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Single call; every failure comes back as ProviderTransportError."""
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.request(method, self._url(path), headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise ProviderTransportError(PROVIDER, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise ProviderTransportError(PROVIDER, _error_message(response), response.status_code)
        return response

    async def _request_with_backoff(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Make a request with exponential backoff on retryable errors (429, 5xx, network).

        Uses: base_delay * 2^attempt + random jitter
        """
        for attempt in range(self.max_retries + 1):
            try:
                return await self._request(method, path, **kwargs)
            except ProviderTransportError as e:
                retryable = e.status_code is None or e.status_code in RETRYABLE_STATUS_CODES
                if not retryable or attempt >= self.max_retries:
                    raise
                jitter = random.uniform(0, JITTER_MAX) if self.base_delay else 0.0
                delay = self.base_delay * (2 ** attempt) + jitter
                logger.warning(
                    f"SyncLabs {e.status_code or 'network error'} on attempt "
                    f"{attempt + 1}/{self.max_retries + 1}: {e.detail} - retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        # Should not reach here, but just in case
        raise ProviderTransportError(PROVIDER, f"{path} failed after {self.max_retries + 1} attempts")

    # ── Stage A: voice synthesis ─────────────────────────────────────────

    async def submit_synthesis(self, text: str, voice_id: str) -> str:
        """Start text-to-speech with the presenter's cloned voice. Returns the audio job id."""
        response = await self._request_with_backoff(
            "POST",
            "/generate-audio",
            json={
                "text": text,
                "voice_id": voice_id,
                "model": self.model,
                "voice_settings": VOICE_SETTINGS,
            },
        )
        audio_id = _json_object(response, "/generate-audio").get("audio_id")
        if not audio_id:
            raise ProviderTransportError(PROVIDER, f"generate-audio returned no audio_id: {response.text[:200]}")
        logger.info(f"SyncLabs audio submitted: audio_id={audio_id}")
        return audio_id

    async def poll_synthesis(self, audio_id: str) -> PollResult:
        path = f"/audio-status/{audio_id}"
        response = await self._request("GET", path)
        return parse_poll(_json_object(response, path), "audio_url")

    # ── Stage B: lipsync combine ─────────────────────────────────────────

    async def submit_combine(
        self,
        audio_url: str,
        template_url: str,
        voice_id: str,
        webhook_url: Optional[str] = None,
    ) -> str:
        """Lipsync the synthesized audio onto the template video. Returns the job id."""
        payload = {
            "audio_url": audio_url,
            "video_url": template_url,
            "voice_id": voice_id,
            "model": self.model,
        }
        if webhook_url:
            payload["webhook_url"] = webhook_url

        response = await self._request_with_backoff("POST", "/lipsync", json=payload)
        job_id = _json_object(response, "/lipsync").get("job_id")
        if not job_id:
            raise ProviderTransportError(PROVIDER, f"lipsync returned no job_id: {response.text[:200]}")
        logger.info(f"SyncLabs lipsync submitted: job_id={job_id}")
        return job_id

    async def poll_combine(self, job_id: str) -> PollResult:
        path = f"/lipsync-status/{job_id}"
        response = await self._request("GET", path)
        return parse_poll(_json_object(response, path), "video_url")

    async def health_check(self) -> bool:
        try:
            await self._request("GET", "/health")
            return True
        except ProviderTransportError as e:
            logger.error(f"SyncLabs health check failed: {e}")
            return False


class MockSyncLabsClient:
    """
    Offline stand-in used when no SyncLabs credentials are configured.

    Same interface, no network: every job is accepted and finished by the
    first poll, so the coordinator runs its normal path end to end.
    """

    model = "mock"

    def __init__(self, base_url: str = "https://example.com"):
        self.base_url = base_url.rstrip("/")
        self.calls: list[str] = []

    async def submit_synthesis(self, text: str, voice_id: str) -> str:
        self.calls.append("submit_synthesis")
        return f"mock_audio_{uuid4().hex[:12]}"

    async def poll_synthesis(self, audio_id: str) -> PollResult:
        self.calls.append("poll_synthesis")
        return PollResult(
            state=PollState.COMPLETED,
            url=f"{self.base_url}/audio/{audio_id}.mp3",
            raw_status="completed",
        )

    async def submit_combine(self, audio_url, template_url, voice_id, webhook_url=None) -> str:
        self.calls.append("submit_combine")
        return f"mock_job_{uuid4().hex[:12]}"

    async def poll_combine(self, job_id: str) -> PollResult:
        self.calls.append("poll_combine")
        return PollResult(
            state=PollState.COMPLETED,
            url=f"{self.base_url}/videos/{job_id}.mp4",
            raw_status="completed",
        )

    async def health_check(self) -> bool:
        return True
