"""
VideoRequestService: wires the pipeline together for one process.

  submit()           validate → resolve presenter → create request → spawn coordinator
  get_status()       read-only view of a request and its audit trail
  reconciler         applies SyncLabs / WhatsApp callbacks
  drain()            shutdown: wait a bounded grace period for in-flight jobs

Background jobs are plain asyncio tasks with their own error boundary. There
is no queue and no concurrency cap: every submission starts its coordinator
immediately.
"""

import asyncio
import logging
from typing import Coroutine, Optional

from .. import metrics
from ..config import Settings
from ..errors import RequestValidationError
from .audit import AuditLog
from .coordinator import GenerationJobCoordinator
from .dispatcher import DeliveryDispatcher
from .models import LogType, RequestStatusResponse, VideoGenerateRequest, VideoRequest
from .presenters import PresenterDirectory
from .reconciler import WebhookReconciler
from .state_machine import RequestStateMachine
from .store import RequestStore

logger = logging.getLogger(__name__)


class VideoRequestService:
    """
    Usage:
        service = VideoRequestService(store, SyncLabsClient(...), WhatsAppClient(...), settings)

        request = await service.submit(VideoGenerateRequest(...))
        status = service.get_status(request.id)
    """

    def __init__(self, store: RequestStore, generator, channel, settings: Settings):
        self.store = store
        self.generator = generator
        self.channel = channel
        self.settings = settings

        self.audit = AuditLog(store)
        self.presenters = PresenterDirectory(store)
        self.state = RequestStateMachine(store, self.audit)
        self.dispatcher = DeliveryDispatcher(channel, self.state, self.audit)
        self.coordinator = GenerationJobCoordinator(
            provider=generator,
            state_machine=self.state,
            audit=self.audit,
            dispatcher=self.dispatcher,
            synthesis_policy=settings.synthesis_policy,
            combine_policy=settings.combine_policy,
            template_url=settings.template_video_url,
            webhook_url=settings.synclabs_webhook_url,
            resolution=settings.generation_resolution,
        )
        self.reconciler = WebhookReconciler(store, self.state, self.audit, self.schedule_delivery)

        self._tasks: set[asyncio.Task] = set()

    # ── Submission ───────────────────────────────────────────────────────

    async def submit(self, payload: VideoGenerateRequest) -> VideoRequest:
        """
        Create a request and start generating it in the background.

        Raises:
            RequestValidationError: blank name, city or phone.
            PresenterNotFoundError: unknown actor_id.
        """
        missing = [
            field for field in ("user_name", "user_city", "user_phone", "actor_id")
            if not getattr(payload, field).strip()
        ]
        if missing:
            raise RequestValidationError(f"Missing required fields: {', '.join(missing)}")

        presenter = self.presenters.lookup(payload.actor_id)
        request = self.state.create(payload, presenter.voice_id)
        metrics.inc_counter("requests.generate")

        self.audit.record(request.id, LogType.INFO, "Video request created", {
            "userName": request.user_name,
            "userCity": request.user_city,
            "actorName": presenter.name,
        })

        self._spawn(self.coordinator.run(request.id), f"generate:{request.id}")
        return request

    def schedule_delivery(self, request_id: str):
        """Hand a completed request to the dispatcher without blocking the caller."""
        self._spawn(self.dispatcher.dispatch(request_id), f"deliver:{request_id}")

    # ── Status inquiry ───────────────────────────────────────────────────

    def get_status(self, request_id: str, log_limit: Optional[int] = None) -> RequestStatusResponse:
        request = self.state.get(request_id)
        return RequestStatusResponse(
            id=request.id,
            generation_status=request.generation_status,
            delivery_status=request.delivery_status,
            artifact_url=request.artifact_url,
            user_name=request.user_name,
            user_city=request.user_city,
            actor=self.presenters.find(request.actor_id),
            created_at=request.created_at,
            updated_at=request.updated_at,
            logs=self.audit.history(request_id, limit=log_limit),
        )

    # ── Background jobs ──────────────────────────────────────────────────

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(coro, name), name=name)
        self._tasks.add(task)
        metrics.set_gauge("active_jobs", len(self._tasks))
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task):
        self._tasks.discard(task)
        metrics.set_gauge("active_jobs", len(self._tasks))

    async def _guarded(self, coro: Coroutine, name: str):
        # The HTTP caller has already returned; failures stop here
        try:
            return await coro
        except Exception as e:
            logger.error(f"Background job {name} crashed: {e}", exc_info=True)
            metrics.record_error("service", "background_job", str(e))
            return None

    async def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for in-flight jobs to finish, up to `timeout` seconds.

        Returns:
            How many jobs were still running when the grace period ended.
        """
        timeout = self.settings.shutdown_grace_seconds if timeout is None else timeout
        if not self._tasks:
            return 0

        logger.info(f"Waiting up to {timeout:.0f}s for {len(self._tasks)} in-flight job(s)")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        # Finishing jobs may spawn deliveries; keep waiting until none are left
        while self._tasks:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)

        for task in self._tasks:
            logger.warning(f"Job {task.get_name()} still running at shutdown")
        return len(self._tasks)
