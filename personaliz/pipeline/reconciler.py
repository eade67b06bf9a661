"""
Webhook Reconciler.

Maps inbound provider callbacks onto the request that owns them, using the
correlation ids recorded earlier (generation_job_id, delivery_message_id).

Callbacks can arrive late, twice or out of order. Every status change goes
through the state machine's monotonic transition, so replays and stale
updates turn into recorded no-ops instead of regressions. A callback we
cannot match is acknowledged and reported to the process log only.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .. import metrics
from .audit import AuditLog
from .models import (
    DeliveryStatus,
    DeliveryStatusUpdate,
    GenerationCallback,
    GenerationCallbackStatus,
    GenerationStatus,
    LogType,
    ProviderDeliveryStatus,
    StatusAxis,
)
from .state_machine import RequestStateMachine
from .store import RequestStore

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"          # transition accepted
    NOOP = "noop"                # matched, but not a forward move
    UNMATCHED = "unmatched"      # no request owns the correlation id
    PROGRESS = "progress"        # informational status, logged only
    REJECTED = "rejected"        # unrecognized provider vocabulary


@dataclass
class ReconcileResult:
    outcome: Outcome
    request_id: Optional[str] = None


class WebhookReconciler:

    def __init__(
        self,
        store: RequestStore,
        state_machine: RequestStateMachine,
        audit: AuditLog,
        schedule_delivery: Callable[[str], Any],
    ):
        self._store = store
        self._state = state_machine
        self._audit = audit
        self._schedule_delivery = schedule_delivery

    # ── SyncLabs ─────────────────────────────────────────────────────────

    def apply_generation_callback(self, callback: GenerationCallback) -> ReconcileResult:
        metrics.inc_counter("webhooks.synclabs")
        request = self._store.find_by_generation_job_id(callback.job_id)
        if request is None:
            metrics.inc_counter("webhooks.unmatched")
            logger.warning(f"SyncLabs callback for unknown job {callback.job_id} (status={callback.status})")
            return ReconcileResult(Outcome.UNMATCHED)

        status = GenerationCallbackStatus.parse(callback.status)

        if status is GenerationCallbackStatus.COMPLETED and callback.artifact_url:
            result = self._state.transition(
                request.id,
                StatusAxis.GENERATION,
                GenerationStatus.COMPLETED,
                "SyncLabs video generation completed",
                LogType.SUCCESS,
                {"jobId": callback.job_id, "videoUrl": callback.artifact_url},
                changes={"artifact_url": callback.artifact_url},
            )
            if not result.accepted:
                return ReconcileResult(Outcome.NOOP, request.id)
            metrics.inc_counter("generation.completed")
            # Only the writer whose COMPLETED landed hands off to delivery
            self._schedule_delivery(request.id)
            return ReconcileResult(Outcome.APPLIED, request.id)

        if status is GenerationCallbackStatus.FAILED:
            error = callback.error or "Unknown error"
            result = self._state.transition(
                request.id,
                StatusAxis.GENERATION,
                GenerationStatus.FAILED,
                f"SyncLabs video generation failed: {error}",
                LogType.ERROR,
                {"jobId": callback.job_id, "error": error},
            )
            if result.accepted:
                metrics.inc_counter("generation.failed")
                metrics.record_error("reconciler", "synclabs", error, request.id)
                return ReconcileResult(Outcome.APPLIED, request.id)
            return ReconcileResult(Outcome.NOOP, request.id)

        # "completed" with no URL lands here too; nothing to finalise with
        self._audit.record(
            request.id,
            LogType.INFO,
            f"SyncLabs status update: {callback.status or 'unknown'}",
            {"jobId": callback.job_id, "status": callback.status},
        )
        return ReconcileResult(Outcome.PROGRESS, request.id)

    # ── WhatsApp ─────────────────────────────────────────────────────────

    def apply_delivery_callbacks(self, updates: Iterable[DeliveryStatusUpdate]) -> list[ReconcileResult]:
        """Apply each status entry independently, in the order given."""
        results = []
        for update in updates:
            metrics.inc_counter("webhooks.whatsapp")
            try:
                results.append(self.apply_delivery_callback(update))
            except Exception as e:
                # One bad entry must not drop the rest of the batch
                logger.error(f"Failed to apply WhatsApp status for {update.message_id}: {e}", exc_info=True)
                metrics.record_error("reconciler", "whatsapp", str(e))
        return results

    def apply_delivery_callback(self, update: DeliveryStatusUpdate) -> ReconcileResult:
        provider_status = ProviderDeliveryStatus.parse(update.status)
        target = provider_status.to_delivery_status()
        if target is None:
            logger.warning(
                f"Unrecognized WhatsApp status {update.status!r} for message {update.message_id}, ignoring"
            )
            return ReconcileResult(Outcome.REJECTED)

        request = self._store.find_by_delivery_message_id(update.message_id)
        if request is None:
            metrics.inc_counter("webhooks.unmatched")
            logger.warning(f"WhatsApp status {update.status} for unknown message {update.message_id}")
            return ReconcileResult(Outcome.UNMATCHED)

        result = self._state.transition(
            request.id,
            StatusAxis.DELIVERY,
            target,
            f"WhatsApp status: {provider_status.value}",
            LogType.ERROR if target is DeliveryStatus.FAILED else LogType.WEBHOOK,
            {
                "messageId": update.message_id,
                "status": provider_status.value,
                "timestamp": update.timestamp,
                "recipientId": update.recipient_id,
                "errors": update.errors,
            },
        )
        return ReconcileResult(Outcome.APPLIED if result.accepted else Outcome.NOOP, request.id)


def _objects(items, where: str) -> list[dict]:
    """The dict members of a list-valued field; anything else is logged and skipped."""
    if items is None:
        return []
    if not isinstance(items, list):
        logger.warning(f"Skipping malformed WhatsApp webhook {where}: expected a list")
        return []
    objects = []
    for item in items:
        if isinstance(item, dict):
            objects.append(item)
        else:
            logger.warning(f"Skipping malformed WhatsApp webhook {where} item: {item!r:.80}")
    return objects


def extract_status_updates(payload: dict) -> list[DeliveryStatusUpdate]:
    """
    Flatten a WhatsApp webhook body into its status entries.

    Inbound user messages are logged and dropped; malformed statuses are
    logged and skipped. A body of the wrong shape yields no updates, never
    an exception.
    """
    updates = []
    for entry in _objects(payload.get("entry"), "entry"):
        for change in _objects(entry.get("changes"), "changes"):
            value = change.get("value") or {}
            if not isinstance(value, dict):
                logger.warning("Skipping malformed WhatsApp webhook change: value is not an object")
                continue
            for raw in _objects(value.get("statuses"), "statuses"):
                try:
                    updates.append(DeliveryStatusUpdate.model_validate(raw))
                except ValueError as e:
                    logger.warning(f"Skipping malformed WhatsApp status entry: {e}")
            for message in _objects(value.get("messages"), "messages"):
                logger.info(f"Received WhatsApp message from {message.get('from')}: {message.get('type')}")
    return updates
