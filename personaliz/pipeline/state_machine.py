"""
Request State Machine.

Two independent axes per request:

    generation:  PENDING → PROCESSING → COMPLETED
                                      ↘ FAILED

    delivery:    PENDING → SENT → DELIVERED → READ
                    └───────┴────────┴──────→ FAILED

Rules:
  - Only forward moves are accepted. Same-state, backward and
    out-of-terminal moves are rejected and recorded as a no-op.
  - Rejections are never raised. Duplicate and reordered callbacks
    therefore converge on the highest state seen.
  - Writes are compare-and-set on the status that was read, so two
    concurrent writers cannot regress an axis. No locks.
  - Each accepted transition writes one audit entry and bumps updated_at.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .. import metrics
from ..errors import RequestNotFoundError
from .audit import AuditLog
from .models import (
    DeliveryStatus,
    GenerationStatus,
    LogType,
    StatusAxis,
    VideoRequest,
    VideoGenerateRequest,
    utcnow,
)
from .store import RequestStore

logger = logging.getLogger(__name__)

# Re-read and retry when a concurrent writer wins the compare-and-set
MAX_CAS_ATTEMPTS = 5


# ── Axis ordering ────────────────────────────────────────────────────────────

GENERATION_RANK = {
    GenerationStatus.PENDING: 0,
    GenerationStatus.PROCESSING: 1,
    GenerationStatus.COMPLETED: 2,
    GenerationStatus.FAILED: 2,
}

DELIVERY_RANK = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}

TERMINAL_STATES = {
    StatusAxis.GENERATION: {GenerationStatus.COMPLETED, GenerationStatus.FAILED},
    StatusAxis.DELIVERY: {DeliveryStatus.READ, DeliveryStatus.FAILED},
}


def is_terminal(axis: StatusAxis, state) -> bool:
    return state in TERMINAL_STATES[axis]


def can_transition(axis: StatusAxis, current, target) -> tuple[bool, str]:
    """
    Check whether `current → target` is a forward move on `axis`.

    Returns:
        (allowed, reason)
    """
    if current == target:
        return False, f"already {current.value}"

    if is_terminal(axis, current):
        return False, f"cannot leave terminal state {current.value}"

    if axis is StatusAxis.DELIVERY:
        # FAILED is reachable from any non-terminal delivery state
        if target is DeliveryStatus.FAILED:
            return True, "forward"
        if DELIVERY_RANK[target] > DELIVERY_RANK[current]:
            return True, "forward"
        return False, f"backward move {current.value} -> {target.value}"

    if GENERATION_RANK[target] > GENERATION_RANK[current]:
        return True, "forward"
    return False, f"backward move {current.value} -> {target.value}"


def _guard_changes(
    request: VideoRequest,
    axis: StatusAxis,
    target,
    changes: dict[str, Any],
) -> tuple[bool, str, dict[str, Any]]:
    """
    Validate the field changes riding on a transition.

    Returns:
        (allowed, reason, changes_to_write)
    """
    allowed_fields = {"artifact_url", "delivery_message_id"}
    unknown = set(changes) - allowed_fields
    if unknown:
        raise ValueError(f"Fields {sorted(unknown)} cannot ride on a transition")

    to_write: dict[str, Any] = {}

    artifact_url = changes.get("artifact_url")
    completing = axis is StatusAxis.GENERATION and target is GenerationStatus.COMPLETED
    if artifact_url and not completing:
        return False, "artifact_url can only be set when generation completes", {}
    if completing:
        if request.artifact_url:
            if artifact_url and artifact_url != request.artifact_url:
                logger.warning(
                    f"[{request.id}] Keeping existing artifact_url; ignoring {artifact_url}"
                )
        elif artifact_url:
            to_write["artifact_url"] = artifact_url
        else:
            return False, "COMPLETED requires an artifact URL", {}

    message_id = changes.get("delivery_message_id")
    if message_id:
        if request.generation_status is not GenerationStatus.COMPLETED or not request.artifact_url:
            return False, "delivery_message_id requires a completed artifact", {}
        if request.delivery_message_id and request.delivery_message_id != message_id:
            return False, "delivery_message_id is already set", {}
        if not request.delivery_message_id:
            to_write["delivery_message_id"] = message_id

    return True, "", to_write


@dataclass
class TransitionResult:
    accepted: bool
    request: VideoRequest
    reason: str = ""


class RequestStateMachine:

    def __init__(self, store: RequestStore, audit: AuditLog):
        self._store = store
        self._audit = audit

    def create(self, payload: VideoGenerateRequest, voice_id: str) -> VideoRequest:
        """Create a request in PROCESSING / PENDING."""
        request = VideoRequest(
            user_name=payload.user_name.strip(),
            user_city=payload.user_city.strip(),
            user_phone=payload.user_phone.strip(),
            actor_id=payload.actor_id,
            voice_id=voice_id,
            generation_status=GenerationStatus.PROCESSING,
            delivery_status=DeliveryStatus.PENDING,
        )
        return self._store.create_request(request)

    def get(self, request_id: str) -> VideoRequest:
        request = self._store.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    def transition(
        self,
        request_id: str,
        axis: StatusAxis,
        target,
        message: str,
        log_type: LogType = LogType.INFO,
        data: Optional[dict[str, Any]] = None,
        changes: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Move `axis` to `target` if that is a forward move.

        Args:
            request_id: Request to mutate.
            axis:       Which lifecycle axis.
            target:     Desired state on that axis.
            message:    Audit message for the accepted transition.
            log_type:   Audit entry kind for the accepted transition.
            data:       Structured audit payload.
            changes:    artifact_url / delivery_message_id riding on the move.

        Returns:
            TransitionResult; `accepted` is False for a recorded no-op.
        """
        if isinstance(target, str) and not isinstance(target, (GenerationStatus, DeliveryStatus)):
            target = axis.parse(target)

        request = self.get(request_id)
        for _ in range(MAX_CAS_ATTEMPTS):
            current = request.status_for(axis)

            allowed, reason = can_transition(axis, current, target)
            if allowed:
                allowed, reason, field_changes = _guard_changes(request, axis, target, changes or {})
            if not allowed:
                self._record_noop(request, axis, current, target, reason)
                return TransitionResult(False, request, reason)

            updated = self._store.update_request(
                request_id,
                {axis.field: target, **field_changes, "updated_at": utcnow()},
                expected={axis.field: current},
            )
            if updated is not None:
                metrics.inc_counter("transitions.accepted")
                logger.info(
                    f"[{request_id}] {axis.value}: {current.value} -> {target.value}"
                )
                self._audit.record(request_id, log_type, message, data)
                return TransitionResult(True, updated, "forward")

            # Lost the race: somebody moved the axis after we read it
            logger.info(f"[{request_id}] Concurrent {axis.value} update detected, re-evaluating")
            request = self.get(request_id)

        logger.warning(
            f"[{request_id}] Gave up on {axis.value} -> {target.value} after "
            f"{MAX_CAS_ATTEMPTS} contended attempts"
        )
        metrics.inc_counter("transitions.rejected")
        return TransitionResult(False, request, "contention")

    def attach_generation_job(self, request_id: str, job_id: str) -> bool:
        """Record the stage-B job id. Write-once; returns False if a different id is already set."""
        request = self.get(request_id)
        if request.generation_job_id:
            if request.generation_job_id != job_id:
                logger.warning(
                    f"[{request_id}] generation_job_id already {request.generation_job_id}, "
                    f"ignoring {job_id}"
                )
                return False
            return True

        updated = self._store.update_request(
            request_id,
            {"generation_job_id": job_id, "updated_at": utcnow()},
            expected={"generation_job_id": None},
        )
        if updated is None:
            return self.get(request_id).generation_job_id == job_id
        return True

    def _record_noop(self, request: VideoRequest, axis: StatusAxis, current, target, reason: str):
        metrics.inc_counter("transitions.rejected")
        logger.info(
            f"[{request.id}] Ignored {axis.value} transition "
            f"{current.value} -> {target.value}: {reason}"
        )
        self._audit.record(
            request.id,
            LogType.INFO,
            f"Ignored {axis.value} update to {target.value}: {reason}",
            {"axis": axis.value, "from": current.value, "to": target.value, "reason": reason},
        )
