"""
Delivery Dispatcher.

Hands a finished clip to WhatsApp and records the channel's acceptance.
A delivery failure never touches the generation axis: a clip can be
COMPLETED and still end up undelivered.
"""

import logging
from typing import Optional

from .. import metrics
from ..errors import DeliveryRejectedError, ProviderTransportError
from .audit import AuditLog
from .models import DeliveryStatus, GenerationStatus, LogType, StatusAxis
from .state_machine import RequestStateMachine

logger = logging.getLogger(__name__)


def build_caption(user_name: str, user_city: str) -> str:
    return f"Hi {user_name.strip()}! Here's your personalized video from {user_city.strip()}!"


class DeliveryDispatcher:

    def __init__(self, channel, state_machine: RequestStateMachine, audit: AuditLog):
        self._channel = channel
        self._state = state_machine
        self._audit = audit

    async def dispatch(self, request_id: str) -> Optional[str]:
        """
        Send the request's artifact to its phone number.

        Returns:
            The channel message id, or None if nothing was sent.
        """
        request = self._state.get(request_id)
        if request.generation_status is not GenerationStatus.COMPLETED or not request.artifact_url:
            logger.warning(
                f"[{request_id}] Refusing to dispatch: generation={request.generation_status.value}, "
                f"artifact={'set' if request.artifact_url else 'missing'}"
            )
            return None
        if request.delivery_message_id:
            logger.info(f"[{request_id}] Already dispatched as {request.delivery_message_id}")
            return None

        self._audit.record(request_id, LogType.INFO, "Sending video via WhatsApp")
        caption = build_caption(request.user_name, request.user_city)

        try:
            message_id = await self._channel.send_media(request.user_phone, request.artifact_url, caption)
        except (DeliveryRejectedError, ProviderTransportError) as e:
            self._fail(request_id, f"WhatsApp delivery failed: {e.detail}", {
                "error": e.detail,
                "statusCode": e.status_code,
                "rejected": isinstance(e, DeliveryRejectedError),
            })
            return None
        except Exception as e:
            logger.error(f"[{request_id}] Unexpected delivery failure: {e}", exc_info=True)
            self._fail(request_id, "WhatsApp delivery failed: internal error", {})
            return None

        result = self._state.transition(
            request_id,
            StatusAxis.DELIVERY,
            DeliveryStatus.SENT,
            "Video sent via WhatsApp",
            LogType.SUCCESS,
            {"messageId": message_id},
            changes={"delivery_message_id": message_id},
        )
        if result.accepted:
            metrics.inc_counter("delivery.sent")
        return message_id

    def _fail(self, request_id: str, message: str, data: dict):
        metrics.inc_counter("delivery.failed")
        metrics.record_error("dispatcher", "delivery", message, request_id)
        self._state.transition(
            request_id,
            StatusAxis.DELIVERY,
            DeliveryStatus.FAILED,
            message,
            LogType.ERROR,
            data,
        )
