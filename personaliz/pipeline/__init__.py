"""
Personalized Video Pipeline

Request orchestration and reconciliation for:
  Generation - SyncLabs voice synthesis → lipsync onto the template video
  Delivery   - WhatsApp video message to the requester's phone
  Callbacks  - provider webhooks reconciled onto the owning request
"""

from .orchestrator import VideoRequestService
from .routes import actor_router, admin_router, synclabs_router, video_router, whatsapp_router
from .models import DeliveryStatus, GenerationStatus

__all__ = [
    "VideoRequestService",
    "video_router",
    "actor_router",
    "synclabs_router",
    "whatsapp_router",
    "admin_router",
    "GenerationStatus",
    "DeliveryStatus",
]
