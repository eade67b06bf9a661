"""
FastAPI routes for the personalized video service.

Video Endpoints:
  POST /api/video/generate          - Create a request, start generation
  GET  /api/video/status/{id}       - Request status + audit trail

Actor Endpoints:
  GET  /api/actors                  - Presenter catalog
  GET  /api/actors/{id}             - One presenter

SyncLabs Endpoints:
  POST /api/synclabs/webhook        - Generation job callback
  GET  /api/synclabs/health         - Provider reachability

WhatsApp Endpoints:
  GET  /api/whatsapp/webhook        - Verify-token handshake
  POST /api/whatsapp/webhook        - Delivery status callbacks (always 200)
  POST /api/whatsapp/send-video     - Manual video send
  POST /api/whatsapp/send-text      - Manual text send
  GET  /api/whatsapp/health         - Provider reachability

Admin Endpoints:
  GET  /api/admin/requests          - Paginated, filtered listing + breakdowns
  GET  /api/admin/requests/{id}     - One request with its full trail
  GET  /api/admin/stats             - Totals, success rate, popular actors
  GET  /api/admin/export            - CSV or JSON export
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, Response

from ..errors import (
    DeliveryRejectedError,
    PresenterNotFoundError,
    ProviderTransportError,
    RequestNotFoundError,
    RequestValidationError,
)
from ..whatsapp import verify_subscription
from .models import (
    GenerateResponse,
    GenerationCallback,
    RequestStatusResponse,
    SendTextRequest,
    SendVideoRequest,
    VideoGenerateRequest,
)
from .orchestrator import VideoRequestService
from .reconciler import extract_status_updates
from .reporting import AdminReports

logger = logging.getLogger(__name__)


def get_service(request: Request) -> VideoRequestService:
    """The process-wide service, built in the app lifespan."""
    return request.app.state.service


def get_reports(service: VideoRequestService = Depends(get_service)) -> AdminReports:
    return AdminReports(service.store, service.presenters)


# ═════════════════════════════════════════════════════════════════════════════
# Video Router
# ═════════════════════════════════════════════════════════════════════════════

video_router = APIRouter(prefix="/api/video", tags=["video"])


@video_router.post("/generate", response_model=GenerateResponse)
async def generate_video(
    payload: VideoGenerateRequest,
    service: VideoRequestService = Depends(get_service),
):
    """Create the request and return immediately; generation runs in the background."""
    try:
        request = await service.submit(payload)
    except RequestValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PresenterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return GenerateResponse(request_id=request.id, status=request.generation_status)


@video_router.get("/status/{request_id}", response_model=RequestStatusResponse)
async def get_video_status(request_id: str, service: VideoRequestService = Depends(get_service)):
    try:
        return service.get_status(request_id)
    except RequestNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Actor Router
# ═════════════════════════════════════════════════════════════════════════════

actor_router = APIRouter(prefix="/api/actors", tags=["actors"])


@actor_router.get("")
async def list_actors(service: VideoRequestService = Depends(get_service)):
    return {"success": True, "data": [p.model_dump() for p in service.presenters.list()]}


@actor_router.get("/{actor_id}")
async def get_actor(actor_id: str, service: VideoRequestService = Depends(get_service)):
    try:
        presenter = service.presenters.lookup(actor_id)
    except PresenterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "data": presenter.model_dump()}


# ═════════════════════════════════════════════════════════════════════════════
# SyncLabs Router
# ═════════════════════════════════════════════════════════════════════════════

synclabs_router = APIRouter(prefix="/api/synclabs", tags=["synclabs"])


@synclabs_router.post("/webhook")
async def synclabs_webhook(
    callback: GenerationCallback,
    service: VideoRequestService = Depends(get_service),
):
    """Generation callback. Unknown jobs are acknowledged, not rejected."""
    result = service.reconciler.apply_generation_callback(callback)
    return {"success": True, "outcome": result.outcome.value}


@synclabs_router.get("/health")
async def synclabs_health(service: VideoRequestService = Depends(get_service)):
    healthy = await service.generator.health_check()
    return {"success": True, "healthy": healthy, "mock": service.settings.mock_generation}


# ═════════════════════════════════════════════════════════════════════════════
# WhatsApp Router
# ═════════════════════════════════════════════════════════════════════════════

whatsapp_router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


@whatsapp_router.get("/webhook")
async def whatsapp_verify(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    service: VideoRequestService = Depends(get_service),
):
    challenge = verify_subscription(
        hub_mode, hub_verify_token, hub_challenge, service.settings.whatsapp_verify_token
    )
    if challenge is None:
        logger.warning("WhatsApp webhook verification failed")
        raise HTTPException(status_code=403, detail="Verification failed")
    logger.info("WhatsApp webhook verified")
    return PlainTextResponse(challenge)


@whatsapp_router.post("/webhook")
async def whatsapp_webhook(request: Request, service: VideoRequestService = Depends(get_service)):
    """Delivery status callbacks. Always 200 so WhatsApp does not retry forever."""
    try:
        payload = await request.json()
    except ValueError as e:
        logger.warning(f"Unreadable WhatsApp webhook body: {e}")
        return {"success": True, "processed": 0}

    if not isinstance(payload, dict):
        logger.warning("WhatsApp webhook body is not an object")
        return {"success": True, "processed": 0}

    results = service.reconciler.apply_delivery_callbacks(extract_status_updates(payload))
    return {"success": True, "processed": len(results)}


@whatsapp_router.post("/send-video")
async def send_video(body: SendVideoRequest, service: VideoRequestService = Depends(get_service)):
    try:
        message_id = await service.channel.send_media(body.phone_number, body.video_url, body.caption)
    except DeliveryRejectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderTransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"success": True, "message_id": message_id}


@whatsapp_router.post("/send-text")
async def send_text(body: SendTextRequest, service: VideoRequestService = Depends(get_service)):
    try:
        message_id = await service.channel.send_text(body.phone_number, body.message)
    except DeliveryRejectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderTransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"success": True, "message_id": message_id}


@whatsapp_router.get("/health")
async def whatsapp_health(service: VideoRequestService = Depends(get_service)):
    healthy = await service.channel.health_check()
    return {"success": True, "healthy": healthy, "mock": service.settings.mock_delivery}


# ═════════════════════════════════════════════════════════════════════════════
# Admin Router
# ═════════════════════════════════════════════════════════════════════════════

admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@admin_router.get("/requests")
async def admin_list_requests(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    status: Optional[str] = None,
    delivery_status: Optional[str] = None,
    search: Optional[str] = None,
    reports: AdminReports = Depends(get_reports),
):
    return {
        "success": True,
        "data": reports.list_requests(page, limit, status, delivery_status, search),
    }


@admin_router.get("/requests/{request_id}", response_model=RequestStatusResponse)
async def admin_get_request(request_id: str, service: VideoRequestService = Depends(get_service)):
    try:
        return service.get_status(request_id)
    except RequestNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@admin_router.get("/stats")
async def admin_stats(reports: AdminReports = Depends(get_reports)):
    return {"success": True, "data": reports.stats()}


@admin_router.get("/export")
async def admin_export(
    format: str = Query("csv", pattern="^(csv|json)$"),
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    reports: AdminReports = Depends(get_reports),
):
    start = _parse_date(start_date, "start_date")
    end = _parse_date(end_date, "end_date")

    if format == "json":
        rows = reports.export_rows(start, end)
        return {"success": True, "data": [row.model_dump(mode="json") for row in rows]}

    filename = f"video-requests-{datetime.now(timezone.utc).date().isoformat()}.csv"
    return Response(
        content=reports.export_csv(start, end),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
