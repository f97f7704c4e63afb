"""
FastAPI Application — sweeper functions + back-office REST API.

Provides:
- The two sweeper functions an external scheduler POSTs to
- Sale checkpoint toggling, history and reconciliation
- Pickup closing creation and two-stage confirmation
- Scheduled message management (cancel, reschedule, retry, ...)
- Health with per-instance transport counters
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from channels.base import OutboundTransport
from channels.factory import create_transport
from config.settings import Settings, get_settings
from conversations.auto_close import AutoCloseSweeper
from core.errors import (
    ConflictError, InvalidTransitionError, NotFoundError, SaleLockedError,
)
from database.store_base import BaseStore
from database.store_factory import create_store
from messaging.scheduling import ScheduledMessageService
from messaging.sweeper import ScheduledMessageSweeper
from models.schemas import CheckpointType, MediaAttachment, MessageStatus
from sales.checkpoints import CheckpointService
from sales.closings import PickupClosingService, format_payment_method

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    store: BaseStore
    transport: OutboundTransport
    message_sweeper: ScheduledMessageSweeper
    auto_close: AutoCloseSweeper
    scheduling: ScheduledMessageService
    checkpoints: CheckpointService
    closings: PickupClosingService


def build_services(store: BaseStore, transport: OutboundTransport,
                   settings: Optional[Settings] = None) -> Services:
    settings = settings or get_settings()
    return Services(
        store=store,
        transport=transport,
        message_sweeper=ScheduledMessageSweeper(store, transport, settings.sweeper),
        auto_close=AutoCloseSweeper(store, transport, settings.auto_close,
                                    country_code=settings.sweeper.country_code),
        scheduling=ScheduledMessageService(store, settings.sweeper),
        checkpoints=CheckpointService(store),
        closings=PickupClosingService(store),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    uses_sql = False

    if app.state.services is None:
        store = create_store(settings.database)
        uses_sql = settings.database.store_backend == "sql"
        if uses_sql:
            from database.session import init_db
            await init_db()
        app.state.services = build_services(store, create_transport(settings.transport), settings)

    services: Services = app.state.services
    logger.info("backoffice_started",
                store=type(services.store).__name__,
                transport=services.transport.provider,
                transport_configured=services.transport.is_configured)
    yield

    await services.transport.close()
    if uses_sql:
        from database.session import close_db
        await close_db()
    logger.info("backoffice_stopped")


def _services(request: Request) -> Services:
    return request.app.state.services


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class ToggleCheckpointRequest(BaseModel):
    completed: bool
    actor: Optional[str] = None
    notes: Optional[str] = None


class CreateClosingRequest(BaseModel):
    sale_ids: list[str] = Field(min_length=1)
    actor: Optional[str] = None
    notes: Optional[str] = None


class ConfirmClosingRequest(BaseModel):
    stage: Literal["auxiliar", "admin"]
    actor: Optional[str] = None


class ScheduleMessageRequest(BaseModel):
    tenant_id: str
    lead_id: str
    final_message: str
    scheduled_at: datetime
    whatsapp_instance_id: Optional[str] = None
    fallback_instance_ids: list[str] = []
    media: Optional[MediaAttachment] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)


class UpdateMessageRequest(BaseModel):
    final_message: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class CancelMessageRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleMessageRequest(BaseModel):
    scheduled_at: datetime


class RetryMessagesRequest(BaseModel):
    message_ids: list[str]
    new_instance_id: Optional[str] = None


class ChangeInstanceRequest(BaseModel):
    message_ids: list[str]
    instance_id: str


router = APIRouter()


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    services = _services(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(services.store).__name__,
        "transport": await services.transport.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  SWEEPER FUNCTIONS
# ══════════════════════════════════════════════════════════════

@router.post("/functions/process-scheduled-messages")
async def process_scheduled_messages(request: Request):
    try:
        summary = await _services(request).message_sweeper.run()
    except Exception as e:
        logger.error("process_scheduled_messages_error", error=str(e))
        return JSONResponse(status_code=500, content={"error": str(e) or type(e).__name__})
    return summary.model_dump()


@router.post("/functions/auto-close-conversations")
async def auto_close_conversations(request: Request):
    try:
        summary = await _services(request).auto_close.run()
    except Exception as e:
        logger.error("auto_close_conversations_error", error=str(e))
        return JSONResponse(status_code=500, content={"error": str(e) or type(e).__name__})
    return summary.model_dump(mode="json", by_alias=True)


# ══════════════════════════════════════════════════════════════
#  SALE CHECKPOINTS
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/sales/{sale_id}/checkpoints")
async def get_checkpoints(sale_id: str, request: Request):
    checkpoints = _services(request).checkpoints
    return {
        "sale_id": sale_id,
        "checkpoints": [v.model_dump(mode="json") for v in await checkpoints.overview(sale_id)],
        "history": [h.model_dump(mode="json") for h in await checkpoints.history(sale_id)],
    }


@router.post("/api/v1/sales/{sale_id}/checkpoints/{checkpoint_type}")
async def toggle_checkpoint(sale_id: str, checkpoint_type: CheckpointType,
                            req: ToggleCheckpointRequest, request: Request):
    sale = await _services(request).checkpoints.toggle(
        sale_id, checkpoint_type, req.completed, actor=req.actor, notes=req.notes,
    )
    return {"success": True, "sale": sale.model_dump(mode="json")}


@router.post("/api/v1/sales/{sale_id}/reconcile")
async def reconcile_sale(sale_id: str, request: Request):
    sale = await _services(request).checkpoints.reconcile(sale_id)
    return {"success": True, "sale": sale.model_dump(mode="json")}


# ══════════════════════════════════════════════════════════════
#  PICKUP CLOSINGS
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/tenants/{tenant_id}/pickup-closings/available-sales")
async def available_pickup_sales(tenant_id: str, request: Request):
    sales = await _services(request).closings.available_sales(tenant_id)
    return [
        {**s.model_dump(mode="json"), "payment_method_label": format_payment_method(s.payment_method)}
        for s in sales
    ]


@router.get("/api/v1/tenants/{tenant_id}/pickup-closings")
async def list_pickup_closings(tenant_id: str, request: Request):
    closings = await _services(request).closings.list_closings(tenant_id)
    return [c.model_dump(mode="json") for c in closings]


@router.post("/api/v1/tenants/{tenant_id}/pickup-closings", status_code=201)
async def create_pickup_closing(tenant_id: str, req: CreateClosingRequest, request: Request):
    closing = await _services(request).closings.create(
        tenant_id, req.sale_ids, actor=req.actor, notes=req.notes,
    )
    return closing.model_dump(mode="json")


@router.get("/api/v1/pickup-closings/{closing_id}/sales")
async def pickup_closing_sales(closing_id: str, request: Request):
    items = await _services(request).closings.closing_sales(closing_id)
    return [i.model_dump(mode="json") for i in items]


@router.post("/api/v1/pickup-closings/{closing_id}/confirm")
async def confirm_pickup_closing(closing_id: str, req: ConfirmClosingRequest, request: Request):
    closing = await _services(request).closings.confirm(closing_id, req.stage, actor=req.actor)
    return closing.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  SCHEDULED MESSAGES
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/scheduled-messages", status_code=201)
async def schedule_message(req: ScheduleMessageRequest, request: Request):
    message = await _services(request).scheduling.schedule(**req.model_dump(exclude={"media"}), media=req.media)
    return message.model_dump(mode="json")


@router.get("/api/v1/tenants/{tenant_id}/scheduled-messages")
async def list_scheduled_messages(tenant_id: str, request: Request,
                                  status: Optional[MessageStatus] = None):
    messages = await _services(request).scheduling.list_messages(tenant_id, status=status)
    return [m.model_dump(mode="json") for m in messages]


@router.post("/api/v1/scheduled-messages/retry")
async def retry_scheduled_messages(req: RetryMessagesRequest, request: Request):
    retried = await _services(request).scheduling.retry_failed(
        req.message_ids, new_instance_id=req.new_instance_id,
    )
    return {"count": len(retried), "messages": [m.model_dump(mode="json") for m in retried]}


@router.post("/api/v1/scheduled-messages/change-instance")
async def change_scheduled_messages_instance(req: ChangeInstanceRequest, request: Request):
    count = await _services(request).scheduling.change_instance(req.message_ids, req.instance_id)
    return {"count": count}


@router.get("/api/v1/scheduled-messages/{message_id}")
async def get_scheduled_message(message_id: str, request: Request):
    message = await _services(request).scheduling.get(message_id)
    return message.model_dump(mode="json")


@router.patch("/api/v1/scheduled-messages/{message_id}")
async def update_scheduled_message(message_id: str, req: UpdateMessageRequest, request: Request):
    message = await _services(request).scheduling.update(
        message_id, final_message=req.final_message, scheduled_at=req.scheduled_at,
    )
    return message.model_dump(mode="json")


@router.post("/api/v1/scheduled-messages/{message_id}/cancel")
async def cancel_scheduled_message(message_id: str, req: CancelMessageRequest, request: Request):
    message = await _services(request).scheduling.cancel(message_id, reason=req.reason)
    return message.model_dump(mode="json")


@router.post("/api/v1/scheduled-messages/{message_id}/reschedule")
async def reschedule_scheduled_message(message_id: str, req: RescheduleMessageRequest,
                                       request: Request):
    message = await _services(request).scheduling.reschedule(message_id, req.scheduled_at)
    return message.model_dump(mode="json")


@router.delete("/api/v1/scheduled-messages/{message_id}")
async def delete_scheduled_message(message_id: str, request: Request):
    await _services(request).scheduling.soft_delete(message_id)
    return {"status": "deleted"}


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def _error(status_code: int):
    async def handler(request: Request, exc: Exception):
        logger.warning("request_failed", path=request.url.path,
                       status=status_code, error=str(exc))
        return JSONResponse(status_code=status_code, content={"error": str(exc)})
    return handler


def create_app(store: Optional[BaseStore] = None,
               transport: Optional[OutboundTransport] = None,
               settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application. With no store/transport they are created from
    settings at start-up; passing both wires the app to them directly.
    """
    app = FastAPI(
        title="Backoffice Sweepers API",
        description="Scheduled WhatsApp delivery, sale checkpoints, pickup closings and conversation auto-close",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = (
        build_services(store, transport, settings)
        if store is not None and transport is not None else None
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(NotFoundError, _error(404))
    app.add_exception_handler(SaleLockedError, _error(409))
    app.add_exception_handler(InvalidTransitionError, _error(409))
    app.add_exception_handler(ConflictError, _error(409))
    app.add_exception_handler(ValueError, _error(422))

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
