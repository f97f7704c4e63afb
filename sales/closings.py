"""
Pickup closings — batch settlement of pickup sales with two-stage sign-off.

    pending ──(auxiliar)──▶ confirmed_auxiliar ──(admin)──▶ confirmed_final

Creation snapshots the sales into line items and totals them per payment
bucket. Auxiliary confirmation closes the contained sales; final confirmation
finalizes them and back-fills any checkpoint nobody recorded.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, Sequence

from core.errors import InvalidTransitionError, NotFoundError
from database.store_base import BaseStore
from models.schemas import (
    CheckpointType, ClosingStatus, PickupClosing, PickupClosingSale, Sale, SaleCheckpoint, SaleStatus,
)
from sales.checkpoints import CHECKPOINT_ORDER, LEGACY_FIELDS

logger = structlog.get_logger()

PICKUP_DELIVERY_TYPE = "pickup"
DELIVERED_NORMAL = "delivered_normal"

_CARD_MARKERS = ("cartao", "cartão", "card", "credito", "débito", "debito")
_PIX_MARKERS = ("pix",)
_CASH_MARKERS = ("dinheiro", "cash", "especie")


class PaymentBucket(str, Enum):
    CARD = "card"
    PIX = "pix"
    CASH = "cash"
    OTHER = "other"


def classify_payment_method(method: Optional[str]) -> PaymentBucket:
    """Bucket a free-text payment method by substring; card wins over pix over cash."""
    text = (method or "").lower()
    if any(marker in text for marker in _CARD_MARKERS):
        return PaymentBucket.CARD
    if any(marker in text for marker in _PIX_MARKERS):
        return PaymentBucket.PIX
    if any(marker in text for marker in _CASH_MARKERS):
        return PaymentBucket.CASH
    return PaymentBucket.OTHER


def format_payment_method(method: Optional[str]) -> str:
    """Display label for a free-text payment method."""
    if not method:
        return "Não informado"
    lower = method.lower()
    if "pix" in lower:
        return "PIX"
    if any(marker in lower for marker in _CASH_MARKERS):
        return "Dinheiro"
    if "cartao" in lower or "cartão" in lower or "card" in lower:
        if "credito" in lower or "crédito" in lower:
            return "Cartão Crédito"
        if "debito" in lower or "débito" in lower:
            return "Cartão Débito"
        return "Cartão"
    if "boleto" in lower:
        return "Boleto"
    return method


def compute_totals(sales: Sequence[Sale]) -> dict[str, int]:
    totals = {
        "total_sales": len(sales),
        "total_amount_cents": 0,
        "total_card_cents": 0,
        "total_pix_cents": 0,
        "total_cash_cents": 0,
        "total_other_cents": 0,
    }
    for sale in sales:
        amount = sale.total_cents or 0
        totals["total_amount_cents"] += amount
        bucket = classify_payment_method(sale.payment_method)
        totals[f"total_{bucket.value}_cents"] += amount
    return totals


class PickupClosingService:

    def __init__(self, store: BaseStore):
        self.store = store

    # ── Read side ─────────────────────────────────────────

    async def available_sales(self, tenant_id: str) -> list[Sale]:
        """Pickup sales that aren't cancelled and aren't in any closing, newest first."""
        closed = await self.store.list_closed_sale_ids(tenant_id)
        return [
            sale for sale in await self.store.list_sales(tenant_id, delivery_type=PICKUP_DELIVERY_TYPE)
            if sale.status != SaleStatus.CANCELLED and sale.id not in closed
        ]

    async def list_closings(self, tenant_id: str) -> list[PickupClosing]:
        return await self.store.list_closings(tenant_id)

    async def get(self, closing_id: str) -> PickupClosing:
        closing = await self.store.get_closing(closing_id)
        if closing is None:
            raise NotFoundError("PickupClosing", closing_id)
        return closing

    async def closing_sales(self, closing_id: str) -> list[PickupClosingSale]:
        await self.get(closing_id)
        return await self.store.list_closing_sales(closing_id)

    # ── Creation ──────────────────────────────────────────

    async def create(
        self,
        tenant_id: str,
        sale_ids: Sequence[str],
        actor: Optional[str] = None,
        notes: Optional[str] = None,
        closing_date: Optional[date] = None,
    ) -> PickupClosing:
        """
        Create a closing from the given sales.

        The header is written first, then all line items. If the line items
        can't be written the header is deleted again and the error re-raised.

        Raises:
            ValueError: no sales given.
            NotFoundError: a sale doesn't exist for this tenant.
            ConflictError: a sale already belongs to a closing.
        """
        if not sale_ids:
            raise ValueError("A closing needs at least one sale")

        sales = []
        for sale_id in dict.fromkeys(sale_ids):
            sale = await self.store.get_sale(sale_id)
            if sale is None or sale.tenant_id != tenant_id:
                raise NotFoundError("Sale", sale_id)
            sales.append(sale)

        closing = PickupClosing(
            tenant_id=tenant_id,
            closing_number=await self.store.next_closing_number(tenant_id),
            closing_date=closing_date or datetime.now(timezone.utc).date(),
            created_by=actor,
            notes=notes,
            **compute_totals(sales),
        )
        await self.store.add_closing(closing)

        items = [
            PickupClosingSale(
                closing_id=closing.id,
                sale_id=sale.id,
                tenant_id=tenant_id,
                sale_number=str(sale.romaneio_number) if sale.romaneio_number else None,
                lead_name=sale.lead_name,
                total_cents=sale.total_cents or None,
                payment_method=sale.payment_method,
                delivered_at=sale.delivered_at,
            )
            for sale in sales
        ]
        try:
            await self.store.add_closing_sales(items)
        except Exception as e:
            logger.error("closing_sales_insert_failed", closing_id=closing.id, error=str(e))
            await self.store.delete_closing(closing.id)
            raise

        logger.info("pickup_closing_created", closing_id=closing.id, tenant_id=tenant_id,
                    number=closing.closing_number, sales=len(sales),
                    total_cents=closing.total_amount_cents)
        return closing

    # ── Confirmation ──────────────────────────────────────

    async def confirm(self, closing_id: str, stage: str, actor: Optional[str] = None,
                      now: Optional[datetime] = None) -> PickupClosing:
        if stage == "auxiliar":
            return await self.confirm_auxiliar(closing_id, actor, now)
        if stage == "admin":
            return await self.confirm_final(closing_id, actor, now)
        raise ValueError(f"Unknown confirmation stage: {stage!r} (expected 'auxiliar' or 'admin')")

    async def confirm_auxiliar(self, closing_id: str, actor: Optional[str] = None,
                               now: Optional[datetime] = None) -> PickupClosing:
        """First sign-off: the closing's sales become `closed`."""
        closing = await self._require_status(closing_id, ClosingStatus.PENDING)
        now = now or datetime.now(timezone.utc)

        closing = await self.store.update_closing(
            closing.id,
            confirmed_by_auxiliar=actor,
            confirmed_at_auxiliar=now,
            status=ClosingStatus.CONFIRMED_AUXILIAR,
        )

        skip = (SaleStatus.CANCELLED, SaleStatus.RETURNED, SaleStatus.FINALIZED)
        closed = 0
        for item in await self.store.list_closing_sales(closing_id):
            sale = await self.store.get_sale(item.sale_id)
            if sale is None or sale.status in skip:
                continue
            await self.store.update_sale(sale.id, status=SaleStatus.CLOSED,
                                         closed_at=now, closed_by=actor)
            closed += 1

        logger.info("pickup_closing_confirmed_auxiliar", closing_id=closing_id,
                    actor=actor, sales_closed=closed)
        return closing

    async def confirm_final(self, closing_id: str, actor: Optional[str] = None,
                            now: Optional[datetime] = None) -> PickupClosing:
        """Final sign-off: the sales are finalized and missing checkpoints back-filled."""
        closing = await self._require_status(closing_id, ClosingStatus.CONFIRMED_AUXILIAR)
        now = now or datetime.now(timezone.utc)

        closing = await self.store.update_closing(
            closing.id,
            confirmed_by_admin=actor,
            confirmed_at_admin=now,
            status=ClosingStatus.CONFIRMED_FINAL,
        )

        finalized = 0
        for item in await self.store.list_closing_sales(closing_id):
            sale = await self.store.get_sale(item.sale_id)
            if sale is None or sale.is_terminal:
                continue
            await self._finalize_sale(sale, actor, now)
            finalized += 1

        logger.info("pickup_closing_confirmed_final", closing_id=closing_id,
                    actor=actor, sales_finalized=finalized)
        return closing

    async def _finalize_sale(self, sale: Sale, actor: Optional[str], now: datetime) -> None:
        fields: dict = {
            "status": SaleStatus.FINALIZED,
            "finalized_at": now,
            "finalized_by": actor,
        }
        # Existing timestamps are real history and stay untouched.
        for checkpoint_type in CHECKPOINT_ORDER:
            at_field, by_field = LEGACY_FIELDS[checkpoint_type]
            if getattr(sale, at_field) is None:
                fields[at_field] = now
                fields[by_field] = actor
                if checkpoint_type == CheckpointType.DELIVERED:
                    fields["delivery_status"] = DELIVERED_NORMAL
        await self.store.update_sale(sale.id, **fields)

        for checkpoint_type in CHECKPOINT_ORDER:
            existing = await self.store.get_checkpoint(sale.id, checkpoint_type)
            if existing is not None and existing.is_completed:
                continue
            checkpoint = SaleCheckpoint(
                sale_id=sale.id,
                tenant_id=sale.tenant_id,
                checkpoint_type=checkpoint_type,
                completed_at=now,
                completed_by=actor,
            )
            if existing is not None:
                checkpoint.id = existing.id
                checkpoint.notes = existing.notes
            await self.store.save_checkpoint(checkpoint)

    async def _require_status(self, closing_id: str, expected: ClosingStatus) -> PickupClosing:
        closing = await self.get(closing_id)
        if closing.status != expected:
            raise InvalidTransitionError(
                f"Closing '{closing_id}' is {closing.status.value}, expected {expected.value}",
                current=closing.status.value,
            )
        return closing
