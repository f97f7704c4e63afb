"""
Sale checkpoints and the status they project onto the sale.

Five independent completion markers, in canonical order:

    printed → pending_expedition → dispatched → delivered → payment_confirmed

Each toggle writes the checkpoint row, appends a history entry, mirrors the
timestamp/actor into the sale's legacy columns and moves the sale status.
Reconciliation recomputes status and legacy columns from the rows alone.

The two paths use different ladders: a toggle can set `payment_confirmed`,
reconciliation never derives it (delivered is the highest rung there).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Iterable, Optional

from pydantic import BaseModel

from core.errors import InvalidTransitionError, NotFoundError, SaleLockedError
from database.store_base import BaseStore
from models.schemas import (
    CheckpointAction, CheckpointHistoryEntry, CheckpointType, Sale, SaleCheckpoint,
    SaleStatus, TERMINAL_SALE_STATUSES,
)

logger = structlog.get_logger()


CHECKPOINT_ORDER: tuple[CheckpointType, ...] = (
    CheckpointType.PRINTED,
    CheckpointType.PENDING_EXPEDITION,
    CheckpointType.DISPATCHED,
    CheckpointType.DELIVERED,
    CheckpointType.PAYMENT_CONFIRMED,
)

# Status a completed checkpoint puts the sale in; printing doesn't move it.
CHECKPOINT_STATUS: dict[CheckpointType, Optional[SaleStatus]] = {
    CheckpointType.PRINTED: None,
    CheckpointType.PENDING_EXPEDITION: SaleStatus.PENDING_EXPEDITION,
    CheckpointType.DISPATCHED: SaleStatus.DISPATCHED,
    CheckpointType.DELIVERED: SaleStatus.DELIVERED,
    CheckpointType.PAYMENT_CONFIRMED: SaleStatus.PAYMENT_CONFIRMED,
}

# Legacy (at, by) columns on the sale mirrored from each checkpoint.
LEGACY_FIELDS: dict[CheckpointType, tuple[str, str]] = {
    CheckpointType.PRINTED: ("printed_at", "printed_by"),
    CheckpointType.PENDING_EXPEDITION: ("expedition_validated_at", "expedition_validated_by"),
    CheckpointType.DISPATCHED: ("dispatched_at", "dispatched_by"),
    CheckpointType.DELIVERED: ("delivered_at", "delivered_by"),
    CheckpointType.PAYMENT_CONFIRMED: ("payment_confirmed_at", "payment_confirmed_by"),
}

RECONCILE_LADDER: tuple[CheckpointType, ...] = (
    CheckpointType.DELIVERED,
    CheckpointType.DISPATCHED,
    CheckpointType.PENDING_EXPEDITION,
)

def derive_reconciled_status(completed: Iterable[CheckpointType], current: SaleStatus) -> SaleStatus:
    """delivered > dispatched > pending_expedition > draft; terminal statuses are kept."""
    if current in TERMINAL_SALE_STATUSES:
        return current
    done = set(completed)
    for checkpoint_type in RECONCILE_LADDER:
        if checkpoint_type in done:
            return CHECKPOINT_STATUS[checkpoint_type]
    return SaleStatus.DRAFT


def status_after_uncomplete(removed: CheckpointType, still_completed: Iterable[CheckpointType]) -> SaleStatus:
    """Status after clearing `removed`: the highest remaining checkpoint with a status."""
    # Reverting expedition validation makes the sale editable again.
    if removed == CheckpointType.PENDING_EXPEDITION:
        return SaleStatus.DRAFT
    done = set(still_completed)
    for checkpoint_type in reversed(CHECKPOINT_ORDER):
        status = CHECKPOINT_STATUS[checkpoint_type]
        if checkpoint_type in done and status is not None:
            return status
    return SaleStatus.DRAFT


class CheckpointView(BaseModel):
    """One row of the checkpoint overview, whether or not a row exists yet."""
    checkpoint_type: CheckpointType
    completed: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    notes: Optional[str] = None


class CheckpointService:

    def __init__(self, store: BaseStore):
        self.store = store

    async def _load_sale(self, sale_id: str) -> Sale:
        sale = await self.store.get_sale(sale_id)
        if sale is None:
            raise NotFoundError("Sale", sale_id)
        return sale

    async def toggle(
        self,
        sale_id: str,
        checkpoint_type: CheckpointType,
        completed: bool,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Sale:
        """
        Complete or un-complete one checkpoint and project it onto the sale.

        Raises:
            NotFoundError: unknown sale.
            SaleLockedError: the sale is cancelled or returned.
            InvalidTransitionError: un-completing a checkpoint that isn't completed.
        """
        checkpoint_type = CheckpointType(checkpoint_type)
        sale = await self._load_sale(sale_id)
        if sale.is_terminal:
            raise SaleLockedError(sale_id, sale.status.value)

        now = now or datetime.now(timezone.utc)
        if completed:
            return await self._complete(sale, checkpoint_type, actor, notes, now)
        return await self._uncomplete(sale, checkpoint_type, actor, notes, now)

    async def _complete(self, sale: Sale, checkpoint_type: CheckpointType,
                        actor: Optional[str], notes: Optional[str], now: datetime) -> Sale:
        existing = await self.store.get_checkpoint(sale.id, checkpoint_type)
        checkpoint = SaleCheckpoint(
            sale_id=sale.id,
            tenant_id=sale.tenant_id,
            checkpoint_type=checkpoint_type,
            completed_at=now,
            completed_by=actor,
            notes=notes,
        )
        if existing is not None:
            checkpoint.id = existing.id
        checkpoint = await self.store.save_checkpoint(checkpoint)
        await self._record(checkpoint, CheckpointAction.COMPLETED, actor, notes, now)

        at_field, by_field = LEGACY_FIELDS[checkpoint_type]
        fields = {at_field: now, by_field: actor}
        status = CHECKPOINT_STATUS[checkpoint_type]
        if status is not None:
            fields["status"] = status

        logger.info("checkpoint_completed", sale_id=sale.id,
                    checkpoint=checkpoint_type.value, actor=actor)
        return await self.store.update_sale(sale.id, **fields)

    async def _uncomplete(self, sale: Sale, checkpoint_type: CheckpointType,
                          actor: Optional[str], notes: Optional[str], now: datetime) -> Sale:
        existing = await self.store.get_checkpoint(sale.id, checkpoint_type)
        if existing is None or not existing.is_completed:
            raise InvalidTransitionError(
                f"Checkpoint '{checkpoint_type.value}' is not completed on sale '{sale.id}'",
                current="uncompleted",
            )

        existing.completed_at = None
        existing.completed_by = None
        existing.notes = None
        checkpoint = await self.store.save_checkpoint(existing)
        await self._record(checkpoint, CheckpointAction.UNCOMPLETED, actor, notes, now)

        remaining = [
            c.checkpoint_type for c in await self.store.list_checkpoints(sale.id)
            if c.is_completed and c.checkpoint_type != checkpoint_type
        ]
        status = status_after_uncomplete(checkpoint_type, remaining)
        at_field, by_field = LEGACY_FIELDS[checkpoint_type]

        logger.info("checkpoint_uncompleted", sale_id=sale.id,
                    checkpoint=checkpoint_type.value, actor=actor, status=status.value)
        return await self.store.update_sale(sale.id, **{at_field: None, by_field: None, "status": status})

    async def _record(self, checkpoint: SaleCheckpoint, action: CheckpointAction,
                      actor: Optional[str], notes: Optional[str], now: datetime) -> None:
        await self.store.add_checkpoint_history(CheckpointHistoryEntry(
            checkpoint_id=checkpoint.id,
            sale_id=checkpoint.sale_id,
            tenant_id=checkpoint.tenant_id,
            checkpoint_type=checkpoint.checkpoint_type,
            action=action,
            changed_by=actor,
            changed_at=now,
            notes=notes,
        ))

    async def reconcile(self, sale_id: str) -> Sale:
        """Rebuild the sale's status and legacy columns from its checkpoint rows."""
        sale = await self._load_sale(sale_id)
        by_type = {c.checkpoint_type: c for c in await self.store.list_checkpoints(sale_id)}

        fields: dict = {}
        completed = []
        for checkpoint_type in CHECKPOINT_ORDER:
            at_field, by_field = LEGACY_FIELDS[checkpoint_type]
            checkpoint = by_type.get(checkpoint_type)
            if checkpoint is not None and checkpoint.is_completed:
                completed.append(checkpoint_type)
                fields[at_field] = checkpoint.completed_at
                fields[by_field] = checkpoint.completed_by
            else:
                fields[at_field] = None
                fields[by_field] = None

        fields["status"] = derive_reconciled_status(completed, sale.status)
        if fields["status"] != sale.status:
            logger.info("sale_status_reconciled", sale_id=sale_id,
                        previous=sale.status.value, status=fields["status"].value)
        return await self.store.update_sale(sale_id, **fields)

    async def overview(self, sale_id: str) -> list[CheckpointView]:
        await self._load_sale(sale_id)
        by_type = {c.checkpoint_type: c for c in await self.store.list_checkpoints(sale_id)}
        views = []
        for checkpoint_type in CHECKPOINT_ORDER:
            checkpoint = by_type.get(checkpoint_type)
            if checkpoint is None:
                views.append(CheckpointView(checkpoint_type=checkpoint_type))
                continue
            views.append(CheckpointView(
                checkpoint_type=checkpoint_type,
                completed=checkpoint.is_completed,
                completed_at=checkpoint.completed_at,
                completed_by=checkpoint.completed_by,
                notes=checkpoint.notes,
            ))
        return views

    async def history(self, sale_id: str) -> list[CheckpointHistoryEntry]:
        await self._load_sale(sale_id)
        return await self.store.list_checkpoint_history(sale_id)
