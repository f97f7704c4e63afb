"""Sale checkpoints, status derivation and pickup closings."""
from sales.checkpoints import (
    CHECKPOINT_ORDER, CHECKPOINT_STATUS, LEGACY_FIELDS, CheckpointService, CheckpointView,
    derive_reconciled_status, status_after_uncomplete,
)
from sales.closings import (
    PaymentBucket, PickupClosingService, classify_payment_method, compute_totals,
    format_payment_method,
)

__all__ = [
    "CHECKPOINT_ORDER", "CHECKPOINT_STATUS", "LEGACY_FIELDS", "CheckpointService",
    "CheckpointView", "derive_reconciled_status", "status_after_uncomplete",
    "PaymentBucket", "PickupClosingService", "classify_payment_method",
    "compute_totals", "format_payment_method",
]
