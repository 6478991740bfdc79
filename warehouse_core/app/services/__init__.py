"""
Services package initialization.
Business logic layer for warehouse asset custody.
"""

from .ledger import (
    LedgerService,
    LedgerError,
    NotFoundError,
    InvalidOperationError,
    LedgerConflictError,
    AccessDeniedError,
    week_label,
    week_stamp,
    in_week_column,
    out_week_column,
)
from .picking import PickingService, shop_type_for
from .transfers import TransferService
from .repairs import RepairService
from .documents import DocumentService, generate_doc_code

__all__ = [
    'LedgerService',
    'PickingService',
    'TransferService',
    'RepairService',
    'DocumentService',
    'LedgerError',
    'NotFoundError',
    'InvalidOperationError',
    'LedgerConflictError',
    'AccessDeniedError',
    'week_label',
    'week_stamp',
    'in_week_column',
    'out_week_column',
    'shop_type_for',
    'generate_doc_code',
]
