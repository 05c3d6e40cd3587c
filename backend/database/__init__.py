from .connection import get_db, get_engine, get_session_factory, init_db, dispose_db, Base

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    ReconciliationRunDB, ReconciliationMismatchDB, HwImportBatchDB,
    HwImportedSaleDB, PaymentTransactionDB,
    ReconciliationStatus, MismatchType, HwImportSource,
    PaymentProvider, PaymentTransactionStatus,
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'init_db', 'dispose_db', 'Base',
    # Reconciliation models
    'ReconciliationRunDB', 'ReconciliationMismatchDB', 'HwImportBatchDB',
    'HwImportedSaleDB', 'PaymentTransactionDB',
    'ReconciliationStatus', 'MismatchType', 'HwImportSource',
    'PaymentProvider', 'PaymentTransactionStatus',
]
