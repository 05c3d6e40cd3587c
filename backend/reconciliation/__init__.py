"""
Payment Reconciliation Engine

Correlates vending-machine (HW) sales with payment provider transactions:
- Run lifecycle (pending -> processing -> completed | failed)
- Source loading and normalization
- Tolerance-based one-to-one matching per machine
- Mismatch classification and run summaries
- Bulk import of HW sales (JSON, CSV, Excel)
- Manual mismatch resolution
- Audit trail for all operations
"""

from reconciliation.errors import (
    ReconciliationError,
    InvalidArgument,
    NotFound,
    InvalidState,
    ExecutionFailure,
    ExecutionTimeout
)
from reconciliation.source_registry import (
    ReconciliationSource,
    SourceSide,
    SourceConfig,
    SourceRegistry,
    source_registry
)
from reconciliation.loader import NormalizedRecord, SourceLoader
from reconciliation.matching_rules.tolerance_matcher import (
    MatchedPair,
    MatchDiscrepancy,
    MatchOutcome,
    match_records
)
from reconciliation.classifier import classify
from reconciliation.summary import RunSummary, build_summary
from reconciliation.repository import ReconciliationRepository, SqlReconciliationRepository
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.import_service import SalesImportService, HwSaleRow
from reconciliation.services.resolution_service import ResolutionService
from reconciliation.executor import RunExecutor
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Errors
    'ReconciliationError',
    'InvalidArgument',
    'NotFound',
    'InvalidState',
    'ExecutionFailure',
    'ExecutionTimeout',
    # Source Registry
    'ReconciliationSource',
    'SourceSide',
    'SourceConfig',
    'SourceRegistry',
    'source_registry',
    # Pipeline
    'NormalizedRecord',
    'SourceLoader',
    'MatchedPair',
    'MatchDiscrepancy',
    'MatchOutcome',
    'match_records',
    'classify',
    'RunSummary',
    'build_summary',
    # Persistence
    'ReconciliationRepository',
    'SqlReconciliationRepository',
    # Services
    'ReconciliationService',
    'SalesImportService',
    'HwSaleRow',
    'ResolutionService',
    'RunExecutor',
    # Router
    'reconciliation_router'
]
