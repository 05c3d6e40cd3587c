"""
Mismatch Resolution Service

Manual resolution of reconciliation mismatches. Resolution is a single
compare-and-set on is_resolved: of two concurrent calls exactly one wins,
and a resolved mismatch never changes again.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from database.reconciliation_models import ReconciliationMismatchDB, utc_now
from reconciliation.errors import InvalidArgument, InvalidState, NotFound
from reconciliation.repository import ReconciliationRepository
from reconciliation.services.reconciliation_service import (
    ReconciliationAuditEvent,
    log_reconciliation_event,
)

logger = logging.getLogger(__name__)

MAX_RESOLUTION_NOTES = 2000


class ResolutionService:
    """Applies manual resolution to persisted mismatches."""

    def __init__(self, repository: ReconciliationRepository, clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.clock = clock or utc_now

    async def resolve(
        self,
        mismatch_id: str,
        resolution_notes: Optional[str],
        resolved_by_user_id: Optional[str],
        organization_id: Optional[str] = None
    ) -> ReconciliationMismatchDB:
        """
        Mark a mismatch resolved.

        Raises:
            InvalidArgument: notes empty or longer than 2000 characters
            NotFound: unknown mismatch, or one outside organization_id
            InvalidState: already resolved
        """
        notes = (resolution_notes or "").strip()
        if not notes:
            raise InvalidArgument("resolutionNotes is required", "resolutionNotes")
        if len(notes) > MAX_RESOLUTION_NOTES:
            raise InvalidArgument(
                f"resolutionNotes must be at most {MAX_RESOLUTION_NOTES} characters",
                "resolutionNotes"
            )

        resolved = await self.repository.resolve_mismatch(
            mismatch_id,
            notes,
            self.clock(),
            resolved_by_user_id,
            organization_id
        )
        if not resolved:
            await self.repository.rollback()
            existing = await self.repository.get_mismatch(mismatch_id, organization_id)
            if existing is None:
                raise NotFound("Mismatch", mismatch_id)
            raise InvalidState(f"Mismatch {mismatch_id} is already resolved")

        await self.repository.commit()
        mismatch = await self.repository.get_mismatch(mismatch_id, organization_id)

        log_reconciliation_event(
            ReconciliationAuditEvent.MISMATCH_RESOLVED,
            mismatch.organization_id,
            {
                "mismatch_id": mismatch_id,
                "mismatch_type": getattr(mismatch.mismatch_type, "value", mismatch.mismatch_type)
            },
            run_id=mismatch.run_id,
            actor=resolved_by_user_id or "system"
        )
        return mismatch
