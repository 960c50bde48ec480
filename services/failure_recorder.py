"""
Processing failure recorder - append-only sink for terminal failures
"""

import logging
from typing import Any, Dict, List, Optional, Union

from models import FailureCategory, FailureLeg, ProcessingFailure
from services.exchange_client import ExchangeError
from services.tenant_data_store import TenantDataStore

logger = logging.getLogger(__name__)


class FailureRecorder:
    """One row per terminal failure episode; never deduplicates"""

    def __init__(self, store: TenantDataStore):
        self.store = store

    def record(
        self,
        transaction_id: str,
        category: Union[FailureCategory, str],
        message: str,
        leg: FailureLeg = FailureLeg.PURCHASE,
        details: Optional[Dict[str, Any]] = None,
    ) -> ProcessingFailure:
        category_value = category.value if isinstance(category, FailureCategory) else str(category)
        failure = self.store.insert_failure(
            transaction_id=transaction_id,
            category=category_value,
            leg=leg.value,
            error_message=message,
            details=details,
        )
        logger.error(
            f"🚨 PROCESSING_FAILURE: tenant={self.store.tenant_id} tx={transaction_id} "
            f"leg={leg.value} category={category_value}: {message}"
        )
        return failure

    def record_exchange_error(self, transaction_id: str, error: ExchangeError,
                              extra: Optional[Dict[str, Any]] = None) -> ProcessingFailure:
        """Record a classified exchange error, keeping its leg and upstream text"""
        details = error.to_details()
        if extra:
            details.update(extra)
        return self.record(
            transaction_id,
            FailureCategory(error.code.value),
            error.message,
            leg=error.leg,
            details=details,
        )

    def list_unresolved(self, limit: Optional[int] = 100) -> List[ProcessingFailure]:
        """Open failures for operations tooling, oldest first"""
        return self.store.list_failures(unresolved_only=True, limit=limit)

    def failures_for_transaction(self, transaction_id: str) -> List[ProcessingFailure]:
        return self.store.list_failures(transaction_id=transaction_id)

    def mark_resolved(self, failure_id: int, note: Optional[str] = None) -> bool:
        resolved = self.store.resolve_failure(failure_id, note)
        if resolved:
            logger.info(f"✅ FAILURE_RESOLVED: {failure_id} ({note or 'no note'})")
        else:
            logger.warning(f"⚠️ FAILURE_RESOLVE_SKIPPED: {failure_id} not found or already resolved")
        return resolved
