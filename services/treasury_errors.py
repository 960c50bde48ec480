"""Typed errors raised by the treasury processing engine (exchange errors live in services.exchange_client)"""

from typing import Optional


class TreasuryProcessingError(Exception):
    """Base class for engine-level failures"""

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id


class RuleConfigurationError(TreasuryProcessingError):
    """The active treasury rule cannot be evaluated (missing or out-of-range values)"""
    pass


class TransactionInFlightError(TreasuryProcessingError):
    """Another processor still owns the transaction; safe to redeliver later"""
    pass


class ManualReviewRequiredError(TreasuryProcessingError):
    """An order may have executed without a persisted purchase; an operator must reconcile it"""
    pass


class PurchasePersistenceError(TreasuryProcessingError):
    """The exchange filled an order but the purchase row could not be written"""

    def __init__(self, message: str, transaction_id: Optional[str] = None,
                 exchange_order_id: Optional[str] = None):
        super().__init__(message, transaction_id)
        self.exchange_order_id = exchange_order_id


class OrderNotSettledError(TreasuryProcessingError):
    """The order was accepted but reported no fill within the settlement window"""

    def __init__(self, message: str, transaction_id: Optional[str] = None,
                 exchange_order_id: Optional[str] = None):
        super().__init__(message, transaction_id)
        self.exchange_order_id = exchange_order_id
