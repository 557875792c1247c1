"""
Error Taxonomy
==============
Every failure the core can report, grouped by how a caller should react.

Categories:
- validation: bad input, surfaced for correction, never retried
- business:   rule violated for the current state, re-fetch before retrying
- trust:      untrusted input rejected outright, never partially processed
- transient:  infrastructure failure, safe to retry the whole operation
"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base class for all domain errors."""

    code = "marketplace_error"
    category = "business"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.category == "transient"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# VALIDATION
# ============================================================================

class ValidationError(MarketplaceError):
    category = "validation"
    http_status = 422


class InvalidPricingInput(ValidationError):
    code = "invalid_pricing_input"


class IncompleteSelection(ValidationError):
    code = "incomplete_selection"


class InvalidOrderRequest(ValidationError):
    code = "invalid_order_request"


class InvalidDropSubmission(ValidationError):
    code = "invalid_drop_submission"


# ============================================================================
# BUSINESS RULES
# ============================================================================

class BusinessRuleError(MarketplaceError):
    category = "business"
    http_status = 409


class DropNotFound(BusinessRuleError):
    code = "drop_not_found"
    http_status = 404


class OrderNotFound(BusinessRuleError):
    code = "order_not_found"
    http_status = 404


class DropNotApproved(BusinessRuleError):
    code = "drop_not_approved"


class DropNotLive(BusinessRuleError):
    code = "drop_not_live"


class InsufficientInventory(BusinessRuleError):
    code = "insufficient_inventory"


class AlreadyPaid(BusinessRuleError):
    code = "already_paid"
    http_status = 400


class AlreadyRefunded(BusinessRuleError):
    code = "already_refunded"
    http_status = 400


class OrderNotPayable(BusinessRuleError):
    code = "order_not_payable"
    http_status = 400


class InvalidAmount(BusinessRuleError):
    code = "invalid_amount"
    http_status = 400


class InvalidApprovalTransition(BusinessRuleError):
    code = "invalid_approval_transition"


# ============================================================================
# TRUST BOUNDARY
# ============================================================================

class InvalidSignature(MarketplaceError):
    code = "invalid_signature"
    category = "trust"
    http_status = 400


# ============================================================================
# TRANSIENT
# ============================================================================

class TransientError(MarketplaceError):
    category = "transient"
    http_status = 503


class PersistenceError(TransientError):
    code = "persistence_error"


class PaymentProviderError(TransientError):
    code = "payment_provider_error"
    http_status = 502
