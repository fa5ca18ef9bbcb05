"""
EventSwap Platform - Exception Hierarchy

Every domain failure is a typed EventSwapError carrying a stable error code
and a kind, so callers branch on the class (or on ``kind``) instead of
matching message strings.

Kinds:
  - validation          bad input shape or range, no retry
  - state_conflict      guard violation (wrong status, wrong actor)
  - not_found           referenced entity does not exist
  - resource_exhausted  code allocation retries used up
  - external_dependency payment / notification adapter failure
  - configuration       missing or unusable policy, never guessed around
"""
from typing import Any, Dict, Optional


class EventSwapError(Exception):
    """Base exception for all EventSwap domain errors."""

    kind = "internal"

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


# ═══════════════════════════════════════════════════════
#  Kind families
# ═══════════════════════════════════════════════════════


class ValidationError(EventSwapError):
    kind = "validation"


class StateConflictError(EventSwapError):
    kind = "state_conflict"


class NotFoundError(EventSwapError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            "not_found",
            f"{entity} {entity_id} not found.",
            {"entity": entity, "id": str(entity_id)},
        )


class ResourceExhaustedError(EventSwapError):
    kind = "resource_exhausted"


class ExternalDependencyError(EventSwapError):
    kind = "external_dependency"


class ConfigurationError(EventSwapError):
    kind = "configuration"


# ═══════════════════════════════════════════════════════
#  Validation
# ═══════════════════════════════════════════════════════


class InvalidAmount(ValidationError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("invalid_amount", message, details)


class DescriptionTooShort(ValidationError):
    def __init__(self, minimum: int, actual: int):
        super().__init__(
            "description_too_short",
            f"Description must have at least {minimum} characters.",
            {"minimum": minimum, "actual": actual},
        )


class DescriptionTooLong(ValidationError):
    def __init__(self, maximum: int, actual: int):
        super().__init__(
            "description_too_long",
            f"Description must have at most {maximum} characters.",
            {"maximum": maximum, "actual": actual},
        )


class ReasonInvalid(ValidationError):
    def __init__(self, reason: Any):
        super().__init__(
            "reason_invalid",
            f"Unknown dispute reason: {reason!r}.",
            {"reason": str(reason)},
        )


class InvalidOutcome(ValidationError):
    def __init__(self, outcome: Any):
        super().__init__(
            "invalid_outcome",
            f"Unknown dispute outcome: {outcome!r}.",
            {"outcome": str(outcome)},
        )


# ═══════════════════════════════════════════════════════
#  State conflicts
# ═══════════════════════════════════════════════════════


class NotAuthorized(StateConflictError):
    def __init__(self, message: str = "Actor is not allowed to perform this action."):
        super().__init__("not_authorized", message)


class NotPending(StateConflictError):
    def __init__(self, offer_id: Any, status: str):
        super().__init__(
            "not_pending",
            f"Offer {offer_id} is {status}, not PENDING.",
            {"offer_id": str(offer_id), "status": status},
        )


class OfferExpired(StateConflictError):
    def __init__(self, offer_id: Any):
        super().__init__(
            "offer_expired",
            f"Offer {offer_id} has expired.",
            {"offer_id": str(offer_id)},
        )


class DuplicatePendingOffer(StateConflictError):
    def __init__(self, existing_offer_id: Any):
        self.existing_offer_id = existing_offer_id
        super().__init__(
            "duplicate_pending_offer",
            "You already have a pending offer on this listing.",
            {"existing_offer_id": str(existing_offer_id)},
        )


class ListingUnavailable(StateConflictError):
    def __init__(self, listing_id: Any, status: str):
        super().__init__(
            "listing_unavailable",
            f"Listing {listing_id} is {status} and cannot be sold.",
            {"listing_id": str(listing_id), "status": status},
        )


class SelfPurchase(StateConflictError):
    def __init__(self):
        super().__init__("self_purchase", "Sellers cannot buy their own listing.")


class MissingPayerIdentity(StateConflictError):
    def __init__(self, user_id: Any):
        super().__init__(
            "missing_payer_identity",
            "A tax id is required before paying for a transaction.",
            {"user_id": str(user_id)},
        )


class DuplicateActiveTransaction(StateConflictError):
    def __init__(self, existing_transaction_id: Any):
        self.existing_transaction_id = existing_transaction_id
        super().__init__(
            "duplicate_active_transaction",
            "An active transaction already exists for this listing.",
            {"existing_transaction_id": str(existing_transaction_id)},
        )


class InvalidTransactionState(StateConflictError):
    def __init__(self, transaction_id: Any, status: str, action: str):
        super().__init__(
            "invalid_transaction_state",
            f"Cannot {action} transaction {transaction_id} in state {status}.",
            {"transaction_id": str(transaction_id), "status": status, "action": action},
        )


class PaymentDeadlineExpired(StateConflictError):
    def __init__(self, transaction_id: Any):
        super().__init__(
            "payment_deadline_expired",
            f"Payment deadline for transaction {transaction_id} has passed.",
            {"transaction_id": str(transaction_id)},
        )


class DisputeAlreadyOpen(StateConflictError):
    def __init__(self, dispute_id: Any):
        super().__init__(
            "dispute_already_open",
            "This transaction already has an open dispute.",
            {"existing_dispute_id": str(dispute_id)},
        )


class InvalidDisputeState(StateConflictError):
    def __init__(self, dispute_id: Any, status: str, action: str):
        super().__init__(
            "invalid_dispute_state",
            f"Cannot {action} dispute {dispute_id} in state {status}.",
            {"dispute_id": str(dispute_id), "status": status, "action": action},
        )


class InvalidListingState(StateConflictError):
    def __init__(self, listing_id: Any, status: str, action: str):
        super().__init__(
            "invalid_listing_state",
            f"Cannot {action} listing {listing_id} in state {status}.",
            {"listing_id": str(listing_id), "status": status, "action": action},
        )


class FraudBlocked(StateConflictError):
    def __init__(self, subject: str, score: int):
        super().__init__(
            "fraud_blocked",
            f"{subject} was blocked by risk screening.",
            {"score": score},
        )


class ChatSuspended(StateConflictError):
    def __init__(self, user_id: Any):
        super().__init__(
            "chat_suspended",
            "Chat is suspended for this account after repeated violations.",
            {"user_id": str(user_id)},
        )


class ConcurrentModification(StateConflictError):
    def __init__(self, entity: str):
        super().__init__(
            "concurrent_modification",
            f"{entity} was modified concurrently, re-fetch and retry.",
        )


# ═══════════════════════════════════════════════════════
#  Resource exhaustion / external / configuration
# ═══════════════════════════════════════════════════════


class CodeAllocationExhausted(ResourceExhaustedError):
    def __init__(self, prefix: str, attempts: int):
        super().__init__(
            "code_allocation_exhausted",
            f"Could not allocate a unique {prefix} code after {attempts} attempts.",
            {"prefix": prefix, "attempts": attempts},
        )


class PaymentAdapterError(ExternalDependencyError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment_adapter_error", message, details)


class DisputePolicyMissing(ConfigurationError):
    def __init__(self, outcome: str):
        super().__init__(
            "dispute_policy_missing",
            f"No fund-movement policy configured for outcome {outcome}.",
            {"outcome": outcome},
        )
