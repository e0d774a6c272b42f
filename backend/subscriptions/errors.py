"""Error taxonomy for the subscription core."""

from typing import Optional


class SubscriptionError(Exception):
    """Base class. `code` is stable and safe to return to API clients."""

    code = "subscription_error"

    def __init__(self, message: str, tracking_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tracking_id = tracking_id


# -- user-facing, synchronous ------------------------------------------------

class ValidationError(SubscriptionError):
    code = "validation_error"


class InvalidChannel(ValidationError):
    code = "invalid_channel"


# -- gateway -----------------------------------------------------------------

class GatewayError(SubscriptionError):
    """Gateway could not accept the push. Never retried automatically."""

    code = "gateway_error"


class GatewayUnavailable(GatewayError):
    code = "gateway_unavailable"


class AuthenticationFailed(GatewayError):
    code = "gateway_authentication_failed"


# -- transaction store -------------------------------------------------------

class DuplicateTrackingId(SubscriptionError):
    code = "duplicate_tracking_id"


class UnknownTransaction(SubscriptionError):
    code = "unknown_transaction"


class AlreadyResolved(SubscriptionError):
    """Idempotent no-op: the record already reached a terminal state."""

    code = "already_resolved"

    def __init__(self, message: str, tracking_id: Optional[str] = None, state=None):
        super().__init__(message, tracking_id)
        self.state = state


class ExpiredRegistration(SubscriptionError):
    code = "expired_registration"


# -- ledger ------------------------------------------------------------------

class UnknownUser(ValidationError):
    code = "unknown_user"


class LedgerWriteConflict(SubscriptionError):
    """Optimistic version check lost. Transient."""

    code = "ledger_write_conflict"
