"""
Error taxonomy for metering and billing.

Services raise these; routers translate them into HTTP responses.
Quota denials are not errors: they are returned as UsageDecision results.
"""
from typing import Optional


class EntitlementError(Exception):
    """Base class for errors raised by this service."""


class BillingValidationError(EntitlementError, ValueError):
    """A required field is missing or malformed. Raised before any state mutation."""


class RoleMismatchError(EntitlementError):
    """A feature was requested under the role it is not scoped to."""

    def __init__(self, feature: str, role: str):
        self.feature = feature
        self.role = role
        super().__init__(f"Feature '{feature}' is not available for role '{role}'")


class TransactionNotFoundError(EntitlementError):
    def __init__(self, tran_id: Optional[str] = None):
        self.tran_id = tran_id
        super().__init__(f"Transaction not found: {tran_id}" if tran_id else "Transaction not found")


class InvalidTransitionError(EntitlementError):
    """Attempted to move a transaction out of a terminal state."""

    def __init__(self, tran_id: str, current: str, target: str):
        self.tran_id = tran_id
        self.current = current
        self.target = target
        super().__init__(f"Transaction {tran_id} cannot move from '{current}' to '{target}'")


class TransientInfraError(EntitlementError):
    """Infrastructure blip that is safe to retry (connection reset, timeout)."""

    transient = True


class GatewayError(EntitlementError):
    """Payment provider rejected the request or the call itself failed."""

    def __init__(self, status_code: int, body: str, tran_id: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.tran_id = tran_id
        super().__init__(f"PayWay error {status_code}: {body[:200]}")
