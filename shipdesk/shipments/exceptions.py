"""
Error taxonomy for the shipment orchestrator.

Every failure carries a ``kind`` so results can be itemized for operators, and
a ``retryable`` flag separating "retry later" from "needs manual intervention".
"""


class ShipmentError(Exception):
    kind = 'error'
    retryable = False

    def __init__(self, message='', *, order_id=None, details=None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.details = details or {}

    def __str__(self):
        return self.message

    def as_dict(self):
        data = {'kind': self.kind, 'message': self.message, 'retryable': self.retryable}
        if self.details:
            data['details'] = self.details
        return data


class ValidationError(ShipmentError):
    """Bad input or a violated precondition. Never retried."""
    kind = 'validation'


class InvalidTransition(ValidationError):
    """The order's current state does not allow the requested transition."""


class OrderNotFound(ValidationError):
    kind = 'not_found'


class Conflict(ShipmentError):
    """Another transition for the same order is already in flight."""
    kind = 'conflict'
    retryable = True


class ProviderError(ShipmentError):
    def __init__(self, message='', *, status_code=None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeouts, 5xx and rate limiting. Retried inside the gateway."""
    kind = 'transient'
    retryable = True


class AmbiguousProviderError(TransientProviderError):
    """The connection failed mid-write; the remote side may or may not have applied it."""
    kind = 'ambiguous'


class PermanentProviderError(ProviderError):
    """Rejected by the provider. Surfaced verbatim, never retried."""
    kind = 'permanent'


class InsufficientBalance(PermanentProviderError):
    kind = 'insufficient_balance'


class DuplicateOrder(PermanentProviderError):
    kind = 'duplicate'


class ReconciliationError(ShipmentError):
    """Local and provider state disagree and need a human to look at it."""
    kind = 'reconciliation'
