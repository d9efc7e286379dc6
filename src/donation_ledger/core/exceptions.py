"""Error taxonomy for the reconciliation pipeline and the cancellation flow.

Routers map these onto HTTP status codes; services only raise them.
"""


class LedgerError(Exception):
    """Base class for every error raised by this package."""

    default_message = "Ledger error"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


# Authentication-class: terminal, never retried.

class InvalidSignature(LedgerError):
    default_message = "Invalid signature"


class InvalidToken(LedgerError):
    default_message = "Invalid or expired token"


class ExpiredToken(InvalidToken):
    default_message = "Invalid or expired token"


class RevocationDisabled(LedgerError):
    default_message = "Token revocation is not enabled"


# Permanently unprocessable: rejected with a client error so the
# processor stops redelivering.

class MalformedEvent(LedgerError):
    default_message = "Invalid payload"


class MissingDonorEmail(LedgerError):
    default_message = "Missing donor email"


# Transient infrastructure: surfaced as a failure so the caller retries.

class ProcessorUnavailable(LedgerError):
    default_message = "Payment processor unavailable"


class DatastoreUnavailable(LedgerError):
    default_message = "Datastore unavailable"


# Lookups that fail closed in the cancellation flow.

class SubscriptionNotFound(LedgerError):
    default_message = "Subscription not found"


class CustomerNotFound(LedgerError):
    default_message = "Customer not found"


class ProcessorRequestError(LedgerError):
    """The processor rejected a request (not retryable as-is)."""
    default_message = "Payment processor rejected the request"


class ProcessorMisconfigured(LedgerError):
    """The processor refused our credentials. Fails like a transient error
    so events are redelivered once the key is fixed, but is logged critical."""
    default_message = "Payment processor credentials rejected"


# Logical conflict: the caller treats it as success.

class DuplicateDonation(LedgerError):
    default_message = "Donation already recorded"
