class LedgerError(Exception):
    pass


class ValidationError(LedgerError, ValueError):
    """A single malformed item; never aborts the rest of a batch."""


class NotFoundError(LedgerError, ValueError):
    pass


class AuthenticationError(LedgerError):
    pass


class UpstreamError(LedgerError):
    """The banking collaborator failed after all retries."""


class PersistenceError(LedgerError):
    pass


class NotificationDeliveryError(LedgerError):
    """Best-effort push failed. Logged by the dispatcher, never raised to callers."""
