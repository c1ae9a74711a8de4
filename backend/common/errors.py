GENERIC_ERROR_REPLY = "Something went wrong. Please try again."


class PersistenceError(RuntimeError):
    """A durable write failed; the message must be retried by the transport."""


class DraftBusyError(RuntimeError):
    """Another message for the same sender is still being handled."""
