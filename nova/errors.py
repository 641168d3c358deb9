class LedgerError(Exception):
    """Base for every workflow failure. State is unchanged when one is raised."""
    status_code = 400


class NotFound(LedgerError):
    status_code = 404


class Conflict(LedgerError):
    status_code = 409


class InsufficientFunds(LedgerError):
    status_code = 400


class DailyLimitReached(LedgerError):
    status_code = 400


class InvalidArgument(LedgerError):
    status_code = 400


class Internal(LedgerError):
    status_code = 500


class ContentionError(Exception):
    """A compare-and-swap update lost a race. Retried, never surfaced."""
