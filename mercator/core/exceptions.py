"""Exception hierarchy for Mercator.

Everything raised on purpose derives from MercatorError so round units can catch
broadly while the API maps the narrower types to status codes.
"""


class MercatorError(Exception):
    """Base exception for all Mercator errors."""


class ConfigError(MercatorError):
    """Invalid or unreadable configuration."""


class NotFoundError(MercatorError):
    """Agent, task, policy or partnership does not exist."""


class PolicyError(MercatorError):
    """Policy delta or document failed validation."""


# ---------------------------------------------------------------------------
# External boundaries
# ---------------------------------------------------------------------------

class AdvisorError(MercatorError):
    """Strategic advisor call failed or returned an unusable response."""


class PaymentError(MercatorError):
    """Payment rail rejected or could not process a transfer."""


class EscrowError(MercatorError):
    """Escrow claim could not be honoured."""
