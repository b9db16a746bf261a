"""
Error taxonomy shared by every engine module.

Each error carries a ``kind`` so callers (CLI, procedure table, a future HTTP
layer) can map it to their own status codes without parsing messages.
"""


class CrmError(Exception):
    """Base class for every domain error raised by the engine."""

    kind = 'internal'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(CrmError):
    """Referenced entity is missing, or hidden by soft-delete rules."""

    kind = 'not_found'


class ValidationError(CrmError, ValueError):
    """Input does not have the right shape (format, required value, range)."""

    kind = 'validation'


class BusinessRuleError(CrmError):
    """Input is well-formed but a domain rule blocks the action."""

    kind = 'business_rule'


class ConflictError(CrmError):
    """Uniqueness or state-exclusivity rule violated."""

    kind = 'conflict'
