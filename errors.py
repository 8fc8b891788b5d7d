class NotFound(ValueError):
    """Entity is absent or belongs to another user."""


class ValidationError(ValueError):
    """Malformed input or a missing cross-field value."""


class BusinessRuleViolation(ValueError):
    """Well-formed request that the ledger refuses to carry out."""


class StorageFailure(RuntimeError):
    """Opaque persistence error; never shown to API clients verbatim."""
