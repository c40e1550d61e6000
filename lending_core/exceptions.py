"""Exception hierarchy for the lending engine."""


class LendingError(Exception):
    """Base exception for all lending engine errors."""


class ValidationError(LendingError, ValueError):
    """Raised when input to the engine is invalid. Nothing is persisted."""


class StateError(LendingError):
    """Raised when an operation conflicts with the current state of a loan or schedule."""


class NotFoundError(LendingError):
    """Raised when a referenced loan or schedule entry does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class PersistenceError(LendingError):
    """Raised when the storage backend fails. The failed write was rolled back."""
