from abc import ABC


class UserError(ABC, Exception):
    """Base class for user-related errors.

    All errors that inherit from UserError will have their messages
    displayed to the user. These errors should not contain any
    sensitive information.
    """


class NotFoundError(UserError):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str = "Document not found") -> None:
        super().__init__(message)


class ValidationError(UserError):
    """Raised when user input fails validation."""


class AllocationFailure(UserError):
    """Raised when the sequence store cannot be reached.

    The increment either happened or it did not; the caller may retry.
    """

    def __init__(self, counter_name: str) -> None:
        super().__init__("Could not allocate an identifier, please retry")
        self.counter_name = counter_name


class CouldNotAllocateIdentifier(UserError):
    """Raised when every insert attempt collided on a unique identifier."""

    def __init__(self, entity_type: str, attempts: int) -> None:
        super().__init__("Could not allocate a unique identifier, please retry")
        self.entity_type = entity_type
        self.attempts = attempts


class IdentifierCollision(Exception):
    """A persisted record already holds the identifier that was just allocated.

    Internal to issuance; resolved by re-allocating the colliding counter.
    """

    def __init__(self, field: str, value: object) -> None:
        super().__init__(f"Duplicate value for '{field}': {value!r}")
        self.field = field
        self.value = value
