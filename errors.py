class DomainError(ValueError):
    status_code = 400


class NotFoundError(DomainError):
    """Entity does not exist or is outside the caller's ownership scope."""

    status_code = 404


class ForbiddenError(DomainError):
    """Entity exists but the caller lacks the group capability for the action."""

    status_code = 403


class ConflictError(DomainError):
    status_code = 409


class RuleViolationError(DomainError):
    status_code = 400


class InvalidInputError(DomainError):
    status_code = 422


class StorageError(DomainError):
    status_code = 500
