class RepositoryError(Exception):
    """Base repository error."""

    code = "repository_error"


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""

    code = "unavailable"


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""

    code = "not_found"


class RepositoryConflictError(RepositoryError):
    """Raised when a uniqueness rule rejects a duplicate vote or assignment."""

    code = "conflict"


class RepositoryStateError(RepositoryError):
    """Raised when an operation is illegal for the postulacion's current state."""

    code = "invalid_state"


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""

    code = "forbidden"


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""

    code = "validation_error"


class RepositoryInternalError(RepositoryError):
    """Raised on unexpected persistence failures; the message is safe to expose."""

    code = "internal_error"
