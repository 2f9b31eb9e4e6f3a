"""Error taxonomy shared by the game core, the service and the gateway.

Every error is local and synchronous: it is raised before any state is
touched and reported back to the connection that sent the command.
"""


class GameError(ValueError):
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GameError):
    """Malformed or out-of-range input."""

    code = "validation"


class NotHostError(ValidationError):
    code = "not_host"


class NotFoundError(GameError):
    """Unknown join code, player or connection."""

    code = "not_found"


class UnknownPlayerError(NotFoundError, ValidationError):
    """Raised for player ids a command refers to but the roster lacks."""


class StateError(GameError):
    """Operation not permitted in the session's current phase."""

    code = "state"


class ExternalServiceError(GameError):
    """Song or narration provider failure. Never fatal to a session."""

    code = "external"
