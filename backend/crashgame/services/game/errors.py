"""Errors raised by the round engine.

Every error carries a stable machine-readable ``kind`` and the HTTP status the
API layer answers with. Player-facing errors never stop the round cycle.
"""


class GameError(Exception):
    kind = 'game_error'
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'kind': self.kind, 'message': self.message}


class ValidationError(GameError):
    """Bad bet amount, unsupported asset or malformed player id."""
    kind = 'validation_error'
    status_code = 400


class StateError(GameError):
    """Action attempted in the wrong phase of the round."""
    kind = 'state_error'
    status_code = 409


class ConflictError(GameError):
    """Duplicate bet or duplicate cashout for the same player and round."""
    kind = 'conflict_error'
    status_code = 409


class InsufficientFundsError(GameError):
    kind = 'insufficient_funds'
    status_code = 400


class ExternalServiceError(GameError):
    """Price source unreachable. Absorbed by the price oracle."""
    kind = 'external_service_error'
    status_code = 503


class PersistenceError(GameError):
    """Durable store write failed; the in-memory change was not recorded."""
    kind = 'persistence_error'
    status_code = 500
