"""Error taxonomy shared by the services and the socket gateway.

Messages on these exceptions are safe to show to clients; anything that is
not an ArenaError is treated as internal and never echoed back.
"""


class ArenaError(Exception):
    message = 'Request failed'
    retryable = False

    def __init__(self, message=None):
        super().__init__(message or self.message)

    @property
    def public_message(self):
        return str(self)


class SessionNotFound(ArenaError):
    message = 'Game not found'

    def __init__(self, game_code=None):
        super().__init__(f'Game with id {game_code} not found' if game_code else None)


class SessionFullOrFinished(ArenaError):
    message = 'Game is full or already finished'


class OpponentUnresolved(ArenaError):
    message = 'Opponent not found'


class IllegalMove(ArenaError):
    message = 'Illegal move'


class IdentityNotFound(ArenaError):
    message = 'Unknown player'


class InvalidMessage(ArenaError):
    message = 'Malformed message'


class Unauthenticated(ArenaError):
    message = 'Authentication required'


class AccessDenied(ArenaError):
    message = 'Access denied: insufficient permissions'


class UpstreamUnavailable(ArenaError):
    message = 'Service temporarily unavailable, please retry'
    retryable = True
