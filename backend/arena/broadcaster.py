from flask import current_app
from flask_socketio import join_room, leave_room


def room_for(game_code: str) -> str:
    return f"game:{game_code}"


class EventBroadcaster:
    """Formats outbound events and fans them out to live connections.

    Both participants of an operation receive the same board and status; only
    the `perspective` field differs between the two copies.
    """

    GAME_CREATED = 'game_created'
    OPPONENT_JOINED = 'opponent_joined'
    JOINED = 'joined'
    MOVE_APPLIED = 'move_applied'
    GAME_OVER = 'game_over'
    ILLEGAL_MOVE = 'illegal_move'
    ERROR = 'error'

    def __init__(self, socketio, namespace='/ws'):
        self.socketio = socketio
        self.namespace = namespace

    def _emit(self, event, payload, sid):
        self.socketio.emit(event, payload, to=sid, namespace=self.namespace)

    def _fan_out(self, event, payload, acting_sid, opponent_sid, game_code):
        self._emit(event, dict(payload, perspective='self'), acting_sid)
        if opponent_sid:
            self._emit(event, dict(payload, perspective='opponent'), opponent_sid)
        else:
            current_app.logger.warning(f"[fanout-miss] event={event} game={game_code} no live opponent connection")

    def subscribe(self, sid, game_code):
        join_room(room_for(game_code), sid=sid, namespace=self.namespace)

    def unsubscribe(self, game_code, *sids):
        for sid in sids:
            if sid:
                leave_room(room_for(game_code), sid=sid, namespace=self.namespace)

    def game_created(self, sid, game):
        self.subscribe(sid, game.game_code)
        self._emit(self.GAME_CREATED, game.to_dict(), sid)

    def game_joined(self, joiner_sid, opponent_sid, game):
        self.subscribe(joiner_sid, game.game_code)
        self._emit(self.JOINED, {'game_id': game.game_code, 'status': game.status}, joiner_sid)
        if opponent_sid:
            self._emit(self.OPPONENT_JOINED, game.to_dict(), opponent_sid)
        else:
            current_app.logger.warning(f"[fanout-miss] event={self.OPPONENT_JOINED} game={game.game_code} no live opponent connection")

    def move_applied(self, outcome, acting_sid, opponent_sid):
        self._fan_out(self.MOVE_APPLIED, outcome.to_dict(), acting_sid, opponent_sid, outcome.game_code)

    def game_over(self, game_code, payload, acting_sid, opponent_sid):
        """Final position, status and winner to both sides, then leave the room."""
        self._fan_out(self.GAME_OVER, payload, acting_sid, opponent_sid, game_code)
        self.unsubscribe(game_code, acting_sid, opponent_sid)

    def move_game_over(self, outcome, acting_sid, opponent_sid):
        self.game_over(outcome.game_code, outcome.to_dict(), acting_sid, opponent_sid)

    def resigned(self, game, acting_sid, opponent_sid):
        payload = {
            'game_id': game.game_code,
            'board_state': game.board_state,
            'status': game.status,
            'winner': game.winner.email if game.winner else None,
            'is_game_over': True,
        }
        self.game_over(game.game_code, payload, acting_sid, opponent_sid)

    def illegal_move(self, sid, game_code, move, message):
        self._emit(self.ILLEGAL_MOVE, {'game_id': game_code, 'move': move, 'message': message}, sid)

    def error(self, sid, message):
        self._emit(self.ERROR, {'message': message}, sid)
