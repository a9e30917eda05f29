from flask import Blueprint, jsonify
from arena import get_services
from arena.errors import SessionNotFound, UpstreamUnavailable


games = Blueprint('games', __name__)


@games.route('/<string:game_code>/state', methods=['GET'])
def get_game_state(game_code):
    """Durable state of a game, for clients resyncing after a reconnect."""
    try:
        game = get_services().orchestrator.get_session_with_participants(game_code.upper())
    except SessionNotFound as exc:
        return jsonify({'error': exc.public_message}), 404
    except UpstreamUnavailable as exc:
        return jsonify({'error': exc.public_message}), 503
    return jsonify(game.to_dict())
