from flask_socketio import emit
from flask import current_app, request
from arena import socketio, get_services
from arena.broadcaster import EventBroadcaster
from arena.errors import (
    AccessDenied,
    ArenaError,
    IllegalMove,
    InvalidMessage,
    Unauthenticated,
    UpstreamUnavailable,
)
from typing import Any, Dict, Optional
import threading

NEW_GAME = 'new_game'
JOIN_GAME = 'join_game'
LEAVE_GAME = 'leave_game'
MAKE_MOVE = 'make_move'

# Message kind -> roles, any one of which admits the sender
CAPABILITIES: Dict[str, tuple] = {
    NEW_GAME: ('Host',),
    JOIN_GAME: ('Player',),
    LEAVE_GAME: ('Player',),
    MAKE_MOVE: ('Player',),
}

# ---- Connection registry ----
# sid -> {'identity': ..., 'token': ...}; identity -> most recent sid
_sid_to_ctx: Dict[str, Dict[str, Any]] = {}
_identity_to_sid: Dict[str, str] = {}
_registry_lock = threading.Lock()
_broadcaster: Optional[EventBroadcaster] = None


def _get_sid() -> str:
    return request.sid  # type: ignore


def _bind(sid: str, identity: str, token: str) -> None:
    with _registry_lock:
        _sid_to_ctx[sid] = {'identity': identity, 'token': token}
        _identity_to_sid[identity] = sid


def _unbind(sid: str) -> Optional[Dict[str, Any]]:
    with _registry_lock:
        ctx = _sid_to_ctx.pop(sid, None)
        if ctx and _identity_to_sid.get(ctx['identity']) == sid:
            _identity_to_sid.pop(ctx['identity'], None)
        return ctx


def sid_for(identity: Optional[str]) -> Optional[str]:
    if not identity:
        return None
    with _registry_lock:
        return _identity_to_sid.get(identity)


# ---- Dispatch plumbing ----

def _with_retries(fn, *args):
    """Run `fn`, retrying UpstreamUnavailable with linear backoff."""
    retries = int(current_app.config.get('UPSTREAM_RETRIES', 2))
    backoff = float(current_app.config.get('UPSTREAM_RETRY_BACKOFF_SEC', 0.2))
    attempt = 0
    while True:
        try:
            return fn(*args)
        except UpstreamUnavailable:
            if attempt >= retries:
                raise
            attempt += 1
            current_app.logger.warning(f"[retry] fn={getattr(fn, '__name__', fn)} attempt={attempt}/{retries}")
            if backoff:
                socketio.sleep(backoff * attempt)


def _game_id(data) -> str:
    game_id = (data or {}).get('game_id') if isinstance(data, dict) else None
    if not game_id or not isinstance(game_id, str):
        raise InvalidMessage('game_id is required')
    return game_id.strip().upper()


def _dispatch(kind: str, data, action) -> None:
    """Authorize the sender for `kind`, then run `action(identity, sid, data)`.

    Every failure is reported to the sending connection only.
    """
    sid = _get_sid()
    with _registry_lock:
        ctx = dict(_sid_to_ctx.get(sid) or {})
    identity = ctx.get('identity')
    game_id = data.get('game_id') if isinstance(data, dict) else None
    if isinstance(game_id, str):
        game_id = game_id.strip().upper()
    try:
        principal = _with_retries(get_services().gate.authorize, ctx.get('token'), CAPABILITIES[kind])
        identity = principal.identity
        claimed = data.get('identity') if isinstance(data, dict) else None
        if claimed and claimed != identity:
            current_app.logger.warning(f"[identity-mismatch] kind={kind} sid={sid} claimed={claimed} actual={identity}")
        # Reconnects land here with a new sid for the same identity
        _bind(sid, identity, ctx.get('token'))
        action(identity, sid, data)
    except (Unauthenticated, AccessDenied) as exc:
        current_app.logger.info(f"[denied] kind={kind} game={game_id} identity={identity} reason={exc.__class__.__name__}")
        _broadcaster.error(sid, exc.public_message)
    except IllegalMove as exc:
        current_app.logger.info(f"[illegal] kind={kind} game={game_id} identity={identity} reason={exc}")
        move = data.get('move') if isinstance(data, dict) else None
        _broadcaster.illegal_move(sid, game_id, move, exc.public_message)
    except ArenaError as exc:
        current_app.logger.warning(f"[failed] kind={kind} game={game_id} identity={identity} error={exc.__class__.__name__}: {exc}")
        _broadcaster.error(sid, exc.public_message)
    except Exception:
        current_app.logger.exception(f"[crash] kind={kind} game={game_id} identity={identity}")
        _broadcaster.error(sid, 'Internal server error')


# ---- Actions ----

def _create(identity, sid, data):
    game = _with_retries(get_services().orchestrator.create_session, identity)
    _broadcaster.game_created(sid, game)


def _join(identity, sid, data):
    game_id = _game_id(data)
    orchestrator = get_services().orchestrator
    game = _with_retries(orchestrator.join_session, game_id, identity)
    opponent = orchestrator.opponent_of(game, identity)
    _broadcaster.game_joined(sid, sid_for(opponent.email if opponent else None), game)


def _move(identity, sid, data):
    game_id = _game_id(data)
    move = data.get('move')
    if not isinstance(move, dict):
        raise InvalidMessage('move with from/to is required')
    outcome = _with_retries(get_services().orchestrator.apply_move, game_id, move, identity)
    opponent_sid = sid_for(outcome.opponent)
    if outcome.terminal:
        _broadcaster.move_game_over(outcome, sid, opponent_sid)
    else:
        _broadcaster.move_applied(outcome, sid, opponent_sid)


def _leave(identity, sid, data):
    game_id = _game_id(data)
    game = _with_retries(get_services().orchestrator.resign, game_id, identity)
    _broadcaster.resigned(game, sid, sid_for(game.winner.email if game.winner else None))


# ---- Socket.IO handlers ----

def handle_connect(auth=None):
    token = (auth or {}).get('token') if isinstance(auth, dict) else None
    if not token:
        raise ConnectionRefusedError('No token found')
    try:
        principal = _with_retries(get_services().verifier.verify, token)
    except UpstreamUnavailable:
        current_app.logger.warning(f"[connect-refused] sid={_get_sid()} reason=upstream_unavailable")
        raise ConnectionRefusedError('Service temporarily unavailable')
    if principal is None:
        raise ConnectionRefusedError('Invalid token')
    _bind(_get_sid(), principal.identity, token)
    current_app.logger.info(f"[connect] sid={_get_sid()} identity={principal.identity}")
    emit('connected', {'message': 'Connected', 'identity': principal.identity})


def handle_disconnect(reason=None):
    # A dropped connection never ends the game; only leave_game does.
    ctx = _unbind(_get_sid())
    if ctx:
        current_app.logger.info(f"[disconnect] sid={_get_sid()} identity={ctx['identity']}")


def handle_new_game(data=None):
    _dispatch(NEW_GAME, data, _create)


def handle_join_game(data=None):
    _dispatch(JOIN_GAME, data, _join)


def handle_leave_game(data=None):
    _dispatch(LEAVE_GAME, data, _leave)


def handle_make_move(data=None):
    _dispatch(MAKE_MOVE, data, _move)


def register_socketio_handlers(namespace: str = '/ws') -> None:
    """Register Socket.IO event handlers on `namespace`."""
    global _broadcaster
    _broadcaster = EventBroadcaster(socketio, namespace=namespace)

    socketio.on_event('connect', handle_connect, namespace=namespace)
    socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
    socketio.on_event(NEW_GAME, handle_new_game, namespace=namespace)
    socketio.on_event(JOIN_GAME, handle_join_game, namespace=namespace)
    socketio.on_event(LEAVE_GAME, handle_leave_game, namespace=namespace)
    socketio.on_event(MAKE_MOVE, handle_make_move, namespace=namespace)
