import threading
from dataclasses import dataclass
from typing import Dict, Optional

from flask import current_app

from arena.errors import (
    IdentityNotFound,
    IllegalMove,
    OpponentUnresolved,
    SessionFullOrFinished,
    SessionNotFound,
    UpstreamUnavailable,
)
from arena.models import Game, GameStatus, User
from arena.services.engine import RuleEngineAdapter
from arena.services.store import SessionStore, StaleSessionError


@dataclass(frozen=True)
class MoveOutcome:
    game_code: str
    move: dict
    legal: bool
    san: str
    position: str
    status: str
    terminal: bool
    mover: str
    opponent: str
    winner: Optional[str] = None
    current_turn: Optional[str] = None

    def to_dict(self):
        return {
            'game_id': self.game_code,
            'move': self.move,
            'san': self.san,
            'board_state': self.position,
            'status': self.status,
            'is_game_over': self.terminal,
            'mover': self.mover,
            'opponent': self.opponent,
            'winner': self.winner,
            'current_turn': self.current_turn,
        }


class SessionOrchestrator:
    """Coordinates games across the durable store and the live rule engine.

    The store is the source of truth. Before any legality check the engine's
    board is reconciled with the stored position, and if a write fails after
    the engine accepted a move, that move is rolled back so both sides keep
    agreeing. Engine-touching operations are serialized per game code.
    """

    def __init__(self, store: SessionStore, engine: RuleEngineAdapter):
        self.store = store
        self.engine = engine
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, game_code: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(game_code)
            if lock is None:
                lock = self._locks[game_code] = threading.Lock()
            return lock

    # ---- reads ----

    def get_session_with_participants(self, game_code: str) -> Game:
        game = self.store.find_with_participants(game_code)
        if game is None:
            raise SessionNotFound(game_code)
        return game

    @staticmethod
    def opponent_of(game: Game, identity: str) -> Optional[User]:
        """The other seated user, or None if `identity` is not seated."""
        if game.seat_of(identity) is None:
            return None
        for user in game.participants:
            if user.email != identity:
                return user
        return None

    # ---- writes ----

    def create_session(self, host_identity: str) -> Game:
        host = self.store.find_user(host_identity)
        if host is None:
            raise IdentityNotFound(f'User {host_identity} not found')

        allocated = []

        def _initial_board(code):
            allocated.append(code)
            return self.engine.initialize(code)

        try:
            game = self.store.create(host, _initial_board)
        except Exception:
            for code in allocated:
                self.engine.discard(code)
            raise
        for code in allocated[:-1]:
            self.engine.discard(code)

        current_app.logger.info(f"[create] game={game.game_code} host={host_identity}")
        return game

    def join_session(self, game_code: str, identity: str) -> Game:
        user = self.store.find_user(identity)
        if user is None:
            raise IdentityNotFound(f'User {identity} not found')

        game = self.get_session_with_participants(game_code)
        while True:
            self._check_joinable(game, identity)
            self.store.add_player(game, user, seat=len(game.players))
            game.status = GameStatus.PLAYING
            try:
                self.store.save(game)
                break
            except StaleSessionError:
                # Someone else wrote first; re-read and re-check at commit time.
                current_app.logger.info(f"[join-conflict] game={game_code} identity={identity}")
                game = self.store.find(game_code)
                if game is None:
                    raise SessionNotFound(game_code)

        current_app.logger.info(f"[join] game={game_code} identity={identity}")
        return game

    @staticmethod
    def _check_joinable(game: Game, identity: str) -> None:
        if len(game.players) >= 2 or game.status != GameStatus.PENDING:
            raise SessionFullOrFinished(
                f'Game {game.game_code} is full or finished: {len(game.players)} player(s) inside'
            )
        if game.seat_of(identity) is not None:
            raise SessionFullOrFinished(f'Already seated in game {game.game_code}')

    def apply_move(self, game_code: str, move_request: dict, acting_identity: str) -> MoveOutcome:
        with self._lock_for(game_code):
            game = self.get_session_with_participants(game_code)
            opponent = self.opponent_of(game, acting_identity)
            if opponent is None:
                raise OpponentUnresolved()
            if game.status != GameStatus.PLAYING:
                raise SessionFullOrFinished(f'Game {game_code} is not in play')
            if game.current_turn is None or game.current_turn.email != acting_identity:
                raise IllegalMove('Not your turn')

            if self.engine.reconcile(game_code, game.board_state):
                current_app.logger.info(f"[rehydrate] game={game_code}")

            result = self.engine.attempt_move(game_code, move_request)

            mover = game.seat_of(acting_identity).user
            winner = mover if result.status == GameStatus.CHECKMATE else None
            game.board_state = result.position
            game.status = result.status
            game.current_turn = None if result.game_over else opponent
            game.winner = winner
            try:
                self.store.save(game)
            except Exception as exc:
                rolled_back = self.engine.rollback_last_move(game_code)
                current_app.logger.warning(
                    f"[move-rollback] game={game_code} identity={acting_identity} "
                    f"rolled_back={rolled_back} error={exc.__class__.__name__}"
                )
                if isinstance(exc, StaleSessionError):
                    raise UpstreamUnavailable('Game changed concurrently, please retry') from exc
                raise

            current_app.logger.info(
                f"[move] game={game_code} identity={acting_identity} san={result.san} status={result.status}"
            )
            return MoveOutcome(
                game_code=game_code,
                move={'from': result.from_square, 'to': result.to_square},
                legal=result.legal,
                san=result.san,
                position=result.position,
                status=result.status,
                terminal=result.game_over,
                mover=acting_identity,
                opponent=opponent.email,
                winner=winner.email if winner else None,
                current_turn=None if result.game_over else opponent.email,
            )

    def resign(self, game_code: str, acting_identity: str) -> Game:
        with self._lock_for(game_code):
            game = self.get_session_with_participants(game_code)
            if game.is_terminal:
                raise SessionFullOrFinished(f'Game {game_code} already finished')
            opponent = self.opponent_of(game, acting_identity)
            if opponent is None:
                raise OpponentUnresolved()

            game.status = GameStatus.RESIGN
            game.winner = opponent
            game.current_turn = None
            try:
                self.store.save(game)
            except StaleSessionError as exc:
                raise UpstreamUnavailable('Game changed concurrently, please retry') from exc

            current_app.logger.info(f"[resign] game={game_code} identity={acting_identity} winner={opponent.email}")
            return game
