from contextlib import contextmanager
from typing import Optional

from flask import current_app
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from arena import db
from arena.errors import UpstreamUnavailable
from arena.models import Game, Player, User, GameStatus, generate_game_code


class StaleSessionError(Exception):
    """The game row changed between read and commit."""


# Attempts at inserting a game when a freshly generated code races another insert
_CODE_ALLOCATION_ATTEMPTS = 5


class SessionStore:
    """Durable repository for games and their participants.

    All writes commit through `save`, which relies on the mapper's version
    column so a concurrent writer surfaces as StaleSessionError instead of a
    silent overwrite. Driver and pool timeouts become UpstreamUnavailable.
    """

    def __init__(self, code_length: int = 6):
        self.code_length = code_length

    @contextmanager
    def _guard(self, op: str):
        try:
            yield
        except (sa_exc.OperationalError, sa_exc.TimeoutError, sa_exc.InterfaceError) as exc:
            db.session.rollback()
            current_app.logger.warning(f"[store-unavailable] op={op} error={exc.__class__.__name__}")
            raise UpstreamUnavailable() from exc

    def find(self, game_code: str) -> Optional[Game]:
        with self._guard('find'):
            return Game.query.filter_by(game_code=game_code).first()

    def find_with_participants(self, game_code: str) -> Optional[Game]:
        with self._guard('find_with_participants'):
            return (
                Game.query.options(
                    selectinload(Game.players).selectinload(Player.user),
                    selectinload(Game.current_turn),
                    selectinload(Game.winner),
                )
                .filter_by(game_code=game_code)
                .first()
            )

    def find_user(self, identity: str) -> Optional[User]:
        with self._guard('find_user'):
            return User.query.filter_by(email=identity).first()

    def code_exists(self, game_code: str) -> bool:
        with self._guard('code_exists'):
            return db.session.query(Game.id).filter_by(game_code=game_code).first() is not None

    def create(self, host: User, board_state_for) -> Game:
        """Insert a pending game seated with `host`.

        `board_state_for(code)` is called once the code is chosen and must
        return the initial board. Collisions that slip past the existence check
        are caught by the unique index and retried with a fresh code.
        """
        last_error = None
        for _ in range(_CODE_ALLOCATION_ATTEMPTS):
            code = generate_game_code(self.code_length, exists=self.code_exists)
            game = Game(
                game_code=code,
                status=GameStatus.PENDING,
                board_state=board_state_for(code),
                current_turn=host,
            )
            game.players.append(Player(user=host, seat=0))
            with self._guard('create'):
                db.session.add(game)
                try:
                    db.session.commit()
                    return game
                except sa_exc.IntegrityError as exc:
                    db.session.rollback()
                    last_error = exc
                    current_app.logger.info(f"[code-collision] code={code}")
        raise UpstreamUnavailable('Could not allocate a game code') from last_error

    def add_player(self, game: Game, user: User, seat: int) -> Player:
        player = Player(user=user, seat=seat)
        game.players.append(player)
        return player

    def save(self, game: Game) -> Game:
        game_code = game.game_code
        with self._guard('save'):
            db.session.add(game)
            try:
                db.session.commit()
            except (StaleDataError, sa_exc.IntegrityError) as exc:
                db.session.rollback()
                raise StaleSessionError(game_code) from exc
            except Exception:
                db.session.rollback()
                raise
        return game
