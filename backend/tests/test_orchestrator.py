import threading

import chess
import pytest
import sqlalchemy as sa

from arena import db
from arena.errors import (
    IdentityNotFound,
    IllegalMove,
    OpponentUnresolved,
    SessionFullOrFinished,
    SessionNotFound,
    UpstreamUnavailable,
)
from arena.models import Game, GameStatus
from arena.services.store import StaleSessionError

ALICE = 'alice@example.com'
BOB = 'bob@example.com'
CAROL = 'carol@example.com'


def _durable(code):
    db.session.expire_all()
    return Game.query.filter_by(game_code=code).first()


def _playing_game(orchestrator):
    game = orchestrator.create_session(ALICE)
    orchestrator.join_session(game.game_code, BOB)
    return game.game_code


def test_full_scenario(orchestrator, svc):
    game = orchestrator.create_session(ALICE)
    code = game.game_code
    assert len(code) == 6
    assert game.status == GameStatus.PENDING
    assert [u.email for u in game.participants] == [ALICE]

    game = orchestrator.join_session(code, BOB)
    assert game.status == GameStatus.PLAYING
    assert [u.email for u in game.participants] == [ALICE, BOB]
    assert game.winner is None

    outcome = orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
    assert outcome.legal
    assert outcome.status == GameStatus.PLAYING
    assert outcome.current_turn == BOB
    assert outcome.opponent == BOB
    durable = _durable(code)
    assert durable.current_turn.email == BOB
    assert durable.board_state == svc.engine.position(code)

    before = durable.board_state
    with pytest.raises(IllegalMove):
        orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
    assert _durable(code).board_state == before
    assert svc.engine.position(code) == before

    game = orchestrator.resign(code, BOB)
    assert game.status == GameStatus.RESIGN
    assert game.winner.email == ALICE


def test_create_unknown_identity(orchestrator):
    with pytest.raises(IdentityNotFound):
        orchestrator.create_session('ghost@example.com')


def test_create_initializes_engine(orchestrator, svc):
    game = orchestrator.create_session(ALICE)
    assert game.board_state == chess.STARTING_FEN
    assert svc.engine.position(game.game_code) == chess.STARTING_FEN


def test_join_missing_game(orchestrator):
    with pytest.raises(SessionNotFound):
        orchestrator.join_session('NOPE00', BOB)


@pytest.mark.parametrize('identity', [ALICE, BOB, CAROL])
def test_join_full_game_always_fails(orchestrator, identity):
    code = _playing_game(orchestrator)
    with pytest.raises(SessionFullOrFinished):
        orchestrator.join_session(code, identity)
    assert len(_durable(code).players) == 2


def test_host_cannot_join_own_game(orchestrator):
    game = orchestrator.create_session(ALICE)
    with pytest.raises(SessionFullOrFinished):
        orchestrator.join_session(game.game_code, ALICE)
    assert _durable(game.game_code).status == GameStatus.PENDING


def test_move_by_outsider_is_unresolved(orchestrator):
    code = _playing_game(orchestrator)
    with pytest.raises(OpponentUnresolved):
        orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, CAROL)


def test_move_in_pending_game_is_unresolved(orchestrator):
    game = orchestrator.create_session(ALICE)
    with pytest.raises(OpponentUnresolved):
        orchestrator.apply_move(game.game_code, {'from': 'e2', 'to': 'e4'}, ALICE)


def test_move_out_of_turn(orchestrator):
    code = _playing_game(orchestrator)
    with pytest.raises(IllegalMove):
        orchestrator.apply_move(code, {'from': 'e7', 'to': 'e5'}, BOB)


def test_move_unknown_game(orchestrator):
    with pytest.raises(SessionNotFound):
        orchestrator.apply_move('NOPE00', {'from': 'e2', 'to': 'e4'}, ALICE)


def test_persist_failure_rolls_back_engine(orchestrator, svc, monkeypatch):
    code = _playing_game(orchestrator)
    before = _durable(code).board_state

    def _fail(game):
        db.session.rollback()
        raise UpstreamUnavailable()

    monkeypatch.setattr(svc.store, 'save', _fail)
    with pytest.raises(UpstreamUnavailable):
        orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
    monkeypatch.undo()

    assert _durable(code).board_state == before
    assert svc.engine.position(code) == before
    # the game continues normally afterwards
    outcome = orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
    assert _durable(code).board_state == outcome.position == svc.engine.position(code)


def test_move_after_restart_rehydrates(orchestrator, svc):
    code = _playing_game(orchestrator)
    orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
    svc.engine.discard(code)

    outcome = orchestrator.apply_move(code, {'from': 'e7', 'to': 'e5'}, BOB)
    assert outcome.legal
    assert _durable(code).board_state == svc.engine.position(code)


def test_checkmate_names_mover_as_winner(orchestrator):
    code = _playing_game(orchestrator)
    orchestrator.apply_move(code, {'from': 'f2', 'to': 'f3'}, ALICE)
    orchestrator.apply_move(code, {'from': 'e7', 'to': 'e5'}, BOB)
    orchestrator.apply_move(code, {'from': 'g2', 'to': 'g4'}, ALICE)
    outcome = orchestrator.apply_move(code, {'from': 'd8', 'to': 'h4'}, BOB)

    assert outcome.terminal
    assert outcome.status == GameStatus.CHECKMATE
    assert outcome.winner == BOB
    durable = _durable(code)
    assert durable.status == GameStatus.CHECKMATE
    assert durable.winner.email == BOB
    assert durable.current_turn is None


def test_stalemate_has_no_winner(orchestrator, svc):
    code = _playing_game(orchestrator)
    game = _durable(code)
    game.board_state = '7k/8/6K1/5Q2/8/8/8/8 w - - 0 1'
    db.session.commit()

    outcome = orchestrator.apply_move(code, {'from': 'f5', 'to': 'f7'}, ALICE)
    assert outcome.status == GameStatus.STALEMATE
    assert outcome.winner is None
    assert _durable(code).winner is None


def test_moves_rejected_after_game_over(orchestrator):
    code = _playing_game(orchestrator)
    orchestrator.resign(code, ALICE)
    with pytest.raises(SessionFullOrFinished):
        orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)


def test_resign_only_once(orchestrator):
    code = _playing_game(orchestrator)
    game = orchestrator.resign(code, ALICE)
    assert game.winner.email == BOB
    with pytest.raises(SessionFullOrFinished):
        orchestrator.resign(code, BOB)
    assert _durable(code).winner.email == BOB


def test_resign_without_opponent(orchestrator):
    game = orchestrator.create_session(ALICE)
    with pytest.raises(OpponentUnresolved):
        orchestrator.resign(game.game_code, ALICE)


def test_status_invariants_hold_through_lifecycle(orchestrator):
    def check(game):
        n = len(game.players)
        assert (game.status == GameStatus.PENDING) == (n == 1)
        assert (game.status == GameStatus.PLAYING) == (n == 2 and game.winner is None)

    game = orchestrator.create_session(ALICE)
    code = game.game_code
    check(_durable(code))
    orchestrator.join_session(code, BOB)
    check(_durable(code))
    orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
    check(_durable(code))
    orchestrator.resign(code, ALICE)
    check(_durable(code))


def test_get_session_with_participants(orchestrator):
    code = _playing_game(orchestrator)
    game = orchestrator.get_session_with_participants(code)
    assert game.to_dict()['participants'] == [ALICE, BOB]
    with pytest.raises(SessionNotFound):
        orchestrator.get_session_with_participants('NOPE00')


def test_version_conflict_rolls_back_engine(orchestrator, svc, monkeypatch):
    code = _playing_game(orchestrator)
    before = _durable(code).board_state
    original_read = svc.store.find_with_participants

    def _read_then_bump(game_code):
        game = original_read(game_code)
        # Another writer lands between our read and our commit.
        db.session.execute(
            sa.text('UPDATE game SET version = version + 1 WHERE game_code = :code'),
            {'code': game_code},
        )
        return game

    monkeypatch.setattr(svc.store, 'find_with_participants', _read_then_bump)
    with pytest.raises(UpstreamUnavailable) as info:
        orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
    monkeypatch.undo()

    assert info.value.retryable
    assert isinstance(info.value.__cause__, StaleSessionError)
    assert svc.engine.position(code) == before
    assert _durable(code).board_state == before
    outcome = orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
    assert _durable(code).board_state == outcome.position == svc.engine.position(code)


class FileDbConfig:
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    BCRYPT_LOG_ROUNDS = 4
    GAME_CODE_LENGTH = 6


def _file_db_app(tmp_path):
    """App on a file SQLite DB so threads get separate connections."""
    from arena import create_app
    from arena.models import User

    class Cfg(FileDbConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'arena.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'timeout': 10}}

    app = create_app(Cfg)
    with app.app_context():
        db.create_all()
        for email, tag in [(ALICE, 'alice'), (BOB, 'bob'), (CAROL, 'carol')]:
            user = User(email=email, gamertag=tag, roles='Host,Player')
            user.set_password('password')
            db.session.add(user)
        db.session.commit()
    return app


def _run_threads(target, args_list):
    threads = [threading.Thread(target=target, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)


def test_concurrent_joins_have_one_winner(tmp_path):
    from arena import get_services
    from arena.models import Player

    app = _file_db_app(tmp_path)
    with app.app_context():
        orchestrator = get_services().orchestrator
        code = orchestrator.create_session(ALICE).game_code

        # Both joiners read the pending game before either commits.
        barrier = threading.Barrier(2)
        original_read = orchestrator.store.find_with_participants

        def _read_then_wait(game_code):
            game = original_read(game_code)
            len(game.players)
            barrier.wait(timeout=10)
            return game

        orchestrator.store.find_with_participants = _read_then_wait

    results = {}

    def _join(identity):
        with app.app_context():
            try:
                orchestrator.join_session(code, identity)
                results[identity] = 'joined'
            except SessionFullOrFinished:
                results[identity] = 'rejected'
            finally:
                db.session.remove()

    _run_threads(_join, [(BOB,), (CAROL,)])

    assert sorted(results.values()) == ['joined', 'rejected']
    with app.app_context():
        game = Game.query.filter_by(game_code=code).first()
        assert game.status == GameStatus.PLAYING
        assert Player.query.filter_by(game_id=game.id).count() == 2
        db.session.remove()
        db.drop_all()


def test_concurrent_moves_apply_once(tmp_path):
    from arena import get_services

    app = _file_db_app(tmp_path)
    with app.app_context():
        orchestrator = get_services().orchestrator
        engine = get_services().engine
        code = _playing_game(orchestrator)

    attempts = 4
    barrier = threading.Barrier(attempts)
    results = []
    results_lock = threading.Lock()

    def _move(_):
        with app.app_context():
            barrier.wait(timeout=10)
            try:
                orchestrator.apply_move(code, {'from': 'e2', 'to': 'e4'}, ALICE)
                outcome = 'ok'
            except IllegalMove:
                outcome = 'illegal'
            finally:
                db.session.remove()
            with results_lock:
                results.append(outcome)

    _run_threads(_move, [(i,) for i in range(attempts)])

    assert sorted(results) == ['illegal'] * (attempts - 1) + ['ok']
    with app.app_context():
        game = Game.query.filter_by(game_code=code).first()
        assert game.current_turn.email == BOB
        assert game.board_state == engine.position(code)
        assert chess.Board(game.board_state).piece_at(chess.E4) == chess.Piece(chess.PAWN, chess.WHITE)
        db.session.remove()
        db.drop_all()
