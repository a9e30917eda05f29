import threading
from dataclasses import dataclass
from typing import Dict, Optional

import chess

from arena.errors import IllegalMove, SessionNotFound
from arena.models import GameStatus


@dataclass(frozen=True)
class MoveResult:
    legal: bool
    from_square: str
    to_square: str
    san: str
    position: str
    status: str
    game_over: bool


def classify_status(checkmate: bool, stalemate: bool, draw: bool) -> str:
    """Collapse possibly overlapping oracle predicates into one status.

    Precedence is fixed: checkmate, then stalemate, then any other draw.
    """
    if checkmate:
        return GameStatus.CHECKMATE
    if stalemate:
        return GameStatus.STALEMATE
    if draw:
        return GameStatus.DRAW
    return GameStatus.PLAYING


def _board_status(board: chess.Board) -> str:
    return classify_status(
        board.is_checkmate(),
        board.is_stalemate(),
        board.is_insufficient_material() or board.is_fifty_moves() or board.is_repetition(3),
    )


def _parse_move(board: chess.Board, move_request) -> chess.Move:
    try:
        from_sq = chess.parse_square(str(move_request['from']).lower())
        to_sq = chess.parse_square(str(move_request['to']).lower())
    except (KeyError, TypeError, ValueError):
        raise IllegalMove('Move must name valid from/to squares') from None

    promotion = move_request.get('promotion') if hasattr(move_request, 'get') else None
    if promotion:
        try:
            promotion = chess.Piece.from_symbol(str(promotion).lower()).piece_type
        except ValueError:
            raise IllegalMove(f'Unknown promotion piece {promotion!r}') from None
    else:
        piece = board.piece_at(from_sq)
        # Auto-queen when the client omits the promotion piece
        if piece and piece.piece_type == chess.PAWN and chess.square_rank(to_sq) in (0, 7):
            promotion = chess.QUEEN
    return chess.Move(from_sq, to_sq, promotion=promotion or None)


class RuleEngineAdapter:
    """Ephemeral legality oracle: one python-chess board per game code.

    Boards are not persisted. The durable record is authoritative and the
    orchestrator calls `reconcile` before trusting a board, which rebuilds it
    from the stored FEN after a restart or when the two disagree. Calls for
    one code are expected to be serialized by the caller.
    """

    def __init__(self):
        self._boards: Dict[str, chess.Board] = {}
        self._guard = threading.Lock()

    def _get(self, game_code: str) -> Optional[chess.Board]:
        with self._guard:
            return self._boards.get(game_code)

    def _put(self, game_code: str, board: chess.Board) -> None:
        with self._guard:
            self._boards[game_code] = board

    def initialize(self, game_code: str) -> str:
        board = chess.Board()
        self._put(game_code, board)
        return board.fen()

    def has(self, game_code: str) -> bool:
        return self._get(game_code) is not None

    def position(self, game_code: str) -> Optional[str]:
        board = self._get(game_code)
        return board.fen() if board is not None else None

    def reconcile(self, game_code: str, durable_position: str) -> bool:
        """Make the live board match `durable_position`; True if it was rebuilt."""
        board = self._get(game_code)
        if board is not None and board.fen() == durable_position:
            return False
        self._put(game_code, chess.Board(durable_position))
        return True

    def attempt_move(self, game_code: str, move_request) -> MoveResult:
        board = self._get(game_code)
        if board is None:
            raise SessionNotFound(game_code)

        move = _parse_move(board, move_request)
        if not board.is_legal(move):
            # Nothing was pushed, so the board is already in its prior state.
            raise IllegalMove(f'Illegal move {chess.square_name(move.from_square)}-{chess.square_name(move.to_square)}')

        san = board.san(move)
        board.push(move)
        status = _board_status(board)
        return MoveResult(
            legal=True,
            from_square=chess.square_name(move.from_square),
            to_square=chess.square_name(move.to_square),
            san=san,
            position=board.fen(),
            status=status,
            game_over=status != GameStatus.PLAYING,
        )

    def rollback_last_move(self, game_code: str) -> bool:
        board = self._get(game_code)
        if board is None or not board.move_stack:
            return False
        board.pop()
        return True

    def discard(self, game_code: str) -> None:
        with self._guard:
            self._boards.pop(game_code, None)
