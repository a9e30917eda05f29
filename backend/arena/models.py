from arena import db, bcrypt
from flask_login import UserMixin
import string
import random


class GameStatus:
    PENDING = 'pending'
    PLAYING = 'playing'
    CHECKMATE = 'checkmate'
    STALEMATE = 'stalemate'
    DRAW = 'draw'
    RESIGN = 'resign'

    TERMINAL = frozenset({CHECKMATE, STALEMATE, DRAW, RESIGN})


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    gamertag = db.Column(db.String(64), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    roles = db.Column(db.String(256), nullable=False, default='Host,Player')

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    @property
    def role_set(self):
        return frozenset(r.strip() for r in (self.roles or '').split(',') if r.strip())

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'gamertag': self.gamertag,
            'roles': sorted(self.role_set),
        }


class Player(db.Model):
    """A user seated in a game. Seat 0 hosts and plays white."""
    __tablename__ = 'player'
    __table_args__ = (
        db.UniqueConstraint('game_id', 'seat', name='uq_player_game_seat'),
        db.UniqueConstraint('game_id', 'user_id', name='uq_player_game_user'),
    )
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    seat = db.Column(db.Integer, nullable=False)
    game = db.relationship('Game', back_populates='players')
    user = db.relationship('User')

    @property
    def color(self):
        return 'white' if self.seat == 0 else 'black'


def generate_game_code(length=6, exists=None):
    """Generate a short game code, retrying while `exists(code)` reports a collision."""
    while True:
        code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))
        if exists is None or not exists(code):
            return code


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.Integer, primary_key=True)
    game_code = db.Column(db.String(16), unique=True, index=True, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=GameStatus.PENDING)
    board_state = db.Column(db.Text, nullable=False)
    current_turn_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    winner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    version = db.Column(db.Integer, nullable=False)
    players = db.relationship('Player', back_populates='game', order_by='Player.seat')
    current_turn = db.relationship('User', foreign_keys=[current_turn_id])
    winner = db.relationship('User', foreign_keys=[winner_id])

    # Every UPDATE checks and bumps `version`; a concurrent writer loses.
    __mapper_args__ = {'version_id_col': version}

    @property
    def participants(self):
        return [p.user for p in self.players]

    @property
    def is_terminal(self):
        return self.status in GameStatus.TERMINAL

    def seat_of(self, identity):
        for p in self.players:
            if p.user.email == identity:
                return p
        return None

    def to_dict(self):
        return {
            'id': self.game_code,
            'status': self.status,
            'board_state': self.board_state,
            'participants': [u.email for u in self.participants],
            'colors': {p.user.email: p.color for p in self.players},
            'current_turn': self.current_turn.email if self.current_turn else None,
            'winner': self.winner.email if self.winner else None,
        }
