from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from arena import db, get_services
from arena.models import User

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the arena game server!'})

@main.route('/users/add', methods=['POST'])
def add_user():
    data = request.get_json(silent=True) or {}
    if not all(data.get(k) for k in ('email', 'gamertag', 'password')):
        return jsonify({'error': 'Missing email, gamertag or password'}), 400

    if User.query.filter((User.email == data['email']) | (User.gamertag == data['gamertag'])).first():
        return jsonify({'error': 'User already exists'}), 409

    user = User(email=data['email'], gamertag=data['gamertag'])
    roles = data.get('roles')
    if roles:
        if isinstance(roles, str):
            roles = roles.split(',')
        user.roles = ','.join(r.strip() for r in roles if r.strip())
    user.set_password(data['password'])
    db.session.add(user)
    db.session.commit()

    return jsonify(user.to_dict()), 201

@main.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    user = User.query.filter_by(email=data.get('email')).first()
    if user and user.check_password(data.get('password') or ''):
        login_user(user, remember=True)
        return jsonify({'message': 'Logged in successfully.'})
    return jsonify({'error': 'Invalid email or password'}), 401

@main.route('/logout')
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out successfully.'})

@main.route('/token', methods=['POST'])
@login_required
def issue_token():
    """Short-lived credential for the socket handshake (`auth={'token': ...}`)."""
    return jsonify({'token': get_services().verifier.issue(current_user.email)})
