import os
import sys
import pytest

# Ensure the backend root (containing the `arena` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from arena import create_app, db, socketio, get_services


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    TOKEN_MAX_AGE_SEC = 3600
    UPSTREAM_RETRIES = 2
    UPSTREAM_RETRY_BACKOFF_SEC = 0
    GAME_CODE_LENGTH = 6
    SOCKETIO_NAMESPACE = '/ws'
    LOG_LEVEL = 'DEBUG'


SEED_USERS = [
    ('alice@example.com', 'alice', 'Host,Player'),
    ('bob@example.com', 'bob', 'Player'),
    ('carol@example.com', 'carol', 'Host,Player'),
    ('mallory@example.com', 'mallory', ''),
]


def seed_users():
    from arena.models import User
    for email, gamertag, roles in SEED_USERS:
        user = User(email=email, gamertag=gamertag, roles=roles)
        user.set_password('password')
        db.session.add(user)
    db.session.commit()


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import arena.models  # noqa: F401
        db.create_all()
        seed_users()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def svc(flask_app):
    return get_services()


@pytest.fixture()
def orchestrator(svc):
    return svc.orchestrator


@pytest.fixture()
def token_for(svc):
    return svc.verifier.issue


@pytest.fixture()
def connect(flask_app, token_for):
    """Open Socket.IO test clients authenticated as the given identity."""
    opened = []

    def _connect(identity, token=None):
        test_client = socketio.test_client(
            flask_app,
            flask_test_client=flask_app.test_client(),
            namespace='/ws',
            auth={'token': token if token is not None else token_for(identity)},
        )
        opened.append(test_client)
        if test_client.is_connected('/ws'):
            test_client.get_received('/ws')  # flush 'connected'
        return test_client

    yield _connect
    for test_client in opened:
        try:
            if test_client.is_connected('/ws'):
                test_client.disconnect(namespace='/ws')
        except Exception:
            pass

