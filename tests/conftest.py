"""Shared fixtures: an app on in-memory SQLite with every gateway unconfigured."""

from datetime import datetime, timedelta, timezone

import pytest
from flask_jwt_extended import create_access_token
from sqlalchemy.pool import StaticPool

from fleak import create_app
from fleak.config import Config
from fleak.extension.extensions import db
from fleak.services.flake_service import ParticipantInput, create_flake

WALLET_A = "0x" + "a1" * 20
WALLET_B = "0x" + "b2" * 20
CONTRACT = "0x" + "c3" * 20


def tx(n):
    return "0x" + format(n, "064x")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {"check_same_thread": False},
        "poolclass": StaticPool,
    }
    SOCKETIO_ASYNC_MODE = "threading"
    SECRET_KEY = "test-secret"
    JWT_SECRET_KEY = "test-jwt-secret-with-enough-length-32b"
    DEEP_LINK_SECRET = "test-deep-link-secret-32-bytes-long"
    CONTRACT_ADDRESS = CONTRACT
    CONTRACT_CHAIN_ID = 84532
    PINATA_JWT = "pinata-test-jwt"
    GEMINI_API_KEY = "gemini-test-key"
    ORACLE_PRIVATE_KEY = None
    AI_APPROVAL_THRESHOLD = 60


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_header(app):
    def make(identity, **claims):
        token = create_access_token(identity=identity, additional_claims=claims or None)
        return {"Authorization": f"Bearer {token}"}
    return make


@pytest.fixture
def deadline():
    return datetime.now(timezone.utc) + timedelta(days=1)


@pytest.fixture
def make_flake(app, deadline):
    def make(verification_type="social", participants=("u1", "u2"), stake="0.01", creator="u1", **kwargs):
        entries = [
            ParticipantInput(pid, stake, WALLET_A if i == 0 else WALLET_B)
            for i, pid in enumerate(participants)
        ]
        return create_flake(
            creator_id=creator,
            title=kwargs.pop("title", "Run 5k every morning"),
            stake_amount=stake,
            verification_type=verification_type,
            deadline=kwargs.pop("deadline", deadline),
            participants=entries,
            **kwargs,
        )
    return make
