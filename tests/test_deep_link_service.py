from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import jwt
import pytest

from fleak.errors import Unauthorized, InvalidOperation
from fleak.services import deep_link_service


def test_signed_token_verifies(app):
    token = deep_link_service.sign("flake-1")

    payload = deep_link_service.verify("flake-1", token)
    assert payload["flakeId"] == "flake-1"


def test_deep_link_carries_flake_and_signature(app):
    link = deep_link_service.build_deep_link("flake-1")

    assert link.startswith("fleak://set-alarm?")
    query = parse_qs(urlparse(link).query)
    assert query["flakeId"] == ["flake-1"]
    deep_link_service.verify("flake-1", query["signature"][0])
    assert deep_link_service.token_from_link(link) == query["signature"][0]


def test_each_link_gets_a_fresh_token(app):
    first = deep_link_service.token_from_link(deep_link_service.build_deep_link("flake-1"))
    second = deep_link_service.token_from_link(deep_link_service.build_deep_link("flake-1"))

    assert first != second
    assert deep_link_service.token_from_link(None) is None
    assert deep_link_service.token_from_link("fleak://set-alarm?flakeId=flake-1") is None


def test_token_for_other_flake_rejected(app):
    token = deep_link_service.sign("flake-1")

    with pytest.raises(Unauthorized, match="Invalid signature payload"):
        deep_link_service.verify("flake-2", token)


def test_expired_token_rejected(app):
    issued = datetime.now(timezone.utc) - timedelta(hours=3)
    token = deep_link_service.sign("flake-1", now=issued)

    with pytest.raises(Unauthorized, match="Signature expired"):
        deep_link_service.verify("flake-1", token)


def test_tampered_token_rejected(app):
    forged = jwt.encode(
        {"flakeId": "flake-1", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        "some-other-secret-that-is-long-enough",
        algorithm="HS256",
    )

    with pytest.raises(Unauthorized, match="Invalid signature"):
        deep_link_service.verify("flake-1", forged)


def test_missing_token_rejected(app):
    with pytest.raises(Unauthorized, match="Missing signature"):
        deep_link_service.verify("flake-1", "")


def test_token_without_flake_claim_rejected(app):
    token = jwt.encode(
        {"exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        app.config["DEEP_LINK_SECRET"],
        algorithm="HS256",
    )

    with pytest.raises(Unauthorized):
        deep_link_service.verify("flake-1", token)


def test_signing_requires_a_secret(app):
    app.config["DEEP_LINK_SECRET"] = None
    app.config["SECRET_KEY"] = None

    with pytest.raises(InvalidOperation):
        deep_link_service.sign("flake-1")
