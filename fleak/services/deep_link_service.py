# fleak/services/deep_link_service.py
import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, quote, urlparse

import jwt
from flask import current_app

from fleak.errors import Unauthorized, InvalidOperation

ALGORITHM = "HS256"


def _secret():
    secret = current_app.config.get("DEEP_LINK_SECRET") or current_app.config.get("SECRET_KEY")
    if not secret:
        raise InvalidOperation("Deep link signing is not configured")
    return secret


def sign(flake_id, now=None):
    """Issue a short-lived token binding a Flake id to automatic verification."""
    now = now or datetime.now(timezone.utc)
    ttl = current_app.config.get("DEEP_LINK_TTL_SECONDS", 7200)
    payload = {
        "flakeId": flake_id,
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
        # unique per issue so a refreshed link never reproduces an older token
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, _secret(), algorithm=ALGORITHM)


def build_deep_link(flake_id):
    token = sign(flake_id)
    scheme = current_app.config.get("DEEP_LINK_SCHEME", "fleak://set-alarm")
    return f"{scheme}?flakeId={quote(flake_id, safe='')}&signature={quote(token, safe='')}"


def token_from_link(link):
    if not link:
        return None
    values = parse_qs(urlparse(link).query).get("signature")
    return values[0] if values else None


def verify(flake_id, token):
    if not token:
        raise Unauthorized("Missing signature")
    try:
        payload = jwt.decode(
            token,
            _secret(),
            algorithms=[ALGORITHM],
            options={"require": ["exp", "flakeId"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise Unauthorized("Signature expired") from e
    except jwt.InvalidTokenError as e:
        raise Unauthorized("Invalid signature") from e

    if payload.get("flakeId") != flake_id:
        current_app.logger.warning(f"Deep link signature bound to another flake (expected {flake_id})")
        raise Unauthorized("Invalid signature payload")
    return payload
