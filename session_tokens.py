"""
Copyright (c) 2025 Amit Kadam

All Rights Reserved. No part of this software may be copied, reproduced, distributed, or used in derivative works without the prior written permission of the copyright holder.

For permission requests, contact: amitkadam96k@gmail.com
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"
SESSION_TTL_SECONDS = 60 * 60 * 24 * 30  # 30 days
SEPARATOR = "."


class MissingSecretError(RuntimeError):
    """Raised when no signing secret is configured."""


def _require_secret(secret):
    if not secret:
        raise MissingSecretError("AUTH_SECRET is not set")
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return secret


def _b64url_encode(raw):
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value):
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


def _sign(segment, key):
    digest = hmac.new(key, segment.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def issue_session_token(subject, secret, now=None):
    """Return a signed token for an already authenticated subject.

    The token is ``base64url(payload).base64url(hmac_sha256(payload))`` with
    the payload being ``{"exp": ..., "sub": ...}`` as compact JSON.
    """
    key = _require_secret(secret)
    if now is None:
        now = time.time()
    payload = {"sub": subject, "exp": int(now) + SESSION_TTL_SECONDS}
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    segment = _b64url_encode(raw)
    return f"{segment}{SEPARATOR}{_sign(segment, key)}"


def verify_session_token(token, secret, now=None):
    """Return the token's subject, or None when it is absent, forged or expired.

    Only a missing secret raises; every malformed input is reported as None.
    """
    key = _require_secret(secret)
    if not token:
        return None

    parts = token.split(SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        logger.debug("session token rejected: malformed")
        return None
    segment, signature = parts

    try:
        expected = _sign(segment, key).encode("ascii")
        provided = signature.encode("utf-8")
    except UnicodeEncodeError:
        logger.debug("session token rejected: undecodable")
        return None

    if not hmac.compare_digest(expected, provided):
        logger.debug("session token rejected: bad signature")
        return None

    try:
        payload = json.loads(_b64url_decode(segment).decode("utf-8"))
    except (binascii.Error, ValueError):
        logger.debug("session token rejected: unreadable payload")
        return None

    if not isinstance(payload, dict):
        return None
    subject = payload.get("sub")
    expires_at = payload.get("exp")
    if not isinstance(subject, str) or not subject:
        return None
    # bool is an int subclass
    if not isinstance(expires_at, int) or isinstance(expires_at, bool):
        return None

    if now is None:
        now = time.time()
    if expires_at <= now:
        logger.debug("session token rejected: expired")
        return None
    return subject
