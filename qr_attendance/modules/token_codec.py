"""
Token Codec Module - QR Attendance Verification Engine

Builds and verifies the compact token embedded in an attendance QR code.
A token carries the session id, the expiry timestamp (epoch seconds) and an
HMAC-SHA256 digest of both keyed with a server-held secret. Minting is
deterministic, so a token never has to be stored to be verified later.

Wire format (compact JSON, keys sorted):
    {"exp": 1760000000, "sid": "sess_...", "sig": "<hex digest>", "type": "attendance"}
"""

import hashlib
import hmac
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

TOKEN_TYPE = 'attendance'
DIGEST_PATTERN = re.compile(r'[0-9a-f]{64}')

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    """Claims recovered from a verified token."""
    session_id: str
    expires_at: int


@dataclass(frozen=True)
class AttendanceToken:
    """A minted token together with the moment it was issued."""
    value: str
    session_id: str
    issued_at: datetime
    expires_at: int
    digest: str


def _digest(session_id: str, expires_at: int, secret: str) -> str:
    message = f"{session_id}|{expires_at}".encode('utf-8')
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


def mint(session_id: str, expires_at: int, secret: str) -> str:
    """
    Mint the token string for a session and expiry.

    Args:
        session_id (str): Attendance session id
        expires_at (int): Expiry as epoch seconds
        secret (str): Shared signing secret

    Returns:
        str: Token string suitable for embedding in a QR code
    """
    if not session_id:
        raise ValueError("session_id is required")
    if not secret:
        raise ValueError("secret is required")

    payload = {
        'type': TOKEN_TYPE,
        'sid': session_id,
        'exp': int(expires_at),
        'sig': _digest(session_id, int(expires_at), secret)
    }
    return json.dumps(payload, separators=(',', ':'), sort_keys=True)


def verify(token: str, secret: str) -> Optional[TokenClaims]:
    """
    Verify a token and recover its claims.

    Expiry is not checked here; the scan verifier reports it separately.

    Returns:
        TokenClaims if the digest matches, None for anything malformed or tampered
    """
    if not token or not isinstance(token, str) or not secret:
        return None

    try:
        payload = json.loads(token)
    except (ValueError, TypeError, RecursionError):
        return None

    if not isinstance(payload, dict) or payload.get('type') != TOKEN_TYPE:
        return None

    session_id = payload.get('sid')
    expires_at = payload.get('exp')
    signature = payload.get('sig')

    if not isinstance(session_id, str) or not session_id:
        return None
    # bool is an int subclass
    if not isinstance(expires_at, int) or isinstance(expires_at, bool):
        return None
    if not isinstance(signature, str) or not DIGEST_PATTERN.fullmatch(signature):
        return None

    expected = _digest(session_id, expires_at, secret)
    if not hmac.compare_digest(signature, expected):
        return None

    return TokenClaims(session_id=session_id, expires_at=expires_at)


class TokenCodec:
    """
    Secret-bound wrapper around mint/verify used by the session manager and
    the scan verifier.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("A token secret is required")
        self._secret = secret

    def issue(self, session_id: str, expires_at: datetime, issued_at: datetime) -> AttendanceToken:
        exp = int(expires_at.timestamp())
        value = mint(session_id, exp, self._secret)
        return AttendanceToken(
            value=value,
            session_id=session_id,
            issued_at=issued_at,
            expires_at=exp,
            digest=json.loads(value)['sig']
        )

    def mint(self, session_id: str, expires_at: int) -> str:
        return mint(session_id, expires_at, self._secret)

    def verify(self, token: str) -> Optional[TokenClaims]:
        claims = verify(token, self._secret)
        if claims is None:
            logger.debug("Token verification failed")
        return claims
