"""Credential codec — JWT session tokens and HTTP Basic credentials.

Learn: Session tokens are HMAC JWTs (HS256 unless WARDEN_JWT_ALGORITHM
says otherwise) carrying only the user id:
{sub, iat, nbf, exp}, all numeric timestamps. Verification failures are
deliberately coarse — a bad signature, a malformed token and an expired
one all raise the same TokenError, so a caller can't tell which check
failed.

Basic credentials are compared with hmac.compare_digest so the check
takes the same time however many leading characters match.
"""

import base64
import binascii
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

ALGORITHM = "HS256"
HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")
_REQUIRED_CLAIMS = ["sub", "iat", "nbf", "exp"]


class TokenError(Exception):
    """Raised when a credential is missing, malformed, or fails verification."""


class EmptySubjectError(TokenError):
    """Raised when asked to issue a token with no subject."""


class WrongCredentialsError(Exception):
    """Raised when well-formed Basic credentials don't match."""


def issue_token(
    subject: str,
    secret: bytes,
    ttl_minutes: int,
    *,
    now: Optional[datetime] = None,
    algorithm: str = ALGORITHM,
) -> str:
    """Create a signed session token for `subject` (a user id)."""
    if not subject:
        raise EmptySubjectError("Token subject must not be empty")
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": int(issued.timestamp()),
        "nbf": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def verify_token(token: str, secret: bytes, algorithm: str = ALGORITHM) -> str:
    """Verify a session token and return its subject.

    Only `algorithm` is accepted, whatever the token header claims.
    Raises TokenError on any failure.
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={"require": _REQUIRED_CLAIMS},
        )
    except jwt.InvalidTokenError as e:
        # ExpiredSignatureError and ImmatureSignatureError are subclasses
        raise TokenError("Token is invalid or expired") from e
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise TokenError("Token is invalid or expired")
    return subject


def decode_basic(header_value: str, expected_user: str, expected_pass: str) -> bool:
    """Check an `Authorization: Basic <base64(user:pass)>` header value.

    Returns True on a match. Raises TokenError for a malformed header and
    WrongCredentialsError for a well-formed header with the wrong
    username or password.
    """
    parts = header_value.split()
    if len(parts) != 2 or parts[0] != "Basic":
        raise TokenError("Expected 'Basic <credentials>'")
    try:
        decoded = base64.b64decode(parts[1], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise TokenError("Basic credentials are not valid base64") from e

    user, sep, password = decoded.partition(":")
    if not sep:
        raise TokenError("Basic credentials must be 'user:password'")

    user_ok = hmac.compare_digest(user.encode(), expected_user.encode())
    pass_ok = hmac.compare_digest(password.encode(), expected_pass.encode())
    if not (user_ok and pass_ok):
        raise WrongCredentialsError()
    return True
