from datetime import datetime, timedelta, timezone
from typing import Sequence

import jwt
from jwt import InvalidTokenError

DEFAULT_TOKEN_TTL = timedelta(minutes=30)


def create_access_token(
    *,
    user_id: int,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "iat": issued_at,
        "exp": issued_at + (expires_delta or DEFAULT_TOKEN_TTL),
    }
    return jwt.encode(claims, secret, algorithm=algorithm)


def parse_bearer(authorization: str | None) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        raise ValueError("missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise ValueError("authorization scheme must be Bearer")
    return token.strip()


def decode_access_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
    leeway: timedelta = timedelta(0),
) -> int:
    """Return the user id carried in ``sub``. Raises ValueError for any unusable token."""
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=list(algorithms),
            leeway=leeway,
            options={"require": ["exp", "sub"]},
        )
    except InvalidTokenError as exc:  # expired, tampered or missing claims
        raise ValueError("invalid token") from exc
    try:
        return int(claims["sub"])
    except (TypeError, ValueError) as exc:
        raise ValueError("token sub is not an integer") from exc
