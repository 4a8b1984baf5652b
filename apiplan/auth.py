# apiplan/auth.py
"""
Authorization header values.

    Get().auth_header(AuthScheme.BEARER, JWT(Var("secret"), SubjectClaim("u1"), ExpireAfterClaim(300)))
    Get().auth_header(AuthScheme.BASIC, AuthUsernamePassword("admin", Var("pw")))

Every value here is a Resolvable, so secrets and claims may themselves be
variables or any other resolvable.
"""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Union

import jwt

from .errors import DeclarationError, ResolutionError
from .resolvables import Resolvable, resolve_value

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)


class AuthScheme(str, Enum):
    BEARER = "Bearer"
    BASIC = "Basic"
    TOKEN = "Token"


def _text(v: Any) -> str:
    if isinstance(v, bytes):
        return v.decode("utf-8")
    return v if isinstance(v, str) else str(v)


class Auth(Resolvable):
    """``<scheme> <value>``, or just the value when the scheme is empty"""

    def __init__(self, scheme: Union[AuthScheme, str], value: Any):
        self.scheme = scheme.value if isinstance(scheme, AuthScheme) else scheme
        self.value = value

    def resolve(self, ctx: "Context") -> str:
        sv = _text(resolve_value(self.value, ctx))
        return f"{self.scheme} {sv}" if self.scheme else sv

    def __str__(self) -> str:
        return f"Auth({self.scheme!r}, {self.value})"


class AuthUsernamePassword(Resolvable):
    """Base64 of ``username:password`` for Basic auth"""

    def __init__(self, username: Any, password: Any):
        self.username = username
        self.password = password

    def resolve(self, ctx: "Context") -> str:
        u = _text(resolve_value(self.username, ctx))
        p = _text(resolve_value(self.password, ctx))
        return base64.b64encode(f"{u}:{p}".encode("utf-8")).decode("ascii")

    def __str__(self) -> str:
        return f"AuthUsernamePassword({self.username}, ****)"


# ==================== JWT ====================

@dataclass(frozen=True)
class Claim:
    name: str
    value: Any


def SubjectClaim(value: Any) -> Claim:
    return Claim("sub", value)


def IssuerClaim(value: Any) -> Claim:
    return Claim("iss", value)


def AudienceClaim(value: Any) -> Claim:
    return Claim("aud", value)


def ExpireAtClaim(expiry: Union[datetime, int, float]) -> Claim:
    if isinstance(expiry, datetime):
        expiry = expiry.timestamp()
    return Claim("exp", int(expiry))


class _ExpireAfter(Resolvable):
    def __init__(self, seconds: float):
        self.seconds = seconds

    def resolve(self, ctx: "Context") -> int:
        return int(time.time() + self.seconds)

    def __str__(self) -> str:
        return f"now+{self.seconds}s"


def ExpireAfterClaim(seconds: float) -> Claim:
    """``exp`` computed when the token is signed, not when declared"""
    return Claim("exp", _ExpireAfter(seconds))


class JWT(Resolvable):
    """An HMAC-signed token built from ``claims`` at resolve time"""

    algorithms = ("HS256", "HS384", "HS512")

    def __init__(self, secret: Any, *claims: Claim, algorithm: str = "HS256"):
        if algorithm not in self.algorithms:
            raise DeclarationError(f"unsupported JWT algorithm {algorithm!r}")
        self.secret = secret
        self.claims = claims
        self.algorithm = algorithm

    def resolve(self, ctx: "Context") -> str:
        secret = resolve_value(self.secret, ctx)
        if not isinstance(secret, (bytes, str)):
            secret = str(secret)
        payload: Dict[str, Any] = {}
        for claim in self.claims:
            if claim is not None:
                payload[claim.name] = resolve_value(claim.value, ctx)
        try:
            token = jwt.encode(payload, secret, algorithm=self.algorithm)
        except (jwt.PyJWTError, TypeError) as e:
            raise ResolutionError(f"signing JWT failed: {e}", cause=e) from e
        logger.debug(f"🔑 signed {self.algorithm} token with claims {sorted(payload)}")
        return token

    def __str__(self) -> str:
        return f"JWT({self.algorithm}, {[c.name for c in self.claims if c is not None]})"


def JwtHS384(secret: Any, *claims: Claim) -> JWT:
    return JWT(secret, *claims, algorithm="HS384")


def JwtHS512(secret: Any, *claims: Claim) -> JWT:
    return JWT(secret, *claims, algorithm="HS512")
