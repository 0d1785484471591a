"""
Identity & Authorization
========================
Bearer token verification shared by HTTP requests and the WebSocket
handshake, plus the single role check used by the order core.

Tokens are HS256 JWTs carrying userId, email and role claims.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

import jwt

from config import AuthConfig
from errors import AuthenticationError, ErrorCode, ForbiddenError


logger = logging.getLogger(__name__)


BEARER_PREFIX = "Bearer "
_BASE64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


# ============================================================================
# ROLES
# ============================================================================

class Role(Enum):
    """Closed set of caller roles."""
    CUSTOMER = "customer"
    ADMIN = "admin"

    @property
    def is_elevated(self) -> bool:
        return self in ELEVATED_ROLES

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """
        Parse a role claim.

        Raises:
            ValueError: If the value is not a known role
        """
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}")


ELEVATED_ROLES = frozenset({Role.ADMIN})
CUSTOMER_ONLY = frozenset({Role.CUSTOMER})
ANY_ROLE = frozenset(Role)


@dataclass(frozen=True)
class Identity:
    """Verified caller identity."""
    user_id: str
    role: Role
    email: Optional[str] = None


def authorize(
    role: Role,
    required_roles: Iterable[Role],
    actor: Optional[str] = None,
    action: Optional[str] = None
) -> None:
    """
    Single capability check used by the lifecycle service and query layer.

    Raises:
        ForbiddenError: If role is not among required_roles
    """
    required = frozenset(required_roles)
    if role in required:
        return

    required_names = sorted(r.value for r in required)
    logger.warning(
        f"Permission denied for {action or 'operation'}",
        extra={
            "actor": actor,
            "action": action,
            "required_roles": required_names,
            "actual_role": role.value if isinstance(role, Role) else role,
        }
    )
    raise ForbiddenError(
        actor=actor,
        required_roles=required_names,
        actual_role=role.value if isinstance(role, Role) else str(role),
    )


# ============================================================================
# TOKEN EXTRACTION
# ============================================================================

def strip_bearer(value: Optional[str]) -> Optional[str]:
    """Return the token from an Authorization header value, or None."""
    if not value:
        return None
    value = value.strip()
    if value.startswith(BEARER_PREFIX):
        token = value[len(BEARER_PREFIX):].strip()
        return token or None
    return None


def resolve_handshake_token(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    auth_payload: Optional[Mapping[str, Any]] = None
) -> Optional[str]:
    """
    Resolve a connection's bearer token.

    Order, first hit wins:
        1. Authorization: Bearer <token> header
        2. ?token=<token> query parameter
        3. {"type": "auth", "token": "<token>"} first-frame payload

    Returns:
        Token string or None when no location carries one
    """
    token = strip_bearer(headers.get("authorization"))
    if token:
        return token

    token = (query_params.get("token") or "").strip()
    if token:
        return token

    if auth_payload and auth_payload.get("type") == "auth":
        token = auth_payload.get("token")
        if isinstance(token, str) and token.strip():
            return strip_bearer(token) or token.strip()

    return None


def validate_token_format(token: Optional[str]) -> str:
    """
    Check a raw token looks like a JWT before verifying it.

    Raises:
        AuthenticationError: NO_TOKEN or INVALID_TOKEN_FORMAT
    """
    if not token or not isinstance(token, str):
        raise AuthenticationError(code=ErrorCode.NO_TOKEN)

    clean = token[len(BEARER_PREFIX):] if token.startswith(BEARER_PREFIX) else token
    clean = clean.strip()

    parts = clean.split(".")
    if len(parts) != 3 or not all(_BASE64URL_SEGMENT.match(p) for p in parts):
        raise AuthenticationError(
            message="Access denied. Invalid token format.",
            code=ErrorCode.INVALID_TOKEN_FORMAT
        )

    return clean


# ============================================================================
# IDENTITY RESOLVER
# ============================================================================

class IdentityResolver:
    """
    Turns a bearer credential into a verified Identity.

    Used by the HTTP dependency and the WebSocket handshake so both
    entry points share one verification path.
    """

    def __init__(self, config: AuthConfig):
        self.secret = config.jwt_secret
        self.issuer = config.jwt_issuer
        self.algorithm = config.jwt_algorithm
        self.expires_in = config.jwt_expires_in

    def issue_token(
        self,
        user_id: str,
        role: Role,
        email: Optional[str] = None,
        expires_in: Optional[int] = None
    ) -> str:
        """Sign a token for user_id; used by the health self-test and tooling."""
        now = datetime.now(timezone.utc)
        payload = {
            "userId": user_id,
            "email": email,
            "role": Role.parse(role).value,
            "iss": self.issuer,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in or self.expires_in),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> Identity:
        """
        Verify signature, expiry and issuer, then build the Identity.

        Raises:
            AuthenticationError: On any verification failure
        """
        clean = validate_token_format(token)

        try:
            claims = jwt.decode(
                clean,
                self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired token")
            raise AuthenticationError(code=ErrorCode.TOKEN_EXPIRED)
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected invalid token: {str(e)}")
            raise AuthenticationError(code=ErrorCode.INVALID_TOKEN)

        user_id = claims.get("userId") or claims.get("id")
        if not user_id:
            raise AuthenticationError(
                message="Access denied. Token payload missing user id.",
                code=ErrorCode.INVALID_TOKEN
            )

        try:
            role = Role.parse(claims.get("role"))
        except ValueError:
            raise AuthenticationError(
                message="Access denied. Token carries an unknown role.",
                code=ErrorCode.INVALID_TOKEN
            )

        return Identity(user_id=str(user_id), role=role, email=claims.get("email"))

    async def resolve(self, token: Optional[str]) -> Identity:
        """Async entry point; a user lookup would await here."""
        return self.verify(token)

    def self_test(self) -> Dict[str, Any]:
        """Issue and verify a throwaway token."""
        try:
            token = self.issue_token("health-check", Role.ADMIN, "health@example.com")
            identity = self.verify(token)
            if identity.user_id != "health-check":
                raise AuthenticationError(message="Decoded identity mismatch")
            return {"status": "healthy", "message": "JWT system is working correctly"}
        except Exception as e:
            logger.error(f"JWT self-test failed: {str(e)}")
            return {"status": "unhealthy", "message": "JWT system validation failed"}
