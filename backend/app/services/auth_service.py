"""
Keystone Backend — Identity Token Verification
==============================================

What:  Verifies bearer tokens issued by the identity provider and maps their
       claims onto the profile we mirror locally.
How:   python-jose `jwt.decode` with the configured key, algorithm, issuer and
       audience. Issuer/audience checks are only enforced when configured.

Claims used:
    sub             → users.external_id
    email           → users.email (lower-cased)
    name            → users.name
    email_verified  → users.email_verified
    picture         → users.profile_image
"""

import logging
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from pydantic import ValidationError as PydanticValidationError

from app.config import Settings
from app.exceptions import UnauthorizedError
from app.schemas.user import IdentityProfile

logger = logging.getLogger(__name__)

INVALID_TOKEN = "Invalid authentication token"


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """`Bearer <token>` → token; anything else → None."""
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


class TokenVerifier:
    def __init__(self, settings: Settings):
        self._secret = settings.auth_jwt_secret
        self._algorithm = settings.auth_jwt_algorithm
        self._issuer = settings.auth_jwt_issuer or None
        self._audience = settings.auth_jwt_audience or None

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                audience=self._audience,
                options={"verify_aud": bool(self._audience), "verify_iss": bool(self._issuer)},
            )
        except JWTError as e:
            logger.warning("Token rejected: %s", type(e).__name__)
            raise UnauthorizedError(INVALID_TOKEN)
        if not claims.get("sub"):
            raise UnauthorizedError(INVALID_TOKEN)
        return claims

    def verify(self, token: str) -> IdentityProfile:
        """Decode and map claims; a token without a usable e-mail is invalid."""
        claims = self.decode(token)
        try:
            return IdentityProfile(
                external_id=claims["sub"],
                email=claims.get("email") or "",
                name=claims.get("name"),
                email_verified=claims.get("email_verified"),
                profile_image=claims.get("picture"),
            )
        except PydanticValidationError:
            raise UnauthorizedError(INVALID_TOKEN)

    def issue(self, claims: Dict[str, Any]) -> str:
        """Sign a token with the same key (development tooling and tests)."""
        payload = dict(claims)
        if self._issuer and "iss" not in payload:
            payload["iss"] = self._issuer
        if self._audience and "aud" not in payload:
            payload["aud"] = self._audience
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)
