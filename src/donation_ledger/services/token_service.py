import logging
import time
import uuid
from urllib.parse import urlencode

import jwt
from pydantic import BaseModel, ConfigDict

from donation_ledger.core.exceptions import ExpiredToken, InvalidToken, RevocationDisabled

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 7


class TokenClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    email: str
    expires_at: int
    token_id: str | None = None


class CancellationTokenService:
    """Signed, time-limited credentials for managing a subscription by email link.

    Tokens are stateless: expiry is enforced by the signature check. When a
    revocation store is supplied, ``verify`` also consults its denylist.
    """

    def __init__(
        self,
        secret: str,
        site_url: str = "",
        default_ttl: int = DEFAULT_TTL_SECONDS,
        revocation_store=None,
        clock=time.time,
    ):
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self.secret = secret
        self.site_url = site_url.rstrip("/")
        self.default_ttl = default_ttl
        self.revocation_store = revocation_store
        self.clock = clock

    def issue(self, subscription_id: str, email: str, ttl: int | None = None) -> str:
        now = int(self.clock())
        payload = {
            "sub": subscription_id,
            "email": email,
            "iat": now,
            "exp": now + (ttl if ttl is not None else self.default_ttl),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> TokenClaims:
        if not token:
            raise InvalidToken()
        try:
            # Expiry is checked below against our own clock
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "exp"], "verify_exp": False},
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Cancellation token rejected: {e}")
            raise InvalidToken() from e

        if int(payload["exp"]) <= int(self.clock()):
            logger.info(f"Cancellation token for {payload['sub']} has expired")
            raise ExpiredToken()

        email = payload.get("email")
        if not email:
            raise InvalidToken()

        claims = TokenClaims(
            subscription_id=payload["sub"],
            email=email,
            expires_at=int(payload["exp"]),
            token_id=payload.get("jti"),
        )

        if self.revocation_store is not None and claims.token_id:
            if self.revocation_store.is_token_revoked(claims.token_id):
                logger.info(f"Cancellation token {claims.token_id} has been revoked")
                raise InvalidToken()
        return claims

    def revoke(self, token: str) -> None:
        if self.revocation_store is None:
            raise RevocationDisabled()
        claims = self.verify(token)
        if claims.token_id:
            self.revocation_store.revoke_token(claims.token_id, claims.expires_at)

    def manage_link(self, subscription_id: str, email: str) -> str:
        query = urlencode({"token": self.issue(subscription_id, email), "subscriptionId": subscription_id})
        return f"{self.site_url}/donations/manage?{query}"
