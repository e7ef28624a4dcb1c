"""Bearer token codec.

Stateless: a token is valid if the signature checks out and it has not
expired. There is no revocation list, so logout happens on the client.
"""

import datetime
import logging
from typing import Optional

import jwt

logger = logging.getLogger(__name__)


class TokenCodec:
    def __init__(self, secret: str, *, algorithm: str = "HS256", expires_minutes: int = 60 * 24 * 7) -> None:
        self._secret   = secret
        self.algorithm = algorithm
        self.expires   = datetime.timedelta(minutes=expires_minutes)

    def issue(self, subject_id: str) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        payload = {
            "sub": str(subject_id),
            "iat": now,
            "exp": now + self.expires,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Optional[str]:
        """Return the subject id, or None if the token is unusable."""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("[tokens] rejected expired token")
            return None
        except jwt.InvalidTokenError as exc:
            logger.info("[tokens] rejected invalid token: %s", exc)
            return None
        subject = payload.get("sub")
        return subject or None
