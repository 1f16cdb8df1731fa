# rideguard/core/security/credentials.py
"""
Signed, time-limited credentials carrying userId and sessionId.

Verification needs only the signing secret. Whether a cryptographically
valid credential is still usable is decided by the session store.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from rideguard.core.exceptions import CredentialError

logger = logging.getLogger(__name__)


class CredentialClaims(BaseModel):
    user_id: str
    session_id: str
    expires_at: Optional[datetime] = None


class CredentialService:
    """Issues and verifies session credentials (JWT)"""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        if not secret:
            raise ValueError("Credential signing secret must not be empty")
        self._secret = secret
        self.algorithm = algorithm

    def issue(self, user_id: str, session_id: str, expires_in: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "userId": user_id,
            "sessionId": session_id,
            "iat": int(now.timestamp()),
            "exp": int((now + expires_in).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> CredentialClaims:
        """
        Check signature and expiry.

        Raises:
            CredentialError: token is malformed, tampered with or expired
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise CredentialError("Credential expired", error_type="expired")
        except JWTError as e:
            logger.debug(f"Credential rejected: {e}")
            raise CredentialError("Invalid credential", error_type="invalid")

        user_id = payload.get("userId")
        session_id = payload.get("sessionId")
        if not user_id or not session_id:
            raise CredentialError("Credential is missing claims", error_type="claims")

        exp = payload.get("exp")
        return CredentialClaims(
            user_id=str(user_id),
            session_id=str(session_id),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )
