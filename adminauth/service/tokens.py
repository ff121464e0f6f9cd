from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from adminauth.config import AuthSettings
from adminauth.logging import get_logger
from adminauth.service.errors import InvalidToken
from adminauth.storage.models import Principal, Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

# single-use tokens delivered out of band
PASSWORD_RESET = "admin_password_reset"
INVITE = "admin_invite"

PURPOSE_AUDIENCES = {
    PASSWORD_RESET: "avigate-admin-reset",
    INVITE: "avigate-admin-invite",
}


def _remaining(expires_at: int, now: float) -> int:
    return max(int(expires_at - now), 0)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    correlation_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime

    def public_view(self) -> dict:
        return {
            "access_token": self.access_token,
            "token_type": "bearer",
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


@dataclass(frozen=True)
class TokenClaims:
    principal_id: str
    correlation_id: str
    role: str
    token_type: str
    issued_at: int
    expires_at: int
    jti: str

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        return _remaining(self.expires_at, now if now is not None else time.time())


@dataclass(frozen=True)
class PurposeToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class PurposeClaims:
    principal_id: str
    email: str
    purpose: str
    role: str
    issued_by: Optional[str]
    expires_at: int
    jti: str

    @property
    def redemption_key(self) -> str:
        """Blacklist key marking this token as used."""
        return f"{self.purpose}:{self.jti}"

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        return _remaining(self.expires_at, now if now is not None else time.time())


class TokenService:
    """Mints and verifies correlated HS256 access/refresh pairs.

    Verification is stateless: signature, algorithm, issuer, audience, token
    type and expiry. Revocation and session checks belong to the caller.

    Reset and invitation tokens are signed with keys derived per purpose and
    carry their own audience, so none of them can stand in for another kind
    of token. Marking them used is likewise left to the caller.
    """

    def __init__(self, settings: AuthSettings, *, clock=time.time) -> None:
        self.settings = settings
        self._clock = clock
        self._keys = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }
        for purpose in PURPOSE_AUDIENCES:
            self._keys[purpose] = hmac.new(
                self._keys[ACCESS], f"adminauth:{purpose}".encode(), hashlib.sha256
            ).digest()
        self._ttls = {
            ACCESS: settings.access_token_ttl_seconds,
            REFRESH: settings.refresh_token_ttl_seconds,
            PASSWORD_RESET: settings.password_reset_ttl_seconds,
            INVITE: settings.invite_ttl_seconds,
        }

    def now(self) -> float:
        return self._clock()

    @staticmethod
    def new_correlation_id() -> str:
        return secrets.token_urlsafe(24)

    def mint(self, principal: Principal) -> TokenPair:
        correlation_id = self.new_correlation_id()
        now = int(self._clock())
        role = Role(principal.role).value
        access_exp = now + self._ttls[ACCESS]
        refresh_exp = now + self._ttls[REFRESH]
        access_token = self._encode_jwt(
            self._payload(principal.id, correlation_id, role, ACCESS, now, access_exp),
            self._keys[ACCESS],
        )
        refresh_token = self._encode_jwt(
            self._payload(principal.id, correlation_id, role, REFRESH, now, refresh_exp),
            self._keys[REFRESH],
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            correlation_id=correlation_id,
            access_expires_at=datetime.fromtimestamp(access_exp, tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_exp, tz=timezone.utc),
        )

    def mint_purpose(
        self, principal: Principal, purpose: str, *, issued_by: Optional[str] = None
    ) -> PurposeToken:
        if purpose not in PURPOSE_AUDIENCES:
            raise ValueError(f"unknown token purpose: {purpose}")
        now = int(self._clock())
        exp = now + self._ttls[purpose]
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.token_issuer,
            "aud": PURPOSE_AUDIENCES[purpose],
            "sub": principal.id,
            "email": principal.email,
            "role": Role(principal.role).value,
            "token_type": purpose,
            "iat": now,
            "exp": exp,
            "jti": jti,
        }
        if issued_by:
            payload["invited_by"] = issued_by
        return PurposeToken(
            token=self._encode_jwt(payload, self._keys[purpose]),
            jti=jti,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def verify_access(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)

    def verify_purpose(self, token: str, purpose: str) -> PurposeClaims:
        if purpose not in PURPOSE_AUDIENCES:
            raise ValueError(f"unknown token purpose: {purpose}")
        payload, exp = self._checked_payload(token, purpose, PURPOSE_AUDIENCES[purpose])
        principal_id, email, jti = payload.get("sub"), payload.get("email"), payload.get("jti")
        if not principal_id or not email or not jti:
            raise InvalidToken()
        return PurposeClaims(
            principal_id=str(principal_id),
            email=str(email),
            purpose=purpose,
            role=str(payload.get("role", "")),
            issued_by=payload.get("invited_by"),
            expires_at=exp,
            jti=str(jti),
        )

    def _payload(
        self,
        principal_id: str,
        correlation_id: str,
        role: str,
        token_type: str,
        issued_at: int,
        expires_at: int,
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.token_issuer,
            "aud": self.settings.token_audience,
            "sub": principal_id,
            "cid": correlation_id,
            "role": role,
            "token_type": token_type,
            "iat": issued_at,
            "exp": expires_at,
            "jti": str(uuid.uuid4()),
        }

    def _checked_payload(
        self, token: str, token_type: str, audience: str
    ) -> tuple[dict[str, Any], int]:
        if not isinstance(token, str) or not token:
            raise InvalidToken()
        payload = self._decode_jwt(token, self._keys[token_type])
        if payload is None:
            raise InvalidToken()
        if payload.get("token_type") != token_type:
            logger.warning("token_type_mismatch", expected=token_type)
            raise InvalidToken()
        if payload.get("iss") != self.settings.token_issuer:
            raise InvalidToken()
        aud = payload.get("aud")
        valid_aud = audience in aud if isinstance(aud, list) else aud == audience
        if not valid_aud:
            raise InvalidToken()
        try:
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken()
        if exp <= self._clock() - self.settings.token_leeway_seconds:
            raise InvalidToken("Token expired")
        return payload, exp

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        payload, exp = self._checked_payload(token, token_type, self.settings.token_audience)
        try:
            iat = int(payload.get("iat", 0))
        except (TypeError, ValueError):
            raise InvalidToken()
        principal_id = payload.get("sub")
        correlation_id = payload.get("cid")
        if not principal_id or not correlation_id:
            raise InvalidToken()
        return TokenClaims(
            principal_id=str(principal_id),
            correlation_id=str(correlation_id),
            role=str(payload.get("role", "")),
            token_type=token_type,
            issued_at=iat,
            expires_at=exp,
            jti=str(payload.get("jti", "")),
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, key: bytes) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        if not token.isascii():
            return None

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )
        # compared as encoded text so a mutated trailing character cannot alias
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
