from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import pyotp

from adminauth.config import AuthSettings
from adminauth.logging import get_logger
from adminauth.service.errors import AlreadyEnabled, InvalidCode, NotFoundError
from adminauth.storage.models import Principal

logger = get_logger(__name__)

BACKUP_CODE_LENGTH = 8
# no 0/O or 1/I so codes survive being read aloud or retyped
_BACKUP_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class MFAStatus:
    enabled: bool
    backup_codes_remaining: int
    setup_pending: bool


def normalize_backup_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


def backup_code_digest(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


class MFAEngine:
    """TOTP enrollment and verification plus single-use backup codes."""

    def __init__(self, store, settings: AuthSettings) -> None:
        self.store = store
        self.settings = settings

    def _reload(self, principal: Principal) -> Principal:
        current = self.store.find_by_id(principal.id)
        if current is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal.id})
        return current

    def generate_secret(self, principal: Principal) -> str:
        current = self._reload(principal)
        if current.totp_enabled:
            raise AlreadyEnabled()
        secret = pyotp.random_base32()
        self.store.update(current.id, totp_secret=secret, totp_enabled=False)
        logger.info("totp_secret_generated", principal_id=current.id)
        return secret

    def provisioning_uri(self, principal: Principal, secret: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(
            name=principal.email, issuer_name=self.settings.totp_issuer
        )

    def verify_code(
        self, secret: Optional[str], code: Optional[str], at_time: datetime | None = None
    ) -> bool:
        if not secret or not code:
            return False
        code = code.strip()
        if len(code) != 6 or not code.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(
                code, for_time=at_time, valid_window=self.settings.totp_valid_window
            )
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return False

    def _new_backup_codes(self) -> List[str]:
        return [
            "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(self.settings.backup_code_count)
        ]

    def enable(self, principal: Principal, code: str) -> List[str]:
        """Confirm enrollment with one valid code and return fresh backup codes.

        The plaintext codes are returned exactly once; only their digests are
        stored. Nothing is written when the code does not verify.
        """
        current = self._reload(principal)
        if current.totp_enabled:
            raise AlreadyEnabled()
        if not current.totp_secret:
            raise InvalidCode("TOTP setup has not been started")
        if not self.verify_code(current.totp_secret, code):
            raise InvalidCode()
        codes = self._new_backup_codes()
        self.store.update(
            current.id,
            totp_enabled=True,
            backup_code_digests=[backup_code_digest(c) for c in codes],
        )
        logger.info("totp_enabled", principal_id=current.id, backup_codes=len(codes))
        return codes

    def consume_backup_code(self, principal: Principal, code: Optional[str]) -> bool:
        if not code or not normalize_backup_code(code):
            return False
        consumed = self.store.consume_backup_code(principal.id, backup_code_digest(code))
        if consumed:
            logger.info("backup_code_consumed", principal_id=principal.id)
        return consumed

    def restore_backup_code(self, principal: Principal, code: str) -> bool:
        """Put back a code consumed by a login that did not complete."""
        restored = self.store.restore_backup_code(principal.id, backup_code_digest(code))
        if restored:
            logger.info("backup_code_restored", principal_id=principal.id)
        return restored

    def disable(self, principal: Principal) -> None:
        self.store.update(
            principal.id, totp_secret=None, totp_enabled=False, backup_code_digests=[]
        )
        logger.info("totp_disabled", principal_id=principal.id)

    def regenerate_backup_codes(self, principal: Principal) -> List[str]:
        current = self._reload(principal)
        if not current.totp_enabled:
            raise InvalidCode("TOTP is not enabled")
        codes = self._new_backup_codes()
        # one write replaces every previous digest
        self.store.update(
            current.id, backup_code_digests=[backup_code_digest(c) for c in codes]
        )
        return codes

    def status(self, principal: Principal) -> MFAStatus:
        current = self._reload(principal)
        return MFAStatus(
            enabled=current.totp_enabled,
            backup_codes_remaining=len(current.backup_code_digests)
            if current.totp_enabled
            else 0,
            setup_pending=bool(current.totp_secret) and not current.totp_enabled,
        )
