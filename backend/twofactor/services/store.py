from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
import hashlib
import logging
import threading
import uuid
import weakref

from pydantic import BaseModel, Field, ValidationError, model_validator

from twofactor.config.settings import Settings, settings
from twofactor.security import totp
from twofactor.security.codes import constant_time_compare, generate_backup_codes
from twofactor.services.enrollment import EnrollmentState, ensure_transition, state_of
from twofactor.services.errors import (
    CorruptState,
    InvalidCode,
    InvalidOrUsedCode,
    NoBackupCodes,
    NotEnabled,
)
from twofactor.services.kv import KeyValueStore, build_key_value_store

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TotpRecord(BaseModel):
    secret: str
    enabled: bool = False
    setup_complete: bool = False
    created_at: datetime
    enabled_at: datetime | None = None

    @model_validator(mode='after')
    def _enabled_implies_setup_complete(self) -> TotpRecord:
        if self.enabled and not self.setup_complete:
            raise ValueError('enabled record must have setup_complete set')
        return self


class BackupCodeSet(BaseModel):
    """Backup codes for one user, stored as SHA-256 digests.

    Consumed codes stay in ``codes`` and are flagged in ``used``.
    """

    codes: list[str]
    used: list[str] = Field(default_factory=list)
    generated_at: datetime

    @model_validator(mode='after')
    def _used_subset_of_codes(self) -> BackupCodeSet:
        if not set(self.used) <= set(self.codes):
            raise ValueError('used backup codes must come from the issued set')
        return self

    @property
    def remaining(self) -> int:
        return len(set(self.codes) - set(self.used))


class TwoFactorDocument(BaseModel):
    secrets: dict[str, TotpRecord] = Field(default_factory=dict)
    backups: dict[str, BackupCodeSet] = Field(default_factory=dict)
    last_updated: datetime | None = None


class TwoFactorStore:
    """Owns every user's TOTP record and backup-code set.

    State is loaded once from the key-value backend and the whole document is
    rewritten after each mutation. Mutations for one user are serialized by a
    per-user lock.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        key: str = 'evid_2fa_data',
        clock: Callable[[], datetime] = utcnow,
        issuer: str = 'EVID-DGC',
        step_seconds: int = totp.STEP_SECONDS,
        valid_window: int = totp.VALID_WINDOW,
        backup_code_count: int = 10,
        backup_code_length: int = 8,
    ) -> None:
        self.lock = threading.RLock()
        self.kv = kv
        self.key = key
        self.clock = clock
        self.issuer = issuer
        self.step_seconds = step_seconds
        self.valid_window = valid_window
        self.backup_code_count = backup_code_count
        self.backup_code_length = backup_code_length
        self.audit_logs: list[dict] = []
        # Entries disappear once no caller holds the lock.
        self._user_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self.secrets: dict[str, TotpRecord] = {}
        self.backups: dict[str, BackupCodeSet] = {}
        self.reload()

    @classmethod
    def from_settings(cls, config: Settings) -> TwoFactorStore:
        return cls(
            build_key_value_store(config),
            key=config.storage_key,
            issuer=config.issuer,
            step_seconds=config.totp_step_seconds,
            valid_window=config.totp_valid_window,
            backup_code_count=config.backup_code_count,
            backup_code_length=config.backup_code_length,
        )

    # persistence

    @staticmethod
    def parse(blob: str) -> TwoFactorDocument:
        try:
            return TwoFactorDocument.model_validate_json(blob)
        except ValidationError as exc:
            raise CorruptState(f'Stored two-factor state is unreadable: {exc.error_count()} error(s)') from exc

    def reload(self) -> None:
        document = TwoFactorDocument()
        try:
            blob = self.kv.load(self.key)
            if blob:
                document = self.parse(blob)
        except (CorruptState, ValueError):
            # ValueError covers undecodable bytes from the backend.
            logger.warning('Discarding corrupt two-factor state under key %s', self.key, exc_info=True)
            self.audit(None, 'two_factor.state_corrupt', {'key': self.key})
        with self.lock:
            self.secrets = dict(document.secrets)
            self.backups = dict(document.backups)

    def _commit(self, user_id: str, record: TotpRecord | None, backup: BackupCodeSet | None) -> None:
        """Persist the user's new entries, then publish them; ``None`` removes an entry.

        In-memory state only changes once the backend accepted the document.
        """
        with self.lock:
            secrets = dict(self.secrets)
            backups = dict(self.backups)
            if record is None:
                secrets.pop(user_id, None)
            else:
                secrets[user_id] = record
            if backup is None:
                backups.pop(user_id, None)
            else:
                backups[user_id] = backup
            document = TwoFactorDocument(secrets=secrets, backups=backups, last_updated=self.clock())
            self.kv.save(self.key, document.model_dump_json())
            self.secrets = secrets
            self.backups = backups

    @contextmanager
    def user_lock(self, user_id: str):
        with self.lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
        with lock:
            yield

    def audit(self, actor_user_id: str | None, action: str, details: dict) -> None:
        self.audit_logs.append(
            {
                'id': str(uuid.uuid4()),
                'actor_user_id': actor_user_id,
                'action': action,
                'details': details,
                'created_at': self.clock().isoformat(),
            }
        )

    @staticmethod
    def digest(value: str) -> str:
        return hashlib.sha256(value.encode('utf-8')).hexdigest()

    # queries

    def is_enabled(self, user_id: str) -> bool:
        record = self.secrets.get(user_id)
        return bool(record and record.enabled)

    def enrollment_state(self, user_id: str) -> EnrollmentState:
        return state_of(self.secrets.get(user_id))

    def backup_codes_remaining(self, user_id: str) -> int:
        backup = self.backups.get(user_id)
        return backup.remaining if backup else 0

    def provisioning_uri(self, user_id: str, account: str) -> str:
        record = self.secrets.get(user_id)
        if record is None:
            raise NotEnabled('No secret has been generated for this user')
        return totp.provisioning_uri(record.secret, account, self.issuer, step_seconds=self.step_seconds)

    def _verify_totp(self, record: TotpRecord, code: str) -> bool:
        return totp.verify(
            record.secret,
            code,
            self.clock().timestamp(),
            step_seconds=self.step_seconds,
            window=self.valid_window,
        )

    # enrollment lifecycle

    def generate_secret(self, user_id: str) -> str:
        with self.user_lock(user_id):
            ensure_transition(self.enrollment_state(user_id), EnrollmentState.pending_verification)
            secret = totp.generate_secret()
            self._commit(user_id, TotpRecord(secret=secret, created_at=self.clock()), self.backups.get(user_id))
            self.audit(user_id, 'two_factor.secret_generated', {})
            logger.info('Generated pending secret for user %s', user_id)
            return secret

    def enable(self, user_id: str, code: str) -> list[str]:
        """Confirm the pending secret and issue a fresh set of backup codes.

        The plaintext codes are returned here and nowhere else.
        """
        with self.user_lock(user_id):
            record = self.secrets.get(user_id)
            if record is None or not self._verify_totp(record, code):
                self.audit(user_id, 'two_factor.enable_failed', {})
                logger.warning('Rejected enablement code for user %s', user_id)
                raise InvalidCode('Invalid verification code')
            ensure_transition(state_of(record), EnrollmentState.enabled)

            now = self.clock()
            enabled = record.model_copy(update={'enabled': True, 'setup_complete': True, 'enabled_at': now})
            codes = generate_backup_codes(self.backup_code_count, self.backup_code_length)
            backup = BackupCodeSet(codes=[self.digest(c) for c in codes], generated_at=now)
            self._commit(user_id, enabled, backup)
            self.audit(user_id, 'two_factor.enabled', {'backup_codes_issued': len(codes)})
            logger.info('Enabled two-factor authentication for user %s', user_id)
            return codes

    def disable(self, user_id: str, code: str) -> None:
        """Remove the second factor after proof of possession (TOTP first, then a backup code)."""
        with self.user_lock(user_id):
            record = self.secrets.get(user_id)
            consumed = None
            proven = record is not None and record.enabled and self._verify_totp(record, code)
            if record is not None and record.enabled and not proven:
                consumed = self._consume_backup_code(user_id, code)
                proven = consumed is not None
            if not proven:
                self.audit(user_id, 'two_factor.disable_failed', {})
                logger.warning('Rejected disable code for user %s', user_id)
                raise InvalidCode('Invalid verification code')
            ensure_transition(state_of(record), EnrollmentState.no_secret)

            self._commit(user_id, None, None)
            if consumed is not None:
                self.audit(user_id, 'two_factor.backup_code_consumed', {'remaining': consumed.remaining})
            self.audit(user_id, 'two_factor.disabled', {})
            logger.info('Disabled two-factor authentication for user %s', user_id)

    # verification

    def verify_login(self, user_id: str, code: str) -> bool:
        record = self.secrets.get(user_id)
        if record is None or not record.enabled:
            raise NotEnabled('Two-factor authentication is not enabled')
        if not self._verify_totp(record, code):
            self.audit(user_id, 'two_factor.login_failed', {})
            raise InvalidCode('Invalid authentication code')
        self.audit(user_id, 'two_factor.login_verified', {})
        return True

    def verify_and_consume_backup_code(self, user_id: str, code: str) -> bool:
        with self.user_lock(user_id):
            if user_id not in self.backups:
                raise NoBackupCodes('No backup codes have been issued')
            consumed = self._consume_backup_code(user_id, code)
            if consumed is None:
                self.audit(user_id, 'two_factor.backup_code_rejected', {})
                raise InvalidOrUsedCode('Invalid or already used backup code')
            self._commit(user_id, self.secrets.get(user_id), consumed)
            self.audit(user_id, 'two_factor.backup_code_consumed', {'remaining': consumed.remaining})
            return True

    def _consume_backup_code(self, user_id: str, code: str) -> BackupCodeSet | None:
        """Return a copy of the user's set with ``code`` flagged as used, or None if it is not usable."""
        backup = self.backups.get(user_id)
        if backup is None:
            return None
        submitted = self.digest(code)
        matched = None
        for stored in backup.codes:
            if constant_time_compare(stored, submitted):
                matched = stored
        if matched is None or matched in backup.used:
            return None
        return backup.model_copy(update={'used': [*backup.used, matched]})


store = TwoFactorStore.from_settings(settings)
