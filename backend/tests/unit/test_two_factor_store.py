from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
import gc
import json
import threading

import pytest

from twofactor.security.codes import BACKUP_CODE_ALPHABET
from twofactor.security.totp import compute_code, time_counter
from twofactor.services.enrollment import EnrollmentState
from twofactor.services.errors import (
    AlreadyEnabled,
    InvalidCode,
    InvalidOrUsedCode,
    NoBackupCodes,
    NotEnabled,
)
from twofactor.services.kv import FileKeyValueStore, InMemoryKeyValueStore
from twofactor.services.store import TwoFactorStore

T0 = datetime(2026, 3, 1, 12, 0, 5, tzinfo=timezone.utc)
KEY = 'evid_2fa_data'


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def _mk_store(kv: InMemoryKeyValueStore | None = None, clock: FixedClock | None = None) -> TwoFactorStore:
    return TwoFactorStore(kv or InMemoryKeyValueStore(), key=KEY, clock=clock or FixedClock(T0))


def _current_code(store: TwoFactorStore, secret: str) -> str:
    return compute_code(secret, time_counter(store.clock().timestamp()))


def _wrong_code(store: TwoFactorStore, secret: str) -> str:
    counter = time_counter(store.clock().timestamp())
    valid = {compute_code(secret, counter + drift) for drift in (-1, 0, 1)}
    return next(c for c in ('000000', '111111', '222222', '333333') if c not in valid)


def _enrolled(store: TwoFactorStore, user_id: str = 'u1') -> tuple[str, list[str]]:
    secret = store.generate_secret(user_id)
    codes = store.enable(user_id, _current_code(store, secret))
    return secret, codes


def test_generate_secret_creates_pending_record_and_persists() -> None:
    kv = InMemoryKeyValueStore()
    store = _mk_store(kv)
    secret = store.generate_secret('u1')

    assert store.enrollment_state('u1') == EnrollmentState.pending_verification
    assert not store.is_enabled('u1')
    record = store.secrets['u1']
    assert record.secret == secret
    assert not record.setup_complete
    assert record.created_at == T0
    assert record.enabled_at is None

    blob = json.loads(kv.load(KEY))
    assert blob['secrets']['u1']['enabled'] is False


def test_generate_secret_again_discards_pending_secret() -> None:
    store = _mk_store()
    first = store.generate_secret('u1')
    second = store.generate_secret('u1')
    assert first != second
    with pytest.raises(InvalidCode):
        store.enable('u1', _current_code(store, first))
    assert store.enrollment_state('u1') == EnrollmentState.pending_verification


def test_enable_scenario_issues_ten_distinct_backup_codes() -> None:
    store = _mk_store()
    secret, codes = _enrolled(store)

    assert store.is_enabled('u1')
    assert store.enrollment_state('u1') == EnrollmentState.enabled
    assert len(codes) == 10
    assert len(set(codes)) == 10
    for code in codes:
        assert len(code) == 8
        assert set(code) <= set(BACKUP_CODE_ALPHABET)
    record = store.secrets['u1']
    assert record.setup_complete
    assert record.enabled_at == T0
    assert store.backup_codes_remaining('u1') == 10
    assert secret == record.secret


def test_enable_with_wrong_code_leaves_record_pending() -> None:
    store = _mk_store()
    secret = store.generate_secret('u1')
    with pytest.raises(InvalidCode):
        store.enable('u1', _wrong_code(store, secret))
    assert store.enrollment_state('u1') == EnrollmentState.pending_verification
    assert 'u1' not in store.backups


def test_enable_without_secret_is_rejected() -> None:
    store = _mk_store()
    with pytest.raises(InvalidCode):
        store.enable('ghost', '123456')
    assert store.enrollment_state('ghost') == EnrollmentState.no_secret


def test_enable_accepts_code_from_previous_step() -> None:
    clock = FixedClock(T0)
    store = _mk_store(clock=clock)
    secret = store.generate_secret('u1')
    code = _current_code(store, secret)
    clock.advance(30)
    assert store.enable('u1', code)


def test_generate_secret_refused_while_enabled() -> None:
    store = _mk_store()
    secret, _ = _enrolled(store)
    with pytest.raises(AlreadyEnabled):
        store.generate_secret('u1')
    assert store.secrets['u1'].secret == secret
    assert store.is_enabled('u1')


def test_re_running_enable_replaces_backup_codes() -> None:
    store = _mk_store()
    secret, first = _enrolled(store)
    store.verify_and_consume_backup_code('u1', first[0])

    second = store.enable('u1', _current_code(store, secret))
    assert store.backup_codes_remaining('u1') == 10
    assert store.backups['u1'].used == []
    stale = [code for code in first if code not in second]
    with pytest.raises(InvalidOrUsedCode):
        store.verify_and_consume_backup_code('u1', stale[0])
    assert store.verify_and_consume_backup_code('u1', second[0])


def test_verify_login_accepts_current_code() -> None:
    store = _mk_store()
    secret, _ = _enrolled(store)
    assert store.verify_login('u1', _current_code(store, secret))


def test_verify_login_rejects_stale_code() -> None:
    clock = FixedClock(T0)
    store = _mk_store(clock=clock)
    secret, _ = _enrolled(store)
    old = _current_code(store, secret)
    clock.advance(60)
    window = {compute_code(secret, time_counter(clock.now.timestamp()) + d) for d in (-1, 0, 1)}
    if old in window:
        pytest.skip('code repeated inside the drift window')
    with pytest.raises(InvalidCode):
        store.verify_login('u1', old)


def test_verify_login_requires_enabled_record() -> None:
    store = _mk_store()
    with pytest.raises(NotEnabled):
        store.verify_login('nobody', '123456')
    secret = store.generate_secret('u1')
    with pytest.raises(NotEnabled):
        store.verify_login('u1', _current_code(store, secret))


def test_backup_code_is_single_use() -> None:
    kv = InMemoryKeyValueStore()
    store = _mk_store(kv)
    _, codes = _enrolled(store)

    assert store.verify_and_consume_backup_code('u1', codes[3])
    with pytest.raises(InvalidOrUsedCode):
        store.verify_and_consume_backup_code('u1', codes[3])
    assert store.backup_codes_remaining('u1') == 9

    reloaded = _mk_store(kv)
    with pytest.raises(InvalidOrUsedCode):
        reloaded.verify_and_consume_backup_code('u1', codes[3])
    assert reloaded.verify_and_consume_backup_code('u1', codes[4])


def test_unknown_backup_code_always_fails() -> None:
    store = _mk_store()
    _, codes = _enrolled(store)
    with pytest.raises(InvalidOrUsedCode):
        store.verify_and_consume_backup_code('u1', 'NOTISSUE')
    lettered = next(code for code in codes if code != code.lower())
    with pytest.raises(InvalidOrUsedCode):
        store.verify_and_consume_backup_code('u1', lettered.lower())
    assert store.backup_codes_remaining('u1') == 10


def test_backup_code_without_issued_set() -> None:
    store = _mk_store()
    with pytest.raises(NoBackupCodes):
        store.verify_and_consume_backup_code('u1', 'ABCDEFGH')


def test_backup_codes_are_not_persisted_in_plaintext() -> None:
    kv = InMemoryKeyValueStore()
    store = _mk_store(kv)
    _, codes = _enrolled(store)
    blob = kv.load(KEY)
    for code in codes:
        assert code not in blob


def test_disable_with_totp_removes_everything() -> None:
    kv = InMemoryKeyValueStore()
    store = _mk_store(kv)
    secret, _ = _enrolled(store)

    store.disable('u1', _current_code(store, secret))
    assert not store.is_enabled('u1')
    assert store.enrollment_state('u1') == EnrollmentState.no_secret
    assert 'u1' not in store.backups
    blob = json.loads(kv.load(KEY))
    assert blob['secrets'] == {}
    assert blob['backups'] == {}


def test_disable_with_backup_code_consumes_it_for_audit() -> None:
    store = _mk_store()
    _, codes = _enrolled(store)
    store.disable('u1', codes[0])
    assert not store.is_enabled('u1')
    actions = [entry['action'] for entry in store.audit_logs]
    assert 'two_factor.backup_code_consumed' in actions
    assert actions[-1] == 'two_factor.disabled'


def test_disable_with_wrong_code_keeps_two_factor_enabled() -> None:
    store = _mk_store()
    secret, _ = _enrolled(store)
    with pytest.raises(InvalidCode):
        store.disable('u1', _wrong_code(store, secret))
    assert store.is_enabled('u1')
    assert store.backup_codes_remaining('u1') == 10


def test_disable_when_not_enabled() -> None:
    store = _mk_store()
    with pytest.raises(InvalidCode):
        store.disable('u1', '123456')

    secret = store.generate_secret('u1')
    with pytest.raises(InvalidCode):
        store.disable('u1', _current_code(store, secret))
    assert store.enrollment_state('u1') == EnrollmentState.pending_verification


def test_re_enrollment_issues_fresh_disjoint_codes() -> None:
    store = _mk_store()
    secret, first = _enrolled(store)
    store.disable('u1', _current_code(store, secret))
    _, second = _enrolled(store)
    assert set(first).isdisjoint(second)


def test_state_survives_reload() -> None:
    kv = InMemoryKeyValueStore()
    store = _mk_store(kv)
    secret, _ = _enrolled(store)
    store.generate_secret('u2')

    reloaded = _mk_store(kv)
    assert reloaded.is_enabled('u1')
    assert reloaded.enrollment_state('u2') == EnrollmentState.pending_verification
    assert reloaded.verify_login('u1', _current_code(reloaded, secret))


def test_corrupt_blob_is_treated_as_empty_store() -> None:
    kv = InMemoryKeyValueStore({KEY: '{not json'})
    store = _mk_store(kv)
    assert store.secrets == {}
    assert store.backups == {}
    assert store.audit_logs[-1]['action'] == 'two_factor.state_corrupt'

    store.generate_secret('u1')
    assert json.loads(kv.load(KEY))['secrets']['u1']


def test_blob_violating_record_invariants_is_corrupt() -> None:
    bad = {
        'secrets': {'u1': {'secret': 'GEZDGNBV', 'enabled': True, 'setup_complete': False, 'created_at': T0.isoformat()}},
        'backups': {'u1': {'codes': ['a'], 'used': ['b'], 'generated_at': T0.isoformat()}},
    }
    store = _mk_store(InMemoryKeyValueStore({KEY: json.dumps(bad)}))
    assert not store.is_enabled('u1')
    assert store.enrollment_state('u1') == EnrollmentState.no_secret


def test_concurrent_backup_code_consumption_succeeds_once() -> None:
    store = _mk_store()
    _, codes = _enrolled(store)
    barrier = threading.Barrier(8)

    def attempt() -> bool:
        barrier.wait()
        try:
            return store.verify_and_consume_backup_code('u1', codes[0])
        except InvalidOrUsedCode:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: attempt(), range(8)))
    assert results.count(True) == 1
    assert store.backup_codes_remaining('u1') == 9


def test_audit_entries_never_contain_codes() -> None:
    store = _mk_store()
    _, codes = _enrolled(store)
    store.verify_and_consume_backup_code('u1', codes[0])
    dumped = json.dumps(store.audit_logs)
    for code in codes:
        assert code not in dumped


class FlakyKeyValueStore(InMemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_saves = False

    def save(self, key: str, blob: str) -> None:
        if self.fail_saves:
            raise OSError('disk full')
        super().save(key, blob)


def test_undecodable_state_file_is_treated_as_empty_store(tmp_path) -> None:
    (tmp_path / f'{KEY}.json').write_bytes(b'\xff\xfe{garbage')
    store = TwoFactorStore(FileKeyValueStore(tmp_path), key=KEY, clock=FixedClock(T0))
    assert store.secrets == {}
    assert store.audit_logs[-1]['action'] == 'two_factor.state_corrupt'

    store.generate_secret('u1')
    assert json.loads((tmp_path / f'{KEY}.json').read_text(encoding='utf-8'))['secrets']['u1']


def test_failed_save_leaves_enable_unapplied() -> None:
    kv = FlakyKeyValueStore()
    store = _mk_store(kv)
    secret = store.generate_secret('u1')
    kv.fail_saves = True

    with pytest.raises(OSError):
        store.enable('u1', _current_code(store, secret))
    assert not store.is_enabled('u1')
    assert store.enrollment_state('u1') == EnrollmentState.pending_verification
    assert 'u1' not in store.backups

    kv.fail_saves = False
    assert len(store.enable('u1', _current_code(store, secret))) == 10


def test_failed_save_leaves_backup_code_and_record_intact() -> None:
    kv = FlakyKeyValueStore()
    store = _mk_store(kv)
    secret, codes = _enrolled(store)
    kv.fail_saves = True

    with pytest.raises(OSError):
        store.verify_and_consume_backup_code('u1', codes[0])
    assert store.backup_codes_remaining('u1') == 10
    with pytest.raises(OSError):
        store.disable('u1', _current_code(store, secret))
    assert store.is_enabled('u1')
    with pytest.raises(OSError):
        store.generate_secret('u2')
    assert store.enrollment_state('u2') == EnrollmentState.no_secret

    kv.fail_saves = False
    assert store.verify_and_consume_backup_code('u1', codes[0])


def test_user_locks_are_released_after_use() -> None:
    store = _mk_store()
    for n in range(50):
        store.generate_secret(f'user-{n}')
    gc.collect()
    assert len(store._user_locks) == 0


def test_provisioning_uri_uses_configured_step() -> None:
    store = TwoFactorStore(InMemoryKeyValueStore(), key=KEY, clock=FixedClock(T0), step_seconds=60)
    store.generate_secret('u1')
    assert 'period=60' in store.provisioning_uri('u1', 'alice@evid-dgc.com')
