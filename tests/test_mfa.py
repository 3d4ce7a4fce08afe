"""
tests/test_mfa.py -- Unit tests for auth/mfa.py.

Covers:
  - Enrollment state machine: setup -> verify-setup -> enabled
  - setup on an enabled user is rejected and leaves the secret untouched
  - +/-1 step clock skew; codes outside the window fail; replay fails
  - Backup codes: format, single use, concurrent consumption has one winner
  - Regeneration invalidates the old set; disable clears everything
  - Lockout after repeated failures
"""

from __future__ import annotations

import re
import threading

import pyotp
import pytest

from auth.audit import AuditActions, AuditContext, AuditLogger
from auth.errors import MFAAlreadyEnabled, MFAInvalidCode, MFANotEnabled, RateLimited
from auth.mfa import MFAService, MFAStore, generate_backup_codes, normalize_backup_code

USER = 42


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'mfa.db'}"


@pytest.fixture
def audit(db_url) -> AuditLogger:
    return AuditLogger(db_url)


@pytest.fixture
def mfa(db_url, audit, clock) -> MFAService:
    return MFAService(MFAStore(db_url), audit=audit, clock=clock)


def _enroll(mfa: MFAService, clock) -> tuple[pyotp.TOTP, list[str]]:
    setup = mfa.setup_mfa(USER, "ade")
    totp = pyotp.TOTP(setup.secret)
    result = mfa.verify_mfa_setup(USER, totp.at(clock()))
    assert result.valid, result.message
    clock.advance(30)
    return totp, setup.backup_codes


class TestSetup:
    def test_setup_returns_secret_uri_and_codes(self, mfa: MFAService) -> None:
        setup = mfa.setup_mfa(USER, "ade")
        assert setup.qr_code_url.startswith("otpauth://totp/")
        assert "issuer=ClinicConnect" in setup.qr_code_url
        assert len(setup.backup_codes) == 10
        status = mfa.status(USER)
        assert status.pending_setup is True
        assert status.enabled is False

    def test_verify_setup_enables(self, mfa: MFAService, clock, audit: AuditLogger) -> None:
        _enroll(mfa, clock)
        status = mfa.status(USER)
        assert status.enabled is True
        assert status.method == "totp"
        assert status.backup_codes_remaining == 10
        assert audit.list_entries(action=AuditActions.MFA_ENABLED)

    def test_wrong_setup_code_changes_nothing(self, mfa: MFAService) -> None:
        mfa.setup_mfa(USER, "ade")
        result = mfa.verify_mfa_setup(USER, "000000")
        assert result.valid is False
        assert result.message == "Invalid verification code"
        assert mfa.status(USER).pending_setup is True

    def test_verify_setup_without_setup(self, mfa: MFAService) -> None:
        result = mfa.verify_mfa_setup(USER, "123456")
        assert result.valid is False
        assert result.message == "MFA setup not initiated"

    def test_setup_on_enabled_user_keeps_secret(self, mfa: MFAService, clock) -> None:
        totp, _ = _enroll(mfa, clock)
        before = mfa.store.get(USER).secret
        with pytest.raises(MFAAlreadyEnabled):
            mfa.setup_mfa(USER, "ade")
        assert mfa.store.get(USER).secret == before
        assert mfa.verify_mfa(USER, totp.at(clock())).valid

    def test_restarting_pending_setup_replaces_secret(self, mfa: MFAService) -> None:
        first = mfa.setup_mfa(USER, "ade")
        second = mfa.setup_mfa(USER, "ade")
        assert first.secret != second.secret
        assert mfa.store.get(USER).secret == second.secret

    def test_setup_code_outside_window_fails(self, mfa: MFAService, clock) -> None:
        setup = mfa.setup_mfa(USER, "ade")
        code = pyotp.TOTP(setup.secret).at(clock())
        clock.advance(90)
        assert mfa.verify_mfa_setup(USER, code).valid is False


class TestVerify:
    def test_not_enabled_passes(self, mfa: MFAService) -> None:
        result = mfa.verify_mfa(USER, "anything")
        assert result.valid is True
        assert result.message == "MFA not enabled"

    @pytest.mark.parametrize("offset", [-30, 0, 30])
    def test_one_step_skew_accepted(self, mfa: MFAService, clock, offset: int) -> None:
        totp, _ = _enroll(mfa, clock)
        clock.advance(60)
        assert mfa.verify_mfa(USER, totp.at(clock() + offset)).valid is True

    def test_two_steps_off_rejected(self, mfa: MFAService, clock) -> None:
        totp, _ = _enroll(mfa, clock)
        clock.advance(60)
        result = mfa.verify_mfa(USER, totp.at(clock() - 60))
        assert result.valid is False
        assert result.message == "Invalid MFA code"

    def test_replayed_code_rejected(self, mfa: MFAService, clock) -> None:
        totp, _ = _enroll(mfa, clock)
        code = totp.at(clock())
        assert mfa.verify_mfa(USER, code).valid is True
        assert mfa.verify_mfa(USER, code).valid is False

    def test_backup_code_single_use(self, mfa: MFAService, clock) -> None:
        _, codes = _enroll(mfa, clock)
        first = mfa.verify_mfa(USER, codes[0])
        assert first.valid is True
        assert first.message == "MFA verified with backup code. 9 codes remaining."
        assert mfa.verify_mfa(USER, codes[0]).valid is False

    def test_backup_code_normalisation(self, mfa: MFAService, clock) -> None:
        _, codes = _enroll(mfa, clock)
        assert mfa.verify_mfa(USER, codes[1].lower().replace("-", " ")).valid is True

    def test_concurrent_backup_code_has_one_winner(self, mfa: MFAService, clock) -> None:
        _, codes = _enroll(mfa, clock)
        results: list[bool] = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def attempt() -> None:
            barrier.wait()
            valid = mfa.verify_mfa(USER, codes[2]).valid
            with lock:
                results.append(valid)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert mfa.status(USER).backup_codes_remaining == 9


class TestBackupCodes:
    def test_format(self) -> None:
        codes = generate_backup_codes(10)
        assert len(set(codes)) == 10
        assert all(re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}", c) for c in codes)

    def test_normalize(self) -> None:
        assert normalize_backup_code(" ab12-cd34 ") == "AB12CD34"

    def test_codes_are_not_stored_in_plaintext(self, mfa: MFAService, clock) -> None:
        _, codes = _enroll(mfa, clock)
        with mfa.store.engine.connect() as conn:
            stored = {row[0] for row in conn.exec_driver_sql("SELECT code_hash FROM mfa_backup_codes")}
        assert not stored & {normalize_backup_code(c) for c in codes}
        assert not stored & set(codes)

    def test_regenerate_invalidates_old_set(self, mfa: MFAService, clock) -> None:
        totp, old = _enroll(mfa, clock)
        new = mfa.regenerate_backup_codes(USER, totp.at(clock()))
        assert set(new).isdisjoint(old)
        assert mfa.verify_mfa(USER, old[0]).valid is False
        assert mfa.verify_mfa(USER, new[0]).valid is True

    def test_regenerate_needs_valid_code(self, mfa: MFAService, clock) -> None:
        _, old = _enroll(mfa, clock)
        with pytest.raises(MFAInvalidCode):
            mfa.regenerate_backup_codes(USER, "000000")
        assert mfa.verify_mfa(USER, old[0]).valid is True


class TestDisable:
    def test_disable_with_code(self, mfa: MFAService, clock) -> None:
        totp, _ = _enroll(mfa, clock)
        mfa.disable_mfa(USER, code=totp.at(clock()))
        status = mfa.status(USER)
        assert status.enabled is False
        assert mfa.store.get(USER).secret is None

    def test_disable_after_password(self, mfa: MFAService, clock) -> None:
        _enroll(mfa, clock)
        mfa.disable_mfa(USER, password_check=lambda: True)
        assert mfa.is_enabled(USER) is False

    def test_disable_with_bad_code(self, mfa: MFAService, clock) -> None:
        _enroll(mfa, clock)
        with pytest.raises(MFAInvalidCode):
            mfa.disable_mfa(USER, code="000000")
        assert mfa.is_enabled(USER) is True

    def test_disable_when_not_enabled(self, mfa: MFAService) -> None:
        with pytest.raises(MFANotEnabled):
            mfa.disable_mfa(USER, password_check=lambda: True)

    def test_setup_again_after_disable(self, mfa: MFAService, clock) -> None:
        _enroll(mfa, clock)
        mfa.disable_mfa(USER, password_check=lambda: True)
        _enroll(mfa, clock)
        assert mfa.is_enabled(USER) is True


class TestLockout:
    def test_lockout_after_max_failures(self, mfa: MFAService, clock, audit: AuditLogger) -> None:
        totp, _ = _enroll(mfa, clock)
        ctx = AuditContext(ip_address="10.9.9.9")
        for _ in range(5):
            assert mfa.verify_mfa(USER, "000000", context=ctx).valid is False
        with pytest.raises(RateLimited) as exc_info:
            mfa.verify_mfa(USER, totp.at(clock()))
        assert exc_info.value.retry_after == 300
        locked = audit.list_entries(action=AuditActions.MFA_LOCKED_OUT)
        assert locked and locked[0].ip_address == "10.9.9.9"

        clock.advance(301)
        assert mfa.verify_mfa(USER, totp.at(clock())).valid is True

    def test_success_resets_failure_count(self, mfa: MFAService, clock) -> None:
        totp, _ = _enroll(mfa, clock)
        for _ in range(4):
            mfa.verify_mfa(USER, "000000")
        assert mfa.verify_mfa(USER, totp.at(clock())).valid is True
        clock.advance(30)
        for _ in range(4):
            mfa.verify_mfa(USER, "000000")
        assert mfa.verify_mfa(USER, totp.at(clock())).valid is True

    def test_wrong_password_on_disable_counts_toward_lockout(self, mfa: MFAService, clock, audit: AuditLogger) -> None:
        _enroll(mfa, clock)
        checks: list[int] = []

        def wrong() -> bool:
            checks.append(1)
            return False

        for _ in range(5):
            with pytest.raises(MFAInvalidCode):
                mfa.disable_mfa(USER, password_check=wrong)
        with pytest.raises(RateLimited):
            mfa.disable_mfa(USER, password_check=lambda: True)
        assert len(checks) == 5
        assert mfa.is_enabled(USER) is True
        failed = audit.list_entries(action=AuditActions.MFA_VERIFICATION_FAILED)
        assert [e.details for e in failed] == [{"method": "password"}] * 5


class TestCodeShape:
    def test_non_ascii_digits_fail_cleanly(self, mfa: MFAService, clock) -> None:
        _enroll(mfa, clock)
        assert mfa.verify_mfa(USER, "١٢٣٤٥٦").valid is False
        assert mfa.verify_mfa(USER, "12345²").valid is False
        assert mfa.attempts.retry_after(USER) == 0

    def test_non_ascii_digits_during_setup(self, mfa: MFAService) -> None:
        mfa.setup_mfa(USER, "ade")
        assert mfa.verify_mfa_setup(USER, "١٢٣٤٥٦").valid is False
        assert mfa.status(USER).pending_setup is True
