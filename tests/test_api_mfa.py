"""
tests/test_api_mfa.py -- Integration tests for the MFA routes and the
sensitive-operation checkpoint.

The MFA service runs on the api_env FakeClock; env.totp_code() returns the
code for the current step and then advances the clock one step, so every
code used here is fresh.

Coverage:
  - Enrollment: setup (no-store) -> verify-setup; wrong code changes nothing
  - setup when already enabled: 409, active secret untouched
  - verify with TOTP and backup codes; replayed code rejected
  - Checkpoint: session needs a recent /mfa/verify; bearer needs X-MFA-Code
  - regenerate-backup-codes, disable (code or password), lockout 429
  - Non-ASCII digit codes are ordinary invalid codes
  - Wrong passwords on disable count toward the lockout and are audited
"""

from __future__ import annotations

import pyotp

from auth.roles import Role


def _user(api_env, name: str) -> str:
    password = f"{name}-password"
    api_env.create_user(name, password, Role.NURSE, 1)
    return password


class TestEnrollment:
    def test_status_before_setup(self, api_env) -> None:
        headers = api_env.bearer("nurse1", "nursepass1")
        resp = api_env.client.get("/api/v1/mfa/status", headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"enabled": False, "pending_setup": False, "backup_codes_remaining": 0, "method": None}

    def test_setup_then_verify(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_enroll")
        api_env.login("mfa_enroll", password)

        setup = client.post("/api/v1/mfa/setup")
        assert setup.status_code == 200, setup.text
        assert setup.headers["Cache-Control"] == "no-store"
        data = setup.json()
        assert len(data["backup_codes"]) == 10
        assert data["qr_code_url"].startswith("otpauth://totp/")

        status = client.get("/api/v1/mfa/status").json()
        assert status["pending_setup"] is True
        assert status["enabled"] is False

        bad = client.post("/api/v1/mfa/verify-setup", json={"code": "000000"})
        assert bad.status_code == 400
        assert bad.json()["error"]["message"] == "Invalid verification code"
        assert client.get("/api/v1/mfa/status").json()["enabled"] is False

        totp = pyotp.TOTP(data["secret"])
        good = client.post("/api/v1/mfa/verify-setup", json={"code": api_env.totp_code(totp)})
        assert good.status_code == 200, good.text
        assert good.json() == {"valid": True, "message": "MFA enabled successfully"}

        status = client.get("/api/v1/mfa/status").json()
        assert status == {"enabled": True, "pending_setup": False, "backup_codes_remaining": 10, "method": "totp"}
        assert client.get("/api/v1/auth/me").json()["mfa_enabled"] is True
        client.cookies.clear()

    def test_setup_when_enabled_is_rejected(self, api_env) -> None:
        password = _user(api_env, "mfa_twice")
        api_env.enroll_mfa("mfa_twice", password)
        uid = api_env.ids["mfa_twice"]
        before = api_env.mfa_service.store.get(uid).secret

        resp = api_env.client.post("/api/v1/mfa/setup")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "mfa_already_enabled"
        assert api_env.mfa_service.store.get(uid).secret == before
        api_env.client.cookies.clear()

    def test_verify_setup_without_setup(self, api_env) -> None:
        password = _user(api_env, "mfa_nosetup")
        headers = api_env.bearer("mfa_nosetup", password)
        resp = api_env.client.post("/api/v1/mfa/verify-setup", json={"code": "123456"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "MFA setup not initiated"


class TestVerify:
    def test_totp_and_replay(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_verify")
        totp, _ = api_env.enroll_mfa("mfa_verify", password)
        code = api_env.totp_code(totp)

        first = client.post("/api/v1/mfa/verify", json={"code": code})
        assert first.status_code == 200
        assert first.json()["message"] == "MFA verified"
        replay = client.post("/api/v1/mfa/verify", json={"code": code})
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "mfa_invalid_code"
        client.cookies.clear()

    def test_backup_code(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_backup")
        _, codes = api_env.enroll_mfa("mfa_backup", password)

        resp = client.post("/api/v1/mfa/verify", json={"code": codes[0]})
        assert resp.status_code == 200
        assert resp.json()["message"] == "MFA verified with backup code. 9 codes remaining."
        assert client.post("/api/v1/mfa/verify", json={"code": codes[0]}).status_code == 400
        assert client.get("/api/v1/mfa/status").json()["backup_codes_remaining"] == 9
        client.cookies.clear()

    def test_non_ascii_digits_are_an_invalid_code(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_arabic")
        api_env.enroll_mfa("mfa_arabic", password)

        for code in ("١٢٣٤٥٦", "12345²"):
            resp = client.post("/api/v1/mfa/verify", json={"code": code})
            assert resp.status_code == 400, resp.text
            assert resp.json()["error"]["code"] == "mfa_invalid_code"
        failures = api_env.audit.list_entries(
            actor_user_id=api_env.ids["mfa_arabic"], action="MFA_VERIFICATION_FAILED"
        )
        assert len(failures) == 2
        client.cookies.clear()

    def test_user_without_mfa_passes(self, api_env) -> None:
        headers = api_env.bearer("doctor2", "doctorpass2")
        resp = api_env.client.post("/api/v1/mfa/verify", json={"code": "123456"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["message"] == "MFA not enabled"


class TestCheckpoint:
    def test_session_needs_recent_verification(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_cp")
        totp, _ = api_env.enroll_mfa("mfa_cp", password)

        api_env.login("mfa_cp", password)
        body = {"current_password": password, "new_password": "mfa_cp-password-2"}
        blocked = client.post("/api/v1/auth/change-password", json=body)
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "mfa_required"

        assert client.post("/api/v1/mfa/verify", json={"code": api_env.totp_code(totp)}).status_code == 200
        allowed = client.post("/api/v1/auth/change-password", json=body)
        assert allowed.status_code == 200, allowed.text
        client.cookies.clear()

    def test_bearer_needs_code_header(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_bearer")
        totp, _ = api_env.enroll_mfa("mfa_bearer", password)
        headers = api_env.bearer("mfa_bearer", password)
        body = {"current_password": password, "new_password": "mfa_bearer-password-2"}

        missing = client.post("/api/v1/auth/change-password", json=body, headers=headers)
        assert missing.status_code == 403
        assert missing.json()["error"]["code"] == "mfa_required"

        wrong = client.post(
            "/api/v1/auth/change-password", json=body, headers={**headers, "X-MFA-Code": "000000"}
        )
        assert wrong.status_code == 400

        ok = client.post(
            "/api/v1/auth/change-password",
            json=body,
            headers={**headers, "X-MFA-Code": api_env.totp_code(totp)},
        )
        assert ok.status_code == 200, ok.text


class TestManagement:
    def test_regenerate_backup_codes(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_regen")
        totp, old = api_env.enroll_mfa("mfa_regen", password)

        resp = client.post("/api/v1/mfa/regenerate-backup-codes", json={"code": api_env.totp_code(totp)})
        assert resp.status_code == 200, resp.text
        assert resp.headers["Cache-Control"] == "no-store"
        new = resp.json()["backup_codes"]
        assert len(new) == 10 and set(new).isdisjoint(old)
        assert client.post("/api/v1/mfa/verify", json={"code": old[0]}).status_code == 400
        assert client.post("/api/v1/mfa/verify", json={"code": new[0]}).status_code == 200
        client.cookies.clear()

    def test_disable_with_password(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_off_pw")
        api_env.enroll_mfa("mfa_off_pw", password)

        wrong = client.post("/api/v1/mfa/disable", json={"password": "not-the-password"})
        assert wrong.status_code == 400
        assert client.get("/api/v1/mfa/status").json()["enabled"] is True

        resp = client.post("/api/v1/mfa/disable", json={"password": password})
        assert resp.status_code == 200, resp.text
        assert client.get("/api/v1/mfa/status").json()["enabled"] is False
        client.cookies.clear()

    def test_disable_password_attempts_are_limited(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_off_guess")
        api_env.enroll_mfa("mfa_off_guess", password)
        user_id = api_env.ids["mfa_off_guess"]

        for i in range(5):
            wrong = client.post("/api/v1/mfa/disable", json={"password": f"guess-{i}-password"})
            assert wrong.status_code == 400
        locked = client.post("/api/v1/mfa/disable", json={"password": password})
        assert locked.status_code == 429
        assert client.get("/api/v1/mfa/status").json()["enabled"] is True

        failures = api_env.audit.list_entries(actor_user_id=user_id, action="MFA_VERIFICATION_FAILED")
        assert len(failures) == 5
        assert all(e.details == {"method": "password"} for e in failures)
        assert api_env.audit.list_entries(actor_user_id=user_id, action="MFA_LOCKED_OUT")

        api_env.mfa_clock.advance(300)
        assert client.post("/api/v1/mfa/disable", json={"password": password}).status_code == 200
        client.cookies.clear()

    def test_disable_with_code(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_off_code")
        totp, _ = api_env.enroll_mfa("mfa_off_code", password)
        resp = client.post("/api/v1/mfa/disable", json={"code": api_env.totp_code(totp)})
        assert resp.status_code == 200, resp.text
        again = client.post("/api/v1/mfa/disable", json={"code": api_env.totp_code(totp)})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "mfa_not_enabled"
        client.cookies.clear()

    def test_lockout(self, api_env) -> None:
        client = api_env.client
        password = _user(api_env, "mfa_lock")
        totp, _ = api_env.enroll_mfa("mfa_lock", password)
        for _ in range(5):
            assert client.post("/api/v1/mfa/verify", json={"code": "000000"}).status_code == 400
        current = totp.at(api_env.mfa_clock())
        locked = client.post("/api/v1/mfa/verify", json={"code": current})
        assert locked.status_code == 429
        assert locked.headers["Retry-After"] == "300"
        api_env.mfa_clock.advance(300)
        assert client.post("/api/v1/mfa/verify", json={"code": api_env.totp_code(totp)}).status_code == 200
        client.cookies.clear()

    def test_requires_authentication(self, api_env) -> None:
        api_env.client.cookies.clear()
        assert api_env.client.get("/api/v1/mfa/status").status_code == 401
        assert api_env.client.post("/api/v1/mfa/setup").status_code == 401
