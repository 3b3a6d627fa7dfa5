import json
import threading

import pytest

from canvass_auth.audit import AuditLog, verify_log_chain
from canvass_auth.otp import (
    CODE_MAX,
    CODE_MIN,
    InvalidFieldError,
    InvalidOtpError,
    MissingFieldError,
    OtpDeliveryError,
    OtpExpiredError,
    OtpService,
    derive_role,
    display_name,
    generate_code,
    subject_id,
)
from canvass_auth.signing import sign_otp
from canvass_auth.tokens import load_session_claims

from .conftest import ADMIN, SECRET, T0, RecordingChannel

VOTER = "voter@example.com"
TTL_MS = 5 * 60 * 1000


class TestHelpers:
    def test_generate_code_is_six_digits_in_range(self):
        for _ in range(500):
            code = generate_code()
            assert len(code) == 6 and code.isdigit()
            assert CODE_MIN <= int(code) <= CODE_MAX

    def test_role_derivation(self):
        assert derive_role(ADMIN, ADMIN) == "admin"
        assert derive_role("Admin@Example.com", ADMIN) == "admin"
        assert derive_role("x@example.com", ADMIN) == "user"

    def test_display_name_is_local_part(self):
        assert display_name("jane.doe@example.com") == "jane.doe"
        assert display_name("no-at-sign") == "no-at-sign"

    def test_subject_id_is_stable(self):
        assert subject_id(VOTER) == subject_id("Voter@Example.com")
        assert subject_id(VOTER) != subject_id("x@example.com")
        assert len(subject_id(VOTER)) == 16


class TestIssue:
    def test_credential_fields(self, service):
        cred = service.issue(VOTER)
        assert cred.identity == VOTER
        assert cred.expires_at == T0 + TTL_MS
        assert cred.signature == sign_otp(SECRET.encode(), VOTER, cred.code, cred.expires_at)

    @pytest.mark.parametrize("identity", [None, "", "   ", 42])
    def test_missing_identity(self, service, identity):
        with pytest.raises(MissingFieldError, match="email is required"):
            service.issue(identity)

    async def test_delivered_code_never_in_response(self, service, channel):
        out = await service.send_otp(VOTER)
        assert set(out) == {"success", "signature", "expiresAt"}
        assert len(channel.sent) == 1
        to, subject, body = channel.sent[0]
        assert to == VOTER
        assert subject == "Your admin OTP"
        assert "valid for 5 minutes" in body

    async def test_delivered_code_verifies(self, service, channel):
        out = await service.send_otp(VOTER)
        code = channel.sent[0][2].split(": ")[1].split(" ")[0]
        res = service.verify(VOTER, code, out["signature"], out["expiresAt"])
        assert res["user"]["email"] == VOTER

    async def test_dev_fallback_returns_code(self, dev_service):
        out = await dev_service.send_otp(VOTER)
        assert out["success"] is True
        assert len(out["otp"]) == 6
        assert out["signature"] == sign_otp(SECRET.encode(), VOTER, out["otp"], out["expiresAt"])

    async def test_delivery_failure(self, settings, clock):
        svc = OtpService(settings, RecordingChannel(fail_with="smtp: 535 auth failed"), clock=clock)
        with pytest.raises(OtpDeliveryError) as exc:
            await svc.send_otp(VOTER)
        body = exc.value.as_body()
        assert exc.value.status_code == 500
        assert body == {"error": "failed to send otp", "details": "smtp: 535 auth failed"}

    async def test_reissue_does_not_invalidate_previous(self, dev_service):
        first = await dev_service.send_otp(VOTER)
        second = await dev_service.send_otp(VOTER)
        assert dev_service.verify(VOTER, first["otp"], first["signature"], first["expiresAt"])["success"]
        assert dev_service.verify(VOTER, second["otp"], second["signature"], second["expiresAt"])["success"]

    async def test_audit_write_runs_off_the_event_loop(self, settings, clock, tmp_path):
        audit = AuditLog(tmp_path)
        real_append = audit.append
        threads = []

        def append(event):
            threads.append(threading.get_ident())
            return real_append(event)

        audit.append = append
        svc = OtpService(settings, RecordingChannel(), clock=clock, audit=audit)
        await svc.send_otp(VOTER, request_ip="10.0.0.7", user_agent="canvass-app/2.1")

        assert len(threads) == 1
        assert threads[0] != threading.get_ident()
        row = json.loads(audit.log_path.read_text())
        assert row["reason"] == "delivered"
        assert row["user_agent"] == "canvass-app/2.1"
        assert verify_log_chain(audit.log_path)


class TestVerify:
    @pytest.fixture
    def cred(self, service):
        return service.issue(VOTER)

    def test_success_shape(self, service, cred):
        res = service.verify(VOTER, cred.code, cred.signature, cred.expires_at)
        assert res["success"] is True
        assert res["user"] == {
            "id": subject_id(VOTER),
            "username": VOTER,
            "email": VOTER,
            "name": "voter",
            "role": "user",
        }

    def test_session_token_is_signed_and_lasts_24h(self, service, cred):
        res = service.verify(VOTER, cred.code, cred.signature, cred.expires_at)
        claims = load_session_claims(SECRET.encode(), res["token"], T0)
        assert claims["exp"] == T0 + 24 * 60 * 60 * 1000
        assert claims["role"] == "user"
        assert claims["email"] == VOTER

    def test_admin_role(self, service):
        cred = service.issue(ADMIN)
        res = service.verify(ADMIN, cred.code, cred.signature, cred.expires_at)
        assert res["user"]["role"] == "admin"

    def test_valid_at_exact_expiry(self, service, cred, clock):
        clock.advance(TTL_MS)
        assert service.verify(VOTER, cred.code, cred.signature, cred.expires_at)["success"]

    def test_expired_one_ms_after_ttl(self, service, cred, clock):
        clock.advance(TTL_MS + 1)
        with pytest.raises(OtpExpiredError) as exc:
            service.verify(VOTER, cred.code, cred.signature, cred.expires_at)
        assert exc.value.as_body() == {"error": "otp expired"}

    def test_wrong_code(self, service, cred):
        wrong = str((int(cred.code) - CODE_MIN + 1) % (CODE_MAX - CODE_MIN + 1) + CODE_MIN)
        with pytest.raises(InvalidOtpError):
            service.verify(VOTER, wrong, cred.signature, cred.expires_at)

    def test_extended_expiry_rejected(self, service, cred):
        with pytest.raises(InvalidOtpError):
            service.verify(VOTER, cred.code, cred.signature, cred.expires_at + 60_000)

    def test_shortened_expiry_rejected(self, service, cred):
        with pytest.raises(InvalidOtpError):
            service.verify(VOTER, cred.code, cred.signature, cred.expires_at - 1)

    def test_other_identity_rejected(self, service, cred):
        with pytest.raises(InvalidOtpError) as exc:
            service.verify(ADMIN, cred.code, cred.signature, cred.expires_at)
        assert exc.value.message == "invalid otp"

    def test_signature_from_other_secret_rejected(self, service, cred):
        forged = sign_otp(b"guess", VOTER, cred.code, cred.expires_at)
        with pytest.raises(InvalidOtpError):
            service.verify(VOTER, cred.code, forged, cred.expires_at)

    def test_replay_is_accepted_until_expiry(self, service, cred, clock):
        # Known weakness of the stateless design: no single-use enforcement.
        first = service.verify(VOTER, cred.code, cred.signature, cred.expires_at)
        clock.advance(60_000)
        second = service.verify(VOTER, cred.code, cred.signature, cred.expires_at)
        assert first["success"] and second["success"]
        clock.advance(TTL_MS)
        with pytest.raises(OtpExpiredError):
            service.verify(VOTER, cred.code, cred.signature, cred.expires_at)

    def test_numeric_code_and_string_expiry_accepted(self, service, cred):
        res = service.verify(VOTER, int(cred.code), cred.signature, str(cred.expires_at))
        assert res["success"] is True

    def test_missing_fields_are_named(self, service, cred):
        with pytest.raises(MissingFieldError) as exc:
            service.verify(VOTER, "", None, cred.expires_at)
        assert exc.value.message == "missing required fields: otp, signature"

    def test_all_fields_missing(self, service):
        with pytest.raises(MissingFieldError) as exc:
            service.verify(None, None, None, None)
        assert exc.value.message == "missing required fields: email, otp, signature, expiresAt"

    @pytest.mark.parametrize("expires_at", [True, 1.5, "soon", [1], "²", "１２３", "9" * 5000, "-5"])
    def test_malformed_expiry(self, service, cred, expires_at):
        with pytest.raises(InvalidFieldError):
            service.verify(VOTER, cred.code, cred.signature, expires_at)
