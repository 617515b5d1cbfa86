"""End-to-end flows through AuthService on a frozen clock."""

from datetime import timedelta

import pytest

from rideauth.service.errors import (
    AccountLocked,
    InvalidCredentials,
    InvalidInput,
    RateLimited,
    ResendCooldown,
    SessionInvalid,
    VerificationAlreadyUsed,
    VerificationExpired,
    VerificationMismatch,
    VerificationNotFound,
)
from rideauth.storage.models import Purpose, Role

from conftest import STRONG_PASSWORD

NEW_PASSWORD = "N3w&Better!"


def _admin(runtime, phone="+15550900"):
    account = runtime.store.create_account(
        "ops@example.com", runtime.hasher.hash(STRONG_PASSWORD), phone=phone, role=Role.ADMIN
    )
    return account


class TestRegistration:
    def test_register_sends_email_verification(self, runtime, outbox, audit):
        result = runtime.auth.register(" Rider@Example.com ", STRONG_PASSWORD, phone="+15550101")

        assert result.account.email == "rider@example.com"
        assert result.account.verified is False
        assert result.verification.purpose is Purpose.EMAIL
        assert result.verification.delivery.email_sent is True
        assert outbox.email.sent[0]["template_id"] == "verification"
        assert outbox.email.sent[0]["expires_minutes"] == 15
        assert "verification_issued" in audit.names()

    def test_duplicate_email_is_rejected(self, runtime, passenger):
        with pytest.raises(InvalidInput) as excinfo:
            runtime.auth.register("RIDER@example.com", STRONG_PASSWORD)

        assert excinfo.value.detail == {"field": "email"}

    def test_weak_password_is_rejected(self, runtime, memory_store):
        with pytest.raises(InvalidInput):
            runtime.auth.register("new@example.com", "password")

        assert memory_store.get_account_by_email("new@example.com") is None

    def test_invalid_email_is_rejected(self, runtime):
        with pytest.raises(InvalidInput):
            runtime.auth.register("not-an-email", STRONG_PASSWORD)

    def test_delivery_failure_does_not_fail_registration(self, runtime, outbox):
        outbox.email.succeed = False

        result = runtime.auth.register("quiet@example.com", STRONG_PASSWORD)

        assert result.verification.delivery.delivered is False
        assert runtime.store.get_account(result.account.id) is not None


class TestLogin:
    def test_login_by_email_and_phone(self, runtime, passenger, audit):
        by_email = runtime.auth.login("rider@example.com", STRONG_PASSWORD, device="ios")
        by_phone = runtime.auth.login("+15550101", STRONG_PASSWORD)

        assert by_email.tokens and by_phone.tokens
        assert by_email.two_factor_required is False
        principal = runtime.auth.authenticate(by_email.tokens.access_token)
        assert principal.account_id == passenger.id
        assert audit.names().count("login_success") == 2

    def test_unknown_account_and_wrong_password_look_alike(self, runtime, passenger, audit):
        with pytest.raises(InvalidCredentials) as unknown:
            runtime.auth.login("ghost@example.com", STRONG_PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            runtime.auth.login("rider@example.com", "Wr0ng!Pass")

        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code
        reasons = [fields["reason"] for fields in audit.of("login_failed")]
        assert reasons == ["unknown_account", "bad_password"]

    def test_sixth_attempt_after_five_failures_is_locked(self, runtime, passenger, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                runtime.auth.login("rider@example.com", "Wr0ng!Pass")

        with pytest.raises(AccountLocked) as excinfo:
            runtime.auth.login("rider@example.com", STRONG_PASSWORD)

        assert excinfo.value.locked_until == clock.now + timedelta(minutes=15)
        assert excinfo.value.status_code == 423

    def test_lock_lifts_after_fifteen_minutes(self, runtime, passenger, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                runtime.auth.login("rider@example.com", "Wr0ng!Pass")

        clock.advance(minutes=15)

        assert runtime.auth.login("rider@example.com", STRONG_PASSWORD).tokens

    def test_success_resets_failure_streak(self, runtime, passenger):
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                runtime.auth.login("rider@example.com", "Wr0ng!Pass")
        runtime.auth.login("rider@example.com", STRONG_PASSWORD)

        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                runtime.auth.login("rider@example.com", "Wr0ng!Pass")
        assert runtime.auth.login("rider@example.com", STRONG_PASSWORD).tokens

    def test_client_rate_limit_applies_before_credentials(self, runtime, passenger, clock):
        for _ in range(10):
            with pytest.raises(InvalidCredentials):
                runtime.auth.login("ghost@example.com", "Wr0ng!Pass", client_address="203.0.113.9")

        with pytest.raises(RateLimited):
            runtime.auth.login("rider@example.com", STRONG_PASSWORD, client_address="203.0.113.9")

        clock.advance(minutes=15)
        assert runtime.auth.login(
            "rider@example.com", STRONG_PASSWORD, client_address="203.0.113.9"
        ).tokens

    def test_inactive_account_cannot_log_in(self, runtime, passenger, memory_store):
        memory_store.accounts[passenger.id].is_active = False

        with pytest.raises(InvalidCredentials):
            runtime.auth.login("rider@example.com", STRONG_PASSWORD)


class TestTwoFactor:
    def test_admin_login_requires_second_factor(self, runtime, outbox, audit):
        admin = _admin(runtime)

        challenge = runtime.auth.login("ops@example.com", STRONG_PASSWORD)

        assert challenge.two_factor_required is True
        assert challenge.tokens is None
        assert challenge.challenge
        assert challenge.two_factor.delivery.sms_sent is True
        assert "login_success" not in audit.names()

        code = outbox.last_code("two-factor")
        result = runtime.auth.complete_two_factor(
            admin.id, challenge.challenge, code, device="console"
        )

        assert result.tokens is not None
        assert runtime.auth.authenticate(result.tokens.access_token).role == "admin"
        assert audit.of("login_success")[0]["two_factor"] is True

    def test_two_factor_code_expires_after_five_minutes(self, runtime, outbox, clock):
        admin = _admin(runtime)
        challenge = runtime.auth.login("ops@example.com", STRONG_PASSWORD).challenge
        code = outbox.last_code("two-factor")

        clock.advance(minutes=6)

        with pytest.raises(VerificationExpired):
            runtime.auth.complete_two_factor(admin.id, challenge, code)

    def test_two_factor_code_is_single_use(self, runtime, outbox):
        admin = _admin(runtime)
        challenge = runtime.auth.login("ops@example.com", STRONG_PASSWORD).challenge
        code = outbox.last_code("two-factor")
        runtime.auth.complete_two_factor(admin.id, challenge, code)

        with pytest.raises(VerificationAlreadyUsed):
            runtime.auth.complete_two_factor(admin.id, challenge, code)

    @pytest.mark.parametrize("handle", ["", "not-the-challenge", "\u00e9t\u00e9"])
    def test_code_alone_is_not_enough(self, runtime, outbox, audit, handle):
        admin = _admin(runtime)
        runtime.auth.login("ops@example.com", STRONG_PASSWORD)
        code = outbox.last_code("two-factor")

        with pytest.raises(InvalidCredentials):
            runtime.auth.complete_two_factor(admin.id, handle, code)

        assert audit.of("login_failed")[-1]["reason"] == "bad_challenge"
        # The pending code was never checked, so its attempts are untouched
        record = runtime.store.latest_verification(admin.id, Purpose.TWO_FACTOR)
        assert record.attempts == 0
        assert record.used is False

    def test_challenge_from_an_earlier_login_is_stale(self, runtime, outbox, clock):
        admin = _admin(runtime)
        first = runtime.auth.login("ops@example.com", STRONG_PASSWORD).challenge
        clock.advance(minutes=2)
        second = runtime.auth.login("ops@example.com", STRONG_PASSWORD).challenge
        code = outbox.last_code("two-factor")

        with pytest.raises(InvalidCredentials):
            runtime.auth.complete_two_factor(admin.id, first, code)
        assert runtime.auth.complete_two_factor(admin.id, second, code).tokens is not None

    def test_lockout_blocks_second_factor(self, runtime, outbox):
        admin = _admin(runtime)
        challenge = runtime.auth.login("ops@example.com", STRONG_PASSWORD).challenge
        code = outbox.last_code("two-factor")
        for _ in range(runtime.settings.max_login_attempts):
            runtime.governor.record_failure(admin.id)

        with pytest.raises(AccountLocked):
            runtime.auth.complete_two_factor(admin.id, challenge, code)

    def test_unknown_account_is_rejected(self, runtime):
        with pytest.raises(InvalidCredentials):
            runtime.auth.complete_two_factor(
                "00000000-0000-0000-0000-000000000000", "handle", "123456"
            )


class TestContactVerification:
    def test_confirm_email_and_phone_marks_account_verified(self, runtime, passenger, outbox, clock):
        email_code = outbox.last_code("verification")
        account = runtime.auth.confirm_contact(passenger.id, "email", email_code)
        assert account.email_verified is True
        assert account.verified is False

        runtime.auth.resend_verification(passenger.id, Purpose.SMS)
        sms_code = outbox.last_code("verification")
        account = runtime.auth.confirm_contact(passenger.id, Purpose.SMS, sms_code)

        assert account.phone_verified is True
        assert account.verified is True

    def test_password_reset_purpose_cannot_verify_contact(self, runtime, passenger):
        with pytest.raises(InvalidInput):
            runtime.auth.confirm_contact(passenger.id, Purpose.PASSWORD_RESET, "000000")

    def test_resend_is_throttled(self, runtime, passenger):
        with pytest.raises(ResendCooldown):
            runtime.auth.resend_verification(passenger.id, Purpose.EMAIL)

    def test_resend_sms_requires_phone(self, runtime, outbox):
        account = runtime.auth.register("nophone@example.com", STRONG_PASSWORD).account

        with pytest.raises(InvalidInput):
            runtime.auth.resend_verification(account.id, Purpose.SMS)

    def test_successful_verifications_do_not_consume_rate_limit(self, runtime, passenger):
        # Verification endpoints allow 3 requests a minute but refund successes
        for _ in range(5):
            issued = runtime.verifier.issue(passenger.id, Purpose.EMAIL)
            runtime.auth.confirm_contact(
                passenger.id, Purpose.EMAIL, issued.code, client_address="198.51.100.4"
            )

    def test_failed_verifications_consume_rate_limit(self, runtime, passenger):
        for _ in range(3):
            issued = runtime.verifier.issue(passenger.id, Purpose.EMAIL)
            with pytest.raises(VerificationMismatch):
                runtime.auth.confirm_contact(
                    passenger.id, Purpose.EMAIL, "x" + issued.code, client_address="198.51.100.4"
                )

        with pytest.raises(RateLimited):
            runtime.auth.confirm_contact(
                passenger.id, Purpose.EMAIL, "000000", client_address="198.51.100.4"
            )


class TestPasswordRecovery:
    def test_reset_flow_replaces_password_and_ends_sessions(self, runtime, passenger, outbox, audit):
        session = runtime.auth.login("rider@example.com", STRONG_PASSWORD).tokens

        runtime.auth.request_password_reset("rider@example.com")
        code = outbox.last_code("password-reset")
        ended = runtime.auth.complete_password_reset("rider@example.com", code, NEW_PASSWORD)

        assert ended == 1
        with pytest.raises(SessionInvalid):
            runtime.auth.authenticate(session.access_token)
        with pytest.raises(InvalidCredentials):
            runtime.auth.login("rider@example.com", STRONG_PASSWORD)
        assert runtime.auth.login("rider@example.com", NEW_PASSWORD).tokens
        assert audit.of("password_reset_completed")[0]["sessions_invalidated"] == 1

    def test_reset_clears_lockout(self, runtime, passenger, outbox):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                runtime.auth.login("rider@example.com", "Wr0ng!Pass")

        runtime.auth.request_password_reset("rider@example.com")
        runtime.auth.complete_password_reset(
            "rider@example.com", outbox.last_code("password-reset"), NEW_PASSWORD
        )

        assert runtime.auth.login("rider@example.com", NEW_PASSWORD).tokens

    def test_unknown_email_is_silent(self, runtime, outbox):
        assert runtime.auth.request_password_reset("ghost@example.com") is None
        assert outbox.email.sent == []

    def test_repeated_reset_request_is_silent_during_cooldown(self, runtime, passenger, outbox):
        runtime.auth.request_password_reset("rider@example.com")
        runtime.auth.request_password_reset("rider@example.com")

        assert [m["template_id"] for m in outbox.email.sent].count("password-reset") == 1

    def test_reset_without_request_fails(self, runtime, passenger):
        with pytest.raises(VerificationNotFound):
            runtime.auth.complete_password_reset("rider@example.com", "123456", NEW_PASSWORD)

    def test_reset_rejects_weak_password_without_spending_code(self, runtime, passenger, outbox):
        runtime.auth.request_password_reset("rider@example.com")
        code = outbox.last_code("password-reset")

        with pytest.raises(InvalidInput):
            runtime.auth.complete_password_reset("rider@example.com", code, "weak")

        assert runtime.auth.complete_password_reset("rider@example.com", code, NEW_PASSWORD) == 0


class TestChangePassword:
    def test_change_requires_current_password(self, runtime, passenger):
        with pytest.raises(InvalidCredentials):
            runtime.auth.change_password(passenger.id, "Wr0ng!Pass", NEW_PASSWORD)

    def test_change_ends_all_sessions(self, runtime, passenger, audit):
        first = runtime.auth.login("rider@example.com", STRONG_PASSWORD).tokens
        runtime.auth.login("+15550101", STRONG_PASSWORD)

        assert runtime.auth.change_password(passenger.id, STRONG_PASSWORD, NEW_PASSWORD) == 2
        with pytest.raises(SessionInvalid):
            runtime.auth.authenticate(first.access_token)
        assert "password_changed" in audit.names()

    def test_change_to_same_password_is_rejected(self, runtime, passenger):
        with pytest.raises(InvalidInput):
            runtime.auth.change_password(passenger.id, STRONG_PASSWORD, STRONG_PASSWORD)


def test_logout_is_idempotent(runtime, passenger):
    tokens = runtime.auth.login("rider@example.com", STRONG_PASSWORD).tokens

    assert runtime.auth.logout(tokens.access_token) is True
    assert runtime.auth.logout(tokens.access_token) is True
    with pytest.raises(SessionInvalid):
        runtime.auth.refresh(tokens.refresh_token)
