from datetime import timedelta

import pytest

from rideauth.service.errors import (
    SessionInvalid,
    TokenExpired,
    TokenInvalid,
    Unauthenticated,
)
from rideauth.service.sessions import SessionRegistry
from rideauth.service.tokens import TokenIssuer


@pytest.fixture
def registry(runtime):
    return runtime.sessions


@pytest.fixture
def tokens(registry, passenger):
    return registry.create_session(
        passenger.id, passenger.role, passenger.verified, device="pixel-8", client_address="10.0.0.7"
    )


def test_create_session_returns_usable_tokens(registry, passenger, tokens):
    principal = registry.authenticate(tokens.access_token)

    assert principal.account_id == passenger.id
    assert principal.role == "passenger"
    assert principal.verified is False
    assert principal.session_id == tokens.session_id
    assert tokens.access_expires_in == 24 * 3600
    assert tokens.refresh_expires_in == 7 * 24 * 3600


def test_only_fingerprints_are_stored(memory_store, tokens):
    stored = memory_store.get_session(tokens.session_id)

    assert tokens.access_token not in (stored.access_fp, stored.refresh_fp)
    assert len(stored.access_fp) == 64


def test_stored_session_records_issue_context(memory_store, passenger, tokens, clock):
    stored = memory_store.get_session(tokens.session_id)

    assert stored.account_id == passenger.id
    assert stored.issued_at == stored.last_activity_at == clock.now
    assert stored.access_expires_at == clock.now + timedelta(hours=24)
    assert stored.refresh_expires_at == clock.now + timedelta(days=7)
    assert (stored.device, stored.client_address) == ("pixel-8", "10.0.0.7")
    assert stored.active is True


def test_authenticate_rejects_refresh_tokens(registry, tokens):
    with pytest.raises(Unauthenticated):
        registry.authenticate(tokens.refresh_token)


def test_authenticate_rejects_missing_and_garbage_tokens(registry):
    with pytest.raises(Unauthenticated):
        registry.authenticate(None)
    with pytest.raises(Unauthenticated):
        registry.authenticate("not.a.token")


def test_non_ascii_signature_is_unauthenticated(registry, tokens):
    header, payload, _ = tokens.access_token.split(".")

    with pytest.raises(Unauthenticated):
        registry.authenticate(f"{header}.{payload}.\u00e9\u00e9")
    with pytest.raises(TokenInvalid):
        registry.refresh_access_token(f"{header}.{payload}.\u00e9\u00e9")


def test_authenticate_updates_last_activity(registry, memory_store, tokens, clock):
    clock.advance(minutes=10)
    registry.authenticate(tokens.access_token)

    assert memory_store.get_session(tokens.session_id).last_activity_at == clock.now


def test_expired_access_token_can_be_refreshed(registry, tokens, clock):
    clock.advance(hours=25)
    with pytest.raises(TokenExpired):
        registry.authenticate(tokens.access_token)

    refreshed = registry.refresh_access_token(tokens.refresh_token)

    assert registry.authenticate(refreshed.access_token).session_id == tokens.session_id
    assert refreshed.refresh_token is None


def test_refresh_replaces_the_live_access_token(registry, tokens):
    refreshed = registry.refresh_access_token(tokens.refresh_token)

    with pytest.raises(SessionInvalid):
        registry.authenticate(tokens.access_token)
    assert registry.authenticate(refreshed.access_token)


def test_refresh_fails_after_refresh_expiry(registry, tokens, clock):
    clock.advance(days=7)

    with pytest.raises(TokenExpired):
        registry.refresh_access_token(tokens.refresh_token)


def test_refresh_rejects_access_tokens(registry, tokens):
    with pytest.raises(TokenInvalid):
        registry.refresh_access_token(tokens.access_token)


def test_refresh_picks_up_current_verification(registry, memory_store, passenger, tokens):
    memory_store.mark_contact_verified(passenger.id, "email")
    memory_store.mark_contact_verified(passenger.id, "sms")

    refreshed = registry.refresh_access_token(tokens.refresh_token)
    claims = registry.issuer.verify(refreshed.access_token)

    assert claims["verified"] is True
    assert registry.authenticate(refreshed.access_token).verified is True


def test_rotation_retires_the_previous_refresh_token(memory_store, passenger, clock, audit):
    registry = SessionRegistry(
        memory_store,
        TokenIssuer("rotation-secret-rotation-secret-0001", clock=clock),
        rotate_refresh_tokens=True,
        audit=audit,
        clock=clock,
    )
    tokens = registry.create_session(passenger.id, passenger.role, False)

    rotated = registry.refresh_access_token(tokens.refresh_token)

    assert rotated.refresh_token is not None
    with pytest.raises(SessionInvalid):
        registry.refresh_access_token(tokens.refresh_token)
    assert registry.refresh_access_token(rotated.refresh_token).access_token


def test_invalidate_is_idempotent(registry, tokens, audit):
    assert registry.invalidate_session(tokens.access_token) is True
    assert registry.invalidate_session(tokens.access_token) is True
    assert registry.invalidate_session("never-issued") is True

    with pytest.raises(SessionInvalid):
        registry.authenticate(tokens.access_token)
    with pytest.raises(SessionInvalid):
        registry.refresh_access_token(tokens.refresh_token)
    assert len(audit.of("session_invalidated")) == 1


def test_invalidate_by_refresh_token(registry, tokens):
    registry.invalidate_session(tokens.refresh_token)

    with pytest.raises(SessionInvalid):
        registry.authenticate(tokens.access_token)


def test_invalidate_all_ends_every_session(registry, passenger, tokens):
    second = registry.create_session(passenger.id, passenger.role, False)

    assert registry.invalidate_all(passenger.id) == 2
    for token in (tokens.access_token, second.access_token):
        with pytest.raises(SessionInvalid):
            registry.authenticate(token)
    assert registry.invalidate_all(passenger.id) == 0


def test_deactivated_account_cannot_use_sessions(registry, memory_store, passenger, tokens):
    memory_store.accounts[passenger.id].is_active = False

    with pytest.raises(SessionInvalid):
        registry.authenticate(tokens.access_token)


def test_session_limit_is_advisory(registry, passenger):
    issued = [
        registry.create_session(passenger.id, passenger.role, False)
        for _ in range(registry.max_active_sessions + 2)
    ]

    for tokens in issued:
        assert registry.authenticate(tokens.access_token)
    assert len(registry.list_active_sessions(passenger.id)) == len(issued)


def test_cleanup_only_ends_fully_expired_sessions(registry, memory_store, tokens, clock):
    clock.advance(days=2)
    assert registry.cleanup_expired() == 0

    clock.advance(days=6)
    assert registry.cleanup_expired() == 1
    stored = memory_store.get_session(tokens.session_id)
    assert stored.active is False
    assert stored.ended_at == clock.now


def test_authenticate_header_parses_bearer(registry, tokens):
    principal = registry.authenticate_header(f"Bearer {tokens.access_token}")
    assert principal.session_id == tokens.session_id

    with pytest.raises(Unauthenticated):
        registry.authenticate_header(f"Basic {tokens.access_token}")
    with pytest.raises(Unauthenticated):
        registry.authenticate_header("Bearer ")


def test_access_ttl_is_honored(registry, tokens, clock):
    clock.advance(hours=23, minutes=59)
    assert registry.authenticate(tokens.access_token)

    clock.advance(minutes=1)
    with pytest.raises(TokenExpired):
        registry.authenticate(tokens.access_token)


def test_list_active_sessions_hides_ended(registry, passenger, tokens, clock):
    clock.advance(seconds=1)
    other = registry.create_session(passenger.id, passenger.role, False, device="web")
    registry.invalidate_session(tokens.access_token)

    sessions = registry.list_active_sessions(passenger.id)

    assert [s.id for s in sessions] == [other.session_id]
    assert sessions[0].device == "web"
    assert sessions[0].issued_at == clock.now
