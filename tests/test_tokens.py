"""
tests/test_tokens.py -- Unit tests for auth/tokens.py (TokenEngine).

Covers:
  - Claims: access {sub, role, tier, type, iat, exp}, refresh {sub, type="refresh"}
  - Access and refresh tokens can never be presented as each other
  - Only an HMAC of the refresh token is stored server-side
  - refresh(): new access token, same refresh token (rotation off)
  - Expired, tampered, revoked and superseded refresh tokens are rejected
  - Single-session invariant: a second issue() invalidates the first token
  - Rotation with grace window and compare-and-swap
  - Per-identity serialization under concurrent refresh / issue
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import AuthError, AuthErrorCode
from auth.models import AccessClaims, RefreshResult, Role, SubscriptionTier
from auth.tokens import TokenEngine


@pytest.fixture
def engine(store, settings) -> TokenEngine:
    return TokenEngine(store, settings)


class TestClaims:
    def test_access_token_claims(self, engine, registered, settings) -> None:
        pair = engine.issue(registered)
        payload = jwt.decode(pair.access_token, settings.access_token_secret, algorithms=["HS256"])
        assert payload["sub"] == str(registered.id)
        assert payload["role"] == "FAN"
        assert payload["tier"] == "FREE"
        assert payload["type"] == "access"
        assert payload["exp"] - payload["iat"] == settings.access_token_expire_seconds

    def test_refresh_token_claims(self, engine, registered, settings) -> None:
        pair = engine.issue(registered)
        payload = jwt.decode(pair.refresh_token, settings.refresh_token_secret, algorithms=["HS256"])
        assert payload["sub"] == str(registered.id)
        assert payload["type"] == "refresh"
        assert "role" not in payload
        assert payload["exp"] - payload["iat"] == settings.refresh_token_expire_seconds

    def test_access_expiry_matches_token(self, engine, registered, settings) -> None:
        pair = engine.issue(registered)
        payload = jwt.decode(pair.access_token, settings.access_token_secret, algorithms=["HS256"])
        assert int(pair.access_expires_at.timestamp()) == payload["exp"]
        assert 0 < pair.expires_in <= settings.access_token_expire_seconds

    def test_decode_access_token(self, engine, registered) -> None:
        claims = engine.decode_access_token(engine.issue(registered).access_token)
        assert isinstance(claims, AccessClaims)
        assert claims.identity_id == registered.id
        assert claims.role == Role.FAN
        assert claims.tier == SubscriptionTier.FREE

    def test_tokens_are_unique_within_one_second(self, engine, registered) -> None:
        first = engine.issue(registered)
        second = engine.issue(registered)
        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token


class TestTokenClassSeparation:
    def test_secrets_differ(self, settings) -> None:
        assert settings.access_token_secret != settings.refresh_token_secret

    def test_refresh_token_is_not_an_access_token(self, engine, registered) -> None:
        pair = engine.issue(registered)
        result = engine.decode_access_token(pair.refresh_token)
        assert isinstance(result, AuthError)
        assert result.code == AuthErrorCode.INVALID_TOKEN

    def test_access_token_cannot_refresh(self, engine, registered) -> None:
        pair = engine.issue(registered)
        result = engine.refresh(pair.access_token)
        assert isinstance(result, AuthError)
        assert result.code == AuthErrorCode.INVALID_TOKEN

    def test_type_claim_checked_even_with_right_secret(self, engine, registered, settings) -> None:
        now = datetime.now(timezone.utc)
        forged = jwt.encode(
            {"sub": str(registered.id), "type": "refresh", "iat": now, "exp": now + timedelta(minutes=5)},
            settings.access_token_secret,
            algorithm="HS256",
        )
        assert engine.decode_access_token(forged).code == AuthErrorCode.INVALID_TOKEN

    def test_tampered_token(self, engine, registered) -> None:
        token = engine.issue(registered).access_token
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")])
        assert engine.decode_access_token(tampered).code == AuthErrorCode.INVALID_TOKEN

    def test_garbage(self, engine) -> None:
        assert engine.decode_access_token("not.a.jwt").code == AuthErrorCode.INVALID_TOKEN
        assert engine.refresh("").code == AuthErrorCode.INVALID_TOKEN


class TestSessionReference:
    def test_only_hmac_is_stored(self, engine, registered, store) -> None:
        pair = engine.issue(registered)
        current, previous, _ = store.get_refresh_state(registered.id)
        assert current == engine.hash_refresh_token(pair.refresh_token)
        assert current != pair.refresh_token
        assert len(current) == 64
        assert previous is None


class TestRefresh:
    def test_returns_new_access_token_only(self, engine, registered) -> None:
        pair = engine.issue(registered)
        result = engine.refresh(pair.refresh_token)
        assert isinstance(result, RefreshResult)
        assert result.access_token != pair.access_token
        assert result.refresh_token is None
        # The same refresh token keeps working.
        assert isinstance(engine.refresh(pair.refresh_token), RefreshResult)

    def test_refresh_after_access_expiry(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(access_token_expire_seconds=-30))
        pair = engine.issue(registered)
        assert engine.decode_access_token(pair.access_token).code == AuthErrorCode.EXPIRED
        result = engine.refresh(pair.refresh_token)
        assert isinstance(result, RefreshResult)
        assert result.refresh_token is None

    def test_picks_up_role_change(self, engine, registered, store) -> None:
        pair = engine.issue(registered)
        store.update_identity(registered.id, role=Role.MODERATOR, subscription_tier=SubscriptionTier.VIP)
        claims = engine.decode_access_token(engine.refresh(pair.refresh_token).access_token)
        assert claims.role == Role.MODERATOR
        assert claims.tier == SubscriptionTier.VIP

    def test_expired_refresh_token(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(refresh_token_expire_seconds=-30))
        pair = engine.issue(registered)
        result = engine.refresh(pair.refresh_token)
        assert isinstance(result, AuthError)
        assert result.code == AuthErrorCode.EXPIRED
        assert result.is_terminal

    def test_revoked_refresh_token(self, engine, registered) -> None:
        pair = engine.issue(registered)
        engine.revoke(registered.id)
        result = engine.refresh(pair.refresh_token)
        assert result.code == AuthErrorCode.REVOKED
        # Revocation is permanent for that token.
        assert engine.refresh(pair.refresh_token).code == AuthErrorCode.REVOKED

    def test_single_session_invariant(self, engine, registered) -> None:
        first = engine.issue(registered)
        second = engine.issue(registered)
        assert engine.refresh(first.refresh_token).code == AuthErrorCode.REVOKED
        assert isinstance(engine.refresh(second.refresh_token), RefreshResult)

    def test_unknown_identity(self, engine, registered, settings) -> None:
        now = datetime.now(timezone.utc)
        orphan = jwt.encode(
            {"sub": "9999", "type": "refresh", "iat": now, "exp": now + timedelta(minutes=5), "jti": "x"},
            settings.refresh_token_secret,
            algorithm="HS256",
        )
        assert engine.refresh(orphan).code == AuthErrorCode.INVALID_TOKEN

    def test_updates_last_active(self, engine, registered, store) -> None:
        pair = engine.issue(registered)
        before = store.get_by_id(registered.id).last_active_at
        engine.refresh(pair.refresh_token)
        assert store.get_by_id(registered.id).last_active_at >= before


class TestRevokeByRefreshToken:
    def test_revokes_current(self, engine, registered, store) -> None:
        pair = engine.issue(registered)
        assert engine.revoke_by_refresh_token(pair.refresh_token) is None
        assert store.get_refresh_state(registered.id)[0] is None

    def test_superseded_token_cannot_revoke_newer_session(self, engine, registered) -> None:
        first = engine.issue(registered)
        second = engine.issue(registered)
        assert engine.revoke_by_refresh_token(first.refresh_token).code == AuthErrorCode.REVOKED
        assert isinstance(engine.refresh(second.refresh_token), RefreshResult)

    def test_expired_token_still_revokes(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(refresh_token_expire_seconds=-30))
        pair = engine.issue(registered)
        assert engine.revoke_by_refresh_token(pair.refresh_token) is None
        assert store.get_refresh_state(registered.id)[0] is None

    def test_already_logged_out_is_ok(self, engine, registered) -> None:
        pair = engine.issue(registered)
        engine.revoke(registered.id)
        assert engine.revoke_by_refresh_token(pair.refresh_token) is None

    def test_access_token_rejected(self, engine, registered) -> None:
        pair = engine.issue(registered)
        assert engine.revoke_by_refresh_token(pair.access_token).code == AuthErrorCode.INVALID_TOKEN


class TestRotation:
    def test_rotates_on_every_use(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(rotate_refresh_tokens=True))
        pair = engine.issue(registered)
        result = engine.refresh(pair.refresh_token)
        assert result.refresh_token is not None
        assert result.refresh_token != pair.refresh_token
        assert isinstance(engine.refresh(result.refresh_token), RefreshResult)

    def test_previous_token_within_grace_gets_access_only(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(rotate_refresh_tokens=True, refresh_grace_seconds=30))
        pair = engine.issue(registered)
        rotated = engine.refresh(pair.refresh_token)
        again = engine.refresh(pair.refresh_token)
        assert isinstance(again, RefreshResult)
        assert again.refresh_token is None
        # The grace path does not rotate: the new token is still current.
        assert isinstance(engine.refresh(rotated.refresh_token), RefreshResult)

    def test_previous_token_after_grace_is_revoked(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(rotate_refresh_tokens=True, refresh_grace_seconds=0))
        pair = engine.issue(registered)
        engine.refresh(pair.refresh_token)
        assert engine.refresh(pair.refresh_token).code == AuthErrorCode.REVOKED

    def test_two_generations_back_is_revoked(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(rotate_refresh_tokens=True, refresh_grace_seconds=30))
        pair = engine.issue(registered)
        second = engine.refresh(pair.refresh_token).refresh_token
        engine.refresh(second)
        assert engine.refresh(pair.refresh_token).code == AuthErrorCode.REVOKED

    def test_new_login_clears_grace(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(rotate_refresh_tokens=True, refresh_grace_seconds=30))
        pair = engine.issue(registered)
        engine.refresh(pair.refresh_token)
        engine.issue(registered)
        assert engine.refresh(pair.refresh_token).code == AuthErrorCode.REVOKED

    def test_lost_compare_and_swap_is_revoked(self, store, registered, settings_factory) -> None:
        """A rotation whose expected hash was replaced underneath it must not clobber the newer session."""
        engine = TokenEngine(store, settings_factory(rotate_refresh_tokens=True))
        pair = engine.issue(registered)
        presented = engine.hash_refresh_token(pair.refresh_token)
        store.replace_refresh_token_hash(registered.id, "0" * 64)
        result = engine._refresh_current(registered.id, presented)
        assert result.code == AuthErrorCode.REVOKED
        assert store.get_refresh_state(registered.id)[0] == "0" * 64


class TestConcurrency:
    def test_concurrent_refreshes_rotate_once(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(rotate_refresh_tokens=True, refresh_grace_seconds=30))
        pair = engine.issue(registered)
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: engine.refresh(pair.refresh_token), range(8)))
        assert all(isinstance(r, RefreshResult) for r in results)
        rotated = [r.refresh_token for r in results if r.refresh_token is not None]
        assert len(rotated) == 1
        current = store.get_refresh_state(registered.id)[0]
        assert current == engine.hash_refresh_token(rotated[0])

    def test_concurrent_logins_leave_exactly_one_session(self, engine, registered) -> None:
        barrier = threading.Barrier(6)

        def login(_):
            barrier.wait()
            return engine.issue(registered)

        with ThreadPoolExecutor(max_workers=6) as pool:
            pairs = list(pool.map(login, range(6)))
        working = [p for p in pairs if isinstance(engine.refresh(p.refresh_token), RefreshResult)]
        assert len(working) == 1

    def test_refresh_racing_login_never_resurrects_old_token(self, store, registered, settings_factory) -> None:
        engine = TokenEngine(store, settings_factory(rotate_refresh_tokens=True, refresh_grace_seconds=0))
        old = engine.issue(registered)
        barrier = threading.Barrier(2)

        def do_refresh():
            barrier.wait()
            return engine.refresh(old.refresh_token)

        def do_login():
            barrier.wait()
            return engine.issue(registered)

        with ThreadPoolExecutor(max_workers=2) as pool:
            refresh_future = pool.submit(do_refresh)
            login_future = pool.submit(do_login)
            refresh_future.result()
            new_pair = login_future.result()

        # Whichever ran first, the login's token is the live session afterwards.
        assert isinstance(engine.refresh(new_pair.refresh_token), RefreshResult)
        assert engine.refresh(old.refresh_token).code == AuthErrorCode.REVOKED

    def test_identity_locks_are_released_after_use(self, engine, registered) -> None:
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda _: engine.issue(registered), range(8)))
        engine.revoke(registered.id)
        assert len(engine._lock_for) == 0

    def test_identity_lock_still_serializes(self, engine) -> None:
        inside = []
        overlap = []
        barrier = threading.Barrier(4)

        def hold(_):
            barrier.wait()
            with engine._lock_for(42):
                inside.append(1)
                overlap.append(len(inside))
                time.sleep(0.01)
                inside.pop()

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(hold, range(4)))
        assert max(overlap) == 1
        assert len(engine._lock_for) == 0
