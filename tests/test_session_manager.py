"""
test_session_manager.py — Session lifecycle and SMS code verification.

Covers:
    • Anonymous session creation and device restore
    • Phone normalisation and format rejection
    • Code confirmation: success, mismatch, expiry, attempt reset
    • Device binding and token-gated restore
    • Challenges shared through the store across manager instances
    • Sign-out (fresh session, subscriber record dropped)
    • Per-session serialisation of concurrent confirmations
    • Redis-backed store against a fake client

Run with:
    pytest tests/test_session_manager.py -v
"""

from __future__ import annotations

import asyncio
import gc
import json
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from vecisafe.app.core.errors import (
    CodeExpiredError,
    CodeMismatchError,
    DeviceAlreadyRegisteredError,
    ExternalServiceError,
    InvalidPhoneFormatError,
    InvalidSessionStateError,
    NotFoundError,
    StorageUnavailableError,
    UnauthenticatedError,
    VerificationAttemptsExceededError,
)
from vecisafe.app.alerts.channels.sms import VerificationTransport
from vecisafe.app.sessions.manager import SessionManager, normalize_phone
from vecisafe.app.sessions.models import Session, SessionPhase, VerificationChallenge
from vecisafe.app.sessions.store import InMemorySessionStore, RedisSessionStore

from conftest import NYC, TEST_SECRET, FakeClock, verify

PHONE = "+12125550142"


def _wrong(code: str) -> str:
    return "0" * len(code) if code != "0" * len(code) else "1" * len(code)


# ═══════════════════════════════════════════════════════════════════════════
# Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateAnonymous:

    async def test_new_session_is_anonymous(self, session_manager):
        session = await session_manager.create_anonymous()
        assert session.phase == SessionPhase.ANONYMOUS
        assert session.session_id.startswith("ses_")
        assert await session_manager.get(session.session_id) == session

    async def test_ids_unique(self, session_manager):
        ids = {(await session_manager.create_anonymous()).session_id for _ in range(20)}
        assert len(ids) == 20

    async def test_device_restore(self, session_manager):
        first = await session_manager.current_for_device("device-1")
        again = await session_manager.current_for_device("device-1")
        assert first.session_id == again.session_id

    async def test_get_unknown(self, session_manager):
        with pytest.raises(NotFoundError):
            await session_manager.get("ses_missing")


# ═══════════════════════════════════════════════════════════════════════════
# Device binding
# ═══════════════════════════════════════════════════════════════════════════

class TestDevices:

    async def test_register_binds_and_returns_token(self, session_manager):
        session, token = await session_manager.register_device("phone-1")
        assert session.device_id == "phone-1"
        assert token == session_manager.device_token("phone-1")
        assert (await session_manager.current_for_device("phone-1")).session_id == session.session_id

    async def test_bound_device_cannot_be_claimed(self, session_manager):
        owner, _ = await session_manager.register_device("phone-1")
        with pytest.raises(DeviceAlreadyRegisteredError) as exc_info:
            await session_manager.register_device("phone-1")
        assert exc_info.value.status_code == 409
        assert (await session_manager.current_for_device("phone-1")).session_id == owner.session_id

    async def test_restore_needs_matching_token(self, session_manager):
        owner, token = await session_manager.register_device("phone-1")
        for bad in (None, "", "f" * 64, session_manager.device_token("phone-2"), "çà"):
            with pytest.raises(UnauthenticatedError):
                await session_manager.restore_device("phone-1", bad)
        restored = await session_manager.restore_device("phone-1", token)
        assert restored.session_id == owner.session_id

    async def test_token_survives_sign_out(self, session_manager):
        owner, token = await session_manager.register_device("phone-1")
        fresh = await session_manager.sign_out(owner)
        assert (await session_manager.restore_device("phone-1", token)).session_id == fresh.session_id


# ═══════════════════════════════════════════════════════════════════════════
# Phone format
# ═══════════════════════════════════════════════════════════════════════════

class TestPhoneFormat:

    @pytest.mark.parametrize("raw,expected", [
        ("+1 (212) 555-0142", "+12125550142"),
        ("+34.600.123.456", "+34600123456"),
        ("2125550142", "2125550142"),
    ])
    def test_normalised(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "+0123456789", "12345", "+1234567890123456"])
    def test_rejected(self, raw):
        with pytest.raises(InvalidPhoneFormatError) as exc_info:
            normalize_phone(raw)
        assert exc_info.value.field == "phone_number"

    async def test_bad_phone_leaves_session_untouched(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        with pytest.raises(InvalidPhoneFormatError):
            await session_manager.request_verification(session, "not-a-phone")
        assert (await session_manager.get(session.session_id)).phase == SessionPhase.ANONYMOUS
        assert sms.outbox == []


# ═══════════════════════════════════════════════════════════════════════════
# Verification
# ═══════════════════════════════════════════════════════════════════════════

class TestVerification:

    async def test_request_moves_to_pending_and_sends_code(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        await session_manager.request_verification(session, PHONE)
        assert (await session_manager.get(session.session_id)).phase == SessionPhase.PENDING_VERIFICATION
        code = sms.last_code_for(PHONE)
        assert code is not None and len(code) == 6 and code.isdigit()

    async def test_correct_code_verifies(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        verified = await verify(session_manager, sms, session, PHONE)
        assert verified.is_verified
        assert verified.verified_at is not None
        assert verified.phone_number_hash and PHONE not in verified.phone_number_hash
        assert await session_manager.get(session.session_id) == verified

    async def test_mismatch_keeps_pending(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        await session_manager.request_verification(session, PHONE)
        code = sms.last_code_for(PHONE)

        with pytest.raises(CodeMismatchError) as exc_info:
            await session_manager.confirm_verification(session, _wrong(code))
        assert exc_info.value.details["remaining_attempts"] == 4
        assert (await session_manager.get(session.session_id)).phase == SessionPhase.PENDING_VERIFICATION

        verified = await session_manager.confirm_verification(session, code)
        assert verified.is_verified

    async def test_attempts_exhausted_resets_to_anonymous(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        await session_manager.request_verification(session, PHONE)
        wrong = _wrong(sms.last_code_for(PHONE))

        for _ in range(4):
            with pytest.raises(CodeMismatchError):
                await session_manager.confirm_verification(session, wrong)
        with pytest.raises(VerificationAttemptsExceededError):
            await session_manager.confirm_verification(session, wrong)

        assert (await session_manager.get(session.session_id)).phase == SessionPhase.ANONYMOUS
        with pytest.raises(InvalidSessionStateError):
            await session_manager.confirm_verification(session, wrong)

    async def test_retry_after_reset(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        await session_manager.request_verification(session, PHONE)
        wrong = _wrong(sms.last_code_for(PHONE))
        for _ in range(4):
            with pytest.raises(CodeMismatchError):
                await session_manager.confirm_verification(session, wrong)
        with pytest.raises(VerificationAttemptsExceededError):
            await session_manager.confirm_verification(session, wrong)

        verified = await verify(session_manager, sms, session, PHONE)
        assert verified.is_verified

    async def test_expired_code(self, session_store, geo_index, sms):
        clock = FakeClock(datetime(2026, 3, 1, tzinfo=timezone.utc))
        manager = SessionManager(
            session_store, geo_index, sms,
            secret_key=TEST_SECRET, code_ttl_seconds=300, clock=clock,
        )
        session = await manager.create_anonymous()
        await manager.request_verification(session, PHONE)
        code = sms.last_code_for(PHONE)

        clock.now += timedelta(seconds=301)
        with pytest.raises(CodeExpiredError):
            await manager.confirm_verification(session, code)
        assert (await manager.get(session.session_id)).phase == SessionPhase.PENDING_VERIFICATION

    async def test_confirm_without_request(self, session_manager):
        session = await session_manager.create_anonymous()
        with pytest.raises(InvalidSessionStateError):
            await session_manager.confirm_verification(session, "123456")

    async def test_verified_cannot_request_again(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        await verify(session_manager, sms, session, PHONE)
        with pytest.raises(InvalidSessionStateError):
            await session_manager.request_verification(session, PHONE)

    async def test_new_request_replaces_code(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        await session_manager.request_verification(session, PHONE)
        first = sms.last_code_for(PHONE)
        await session_manager.request_verification(session, PHONE)
        second = sms.last_code_for(PHONE)
        if first != second:
            with pytest.raises(CodeMismatchError):
                await session_manager.confirm_verification(session, first)
        assert (await session_manager.confirm_verification(session, second)).is_verified

    async def test_transport_failure_leaves_session_anonymous(self, session_store, geo_index):
        class BrokenSms(VerificationTransport):
            async def send_code(self, phone_number, code):
                raise ExternalServiceError("sms_gateway", "503")

        manager = SessionManager(session_store, geo_index, BrokenSms(), secret_key=TEST_SECRET)
        session = await manager.create_anonymous()
        with pytest.raises(ExternalServiceError):
            await manager.request_verification(session, PHONE)
        assert (await manager.get(session.session_id)).phase == SessionPhase.ANONYMOUS

    async def test_concurrent_confirms_serialised(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        await session_manager.request_verification(session, PHONE)
        code = sms.last_code_for(PHONE)

        results = await asyncio.gather(
            session_manager.confirm_verification(session, code),
            session_manager.confirm_verification(session, code),
            return_exceptions=True,
        )
        verified = [r for r in results if isinstance(r, Session)]
        rejected = [r for r in results if isinstance(r, InvalidSessionStateError)]
        assert len(verified) == 1 and len(rejected) == 1

    async def test_locks_released_after_transitions(self, session_manager, sms):
        session = await session_manager.create_anonymous()
        await verify(session_manager, sms, session, PHONE)
        await session_manager.sign_out(session)
        gc.collect()
        assert len(session_manager._locks) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Challenges shared through the store
# ═══════════════════════════════════════════════════════════════════════════

class TestSharedChallenges:

    def _pair(self, store, geo_index, sms):
        return (
            SessionManager(store, geo_index, sms, secret_key=TEST_SECRET),
            SessionManager(store, geo_index, sms, secret_key=TEST_SECRET),
        )

    async def test_other_instance_confirms(self, session_store, geo_index, sms):
        first, second = self._pair(session_store, geo_index, sms)
        session = await first.create_anonymous()
        await first.request_verification(session, PHONE)

        verified = await second.confirm_verification(session, sms.last_code_for(PHONE))
        assert verified.is_verified
        assert await session_store.get_challenge(session.session_id) is None

    async def test_attempts_counted_across_instances(self, session_store, geo_index, sms):
        first, second = self._pair(session_store, geo_index, sms)
        session = await first.create_anonymous()
        await first.request_verification(session, PHONE)
        wrong = _wrong(sms.last_code_for(PHONE))

        with pytest.raises(CodeMismatchError):
            await first.confirm_verification(session, wrong)
        with pytest.raises(CodeMismatchError) as exc_info:
            await second.confirm_verification(session, wrong)
        assert exc_info.value.details["remaining_attempts"] == 3

    async def test_lapsed_challenge_reads_as_expired(self, geo_index, sms):
        ticks = [0.0]
        store = InMemorySessionStore(monotonic=lambda: ticks[0])
        manager = SessionManager(store, geo_index, sms, secret_key=TEST_SECRET, code_ttl_seconds=300)
        session = await manager.create_anonymous()
        await manager.request_verification(session, PHONE)

        ticks[0] = 301.0
        assert await store.get_challenge(session.session_id) is None
        with pytest.raises(CodeExpiredError):
            await manager.confirm_verification(session, sms.last_code_for(PHONE))
        assert (await manager.get(session.session_id)).phase == SessionPhase.PENDING_VERIFICATION


# ═══════════════════════════════════════════════════════════════════════════
# Sign-out
# ═══════════════════════════════════════════════════════════════════════════

class TestSignOut:

    async def test_returns_fresh_anonymous_session(self, session_manager, sms, geo_index):
        session = await session_manager.create_anonymous("device-9")
        await verify(session_manager, sms, session, PHONE)
        geo_index.upsert(session.session_id, NYC)

        fresh = await session_manager.sign_out(session)

        assert fresh.session_id != session.session_id
        assert fresh.phase == SessionPhase.ANONYMOUS
        assert fresh.device_id == "device-9"
        assert session.session_id not in geo_index
        with pytest.raises(NotFoundError):
            await session_manager.get(session.session_id)
        assert (await session_manager.current_for_device("device-9")).session_id == fresh.session_id

    async def test_sign_out_unknown_session_still_succeeds(self, session_manager):
        fresh = await session_manager.sign_out("ses_gone")
        assert fresh.is_anonymous


# ═══════════════════════════════════════════════════════════════════════════
# Redis store
# ═══════════════════════════════════════════════════════════════════════════

class FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.data = {}
        self.ttls = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def ping(self):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return True

    async def aclose(self):
        pass


class TestRedisSessionStore:

    async def test_round_trip(self):
        client = FakeRedis()
        store = RedisSessionStore(prefix="t", client=client)
        session = Session(device_id="d1")
        await store.set(session)
        assert json.loads(client.data[f"t:session:{session.session_id}"])["phase"] == "anonymous"
        assert await store.get(session.session_id) == session

        await store.set_device_session("d1", session.session_id)
        assert await store.get_device_session("d1") == session.session_id

        await store.delete(session.session_id)
        assert await store.get(session.session_id) is None

    async def test_unavailable(self):
        store = RedisSessionStore(client=FakeRedis(fail=True))
        with pytest.raises(StorageUnavailableError):
            await store.set(Session())
        assert await store.ping() is False

    async def test_manager_surfaces_storage_errors(self, geo_index, sms):
        manager = SessionManager(
            RedisSessionStore(client=FakeRedis(fail=True)), geo_index, sms, secret_key=TEST_SECRET,
        )
        with pytest.raises(StorageUnavailableError):
            await manager.create_anonymous()

    async def test_in_memory_len(self):
        store = InMemorySessionStore()
        await store.set(Session())
        assert len(store) == 1

    async def test_challenge_written_with_ttl(self):
        client = FakeRedis()
        store = RedisSessionStore(prefix="t", client=client)
        challenge = VerificationChallenge(
            code_hash="c" * 64, phone_hash="p" * 64,
            expires_at=datetime(2026, 3, 1, 12, 5, tzinfo=timezone.utc),
        )
        await store.set_challenge("ses_1", challenge, 300)
        assert client.ttls["t:challenge:ses_1"] == 300
        assert await store.get_challenge("ses_1") == challenge

        await store.delete_challenge("ses_1")
        assert await store.get_challenge("ses_1") is None

    async def test_verification_across_instances_over_redis(self, geo_index, sms):
        store = RedisSessionStore(prefix="t", client=FakeRedis())
        first = SessionManager(store, geo_index, sms, secret_key=TEST_SECRET)
        second = SessionManager(store, geo_index, sms, secret_key=TEST_SECRET)

        session = await first.create_anonymous()
        await first.request_verification(session, PHONE)
        verified = await second.confirm_verification(session, sms.last_code_for(PHONE))
        assert verified.is_verified
