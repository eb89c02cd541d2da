"""
Тесты для modules/auth/sessions.py
"""
import time

import pytest

from modules.auth.audit import SECURITY_EVENT_TOPIC, flush_security_events
from modules.auth.constants import AUTH_SESSIONS_NAMESPACE
from modules.auth.errors import SessionHijackSuspected, SessionRevoked
from modules.auth.sessions import (
    create_session,
    get_live_session,
    get_session,
    is_regeneration_due,
    list_sessions,
    regenerate_session,
    restore_session_trust,
    revoke_all_sessions,
    revoke_session,
    cleanup_expired_sessions,
    session_stats,
    touch_session,
)
from modules.auth.utils import make_fingerprint

T0 = time.time()


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_and_get(self, runtime, user, fp_home):
        session = await create_session(runtime, user["user_id"], fp_home)

        assert len(session["session_id"]) >= 32
        stored = await get_session(runtime, session["session_id"])
        assert stored["user_id"] == user["user_id"]
        assert stored["trust"] == "normal"
        assert stored["fingerprint"]["ip_prefix"] == "192.168.1.0/24"

    @pytest.mark.asyncio
    async def test_unknown_session(self, runtime):
        assert await get_session(runtime, "missing") is None
        assert await get_session(runtime, "") is None
        with pytest.raises(SessionRevoked):
            await get_live_session(runtime, "missing")

    @pytest.mark.asyncio
    async def test_session_limit_evicts_least_recent(self, runtime, user):
        """Тест: сверх лимита отзывается самая давно неактивная сессия."""
        runtime.config.max_concurrent_sessions = 3
        created = []
        for i in range(3):
            created.append(await create_session(runtime, user["user_id"], now=T0 + i))

        newest = await create_session(runtime, user["user_id"], now=T0 + 10)

        evicted = await get_session(runtime, created[0]["session_id"], allow_revoked=True)
        assert evicted["revoked_reason"] == "session_limit"
        live = await list_sessions(runtime, user["user_id"], now=T0 + 10)
        assert {s["session_id"] for s in live} == {
            created[1]["session_id"], created[2]["session_id"], newest["session_id"],
        }


class TestTouchAndHijack:
    """Сверка fingerprint при каждом обращении."""

    @pytest.mark.asyncio
    async def test_same_subnet_is_not_a_change(self, runtime, user, fp_home):
        session = await create_session(runtime, user["user_id"], fp_home, now=T0)
        moved = make_fingerprint("192.168.1.99", fp_home["user_agent"])

        touched = await touch_session(runtime, session["session_id"], moved, now=T0 + 5)

        assert touched["last_seen_at"] == T0 + 5
        assert touched["fingerprint"]["ip"] == "192.168.1.99"
        assert touched["trust"] == "normal"

    @pytest.mark.asyncio
    async def test_soft_hijack_downgrades(self, runtime, user, fp_home, fp_attacker):
        """Тест: резкая смена fingerprint в пределах окна -> downgraded + reauth."""
        session = await create_session(runtime, user["user_id"], fp_home, now=T0)

        with pytest.raises(SessionHijackSuspected) as exc_info:
            await touch_session(runtime, session["session_id"], fp_attacker, now=T0 + 60)

        assert exc_info.value.hard is False
        assert exc_info.value.session["trust"] == "downgraded"
        stored = await get_session(runtime, session["session_id"])
        assert stored["reauth_required"] is True
        # Эталонный fingerprint не перезаписывается подозрительным
        assert stored["fingerprint"]["ip"] == fp_home["ip"]

    @pytest.mark.asyncio
    async def test_soft_hijack_logged_once_per_fingerprint(self, runtime, user, fp_home, fp_attacker):
        session = await create_session(runtime, user["user_id"], fp_home, now=T0)
        events = []

        async def collect(event_type, event):
            events.append(event)

        runtime.event_bus.subscribe(SECURITY_EVENT_TOPIC, collect)

        for offset in (10, 20, 30):
            with pytest.raises(SessionHijackSuspected):
                await touch_session(runtime, session["session_id"], fp_attacker, now=T0 + offset)

        await flush_security_events(runtime)
        hijacks = [e for e in events if e["category"] == "session_hijack_suspected"]
        assert len(hijacks) == 1

    @pytest.mark.asyncio
    async def test_hard_policy_revokes(self, runtime, user, fp_home, fp_attacker):
        runtime.config.hijack_policy = "hard"
        session = await create_session(runtime, user["user_id"], fp_home, now=T0)

        with pytest.raises(SessionHijackSuspected) as exc_info:
            await touch_session(runtime, session["session_id"], fp_attacker, now=T0 + 60)

        assert exc_info.value.hard is True
        assert await get_session(runtime, session["session_id"]) is None
        with pytest.raises(SessionRevoked):
            await touch_session(runtime, session["session_id"], fp_home, now=T0 + 61)

    @pytest.mark.asyncio
    async def test_change_after_window_is_accepted(self, runtime, user, fp_home, fp_attacker):
        """Тест: смена сети после долгой паузы — не перехват."""
        session = await create_session(runtime, user["user_id"], fp_home, now=T0)
        later = T0 + runtime.config.hijack_window_seconds + 1

        touched = await touch_session(runtime, session["session_id"], fp_attacker, now=later)

        assert touched["trust"] == "normal"
        assert touched["fingerprint"]["ip"] == fp_attacker["ip"]

    @pytest.mark.asyncio
    async def test_restore_trust(self, runtime, user, fp_home, fp_attacker):
        """Тест: повторная проверка пароля возвращает доверие и новый эталон."""
        session = await create_session(runtime, user["user_id"], fp_home, now=T0)
        with pytest.raises(SessionHijackSuspected):
            await touch_session(runtime, session["session_id"], fp_attacker, now=T0 + 60)

        restored = await restore_session_trust(runtime, session["session_id"], fp_attacker, now=T0 + 70)

        assert restored["trust"] == "normal"
        assert restored["reauth_required"] is False
        touched = await touch_session(runtime, session["session_id"], fp_attacker, now=T0 + 80)
        assert touched["trust"] == "normal"


class TestRegeneration:

    @pytest.mark.asyncio
    async def test_due_after_interval(self, runtime, user):
        session = await create_session(runtime, user["user_id"], now=T0)
        interval = runtime.config.session_regeneration_seconds
        assert is_regeneration_due(session, interval, now=T0 + interval - 1) is False
        assert is_regeneration_due(session, interval, now=T0 + interval) is True

    @pytest.mark.asyncio
    async def test_old_id_becomes_tombstone(self, runtime, user, fp_home):
        session = await create_session(runtime, user["user_id"], fp_home)

        moved = await regenerate_session(runtime, session["session_id"])

        assert moved["session_id"] != session["session_id"]
        assert moved["rotation_counter"] == 1
        assert moved["fingerprint"] == session["fingerprint"]
        tombstone = await get_session(runtime, session["session_id"], allow_revoked=True)
        assert tombstone["revoked_reason"] == "regenerated"
        assert tombstone["replaced_by"] == moved["session_id"]
        sessions = await list_sessions(runtime, user["user_id"])
        assert [s["session_id"] for s in sessions] == [moved["session_id"]]

    @pytest.mark.asyncio
    async def test_regenerate_revoked(self, runtime, user):
        session = await create_session(runtime, user["user_id"])
        await revoke_session(runtime, session["session_id"])
        with pytest.raises(SessionRevoked):
            await regenerate_session(runtime, session["session_id"])


class TestRevocation:

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, runtime, user):
        """Тест: повторный отзыв возвращает False и не бросает исключений."""
        session = await create_session(runtime, user["user_id"])

        assert await revoke_session(runtime, session["session_id"]) is True
        assert await revoke_session(runtime, session["session_id"]) is False
        assert await revoke_session(runtime, "never-existed") is False

    @pytest.mark.asyncio
    async def test_revoke_all_except_current(self, runtime, user):
        current = await create_session(runtime, user["user_id"])
        await create_session(runtime, user["user_id"])
        await create_session(runtime, user["user_id"])

        revoked = await revoke_all_sessions(runtime, user["user_id"], except_session_id=current["session_id"])

        assert revoked == 2
        sessions = await list_sessions(runtime, user["user_id"], current_session_id=current["session_id"])
        assert len(sessions) == 1
        assert sessions[0]["is_current"] is True


class TestListingAndMaintenance:

    @pytest.mark.asyncio
    async def test_list_sessions_newest_first(self, runtime, user, fp_home):
        older = await create_session(runtime, user["user_id"], fp_home, now=T0)
        newer = await create_session(runtime, user["user_id"], fp_home, now=T0 + 100)

        sessions = await list_sessions(runtime, user["user_id"], now=T0 + 200)

        assert [s["session_id"] for s in sessions] == [newer["session_id"], older["session_id"]]
        assert sessions[0]["device"] == {"browser": "chrome", "os": "windows", "device_type": "desktop"}
        assert "refresh_jti" not in sessions[0]

    @pytest.mark.asyncio
    async def test_list_sessions_of_other_user(self, runtime, user_factory):
        alice = await user_factory("alice@example.com")
        bob = await user_factory("bob@example.com")
        await create_session(runtime, alice["user_id"])

        assert await list_sessions(runtime, bob["user_id"]) == []

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired(self, runtime, user):
        """Тест: истёкшие записи и "надгробия" удаляются, живые остаются."""
        ttl = runtime.config.refresh_token_ttl
        expired = await create_session(runtime, user["user_id"], now=T0)
        tombstoned = await create_session(runtime, user["user_id"], now=T0)
        await revoke_session(runtime, tombstoned["session_id"], now=T0 + 1)
        alive = await create_session(runtime, user["user_id"], now=T0 + ttl)

        removed = await cleanup_expired_sessions(runtime, now=T0 + ttl + 1)

        assert removed == 2
        assert await runtime.storage.get(AUTH_SESSIONS_NAMESPACE, expired["session_id"]) is None
        assert await get_session(runtime, alive["session_id"], allow_revoked=True) is not None

    @pytest.mark.asyncio
    async def test_session_stats(self, runtime, user, fp_home, fp_attacker):
        ttl = runtime.config.refresh_token_ttl
        now = T0 + ttl + 10
        await create_session(runtime, user["user_id"], now=T0)  # истекла
        revoked = await create_session(runtime, user["user_id"], now=now)
        await revoke_session(runtime, revoked["session_id"], now=now)
        suspicious = await create_session(runtime, user["user_id"], fp_home, now=now)
        with pytest.raises(SessionHijackSuspected):
            await touch_session(runtime, suspicious["session_id"], fp_attacker, now=now + 1)
        await create_session(runtime, user["user_id"], now=now)

        stats = await session_stats(runtime, now=now + 2)

        assert stats == {"total": 4, "active": 2, "revoked": 1, "expired": 1, "downgraded": 1}
