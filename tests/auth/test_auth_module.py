"""
Тесты сервисов auth.* через service_registry запущенного runtime.
"""
import time
from types import SimpleNamespace

import pytest
import pytest_asyncio

from modules.auth import password_reset
from modules.auth.audit import flush_security_events, query_security_events
from modules.auth.constants import (
    AUTH_PASSWORD_RESETS_NAMESPACE,
    AUTH_RATE_LIMITS_NAMESPACE,
    CHALLENGE_VERIFY_SERVICE,
    PASSWORD_RESET_DELIVERY_SERVICE,
    USER_VISIBLE_EVENT_CATEGORIES,
    USER_VISIBLE_EVENT_FIELDS,
)
from modules.auth.errors import (
    AccountLocked,
    ChallengeRequired,
    Forbidden,
    InvalidCredentials,
    InvalidRequest,
    InvalidToken,
    RateLimited,
    ReusedPassword,
    ServiceUnavailable,
    SessionRevoked,
    TokenReuseDetected,
    WeakPassword,
)
from modules.auth.lockout import get_lockout_status
from modules.auth.middleware import authenticate_request
from modules.auth.utils import make_fingerprint

UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/124.0 Safari/537.36"
ATTACKER_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0"


@pytest.fixture
def call(started_runtime):
    return started_runtime.service_registry.call


@pytest.fixture
def registered(call, strong_password):
    async def make(email="alice@example.com", role="user"):
        return await call("auth.register", email=email, password=strong_password, role=role)
    return make


async def login(call, password, email="alice@example.com", ip="192.168.1.10", user_agent=UA):
    return await call("auth.login", email=email, password=password, ip=ip, user_agent=user_agent)


@pytest.fixture
def lockout_clock(monkeypatch):
    """Подменяемое время lockout-движка; токены и сессии живут по реальному."""
    clock = SimpleNamespace(now=time.time())
    monkeypatch.setattr("modules.auth.lockout.time", SimpleNamespace(time=lambda: clock.now))
    return clock


@pytest_asyncio.fixture
async def deliveries(started_runtime):
    """Сервис доставки ссылок сброса: запоминает отправленное."""
    sent = []

    async def deliver(email, token, expires_at):
        sent.append({"email": email, "token": token, "expires_at": expires_at})

    await started_runtime.service_registry.register(PASSWORD_RESET_DELIVERY_SERVICE, deliver)
    return sent


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_and_login(self, call, registered, strong_password):
        user = await registered("Alice@Example.com")
        assert user["email"] == "alice@example.com"
        assert "password_hash" not in user

        result = await login(call, strong_password)

        assert result["token_type"] == "Bearer"
        assert result["user"]["user_id"] == user["user_id"]
        assert result["access_token"] and result["refresh_token"] and result["session_id"]

    @pytest.mark.asyncio
    async def test_duplicate_email(self, registered):
        await registered()
        with pytest.raises(InvalidRequest):
            await registered("ALICE@example.com")

    @pytest.mark.asyncio
    async def test_weak_password(self, call):
        with pytest.raises(WeakPassword):
            await call("auth.register", email="bob@example.com", password="password")

    @pytest.mark.asyncio
    async def test_invalid_email(self, call, strong_password):
        with pytest.raises(InvalidRequest):
            await call("auth.register", email="not-an-email", password=strong_password)


class TestLogin:

    @pytest.mark.asyncio
    async def test_unknown_email_and_wrong_password_look_the_same(self, call, registered):
        await registered()
        with pytest.raises(InvalidCredentials) as unknown:
            await login(call, "Whatever-123!", email="nobody@example.com")
        with pytest.raises(InvalidCredentials) as wrong:
            await login(call, "Whatever-123!")
        assert str(unknown.value) == str(wrong.value)

    @pytest.mark.asyncio
    async def test_missing_fields(self, call):
        with pytest.raises(InvalidRequest):
            await call("auth.login", email="", password="")

    @pytest.mark.asyncio
    async def test_lockout_progression(self, started_runtime, call, registered, strong_password):
        """Сценарий: 3 неверных пароля -> даже верный пароль отклоняется."""
        user = await registered()
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await login(call, "Wrong-Password-1")

        with pytest.raises(AccountLocked) as exc_info:
            await login(call, strong_password)
        assert 0 < exc_info.value.retry_after <= 300

        await flush_security_events(started_runtime)
        engaged = await query_security_events(started_runtime, category="lockout_engaged")
        assert len(engaged) == 1
        assert engaged[0]["user_id"] == user["user_id"]
        blocked = await query_security_events(started_runtime, category="login_blocked")
        assert len(blocked) == 1

        # Администратор снимает блокировку
        result = await call("auth.unlock_account", user_id=user["user_id"], unlocked_by="admin")
        assert result == {"user_id": user["user_id"], "was_locked": True}
        assert (await login(call, strong_password))["access_token"]

    @pytest.mark.asyncio
    async def test_lock_expires_and_counter_resets(self, started_runtime, call, registered, strong_password, lockout_clock):
        """Сценарий: 5 быстрых неудач, верный пароль отклонён, после срока блокировки вход проходит."""
        user = await registered()
        for _ in range(5):
            with pytest.raises((InvalidCredentials, AccountLocked)):
                await login(call, "Wrong-Password-1")

        with pytest.raises(AccountLocked) as exc_info:
            await login(call, strong_password)
        retry_after = exc_info.value.retry_after
        assert 0 < retry_after <= 300

        lockout_clock.now += retry_after + 1
        result = await login(call, strong_password)

        assert result["access_token"]
        status = await get_lockout_status(started_runtime, user["user_id"])
        assert status.failures == 0
        assert status.is_locked(lockout_clock.now) is False


class TestRefreshScenario:
    """Сценарий: украденный refresh токен."""

    @pytest.mark.asyncio
    async def test_stolen_refresh_token_revokes_everything(self, started_runtime, call, registered, strong_password):
        await registered()
        victim = await login(call, strong_password)
        second_device = await login(call, strong_password, ip="10.1.1.1")

        # Атакующий первым обменивает украденный токен
        stolen = await call(
            "auth.refresh", refresh_token=victim["refresh_token"], ip="203.0.113.77", user_agent=ATTACKER_UA
        )
        assert stolen["refresh_token"] != victim["refresh_token"]

        # Легитимный клиент предъявляет уже обменянный токен
        with pytest.raises(TokenReuseDetected):
            await call("auth.refresh", refresh_token=victim["refresh_token"], ip="192.168.1.10", user_agent=UA)

        # Обе ветки цепочки мертвы: и старый access жертвы, и новый access атакующего
        with pytest.raises(SessionRevoked):
            await authenticate_request(started_runtime, f"Bearer {victim['access_token']}")
        with pytest.raises(SessionRevoked):
            await authenticate_request(started_runtime, f"Bearer {stolen['access_token']}")

        with pytest.raises(TokenReuseDetected):
            await call("auth.refresh", refresh_token=stolen["refresh_token"], ip="203.0.113.77")
        with pytest.raises(SessionRevoked):
            await authenticate_request(started_runtime, f"Bearer {second_device['access_token']}")

        await flush_security_events(started_runtime)
        reuse = await query_security_events(started_runtime, category="token_reuse_detected")
        assert reuse and reuse[0]["severity"] == "critical"

    @pytest.mark.asyncio
    async def test_normal_rotation(self, call, registered, strong_password):
        await registered()
        first = await login(call, strong_password)

        second = await call("auth.refresh", refresh_token=first["refresh_token"], ip="192.168.1.10", user_agent=UA)
        third = await call("auth.refresh", refresh_token=second["refresh_token"], ip="192.168.1.10", user_agent=UA)

        assert third["session_id"] == first["session_id"]


class TestSessionsServices:

    @pytest.mark.asyncio
    async def test_me_and_list(self, call, registered, strong_password):
        user = await registered()
        first = await login(call, strong_password)
        await login(call, strong_password)

        me = await call("auth.me", user_id=user["user_id"], session_id=first["session_id"])
        assert me["email"] == "alice@example.com"
        assert me["session"]["is_current"] is True

        listed = await call("auth.list_sessions", user_id=user["user_id"], current_session_id=first["session_id"])
        assert len(listed) == 2
        assert sum(1 for s in listed if s["is_current"]) == 1

    @pytest.mark.asyncio
    async def test_revoke_own_other_session(self, call, registered, strong_password):
        user = await registered()
        current = await login(call, strong_password)
        other = await login(call, strong_password)

        result = await call(
            "auth.revoke_session", user_id=user["user_id"],
            session_id=other["session_id"], current_session_id=current["session_id"],
        )
        assert result == {"revoked": True}

        with pytest.raises(InvalidRequest):
            await call(
                "auth.revoke_session", user_id=user["user_id"],
                session_id=current["session_id"], current_session_id=current["session_id"],
            )

    @pytest.mark.asyncio
    async def test_cannot_revoke_foreign_session(self, call, registered, strong_password):
        """Тест: чужая и несуществующая сессия неразличимы -> Forbidden."""
        await registered("alice@example.com")
        bob = await registered("bob@example.com")
        alice_login = await login(call, strong_password)

        for session_id in (alice_login["session_id"], "does-not-exist"):
            with pytest.raises(Forbidden):
                await call("auth.revoke_session", user_id=bob["user_id"], session_id=session_id)

    @pytest.mark.asyncio
    async def test_logout_and_logout_all(self, call, registered, strong_password):
        user = await registered()
        first = await login(call, strong_password)
        await login(call, strong_password)
        await login(call, strong_password)

        assert await call("auth.logout", session_id=first["session_id"]) == {"revoked": True}
        assert await call("auth.logout", session_id=first["session_id"]) == {"revoked": False}
        assert await call("auth.logout_all", user_id=user["user_id"]) == {"revoked_sessions": 2}

    @pytest.mark.asyncio
    async def test_reauthenticate_restores_trust(self, started_runtime, call, registered, strong_password):
        """Сценарий: подозрение на перехват -> повторный ввод пароля."""
        user = await registered()
        result = await login(call, strong_password)
        header = f"Bearer {result['access_token']}"

        moved = make_fingerprint("203.0.113.77", ATTACKER_UA)
        context = await authenticate_request(started_runtime, header, moved)
        assert context.is_downgraded

        with pytest.raises(InvalidCredentials):
            await call("auth.reauthenticate", user_id=user["user_id"], session_id=context.session_id,
                       password="Wrong-Password-1", ip="203.0.113.77", user_agent=ATTACKER_UA)

        restored = await call("auth.reauthenticate", user_id=user["user_id"], session_id=context.session_id,
                              password=strong_password, ip="203.0.113.77", user_agent=ATTACKER_UA)
        assert restored == {"trust": "normal", "reauth_required": False}

        context = await authenticate_request(started_runtime, header, moved)
        assert context.is_downgraded is False

    @pytest.mark.asyncio
    async def test_change_password_keeps_current_session(self, started_runtime, call, registered, strong_password):
        user = await registered()
        current = await login(call, strong_password)
        other = await login(call, strong_password)

        result = await call(
            "auth.change_password", user_id=user["user_id"], old_password=strong_password,
            new_password="Brand-New-Pass1!", current_session_id=current["session_id"],
        )

        assert result == {"revoked_sessions": 1}
        await authenticate_request(started_runtime, f"Bearer {current['access_token']}")
        with pytest.raises(SessionRevoked):
            await authenticate_request(started_runtime, f"Bearer {other['access_token']}")
        with pytest.raises(InvalidCredentials):
            await login(call, strong_password)


class TestRefreshRateLimit:
    """Лимит refresh по пользователю из токена, а не только по IP."""

    @pytest.mark.asyncio
    async def test_identity_limit_across_ips(self, started_runtime, call, registered, strong_password):
        started_runtime.config.rate_limits["refresh"] = (2, 60)
        await registered()
        tokens = await login(call, strong_password)

        for ip in ("192.168.1.11", "192.168.1.12"):
            tokens = await call("auth.refresh", refresh_token=tokens["refresh_token"], ip=ip, user_agent=UA)

        # Новый IP не обходит лимит пользователя
        with pytest.raises(RateLimited):
            await call("auth.refresh", refresh_token=tokens["refresh_token"], ip="192.168.1.13", user_agent=UA)

        async def verify(token, endpoint_class):
            return token == "solved"

        await started_runtime.service_registry.register(CHALLENGE_VERIFY_SERVICE, verify)
        with pytest.raises(ChallengeRequired):
            await call("auth.refresh", refresh_token=tokens["refresh_token"], ip="192.168.1.14", user_agent=UA)

        passed = await call(
            "auth.refresh", refresh_token=tokens["refresh_token"],
            ip="192.168.1.15", user_agent=UA, challenge_token="solved",
        )
        assert passed["access_token"]

    @pytest.mark.asyncio
    async def test_garbage_token_limited_by_ip(self, started_runtime, call):
        """Тест: нечитаемый токен не даёт identity-ключа, работает лимит по IP."""
        started_runtime.config.rate_limits["refresh"] = (2, 60)
        for _ in range(2):
            with pytest.raises(InvalidToken):
                await call("auth.refresh", refresh_token="not-a-jwt", ip="198.51.100.7")
        with pytest.raises(RateLimited):
            await call("auth.refresh", refresh_token="not-a-jwt", ip="198.51.100.7")


class TestMySecurityEvents:
    """Журнал безопасности своего аккаунта."""

    @pytest.mark.asyncio
    async def test_own_events_only(self, started_runtime, call, registered, strong_password):
        alice = await registered("alice@example.com")
        await registered("bob@example.com")
        with pytest.raises(InvalidCredentials):
            await login(call, "Wrong-Password-1")
        await login(call, strong_password)
        await login(call, strong_password, email="bob@example.com")
        await flush_security_events(started_runtime)

        events = await call("auth.my_security_events", user_id=alice["user_id"])

        categories = [e["category"] for e in events]
        assert categories.count("login_success") == 1
        assert "login_failure" in categories
        assert set(categories) <= USER_VISIBLE_EVENT_CATEGORIES
        assert all(set(e) == set(USER_VISIBLE_EVENT_FIELDS) for e in events)

        failures = await call("auth.my_security_events", user_id=alice["user_id"], category="login_failure")
        assert [e["category"] for e in failures] == ["login_failure"]
        assert len(await call("auth.my_security_events", user_id=alice["user_id"], limit=1)) == 1

    @pytest.mark.asyncio
    async def test_invalid_paging(self, call):
        with pytest.raises(InvalidRequest):
            await call("auth.my_security_events", user_id="1", limit=0)
        with pytest.raises(InvalidRequest):
            await call("auth.my_security_events", user_id="1", offset=-1)


class TestPasswordReset:
    """Сброс пароля по одноразовому токену."""

    @pytest.mark.asyncio
    async def test_full_flow(self, started_runtime, call, registered, strong_password, deliveries):
        user = await registered()
        session = await login(call, strong_password)

        known = await call("auth.request_password_reset", email="Alice@Example.com", ip="192.168.1.10")
        unknown = await call("auth.request_password_reset", email="nobody@example.com", ip="192.168.1.10")
        assert known == unknown
        assert [d["email"] for d in deliveries] == ["alice@example.com"]
        token = deliveries[0]["token"]

        # В storage только хеш токена
        keys = await started_runtime.storage.list_keys(AUTH_PASSWORD_RESETS_NAMESPACE)
        assert len(keys) == 1 and token not in keys[0]
        record = await started_runtime.storage.get(AUTH_PASSWORD_RESETS_NAMESPACE, keys[0])
        assert token not in record.values()
        assert record["user_id"] == user["user_id"]

        assert (await call("auth.verify_reset_token", token=token))["valid"] is True

        result = await call("auth.reset_password", token=token, new_password="Reset-New-Pass1!")
        assert result["revoked_sessions"] == 1

        with pytest.raises(SessionRevoked):
            await authenticate_request(started_runtime, f"Bearer {session['access_token']}")
        with pytest.raises(InvalidCredentials):
            await login(call, strong_password)
        assert (await login(call, "Reset-New-Pass1!"))["access_token"]

        # Одноразовый
        with pytest.raises(InvalidRequest):
            await call("auth.reset_password", token=token, new_password="Another-Pass-22!")
        with pytest.raises(InvalidRequest):
            await call("auth.verify_reset_token", token=token)

        await flush_security_events(started_runtime)
        changed = await query_security_events(started_runtime, category="password_changed")
        assert changed[0]["metadata"]["via"] == "password_reset"

    @pytest.mark.asyncio
    async def test_rejected_password_keeps_token(self, call, registered, strong_password, deliveries):
        """Тест: слабый или недавний пароль не гасит токен."""
        await registered()
        await call("auth.request_password_reset", email="alice@example.com")
        token = deliveries[0]["token"]

        with pytest.raises(ReusedPassword):
            await call("auth.reset_password", token=token, new_password=strong_password)
        with pytest.raises(WeakPassword):
            await call("auth.reset_password", token=token, new_password="weak")

        result = await call("auth.reset_password", token=token, new_password="Reset-New-Pass1!")
        assert result["revoked_sessions"] == 0

    @pytest.mark.asyncio
    async def test_expired_and_unknown_tokens(self, started_runtime, call, registered, deliveries):
        await registered()
        await password_reset.request_password_reset(
            started_runtime, "alice@example.com", now=time.time() - 2 * 3600
        )
        expired = deliveries[0]["token"]

        for token in (expired, "never-issued", ""):
            with pytest.raises(InvalidRequest):
                await call("auth.verify_reset_token", token=token)
            with pytest.raises(InvalidRequest):
                await call("auth.reset_password", token=token, new_password="Reset-New-Pass1!")

        assert await password_reset.cleanup_expired_reset_tokens(started_runtime) == 1
        assert await started_runtime.storage.list_keys(AUTH_PASSWORD_RESETS_NAMESPACE) == []

    @pytest.mark.asyncio
    async def test_password_change_invalidates_token(self, call, registered, strong_password, deliveries):
        user = await registered()
        await call("auth.request_password_reset", email="alice@example.com")
        token = deliveries[0]["token"]

        await call(
            "auth.change_password", user_id=user["user_id"],
            old_password=strong_password, new_password="Brand-New-Pass1!",
        )

        with pytest.raises(InvalidRequest):
            await call("auth.reset_password", token=token, new_password="Reset-New-Pass1!")

    @pytest.mark.asyncio
    async def test_request_rate_limited(self, started_runtime, call, registered):
        started_runtime.config.rate_limits["password_reset"] = (2, 300)
        await registered()
        for _ in range(2):
            await call("auth.request_password_reset", email="alice@example.com", ip="192.168.1.10")

        # Лимит по email держится и при смене IP
        with pytest.raises(RateLimited):
            await call("auth.request_password_reset", email="alice@example.com", ip="10.9.9.9")

    @pytest.mark.asyncio
    async def test_without_delivery_service(self, started_runtime, call, registered):
        """Тест: без сервиса доставки ответ тот же, токен остаётся в storage."""
        await registered()
        result = await call("auth.request_password_reset", email="alice@example.com")

        assert result == {"message": password_reset.RESET_REQUESTED_MESSAGE}
        assert len(await started_runtime.storage.list_keys(AUTH_PASSWORD_RESETS_NAMESPACE)) == 1

    @pytest.mark.asyncio
    async def test_invalid_email(self, call):
        with pytest.raises(InvalidRequest):
            await call("auth.request_password_reset", email="not-an-email")


class TestCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_once(self, started_runtime, call, registered, strong_password, deliveries):
        """Тест: фоновая очистка убирает истёкшие токены сброса и окна rate limit."""
        await registered()
        await login(call, strong_password)
        await password_reset.request_password_reset(
            started_runtime, "alice@example.com", now=time.time() - 2 * 3600
        )
        auth_module = started_runtime.module_manager.get_module("auth")

        # Окно login 60 с: запись часовой давности уже пустая
        await started_runtime.storage.set(
            AUTH_RATE_LIMITS_NAMESPACE, "stale", {"hits": [time.time() - 3600], "endpoint_class": "login"}
        )
        removed = await auth_module.cleanup_once()
        assert removed == {"sessions": 0, "rate_limits": 1, "password_resets": 1}
        keys = await started_runtime.storage.list_keys(AUTH_RATE_LIMITS_NAMESPACE)
        assert keys and "stale" not in keys


class TestAdminServices:

    @pytest.mark.asyncio
    async def test_events_and_metrics(self, started_runtime, call, registered, strong_password):
        await registered()
        with pytest.raises(InvalidCredentials):
            await login(call, "Wrong-Password-1")
        await login(call, strong_password)
        await flush_security_events(started_runtime)

        failures = await call("auth.security_events", category="login_failure")
        assert len(failures) == 1
        assert failures[0]["ip"] == "192.168.1.10"

        metrics = await call("auth.security_metrics", hours=1)
        assert metrics["failed_logins"] == 1
        assert metrics["audit"]["written"] >= metrics["total_events"]

        stats = await call("auth.session_stats")
        assert stats["active"] == 1

    @pytest.mark.asyncio
    async def test_invalid_admin_input(self, call):
        with pytest.raises(InvalidRequest):
            await call("auth.security_events", limit=0)
        with pytest.raises(InvalidRequest):
            await call("auth.security_metrics", hours=0)
        with pytest.raises(InvalidRequest):
            await call("auth.unlock_account", user_id="404")


class TestFailClosed:
    """Недоступное хранилище -> ServiceUnavailable, а не пропуск."""

    @pytest.mark.asyncio
    async def test_login_rejected_when_storage_down(self, started_runtime, call, registered, strong_password, monkeypatch):
        await registered()
        adapter = started_runtime.storage.adapter

        async def down(*args, **kwargs):
            raise ConnectionError("database is gone")

        monkeypatch.setattr(adapter, "get", down)
        monkeypatch.setattr(adapter, "update", down)

        with pytest.raises(ServiceUnavailable):
            await login(call, strong_password)
        with pytest.raises(ServiceUnavailable):
            await call("auth.me", user_id="1")
