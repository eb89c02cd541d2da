"""
AuthModule — встроенный модуль аутентификации.

Обязательный домен системы. Регистрирует сервисы auth.* в service_registry;
HTTP слой (ApiModule) только вызывает их и переводит ошибки в статусы.

Все сервисы fail closed: недоступность хранилища превращается в
ServiceUnavailable, запрос отклоняется.
"""

import asyncio
import functools
from typing import Any, Dict, List, Optional

from core import logger_helper
from core.runtime_module import RuntimeModule
from core.storage import StorageUnavailableError

from . import password_reset, sessions
from .audit import (
    flush_security_events,
    get_audit_stats,
    query_security_events,
    record_security_event,
    security_metrics,
)
from .constants import (
    EVENT_AUTHORIZATION_DENIED,
    EVENT_LOCKOUT_ENGAGED,
    EVENT_LOGIN_BLOCKED,
    EVENT_LOGIN_FAILURE,
    EVENT_LOGIN_SUCCESS,
    EVENT_USER_REGISTERED,
    OUTCOME_BLOCKED,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    RATE_LIMIT_LOGIN,
    RATE_LIMIT_REFRESH,
    ROLE_USER,
    USER_VISIBLE_EVENT_CATEGORIES,
    USER_VISIBLE_EVENT_FIELDS,
)
from .errors import (
    AccountLocked,
    Forbidden,
    InvalidCredentials,
    InvalidRequest,
    ServiceUnavailable,
    SessionRevoked,
    WeakPassword,
)
from .jwt_tokens import issue_token_pair, refresh_token_subject, rotate_refresh_token
from .lockout import get_lockout_status, record_failure, record_success, unlock_account
from .middleware import owns_resource
from .passwords import (
    change_password,
    hash_password_async,
    rehash_if_needed,
    validate_password_strength,
    verify_password_async,
    verify_unknown_user,
)
from .rate_limiting import enforce_rate_limits, prune_rate_limits
from .users import create_user, get_user, get_user_by_email, identity_summary, normalize_email
from .utils import canonical_id, get_config, make_fingerprint


def _fail_closed(method):
    """StorageUnavailableError -> ServiceUnavailable."""
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except StorageUnavailableError as e:
            await logger_helper.error(
                self.runtime,
                "Storage unavailable, request rejected",
                module="auth",
                operation=e.operation,
                namespace=e.namespace,
            )
            raise ServiceUnavailable() from e
    return wrapper


class AuthModule(RuntimeModule):
    """
    Модуль аутентификации и сессий.

    Сервисы:
        auth.login, auth.refresh, auth.logout, auth.logout_all,
        auth.change_password, auth.reauthenticate, auth.list_sessions,
        auth.revoke_session, auth.register, auth.me,
        auth.request_password_reset, auth.verify_reset_token,
        auth.reset_password, auth.my_security_events,
        auth.security_events, auth.security_metrics, auth.unlock_account,
        auth.session_stats
    """

    def __init__(self, runtime: Any):
        super().__init__(runtime)
        self._cleanup_task: Optional[asyncio.Task] = None
        self._services = {
            "auth.login": self._login,
            "auth.refresh": self._refresh,
            "auth.logout": self._logout,
            "auth.logout_all": self._logout_all,
            "auth.change_password": self._change_password,
            "auth.reauthenticate": self._reauthenticate,
            "auth.list_sessions": self._list_sessions,
            "auth.revoke_session": self._revoke_session,
            "auth.register": self._register,
            "auth.me": self._me,
            "auth.request_password_reset": self._request_password_reset,
            "auth.verify_reset_token": self._verify_reset_token,
            "auth.reset_password": self._reset_password,
            "auth.my_security_events": self._my_security_events,
            "auth.security_events": self._security_events,
            "auth.security_metrics": self._security_metrics,
            "auth.unlock_account": self._unlock_account,
            "auth.session_stats": self._session_stats,
        }

    @property
    def name(self) -> str:
        return "auth"

    async def register(self) -> None:
        for service_name, handler in self._services.items():
            await self.runtime.service_registry.register(service_name, handler)

    async def start(self) -> None:
        interval = get_config(self.runtime).session_cleanup_interval
        if interval > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))
        await logger_helper.info(self.runtime, "Auth module started", module="auth")

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await flush_security_events(self.runtime)
        for service_name in self._services:
            await self.runtime.service_registry.unregister(service_name)

    async def _cleanup_loop(self, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.cleanup_once()

    async def cleanup_once(self) -> Dict[str, int]:
        """Истёкшие сессии, окна rate limit и токены сброса."""
        removed: Dict[str, int] = {}
        jobs = (
            ("sessions", sessions.cleanup_expired_sessions),
            ("rate_limits", prune_rate_limits),
            ("password_resets", password_reset.cleanup_expired_reset_tokens),
        )
        for name, job in jobs:
            try:
                removed[name] = await job(self.runtime)
            except StorageUnavailableError as e:
                await logger_helper.warning(
                    self.runtime, "Cleanup skipped: storage unavailable",
                    module="auth", job=name, operation=e.operation,
                )
        return removed

    # ------------------------------------------------------------------
    # Вход и токены
    # ------------------------------------------------------------------

    @_fail_closed
    async def _login(
        self,
        email: str,
        password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        challenge_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Сервис `auth.login`.

        Порядок: rate limit (email и IP) -> lockout -> пароль -> запись
        исхода в lockout -> сессия -> токены. Событие пишется при любом
        исходе.

        Raises:
            InvalidCredentials, AccountLocked, RateLimited, ChallengeRequired
        """
        if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
            raise InvalidRequest("email and password are required")
        identity_key = email.strip().lower()
        await enforce_rate_limits(
            self.runtime, RATE_LIMIT_LOGIN,
            {"identity": identity_key, "ip": ip},
            challenge_token=challenge_token,
        )

        user = await get_user_by_email(self.runtime, email)
        if user is None or not user.get("is_active", True):
            await verify_unknown_user(self.runtime, password)
            await record_security_event(
                self.runtime, EVENT_LOGIN_FAILURE, OUTCOME_FAILURE,
                ip=ip, metadata={"reason": "unknown_identity"},
            )
            raise InvalidCredentials()

        uid = user["user_id"]
        status = await get_lockout_status(self.runtime, uid)
        if status.is_locked():
            # Пароль не проверяется: ответ не должен выдавать, верен ли он
            await record_security_event(
                self.runtime, EVENT_LOGIN_BLOCKED, OUTCOME_BLOCKED,
                user_id=uid, ip=ip,
                metadata={"tier": status.tier, "permanent": status.permanent},
            )
            raise AccountLocked(retry_after=status.retry_after())

        if not await verify_password_async(password, user.get("password_hash", "")):
            status = await record_failure(self.runtime, uid)
            await record_security_event(
                self.runtime, EVENT_LOGIN_FAILURE, OUTCOME_FAILURE,
                user_id=uid, ip=ip,
                metadata={"reason": "invalid_password", "failures": status.failures},
            )
            if status.engaged:
                await record_security_event(
                    self.runtime, EVENT_LOCKOUT_ENGAGED, OUTCOME_BLOCKED,
                    user_id=uid, ip=ip,
                    metadata={
                        "tier": status.tier,
                        "locked_until": status.locked_until,
                        "permanent": status.permanent,
                    },
                )
            raise InvalidCredentials()

        try:
            await record_success(self.runtime, uid)
        except AccountLocked:
            # Блокировка включилась параллельно
            await record_security_event(
                self.runtime, EVENT_LOGIN_BLOCKED, OUTCOME_BLOCKED,
                user_id=uid, ip=ip, metadata={"reason": "locked_concurrently"},
            )
            raise
        await rehash_if_needed(self.runtime, uid, password)

        fingerprint = make_fingerprint(ip, user_agent)
        session = await sessions.create_session(self.runtime, uid, fingerprint)
        role = user.get("role", ROLE_USER)
        pair = await issue_token_pair(self.runtime, session["session_id"], uid, role)

        await record_security_event(
            self.runtime, EVENT_LOGIN_SUCCESS, OUTCOME_SUCCESS,
            user_id=uid, ip=ip,
            metadata={"session": logger_helper.short_id(session["session_id"], 16)},
        )
        return {
            **pair.to_dict(),
            "session_id": session["session_id"],
            "user": identity_summary(user),
        }

    @_fail_closed
    async def _refresh(
        self,
        refresh_token: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        challenge_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Сервис `auth.refresh`.

        Лимит по IP и по пользователю из токена: украденный токен не
        обходит лимит сменой адреса.

        Raises:
            NoToken, InvalidToken, TokenExpired, TokenReuseDetected,
            SessionRevoked, RateLimited, ChallengeRequired
        """
        subject = await refresh_token_subject(self.runtime, refresh_token)
        await enforce_rate_limits(
            self.runtime, RATE_LIMIT_REFRESH,
            {"identity": subject, "ip": ip},
            challenge_token=challenge_token,
        )
        pair = await rotate_refresh_token(
            self.runtime, refresh_token, fingerprint=make_fingerprint(ip, user_agent)
        )
        return {**pair.to_dict(), "session_id": pair.session_id}

    @_fail_closed
    async def _logout(self, session_id: str) -> Dict[str, bool]:
        """Сервис `auth.logout`. Идемпотентен."""
        revoked = await sessions.revoke_session(self.runtime, session_id, reason="logout")
        return {"revoked": revoked}

    @_fail_closed
    async def _logout_all(self, user_id: Any, except_session_id: Optional[str] = None) -> Dict[str, int]:
        count = await sessions.revoke_all_sessions(
            self.runtime, user_id, reason="logout_all", except_session_id=except_session_id
        )
        return {"revoked_sessions": count}

    # ------------------------------------------------------------------
    # Пароль и повторная аутентификация
    # ------------------------------------------------------------------

    @_fail_closed
    async def _change_password(
        self,
        user_id: Any,
        old_password: str,
        new_password: str,
        current_session_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Сервис `auth.change_password`.

        Остальные сессии пользователя отзываются, текущая остаётся.

        Raises:
            InvalidCredentials, WeakPassword, ReusedPassword
        """
        if not isinstance(old_password, str) or not isinstance(new_password, str):
            raise InvalidRequest("old_password and new_password are required")
        revoked = await change_password(
            self.runtime, user_id, old_password, new_password,
            current_session_id=current_session_id, ip=ip,
        )
        return {"revoked_sessions": revoked}

    @_fail_closed
    async def _reauthenticate(
        self,
        user_id: Any,
        session_id: str,
        password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Сервис `auth.reauthenticate` — вернуть доверие сессии паролем.

        Неверный пароль учитывается lockout-движком как неудачный вход.

        Raises:
            InvalidCredentials, AccountLocked, SessionRevoked
        """
        uid = canonical_id(user_id)
        user = await get_user(self.runtime, uid)
        session = await sessions.get_session(self.runtime, session_id)
        if user is None or session is None or session.get("user_id") != uid:
            raise SessionRevoked()

        status = await get_lockout_status(self.runtime, uid)
        if status.is_locked():
            await record_security_event(
                self.runtime, EVENT_LOGIN_BLOCKED, OUTCOME_BLOCKED,
                user_id=uid, ip=ip, metadata={"reason": "reauthenticate"},
            )
            raise AccountLocked(retry_after=status.retry_after())

        if not isinstance(password, str) or not await verify_password_async(password, user.get("password_hash", "")):
            status = await record_failure(self.runtime, uid)
            await record_security_event(
                self.runtime, EVENT_LOGIN_FAILURE, OUTCOME_FAILURE,
                user_id=uid, ip=ip,
                metadata={"reason": "reauthenticate", "failures": status.failures},
            )
            if status.engaged:
                await record_security_event(
                    self.runtime, EVENT_LOCKOUT_ENGAGED, OUTCOME_BLOCKED,
                    user_id=uid, ip=ip,
                    metadata={"tier": status.tier, "permanent": status.permanent},
                )
            raise InvalidCredentials()

        await record_success(self.runtime, uid)
        session = await sessions.restore_session_trust(
            self.runtime, session_id, make_fingerprint(ip, user_agent)
        )
        return {"trust": session["trust"], "reauth_required": session["reauth_required"]}

    # ------------------------------------------------------------------
    # Сессии
    # ------------------------------------------------------------------

    @_fail_closed
    async def _list_sessions(self, user_id: Any, current_session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return await sessions.list_sessions(self.runtime, user_id, current_session_id=current_session_id)

    @_fail_closed
    async def _revoke_session(
        self,
        user_id: Any,
        session_id: str,
        current_session_id: Optional[str] = None,
    ) -> Dict[str, bool]:
        """
        Сервис `auth.revoke_session` — завершить одну из своих сессий.

        Чужая или несуществующая сессия -> Forbidden (без различия,
        чтобы не раскрывать чужие id).

        Raises:
            Forbidden, InvalidRequest
        """
        session = await sessions.get_session(self.runtime, session_id, allow_revoked=True)
        if session is None or not owns_resource(user_id, session.get("user_id")):
            await record_security_event(
                self.runtime, EVENT_AUTHORIZATION_DENIED, OUTCOME_BLOCKED,
                user_id=user_id, metadata={"reason": "session_not_owned"},
            )
            raise Forbidden()
        if session_id == current_session_id:
            raise InvalidRequest("Use logout to end the current session")
        revoked = await sessions.revoke_session(self.runtime, session_id, reason="user_revoked")
        return {"revoked": revoked}

    @_fail_closed
    async def _session_stats(self) -> Dict[str, Any]:
        stats = await sessions.session_stats(self.runtime)
        stats["audit"] = get_audit_stats(self.runtime)
        return stats

    # ------------------------------------------------------------------
    # Учётные записи
    # ------------------------------------------------------------------

    @_fail_closed
    async def _register(
        self,
        email: str,
        password: str,
        role: str = ROLE_USER,
        ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Сервис `auth.register`.

        Raises:
            InvalidRequest: некорректный email или email уже занят
            WeakPassword: пароль не проходит политику
        """
        if not isinstance(password, str):
            raise InvalidRequest("password is required")
        try:
            normalized = normalize_email(email)
        except ValueError as e:
            raise InvalidRequest(str(e))
        await enforce_rate_limits(self.runtime, RATE_LIMIT_LOGIN, {"ip": ip})

        is_valid, error_message = validate_password_strength(password)
        if not is_valid:
            raise WeakPassword(error_message)

        password_hash = await hash_password_async(self.runtime, password)
        try:
            user = await create_user(self.runtime, normalized, password_hash, role=role)
        except ValueError as e:
            raise InvalidRequest(str(e))

        await record_security_event(
            self.runtime, EVENT_USER_REGISTERED, OUTCOME_SUCCESS,
            user_id=user["user_id"], ip=ip, metadata={"role": user["role"]},
        )
        return identity_summary(user)

    @_fail_closed
    async def _me(self, user_id: Any, session_id: Optional[str] = None) -> Dict[str, Any]:
        user = await get_user(self.runtime, user_id)
        if user is None:
            raise SessionRevoked()
        result = identity_summary(user)
        if session_id:
            session = await sessions.get_session(self.runtime, session_id)
            if session is not None and session.get("user_id") == user["user_id"]:
                result["session"] = sessions.session_summary(session, session_id)
        return result

    @_fail_closed
    async def _my_security_events(
        self,
        user_id: Any,
        category: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Сервис `auth.my_security_events` — журнал безопасности своего аккаунта.

        Только категории из USER_VISIBLE_EVENT_CATEGORIES, без metadata.

        Raises:
            InvalidRequest: некорректный фильтр
        """
        try:
            events = await query_security_events(
                self.runtime,
                category=category,
                user_id=user_id,
                since=since,
                until=until,
                limit=limit,
                offset=offset,
                categories=USER_VISIBLE_EVENT_CATEGORIES,
            )
        except (TypeError, ValueError) as e:
            raise InvalidRequest(str(e))
        return [{name: event.get(name) for name in USER_VISIBLE_EVENT_FIELDS} for event in events]

    # ------------------------------------------------------------------
    # Сброс пароля
    # ------------------------------------------------------------------

    @_fail_closed
    async def _request_password_reset(
        self,
        email: str,
        ip: Optional[str] = None,
        challenge_token: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Сервис `auth.request_password_reset`.

        Raises:
            InvalidRequest, RateLimited, ChallengeRequired
        """
        return await password_reset.request_password_reset(
            self.runtime, email, ip=ip, challenge_token=challenge_token
        )

    @_fail_closed
    async def _verify_reset_token(self, token: str, ip: Optional[str] = None) -> Dict[str, Any]:
        return await password_reset.verify_reset_token(self.runtime, token, ip=ip)

    @_fail_closed
    async def _reset_password(
        self,
        token: str,
        new_password: str,
        ip: Optional[str] = None,
        challenge_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Сервис `auth.reset_password`.

        Raises:
            InvalidRequest, WeakPassword, ReusedPassword, RateLimited
        """
        if not isinstance(new_password, str):
            raise InvalidRequest("new_password is required")
        revoked = await password_reset.reset_password(
            self.runtime, token, new_password, ip=ip, challenge_token=challenge_token
        )
        return {"message": "Password reset successfully", "revoked_sessions": revoked}

    # ------------------------------------------------------------------
    # Администрирование
    # ------------------------------------------------------------------

    @_fail_closed
    async def _security_events(self, **filters: Any) -> List[Dict[str, Any]]:
        """
        Сервис `auth.security_events`.

        Raises:
            InvalidRequest: некорректный фильтр
        """
        try:
            return await query_security_events(self.runtime, **filters)
        except (TypeError, ValueError) as e:
            raise InvalidRequest(str(e))

    @_fail_closed
    async def _security_metrics(self, hours: int = 24) -> Dict[str, Any]:
        if not isinstance(hours, int) or hours < 1 or hours > 24 * 30:
            raise InvalidRequest("hours must be between 1 and 720")
        metrics = await security_metrics(self.runtime, hours=hours)
        metrics["audit"] = get_audit_stats(self.runtime)
        return metrics

    @_fail_closed
    async def _unlock_account(self, user_id: Any, unlocked_by: Any = None) -> Dict[str, Any]:
        """
        Сервис `auth.unlock_account` — единственный выход из бессрочной блокировки.

        Raises:
            InvalidRequest: пользователь не найден
        """
        user = await get_user(self.runtime, user_id)
        if user is None:
            raise InvalidRequest("user not found")
        was_locked = await unlock_account(self.runtime, user["user_id"], unlocked_by=unlocked_by)
        await logger_helper.info(
            self.runtime, "Account unlocked", module="auth",
            user_id=user["user_id"], unlocked_by=unlocked_by, was_locked=was_locked,
        )
        return {"user_id": user["user_id"], "was_locked": was_locked}
