"""
Password reset — сброс пароля по одноразовому токену.

Токен уходит пользователю через внешний сервис доставки
(auth.password_reset.deliver), в storage лежит только его sha256.
Токен действует config.password_reset_ttl секунд, гасится при первом
успешном сбросе и при любой смене пароля после выдачи.

Ответ на запрос сброса одинаков для существующего и неизвестного email.
"""

import secrets
import time
from typing import Any, Dict, Optional

from core import logger_helper

from .audit import record_security_event
from .constants import (
    AUTH_PASSWORD_RESETS_NAMESPACE,
    EVENT_PASSWORD_RESET_FAILED,
    EVENT_PASSWORD_RESET_REQUESTED,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    PASSWORD_RESET_DELIVERY_SERVICE,
    PASSWORD_RESET_TOKEN_BYTES,
    RATE_LIMIT_PASSWORD_RESET,
)
from .errors import InvalidRequest
from .passwords import check_new_password, set_password
from .rate_limiting import enforce_rate_limits
from .users import get_user, get_user_by_email, normalize_email
from .utils import get_config, hash_key

RESET_REQUESTED_MESSAGE = "If an account exists with that email, a reset link has been sent."
INVALID_RESET_TOKEN_MESSAGE = "Invalid or expired reset token"

_MAX_TOKEN_LENGTH = 512


def _token_key(token: str) -> str:
    return hash_key("password_reset", token)


async def _deliver(runtime: Any, email: str, user_id: str, token: str, expires_at: float) -> bool:
    registry = runtime.service_registry
    if not await registry.has_service(PASSWORD_RESET_DELIVERY_SERVICE):
        await logger_helper.warning(
            runtime, "Password reset delivery service is not registered",
            module="auth", user_id=user_id,
        )
        return False
    try:
        await registry.call(
            PASSWORD_RESET_DELIVERY_SERVICE, email=email, token=token, expires_at=expires_at
        )
    except Exception as e:
        # Ответ клиенту не должен выдавать, что аккаунт существует
        await logger_helper.error(
            runtime, "Password reset delivery failed",
            module="auth", user_id=user_id, error_type=type(e).__name__,
        )
        return False
    return True


async def request_password_reset(
    runtime: Any,
    email: str,
    ip: Optional[str] = None,
    challenge_token: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, str]:
    """
    Выдать токен сброса и передать его сервису доставки.

    Returns:
        {"message": ...} одинаковый для любого корректного email

    Raises:
        InvalidRequest: строка не похожа на email
        RateLimited, ChallengeRequired
    """
    try:
        normalized = normalize_email(email)
    except ValueError:
        raise InvalidRequest("Invalid email address")
    await enforce_rate_limits(
        runtime, RATE_LIMIT_PASSWORD_RESET,
        {"identity": normalized, "ip": ip},
        challenge_token=challenge_token,
    )

    user = await get_user_by_email(runtime, normalized)
    if user is None or not user.get("is_active", True):
        await record_security_event(
            runtime, EVENT_PASSWORD_RESET_REQUESTED, OUTCOME_FAILURE,
            ip=ip, metadata={"reason": "unknown_identity"},
        )
        return {"message": RESET_REQUESTED_MESSAGE}

    now = time.time() if now is None else now
    uid = user["user_id"]
    token = secrets.token_urlsafe(PASSWORD_RESET_TOKEN_BYTES)
    expires_at = now + get_config(runtime).password_reset_ttl
    await runtime.storage.set(AUTH_PASSWORD_RESETS_NAMESPACE, _token_key(token), {
        "user_id": uid,
        "created_at": now,
        "expires_at": expires_at,
        # Смена пароля после выдачи гасит токен
        "password_changed_at": user.get("password_changed_at"),
    })

    delivered = await _deliver(runtime, normalized, uid, token, expires_at)
    await record_security_event(
        runtime, EVENT_PASSWORD_RESET_REQUESTED, OUTCOME_SUCCESS,
        user_id=uid, ip=ip, metadata={"delivered": delivered},
    )
    return {"message": RESET_REQUESTED_MESSAGE}


async def _valid_reset_record(runtime: Any, token: Any, now: float) -> Optional[Dict[str, Any]]:
    if not isinstance(token, str) or not token or len(token) > _MAX_TOKEN_LENGTH:
        return None
    record = await runtime.storage.get(AUTH_PASSWORD_RESETS_NAMESPACE, _token_key(token))
    if record is None or record.get("expires_at", 0) <= now:
        return None
    user = await get_user(runtime, record.get("user_id"))
    if user is None or not user.get("is_active", True):
        return None
    if user.get("password_changed_at") != record.get("password_changed_at"):
        return None
    return record


async def verify_reset_token(
    runtime: Any,
    token: Any,
    ip: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Проверить токен без погашения (форма ввода нового пароля).

    Raises:
        InvalidRequest: токен неизвестен, истёк или уже не действует
        RateLimited
    """
    now = time.time() if now is None else now
    await enforce_rate_limits(runtime, RATE_LIMIT_PASSWORD_RESET, {"ip": ip})
    record = await _valid_reset_record(runtime, token, now)
    if record is None:
        raise InvalidRequest(INVALID_RESET_TOKEN_MESSAGE)
    return {"valid": True, "expires_at": record["expires_at"]}


async def reset_password(
    runtime: Any,
    token: Any,
    new_password: str,
    ip: Optional[str] = None,
    challenge_token: Optional[str] = None,
    now: Optional[float] = None,
) -> int:
    """
    Установить новый пароль по токену.

    Слабый или недавний пароль отклоняется до погашения токена, с тем же
    токеном можно повторить. Все сессии пользователя отзываются.

    Returns:
        число отозванных сессий

    Raises:
        InvalidRequest: токен неизвестен, истёк или уже использован
        WeakPassword, ReusedPassword
        RateLimited, ChallengeRequired
    """
    now = time.time() if now is None else now
    record = await _valid_reset_record(runtime, token, now)
    uid = record["user_id"] if record else None
    await enforce_rate_limits(
        runtime, RATE_LIMIT_PASSWORD_RESET,
        {"identity": uid, "ip": ip},
        challenge_token=challenge_token,
    )
    if record is None:
        await record_security_event(
            runtime, EVENT_PASSWORD_RESET_FAILED, OUTCOME_FAILURE,
            ip=ip, metadata={"reason": "invalid_token"},
        )
        raise InvalidRequest(INVALID_RESET_TOKEN_MESSAGE)

    user = await get_user(runtime, uid)
    if user is None:
        raise InvalidRequest(INVALID_RESET_TOKEN_MESSAGE)
    await check_new_password(runtime, user, new_password)

    consumed = False

    def consume(current: Optional[Dict[str, Any]]) -> None:
        nonlocal consumed
        consumed = (
            current is not None
            and current.get("expires_at", 0) > now
            and current.get("password_changed_at") == user.get("password_changed_at")
        )
        # Запись удаляется в любом случае: токен одноразовый
        return None

    await runtime.storage.update(AUTH_PASSWORD_RESETS_NAMESPACE, _token_key(token), consume)
    if not consumed:
        await record_security_event(
            runtime, EVENT_PASSWORD_RESET_FAILED, OUTCOME_FAILURE,
            user_id=uid, ip=ip, metadata={"reason": "token_already_used"},
        )
        raise InvalidRequest(INVALID_RESET_TOKEN_MESSAGE)

    return await set_password(runtime, uid, new_password, via="password_reset", ip=ip)


async def cleanup_expired_reset_tokens(runtime: Any, now: Optional[float] = None) -> int:
    """Удалить истёкшие токены сброса. Возвращает число удалённых."""
    now = time.time() if now is None else now
    removed = 0

    def drop_expired(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        nonlocal removed
        if current is None:
            return None
        if current.get("expires_at", 0) <= now:
            removed += 1
            return None
        return current

    for key in await runtime.storage.list_keys(AUTH_PASSWORD_RESETS_NAMESPACE):
        await runtime.storage.update(AUTH_PASSWORD_RESETS_NAMESPACE, key, drop_expired)
    return removed
