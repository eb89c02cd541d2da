"""
Rate limiting — защита от перебора и злоупотреблений.

Скользящее окно: на каждый (класс эндпоинта, ключ) хранится журнал
времён попыток. Превышение лимита переводит ключ в режим челленджа:
дальше пропускаются только попытки с токеном, который принял внешний
верификатор (сервис auth.challenge.verify). Сверх hard-лимита
(limit * rate_limit_hard_multiplier) отказ безусловный.
"""

import time
from typing import Any, Dict, Optional

from core import logger_helper

from .audit import record_security_event
from .constants import (
    AUTH_RATE_LIMITS_NAMESPACE,
    CHALLENGE_VERIFY_SERVICE,
    EVENT_CHALLENGE_REQUIRED,
    EVENT_RATE_LIMITED,
    OUTCOME_BLOCKED,
)
from .errors import ChallengeRequired, RateLimited
from .utils import get_config, hash_key


def _limits_for(runtime: Any, endpoint_class: str):
    limits = get_config(runtime).rate_limits
    if endpoint_class not in limits:
        raise ValueError(f"Unknown rate limit class: {endpoint_class!r}")
    return limits[endpoint_class]


async def _verify_challenge(runtime: Any, endpoint_class: str, challenge_token: Optional[str]) -> bool:
    if not challenge_token:
        return False
    registry = runtime.service_registry
    if not await registry.has_service(CHALLENGE_VERIFY_SERVICE):
        return False
    try:
        result = await registry.call(
            CHALLENGE_VERIFY_SERVICE, token=challenge_token, endpoint_class=endpoint_class
        )
    except Exception as e:
        # Сбой верификатора = челлендж не пройден
        await logger_helper.warning(
            runtime, "Challenge verifier failed", module="auth",
            endpoint_class=endpoint_class, error_type=type(e).__name__,
        )
        return False
    return bool(result)


async def rate_limit_check(
    runtime: Any,
    endpoint_class: str,
    key: str,
    challenge_token: Optional[str] = None,
    key_type: str = "key",
    challenge_verified: Optional[bool] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Учитывает попытку и проверяет лимит.

    Args:
        endpoint_class: login | refresh | password_reset | api
        key: идентификатор (email, IP, ...) — в storage хранится только хеш
        challenge_token: токен пройденного челленджа, если клиент его прислал
        key_type: метка ключа для журнала событий ("identity", "ip")
        challenge_verified: результат уже выполненной проверки челленджа;
            None — проверить challenge_token здесь

    Returns:
        {"allowed": True, "remaining": n}

    Raises:
        ChallengeRequired: лимит превышен, нужен челлендж
        RateLimited: лимит превышен (верификатора нет или hard-лимит)
        ValueError: неизвестный endpoint_class
    """
    config = get_config(runtime)
    limit, window = _limits_for(runtime, endpoint_class)
    if not config.rate_limiting_enabled or not key:
        return {"allowed": True, "remaining": limit}

    now = time.time() if now is None else now
    hard_limit = limit * config.rate_limit_hard_multiplier
    verifier_present = await runtime.service_registry.has_service(CHALLENGE_VERIFY_SERVICE)
    verified = challenge_verified
    if verified is None:
        verified = await _verify_challenge(runtime, endpoint_class, challenge_token)
    outcome = "allowed"
    retry_after = 1
    attempts = 0

    def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        nonlocal outcome, retry_after, attempts
        hits = [t for t in (current or {}).get("hits", []) if t > now - window]
        if hits:
            retry_after = max(1, int(hits[0] + window - now + 0.999))
        if len(hits) >= hard_limit:
            outcome = "hard"
            attempts = len(hits)
            return {"hits": hits, "endpoint_class": endpoint_class}
        hits.append(now)
        attempts = len(hits)
        if attempts > limit and not verified:
            outcome = "challenge"
        return {"hits": hits, "endpoint_class": endpoint_class}

    record_key = hash_key(endpoint_class, key)
    await runtime.storage.update(AUTH_RATE_LIMITS_NAMESPACE, record_key, apply)

    if outcome == "allowed":
        return {"allowed": True, "remaining": max(0, limit - attempts)}

    ip = key if key_type == "ip" else None
    metadata = {"endpoint_class": endpoint_class, "key_type": key_type, "attempts": attempts}
    if outcome == "challenge" and verifier_present:
        await record_security_event(runtime, EVENT_CHALLENGE_REQUIRED, OUTCOME_BLOCKED, ip=ip, metadata=metadata)
        raise ChallengeRequired(retry_after)
    await record_security_event(runtime, EVENT_RATE_LIMITED, OUTCOME_BLOCKED, ip=ip, metadata=metadata)
    raise RateLimited(retry_after)


async def enforce_rate_limits(
    runtime: Any,
    endpoint_class: str,
    keys: Dict[str, Optional[str]],
    challenge_token: Optional[str] = None,
    now: Optional[float] = None,
) -> None:
    """
    Проверяет все ключи запроса (например identity и ip).

    Пустые ключи пропускаются. Первый превышенный лимит поднимает ошибку.
    Челлендж проверяется один раз на запрос.
    """
    verified = await _verify_challenge(runtime, endpoint_class, challenge_token)
    for key_type, key in keys.items():
        if key:
            await rate_limit_check(
                runtime, endpoint_class, key,
                key_type=key_type, challenge_verified=verified, now=now,
            )


async def reset_rate_limit(runtime: Any, endpoint_class: str, key: str) -> bool:
    """Сбросить счётчик ключа (администрирование, тесты)."""
    return await runtime.storage.delete(AUTH_RATE_LIMITS_NAMESPACE, hash_key(endpoint_class, key))


async def prune_rate_limits(runtime: Any, now: Optional[float] = None) -> int:
    """
    Удалить записи, в окне которых не осталось попыток.

    Returns:
        число удалённых записей
    """
    now = time.time() if now is None else now
    limits = get_config(runtime).rate_limits
    removed = 0

    def prune(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        nonlocal removed
        if current is None:
            return None
        class_limits = limits.get(current.get("endpoint_class"))
        hits = []
        if class_limits is not None:
            hits = [t for t in current.get("hits", []) if t > now - class_limits[1]]
        if not hits:
            removed += 1
            return None
        current["hits"] = hits
        return current

    for record_key in await runtime.storage.list_keys(AUTH_RATE_LIMITS_NAMESPACE):
        await runtime.storage.update(AUTH_RATE_LIMITS_NAMESPACE, record_key, prune)
    return removed
