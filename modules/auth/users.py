"""
User management — учётные записи (Identity) и индекс по email.
"""

import time
from typing import Any, Dict, Optional

from .constants import (
    AUTH_CONFIG_NAMESPACE,
    AUTH_USER_EMAILS_NAMESPACE,
    AUTH_USERS_NAMESPACE,
    ROLE_USER,
    ROLES,
    USER_ID_SEQUENCE_KEY,
)
from .utils import canonical_id


def normalize_email(email: str) -> str:
    """
    Нормализует email для поиска и индекса.

    Raises:
        ValueError: если строка не похожа на email
    """
    if not isinstance(email, str):
        raise ValueError("email must be a string")
    normalized = email.strip().lower()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain or len(normalized) > 254:
        raise ValueError("invalid email")
    return normalized


async def _next_user_id(runtime: Any) -> str:
    """Следующий числовой id из атомарной последовательности."""
    def bump(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        value = int((current or {}).get("value", 0)) + 1
        return {"value": value}

    result = await runtime.storage.update(AUTH_CONFIG_NAMESPACE, USER_ID_SEQUENCE_KEY, bump)
    return canonical_id(result["value"])


async def get_user(runtime: Any, user_id: Any) -> Optional[Dict[str, Any]]:
    """Запись пользователя по id (любой из эквивалентных форм id)."""
    try:
        uid = canonical_id(user_id)
    except (TypeError, ValueError):
        return None
    data = await runtime.storage.get(AUTH_USERS_NAMESPACE, uid)
    return data if isinstance(data, dict) else None


async def get_user_by_email(runtime: Any, email: str) -> Optional[Dict[str, Any]]:
    try:
        normalized = normalize_email(email)
    except ValueError:
        return None
    index = await runtime.storage.get(AUTH_USER_EMAILS_NAMESPACE, normalized)
    if not isinstance(index, dict) or not index.get("user_id"):
        return None
    return await get_user(runtime, index["user_id"])


async def validate_user_exists(runtime: Any, user_id: Any) -> bool:
    return await get_user(runtime, user_id) is not None


async def create_user(
    runtime: Any,
    email: str,
    password_hash: str,
    role: str = ROLE_USER,
) -> Dict[str, Any]:
    """
    Создаёт пользователя с уже захешированным паролем.

    Email занимается атомарно через update индекса, поэтому два
    параллельных create_user с одним email не создадут дубликат.

    Raises:
        ValueError: некорректный email/role или email уже занят
    """
    normalized = normalize_email(email)
    if role not in ROLES:
        raise ValueError(f"role must be one of {ROLES}, got {role!r}")

    user_id = await _next_user_id(runtime)

    def claim(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if current is not None:
            raise ValueError("email already registered")
        return {"user_id": user_id}

    await runtime.storage.update(AUTH_USER_EMAILS_NAMESPACE, normalized, claim)

    now = time.time()
    user = {
        "user_id": user_id,
        "email": normalized,
        "role": role,
        "password_hash": password_hash,
        # Только прежние хеши, новые первыми
        "password_history": [],
        "password_changed_at": now,
        "created_at": now,
        "is_active": True,
    }
    await runtime.storage.set(AUTH_USERS_NAMESPACE, user_id, user)
    return user


def identity_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    """Публичное представление пользователя (без хешей)."""
    return {
        "user_id": user.get("user_id"),
        "email": user.get("email"),
        "role": user.get("role", ROLE_USER),
        "created_at": user.get("created_at"),
        "password_changed_at": user.get("password_changed_at"),
    }
