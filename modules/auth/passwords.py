"""
Password management — хеширование, проверка, смена пароля и история паролей.

Хеши:
- bcrypt ($2a$/$2b$/$2y$) с настраиваемым work factor (config.bcrypt_rounds);
- устаревший pbkdf2_sha256$<iterations>$<salt>$<hash> — только проверка.

Смена work factor не ломает существующие хеши: verify понимает любой
cost, а `needs_rehash` сообщает, что хеш пора пересчитать при следующем
успешном входе.

CPU-bound операции выполняются в threadpool через `asyncio.to_thread`.
"""

import asyncio
import base64
import hashlib
import hmac
import re
import time
from typing import Any, Dict, List, Optional, Tuple

import bcrypt

from .audit import record_security_event
from .constants import (
    AUTH_USERS_NAMESPACE,
    BCRYPT_MAX_PASSWORD_BYTES,
    COMMON_PASSWORDS,
    EVENT_PASSWORD_CHANGE_FAILED,
    EVENT_PASSWORD_CHANGED,
    LEGACY_PBKDF2_PREFIX,
    MAX_PASSWORD_LENGTH,
    MIN_PASSWORD_LENGTH,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    REQUIRE_DIGIT,
    REQUIRE_LOWERCASE,
    REQUIRE_SPECIAL_CHAR,
    REQUIRE_UPPERCASE,
)
from .errors import InvalidCredentials, ReusedPassword, WeakPassword
from .sessions import revoke_all_sessions
from .users import get_user
from .utils import canonical_id, get_config

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")

# Хеш-заглушка для выравнивания времени ответа на несуществующий email
_dummy_hashes: Dict[int, str] = {}


def _password_bytes(password: str) -> bytes:
    # bcrypt>=5 отвергает пароли длиннее 72 байт вместо молчаливой обрезки
    return password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    """
    Хеширует пароль используя bcrypt.

    Args:
        password: пароль в открытом виде
        rounds: work factor (log2 числа итераций)
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def _verify_pbkdf2(password: str, password_hash: str) -> bool:
    try:
        _, iterations, salt, expected = password_hash.split("$", 3)
        derived = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations)
        )
    except ValueError:
        return False
    actual = base64.b64encode(derived).decode("ascii").strip()
    return hmac.compare_digest(actual, expected.strip())


def verify_password(password: str, password_hash: str) -> bool:
    """
    Проверяет пароль против хеша любой поддерживаемой версии.

    Сравнение constant-time (bcrypt.checkpw / hmac.compare_digest).
    Нераспознанный или битый хеш — False.
    """
    if not isinstance(password, str) or not isinstance(password_hash, str):
        return False
    if password_hash.startswith(_BCRYPT_PREFIXES):
        try:
            return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
        except ValueError:
            return False
    if password_hash.startswith(LEGACY_PBKDF2_PREFIX):
        return _verify_pbkdf2(password, password_hash)
    return False


def bcrypt_cost(password_hash: str) -> Optional[int]:
    """Work factor bcrypt-хеша или None для других алгоритмов."""
    if not password_hash.startswith(_BCRYPT_PREFIXES):
        return None
    try:
        return int(password_hash.split("$")[2])
    except (IndexError, ValueError):
        return None


def needs_rehash(password_hash: str, rounds: int) -> bool:
    """True, если хеш не bcrypt или его cost отличается от текущей политики."""
    return bcrypt_cost(password_hash) != rounds


def validate_password_strength(password: str) -> Tuple[bool, Optional[str]]:
    """
    Валидирует силу пароля согласно политикам.

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(password, str):
        return False, "Password must be a string"

    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"

    if len(password) > MAX_PASSWORD_LENGTH:
        return False, f"Password must be at most {MAX_PASSWORD_LENGTH} characters long"

    if REQUIRE_UPPERCASE and not re.search(r"[A-Z]", password):
        return False, "Password must contain at least one uppercase letter"

    if REQUIRE_LOWERCASE and not re.search(r"[a-z]", password):
        return False, "Password must contain at least one lowercase letter"

    if REQUIRE_DIGIT and not re.search(r"\d", password):
        return False, "Password must contain at least one digit"

    if REQUIRE_SPECIAL_CHAR and not re.search(r"[^A-Za-z0-9]", password):
        return False, "Password must contain at least one special character"

    # "Password123!" это тот же словарный пароль с декором
    core = re.sub(r"[^a-z0-9]", "", password.lower())
    if password.lower() in COMMON_PASSWORDS or core in COMMON_PASSWORDS:
        return False, "Password is too common"

    return True, None


async def hash_password_async(runtime: Any, password: str) -> str:
    rounds = get_config(runtime).bcrypt_rounds
    return await asyncio.to_thread(hash_password, password, rounds)


async def verify_password_async(password: str, password_hash: str) -> bool:
    return await asyncio.to_thread(verify_password, password, password_hash)


async def _dummy_verify(runtime: Any, password: str) -> None:
    rounds = get_config(runtime).bcrypt_rounds
    dummy = _dummy_hashes.get(rounds)
    if dummy is None:
        dummy = await asyncio.to_thread(hash_password, "dummy-password-for-timing", rounds)
        _dummy_hashes[rounds] = dummy
    await verify_password_async(password, dummy)


async def verify_user_password(runtime: Any, user_id: Any, password: str) -> bool:
    """
    Проверяет пароль пользователя.

    Для неизвестного пользователя выполняется та же по стоимости проверка
    против хеша-заглушки, чтобы время ответа не выдавало наличие аккаунта.
    """
    user = await get_user(runtime, user_id)
    password_hash = user.get("password_hash") if user else None
    if not password_hash:
        await _dummy_verify(runtime, password)
        return False
    return await verify_password_async(password, password_hash)


async def verify_unknown_user(runtime: Any, password: str) -> None:
    """Выровнять время ответа для email, которого нет в системе."""
    await _dummy_verify(runtime, password)


async def rehash_if_needed(runtime: Any, user_id: Any, password: str) -> bool:
    """
    Пересчитывает хеш после успешного входа, если изменилась политика.

    Запись обновляется только если хеш не сменился параллельно.

    Returns:
        True если хеш был пересчитан
    """
    uid = canonical_id(user_id)
    rounds = get_config(runtime).bcrypt_rounds
    user = await get_user(runtime, uid)
    if not user or not needs_rehash(user.get("password_hash", ""), rounds):
        return False

    old_hash = user["password_hash"]
    new_hash = await hash_password_async(runtime, password)
    replaced = False

    def swap(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        nonlocal replaced
        if current is None or current.get("password_hash") != old_hash:
            return current
        # История хранит только прежние пароли, текущий хеш меняется на месте
        current["password_hash"] = new_hash
        replaced = True
        return current

    await runtime.storage.update(AUTH_USERS_NAMESPACE, uid, swap)
    return replaced


def _history_hashes(user: Dict[str, Any], depth: int) -> List[str]:
    """Текущий хеш и последние `depth` прежних."""
    hashes = [user["password_hash"]] if user.get("password_hash") else []
    hashes.extend(e["hash"] for e in user.get("password_history", [])[:depth] if e.get("hash"))
    return hashes


def _matches_any(password: str, hashes: List[str]) -> bool:
    # Без раннего выхода: время не зависит от позиции совпадения
    matched = False
    for password_hash in hashes:
        if verify_password(password, password_hash):
            matched = True
    return matched


async def _store_new_password(
    runtime: Any,
    uid: str,
    expected_hash: Optional[str],
    new_hash: str,
) -> Dict[str, Any]:
    """
    Атомарно: новый хеш текущим, прежний в начало истории, вытеснение за глубиной N.

    expected_hash — хеш, относительно которого проверялся старый пароль и
    история. Если он сменился параллельно, смена отклоняется.
    """
    depth = get_config(runtime).password_history_depth
    now = time.time()

    def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if current is None:
            raise InvalidCredentials()
        if expected_hash is not None and current.get("password_hash") != expected_hash:
            raise InvalidCredentials()
        history = list(current.get("password_history", []))
        if current.get("password_hash"):
            history.insert(0, {
                "hash": current["password_hash"],
                "created_at": current.get("password_changed_at"),
                "replaced_at": now,
            })
        current["password_hash"] = new_hash
        current["password_history"] = history[:depth]
        current["password_changed_at"] = now
        return current

    return await runtime.storage.update(AUTH_USERS_NAMESPACE, uid, apply)


async def change_password(
    runtime: Any,
    user_id: Any,
    old_password: str,
    new_password: str,
    current_session_id: Optional[str] = None,
    ip: Optional[str] = None,
) -> int:
    """
    Меняет пароль пользователя.

    Проверяет старый пароль, политику и историю последних N паролей
    (сравнение через хеш-функцию, не по открытому тексту). После смены
    отзывает все остальные сессии пользователя.

    Returns:
        число отозванных сессий

    Raises:
        InvalidCredentials: пользователь не найден или старый пароль неверен
        WeakPassword: новый пароль не проходит политику
        ReusedPassword: новый пароль совпадает с одним из последних N
    """
    uid = canonical_id(user_id)
    user = await get_user(runtime, uid)
    if user is None:
        await verify_unknown_user(runtime, old_password)
        raise InvalidCredentials()

    observed_hash = user.get("password_hash")
    if not observed_hash or not await verify_password_async(old_password, observed_hash):
        await record_security_event(
            runtime, EVENT_PASSWORD_CHANGE_FAILED, OUTCOME_FAILURE,
            user_id=uid, ip=ip, metadata={"reason": "incorrect_old_password"},
        )
        raise InvalidCredentials()

    try:
        await check_new_password(runtime, user, new_password)
    except ReusedPassword:
        await record_security_event(
            runtime, EVENT_PASSWORD_CHANGE_FAILED, OUTCOME_FAILURE,
            user_id=uid, ip=ip, metadata={"reason": "reused_password"},
        )
        raise

    new_hash = await hash_password_async(runtime, new_password)
    await _store_new_password(runtime, uid, observed_hash, new_hash)

    revoked = await revoke_all_sessions(
        runtime, uid, reason="password_changed", except_session_id=current_session_id
    )
    await record_security_event(
        runtime, EVENT_PASSWORD_CHANGED, OUTCOME_SUCCESS,
        user_id=uid, ip=ip, metadata={"revoked_sessions": revoked},
    )
    return revoked


async def check_new_password(runtime: Any, user: Dict[str, Any], new_password: str) -> None:
    """
    Политика сложности и история: текущий пароль и последние N прежних.

    Raises:
        WeakPassword, ReusedPassword
    """
    is_valid, error_message = validate_password_strength(new_password)
    if not is_valid:
        raise WeakPassword(error_message)

    depth = get_config(runtime).password_history_depth
    if await asyncio.to_thread(_matches_any, new_password, _history_hashes(user, depth)):
        raise ReusedPassword()


async def set_password(
    runtime: Any,
    user_id: Any,
    new_password: str,
    actor: Optional[str] = None,
    via: str = "admin",
    ip: Optional[str] = None,
) -> int:
    """
    Установка пароля без старого пароля (администратор, сброс по токену).

    Правила политики и истории те же. Отзывает все сессии пользователя.

    Raises:
        InvalidCredentials: пользователь не найден
        WeakPassword, ReusedPassword
    """
    uid = canonical_id(user_id)
    user = await get_user(runtime, uid)
    if user is None:
        raise InvalidCredentials()

    await check_new_password(runtime, user, new_password)

    new_hash = await hash_password_async(runtime, new_password)
    await _store_new_password(runtime, uid, user.get("password_hash"), new_hash)

    revoked = await revoke_all_sessions(runtime, uid, reason="password_reset")
    await record_security_event(
        runtime, EVENT_PASSWORD_CHANGED, OUTCOME_SUCCESS,
        user_id=uid, ip=ip,
        metadata={"revoked_sessions": revoked, "set_by": actor or via, "via": via},
    )
    return revoked
