"""
Session Registry — жизненный цикл сессий.

Registry — единственный владелец записей сессий (namespace auth_sessions).
Остальные компоненты ссылаются на сессию только по session_id и меняют её
через функции этого модуля, каждая из которых делает один атомарный
storage.update().

Запись сессии:
    session_id, user_id, created_at, last_seen_at, refresh_expires_at
    fingerprint          — {ip, ip_prefix, user_agent, ua_family}
    rotation_counter     — сколько раз перевыпускался session id
    refresh_jti          — id текущего действующего refresh токена (не сам токен)
    refresh_seq          — номер ротации refresh токена
    regenerated_at       — когда id выдан последний раз
    trust                — normal | downgraded
    reauth_required      — после подозрения на перехват
    revoked_at / revoked_reason
    replaced_by          — у "надгробия" после перевыпуска id

Отозванные записи хранятся до refresh_expires_at: по ним распознаётся повторное
использование старых refresh токенов.
"""

import secrets
import time
from typing import Any, Dict, List, Optional

from core import logger_helper

from .audit import record_security_event
from .constants import (
    AUTH_SESSIONS_NAMESPACE,
    AUTH_USER_SESSIONS_NAMESPACE,
    EVENT_SESSION_CREATED,
    EVENT_SESSION_HIJACK_SUSPECTED,
    EVENT_SESSION_REAUTHENTICATED,
    EVENT_SESSION_REGENERATED,
    EVENT_SESSION_REVOKED,
    HIJACK_POLICY_HARD,
    OUTCOME_DETECTED,
    OUTCOME_SUCCESS,
    SESSION_TRUST_DOWNGRADED,
    SESSION_TRUST_NORMAL,
)
from .errors import SessionHijackSuspected, SessionRevoked, TokenReuseDetected
from .utils import (
    canonical_id,
    fingerprint_changed,
    fingerprint_key,
    get_config,
    parse_device_info,
)

# Сколько разных подозрительных fingerprint помнить на сессию
_MAX_FLAGGED_FINGERPRINTS = 10


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def _short(session_id: Optional[str]) -> Optional[str]:
    return logger_helper.short_id(session_id, 16)


def is_session_live(session: Optional[Dict[str, Any]], now: Optional[float] = None) -> bool:
    if not isinstance(session, dict) or session.get("revoked_at"):
        return False
    now = time.time() if now is None else now
    refresh_expires_at = session.get("refresh_expires_at")
    return refresh_expires_at is None or refresh_expires_at > now


def is_regeneration_due(session: Dict[str, Any], interval: int, now: Optional[float] = None) -> bool:
    """Пора ли перевыпустить session id (каждые `interval` секунд использования)."""
    now = time.time() if now is None else now
    issued = session.get("regenerated_at") or session.get("created_at") or now
    return now - issued >= interval


# ---------------------------------------------------------------------------
# Индекс user_id -> [session_id]
# ---------------------------------------------------------------------------

async def _index_update(runtime: Any, user_id: str, add: Optional[str] = None, remove: Optional[List[str]] = None) -> List[str]:
    to_remove = set(remove or [])

    def apply(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        ids = [sid for sid in (current or {}).get("session_ids", []) if sid not in to_remove]
        if add and add not in ids:
            ids.append(add)
        return {"session_ids": ids} if ids else None

    result = await runtime.storage.update(AUTH_USER_SESSIONS_NAMESPACE, user_id, apply)
    return list((result or {}).get("session_ids", []))


async def _user_session_ids(runtime: Any, user_id: str) -> List[str]:
    data = await runtime.storage.get(AUTH_USER_SESSIONS_NAMESPACE, user_id)
    return list((data or {}).get("session_ids", []))


# ---------------------------------------------------------------------------
# Создание и чтение
# ---------------------------------------------------------------------------

async def create_session(
    runtime: Any,
    user_id: Any,
    fingerprint: Optional[Dict[str, Any]] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Создаёт сессию после успешного входа.

    Сверх лимита config.max_concurrent_sessions отзываются самые давно
    неактивные сессии пользователя.
    """
    uid = canonical_id(user_id)
    config = get_config(runtime)
    now = time.time() if now is None else now
    session_id = new_session_id()

    session = {
        "session_id": session_id,
        "user_id": uid,
        "created_at": now,
        "last_seen_at": now,
        "refresh_expires_at": now + config.refresh_token_ttl,
        "fingerprint": dict(fingerprint or {}),
        "flagged_fingerprints": [],
        "rotation_counter": 0,
        "refresh_jti": None,
        "refresh_seq": 0,
        "regenerated_at": now,
        "trust": SESSION_TRUST_NORMAL,
        "reauth_required": False,
        "revoked_at": None,
        "revoked_reason": None,
        "replaced_by": None,
    }
    await runtime.storage.set(AUTH_SESSIONS_NAMESPACE, session_id, session)
    session_ids = await _index_update(runtime, uid, add=session_id)

    if len(session_ids) > config.max_concurrent_sessions:
        await _enforce_session_limit(runtime, uid, session_ids, keep=session_id, now=now)

    await record_security_event(
        runtime, EVENT_SESSION_CREATED, OUTCOME_SUCCESS,
        user_id=uid, ip=session["fingerprint"].get("ip"),
        metadata={"session": _short(session_id)},
    )
    return session


async def _enforce_session_limit(runtime: Any, uid: str, session_ids: List[str], keep: str, now: float) -> None:
    limit = get_config(runtime).max_concurrent_sessions
    live: List[Dict[str, Any]] = []
    stale: List[str] = []
    for sid in session_ids:
        record = await get_session(runtime, sid, allow_revoked=True)
        if is_session_live(record, now):
            live.append(record)
        else:
            stale.append(sid)
    if stale:
        await _index_update(runtime, uid, remove=stale)

    excess = len(live) - limit
    if excess <= 0:
        return
    candidates = sorted(
        (s for s in live if s["session_id"] != keep),
        key=lambda s: s.get("last_seen_at", 0),
    )
    for session in candidates[:excess]:
        await revoke_session(runtime, session["session_id"], reason="session_limit", now=now)


async def get_session(runtime: Any, session_id: str, allow_revoked: bool = False) -> Optional[Dict[str, Any]]:
    """
    Запись сессии по id.

    По умолчанию только действующая; allow_revoked=True отдаёт также
    отозванные и истёкшие записи.
    """
    if not isinstance(session_id, str) or not session_id:
        return None
    data = await runtime.storage.get(AUTH_SESSIONS_NAMESPACE, session_id)
    if not isinstance(data, dict):
        return None
    if not allow_revoked and not is_session_live(data):
        return None
    return data


async def get_live_session(runtime: Any, session_id: str, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Raises:
        SessionRevoked: сессии нет, она отозвана или истекла
    """
    session = await get_session(runtime, session_id, allow_revoked=True)
    if not is_session_live(session, now):
        raise SessionRevoked()
    return session


# ---------------------------------------------------------------------------
# touch / перехват
# ---------------------------------------------------------------------------

async def touch_session(
    runtime: Any,
    session_id: str,
    fingerprint: Optional[Dict[str, Any]] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Обновляет last_seen_at и сверяет fingerprint.

    Существенная смена fingerprint (подсеть или семейство UA) относительно
    клиента, который был активен в пределах config.hijack_window_seconds,
    поднимает SessionHijackSuspected:
    - policy "soft": сессия помечается downgraded + reauth_required,
      событие пишется один раз на каждый новый fingerprint;
    - policy "hard": сессия отзывается.
    Смена после паузы дольше окна принимается (смена сети у мобильных клиентов).

    Raises:
        SessionRevoked: сессия не действует
        SessionHijackSuspected: см. выше
    """
    config = get_config(runtime)
    now = time.time() if now is None else now
    outcome = "ok"

    def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        nonlocal outcome
        if not is_session_live(current, now):
            raise SessionRevoked()

        stored = current.get("fingerprint") or {}
        changed = fingerprint_changed(stored, fingerprint)
        recent = now - current.get("last_seen_at", 0) <= config.hijack_window_seconds
        current["last_seen_at"] = now

        if changed and recent:
            if config.hijack_policy == HIJACK_POLICY_HARD:
                current.update(revoked_at=now, revoked_reason="hijack_suspected", refresh_jti=None)
                outcome = "hard"
                return current
            flagged = current.setdefault("flagged_fingerprints", [])
            key = fingerprint_key(fingerprint)
            if key not in flagged:
                flagged.append(key)
                del flagged[:-_MAX_FLAGGED_FINGERPRINTS]
                outcome = "soft_first"
            else:
                outcome = "soft_repeat"
            current.update(trust=SESSION_TRUST_DOWNGRADED, reauth_required=True)
        elif changed:
            current["fingerprint"] = dict(fingerprint)
            outcome = "moved"
        elif fingerprint and not stored:
            current["fingerprint"] = dict(fingerprint)
        elif fingerprint and fingerprint.get("ip"):
            # Новый адрес в той же подсети
            current["fingerprint"] = {**stored, "ip": fingerprint.get("ip")}
        return current

    session = await runtime.storage.update(AUTH_SESSIONS_NAMESPACE, session_id, apply)
    ip = (fingerprint or {}).get("ip")

    if outcome == "hard":
        await _index_update(runtime, session["user_id"], remove=[session_id])
        await record_security_event(
            runtime, EVENT_SESSION_HIJACK_SUSPECTED, OUTCOME_DETECTED,
            user_id=session["user_id"], ip=ip,
            metadata={"session": _short(session_id), "policy": "hard", "ua_family": (fingerprint or {}).get("ua_family")},
        )
        await record_security_event(
            runtime, EVENT_SESSION_REVOKED, OUTCOME_SUCCESS,
            user_id=session["user_id"], ip=ip,
            metadata={"session": _short(session_id), "reason": "hijack_suspected"},
        )
        raise SessionHijackSuspected(session_id, hard=True, session=session)

    if outcome in ("soft_first", "soft_repeat"):
        if outcome == "soft_first":
            await record_security_event(
                runtime, EVENT_SESSION_HIJACK_SUSPECTED, OUTCOME_DETECTED,
                user_id=session["user_id"], ip=ip,
                metadata={
                    "session": _short(session_id),
                    "policy": "soft",
                    "previous_ip_prefix": (session.get("fingerprint") or {}).get("ip_prefix"),
                    "ua_family": (fingerprint or {}).get("ua_family"),
                },
            )
        raise SessionHijackSuspected(session_id, hard=False, session=session)

    return session


async def restore_session_trust(
    runtime: Any,
    session_id: str,
    fingerprint: Optional[Dict[str, Any]] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Возвращает доверие сессии после повторной проверки пароля.

    Текущий fingerprint становится эталонным.

    Raises:
        SessionRevoked: сессия не действует
    """
    now = time.time() if now is None else now

    def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not is_session_live(current, now):
            raise SessionRevoked()
        current.update(
            trust=SESSION_TRUST_NORMAL,
            reauth_required=False,
            flagged_fingerprints=[],
            last_seen_at=now,
        )
        if fingerprint:
            current["fingerprint"] = dict(fingerprint)
        return current

    session = await runtime.storage.update(AUTH_SESSIONS_NAMESPACE, session_id, apply)
    await record_security_event(
        runtime, EVENT_SESSION_REAUTHENTICATED, OUTCOME_SUCCESS,
        user_id=session["user_id"], ip=(fingerprint or {}).get("ip"),
        metadata={"session": _short(session_id)},
    )
    return session


# ---------------------------------------------------------------------------
# Указатель refresh токена
# ---------------------------------------------------------------------------

async def bind_refresh_token(
    runtime: Any,
    session_id: str,
    refresh_jti: str,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Делает refresh_jti текущим токеном сессии (первая выдача пары).

    Raises:
        SessionRevoked: сессия не действует
    """
    now = time.time() if now is None else now

    def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not is_session_live(current, now):
            raise SessionRevoked()
        current["refresh_jti"] = refresh_jti
        current["refresh_seq"] = int(current.get("refresh_seq", 0)) + 1
        return current

    return await runtime.storage.update(AUTH_SESSIONS_NAMESPACE, session_id, apply)


async def advance_refresh_pointer(
    runtime: Any,
    session_id: str,
    presented_jti: str,
    new_jti: str,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Compare-and-swap указателя refresh токена.

    Если presented_jti — текущий токен живой сессии, он атомарно
    заменяется на new_jti (refresh_seq + 1). Из двух параллельных вызовов
    с одним токеном выигрывает ровно один.

    Иначе это повторное использование: сессия (и вся цепочка перевыпусков)
    отзывается в том же update, и поднимается TokenReuseDetected.

    Raises:
        TokenReuseDetected: токен уже был обменян или сессии нет
        SessionRevoked: сессия закрыта штатно (logout), токен был текущим
    """
    config = get_config(runtime)
    now = time.time() if now is None else now
    outcome = "ok"

    def apply(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        nonlocal outcome
        if current is None:
            outcome = "reuse"
            return None
        is_current = current.get("refresh_jti") == presented_jti
        if current.get("revoked_at"):
            stale = current.get("replaced_by") or current.get("revoked_reason") == "token_reuse"
            outcome = "revoked" if is_current and not stale else "reuse"
            return current
        if not is_session_live(current, now):
            outcome = "revoked"
            return current
        if not is_current:
            outcome = "reuse"
            current.update(revoked_at=now, revoked_reason="token_reuse", refresh_jti=None)
            return current
        current.update(
            refresh_jti=new_jti,
            refresh_seq=int(current.get("refresh_seq", 0)) + 1,
            last_seen_at=now,
            refresh_expires_at=now + config.refresh_token_ttl,
        )
        return current

    session = await runtime.storage.update(AUTH_SESSIONS_NAMESPACE, session_id, apply)

    if outcome == "reuse":
        await revoke_session_chain(runtime, session_id, reason="token_reuse", now=now)
        raise TokenReuseDetected()
    if outcome == "revoked":
        raise SessionRevoked()
    return session


async def regenerate_session(
    runtime: Any,
    session_id: str,
    expected_refresh_jti: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Перевыпускает session id.

    Запись переезжает под новый id (rotation_counter + 1), старый id
    остаётся отозванным "надгробием" с replaced_by. Токены, привязанные к
    старому id, после этого перестают действовать, а предъявленный старый
    refresh токен отзывает всю цепочку.

    Args:
        expected_refresh_jti: если задан, перевыпуск только при этом
            текущем refresh токене (защита от гонки с ротацией)

    Raises:
        SessionRevoked: сессия не действует или указатель уже сменился
    """
    now = time.time() if now is None else now
    new_id = new_session_id()
    moved: Dict[str, Any] = {}

    def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not is_session_live(current, now):
            raise SessionRevoked()
        if expected_refresh_jti is not None and current.get("refresh_jti") != expected_refresh_jti:
            raise SessionRevoked()
        moved.update(current)
        current.update(
            revoked_at=now,
            revoked_reason="regenerated",
            replaced_by=new_id,
            refresh_jti=None,
        )
        return current

    await runtime.storage.update(AUTH_SESSIONS_NAMESPACE, session_id, apply)

    moved.update(
        session_id=new_id,
        rotation_counter=int(moved.get("rotation_counter", 0)) + 1,
        regenerated_at=now,
        last_seen_at=now,
        previous_session_id=session_id,
        replaced_by=None,
    )
    await runtime.storage.set(AUTH_SESSIONS_NAMESPACE, new_id, moved)
    uid = moved["user_id"]
    await _index_update(runtime, uid, add=new_id, remove=[session_id])

    await record_security_event(
        runtime, EVENT_SESSION_REGENERATED, OUTCOME_SUCCESS,
        user_id=uid, ip=(moved.get("fingerprint") or {}).get("ip"),
        metadata={
            "previous_session": _short(session_id),
            "session": _short(new_id),
            "rotation_counter": moved["rotation_counter"],
        },
    )
    return moved


# ---------------------------------------------------------------------------
# Отзыв
# ---------------------------------------------------------------------------

async def revoke_session(
    runtime: Any,
    session_id: str,
    reason: str = "logout",
    now: Optional[float] = None,
) -> bool:
    """
    Отзывает сессию. Идемпотентно.

    Returns:
        True если сессия была отозвана этим вызовом,
        False если её нет или она уже отозвана (AlreadyRevoked)
    """
    if not isinstance(session_id, str) or not session_id:
        return False
    now = time.time() if now is None else now
    revoked = False

    def apply(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        nonlocal revoked
        if current is None or current.get("revoked_at"):
            return current
        # refresh_jti остаётся: текущий токен закрытой сессии -> SessionRevoked, а не кража
        current.update(revoked_at=now, revoked_reason=reason)
        revoked = True
        return current

    session = await runtime.storage.update(AUTH_SESSIONS_NAMESPACE, session_id, apply)
    if session is None:
        return False
    await _index_update(runtime, session["user_id"], remove=[session_id])
    if revoked:
        await record_security_event(
            runtime, EVENT_SESSION_REVOKED, OUTCOME_SUCCESS,
            user_id=session["user_id"],
            metadata={"session": _short(session_id), "reason": reason},
        )
    return revoked


async def revoke_session_chain(
    runtime: Any,
    session_id: str,
    reason: str,
    now: Optional[float] = None,
) -> int:
    """
    Отзывает сессию и всех её преемников по replaced_by.

    Returns:
        число сессий, отозванных этим вызовом
    """
    count = 0
    seen = set()
    current_id: Optional[str] = session_id
    while current_id and current_id not in seen:
        seen.add(current_id)
        record = await get_session(runtime, current_id, allow_revoked=True)
        if record is None:
            break
        if await revoke_session(runtime, current_id, reason=reason, now=now):
            count += 1
        else:
            await _index_update(runtime, record["user_id"], remove=[current_id])
        current_id = record.get("replaced_by")
    return count


async def revoke_all_sessions(
    runtime: Any,
    user_id: Any,
    reason: str = "logout_all",
    except_session_id: Optional[str] = None,
) -> int:
    """
    Отзывает все сессии пользователя, кроме except_session_id.

    Returns:
        число отозванных сессий
    """
    uid = canonical_id(user_id)
    count = 0
    for sid in await _user_session_ids(runtime, uid):
        if sid == except_session_id:
            continue
        if await revoke_session(runtime, sid, reason=reason):
            count += 1
    await logger_helper.info(
        runtime, "Sessions revoked", module="auth", user_id=uid, reason=reason, count=count
    )
    return count


# ---------------------------------------------------------------------------
# Просмотр и обслуживание
# ---------------------------------------------------------------------------

def session_summary(session: Dict[str, Any], current_session_id: Optional[str] = None) -> Dict[str, Any]:
    """Представление сессии для владельца (без refresh указателя)."""
    fp = session.get("fingerprint") or {}
    return {
        "session_id": session["session_id"],
        "created_at": session.get("created_at"),
        "last_seen_at": session.get("last_seen_at"),
        "refresh_expires_at": session.get("refresh_expires_at"),
        "ip": fp.get("ip"),
        "device": parse_device_info(fp.get("user_agent")),
        "trust": session.get("trust", SESSION_TRUST_NORMAL),
        "reauth_required": bool(session.get("reauth_required")),
        "rotation_counter": session.get("rotation_counter", 0),
        "is_current": session["session_id"] == current_session_id,
    }


async def list_sessions(
    runtime: Any,
    user_id: Any,
    current_session_id: Optional[str] = None,
    now: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """Активные сессии пользователя, последние активные первыми."""
    uid = canonical_id(user_id)
    now = time.time() if now is None else now
    result = []
    for sid in await _user_session_ids(runtime, uid):
        session = await get_session(runtime, sid, allow_revoked=True)
        if is_session_live(session, now) and session.get("user_id") == uid:
            result.append(session_summary(session, current_session_id))
    result.sort(key=lambda s: s.get("last_seen_at") or 0, reverse=True)
    return result


async def cleanup_expired_sessions(runtime: Any, now: Optional[float] = None) -> int:
    """
    Удаляет записи с истёкшим refresh_expires_at (включая "надгробия").

    Returns:
        число удалённых записей
    """
    now = time.time() if now is None else now
    removed = 0
    for sid in await runtime.storage.list_keys(AUTH_SESSIONS_NAMESPACE):
        session = await get_session(runtime, sid, allow_revoked=True)
        if session is None:
            continue
        refresh_expires_at = session.get("refresh_expires_at")
        if refresh_expires_at is not None and refresh_expires_at <= now:
            if await runtime.storage.delete(AUTH_SESSIONS_NAMESPACE, sid):
                removed += 1
            if session.get("user_id"):
                await _index_update(runtime, session["user_id"], remove=[sid])
    if removed:
        await logger_helper.info(runtime, "Expired sessions removed", module="auth", count=removed)
    return removed


async def session_stats(runtime: Any, now: Optional[float] = None) -> Dict[str, int]:
    now = time.time() if now is None else now
    stats = {"total": 0, "active": 0, "revoked": 0, "expired": 0, "downgraded": 0}
    for sid in await runtime.storage.list_keys(AUTH_SESSIONS_NAMESPACE):
        session = await get_session(runtime, sid, allow_revoked=True)
        if session is None:
            continue
        stats["total"] += 1
        if session.get("revoked_at"):
            stats["revoked"] += 1
        elif not is_session_live(session, now):
            stats["expired"] += 1
        else:
            stats["active"] += 1
            if session.get("trust") == SESSION_TRUST_DOWNGRADED:
                stats["downgraded"] += 1
    return stats
