"""
Security Event Log — append-only журнал событий безопасности.

Запись событий никогда не блокирует и не ломает основную операцию:
`record_security_event` только планирует фоновую задачу, которая пишет
в storage с повторными попытками. Сам факт попытки виден через
`get_audit_stats` (attempted / written / failed / retried).
"""

import asyncio
import time
import uuid
import weakref
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from core import logger_helper

from .constants import (
    AUTH_SECURITY_EVENTS_NAMESPACE,
    CRITICAL_EVENT_CATEGORIES,
    DEFAULT_EVENT_QUERY_LIMIT,
    EVENT_LOGIN_FAILURE,
    EVENT_OUTCOMES,
    EVENT_SESSION_HIJACK_SUSPECTED,
    EVENT_TOKEN_REUSE_DETECTED,
    EVENT_LOCKOUT_ENGAGED,
    MAX_EVENT_QUERY_LIMIT,
    OUTCOME_BLOCKED,
    OUTCOME_FAILURE,
    SECURITY_EVENT_CATEGORIES,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    WARNING_EVENT_CATEGORIES,
)
from .utils import canonical_id, get_config

SECURITY_EVENT_TOPIC = "security.event"

# Пауза перед повторной записью: base * 2**attempt
_RETRY_BASE_DELAY = 0.05


@dataclass
class _AuditState:
    attempted: int = 0
    written: int = 0
    failed: int = 0
    retried: int = 0
    pending: "set[asyncio.Task]" = field(default_factory=set)


_states: "weakref.WeakKeyDictionary[Any, _AuditState]" = weakref.WeakKeyDictionary()


def _state(runtime: Any) -> _AuditState:
    state = _states.get(runtime)
    if state is None:
        state = _AuditState()
        _states[runtime] = state
    return state


def severity_for(category: str, outcome: str) -> str:
    """Severity по категории и исходу."""
    if category in CRITICAL_EVENT_CATEGORIES:
        return SEVERITY_CRITICAL
    if category in WARNING_EVENT_CATEGORIES:
        return SEVERITY_WARNING
    if outcome in (OUTCOME_FAILURE, OUTCOME_BLOCKED):
        return SEVERITY_WARNING
    return SEVERITY_INFO


def build_security_event(
    category: str,
    outcome: str,
    user_id: Any = None,
    ip: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    severity: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Собрать запись события (без записи в storage).

    Raises:
        ValueError: неизвестная категория или outcome
    """
    if category not in SECURITY_EVENT_CATEGORIES:
        raise ValueError(f"Unknown security event category: {category!r}")
    if outcome not in EVENT_OUTCOMES:
        raise ValueError(f"Unknown security event outcome: {outcome!r}")

    timestamp = time.time()
    event_id = f"{int(timestamp * 1000):013d}_{uuid.uuid4().hex}"

    safe_metadata: Dict[str, Any] = {}
    if isinstance(metadata, dict):
        for k, v in metadata.items():
            if isinstance(v, (str, int, float, bool, type(None), list, dict)):
                safe_metadata[str(k)] = v
            else:
                safe_metadata[str(k)] = str(v)[:500]

    return {
        "event_id": event_id,
        "timestamp": timestamp,
        "user_id": canonical_id(user_id) if user_id is not None else None,
        "category": category,
        "outcome": outcome,
        "severity": severity or severity_for(category, outcome),
        "ip": ip,
        "metadata": safe_metadata,
    }


async def _write_event(runtime: Any, event: Dict[str, Any], retries: int) -> None:
    state = _state(runtime)
    last_error: Optional[BaseException] = None

    for attempt in range(retries + 1):
        try:
            await runtime.storage.set(AUTH_SECURITY_EVENTS_NAMESPACE, event["event_id"], event)
            state.written += 1
            last_error = None
            break
        except Exception as e:
            last_error = e
            if attempt < retries:
                state.retried += 1
                await asyncio.sleep(_RETRY_BASE_DELAY * (2 ** attempt))

    if last_error is not None:
        state.failed += 1
        await logger_helper.error(
            runtime,
            "Security event write failed",
            module="auth",
            category=event["category"],
            event_id=event["event_id"],
            error_type=type(last_error).__name__,
        )
        # Подписчики видят только сохранённые события
        return

    event_bus = getattr(runtime, "event_bus", None)
    if event_bus is not None:
        await event_bus.publish(SECURITY_EVENT_TOPIC, event)


async def record_security_event(
    runtime: Any,
    category: str,
    outcome: str,
    user_id: Any = None,
    ip: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Зарегистрировать событие безопасности (fire-and-forget).

    Никогда не бросает исключений. Запись в storage идёт фоновой задачей
    с повторными попытками; вызывающий код не ждёт её завершения.

    Args:
        runtime: экземпляр CoreRuntime
        category: категория (EVENT_* из constants)
        outcome: success | failure | blocked | detected
        user_id: id пользователя, если известен
        ip: адрес клиента
        metadata: дополнительные поля (без паролей и токенов)

    Returns:
        Запись события или None, если событие не удалось даже собрать
    """
    state = _state(runtime)
    state.attempted += 1

    try:
        event = build_security_event(category, outcome, user_id, ip, metadata)
    except (TypeError, ValueError) as e:
        state.failed += 1
        await logger_helper.error(
            runtime, f"Invalid security event: {e}", module="auth", category=category
        )
        return None

    if event["severity"] == SEVERITY_CRITICAL:
        await logger_helper.error(
            runtime,
            f"Security event: {category}",
            module="auth",
            user_id=event["user_id"],
            ip=ip,
        )

    retries = get_config(runtime).audit_retry_attempts
    task = asyncio.create_task(_write_event(runtime, event, retries))
    state.pending.add(task)
    task.add_done_callback(state.pending.discard)
    return event


async def flush_security_events(runtime: Any) -> None:
    """Дождаться записи всех запланированных событий (shutdown, тесты)."""
    state = _state(runtime)
    while state.pending:
        await asyncio.gather(*list(state.pending), return_exceptions=True)


def get_audit_stats(runtime: Any) -> Dict[str, int]:
    """Счётчики записи событий для мониторинга."""
    state = _state(runtime)
    return {
        "attempted": state.attempted,
        "written": state.written,
        "failed": state.failed,
        "retried": state.retried,
        "pending": len(state.pending),
    }


async def _load_events(runtime: Any, since: Optional[float] = None) -> List[Dict[str, Any]]:
    keys = await runtime.storage.list_keys(AUTH_SECURITY_EVENTS_NAMESPACE)
    if since is not None:
        # Ключ начинается с миллисекунд, отсекаем старые без чтения
        threshold = f"{int(since * 1000):013d}"
        keys = [k for k in keys if k[:13] >= threshold]
    # Новые первыми
    keys.sort(reverse=True)
    events = []
    for key in keys:
        event = await runtime.storage.get(AUTH_SECURITY_EVENTS_NAMESPACE, key)
        if isinstance(event, dict):
            events.append(event)
    return events


async def query_security_events(
    runtime: Any,
    category: Optional[str] = None,
    user_id: Any = None,
    outcome: Optional[str] = None,
    severity: Optional[str] = None,
    ip: Optional[str] = None,
    since: Optional[float] = None,
    until: Optional[float] = None,
    limit: int = DEFAULT_EVENT_QUERY_LIMIT,
    offset: int = 0,
    categories: Optional[Iterable[str]] = None,
) -> List[Dict[str, Any]]:
    """
    Выборка событий, новые первыми.

    categories ограничивает набор категорий (журнал самого пользователя).

    Raises:
        ValueError: некорректный limit/offset или user_id
    """
    if limit < 1 or limit > MAX_EVENT_QUERY_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_EVENT_QUERY_LIMIT}")
    if offset < 0:
        raise ValueError("offset must be >= 0")
    wanted_user = canonical_id(user_id) if user_id is not None else None
    allowed = frozenset(categories) if categories is not None else None

    matched: List[Dict[str, Any]] = []
    for event in await _load_events(runtime, since):
        if category and event.get("category") != category:
            continue
        if allowed is not None and event.get("category") not in allowed:
            continue
        if wanted_user is not None and event.get("user_id") != wanted_user:
            continue
        if outcome and event.get("outcome") != outcome:
            continue
        if severity and event.get("severity") != severity:
            continue
        if ip and event.get("ip") != ip:
            continue
        if until is not None and event.get("timestamp", 0) > until:
            continue
        matched.append(event)

    return matched[offset:offset + limit]


async def security_metrics(runtime: Any, hours: int = 24, now: Optional[float] = None) -> Dict[str, Any]:
    """Сводка за последние `hours` часов."""
    now = time.time() if now is None else now
    events = await _load_events(runtime, since=now - hours * 3600)

    by_category = Counter(e.get("category") for e in events)
    by_severity = Counter(e.get("severity") for e in events)
    failed_ips = Counter(
        e.get("ip") for e in events
        if e.get("category") == EVENT_LOGIN_FAILURE and e.get("ip")
    )

    return {
        "period_hours": hours,
        "total_events": len(events),
        "failed_logins": by_category.get(EVENT_LOGIN_FAILURE, 0),
        "lockouts": by_category.get(EVENT_LOCKOUT_ENGAGED, 0),
        "hijack_suspicions": by_category.get(EVENT_SESSION_HIJACK_SUSPECTED, 0),
        "token_reuse_detections": by_category.get(EVENT_TOKEN_REUSE_DETECTED, 0),
        "events_by_category": dict(by_category),
        "events_by_severity": dict(by_severity),
        "top_failed_ips": [
            {"ip": ip, "count": count} for ip, count in failed_ips.most_common(10)
        ],
    }
