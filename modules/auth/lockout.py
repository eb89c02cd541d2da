"""
Lockout Policy Engine — прогрессивная блокировка после неудачных входов.

Состояние на пользователя (namespace auth_lockouts):
    failures         — число неудач в текущем окне
    window_start     — начало окна
    last_failure_at  — время последней неудачи
    locked_until     — конец блокировки (None — не заблокирован)
    tier             — уровень эскалации: 0 нет, 1..len(schedule) по таблице,
                       len(schedule)+1 — бессрочная блокировка
    last_locked_at   — время последнего включения блокировки
    lockouts         — число включений блокировки в пределах cooldown

Все изменения — один атомарный storage.update(), без пары read/write.

Правила:
- блокировка включается, когда счётчик достигает порога выше текущего tier;
- неудачи во время блокировки считаются, но tier не меняют;
- tier не убывает, пока не истёк cooldown после последней блокировки;
- неудача после снятия блокировки высшего уровня, в пределах cooldown,
  переводит в бессрочную блокировку. Снять её может только администратор;
- счётчик обнуляется успешным входом или, если блокировок не было в
  пределах cooldown, после lockout_window_seconds без неудач.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .audit import record_security_event
from .constants import AUTH_LOCKOUTS_NAMESPACE, EVENT_LOCKOUT_CLEARED, OUTCOME_SUCCESS
from .errors import AccountLocked
from .utils import canonical_id, get_config


@dataclass
class LockoutStatus:
    """Снимок состояния блокировки."""
    user_id: str
    failures: int = 0
    tier: int = 0
    locked_until: Optional[float] = None
    permanent: bool = False
    lockouts: int = 0
    # Этот вызов включил блокировку
    engaged: bool = False

    def is_locked(self, now: Optional[float] = None) -> bool:
        if self.permanent:
            return True
        now = time.time() if now is None else now
        return self.locked_until is not None and self.locked_until > now

    def retry_after(self, now: Optional[float] = None) -> Optional[int]:
        """Секунд до снятия блокировки; None для бессрочной."""
        if self.permanent or self.locked_until is None:
            return None
        now = time.time() if now is None else now
        return max(1, int(self.locked_until - now + 0.999))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "failures": self.failures,
            "tier": self.tier,
            "locked_until": self.locked_until,
            "permanent": self.permanent,
            "lockouts": self.lockouts,
        }


def permanent_tier(runtime: Any) -> int:
    return len(get_config(runtime).lockout_schedule) + 1


def _empty_state() -> Dict[str, Any]:
    return {
        "failures": 0,
        "window_start": None,
        "last_failure_at": None,
        "locked_until": None,
        "tier": 0,
        "last_locked_at": None,
        "lockouts": 0,
    }


def _state_is_locked(state: Dict[str, Any], now: float, perm_tier: int) -> bool:
    if state.get("tier", 0) >= perm_tier:
        return True
    locked_until = state.get("locked_until")
    return locked_until is not None and locked_until > now


def _to_status(uid: str, state: Optional[Dict[str, Any]], perm_tier: int, engaged: bool = False) -> LockoutStatus:
    state = state or _empty_state()
    tier = int(state.get("tier", 0))
    return LockoutStatus(
        user_id=uid,
        failures=int(state.get("failures", 0)),
        tier=tier,
        locked_until=state.get("locked_until"),
        permanent=tier >= perm_tier,
        lockouts=int(state.get("lockouts", 0)),
        engaged=engaged,
    )


async def get_lockout_status(runtime: Any, user_id: Any) -> LockoutStatus:
    uid = canonical_id(user_id)
    state = await runtime.storage.get(AUTH_LOCKOUTS_NAMESPACE, uid)
    return _to_status(uid, state, permanent_tier(runtime))


async def is_locked(runtime: Any, user_id: Any, now: Optional[float] = None) -> bool:
    """Проверяется до проверки пароля при каждом входе."""
    status = await get_lockout_status(runtime, user_id)
    return status.is_locked(now)


async def record_failure(runtime: Any, user_id: Any, now: Optional[float] = None) -> LockoutStatus:
    """
    Атомарно учитывает неудачный вход.

    Returns:
        LockoutStatus после изменения; engaged=True если этот вызов
        включил блокировку
    """
    uid = canonical_id(user_id)
    config = get_config(runtime)
    schedule = config.lockout_schedule
    perm_tier = len(schedule) + 1
    now = time.time() if now is None else now
    engaged = False

    def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        nonlocal engaged
        state = dict(_empty_state(), **(current or {}))
        locked = _state_is_locked(state, now, perm_tier)

        # Новое окно: давно не было неудач и блокировок в пределах cooldown
        last_failure = state["last_failure_at"]
        last_locked = state["last_locked_at"]
        in_cooldown = last_locked is not None and now - last_locked < config.lockout_cooldown_seconds
        if (
            not locked
            and last_failure is not None
            and now - last_failure >= config.lockout_window_seconds
            and not in_cooldown
        ):
            state.update(failures=0, window_start=None, tier=0, locked_until=None, lockouts=0)

        state["failures"] = int(state["failures"]) + 1
        state["last_failure_at"] = now
        if state["window_start"] is None:
            state["window_start"] = now

        if locked:
            return state

        tier = int(state["tier"])
        crossed = 0
        for index, (threshold, _duration) in enumerate(schedule, start=1):
            if state["failures"] >= threshold:
                crossed = index

        if crossed > tier:
            state["tier"] = crossed
            state["locked_until"] = now + schedule[crossed - 1][1]
            state["last_locked_at"] = now
            state["lockouts"] = int(state["lockouts"]) + 1
            engaged = True
        elif tier == len(schedule) and in_cooldown:
            # Устойчивая атака: неудача сразу после суточной блокировки
            state["tier"] = perm_tier
            state["locked_until"] = None
            state["last_locked_at"] = now
            state["lockouts"] = int(state["lockouts"]) + 1
            engaged = True
        return state

    state = await runtime.storage.update(AUTH_LOCKOUTS_NAMESPACE, uid, apply)
    return _to_status(uid, state, perm_tier, engaged=engaged)


async def record_success(runtime: Any, user_id: Any, now: Optional[float] = None) -> None:
    """
    Атомарно сбрасывает счётчик и блокировку после успешного входа.

    Raises:
        AccountLocked: аккаунт заблокирован; состояние не меняется
    """
    uid = canonical_id(user_id)
    perm_tier = permanent_tier(runtime)
    now = time.time() if now is None else now

    def apply(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if current is None:
            return None
        if _state_is_locked(current, now, perm_tier):
            status = _to_status(uid, current, perm_tier)
            raise AccountLocked(retry_after=status.retry_after(now))
        state = dict(current)
        state.update(failures=0, window_start=None, last_failure_at=None, locked_until=None, tier=0)
        return state

    await runtime.storage.update(AUTH_LOCKOUTS_NAMESPACE, uid, apply)


async def unlock_account(runtime: Any, user_id: Any, unlocked_by: Any = None) -> bool:
    """
    Административное снятие любой блокировки, включая бессрочную.

    Returns:
        True если аккаунт был заблокирован
    """
    uid = canonical_id(user_id)
    perm_tier = permanent_tier(runtime)
    now = time.time()
    was_locked = False

    def apply(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        nonlocal was_locked
        if current is None:
            return None
        was_locked = _state_is_locked(current, now, perm_tier)
        # После ручной разблокировки эскалация начинается с нуля
        return _empty_state()

    await runtime.storage.update(AUTH_LOCKOUTS_NAMESPACE, uid, apply)
    await record_security_event(
        runtime, EVENT_LOCKOUT_CLEARED, OUTCOME_SUCCESS,
        user_id=uid,
        metadata={"unlocked_by": unlocked_by, "was_locked": was_locked},
    )
    return was_locked
