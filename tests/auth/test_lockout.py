"""
Тесты для modules/auth/lockout.py
"""
import asyncio

import pytest

from modules.auth.errors import AccountLocked
from modules.auth.lockout import (
    get_lockout_status,
    is_locked,
    record_failure,
    record_success,
    unlock_account,
)

T0 = 1_700_000_000.0


async def fail_times(runtime, user_id, count, now):
    status = None
    for _ in range(count):
        status = await record_failure(runtime, user_id, now=now)
    return status


async def fail_between_locks(runtime, user_id, count, start=T0):
    """Неудачи, каждая следующая после окончания текущей блокировки."""
    now = start
    status = None
    for _ in range(count):
        status = await record_failure(runtime, user_id, now=now)
        if status.locked_until is not None:
            now = max(now, status.locked_until + 1)
    return status


class TestThresholds:
    """Пороги и длительность блокировки."""

    @pytest.mark.asyncio
    async def test_two_failures_do_not_lock(self, runtime):
        status = await fail_times(runtime, "1", 2, T0)
        assert status.failures == 2
        assert status.is_locked(T0) is False
        assert await is_locked(runtime, "1", now=T0) is False

    @pytest.mark.asyncio
    async def test_third_failure_locks_for_five_minutes(self, runtime):
        """Тест: 3 неудачи подряд -> блокировка минимум на 5 минут."""
        status = await fail_times(runtime, "1", 3, T0)

        assert status.engaged is True
        assert status.tier == 1
        assert status.locked_until >= T0 + 300
        assert await is_locked(runtime, "1", now=T0 + 299) is True
        assert await is_locked(runtime, "1", now=T0 + 301) is False
        assert status.retry_after(T0) == 300

    @pytest.mark.asyncio
    async def test_failures_while_locked_are_counted(self, runtime):
        """Тест: неудачи во время блокировки считаются, но не продлевают её."""
        locked = await fail_times(runtime, "1", 3, T0)
        status = await record_failure(runtime, "1", now=T0 + 10)

        assert status.failures == 4
        assert status.engaged is False
        assert status.locked_until == locked.locked_until

    @pytest.mark.asyncio
    async def test_concurrent_failures_counted_exactly(self, runtime):
        """Тест: параллельные неудачи не теряются."""
        await asyncio.gather(*(record_failure(runtime, "7", now=T0) for _ in range(10)))

        status = await get_lockout_status(runtime, "7")
        assert status.failures == 10
        assert status.lockouts == 1

    @pytest.mark.asyncio
    async def test_canonical_user_id(self, runtime):
        """Тест: 42, "42" и "042" — один и тот же счётчик."""
        await record_failure(runtime, 42, now=T0)
        await record_failure(runtime, "42", now=T0)
        await record_failure(runtime, "042", now=T0)
        assert (await get_lockout_status(runtime, "42")).tier == 1


class TestEscalation:
    """Эскалация по таблице и бессрочная блокировка."""

    @pytest.mark.asyncio
    async def test_tiers_escalate(self, runtime):
        """Тест: 5 неудач -> 15 минут, 10 -> час, 20 -> сутки."""
        now = T0
        status = await fail_times(runtime, "1", 3, now)
        assert status.tier == 1

        now = status.locked_until + 1
        status = await fail_times(runtime, "1", 2, now)
        assert status.tier == 2
        assert status.locked_until == now + 900

        now = status.locked_until + 1
        status = await fail_times(runtime, "1", 5, now)
        assert status.tier == 3
        assert status.locked_until == now + 3600

        now = status.locked_until + 1
        status = await fail_times(runtime, "1", 10, now)
        assert status.tier == 4
        assert status.locked_until == now + 86400
        assert status.permanent is False

    @pytest.mark.asyncio
    async def test_failure_after_top_tier_is_permanent(self, runtime):
        """Тест: неудача сразу после суточной блокировки -> бессрочно."""
        status = await fail_between_locks(runtime, "1", 20)
        assert status.tier == 4

        later = status.locked_until + 60
        status = await record_failure(runtime, "1", now=later)

        assert status.permanent is True
        assert status.retry_after(later) is None
        assert await is_locked(runtime, "1", now=later + 30 * 86400) is True

    @pytest.mark.asyncio
    async def test_quiet_window_resets_counter(self, runtime):
        """Тест: без блокировок долгая пауза обнуляет счётчик."""
        await fail_times(runtime, "1", 2, T0)
        status = await record_failure(runtime, "1", now=T0 + 3600)
        assert status.failures == 1

    @pytest.mark.asyncio
    async def test_tier_kept_during_cooldown(self, runtime):
        """Тест: после блокировки tier не сбрасывается паузой короче cooldown."""
        await fail_times(runtime, "1", 3, T0)
        status = await record_failure(runtime, "1", now=T0 + 2 * 3600)
        assert status.tier == 1
        assert status.failures == 4


class TestSuccessAndUnlock:

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, runtime):
        await fail_times(runtime, "1", 2, T0)
        await record_success(runtime, "1", now=T0 + 1)

        status = await get_lockout_status(runtime, "1")
        assert status.failures == 0
        assert status.tier == 0

    @pytest.mark.asyncio
    async def test_success_while_locked_raises(self, runtime):
        """Тест: правильный пароль не снимает действующую блокировку."""
        await fail_times(runtime, "1", 3, T0)

        with pytest.raises(AccountLocked) as exc_info:
            await record_success(runtime, "1", now=T0 + 5)

        assert exc_info.value.retry_after == 295
        assert (await get_lockout_status(runtime, "1")).failures == 3

    @pytest.mark.asyncio
    async def test_success_for_unknown_user_is_noop(self, runtime):
        await record_success(runtime, "99", now=T0)
        assert (await get_lockout_status(runtime, "99")).failures == 0

    @pytest.mark.asyncio
    async def test_admin_unlock_clears_permanent(self, runtime):
        """Тест: бессрочную блокировку снимает только администратор."""
        status = await fail_between_locks(runtime, "1", 20)
        await record_failure(runtime, "1", now=status.locked_until + 1)

        assert await unlock_account(runtime, "1", unlocked_by="2") is True

        status = await get_lockout_status(runtime, "1")
        assert status.permanent is False
        assert status.tier == 0
        assert status.failures == 0

    @pytest.mark.asyncio
    async def test_unlock_not_locked(self, runtime):
        assert await unlock_account(runtime, "5") is False
