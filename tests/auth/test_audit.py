"""
Тесты для modules/auth/audit.py
"""
import time

import pytest

from adapters.memory_adapter import MemoryStorageAdapter
from core.runtime import CoreRuntime
from modules.auth.audit import (
    SECURITY_EVENT_TOPIC,
    build_security_event,
    flush_security_events,
    get_audit_stats,
    query_security_events,
    record_security_event,
    security_metrics,
)


class TestBuildEvent:

    def test_fields(self):
        event = build_security_event("login_failure", "failure", user_id=42, ip="10.0.0.1",
                                     metadata={"reason": "bad_password"})

        assert set(event) == {"event_id", "timestamp", "user_id", "category", "outcome",
                              "severity", "ip", "metadata"}
        assert event["user_id"] == "42"
        assert event["severity"] == "warning"
        assert event["metadata"] == {"reason": "bad_password"}

    def test_severity(self):
        assert build_security_event("token_reuse_detected", "detected")["severity"] == "critical"
        assert build_security_event("login_success", "success")["severity"] == "info"
        assert build_security_event("lockout_engaged", "success")["severity"] == "warning"

    def test_non_json_metadata_is_stringified(self):
        event = build_security_event("login_success", "success", metadata={"obj": object()})
        assert isinstance(event["metadata"]["obj"], str)

    @pytest.mark.parametrize("category,outcome", [("made_up", "success"), ("login_success", "meh")])
    def test_unknown_values(self, category, outcome):
        with pytest.raises(ValueError):
            build_security_event(category, outcome)


class TestRecord:
    """Запись событий: fire-and-forget с повторными попытками."""

    @pytest.mark.asyncio
    async def test_recorded_and_published(self, runtime):
        published = []

        async def on_event(event_type, event):
            published.append(event)

        runtime.event_bus.subscribe(SECURITY_EVENT_TOPIC, on_event)

        event = await record_security_event(runtime, "login_success", "success", user_id="1", ip="10.0.0.1")
        await flush_security_events(runtime)

        stored = await query_security_events(runtime)
        assert [e["event_id"] for e in stored] == [event["event_id"]]
        assert published == [event]
        stats = get_audit_stats(runtime)
        assert stats["attempted"] == 1
        assert stats["written"] == 1
        assert stats["pending"] == 0

    @pytest.mark.asyncio
    async def test_invalid_event_never_raises(self, runtime):
        assert await record_security_event(runtime, "made_up", "success") is None
        assert get_audit_stats(runtime)["failed"] == 1

    @pytest.mark.asyncio
    async def test_storage_failure_is_retried_and_counted(self, test_config):
        """Тест: ошибка хранилища не всплывает к вызывающему, попытки повторяются."""

        class FlakyAdapter(MemoryStorageAdapter):
            def __init__(self, failures):
                super().__init__()
                self.failures = failures

            async def set(self, namespace, key, value):
                if self.failures > 0:
                    self.failures -= 1
                    raise ConnectionError("write failed")
                await super().set(namespace, key, value)

        runtime = CoreRuntime(FlakyAdapter(failures=2), test_config)
        await record_security_event(runtime, "login_failure", "failure", user_id="1")
        await flush_security_events(runtime)

        stats = get_audit_stats(runtime)
        assert stats["written"] == 1
        assert stats["retried"] == 2
        assert stats["failed"] == 0

        broken = CoreRuntime(FlakyAdapter(failures=100), test_config)
        published = []

        async def on_event(event_type, event):
            published.append(event)

        broken.event_bus.subscribe(SECURITY_EVENT_TOPIC, on_event)
        await record_security_event(broken, "login_failure", "failure", user_id="1")
        await flush_security_events(broken)
        assert get_audit_stats(broken)["failed"] == 1
        # Несохранённое событие не уходит подписчикам
        assert published == []


class TestQuery:

    @pytest.mark.asyncio
    async def test_filters_and_paging(self, runtime):
        await record_security_event(runtime, "login_failure", "failure", user_id="1", ip="10.0.0.1")
        await record_security_event(runtime, "login_failure", "failure", user_id="2", ip="10.0.0.2")
        await record_security_event(runtime, "login_success", "success", user_id="1", ip="10.0.0.1")
        await flush_security_events(runtime)

        assert len(await query_security_events(runtime)) == 3
        assert len(await query_security_events(runtime, category="login_failure")) == 2
        assert len(await query_security_events(runtime, user_id=1)) == 2
        assert len(await query_security_events(runtime, ip="10.0.0.2")) == 1
        assert len(await query_security_events(runtime, outcome="success")) == 1
        assert len(await query_security_events(runtime, severity="warning")) == 2
        assert len(await query_security_events(runtime, limit=2)) == 2
        assert len(await query_security_events(runtime, limit=2, offset=2)) == 1
        assert await query_security_events(runtime, since=time.time() + 60) == []
        assert await query_security_events(runtime, until=time.time() - 3600) == []

    @pytest.mark.asyncio
    async def test_category_whitelist(self, runtime):
        """Тест: categories оставляет только перечисленные категории."""
        await record_security_event(runtime, "login_success", "success", user_id="1")
        await record_security_event(runtime, "rate_limited", "blocked", user_id="1")
        await record_security_event(runtime, "password_changed", "success", user_id="1")
        await flush_security_events(runtime)

        events = await query_security_events(
            runtime, user_id="1", categories=("login_success", "password_changed")
        )
        assert sorted(e["category"] for e in events) == ["login_success", "password_changed"]
        assert await query_security_events(runtime, categories=()) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [{"limit": 0}, {"limit": 1001}, {"offset": -1}])
    async def test_invalid_paging(self, runtime, kwargs):
        with pytest.raises(ValueError):
            await query_security_events(runtime, **kwargs)


class TestMetrics:

    @pytest.mark.asyncio
    async def test_summary(self, runtime):
        for _ in range(3):
            await record_security_event(runtime, "login_failure", "failure", user_id="1", ip="10.0.0.9")
        await record_security_event(runtime, "lockout_engaged", "blocked", user_id="1")
        await record_security_event(runtime, "token_reuse_detected", "detected", user_id="1")
        await record_security_event(runtime, "session_hijack_suspected", "detected", user_id="1")
        await flush_security_events(runtime)

        metrics = await security_metrics(runtime, hours=1)

        assert metrics["total_events"] == 6
        assert metrics["failed_logins"] == 3
        assert metrics["lockouts"] == 1
        assert metrics["token_reuse_detections"] == 1
        assert metrics["hijack_suspicions"] == 1
        assert metrics["top_failed_ips"] == [{"ip": "10.0.0.9", "count": 3}]
        assert metrics["events_by_severity"]["critical"] == 1

    @pytest.mark.asyncio
    async def test_outside_period(self, runtime):
        await record_security_event(runtime, "login_failure", "failure", user_id="1")
        await flush_security_events(runtime)

        metrics = await security_metrics(runtime, hours=1, now=time.time() + 2 * 3600)
        assert metrics["total_events"] == 0
