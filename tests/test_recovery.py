import asyncio

import pytest

from studio_api.cache import TTLCache
from studio_api.recovery import (
    ErrorReporter,
    RecoveryExhausted,
    SelfHealer,
    choose_recovery_action,
    classify_error,
    with_recovery,
)


@pytest.mark.parametrize(
    "message,error_type",
    [
        ("JavaScript heap out of memory", "MemoryError"),
        ("Request timed out after 15s", "TimeoutError"),
        ("Failed to fetch", "NetworkError"),
        ("401 Unauthorized", "AuthError"),
        ("database is locked", "DatabaseError"),
        ("something odd", "UnknownError"),
    ],
)
def test_classify_error_by_message(message, error_type):
    assert classify_error(Exception(message)).error_type == error_type


def test_classify_error_uses_exception_name():
    assert classify_error(KeyError("missing")).error_type == "KeyError"


def test_recovery_action_choice():
    assert choose_recovery_action("out of memory") == ("clear_cache", True)
    assert choose_recovery_action("gateway timeout") == ("restart_service", True)
    assert choose_recovery_action("Too Many Requests") == ("implement_backoff", True)
    assert choose_recovery_action("weird") == ("notify_admin", False)


def test_self_healer_clears_injected_cache(db):
    cache = TTLCache()
    cache.set("a", 1)
    cache.set("b", 2)
    result = SelfHealer(db, cache).heal("MemoryError", "cache grew out of memory", "scene-orchestration")

    assert result["success"] is True
    assert result["recoveryAction"] == "clear_cache"
    assert result["details"] == "cleared 2 cache entries"
    assert len(cache) == 0

    log = db.list_error_logs("scene-orchestration")[0]
    assert log.recovery_status == "resolved"
    assert db.get_health("self_healing_bot").status == "healthy"


def test_self_healer_unknown_error_notifies_admin(db):
    result = SelfHealer(db).heal("UnknownError", "mystery", "batch")
    assert result["success"] is False
    assert result["recoveryStatus"] == "failed"
    assert db.get_health("self_healing_bot").status == "degraded"


def test_with_recovery_retries_with_linear_delay(db):
    attempts = []
    delays = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("connection reset")
        return "ok"

    async def fake_sleep(seconds):
        delays.append(seconds)

    result = asyncio.run(
        with_recovery(
            flaky,
            component="prompt-to-production",
            action="generate_bible",
            reporter=ErrorReporter(db),
            retry_delay=1.0,
            sleep=fake_sleep,
        )
    )
    assert result == "ok"
    assert delays == [1.0, 2.0]
    logs = db.list_error_logs("prompt-to-production")
    assert [l.context["attempt"] for l in logs] == [1, 2]
    assert logs[0].error_type == "NetworkError"


def test_with_recovery_exhausted_carries_user_message(db):
    async def always_fails():
        raise TimeoutError("timed out waiting for model")

    async def no_sleep(seconds):
        return None

    with pytest.raises(RecoveryExhausted) as exc:
        asyncio.run(
            with_recovery(
                always_fails,
                component="c",
                action="a",
                reporter=ErrorReporter(db),
                max_retries=2,
                sleep=no_sleep,
            )
        )
    assert exc.value.attempts == 2
    assert exc.value.classification.error_type == "TimeoutError"
    assert exc.value.user_message.endswith("Please try again or contact support.")
    assert len(db.list_error_logs("c")) == 2
