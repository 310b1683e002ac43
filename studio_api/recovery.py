"""
Error classification, self-healing, and the retry-with-reporting combinator.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .models import ErrorLog, SystemHealth
from .security import redact_secrets

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (keywords, error type, suggested recovery action shown to users)
CLASSIFICATION_RULES = [
    (("memory", "heap"), "MemoryError", "Close other tabs or retry with fewer episodes"),
    (("timeout", "timed out"), "TimeoutError", "Retry render"),
    (("network", "fetch", "unreachable", "connection"), "NetworkError", "Check connection"),
    (("unauthorized", "auth"), "AuthError", "Sign in again"),
    (("database", "sql"), "DatabaseError", "Retry in a moment"),
]

# (keywords, recovery action, whether the action resolves the error)
RECOVERY_RULES = [
    (("memory", "cache"), "clear_cache", True),
    (("timeout",), "restart_service", True),
    (("connection", "database"), "check_database_connection", True),
    (("auth", "unauthorized"), "refresh_auth_tokens", True),
    (("rate limit", "too many requests"), "implement_backoff", True),
]


@dataclass(frozen=True)
class ErrorClassification:
    error_type: str
    message: str
    suggestion: str


def classify_error(error: Any) -> ErrorClassification:
    """Map an exception or message to an error type and a recovery hint"""
    message = str(error) or type(error).__name__
    lowered = message.lower()
    for keywords, error_type, suggestion in CLASSIFICATION_RULES:
        if any(k in lowered for k in keywords):
            return ErrorClassification(error_type, message, suggestion)
    if isinstance(error, BaseException) and type(error) is not Exception:
        return ErrorClassification(type(error).__name__, message, "Please try again")
    return ErrorClassification("UnknownError", message, "Please try again")


def choose_recovery_action(message: str):
    lowered = message.lower()
    for keywords, action, resolves in RECOVERY_RULES:
        if any(k in lowered for k in keywords):
            return action, resolves
    return "notify_admin", False


class ErrorReporter:
    """Reporting sink: writes classified errors to the error log"""

    def __init__(self, db):
        self.db = db

    def report(
        self,
        error: Any,
        component: str,
        action: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        classification = classify_error(error)
        logger.error(
            f"[recovery] {component}/{action or '-'}: {classification.error_type}: {redact_secrets(classification.message)}"
        )
        return self.db.insert_error_log(
            ErrorLog(
                error_type=classification.error_type,
                error_message=classification.message,
                component=component,
                context={"action": action, **(metadata or {})},
                recovery_status="reported",
            )
        )


class SelfHealer:
    """Logs an error, applies a recovery action, and records service health"""

    service_name = "self_healing_bot"

    def __init__(self, db, cache=None):
        self.db = db
        self.cache = cache

    def _perform(self, action: str) -> Dict[str, Any]:
        if action == "clear_cache":
            cleared = self.cache.clear() if self.cache is not None else 0
            return {"action": action, "details": f"cleared {cleared} cache entries"}
        if action == "notify_admin":
            return {"action": action, "details": "no automatic recovery available"}
        return {"action": action, "details": f"{action.replace('_', ' ')} scheduled"}

    def heal(
        self,
        error_type: str,
        error_message: str,
        component: str = "unknown",
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        log_id = self.db.insert_error_log(
            ErrorLog(
                error_type=error_type,
                error_message=error_message,
                component=component,
                context=context or {},
                recovery_status="processing",
            )
        )
        action, resolved = choose_recovery_action(error_message)
        outcome = self._perform(action)
        status = "resolved" if resolved else "failed"
        if log_id is not None:
            self.db.resolve_error_log(log_id, status, action)
        self.db.upsert_health(
            SystemHealth(
                service_name=self.service_name,
                status="healthy" if resolved else "degraded",
                metrics={"last_action": action, "last_component": component},
            )
        )
        logger.info(f"[recovery] {component}: {error_type} -> {action} ({status})")
        return {
            "success": resolved,
            "errorLogId": log_id,
            "recoveryAction": action,
            "recoveryStatus": status,
            "details": outcome["details"],
        }


class RecoveryExhausted(Exception):
    """Raised once every attempt of a recoverable operation has failed"""

    def __init__(self, classification: ErrorClassification, attempts: int):
        self.classification = classification
        self.attempts = attempts
        self.user_message = (
            f"{classification.message}. Please try again or contact support."
        )
        super().__init__(self.user_message)


async def with_recovery(
    operation: Callable[[], Awaitable[T]],
    *,
    component: str,
    action: str,
    reporter: Optional[ErrorReporter] = None,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run operation up to max_retries times, waiting retry_delay * attempt
    between tries. Every failure goes to the reporter; the last one is raised
    as RecoveryExhausted.
    """
    max_retries = max(1, max_retries)
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if reporter is not None:
                reporter.report(
                    e,
                    component,
                    action,
                    {"attempt": attempt, "maxRetries": max_retries},
                )
            if attempt < max_retries:
                await sleep(retry_delay * attempt)
    raise RecoveryExhausted(classify_error(last_error), max_retries) from last_error
