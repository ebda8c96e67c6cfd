"""User-facing activity log and alerts.

Every engine decision that a user should be able to audit is written here
in addition to the structured application log.
"""
from typing import Any, Dict, List, Optional

import structlog

from cycle_engine.core.models import (
    ActivityLog,
    ActivityType,
    Alert,
    AlertType,
    Severity,
)

logger = structlog.get_logger(__name__)


class ActivityLogger:
    """Writes activity log entries and alerts for users."""

    def __init__(self, database):
        self.database = database

    async def create_activity_log(
        self,
        user_id: str,
        activity_type: ActivityType,
        action: str,
        severity: Severity = Severity.INFO,
        details: Optional[Dict[str, Any]] = None,
        symbol: Optional[str] = None,
    ) -> ActivityLog:
        entry = ActivityLog(
            user_id=user_id,
            type=activity_type,
            action=action,
            severity=severity,
            symbol=symbol,
            details=_jsonable(details or {}),
        )
        await self.database.save_activity_log(entry)
        logger.debug(
            "activity.logged",
            user_id=user_id,
            type=activity_type.value,
            severity=severity.value,
            action=action,
        )
        return entry

    async def create_alert(
        self,
        user_id: str,
        alert_type: AlertType,
        title: str,
        message: str,
        related_data: Optional[Dict[str, Any]] = None,
        symbol: Optional[str] = None,
    ) -> Alert:
        alert = Alert(
            user_id=user_id,
            type=alert_type,
            title=title,
            message=message,
            symbol=symbol,
            related_data=_jsonable(related_data or {}),
        )
        await self.database.save_alert(alert)
        log = logger.warning if alert_type != AlertType.INFO else logger.info
        log("alert.created", user_id=user_id, type=alert_type.value, title=title)
        return alert

    async def log_error_safely(
        self,
        user_id: str,
        action: str,
        error: Exception,
        severity: Severity = Severity.ERROR,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record an error activity; never raises.

        Used inside error handlers where a failing database must not mask
        the original exception.
        """
        payload = {"error": str(error), "error_type": type(error).__name__}
        payload.update(details or {})
        try:
            await self.create_activity_log(
                user_id, ActivityType.ERROR, action, severity, payload, symbol
            )
        except Exception as log_error:
            logger.error(
                "activity.log_failed",
                user_id=user_id,
                action=action,
                original_error=str(error),
                error=str(log_error),
            )

    async def get_activity_logs(self, user_id: str, limit: int = 100) -> List[ActivityLog]:
        return await self.database.get_activity_logs(user_id, limit=limit)

    async def get_alerts(self, user_id: str, unread_only: bool = False) -> List[Alert]:
        return await self.database.get_alerts(user_id, unread_only=unread_only)


def _jsonable(value: Any) -> Any:
    """Convert Decimals, enums and datetimes so details fit a JSON column."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        if hasattr(value, "value") and not isinstance(value, bool):
            return value.value
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)
