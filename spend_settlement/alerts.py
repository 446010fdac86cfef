"""Alerting collaborator: fire-and-forget notifications."""
from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Dict, Optional, Protocol

from .models import AlertSeverity, AlertType

log = logging.getLogger(__name__)

_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class AlertSink(Protocol):
    def create_alert(
        self,
        alert_type: AlertType,
        message: str,
        severity: AlertSeverity,
        related_account_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        ...


class LoggingAlertSink:
    """Default sink: one structured log line per alert."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.log = logger or logging.getLogger("spend_settlement.alert")

    def create_alert(
        self,
        alert_type: AlertType,
        message: str,
        severity: AlertSeverity,
        related_account_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.log.log(
            _LEVELS.get(severity, logging.WARNING),
            "ALERT type=%s severity=%s account=%s message=%s metadata=%s",
            alert_type.value,
            severity.value,
            related_account_id if related_account_id is not None else "-",
            message,
            json.dumps(metadata or {}, sort_keys=True, default=str),
        )


async def raise_alert(
    sink: AlertSink,
    alert_type: AlertType,
    message: str,
    severity: AlertSeverity,
    related_account_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """Call *sink*; its failures are logged and never reach the caller."""
    try:
        result = sink.create_alert(alert_type, message, severity, related_account_id, metadata)
        if inspect.isawaitable(result):
            await result
    except Exception:
        log.exception("alert sink failed for %s: %s", alert_type.value, message)
        return False
    return True
