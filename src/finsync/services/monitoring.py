"""Error-tracking side channel.

Records operational events and errors with a severity derived from the error
classification. Records are kept in memory and written through loguru; an
external alerting sink can be attached as a loguru handler.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import loguru
from loguru import logger

from finsync.adapters.db.models import utcnow
from finsync.core.errors import classify_error

Severity = Literal["info", "warning", "error", "critical"]

_CRITICAL_CODES = frozenset({"RATE_LIMIT_EXCEEDED", "INTERNAL_SERVER_ERROR"})

_LOGURU_LEVELS: dict[Severity, str] = {
    "info": "INFO",
    "warning": "WARNING",
    "error": "ERROR",
    "critical": "CRITICAL",
}


@dataclass(frozen=True, slots=True)
class TrackedRecord:
    kind: Literal["event", "error"]
    name: str
    severity: Severity
    context: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    recorded_at: datetime = field(default_factory=utcnow)


def severity_for(error: Any) -> Severity:
    classification = classify_error(error)
    if classification.error_code in _CRITICAL_CODES:
        return "critical"
    if classification.requires_reconnect:
        return "warning"
    return "error"


class ErrorTracker:
    """Collects events and errors for inspection and alerting."""

    def __init__(
        self,
        logger_instance: loguru.Logger = logger,
        *,
        max_records: int = 1000,
    ) -> None:
        self._logger = logger_instance
        self._records: deque[TrackedRecord] = deque(maxlen=max_records)

    @property
    def records(self) -> list[TrackedRecord]:
        return list(self._records)

    def errors(self) -> list[TrackedRecord]:
        return [r for r in self._records if r.kind == "error"]

    def track_event(self, name: str, **context: Any) -> TrackedRecord:
        record = TrackedRecord(
            kind="event", name=name, severity="info", context=context
        )
        self._records.append(record)
        self._logger.bind(**{**context, "event_name": name}).info(
            "Tracked event: {}", name
        )
        return record

    def track_error(self, error: BaseException | Any, **context: Any) -> TrackedRecord:
        classification = classify_error(error)
        severity = severity_for(error)
        record = TrackedRecord(
            kind="error",
            name=type(error).__name__ if isinstance(error, BaseException) else "error",
            severity=severity,
            context=context,
            error_code=classification.error_code,
        )
        self._records.append(record)
        self._logger.bind(
            **{**context, "error_code": classification.error_code, "severity": severity}
        ).log(_LOGURU_LEVELS[severity], "Tracked error [{}]: {}", severity, error)
        return record
