"""
Per-operation result reporting.

The navigator reports each top-level call exactly once, however many service
calls it made. Where the reports go is up to the host application.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol


class ResultReporter(Protocol):

    def report_success(self, component: str, operation: str) -> None: ...

    def report_failure(self, component: str, operation: str, error: BaseException) -> None: ...


@dataclass
class ReportedResult:
    component: str
    operation: str
    succeeded: bool
    error: Optional[BaseException] = None


class InMemoryResultReporter:
    """Keeps every report in a list, for hosts that inspect results after the fact."""

    def __init__(self):
        self.results: List[ReportedResult] = []

    def report_success(self, component: str, operation: str) -> None:
        self.results.append(ReportedResult(component, operation, True))

    def report_failure(self, component: str, operation: str, error: BaseException) -> None:
        self.results.append(ReportedResult(component, operation, False, error))

    def operations(self, succeeded: Optional[bool] = None) -> List[str]:
        return [
            r.operation for r in self.results
            if succeeded is None or r.succeeded == succeeded
        ]


class LoggingResultReporter:
    """Writes each report to a logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger(__name__)

    def report_success(self, component: str, operation: str) -> None:
        self._logger.info("[StorageDrive][Telemetry] component=%s operation=%s result=success", component, operation)

    def report_failure(self, component: str, operation: str, error: BaseException) -> None:
        self._logger.warning(
            "[StorageDrive][Telemetry] component=%s operation=%s result=failure error=%s",
            component,
            operation,
            type(error).__name__,
        )
