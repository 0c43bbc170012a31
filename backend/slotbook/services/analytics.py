import logging
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking_created"
BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_COMPLETED = "booking_completed"
BOOKING_CANCELLED = "booking_cancelled"


class AnalyticsSink(ABC):
    @abstractmethod
    def record_transaction(
        self,
        metric_type: str,
        account_id: str,
        amount: int,
        metadata: Dict[str, Any],
    ) -> None:
        raise NotImplementedError


class LoggingAnalyticsSink(AnalyticsSink):
    def record_transaction(
        self,
        metric_type: str,
        account_id: str,
        amount: int,
        metadata: Dict[str, Any],
    ) -> None:
        logger.info("analytics %s account=%s amount=%s %s", metric_type, account_id, amount, metadata)


class AnalyticsDispatcher:
    """Fire-and-forget front for an analytics sink.

    With an executor the sink runs on a worker thread, otherwise inline.
    Sink failures are logged and never reach the caller.
    """

    def __init__(self, sink: AnalyticsSink, executor: Optional[Executor] = None) -> None:
        self._sink = sink
        self._executor = executor

    def _deliver(self, metric_type: str, account_id: str, amount: int, metadata: Dict[str, Any]) -> None:
        try:
            self._sink.record_transaction(metric_type, account_id, amount, metadata)
        except Exception:
            logger.exception("Analytics record failed", extra={"metric_type": metric_type})

    def record(self, metric_type: str, account_id: str, amount: int, metadata: Optional[Dict[str, Any]] = None) -> None:
        payload = dict(metadata or {})
        if self._executor is None:
            self._deliver(metric_type, account_id, amount, payload)
            return
        try:
            self._executor.submit(self._deliver, metric_type, account_id, amount, payload)
        except RuntimeError:
            logger.exception("Analytics executor unavailable", extra={"metric_type": metric_type})
