"""
Error taxonomy, error collection and caller-side retry helpers
"""
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional

import structlog
from tenacity import (
    AsyncRetrying, stop_after_attempt, wait_exponential,
    retry_if_exception_type, before_sleep_log
)

logger = structlog.get_logger()


# Exception classes for different error scenarios
class UnsupportedChainError(Exception):
    """Raised when a chain id has no chain configuration"""

    def __init__(self, chain_id: int):
        self.chain_id = chain_id
        super().__init__(f"Unsupported chain ID: {chain_id}")


class NotFoundError(Exception):
    """Raised at the API boundary when an agent, vault or alert id is unknown"""
    pass


class ValidationError(Exception):
    """Raised when monitor configuration or request input is malformed"""
    pass


class ProtectionActionError(Exception):
    """Raised by protection action handlers when an action cannot be applied"""
    pass


class MarketDataError(Exception):
    """Raised by market data sources when a fetch fails"""
    pass


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exceptions: tuple = (MarketDataError,)
) -> AsyncRetrying:
    """Async retrying controller with exponential backoff"""
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


class ErrorCollector:
    """Collects errors raised inside the monitor for status reporting"""

    def __init__(self, max_errors: int = 1000):
        self.errors: Deque[Dict[str, Any]] = deque(maxlen=max_errors)
        self.error_counts: Dict[str, int] = {}

    def record_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        """Record an error with context"""
        error_type = type(error).__name__
        self.errors.append({
            "timestamp": datetime.utcnow(),
            "type": error_type,
            "message": str(error),
            "context": context or {}
        })
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        logger.error(
            "Error recorded",
            error_type=error_type,
            error_message=str(error),
            context=context
        )

    def get_error_summary(self, hours: int = 24) -> Dict[str, Any]:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.utcnow() - timedelta(hours=hours)
        recent_errors = [e for e in self.errors if e["timestamp"] > cutoff_time]

        by_type: Dict[str, int] = {}
        for error in recent_errors:
            by_type[error["type"]] = by_type.get(error["type"], 0) + 1

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": by_type,
            "last_error": {
                "type": recent_errors[-1]["type"],
                "message": recent_errors[-1]["message"],
                "timestamp": recent_errors[-1]["timestamp"].isoformat()
            } if recent_errors else None
        }
