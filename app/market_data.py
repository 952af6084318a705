"""
Caller-side market data ingestion.

The monitor never talks to a price feed directly. Hosts hand it (or
refresh_market_data) an async source, and the helper retries transient
MarketDataError failures before pushing the result into the monitor.
"""
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Union

import structlog

from .error_handling import MarketDataError, retry_with_backoff
from .models import MarketDataUpdate

if TYPE_CHECKING:
    from .monitoring import EnhancedRiskMonitor

logger = structlog.get_logger()

MarketDataSource = Callable[[int], Awaitable[Union[MarketDataUpdate, Mapping[str, Any]]]]


async def refresh_market_data(
    monitor: "EnhancedRiskMonitor",
    chain_id: int,
    fetch: MarketDataSource,
    attempts: int = None,
    base_delay: float = 1.0
) -> bool:
    """Fetch market data for a chain and merge it into the monitor.

    Returns False when every attempt failed; the monitor keeps its previous
    market data in that case and the failure is recorded in its error collector.
    """
    attempts = attempts or monitor.config.performance.retry_attempts

    try:
        async for attempt in retry_with_backoff(max_attempts=attempts, base_delay=base_delay):
            with attempt:
                data = await fetch(chain_id)
    except MarketDataError as e:
        monitor.error_collector.record_error(e, {"operation": "refresh_market_data", "chain_id": chain_id})
        return False

    monitor.update_market_data(chain_id, data)
    logger.info("Market data refreshed", chain_id=chain_id, attempts=attempt.retry_state.attempt_number)
    return True
