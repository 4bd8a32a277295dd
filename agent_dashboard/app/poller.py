# agent_dashboard/app/poller.py
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .errors import SourceError
from .models import HealthState, ProviderHealth, RawBatch
from .providers import DataProvider, ProviderResult

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Poller:
    """Runs every enabled provider once per cycle and owns their health entries."""

    def __init__(self, providers: List[DataProvider], timeout_seconds: float = 2.5,
                 failure_threshold: int = 3, clock: Callable[[], datetime] = utcnow):
        self.providers = providers
        self.timeout_seconds = timeout_seconds
        self.failure_threshold = failure_threshold
        self.clock = clock
        self.health: Dict[str, ProviderHealth] = {
            p.name: ProviderHealth(provider=p.name, label=p.label, message="Initializing...")
            for p in providers
        }

    def provider(self, name: str) -> Optional[DataProvider]:
        for p in self.providers:
            if p.name == name:
                return p
        return None

    def health_snapshot(self) -> Dict[str, ProviderHealth]:
        return {name: h.model_copy() for name, h in self.health.items()}

    async def run_cycle(self) -> RawBatch:
        enabled = [p for p in self.providers if self.health[p.name].state != HealthState.DISABLED]
        # Exceptions are handled per provider in _fetch_one
        results = await asyncio.gather(*(self._fetch_one(p) for p in enabled))

        batch = RawBatch(collected_at=self.clock())
        for provider, result in zip(enabled, results):
            if result is None:
                continue
            batch.records.extend(result.records)
            batch.activities.extend(result.activities)
        batch.health = self.health_snapshot()
        logger.debug(f"Poll cycle collected {len(batch.records)} records from {len(enabled)} provider(s)")
        return batch

    async def _fetch_one(self, provider: DataProvider) -> Optional[ProviderResult]:
        try:
            result = await asyncio.wait_for(provider.fetch(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            self._record_failure(provider, HealthState.DEGRADED,
                                 f"Timed out after {self.timeout_seconds:.1f}s")
            return None
        except SourceError as e:
            self._record_failure(provider, HealthState.DEGRADED, e.message)
            return None
        except Exception as e:
            logger.error(f"Provider {provider.name} raised unexpectedly: {e}", exc_info=True)
            self._record_failure(provider, HealthState.ERROR, f"Unexpected error: {e}")
            return None

        state, message = provider.health()
        health = self.health[provider.name]
        health.state = state
        health.message = message
        health.last_success_at = self.clock()
        health.consecutive_failures = 0
        health.record_count = len(result.records)
        return result

    def _record_failure(self, provider: DataProvider, state: HealthState, message: str) -> None:
        health = self.health[provider.name]
        health.consecutive_failures += 1
        health.last_error = message
        health.record_count = 0
        if health.consecutive_failures >= self.failure_threshold:
            health.state = HealthState.DISABLED
            health.message = (f"Disabled after {health.consecutive_failures} consecutive failures "
                              f"until restart. Last error: {message}")
            logger.warning(f"Provider {provider.name} disabled: {message}")
        else:
            health.state = state
            health.message = message
            logger.warning(f"Provider {provider.name} failed ({health.consecutive_failures}/"
                           f"{self.failure_threshold}): {message}")
