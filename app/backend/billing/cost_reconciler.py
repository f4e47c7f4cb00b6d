"""
Background cost reconciliation.

Token counts are known as soon as a completion returns, but the provider's
cost accounting is eventually consistent. The reconciler writes the usage
record with the token counts straight away, then polls the billing lookup a
bounded number of times per generation and fills in the summed cost. If no
cost resolves the record keeps cost_usd = 0. Nothing here ever reaches the
caller of the original request.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from background.detached_tasks import DetachedTasks
from billing.billing_client import BillingClient
from caching.cache_store import CacheKeys, CacheStore
from orchestration.completion_client import TokenUsage
from orchestration.pipeline import UsageLedger
from persistence.record_store import RecordStore

logger = logging.getLogger(__name__)

USAGE_TABLE = "token_usage"


@dataclass
class UsageRecord:
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float = 0.0

    def to_row(self, user_id: str, session_id: Optional[str]) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "session_id": session_id,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost_usd": self.cost_usd,
        }


class CostReconciler:
    def __init__(
        self,
        billing_client: BillingClient,
        store: RecordStore,
        cache: CacheStore,
        tasks: DetachedTasks,
        initial_delay: float = 3.0,
        retry_delay: float = 2.0,
        max_attempts: int = 2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.billing_client = billing_client
        self.store = store
        self.cache = cache
        self.tasks = tasks
        self.initial_delay = initial_delay
        self.retry_delay = retry_delay
        self.max_attempts = max_attempts
        self._sleep = sleep

    def schedule(self, user_id: str, session_id: Optional[str], ledger: UsageLedger) -> Optional[asyncio.Task]:
        """Fire and forget. Returns the task so tests can await it."""
        if not ledger:
            return None
        return self.tasks.spawn(
            self.reconcile(user_id, session_id, ledger.model or "unknown", ledger.usage, ledger.generation_ids),
            name=f"cost-reconcile:{user_id}",
        )

    async def fetch_cost(self, generation_id: str) -> float:
        for attempt in range(self.max_attempts):
            cost = await self.billing_client.get_cost(generation_id)
            if cost is not None and cost > 0:
                return cost
            if attempt < self.max_attempts - 1:
                await self._sleep(self.retry_delay)
        return 0.0

    async def reconcile(
        self,
        user_id: str,
        session_id: Optional[str],
        model: str,
        usage: TokenUsage,
        generation_ids: List[str],
    ) -> UsageRecord:
        record = UsageRecord(
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        row = await self.store.upsert(USAGE_TABLE, record.to_row(user_id, session_id))
        self.cache.delete(CacheKeys.usage(user_id))

        # let the provider populate cost data
        await self._sleep(self.initial_delay)

        logger.info("Fetching costs for %d generation IDs", len(generation_ids))
        costs = await asyncio.gather(*[self.fetch_cost(g) for g in generation_ids])
        total = sum(costs)

        if total > 0:
            record.cost_usd = total
            await self.store.upsert(USAGE_TABLE, {"id": row["id"], "estimated_cost_usd": total})
            logger.info("Total cost: $%.6f", total)
        else:
            logger.warning("Cost is $0 for %d generation(s), billing data not available", len(generation_ids))

        self.cache.delete(CacheKeys.usage(user_id))
        return record
