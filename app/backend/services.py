"""
Per-process service container.

Built once when the app is created and reached by handlers through
`request.app.state.services`; nothing in the request-serving layer is a
module-level singleton. Tests build their own container with fake clients.
"""
from dataclasses import dataclass
from typing import Callable, Optional
import time

from background.detached_tasks import DetachedTasks
from billing.billing_client import BillingClient
from billing.cost_reconciler import CostReconciler
from caching.cache_store import CacheStore
from caching.single_flight import SingleFlightGuard
from caching.swr import StaleWhileRevalidate
from event_logging.event_tracker import EventTracker
from orchestration.completion_client import CompletionClient
from orchestration.enrichment import ReadmeFetcher
from orchestration.pipeline import OrchestrationPipeline
from orchestration.repo_listing import RepoLister
from persistence.record_store import InMemoryRecordStore, RecordStore
from rate_limiting.rate_limiter import RateLimiter
from settings import Settings


@dataclass
class AppServices:
    settings: Settings
    cache: CacheStore
    rate_limiter: RateLimiter
    guard: SingleFlightGuard
    tasks: DetachedTasks
    swr: StaleWhileRevalidate
    store: RecordStore
    pipeline: OrchestrationPipeline
    reconciler: CostReconciler
    repo_lister: RepoLister
    events: EventTracker


def build_services(
    settings: Settings,
    completion_client: Optional[CompletionClient] = None,
    billing_client: Optional[BillingClient] = None,
    readme_fetcher: Optional[ReadmeFetcher] = None,
    repo_lister: Optional[RepoLister] = None,
    store: Optional[RecordStore] = None,
    clock: Callable[[], float] = time.time,
) -> AppServices:
    cache = CacheStore(max_entries=settings.cache_max_entries, clock=clock)
    guard = SingleFlightGuard()
    tasks = DetachedTasks()
    store = store or InMemoryRecordStore()

    completion_client = completion_client or CompletionClient(
        api_key=settings.groq_api_key,
        model=settings.model,
        base_url=settings.groq_base_url,
        timeout_seconds=settings.completion_timeout_seconds,
    )
    billing_client = billing_client or BillingClient(settings.billing_lookup_url, settings.billing_api_key)
    readme_fetcher = readme_fetcher or ReadmeFetcher(api_url=settings.github_api_url)
    repo_lister = repo_lister or RepoLister(api_url=settings.github_api_url, clock=clock)

    return AppServices(
        settings=settings,
        cache=cache,
        rate_limiter=RateLimiter(clock=clock),
        guard=guard,
        tasks=tasks,
        swr=StaleWhileRevalidate(cache, guard, tasks),
        store=store,
        pipeline=OrchestrationPipeline(completion_client, settings, readme_fetcher=readme_fetcher),
        reconciler=CostReconciler(
            billing_client,
            store,
            cache,
            tasks,
            initial_delay=settings.billing_initial_delay_seconds,
            retry_delay=settings.billing_retry_delay_seconds,
            max_attempts=settings.billing_max_attempts,
        ),
        repo_lister=repo_lister,
        events=EventTracker(settings.events_log_file),
    )
