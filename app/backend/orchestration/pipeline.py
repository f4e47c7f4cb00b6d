"""
AI orchestration pipeline.

categorize:    enrich -> sanitize/prompt -> complete -> validate -> filter -> exclusivity
generate_cvs:  enrich -> per category: sanitize/prompt -> complete -> validate -> filter

Every successful completion is recorded on the caller's UsageLedger before
anything downstream can fail, so billable calls are always reconciled even
when validation rejects the output.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from errors import InvalidInputError
from orchestration.completion_client import CompletionClient, CompletionResult, TokenUsage
from orchestration.enrichment import ReadmeFetcher
from orchestration.hallucination_filter import (
    RepoIndex,
    enforce_exclusive_roles,
    filter_categorization,
    filter_cv,
    filter_names,
    FilterReport,
)
from orchestration.prompts import (
    CATEGORIZER_SYSTEM,
    CV_WRITER_SYSTEM,
    build_categorization_prompt,
    build_cv_prompt,
)
from orchestration.schemas import CategorizationOut, CategoryRequest, CvOut, RepoDetail, parse_model_json
from settings import Settings

logger = logging.getLogger(__name__)


class UsageLedger:
    """Billable completions made on behalf of one request."""

    def __init__(self):
        self.completions: List[CompletionResult] = []

    def record(self, result: CompletionResult):
        self.completions.append(result)

    @property
    def usage(self) -> TokenUsage:
        total = TokenUsage()
        for c in self.completions:
            total = total + c.usage
        return total

    @property
    def generation_ids(self) -> List[str]:
        return [c.generation_id for c in self.completions if c.generation_id]

    @property
    def model(self) -> Optional[str]:
        return self.completions[-1].model if self.completions else None

    def __bool__(self) -> bool:
        return bool(self.completions)


@dataclass
class CategorizationRun:
    result: CategorizationOut
    repo_count: int
    hallucinated: int = 0
    reassigned: int = 0


@dataclass
class GeneratedCv:
    category: CategoryRequest
    repos: List[RepoDetail]
    cv: CvOut
    hallucinated: int = 0


@dataclass
class GenerationRun:
    cvs: List[GeneratedCv] = field(default_factory=list)
    error: Optional[BaseException] = None


class OrchestrationPipeline:
    def __init__(
        self,
        completion_client: CompletionClient,
        settings: Settings,
        readme_fetcher: Optional[ReadmeFetcher] = None,
    ):
        self.completion_client = completion_client
        self.settings = settings
        self.readme_fetcher = readme_fetcher

    async def _enrich(self, repos: List[RepoDetail], access_token: Optional[str]) -> List[RepoDetail]:
        if self.readme_fetcher is None:
            return repos
        return await self.readme_fetcher.enrich(access_token, repos)

    async def categorize(
        self,
        repos: List[RepoDetail],
        user_name: Optional[str],
        user_bio: Optional[str],
        ledger: UsageLedger,
        access_token: Optional[str] = None,
    ) -> CategorizationRun:
        start = time.monotonic()
        repos = await self._enrich(repos, access_token)
        prompt = build_categorization_prompt(repos, user_name, user_bio)

        completion = await self.completion_client.complete(
            CATEGORIZER_SYSTEM,
            prompt,
            max_tokens=self.settings.max_tokens_categorize,
            temperature=self.settings.temperature_categorize,
            agent_name="Categorizer",
        )
        ledger.record(completion)

        parsed = parse_model_json(completion.content, CategorizationOut)
        index = RepoIndex(repos)
        result, report = filter_categorization(parsed, index)

        reassigned = 0
        if self.settings.enforce_exclusive_roles:
            result, reassigned = enforce_exclusive_roles(result, index)

        logger.info(
            "Categorized %d repos into %d roles in %dms (%d hallucinated, %d reassigned)",
            len(repos), len(result.roles), int((time.monotonic() - start) * 1000), report.count, reassigned,
        )
        return CategorizationRun(result=result, repo_count=len(repos), hallucinated=report.count,
                                 reassigned=reassigned)

    async def _write_cv(
        self,
        category: CategoryRequest,
        repos: List[RepoDetail],
        user_name: Optional[str],
        user_bio: Optional[str],
        ledger: UsageLedger,
    ) -> GeneratedCv:
        completion = await self.completion_client.complete(
            CV_WRITER_SYSTEM,
            build_cv_prompt(category, repos, user_name, user_bio),
            max_tokens=self.settings.max_tokens_generate,
            temperature=self.settings.temperature_generate,
            agent_name=f"CV Writer - {category.title[:40]}",
        )
        ledger.record(completion)
        cv = parse_model_json(completion.content, CvOut)
        cv, report = filter_cv(cv, RepoIndex(repos), category.title)
        return GeneratedCv(category=category, repos=repos, cv=cv, hallucinated=report.count)

    async def generate_cvs(
        self,
        categories: List[CategoryRequest],
        repos: List[RepoDetail],
        user_name: Optional[str],
        user_bio: Optional[str],
        ledger: UsageLedger,
        access_token: Optional[str] = None,
    ) -> GenerationRun:
        """
        Write one CV per category, concurrently. The first failure is returned
        on the run (not raised) so the caller can still reconcile the
        completions that did succeed.
        """
        index = RepoIndex(repos)
        report = FilterReport()
        plans = []
        for category in categories:
            names = filter_names(category.repoNames, index, category.title, report)
            wanted = {index.canonical(n) for n in names}
            selected = [r for r in repos if r.name in wanted]
            if not selected:
                logger.warning('Skipping category "%s": none of its repos were supplied', category.title)
                continue
            plans.append((category, selected))

        if not plans:
            raise InvalidInputError("None of the requested categories reference a supplied repository")

        needed = {r.name for _, selected in plans for r in selected}
        enriched = {r.name: r for r in await self._enrich([r for r in repos if r.name in needed], access_token)}

        outcomes = await asyncio.gather(
            *[
                self._write_cv(category, [enriched[r.name] for r in selected], user_name, user_bio, ledger)
                for category, selected in plans
            ],
            return_exceptions=True,
        )

        run = GenerationRun()
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if run.error is None:
                    run.error = outcome
                continue
            run.cvs.append(outcome)
        if run.error is not None:
            logger.error("CV generation failed for %d of %d categories: %s",
                         len(outcomes) - len(run.cvs), len(outcomes), run.error)
        else:
            logger.info("Generated %d CVs", len(run.cvs))
        return run
