"""
Cross-reference model output against the caller-supplied repositories.

The model is asked to use exact repository names and URLs, but it can invent
them. Any reference that cannot be matched back to the input is removed and
logged; the response never claims provenance it cannot back.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

from orchestration.schemas import CategorizationOut, CvOut, RepoDetail

logger = logging.getLogger(__name__)


@dataclass
class FilterReport:
    dropped: List[Tuple[str, str]] = field(default_factory=list)  # (role/entry, reference)

    @property
    def count(self) -> int:
        return len(self.dropped)


class RepoIndex:
    """Lookup of valid references: primary key is the repo name, secondary the full name."""

    def __init__(self, repos: Iterable[RepoDetail]):
        repos = list(repos)
        self.names: Set[str] = {r.name for r in repos}
        self.full_names: Dict[str, str] = {r.full_name: r.name for r in repos if r.full_name}
        self.urls: Set[str] = {_norm_url(r.html_url) for r in repos}

    def has(self, reference: str) -> bool:
        return reference in self.names or reference in self.full_names

    def canonical(self, reference: str) -> str:
        if reference in self.names:
            return reference
        return self.full_names.get(reference, reference)

    def has_url(self, url: str) -> bool:
        return _norm_url(url) in self.urls


def _norm_url(url: str) -> str:
    return url.strip().rstrip("/").lower()


def filter_names(names: List[str], index: RepoIndex, owner: str, report: FilterReport) -> List[str]:
    kept = []
    for name in names:
        if index.has(name):
            kept.append(name)
            continue
        logger.warning('Hallucinated repo "%s" in role "%s"', name, owner)
        report.dropped.append((owner, name))
    return kept


def filter_categorization(result: CategorizationOut, index: RepoIndex) -> Tuple[CategorizationOut, FilterReport]:
    report = FilterReport()
    roles = [
        role.model_copy(update={"repos": filter_names(role.repos, index, role.title, report)})
        for role in result.roles
    ]
    return result.model_copy(update={"roles": roles}), report


def filter_cv(cv: CvOut, index: RepoIndex, role_title: str) -> Tuple[CvOut, FilterReport]:
    """Clear repoUrl on experience entries that point at a repository we were not given."""
    report = FilterReport()
    experience = []
    for entry in cv.experience:
        if entry.repoUrl and not index.has_url(entry.repoUrl):
            logger.warning('Hallucinated repo URL "%s" in CV for role "%s" (entry "%s")',
                           entry.repoUrl, role_title, entry.title)
            report.dropped.append((entry.title, entry.repoUrl))
            entry = entry.model_copy(update={"repoUrl": ""})
        experience.append(entry)
    return cv.model_copy(update={"experience": experience}), report


def enforce_exclusive_roles(result: CategorizationOut, index: RepoIndex) -> Tuple[CategorizationOut, int]:
    """First role to claim a repo keeps it; later roles lose it."""
    seen: Set[str] = set()
    moved = 0
    roles = []
    for role in result.roles:
        kept = []
        for name in role.repos:
            key = index.canonical(name)
            if key in seen:
                logger.info('Repo "%s" already assigned, dropping it from role "%s"', name, role.title)
                moved += 1
                continue
            seen.add(key)
            kept.append(name)
        roles.append(role.model_copy(update={"repos": kept}))
    return result.model_copy(update={"roles": roles}), moved
