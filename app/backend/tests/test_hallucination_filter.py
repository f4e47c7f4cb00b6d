import sys
import os
import logging
import pytest

# Add backend to path so we can import modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from orchestration.hallucination_filter import (
    RepoIndex,
    enforce_exclusive_roles,
    filter_categorization,
    filter_cv,
)
from orchestration.schemas import CategorizationOut, CvOut, parse_model_json
from fakes import categorization_json, cv_json, make_repo


def test_drops_references_not_in_input(caplog):
    index = RepoIndex([make_repo("a"), make_repo("b")])
    parsed = parse_model_json(categorization_json(("Backend Engineer", ["a", "c"])), CategorizationOut)

    with caplog.at_level(logging.WARNING):
        result, report = filter_categorization(parsed, index)

    assert result.roles[0].repos == ["a"]
    assert report.dropped == [("Backend Engineer", "c")]
    assert any('"c"' in r.getMessage() and r.levelno == logging.WARNING for r in caplog.records)


def test_full_name_is_a_secondary_match():
    index = RepoIndex([make_repo("a")])
    parsed = parse_model_json(categorization_json(("Role", ["octocat/a"])), CategorizationOut)
    result, report = filter_categorization(parsed, index)
    assert result.roles[0].repos == ["octocat/a"]
    assert report.count == 0


def test_exclusivity_first_role_wins():
    index = RepoIndex([make_repo("a"), make_repo("b")])
    parsed = parse_model_json(
        categorization_json(("ML Engineer", ["a", "b"]), ("Backend Engineer", ["octocat/a"])),
        CategorizationOut,
    )
    result, moved = enforce_exclusive_roles(parsed, index)
    assert result.roles[0].repos == ["a", "b"]
    assert result.roles[1].repos == []
    assert moved == 1


def test_cv_unknown_repo_url_is_cleared(caplog):
    index = RepoIndex([make_repo("api")])
    cv = parse_model_json(
        cv_json(["https://github.com/octocat/api/", "https://github.com/someone/else"]), CvOut
    )
    with caplog.at_level(logging.WARNING):
        filtered, report = filter_cv(cv, index, "Backend Engineer")

    assert filtered.experience[0].repoUrl == "https://github.com/octocat/api/"
    assert filtered.experience[1].repoUrl == ""
    assert report.count == 1
    assert "someone/else" in caplog.text
