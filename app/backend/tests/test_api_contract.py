import sys
import os
import json
import base64
import httpx
import pytest
from fastapi.testclient import TestClient

# Add backend to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import CVS_TABLE, create_app
from errors import InsufficientCreditError
from orchestration.repo_listing import RepoLister
from persistence.record_store import InMemoryRecordStore
from services import build_services
from fakes import FakeBillingClient, FakeCompletionClient, categorization_json, cv_json, make_settings, repo_payload

USER = {"X-User-Id": "user-1"}


def _client(*responses, settings=None, **overrides):
    fake = FakeCompletionClient(*responses)
    services = build_services(settings or make_settings(), completion_client=fake,
                              billing_client=FakeBillingClient(), **overrides)
    return TestClient(create_app(services=services)), fake


def _categorize_body(*names):
    return {"repos": [repo_payload(n) for n in names], "userName": "Ada"}


def test_categorize_then_cached_read():
    """A categorization is served from cache afterwards without another model call."""
    client, fake = _client(categorization_json(("Backend Engineer", ["api", "cli"]), ("Data Engineer", ["etl"])))
    with client:
        response = client.post("/api/categorize", json=_categorize_body("api", "cli", "etl"), headers=USER)
        assert response.status_code == 200
        assert response.headers["X-Cache"] == "MISS"

        data = response.json()
        assert [r["title"] for r in data["roles"]] == ["Backend Engineer", "Data Engineer"]
        assert data["categorizationId"]
        assert data["tokenUsage"]["totalTokens"] == 200

        cached = client.get("/api/categorize", headers=USER)
        assert cached.status_code == 200
        assert cached.headers["X-Cache"] == "HIT"
        assert cached.json() == data
        assert len(fake.calls) == 1


def test_missing_identity_is_rejected():
    client, fake = _client(categorization_json(("Role", ["api"])))
    with client:
        response = client.post("/api/categorize", json=_categorize_body("api"))
    assert response.status_code == 401
    assert response.json()["errorType"] == "UNAUTHORIZED"
    assert fake.calls == []


def test_invalid_body_is_400():
    client, fake = _client(categorization_json(("Role", ["api"])))
    with client:
        response = client.post("/api/categorize", json={"repos": []}, headers=USER)
    assert response.status_code == 400
    body = response.json()
    assert body["errorType"] == "INVALID_REQUEST"
    assert body["details"]
    assert fake.calls == []


def test_categorize_rate_limit():
    client, fake = _client(categorization_json(("Role", ["api"])))
    with client:
        statuses = [
            client.post("/api/categorize", json=_categorize_body("api"), headers=USER).status_code
            for _ in range(5)
        ]
        limited = client.post("/api/categorize", json=_categorize_body("api"), headers=USER)
        other_user = client.post("/api/categorize", json=_categorize_body("api"), headers={"X-User-Id": "user-2"})

    assert statuses == [200] * 5
    assert limited.status_code == 429
    assert limited.json()["errorType"] == "RATE_LIMIT_EXCEEDED"
    assert int(limited.headers["Retry-After"]) > 0
    assert other_user.status_code == 200
    assert len(fake.calls) == 6


@pytest.mark.parametrize("error,status,error_type", [
    (InsufficientCreditError(), 402, "NO_CREDITS"),
])
def test_upstream_errors_map_to_status(error, status, error_type):
    client, _ = _client(error)
    with client:
        response = client.post("/api/categorize", json=_categorize_body("api"), headers=USER)
    assert response.status_code == status
    assert response.json()["errorType"] == error_type


def test_unparseable_model_output_is_500():
    client, _ = _client("I'd be happy to help!")
    with client:
        response = client.post("/api/categorize", json=_categorize_body("api"), headers=USER)
    assert response.status_code == 500
    assert response.json()["errorType"] == "ANALYSIS_FAILED"


def test_no_categorization_yet_is_404():
    client, fake = _client(categorization_json(("Role", ["api"])))
    with client:
        response = client.get("/api/categorize", headers=USER)
    assert response.status_code == 404
    assert fake.calls == []


def test_usage_is_cached():
    client, _ = _client(categorization_json(("Role", ["api"])))
    with client:
        first = client.get("/api/usage", headers=USER)
        second = client.get("/api/usage", headers=USER)
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert second.json()["totalRequests"] == 0
    assert "max-age=60" in second.headers["Cache-Control"]


def test_generate_history_and_delete():
    client, fake = _client(cv_json(["https://github.com/octocat/api"]))
    body = {
        "categories": [{"title": "Backend Engineer", "description": "APIs", "repoNames": ["api"], "skills": ["Python"]}],
        "repos": [repo_payload("api"), repo_payload("web")],
        "userName": "Ada",
    }
    with client:
        generated = client.post("/api/generate", json=body, headers=USER)
        assert generated.status_code == 200
        data = generated.json()
        session_id = data["sessionId"]
        assert len(data["cvs"]) == 1
        assert data["cvs"][0]["matchingRepos"] == [{"name": "api", "html_url": "https://github.com/octocat/api"}]
        assert data["cvs"][0]["structuredCv"]["experience"][0]["repoUrl"] == "https://github.com/octocat/api"

        history = client.get("/api/history", headers=USER)
        assert [s["id"] for s in history.json()["sessions"]] == [session_id]
        assert client.get("/api/history", headers=USER).headers["X-Cache"] == "HIT"

        # owner scoping: another user cannot delete it
        foreign = client.delete("/api/history", params={"id": session_id}, headers={"X-User-Id": "user-2"})
        assert foreign.status_code == 404

        deleted = client.delete("/api/history", params={"id": session_id}, headers=USER)
        assert deleted.json() == {"success": True}

        after = client.get("/api/history", headers=USER)
        assert after.headers["X-Cache"] == "MISS"
        assert after.json()["sessions"] == []
    assert len(fake.calls) == 1


def test_delete_requires_id():
    client, _ = _client(cv_json([]))
    with client:
        response = client.delete("/api/history", headers=USER)
    assert response.status_code == 400


def _generate_body(*categories):
    return {
        "categories": [
            {"title": title, "description": f"{title} work", "repoNames": names, "skills": ["Python"]}
            for title, names in categories
        ],
        "repos": [repo_payload("api"), repo_payload("web")],
        "userName": "Ada",
    }


class CvDeleteFailingStore(InMemoryRecordStore):
    async def delete(self, table, record_id, filters=None):
        if table == CVS_TABLE:
            raise ConnectionError("store unavailable")
        return await super().delete(table, record_id, filters)


def test_failed_cleanup_still_invalidates_history():
    client, _ = _client(cv_json([]), store=CvDeleteFailingStore())
    with client:
        session_id = client.post("/api/generate", json=_generate_body(("Backend", ["api"])), headers=USER).json()["sessionId"]
        client.get("/api/history", headers=USER)
        assert client.get("/api/history", headers=USER).headers["X-Cache"] == "HIT"

        response = client.delete("/api/history", params={"id": session_id}, headers=USER)
        assert response.status_code == 500
        assert response.json()["errorType"] == "PERSISTENCE_FAILED"

        after = client.get("/api/history", headers=USER)
        assert after.headers["X-Cache"] == "MISS"
        assert after.json()["sessions"] == []


def test_update_cv_replaces_content_and_refreshes_history():
    client, _ = _client(cv_json(["https://github.com/octocat/api"]))
    edited = json.loads(cv_json([]))
    edited["summary"] = "Edited by hand."
    with client:
        cv_id = client.post("/api/generate", json=_generate_body(("Backend", ["api"])), headers=USER).json()["cvs"][0]["id"]
        client.get("/api/history", headers=USER)

        foreign = client.put(f"/api/cv/{cv_id}", json={"structuredCv": edited}, headers={"X-User-Id": "user-2"})
        assert foreign.status_code == 404

        invalid = client.put(f"/api/cv/{cv_id}", json={"structuredCv": {"summary": "only"}}, headers=USER)
        assert invalid.status_code == 400

        updated = client.put(f"/api/cv/{cv_id}", json={"structuredCv": edited}, headers=USER)
        assert updated.json() == {"success": True}

        history = client.get("/api/history", headers=USER)
        assert history.headers["X-Cache"] == "MISS"
        cv = history.json()["sessions"][0]["generated_cvs"][0]
        assert cv["structured_cv"]["summary"] == "Edited by hand."
        assert cv["role_title"] == "Backend"


def test_generation_event_counts_hallucinated_urls(tmp_path):
    log_file = tmp_path / "events.jsonl"
    client, _ = _client(
        cv_json(["https://github.com/octocat/api", "https://github.com/someone/else"]),
        settings=make_settings(events_log_file=str(log_file)),
    )
    with client:
        response = client.post("/api/generate", json=_generate_body(("Backend", ["api"]), ("Frontend", ["web"])),
                               headers=USER)
        assert response.status_code == 200

    events = [json.loads(line) for line in log_file.read_text().splitlines()]
    generated = [e for e in events if e["event_type"] == "cvs_generated"]
    assert generated[0]["metadata"]["cvCount"] == 2
    # Backend drops someone/else; Frontend drops both
    assert generated[0]["metadata"]["hallucinatedRepos"] == 3


class GitHubStub:
    def __init__(self, limited=False):
        self.limited = limited
        self.listings = 0

    def __call__(self, request):
        if self.limited:
            return httpx.Response(403, headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "9999999999"})
        if request.url.path == "/user/repos":
            self.listings += 1
            return httpx.Response(200, json=[{
                "name": "api",
                "full_name": "octocat/api",
                "html_url": "https://github.com/octocat/api",
                "description": "REST API",
                "language": "Python",
                "topics": ["fastapi"],
            }])
        if request.url.path.endswith("/languages"):
            return httpx.Response(200, json={"Python": 900})
        return httpx.Response(200, json={"content": base64.b64encode(b"# api").decode()})


def _repo_client(stub):
    return _client(cv_json([]), repo_lister=RepoLister("https://github.test", transport=httpx.MockTransport(stub)))


def test_repos_are_cached_per_user():
    stub = GitHubStub()
    client, _ = _repo_client(stub)
    headers = {**USER, "X-GitHub-Token": "gh-token"}
    with client:
        missing_token = client.get("/api/repos", headers=USER)
        first = client.get("/api/repos", headers=headers)
        second = client.get("/api/repos", headers=headers)
        forced = client.get("/api/repos", params={"fresh": "1"}, headers=headers)

    assert missing_token.status_code == 401
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert forced.headers["X-Cache"] == "MISS"
    assert stub.listings == 2
    repo = second.json()["repos"][0]
    assert (repo["name"], repo["readme"], repo["languages"]) == ("api", "# api", {"Python": 900})
    assert "max-age=300, stale-while-revalidate=600" in second.headers["Cache-Control"]


def test_github_rate_limit_is_429():
    client, _ = _repo_client(GitHubStub(limited=True))
    with client:
        response = client.get("/api/repos", headers={**USER, "X-GitHub-Token": "gh-token"})
    assert response.status_code == 429
    assert response.json()["errorType"] == "GITHUB_RATE_LIMIT"
    assert int(response.headers["Retry-After"]) > 0


def test_root_reports_runtime_stats():
    client, _ = _client(categorization_json(("Role", ["api"])))
    with client:
        client.post("/api/categorize", json=_categorize_body("api"), headers=USER)
        data = client.get("/").json()
    assert data["cache_stats"]["size"] == 1
    assert data["rate_windows"] == 1
    assert data["refreshes_in_flight"] == 0
    assert "background_tasks" in data
