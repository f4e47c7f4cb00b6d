import requests
import time
import os

# Production-ready: Use environment variable if provided, default to localhost
BASE_URL = os.getenv("TEST_API_URL", "http://localhost:8000")
HEADERS = {"X-User-Id": os.getenv("TEST_USER_ID", "smoke-test-user")}

repos = [
    {
        "name": "orderbook",
        "full_name": "octocat/orderbook",
        "html_url": "https://github.com/octocat/orderbook",
        "description": "Low-latency limit order book with a REST API",
        "languages": {"Python": 52000, "Cython": 8000},
        "topics": ["trading", "fastapi"],
    },
    {
        "name": "notebook-etl",
        "full_name": "octocat/notebook-etl",
        "html_url": "https://github.com/octocat/notebook-etl",
        "description": "Airflow DAGs that load market data into Postgres",
        "languages": {"Python": 30000, "SQL": 4000},
        "topics": ["airflow", "etl"],
    },
]


def _call(method, path, extra_headers=None, **kwargs):
    start = time.time()
    headers = {**HEADERS, **(extra_headers or {})}
    response = requests.request(method, BASE_URL + path, headers=headers, timeout=130, **kwargs)
    latency = int((time.time() - start) * 1000)
    cache = response.headers.get("X-Cache", "-")
    if response.ok:
        print(f"  ✅ [{response.status_code}] {method} {path} in {latency}ms (X-Cache: {cache})")
    else:
        print(f"  ❌ [Error {response.status_code}] {method} {path}: {response.text}")
    return response


def run_tests():
    print(f"🚀 Starting endpoint verification at: {BASE_URL}\n")
    try:
        categorized = _call("POST", "/api/categorize", json={"repos": repos, "userName": "Smoke Test"})
        if categorized.ok:
            for role in categorized.json()["roles"]:
                print(f"  Role: {role['title']} -> {role['repos']}")
        _call("GET", "/api/categorize")
        _call("GET", "/api/usage")
        _call("GET", "/api/history")
        if os.getenv("TEST_GITHUB_TOKEN"):
            _call("GET", "/api/repos", extra_headers={"X-GitHub-Token": os.getenv("TEST_GITHUB_TOKEN")})
    except requests.RequestException as e:
        print(f"  ❌ [Fail]: {e}")
    print("-" * 50)


if __name__ == "__main__":
    run_tests()
