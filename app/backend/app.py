import os
import asyncio
import logging
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("cvtailor.api")

from caching.cache_store import CacheKeys
from caching.swr import CacheStatus
from errors import (
    InvalidInputError,
    PersistenceError,
    RecordNotFoundError,
    ServiceError,
    UnauthorizedError,
)
from orchestration.pipeline import UsageLedger
from orchestration.schemas import CategoryRequest, CvOut, RepoDetail
from services import AppServices, build_services
from settings import Settings

CATEGORIZATIONS_TABLE = "repo_categorizations"
SESSIONS_TABLE = "analysis_sessions"
CVS_TABLE = "generated_cvs"
USAGE_TABLE = "token_usage"


# API Contract Models
class CategorizeRequest(BaseModel):
    repos: List[RepoDetail] = Field(min_length=1, max_length=200)
    userName: Optional[str] = Field(default=None, max_length=100)
    userBio: Optional[str] = Field(default=None, max_length=1000)

class GenerateRequest(BaseModel):
    categories: List[CategoryRequest] = Field(min_length=1, max_length=6)
    repos: List[RepoDetail] = Field(min_length=1, max_length=50)
    userName: Optional[str] = Field(default=None, max_length=100)
    userBio: Optional[str] = Field(default=None, max_length=1000)
    categorizationId: Optional[str] = None

class UpdateCvRequest(BaseModel):
    structuredCv: CvOut

class TokenUsageResponse(BaseModel):
    model: Optional[str]
    promptTokens: int
    completionTokens: int
    totalTokens: int

class RoleResponse(BaseModel):
    title: str
    description: str
    repos: List[str]
    skills: List[str]

class CategorizationResponse(BaseModel):
    summary: str
    roles: List[RoleResponse]
    categorizationId: Optional[str] = None
    tokenUsage: Optional[TokenUsageResponse] = None

class RepoLink(BaseModel):
    name: str
    html_url: str

class GeneratedCvResponse(BaseModel):
    id: Optional[str] = None
    roleTitle: str
    roleDescription: str
    skills: List[str]
    matchingRepos: List[RepoLink]
    structuredCv: Dict[str, Any]

class GenerateResponse(BaseModel):
    sessionId: Optional[str]
    cvs: List[GeneratedCvResponse]
    tokenUsage: TokenUsageResponse


# Dependencies
def get_services(request: Request) -> AppServices:
    return request.app.state.services

def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity comes from the upstream auth layer; ':' would break cache key namespacing."""
    user_id = (x_user_id or "").strip()
    if not user_id or ":" in user_id:
        raise UnauthorizedError()
    return user_id


def _json(payload: Any, cache_status: CacheStatus, max_age: int = 0, swr: int = 0, status_code: int = 200) -> JSONResponse:
    headers = {"X-Cache": cache_status.value}
    if max_age:
        headers["Cache-Control"] = f"private, max-age={max_age}, stale-while-revalidate={swr}"
    return JSONResponse(content=payload, status_code=status_code, headers=headers)

def _token_usage(ledger: UsageLedger) -> TokenUsageResponse:
    usage = ledger.usage
    return TokenUsageResponse(
        model=ledger.model,
        promptTokens=usage.prompt_tokens,
        completionTokens=usage.completion_tokens,
        totalTokens=usage.total_tokens,
    )


router = APIRouter()


@router.get("/")
def read_root(services: AppServices = Depends(get_services)):
    return {
        "message": "CV Tailor API is running",
        "cache_stats": services.cache.stats(),
        "refreshes_in_flight": len(services.guard),
        "background_tasks": len(services.tasks),
        "rate_windows": len(services.rate_limiter),
    }


# Repositories
async def _load_repos(services: AppServices, access_token: str) -> Dict[str, Any]:
    repos = await services.repo_lister.fetch_all(access_token)
    return {"repos": [r.model_dump() for r in repos]}


@router.get("/api/repos")
async def repos_endpoint(
    fresh: bool = Query(default=False),
    user_id: str = Depends(require_user),
    services: AppServices = Depends(get_services),
    x_github_token: Optional[str] = Header(default=None),
):
    if not x_github_token:
        raise UnauthorizedError("A GitHub access token is required")
    policy = services.settings.cache_policy("repos")
    payload, status = await services.swr.fetch(
        CacheKeys.repos(user_id),
        lambda: _load_repos(services, x_github_token),
        policy,
        force_refresh=fresh,
    )
    return _json(payload, status, max_age=policy.ttl_seconds, swr=policy.grace_seconds)


# Categorization
async def _latest_categorization(services: AppServices, user_id: str) -> Optional[Dict[str, Any]]:
    rows = await services.store.query(
        CATEGORIZATIONS_TABLE, {"user_id": user_id}, order_by="created_at", limit=1
    )
    if not rows:
        return None
    row = rows[0]
    return CategorizationResponse(
        summary=row["summary"],
        roles=row["roles"],
        categorizationId=row["id"],
        tokenUsage=TokenUsageResponse(
            model=row.get("model"),
            promptTokens=row.get("prompt_tokens", 0),
            completionTokens=row.get("completion_tokens", 0),
            totalTokens=row.get("total_tokens", 0),
        ),
    ).model_dump()


@router.get("/api/categorize", response_model=CategorizationResponse)
async def get_categorization(
    fresh: bool = Query(default=False),
    user_id: str = Depends(require_user),
    services: AppServices = Depends(get_services),
):
    """Return the cached categorization, falling back to the last persisted one. Never calls the model."""
    policy = services.settings.cache_policy("categorization")
    payload, status = await services.swr.fetch(
        CacheKeys.categorization(user_id),
        lambda: _latest_categorization(services, user_id),
        policy,
        force_refresh=fresh,
    )
    if payload is None:
        raise RecordNotFoundError("No cached categorization")
    return _json(payload, status)


@router.post("/api/categorize", response_model=CategorizationResponse)
async def categorize_endpoint(
    body: CategorizeRequest,
    user_id: str = Depends(require_user),
    services: AppServices = Depends(get_services),
    x_github_token: Optional[str] = Header(default=None),
):
    settings = services.settings
    services.rate_limiter.enforce(f"categorize:{user_id}", settings.rate_limit("categorize"))

    ledger = UsageLedger()
    try:
        run = await services.pipeline.categorize(
            body.repos, body.userName, body.userBio, ledger, access_token=x_github_token
        )
    finally:
        services.reconciler.schedule(user_id, None, ledger)

    roles = [role.model_dump() for role in run.result.roles]
    usage = ledger.usage

    # persisting is auxiliary here: the user still gets their categorization
    categorization_id = None
    try:
        saved = await services.store.upsert(CATEGORIZATIONS_TABLE, {
            "user_id": user_id,
            "summary": run.result.summary,
            "roles": roles,
            "repo_count": run.repo_count,
            "model": ledger.model,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
        })
        categorization_id = saved["id"]
    except Exception as e:
        logger.error("Failed to save categorization for %s: %s", user_id, e)

    payload = CategorizationResponse(
        summary=run.result.summary,
        roles=roles,
        categorizationId=categorization_id,
        tokenUsage=_token_usage(ledger),
    ).model_dump()
    services.cache.set(
        CacheKeys.categorization(user_id), payload, settings.cache_policy("categorization").ttl_seconds
    )

    services.events.track(user_id, "categorization_completed", {
        "repoCount": run.repo_count,
        "roleCount": len(roles),
        "hallucinatedRepos": run.hallucinated,
        "model": ledger.model,
        "categorizationId": categorization_id,
    })
    return _json(payload, CacheStatus.MISS)


# CV generation
async def _save_generation(services: AppServices, user_id: str, body: GenerateRequest, cvs) -> tuple:
    session = await services.store.upsert(SESSIONS_TABLE, {
        "user_id": user_id,
        "categorization_id": body.categorizationId,
        "selected_repos": [
            {"name": r.name, "full_name": r.full_name, "html_url": r.html_url} for r in body.repos
        ],
        "summary": cvs[0].cv.summary if cvs else None,
        "status": "completed",
    })
    saved = []
    for generated in cvs:
        row = await services.store.upsert(CVS_TABLE, {
            "session_id": session["id"],
            "user_id": user_id,
            "role_title": generated.category.title,
            "role_description": generated.category.description,
            "skills": generated.category.skills,
            "matching_repos": [{"name": r.name, "html_url": r.html_url} for r in generated.repos],
            "structured_cv": generated.cv.model_dump(),
        })
        saved.append(row)
    return session["id"], saved


@router.post("/api/generate", response_model=GenerateResponse)
async def generate_endpoint(
    body: GenerateRequest,
    user_id: str = Depends(require_user),
    services: AppServices = Depends(get_services),
    x_github_token: Optional[str] = Header(default=None),
):
    services.rate_limiter.enforce(f"generate:{user_id}", services.settings.rate_limit("generate"))

    ledger = UsageLedger()
    session_id = None
    try:
        run = await services.pipeline.generate_cvs(
            body.categories, body.repos, body.userName, body.userBio, ledger, access_token=x_github_token
        )
        if run.error is not None:
            raise run.error
        try:
            session_id, rows = await _save_generation(services, user_id, body, run.cvs)
        except Exception as e:
            logger.error("Failed to save generated CVs for %s: %s", user_id, e)
            raise PersistenceError("Your CVs were generated but could not be saved. Please try again.") from e
    finally:
        services.reconciler.schedule(user_id, session_id, ledger)

    services.cache.delete(CacheKeys.history(user_id))

    cvs = [
        GeneratedCvResponse(
            id=row["id"],
            roleTitle=g.category.title,
            roleDescription=g.category.description,
            skills=g.category.skills,
            matchingRepos=[RepoLink(name=r.name, html_url=r.html_url) for r in g.repos],
            structuredCv=g.cv.model_dump(),
        )
        for g, row in zip(run.cvs, rows)
    ]
    services.events.track(user_id, "cvs_generated", {
        "sessionId": session_id,
        "cvCount": len(cvs),
        "hallucinatedRepos": sum(g.hallucinated for g in run.cvs),
        "model": ledger.model,
    })
    payload = GenerateResponse(sessionId=session_id, cvs=cvs, tokenUsage=_token_usage(ledger)).model_dump()
    return _json(payload, CacheStatus.MISS)


@router.put("/api/cv/{cv_id}")
async def update_cv_endpoint(
    cv_id: str,
    body: UpdateCvRequest,
    user_id: str = Depends(require_user),
    services: AppServices = Depends(get_services),
):
    """Replace the structured content of a saved CV the caller owns."""
    services.rate_limiter.enforce(f"cv_update:{user_id}", services.settings.rate_limit("cv_update"))

    try:
        owned = await services.store.query(CVS_TABLE, {"id": cv_id, "user_id": user_id}, limit=1)
        if owned:
            await services.store.upsert(CVS_TABLE, {"id": cv_id, "structured_cv": body.structuredCv.model_dump()})
    except Exception as e:
        logger.error("Failed to update CV %s: %s", cv_id, e)
        raise PersistenceError("Failed to update CV") from e
    if not owned:
        raise RecordNotFoundError("CV not found")

    services.cache.delete(CacheKeys.history(user_id))
    services.events.track(user_id, "cv_updated", {"cvId": cv_id})
    return {"success": True}


# Usage
async def _load_usage(services: AppServices, user_id: str) -> Dict[str, Any]:
    records = await services.store.query(USAGE_TABLE, {"user_id": user_id}, order_by="created_at", limit=100)
    totals = {
        "totalPromptTokens": sum(r["prompt_tokens"] for r in records),
        "totalCompletionTokens": sum(r["completion_tokens"] for r in records),
        "totalTokens": sum(r["total_tokens"] for r in records),
        "totalCostUsd": sum(float(r.get("estimated_cost_usd") or 0) for r in records),
        "totalRequests": len(records),
    }
    return {
        **totals,
        "records": [
            {
                "id": r["id"],
                "model": r["model"],
                "promptTokens": r["prompt_tokens"],
                "completionTokens": r["completion_tokens"],
                "totalTokens": r["total_tokens"],
                "costUsd": float(r.get("estimated_cost_usd") or 0),
                "createdAt": r["created_at"],
            }
            for r in records
        ],
    }


@router.get("/api/usage")
async def usage_endpoint(user_id: str = Depends(require_user), services: AppServices = Depends(get_services)):
    policy = services.settings.cache_policy("usage")
    payload, status = await services.swr.fetch(
        CacheKeys.usage(user_id), lambda: _load_usage(services, user_id), policy
    )
    return _json(payload, status, max_age=policy.ttl_seconds, swr=policy.grace_seconds)


# History
async def _load_history(services: AppServices, user_id: str) -> Dict[str, Any]:
    sessions = await services.store.query(
        SESSIONS_TABLE, {"user_id": user_id, "status": "completed"}, order_by="created_at", limit=20
    )
    for session in sessions:
        session["generated_cvs"] = await services.store.query(
            CVS_TABLE, {"session_id": session["id"]}, order_by="created_at", descending=False
        )
    return {"sessions": sessions}


@router.get("/api/history")
async def history_endpoint(user_id: str = Depends(require_user), services: AppServices = Depends(get_services)):
    policy = services.settings.cache_policy("history")
    payload, status = await services.swr.fetch(
        CacheKeys.history(user_id), lambda: _load_history(services, user_id), policy
    )
    return _json(payload, status, max_age=policy.ttl_seconds, swr=policy.grace_seconds)


@router.delete("/api/history")
async def delete_history_endpoint(
    id: Optional[str] = Query(default=None),
    user_id: str = Depends(require_user),
    services: AppServices = Depends(get_services),
):
    if not id:
        raise InvalidInputError("Session ID required")
    services.rate_limiter.enforce(f"history_delete:{user_id}", services.settings.rate_limit("history_delete"))

    deleted = False
    try:
        # scoped to the owner so one user cannot delete another's session
        deleted = await services.store.delete(SESSIONS_TABLE, id, {"user_id": user_id})
        if deleted:
            for cv in await services.store.query(CVS_TABLE, {"session_id": id}):
                await services.store.delete(CVS_TABLE, cv["id"])
    except Exception as e:
        logger.error("Failed to delete session %s: %s", id, e)
        raise PersistenceError("Failed to delete session") from e
    finally:
        # once the session row is gone the cached history is wrong, even if cleanup failed
        if deleted:
            services.cache.delete(CacheKeys.history(user_id))
    if not deleted:
        raise RecordNotFoundError("Session not found")

    services.events.track(user_id, "session_deleted", {"sessionId": id})
    return {"success": True}


# Error boundary
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers())

async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "errorType": "INVALID_REQUEST", "details": details},
    )


async def _periodic_cleanup(services: AppServices):
    """Drop expired rate windows and cache entries past their longest grace window."""
    settings = services.settings
    max_grace = max((p.grace_seconds for p in settings.cache_policies.values()), default=0)
    while True:
        await asyncio.sleep(settings.cleanup_interval_seconds)
        windows = services.rate_limiter.purge_expired()
        entries = services.cache.purge_expired(max_grace)
        if windows or entries:
            logger.debug("Cleanup removed %d rate windows and %d cache entries", windows, entries)


# Startup lifespan starts housekeeping; shutdown lets detached work finish
@asynccontextmanager
async def lifespan(app: FastAPI):
    services: AppServices = app.state.services
    logger.info("Server startup: model=%s cache_max_entries=%d", services.settings.model,
                services.settings.cache_max_entries)
    cleanup = asyncio.create_task(_periodic_cleanup(services))
    yield
    cleanup.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup
    await services.tasks.drain(timeout=10)
    services.events.flush()
    logger.info("Server shutting down.")


def create_app(settings: Optional[Settings] = None, services: Optional[AppServices] = None) -> FastAPI:
    if services is None:
        services = build_services(settings or Settings.from_env())

    app = FastAPI(title="CV Tailor API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Cache", "Retry-After"],
    )
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()
