"""
FastAPI application exposing the participant and admin surfaces.

Participant endpoints read the active category and submit votes; admin
endpoints unlock and lock categories and read the live board. The admin gate
is a shared key checked against a SHA-256 digest: a casual-misuse deterrent,
not a security boundary.
"""
import hashlib
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..config import settings
from ..data_store.base import DataStore
from ..identity.resolver import IdentityResolver, ReportedFingerprintProvider
from ..shared.errors import (
    CategoryLocked,
    CategoryNotFound,
    ConnectionFailure,
    DuplicateVote,
    IdentityUnavailable,
    InvalidCategory,
    InvalidCategoryId,
    InvalidOption,
    MultipleActiveCategories,
    UnlockConflict,
    VotingError,
)
from ..shared.models import utcnow
from ..unlock_controller.controller import UnlockController
from ..vote_gateway.gateway import VoteGateway
from ..vote_gateway.voted_cache import MemoryVotedCache, RedisVotedCache, VotedCache
from .models import (
    ActiveCategoryResponse,
    AdminBoardResponse,
    AdminCategoryResponse,
    CategoryResponse,
    ErrorResponse,
    HealthResponse,
    TallyResponse,
    VoteRequest,
    VoteResponse,
)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    DuplicateVote: status.HTTP_409_CONFLICT,
    CategoryLocked: status.HTTP_423_LOCKED,
    InvalidOption: status.HTTP_400_BAD_REQUEST,
    InvalidCategoryId: status.HTTP_400_BAD_REQUEST,
    InvalidCategory: status.HTTP_400_BAD_REQUEST,
    CategoryNotFound: status.HTTP_404_NOT_FOUND,
    UnlockConflict: status.HTTP_409_CONFLICT,
    MultipleActiveCategories: status.HTTP_409_CONFLICT,
    IdentityUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConnectionFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    404: {"model": ErrorResponse, "description": "Category not found"},
    409: {"model": ErrorResponse, "description": "Duplicate vote or unlock conflict"},
    423: {"model": ErrorResponse, "description": "Category locked"},
    503: {"model": ErrorResponse, "description": "Store or identity unavailable"},
}

API_PREFIX = f"/api/{settings.API_VERSION}"

limiter = Limiter(key_func=get_remote_address)
router = APIRouter(prefix=API_PREFIX)


@dataclass
class VotingServices:
    """Components shared by every request of one application instance."""
    store: DataStore
    voted_cache: VotedCache
    gateway: VoteGateway
    controller: UnlockController

    @classmethod
    def build(cls, store: DataStore, voted_cache: Optional[VotedCache] = None) -> 'VotingServices':
        voted_cache = voted_cache or MemoryVotedCache()
        gateway = VoteGateway(store, voted_cache=voted_cache)
        controller = UnlockController(store, gateway=gateway, retry_policy=gateway.retry)
        return cls(store=store, voted_cache=voted_cache, gateway=gateway, controller=controller)

    async def close(self) -> None:
        await self.voted_cache.close()
        await self.store.close()


def get_services(request: Request) -> VotingServices:
    return request.app.state.services


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Reject admin calls whose key does not hash to the configured digest."""
    if not x_admin_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin key required")
    digest = hashlib.sha256(x_admin_key.encode('utf-8')).hexdigest()
    if not hmac.compare_digest(digest, settings.ADMIN_KEY_SHA256):
        logger.warning("Rejected admin request with an incorrect key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect admin key")


async def voting_error_handler(request: Request, exc: VotingError) -> JSONResponse:
    """Map the error taxonomy onto HTTP statuses with human readable messages."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# ═══════════════════════════════════════════════════════════════════
# PARTICIPANT ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@router.get("/categories/active", response_model=ActiveCategoryResponse, responses=ERROR_RESPONSES)
async def get_active_category(services: VotingServices = Depends(get_services)) -> ActiveCategoryResponse:
    """
    Get the category currently accepting votes.

    Returns a null category while participants should wait.
    """
    try:
        category = await services.controller.get_active_category()
    except MultipleActiveCategories as e:
        return ActiveCategoryResponse(
            category=CategoryResponse.from_category(e.categories[0]),
            consistency_warning=True
        )

    if category is None:
        return ActiveCategoryResponse()
    return ActiveCategoryResponse(category=CategoryResponse.from_category(category))


@router.post(
    "/votes",
    response_model=VoteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 429: {"description": "Rate limit exceeded"}}
)
@limiter.limit(settings.RATE_LIMIT)
async def submit_vote(
    request: Request,
    vote: VoteRequest,
    user_agent: Optional[str] = Header(default=None),
    services: VotingServices = Depends(get_services)
) -> VoteResponse:
    """
    Submit a vote for the active category.

    - **category_id**: Category being voted in
    - **option**: A, B, C or D
    - **device_id**: Device fingerprint computed on the client
    """
    resolver = IdentityResolver(
        ReportedFingerprintProvider(vote.device_id),
        characteristics=vote.characteristics,
        session_id=vote.session_id,
        user_agent=vote.user_agent or user_agent
    )
    identity = await resolver.resolve_identity()

    stored = await services.gateway.submit_vote(
        vote.category_id,
        vote.option,
        identity.device_id,
        browser_fingerprint=identity.browser_fingerprint or vote.browser_fingerprint,
        session_id=identity.session_id,
        user_agent=identity.user_agent
    )
    return VoteResponse.from_vote(stored)


@router.get("/votes", response_model=List[VoteResponse])
async def get_user_votes(
    device_id: str = Query(..., min_length=1),
    services: VotingServices = Depends(get_services)
) -> List[VoteResponse]:
    """Get the votes cast from one device, newest first."""
    votes = await services.gateway.get_user_votes(device_id)
    return [VoteResponse.from_vote(vote) for vote in votes]


@router.get("/categories/{category_id}/tally", response_model=TallyResponse)
async def get_tally(category_id: int, services: VotingServices = Depends(get_services)) -> TallyResponse:
    """Get live vote counts for a category."""
    tally = await services.gateway.tally(category_id)
    return TallyResponse.from_tally(tally)


# ═══════════════════════════════════════════════════════════════════
# ADMIN ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@router.get(
    "/admin/categories",
    response_model=AdminBoardResponse,
    dependencies=[Depends(require_admin)]
)
async def get_admin_board(services: VotingServices = Depends(get_services)) -> AdminBoardResponse:
    """Get every category with its live tally."""
    rows = await services.controller.get_all_categories_with_tallies()
    categories = [
        AdminCategoryResponse(
            category=CategoryResponse.from_category(category),
            tally=TallyResponse.from_tally(tally)
        )
        for category, tally in rows
    ]
    return AdminBoardResponse(
        categories=categories,
        total_votes=sum(tally.total for _, tally in rows)
    )


@router.post(
    "/admin/categories/{category_id}/unlock",
    response_model=CategoryResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)]
)
async def unlock_category(category_id: int, services: VotingServices = Depends(get_services)) -> CategoryResponse:
    """Unlock a category, locking every other one."""
    category = await services.controller.unlock(category_id)
    return CategoryResponse.from_category(category)


@router.post(
    "/admin/categories/{category_id}/lock",
    response_model=CategoryResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)]
)
async def lock_category(category_id: int, services: VotingServices = Depends(get_services)) -> CategoryResponse:
    """Lock a category. Locking an already locked category succeeds."""
    category = await services.controller.lock(category_id)
    return CategoryResponse.from_category(category)


@router.post(
    "/admin/lock-all",
    response_model=List[CategoryResponse],
    dependencies=[Depends(require_admin)]
)
async def lock_all_categories(services: VotingServices = Depends(get_services)) -> List[CategoryResponse]:
    """Lock every category."""
    categories = await services.controller.lock_all()
    return [CategoryResponse.from_category(category) for category in categories]


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse, "description": "Service unhealthy"}}
)
async def health_check(services: VotingServices = Depends(get_services)):
    """Check the data store connection."""
    store_healthy = await services.store.check_health()
    services_status = {"store": "connected" if store_healthy else "disconnected"}

    response = HealthResponse(
        status="healthy" if store_healthy else "unhealthy",
        services=services_status,
        timestamp=utcnow()
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if store_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


def create_app(store: Optional[DataStore] = None, voted_cache: Optional[VotedCache] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        store: Data store to use; a PostgreSQL store is created on startup when omitted
        voted_cache: Voted-marker cache; Redis when REDIS_ENABLED, else in-process
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.SERVICE_NAME} service...")

        app_store = store
        if app_store is None:
            from ..data_store.postgres import PostgresDataStore
            app_store = PostgresDataStore()
            await app_store.initialize()

        cache = voted_cache
        if cache is None and settings.REDIS_ENABLED:
            cache = RedisVotedCache.from_url(settings.redis_url)

        app.state.services = VotingServices.build(app_store, cache)
        logger.info(f"{settings.SERVICE_NAME} started successfully")

        yield

        logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
        await app.state.services.close()
        logger.info(f"{settings.SERVICE_NAME} shut down successfully")

    app = FastAPI(
        title="Awards Night Voting API",
        description="Single-unlock category voting with duplicate prevention",
        version=settings.API_VERSION,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(VotingError, voting_error_handler)
    app.include_router(router)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "awards_voting.voting_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
