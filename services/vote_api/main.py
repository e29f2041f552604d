"""
FastAPI application for the vote confirmation API.

Votes are submitted with an email and a country, confirmed through the link
mailed to the voter, and published as anonymous per-country lists and
aggregated stats served from memory.
"""
import logging
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from ..shared.models import SubmissionStatus
from .cache import ConfirmationCache
from .config import settings
from .database import Database
from .lifecycle import StoreUnavailableError, VoteLifecycle
from .models import (
    VoteRequest,
    PublicVoteResponse,
    StatsResponse,
    RefreshResponse,
    HealthResponse,
    ErrorResponse,
)
from .publisher import RabbitMQPublisher

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Prometheus metrics
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

PREFIX = f"/api/{settings.API_VERSION}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    database = Database()
    publisher = RabbitMQPublisher()
    lifecycle = VoteLifecycle(
        store=database,
        dispatcher=publisher,
        cache=ConfirmationCache(recent_limit=settings.RECENT_VOTES_LIMIT),
        dispatch_timeout=settings.DISPATCH_TIMEOUT_SECONDS,
    )

    try:
        await database.initialize()

        # Jobs fail soft, so a broker outage does not block startup
        try:
            await publisher.initialize()
        except Exception as e:
            logger.error(f"RabbitMQ unavailable at startup, jobs will not be dispatched until it recovers: {e}")

        # Never serve traffic with an empty cache
        await lifecycle.refresh_all()

        app.state.lifecycle = lifecycle
        logger.info(f"{settings.SERVICE_NAME} started successfully")

    except Exception as e:
        logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
        await publisher.close()
        await database.close()
        raise

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
    app.state.lifecycle = None

    try:
        await lifecycle.drain()
        await publisher.close()
        await database.close()
        logger.info(f"{settings.SERVICE_NAME} shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI app
app = FastAPI(
    title="Vote Confirmation API",
    description="API for submitting, confirming and viewing votes",
    version=settings.API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    start = time.perf_counter()
    response = await call_next(request)

    route = request.scope.get("route")
    request_duration.labels(
        method=request.method,
        endpoint=getattr(route, "path", request.url.path),
        status=response.status_code
    ).observe(time.perf_counter() - start)

    return response


def get_lifecycle(request: Request) -> VoteLifecycle:
    """Dependency returning the lifecycle built at startup."""
    lifecycle = getattr(request.app.state, "lifecycle", None)
    if lifecycle is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is not ready"
        )
    return lifecycle


@app.post(
    f"{PREFIX}/votes",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses={
        406: {"model": ErrorResponse, "description": "Consent not given"},
        409: {"model": ErrorResponse, "description": "Email already used"},
        422: {"description": "Invalid email or country code"},
        429: {"description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Vote store unavailable"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def submit_vote(
    request: Request,
    vote: VoteRequest,
    lifecycle: VoteLifecycle = Depends(get_lifecycle)
) -> Response:
    """
    Submit a vote.

    - **email**: Voter email, receives the confirmation link
    - **countryCode**: Two-letter country code
    - **I accept privacy policy and terms of service**: must be "on"
    - **I am over 18 years old**: must be "on"

    The vote stays pending until confirmed.
    """
    try:
        outcome = await lifecycle.submit(vote.to_submission())

    except StoreUnavailableError as e:
        logger.error(f"Vote store unavailable while submitting vote: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Vote store unavailable"
        )
    except Exception as e:
        logger.error(f"Error submitting vote: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    if outcome == SubmissionStatus.CONFLICT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A vote with this email already exists"
        )
    if outcome == SubmissionStatus.REJECTED:
        raise HTTPException(
            status_code=status.HTTP_406_NOT_ACCEPTABLE,
            detail="Privacy policy and age attestation must be accepted"
        )

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get(
    f"{PREFIX}/votes/{{vote_id}}",
    response_model=PublicVoteResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Vote not found"},
        503: {"model": ErrorResponse, "description": "Vote store unavailable"}
    }
)
async def confirm_vote(
    vote_id: str,
    lifecycle: VoteLifecycle = Depends(get_lifecycle)
) -> PublicVoteResponse:
    """
    Confirm a vote (target of the emailed link).

    - **vote_id**: Identifier sent to the voter

    Returns the public part of the vote. Repeated calls are harmless.
    """
    try:
        public_vote = await lifecycle.confirm(vote_id)

    except StoreUnavailableError as e:
        logger.error(f"Vote store unavailable while confirming {vote_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Vote store unavailable"
        )
    except Exception as e:
        logger.error(f"Error confirming vote {vote_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    if public_vote is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Vote {vote_id} not found"
        )

    return PublicVoteResponse.from_public(public_vote)


@app.get(
    f"{PREFIX}/countries/{{country_code}}",
    response_model=list[PublicVoteResponse]
)
async def list_votes(
    country_code: str,
    lifecycle: VoteLifecycle = Depends(get_lifecycle)
) -> list[PublicVoteResponse]:
    """Get confirmed votes for a country, newest first."""
    return [
        PublicVoteResponse.from_public(vote)
        for vote in lifecycle.list_by_country(country_code)
    ]


@app.get(
    f"{PREFIX}/stats",
    response_model=StatsResponse
)
async def get_stats(lifecycle: VoteLifecycle = Depends(get_lifecycle)) -> StatsResponse:
    """Get totals, per-country counts and the latest confirmed votes."""
    return StatsResponse.from_stats(lifecycle.get_stats())


@app.get(
    f"{PREFIX}/refresh/{{secret}}",
    response_model=RefreshResponse,
    responses={
        404: {"description": "Unknown path"},
        503: {"model": ErrorResponse, "description": "Vote store unavailable"}
    }
)
async def refresh_cache(
    secret: str,
    lifecycle: VoteLifecycle = Depends(get_lifecycle)
) -> RefreshResponse:
    """Rebuild the cache and stats from the vote store."""
    expected = settings.REFRESH_SECRET
    if not expected or not secrets.compare_digest(secret.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    try:
        snapshot = await lifecycle.refresh_all()
    except StoreUnavailableError as e:
        logger.error(f"Vote store unavailable during refresh: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Vote store unavailable"
        )

    return RefreshResponse(total=len(snapshot))


@app.get(
    f"{PREFIX}/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check(lifecycle: VoteLifecycle = Depends(get_lifecycle)):
    """
    Check health of the service and its dependencies.

    Verifies connections to:
    - PostgreSQL
    - RabbitMQ

    Returns overall health status and individual service statuses.
    """
    services = {}

    try:
        postgres_healthy = await lifecycle.store.check_health()
        services["postgresql"] = "connected" if postgres_healthy else "disconnected"
    except Exception as e:
        logger.error(f"PostgreSQL health check error: {e}")
        services["postgresql"] = "error"

    try:
        rabbitmq_healthy = await lifecycle.dispatcher.check_health()
        services["rabbitmq"] = "connected" if rabbitmq_healthy else "disconnected"
    except Exception as e:
        logger.error(f"RabbitMQ health check error: {e}")
        services["rabbitmq"] = "error"

    all_healthy = all(
        service_status == "connected" for service_status in services.values()
    )

    response = HealthResponse(
        status="healthy" if all_healthy else "unhealthy",
        services=services,
        cached_votes=len(lifecycle.cache.snapshot),
        timestamp=datetime.now(timezone.utc)
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "submit_vote": f"{PREFIX}/votes",
            "confirm_vote": f"{PREFIX}/votes/{{vote_id}}",
            "list_votes": f"{PREFIX}/countries/{{country_code}}",
            "stats": f"{PREFIX}/stats",
            "health": f"{PREFIX}/health",
            "metrics": "/metrics"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.vote_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
