"""
FastAPI application for the voting session engine.

Admin routes manage events, items, voter codes and status; voters submit
ballots; observers read tallies and follow a server-sent stream of change
hints for live result displays.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, Histogram, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ballotbox.api.config import Settings, settings
from ballotbox.api.consumer import RabbitMQNoticeConsumer
from ballotbox.api.models import (
    BallotRequest,
    BallotResponse,
    CredentialIssueRequest,
    CredentialIssueResponse,
    CredentialResponse,
    ErrorResponse,
    EventCreateRequest,
    EventResponse,
    EventUpdateRequest,
    HealthResponse,
    ItemCreateRequest,
    ItemResponse,
    ResultEntryResponse,
    ResultsResponse,
    StatusUpdateRequest,
    TallyEntryResponse,
    TallyResponse,
)
from ballotbox.api.publisher import RabbitMQPublisher
from ballotbox.engine import HttpLedger, QueueSubscription, VotingEngine
from ballotbox.monitor import SessionMonitor
from ballotbox.shared.errors import (
    BallotValidationError,
    CredentialAlreadyUsedError,
    CredentialBatchError,
    CredentialNotFoundError,
    CredentialRequiredError,
    EventNotEditableError,
    EventNotFoundError,
    InvalidEventError,
    InvalidTransitionError,
    ItemNotFoundError,
    PartialCommitError,
    SessionClosedError,
    StoreUnavailableError,
    VotingError,
)
from ballotbox.shared.models import Event, utcnow
from ballotbox.storage import MemoryEventCache, MemoryStore, RedisEventCache

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Prometheus metrics
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

# Rate limiter. The ballot limit is read per request from the serving app's settings
limiter = Limiter(key_func=get_remote_address)
ballot_rate_limit: ContextVar[str] = ContextVar("ballot_rate_limit", default=settings.RATE_LIMIT)


def current_ballot_rate_limit() -> str:
    return ballot_rate_limit.get()

# Engine error -> HTTP status, most specific class first
ERROR_STATUS = [
    (BallotValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CredentialNotFoundError, status.HTTP_404_NOT_FOUND),
    (CredentialAlreadyUsedError, status.HTTP_409_CONFLICT),
    (CredentialRequiredError, status.HTTP_403_FORBIDDEN),
    (SessionClosedError, status.HTTP_423_LOCKED),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PartialCommitError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (EventNotFoundError, status.HTTP_404_NOT_FOUND),
    (ItemNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidEventError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CredentialBatchError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (EventNotEditableError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
]

PARTIAL_COMMIT_MESSAGE = (
    "Your voter code was used but your vote could not be recorded. "
    "Please contact an event administrator."
)

UNKNOWN_OUTCOME_MESSAGE = (
    "The store failed while saving your vote and it may or may not have been counted. "
    "Check the event before submitting again."
)

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Event or item not found"},
    422: {"model": ErrorResponse, "description": "Invalid request"},
}


def error_response(error: VotingError) -> JSONResponse:
    """Translate an engine error into its HTTP status and body."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_class, code in ERROR_STATUS:
        if isinstance(error, error_class):
            status_code = code
            break

    body = ErrorResponse(error=error.error_type, detail=str(error))
    if isinstance(error, BallotValidationError):
        body.reason = error.reason.value
    elif isinstance(error, SessionClosedError):
        body.status = error.status
    elif isinstance(error, StoreUnavailableError) and error.credential_consumed is None:
        body.detail = UNKNOWN_OUTCOME_MESSAGE
    elif isinstance(error, PartialCommitError):
        body.detail = PARTIAL_COMMIT_MESSAGE
        body.credential_consumed = True

    content = body.model_dump(exclude_none=True)
    if isinstance(error, StoreUnavailableError):
        # null: the code may or may not have been used
        content["credential_consumed"] = error.credential_consumed
    return JSONResponse(status_code=status_code, content=content)


async def voting_error_handler(request: Request, exc: VotingError) -> JSONResponse:
    return error_response(exc)


def get_engine(request: Request) -> VotingEngine:
    return request.app.state.engine


def event_response(engine: VotingEngine, event: Event) -> EventResponse:
    return EventResponse(
        id=event.id,
        name=event.name,
        category=event.category,
        vote_mode=event.vote_mode,
        number_of_choices=event.number_of_choices,
        number_of_winners=event.number_of_winners,
        start_time=event.start_time,
        end_time=event.end_time,
        status=event.status,
        allow_anonymous=event.allow_anonymous,
        created_at=event.created_at,
        accepting_submissions=engine.sessions.accepts_submissions(event),
    )


async def change_stream(
    subscription: QueueSubscription,
    request: Optional[Request] = None,
    heartbeat: float = 15.0,
) -> AsyncIterator[str]:
    """
    Server-sent events for one subscription.

    Each notice is sent as `event: <kind>`; clients re-fetch the tally or the
    event when they receive one. A comment line keeps idle connections open.
    """
    try:
        yield ": connected\n\n"
        while True:
            if request is not None and await request.is_disconnected():
                break
            try:
                notice = await asyncio.wait_for(subscription.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"event: {notice.kind.value}\ndata: {json.dumps(notice.to_dict())}\n\n"
    finally:
        subscription.close()


def build_engine(config: Settings) -> VotingEngine:
    """Create the engine and its backends from settings."""
    if config.STORE_BACKEND == "postgres":
        from ballotbox.storage.postgres import PostgresStore

        store = PostgresStore(
            config.postgres_dsn,
            min_size=config.POSTGRES_POOL_MIN_SIZE,
            max_size=config.POSTGRES_POOL_MAX_SIZE,
            create_schema=config.POSTGRES_CREATE_SCHEMA,
        )
    else:
        store = MemoryStore()

    if config.REDIS_ENABLED:
        cache = RedisEventCache.from_url(config.redis_url, config.EVENT_CACHE_TTL_SECONDS)
    else:
        cache = MemoryEventCache(config.EVENT_CACHE_TTL_SECONDS)

    ledger = None
    if config.LEDGER_URL:
        ledger = HttpLedger(config.LEDGER_URL, timeout=config.LEDGER_TIMEOUT)

    return VotingEngine(store, cache=cache, ledger=ledger)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    config: Settings = app.state.settings
    owns_engine = app.state.engine is None
    publisher: Optional[RabbitMQPublisher] = None
    consumer: Optional[RabbitMQNoticeConsumer] = None
    monitor: Optional[SessionMonitor] = None

    logger.info(f"Starting {config.SERVICE_NAME} service...")
    try:
        if owns_engine:
            app.state.engine = build_engine(config)
            await app.state.engine.store.initialize()
        engine: VotingEngine = app.state.engine

        if config.RABBITMQ_ENABLED:
            publisher = RabbitMQPublisher(
                config.rabbitmq_url,
                config.RABBITMQ_EXCHANGE,
                notice_prefix=config.RABBITMQ_NOTICE_ROUTING_PREFIX,
                alert_routing_key=config.RABBITMQ_ALERT_ROUTING_KEY,
                pool_size=config.RABBITMQ_POOL_SIZE,
                origin=engine.notifier.origin,
            )
            await publisher.initialize()
            engine.notifier.subscribe(publisher.publish_notice)
            engine.alerts.add_channel(publisher.publish_alert)

            consumer = RabbitMQNoticeConsumer(
                config.rabbitmq_url,
                config.RABBITMQ_EXCHANGE,
                handler=engine.apply_remote_notice,
                notice_prefix=config.RABBITMQ_NOTICE_ROUTING_PREFIX,
                origin=engine.notifier.origin,
            )
            await consumer.start()
        app.state.publisher = publisher

        if config.RUN_SESSION_MONITOR:
            monitor = SessionMonitor(engine.sessions, config.SESSION_POLL_INTERVAL_SECONDS)
            monitor.start()

        logger.info(f"{config.SERVICE_NAME} started successfully")

    except Exception as e:
        logger.error(f"Failed to start {config.SERVICE_NAME}: {e}")
        raise

    yield

    logger.info(f"Shutting down {config.SERVICE_NAME} service...")
    if consumer is not None:
        await consumer.close()
    if monitor is not None:
        await monitor.stop()
    if owns_engine:
        await app.state.engine.close()
    else:
        await app.state.engine.notifier.drain()
    if publisher is not None:
        await publisher.close()
    logger.info(f"{config.SERVICE_NAME} shut down successfully")


router = APIRouter()


# Events

@router.post(
    "/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: ERROR_RESPONSES[422]}
)
async def create_event(body: EventCreateRequest, engine: VotingEngine = Depends(get_engine)) -> EventResponse:
    """Create a draft event."""
    event = await engine.create_event(**body.model_dump())
    return event_response(engine, event)


@router.get("/events", response_model=List[EventResponse])
async def list_events(engine: VotingEngine = Depends(get_engine)) -> List[EventResponse]:
    events = await engine.list_events()
    return [event_response(engine, event) for event in events]


@router.get("/events/{event_id}", response_model=EventResponse, responses={404: ERROR_RESPONSES[404]})
async def get_event(event_id: str, engine: VotingEngine = Depends(get_engine)) -> EventResponse:
    return event_response(engine, await engine.get_event(event_id))


@router.patch(
    "/events/{event_id}",
    response_model=EventResponse,
    responses={
        404: ERROR_RESPONSES[404],
        409: {"model": ErrorResponse, "description": "Event is no longer a draft"},
        422: ERROR_RESPONSES[422],
    }
)
async def update_event(
    event_id: str,
    body: EventUpdateRequest,
    engine: VotingEngine = Depends(get_engine),
) -> EventResponse:
    """Edit a draft event. Only the fields sent are changed."""
    fields = {key: value for key, value in body.model_dump(exclude_unset=True).items() if value is not None}
    event = await engine.update_event(event_id, fields)
    return event_response(engine, event)


@router.put(
    "/events/{event_id}/status",
    response_model=EventResponse,
    responses={
        404: ERROR_RESPONSES[404],
        409: {"model": ErrorResponse, "description": "Transition not allowed"},
    }
)
async def set_status(
    event_id: str,
    body: StatusUpdateRequest,
    engine: VotingEngine = Depends(get_engine),
) -> EventResponse:
    """
    Change event status.

    - **active**: from draft or paused, before end_time
    - **paused**: from active
    - **ended**: from any status
    """
    event = await engine.set_status(event_id, body.status)
    return event_response(engine, event)


@router.post(
    "/events/{event_id}/reset",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: ERROR_RESPONSES[404]}
)
async def reset_event(event_id: str, engine: VotingEngine = Depends(get_engine)) -> Response:
    """Delete all ballots, zero every counter and make every voter code unused again."""
    await engine.reset(event_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Items

@router.post(
    "/events/{event_id}/items",
    response_model=ItemResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: ERROR_RESPONSES[404], 409: {"model": ErrorResponse}}
)
async def add_item(
    event_id: str,
    body: ItemCreateRequest,
    engine: VotingEngine = Depends(get_engine),
) -> ItemResponse:
    item = await engine.add_item(event_id, **body.model_dump())
    return ItemResponse(**item.to_dict())


@router.get("/events/{event_id}/items", response_model=List[ItemResponse], responses={404: ERROR_RESPONSES[404]})
async def list_items(event_id: str, engine: VotingEngine = Depends(get_engine)) -> List[ItemResponse]:
    items = await engine.list_items(event_id)
    return [ItemResponse(**item.to_dict()) for item in items]


@router.delete(
    "/events/{event_id}/items/{item_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: ERROR_RESPONSES[404], 409: {"model": ErrorResponse}}
)
async def remove_item(event_id: str, item_id: str, engine: VotingEngine = Depends(get_engine)) -> Response:
    await engine.remove_item(event_id, item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Credentials

@router.post(
    "/events/{event_id}/credentials",
    response_model=CredentialIssueResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: ERROR_RESPONSES[404], 422: ERROR_RESPONSES[422]}
)
async def issue_credentials(
    event_id: str,
    body: CredentialIssueRequest,
    engine: VotingEngine = Depends(get_engine),
) -> CredentialIssueResponse:
    """Issue a batch of single-use voter codes."""
    codes = await engine.issue_credentials(event_id, body.count)
    return CredentialIssueResponse(event_id=event_id, count=len(codes), codes=codes)


@router.get(
    "/events/{event_id}/credentials",
    response_model=List[CredentialResponse],
    responses={404: ERROR_RESPONSES[404]}
)
async def list_credentials(event_id: str, engine: VotingEngine = Depends(get_engine)) -> List[CredentialResponse]:
    credentials = await engine.list_credentials(event_id)
    return [
        CredentialResponse(
            code=credential.code,
            used=credential.used,
            used_at=credential.used_at,
            created_at=credential.created_at,
        )
        for credential in credentials
    ]


@router.delete(
    "/events/{event_id}/credentials/{code}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        404: ERROR_RESPONSES[404],
        409: {"model": ErrorResponse, "description": "Code unknown or already used"},
    }
)
async def revoke_credential(event_id: str, code: str, engine: VotingEngine = Depends(get_engine)) -> Response:
    if not await engine.revoke_credential(event_id, code):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=ErrorResponse(
                error="not_revocable",
                detail=f"Voter code {code} is unknown or already used"
            ).model_dump(exclude_none=True)
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Voting

@router.post(
    "/events/{event_id}/ballots",
    response_model=BallotResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        403: {"model": ErrorResponse, "description": "Voter code required"},
        404: {"model": ErrorResponse, "description": "Unknown event or voter code"},
        409: {"model": ErrorResponse, "description": "Voter code already used"},
        422: {"model": ErrorResponse, "description": "Invalid ballot"},
        423: {"model": ErrorResponse, "description": "Voting is not open"},
        429: {"description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Code consumed but vote not recorded"},
        503: {"model": ErrorResponse, "description": "Store unavailable"},
    }
)
@limiter.limit(current_ballot_rate_limit)
async def submit_ballot(
    request: Request,
    event_id: str,
    body: BallotRequest,
    engine: VotingEngine = Depends(get_engine),
) -> BallotResponse:
    """
    Submit a ballot.

    - **code**: single-use voter code (omit for anonymous events)
    - **item_ids**: one item in single mode, exactly number_of_choices in multiple mode
    """
    ballot = await engine.submit_ballot(event_id, body.code, body.item_ids)
    return BallotResponse(
        ballot_id=ballot.id,
        event_id=ballot.event_id,
        item_ids=list(ballot.item_ids),
        voter_code=ballot.voter_code,
        submitted_at=ballot.submitted_at,
    )


@router.get("/events/{event_id}/tally", response_model=TallyResponse, responses={404: ERROR_RESPONSES[404]})
async def get_tally(event_id: str, engine: VotingEngine = Depends(get_engine)) -> TallyResponse:
    """Current counts, most votes first."""
    entries = await engine.get_tally(event_id)
    return TallyResponse(
        event_id=event_id,
        entries=[TallyEntryResponse(**vars(entry)) for entry in entries],
        total_votes=sum(entry.vote_count for entry in entries),
    )


@router.get("/events/{event_id}/results", response_model=ResultsResponse, responses={404: ERROR_RESPONSES[404]})
async def get_results(event_id: str, engine: VotingEngine = Depends(get_engine)) -> ResultsResponse:
    results = await engine.get_results(event_id)

    def entry(tally_entry):
        return ResultEntryResponse(**vars(tally_entry), share=results.share(tally_entry))

    return ResultsResponse(
        event_id=results.event.id,
        name=results.event.name,
        status=results.event.status,
        is_final=results.is_final,
        total_votes=results.total_votes,
        entries=[entry(e) for e in results.entries],
        winners=[entry(e) for e in results.winners],
    )


@router.get("/events/{event_id}/stream", responses={404: ERROR_RESPONSES[404]})
async def stream_changes(event_id: str, request: Request, engine: VotingEngine = Depends(get_engine)):
    """Server-sent change hints for one event (tally and session)."""
    await engine.get_event(event_id)
    subscription = engine.notifier.subscription(event_id)
    return StreamingResponse(
        change_stream(subscription, request, request.app.state.settings.STREAM_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"}
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse, "description": "Service unhealthy"}}
)
async def health_check(request: Request, engine: VotingEngine = Depends(get_engine)) -> JSONResponse:
    """
    Check health of the service and its dependencies.

    Verifies the store, the event cache and, when configured, RabbitMQ.
    """
    services = {}

    try:
        store_healthy = await engine.store.check_health()
        services["store"] = "connected" if store_healthy else "disconnected"
    except Exception as e:
        logger.error(f"Store health check error: {e}")
        services["store"] = "error"

    try:
        cache_healthy = await engine.sessions.cache.check_health()
        services["cache"] = "connected" if cache_healthy else "disconnected"
    except Exception as e:
        logger.error(f"Cache health check error: {e}")
        services["cache"] = "error"

    publisher: Optional[RabbitMQPublisher] = getattr(request.app.state, "publisher", None)
    if publisher is not None:
        broker_healthy = await publisher.check_health()
        services["rabbitmq"] = "connected" if broker_healthy else "disconnected"

    all_healthy = all(state == "connected" for state in services.values())
    response = HealthResponse(
        status="healthy" if all_healthy else "unhealthy",
        services=services,
        timestamp=utcnow()
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def create_app(engine: Optional[VotingEngine] = None, config: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Args:
        engine: Pre-built engine (tests, embedding). When omitted the lifespan
            builds one from settings and owns its shutdown.
        config: Settings override
    """
    config = config or settings
    app = FastAPI(
        title="Ballotbox API",
        description="Time-boxed voting events with one-time voter codes and live tallies",
        version=config.API_VERSION,
        lifespan=lifespan
    )
    app.state.settings = config
    app.state.engine = engine
    app.state.publisher = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=config.CORS_ALLOW_CREDENTIALS,
        allow_methods=config.CORS_ALLOW_METHODS,
        allow_headers=config.CORS_ALLOW_HEADERS,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(VotingError, voting_error_handler)

    @app.middleware("http")
    async def prometheus_middleware(request: Request, call_next):
        """Apply this app's ballot rate limit and track request duration per route template."""
        ballot_rate_limit.set(request.app.state.settings.RATE_LIMIT)
        start = asyncio.get_running_loop().time()
        response = await call_next(request)
        # Routing fills in the matched route; label by its template, not the raw path
        endpoint = getattr(request.scope.get("route"), "path", request.url.path)
        request_duration.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).observe(asyncio.get_running_loop().time() - start)
        return response

    app.include_router(router, prefix=f"/api/{config.API_VERSION}")
    app.add_api_route("/metrics", metrics, methods=["GET"], include_in_schema=False)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ballotbox.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
