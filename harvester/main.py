import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status

from harvester.config import Settings, get_settings
from harvester.errors import SourceUnavailable
from harvester.logging_utils import RequestLoggingMiddleware, log_scrape_trigger, setup_logging
from harvester.metrics import get_metrics, get_metrics_content_type
from harvester.orchestrator import ScrapeOrchestrator
from harvester.scheduler import HarvestScheduler
from harvester.schemas import (
    ChatResponse,
    ChatsListResponse,
    DateRangeMessagesResponse,
    ErrorResponse,
    GroupMessagesResponse,
    GroupResponse,
    GroupsListResponse,
    GroupStatistics,
    GroupStatsResponse,
    HealthResponse,
    MessageResponse,
    SchedulerStatusResponse,
    ScrapeHistoryResponse,
    ScrapeRunResponse,
    ScrapeTriggerResponse,
    SearchResponse,
)
from harvester.source import ConnectionMonitor, ConnectionState, SourceClient
from harvester.storage import MessageStore
from harvester.tasks import ScrapeTaskQueue

logger = logging.getLogger(__name__)


def create_app(
    source_client: Optional[SourceClient] = None,
    store: Optional[MessageStore] = None,
    settings: Optional[Settings] = None,
    connection: Optional[ConnectionMonitor] = None,
) -> FastAPI:
    """
    Build the API around one store, one source client and one scheduler.

    Without a source client the API serves stored data only; scrape triggers
    answer 503. Timers are armed once the source connection is READY.
    """
    settings = settings or get_settings()
    owns_store = store is None
    store = store or MessageStore.from_settings(settings)
    if connection is None:
        initial = ConnectionState.READY if source_client is not None else ConnectionState.DISCONNECTED
        connection = ConnectionMonitor(initial)

    orchestrator = None
    scheduler = None
    if source_client is not None:
        orchestrator = ScrapeOrchestrator.from_settings(source_client, store, settings)
        scheduler = HarvestScheduler.from_settings(orchestrator, settings)
    task_queue = ScrapeTaskQueue()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create tables, start the task queue, arm timers when the source is ready
        - Shutdown: stop timers and queue, close the pool
        """
        store.init_db()
        task_queue.start()
        unsubscribe = None
        if scheduler is not None:
            loop = asyncio.get_running_loop()

            def on_state_change(old: ConnectionState, new: ConnectionState) -> None:
                if new is ConnectionState.READY:
                    loop.call_soon_threadsafe(scheduler.start_all)

            unsubscribe = connection.subscribe(on_state_change)
            if connection.is_ready:
                scheduler.start_all()
        logger.info("Harvester API started")
        yield
        if unsubscribe is not None:
            unsubscribe()
        if scheduler is not None:
            scheduler.stop_all()
        await task_queue.stop()
        if owns_store:
            store.close()
        logger.info("Harvester API stopped")

    app = FastAPI(
        title="Group Harvester API",
        description="Harvested chat-group messages, scrape history and scrape triggers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.connection = connection
    app.state.source_client = source_client
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler
    app.state.task_queue = task_queue

    app.add_middleware(RequestLoggingMiddleware)
    _register_routes(app)
    return app


# =============================================================================
# Dependencies
# =============================================================================

def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def _ensure_source_ready(request: Request, component) -> None:
    connection: ConnectionMonitor = request.app.state.connection
    if component is None or not connection.is_ready:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Source client is not ready ({connection.state.value})",
        )


def require_orchestrator(request: Request) -> ScrapeOrchestrator:
    """Scrape triggers need a connected source; answer 503 otherwise."""
    orchestrator = request.app.state.orchestrator
    _ensure_source_ready(request, orchestrator)
    return orchestrator


def require_source(request: Request) -> SourceClient:
    source_client = request.app.state.source_client
    _ensure_source_ready(request, source_client)
    return source_client


def _require_group(store: MessageStore, group_id: str):
    group = store.get_group(group_id)
    if group is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Group {group_id} not found")
    return group


def _to_epoch(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


StoreDep = Annotated[MessageStore, Depends(get_store)]
OrchestratorDep = Annotated[ScrapeOrchestrator, Depends(require_orchestrator)]
SourceDep = Annotated[SourceClient, Depends(require_source)]
NOT_FOUND = {404: {"model": ErrorResponse, "description": "Group not found"}}
SOURCE_NOT_READY = {503: {"model": ErrorResponse, "description": "Source not ready"}}


def _register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """
        Liveness check - always returns 200 once the app is running.
        """
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(request: Request, response: Response, store: StoreDep) -> HealthResponse:
        """
        Readiness check - returns 200 only if the DB is reachable with its
        schema applied and the source connection is READY, else 503.
        """
        connection: ConnectionMonitor = request.app.state.connection
        if not store.check_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied",
                source_state=connection.state.value,
            )
        if not connection.is_ready:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Source client is not ready",
                source_state=connection.state.value,
            )
        return HealthResponse(status="ready", source_state=connection.state.value)

    # =========================================================================
    # Group Routes
    # =========================================================================

    @app.get("/api/groups", response_model=GroupsListResponse)
    async def list_groups(request: Request, store: StoreDep) -> GroupsListResponse:
        """All stored groups, most recently updated first."""
        monitored = set(request.app.state.settings.monitored_groups)
        groups = [
            GroupResponse.model_validate(g).model_copy(update={"is_monitored": g.id in monitored})
            for g in store.get_all_groups()
        ]
        logger.info(f"GET /api/groups: returned {len(groups)} groups")
        return GroupsListResponse(count=len(groups), groups=groups)

    @app.get("/api/chats", response_model=ChatsListResponse, responses=SOURCE_NOT_READY)
    async def list_chats(request: Request, source: SourceDep) -> ChatsListResponse:
        """
        Every chat the source client can see, for finding group ids to put in
        MONITORED_GROUPS. Monitored chats are flagged.
        """
        monitored = set(request.app.state.settings.monitored_groups)
        try:
            summaries = await source.list_chats()
        except SourceUnavailable as e:
            logger.error(f"Error fetching chats: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Failed to fetch chats: {e}",
            )
        chats = [
            ChatResponse.model_validate(c).model_copy(update={"is_monitored": c.id in monitored})
            for c in summaries
        ]
        logger.info(f"GET /api/chats: returned {len(chats)} chats")
        return ChatsListResponse(count=len(chats), chats=chats)

    @app.get("/api/groups/{group_id}/messages", response_model=GroupMessagesResponse, responses=NOT_FOUND)
    async def list_group_messages(
        group_id: str,
        store: StoreDep,
        limit: Annotated[int, Query(ge=1, le=1000, description="Maximum number of messages to return")] = 100,
        offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    ) -> GroupMessagesResponse:
        """
        Messages of one group, newest first, with the group's total count.
        """
        group = _require_group(store, group_id)
        messages = store.get_messages_by_group(group_id, limit=limit, offset=offset)
        total = store.get_message_count(group_id)
        logger.info(f"GET messages for {group_id}: returned {len(messages)} of {total}")
        return GroupMessagesResponse(
            group_id=group_id,
            group_name=group.name,
            count=len(messages),
            total=total,
            limit=limit,
            offset=offset,
            messages=[MessageResponse.model_validate(m) for m in messages],
        )

    @app.get(
        "/api/groups/{group_id}/messages/range",
        response_model=DateRangeMessagesResponse,
        responses={**NOT_FOUND, 400: {"model": ErrorResponse, "description": "Invalid range"}},
    )
    async def list_group_messages_in_range(
        group_id: str,
        store: StoreDep,
        start_date: Annotated[datetime, Query(description="Range start (ISO-8601, inclusive)")],
        end_date: Annotated[datetime, Query(description="Range end (ISO-8601, inclusive)")],
    ) -> DateRangeMessagesResponse:
        """Messages of one group sent between start_date and end_date, newest first."""
        _require_group(store, group_id)
        start_ts, end_ts = _to_epoch(start_date), _to_epoch(end_date)
        if start_ts > end_ts:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date must not be after end_date")
        messages = store.get_messages_by_date_range(group_id, start_ts, end_ts)
        return DateRangeMessagesResponse(
            group_id=group_id,
            start_date=start_date,
            end_date=end_date,
            count=len(messages),
            messages=[MessageResponse.model_validate(m) for m in messages],
        )

    @app.get("/api/search", response_model=SearchResponse)
    async def search(
        store: StoreDep,
        group_id: Annotated[str, Query(min_length=1, description="Group to search in")],
        q: Annotated[str, Query(min_length=1, description="Case-insensitive search term")],
    ) -> SearchResponse:
        """Search message bodies of one group (at most 100 hits, newest first)."""
        messages = store.search_messages(group_id, q)
        logger.info(f"GET /api/search: {len(messages)} hits in {group_id}")
        return SearchResponse(
            group_id=group_id,
            search_term=q,
            count=len(messages),
            messages=[MessageResponse.model_validate(m) for m in messages],
        )

    @app.get("/api/groups/{group_id}/stats", response_model=GroupStatsResponse, responses=NOT_FOUND)
    async def group_stats(group_id: str, store: StoreDep) -> GroupStatsResponse:
        """Totals, media count, unique senders and first/last message times of one group."""
        group = _require_group(store, group_id)
        stats = store.get_group_statistics(group_id)
        return GroupStatsResponse(
            group_id=group_id,
            group_name=group.name,
            statistics=GroupStatistics(**stats),
        )

    @app.get("/api/groups/{group_id}/scrape-history", response_model=ScrapeHistoryResponse, responses=NOT_FOUND)
    async def scrape_history(
        group_id: str,
        store: StoreDep,
        limit: Annotated[int, Query(ge=1, le=100)] = 10,
    ) -> ScrapeHistoryResponse:
        """Most recent scrape runs of one group, newest first."""
        _require_group(store, group_id)
        history = store.get_scrape_history(group_id, limit=limit)
        return ScrapeHistoryResponse(
            group_id=group_id,
            count=len(history),
            history=[ScrapeRunResponse.model_validate(run) for run in history],
        )

    # =========================================================================
    # Scrape Trigger Routes
    # =========================================================================

    @app.post(
        "/api/scrape/{group_id}",
        response_model=ScrapeTriggerResponse,
        status_code=status.HTTP_202_ACCEPTED,
        responses=SOURCE_NOT_READY,
    )
    async def trigger_scrape(request: Request, group_id: str, orchestrator: OrchestratorDep) -> ScrapeTriggerResponse:
        """Queue a scrape of one group; the result is logged when it finishes."""
        task_queue: ScrapeTaskQueue = request.app.state.task_queue
        task_queue.submit(f"scrape {group_id}", lambda: orchestrator.scrape_group(group_id))
        log_scrape_trigger(request, group_id=group_id, queued=task_queue.pending)
        return ScrapeTriggerResponse(message="Scrape started in background", group_id=group_id)

    @app.post(
        "/api/scrape-all",
        response_model=ScrapeTriggerResponse,
        status_code=status.HTTP_202_ACCEPTED,
        responses=SOURCE_NOT_READY,
    )
    async def trigger_scrape_all(request: Request, orchestrator: OrchestratorDep) -> ScrapeTriggerResponse:
        """Queue a sequential scrape of every monitored group."""
        task_queue: ScrapeTaskQueue = request.app.state.task_queue
        task_queue.submit("scrape all monitored groups", orchestrator.scrape_all_groups)
        log_scrape_trigger(request, queued=task_queue.pending)
        return ScrapeTriggerResponse(
            message="Scrape started for all monitored groups",
            groups=orchestrator.monitored_groups,
        )

    # =========================================================================
    # Scheduler / Metrics Routes
    # =========================================================================

    @app.get(
        "/api/cron/status",
        response_model=SchedulerStatusResponse,
        responses={503: {"model": ErrorResponse, "description": "Scheduler not initialized"}},
    )
    async def cron_status(request: Request) -> SchedulerStatusResponse:
        scheduler: Optional[HarvestScheduler] = request.app.state.scheduler
        if scheduler is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Cron scheduler not initialized yet",
            )
        return SchedulerStatusResponse(**scheduler.get_status())

    @app.get("/metrics")
    async def metrics() -> Response:
        """
        Expose Prometheus-style metrics.
        """
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


setup_logging(get_settings().LOG_LEVEL)
app = create_app()
