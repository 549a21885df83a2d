"""Composition root: every long-lived service is built once here at boot."""
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from afms.core.config import Settings
from afms.core.logging import Logger
from afms.models.enums import EventType
from afms.services.attendance import AttendanceIngestionService
from afms.services.cqrs import CommandBus, CQRSFacade, QueryBus, ReadModelManager
from afms.services.event_bus import EventBus
from afms.services.event_store import EventStore
from afms.services.handlers import register_default_handlers
from afms.services.idempotency import IdempotencyService
from afms.services.observability import ObservabilityService
from afms.services.projections import DashboardStatsProjection, EmployeePerformanceProjection
from afms.services.rules_engine import RulesEngine


@dataclass(frozen=True)
class Container:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    logger: Logger

    observability: ObservabilityService
    event_store: EventStore
    event_bus: EventBus
    idempotency: IdempotencyService
    rules_engine: RulesEngine
    read_model_manager: ReadModelManager
    cqrs: CQRSFacade
    attendance: AttendanceIngestionService


def build_container(*, settings: Settings, engine: AsyncEngine, session_factory: async_sessionmaker) -> Container:
    logger = Logger("afms", {"service": settings.APP_NAME})

    observability = ObservabilityService(
        logger.child(component="observability"),
        session_factory=session_factory,
        memory_limit_mb=settings.MEMORY_LIMIT_MB,
        health_check_timeout=settings.HEALTH_CHECK_TIMEOUT_SECONDS,
        collection_interval_seconds=settings.METRICS_COLLECTION_INTERVAL_SECONDS,
    )
    event_store = EventStore(session_factory, logger.child(component="event_store"))
    event_bus = EventBus(
        logger.child(component="event_bus"),
        max_retries=settings.EVENT_BUS_MAX_RETRIES,
        metrics=observability.metrics,
    )
    idempotency = IdempotencyService(
        session_factory,
        logger.child(component="idempotency"),
        default_ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS,
        dedup_window_minutes=settings.ATTENDANCE_DEDUP_WINDOW_MINUTES,
        fail_open=settings.ATTENDANCE_DEDUP_FAIL_OPEN,
    )
    rules_engine = RulesEngine(
        session_factory,
        event_bus,
        logger.child(component="rules_engine"),
        cache_ttl_seconds=settings.RULES_CACHE_TTL_SECONDS,
        metrics=observability.metrics,
    )

    cqrs_logger = logger.child(component="cqrs")
    read_model_manager = ReadModelManager(session_factory, event_store, cqrs_logger)
    cqrs = CQRSFacade(
        CommandBus(cqrs_logger, observability=observability),
        QueryBus(cqrs_logger, observability=observability),
        read_model_manager,
        cqrs_logger,
    )
    cqrs.register_projection(
        "dashboard_stats",
        DashboardStatsProjection(read_model_manager, work_start_hour=settings.WORK_START_HOUR),
    )
    cqrs.register_projection(
        "employee_performance",
        EmployeePerformanceProjection(read_model_manager, work_start_hour=settings.WORK_START_HOUR),
    )
    register_default_handlers(cqrs, event_store, event_bus)

    # Rules run before projections for the same event
    event_bus.subscribe(EventType.ATTENDANCE_RECORDED, rules_engine)
    event_bus.subscribe(EventType.PAYROLL_CALCULATION_STARTED, rules_engine)
    event_bus.subscribe_to_all(read_model_manager)

    attendance = AttendanceIngestionService(idempotency, cqrs, logger.child(component="attendance"))

    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        logger=logger,
        observability=observability,
        event_store=event_store,
        event_bus=event_bus,
        idempotency=idempotency,
        rules_engine=rules_engine,
        read_model_manager=read_model_manager,
        cqrs=cqrs,
        attendance=attendance,
    )


async def start_container(container: Container) -> None:
    await container.observability.start()
    container.logger.info("AFMS core started", version=container.settings.APP_VERSION)


async def shutdown_container(container: Container) -> None:
    """Tear down in reverse order of construction."""
    await container.event_bus.shutdown()
    await container.observability.shutdown()
    container.logger.info("AFMS core stopped")
