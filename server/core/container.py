"""Dependency injection container for the flow engine."""

from typing import Optional

from dependency_injector import containers, providers

from core.cache import CacheService
from core.config import Settings
from core.logging import configure_logging, get_logger
from services.flow.context import ExecutionContextManager
from services.flow.engine import FlowExecutionEngine, NodeExecutor
from services.flow.events import EventSink
from services.flow.models import FlowExecutionOptions
from services.flow.persistence import ExecutionStore
from services.flow.sweeper import ExecutionSweeper

logger = get_logger(__name__)


class Container(containers.DeclarativeContainer):
    """Flow engine dependency injection container.

    One container per process boundary; nothing is created at import time.
    """

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Cache service (uses Redis when enabled, memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    execution_store = providers.Singleton(
        ExecutionStore,
        cache=cache,
        snapshot_ttl=settings.provided.snapshot_ttl
    )

    event_sink = providers.Singleton(
        EventSink,
        history_size=settings.provided.event_history_size
    )

    context_manager = providers.Singleton(
        ExecutionContextManager,
        retention_seconds=settings.provided.context_retention_seconds
    )

    # Node business logic is supplied by the host application
    node_executor = providers.Dependency()

    default_options = providers.Singleton(
        FlowExecutionOptions.from_settings,
        settings=settings
    )

    engine = providers.Singleton(
        FlowExecutionEngine,
        node_executor=node_executor,
        context_manager=context_manager,
        event_sink=event_sink,
        store=execution_store,
        default_options=default_options,
        duration_history_size=settings.provided.duration_history_size,
        recovery_mode=settings.provided.recovery_mode
    )

    sweeper = providers.Singleton(
        ExecutionSweeper,
        context_manager=context_manager,
        store=execution_store,
        retention_seconds=settings.provided.context_retention_seconds,
        sweep_interval=settings.provided.sweep_interval
    )


def create_container(settings: Optional[Settings] = None,
                     node_executor: Optional[NodeExecutor] = None) -> Container:
    """Build a container, optionally overriding settings and the node executor."""
    container = Container()
    if settings is not None:
        container.settings.override(providers.Object(settings))
    if node_executor is not None:
        container.node_executor.override(providers.Object(node_executor))
    return container


async def startup(container: Container) -> None:
    """Explicit initialization: logging, cache, event delivery, recovery scan, sweeper."""
    settings = container.settings()
    configure_logging(settings)

    await container.cache().startup()
    await container.event_sink().start()

    recoverable = await container.sweeper().scan_on_startup()
    if recoverable:
        logger.info("Interrupted executions awaiting recovery",
                   execution_ids=recoverable, recovery_mode=settings.recovery_mode)

    await container.sweeper().start()
    logger.info("Flow engine started",
               redis=container.cache().is_redis_available(),
               execution_timeout=settings.execution_timeout,
               concurrency_policy=settings.concurrency_policy)


async def shutdown(container: Container) -> None:
    """Stop background tasks and close connections."""
    await container.sweeper().stop()
    await container.event_sink().stop()
    await container.cache().shutdown()
    logger.info("Flow engine stopped")
