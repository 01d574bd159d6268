"""Background eviction of finished execution contexts.

Runs as background task to:
- Evict terminal contexts once the retention grace period has passed
- Report interrupted executions on startup so the host can recover them
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

from core.logging import get_logger
from .context import ExecutionContextManager
from .persistence import ExecutionStore

logger = get_logger(__name__)


class ExecutionSweeper:
    """Keeps the context registry bounded.

    Terminal contexts stay readable for ``retention_seconds`` so late UI
    subscribers can fetch final state, then they are cleared.
    """

    def __init__(self, context_manager: ExecutionContextManager,
                 store: Optional[ExecutionStore] = None,
                 retention_seconds: float = 60.0,
                 sweep_interval: float = 30.0):
        """Initialize sweeper.

        Args:
            context_manager: Registry to evict from
            store: Snapshot store scanned on startup
            retention_seconds: Grace period after an execution ends
            sweep_interval: Seconds between sweep runs
        """
        self.context_manager = context_manager
        self.store = store
        self.retention_seconds = retention_seconds
        self.sweep_interval = sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

        # Set by the host application, which knows how to load workflow graphs
        self._on_recovery: Optional[Callable[[str], Awaitable[None]]] = None

    def set_recovery_callback(self, callback: Callable[[str], Awaitable[None]]) -> None:
        """Set callback invoked for each interrupted execution found on startup.

        Args:
            callback: Async function that takes execution_id
        """
        self._on_recovery = callback

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweeper background task."""
        if self._running:
            logger.warning("Execution sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Execution sweeper started",
                   retention_seconds=self.retention_seconds,
                   sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Execution sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

            await asyncio.sleep(self.sweep_interval)

    def sweep_once(self) -> List[str]:
        """Evict terminal contexts older than the retention period."""
        evicted = self.context_manager.clear_inactive_executions(max_age=self.retention_seconds)
        if evicted:
            logger.debug("Swept finished executions", count=len(evicted))
        return evicted

    async def scan_on_startup(self) -> List[str]:
        """Find executions a previous process left running or paused.

        Returns:
            List of execution IDs that need recovery
        """
        if self.store is None:
            return []

        needs_recovery = await self.store.list_recoverable()
        logger.info("Startup scan for incomplete executions",
                   recoverable_count=len(needs_recovery))

        if self._on_recovery:
            for execution_id in needs_recovery:
                try:
                    await self._on_recovery(execution_id)
                except Exception as e:
                    logger.error("Recovery callback failed",
                               execution_id=execution_id, error=str(e))

        return needs_recovery
