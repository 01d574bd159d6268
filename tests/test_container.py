"""Tests for dependency injection wiring and process lifecycle."""

from core.config import Settings
from core.container import create_container, shutdown, startup
from services.flow.engine import FlowExecutionEngine
from services.flow.models import ConcurrencyPolicy, FlowStatus

from conftest import build_graph


class TestContainer:
    """Tests for Container providers."""

    def test_engine_wiring(self, test_settings, executor):
        container = create_container(settings=test_settings, node_executor=executor)

        engine = container.engine()

        assert isinstance(engine, FlowExecutionEngine)
        assert engine is container.engine()
        assert engine.node_executor is executor
        assert engine.contexts is container.context_manager()
        assert engine.store is container.execution_store()
        assert engine.event_sink is container.event_sink()
        assert engine.default_options.timeout == test_settings.execution_timeout
        assert container.sweeper().context_manager is engine.contexts

    def test_settings_flow_into_options(self, executor):
        settings = Settings(_env_file=None, concurrency_policy="reject", event_history_size=7)
        container = create_container(settings=settings, node_executor=executor)

        assert container.engine().default_options.concurrency_policy == ConcurrencyPolicy.REJECT
        assert container.event_sink()._history.maxlen == 7

    def test_containers_are_independent(self, test_settings, executor):
        first = create_container(settings=test_settings, node_executor=executor)
        second = create_container(settings=test_settings, node_executor=executor)

        assert first.context_manager() is not second.context_manager()


class TestLifecycle:
    """Tests for startup and shutdown."""

    async def test_startup_run_shutdown(self, test_settings, executor):
        container = create_container(settings=test_settings, node_executor=executor)

        await startup(container)
        assert container.sweeper().is_running

        result = await container.engine().execute_from_trigger(
            build_graph("T->A", triggers=["T"]), "T", {"ok": True})
        assert result.status == FlowStatus.COMPLETED

        await shutdown(container)
        assert not container.sweeper().is_running
