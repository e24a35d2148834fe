"""Engine persisted in SQLite, including restarts."""

import asyncio
from pathlib import Path

import pytest

from tollgate import CallbackRegistry, WorkflowEngine
from tollgate.config import EngineConfig
from tollgate.errors import ActionFailed
from tollgate.models import InstanceStatus
from tollgate.persistence import RetryingRepository, SQLiteWorkflowRepository
from tollgate.transports.inmemory import InMemoryEventBus

FIXTURES = Path(__file__).parent.parent / "fixtures"


@pytest.mark.asyncio
async def test_instances_survive_engine_restart(tmp_path):
    db_path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(db_path)
    engine = WorkflowEngine(repo, bus=InMemoryEventBus())
    await engine.registry.register_file(FIXTURES / "approval.yaml")

    instance = await engine.start_instance("approval", "doc-1", {"title": "Plan"})
    await engine.execute_transition(instance.id, "submit", {"reviewer": "kim"})
    repo.close()

    repo = SQLiteWorkflowRepository(db_path)
    restarted = WorkflowEngine(repo, bus=InMemoryEventBus())
    report = await restarted.initialize()
    assert report.loaded == ["approval@1"]

    reloaded = await restarted.get_instance(instance.id)
    assert reloaded.current_state == "review"
    assert reloaded.data == {"title": "Plan", "reviewer": "kim"}
    assert [h.state for h in reloaded.history] == ["draft", "review"]

    done = await restarted.execute_transition(instance.id, "approve", {"approved": True})
    assert done.status is InstanceStatus.COMPLETED
    assert await repo.load_instance(instance.id) == done
    repo.close()


@pytest.mark.asyncio
async def test_definitions_path_is_loaded_on_initialize(tmp_path):
    definitions = tmp_path / "workflows"
    definitions.mkdir()
    (definitions / "approval.yaml").write_text((FIXTURES / "approval.yaml").read_text())
    (definitions / "broken.yaml").write_text("id: broken\nname: Broken\nstartState: x\nstates: {}\n")
    (definitions / "notes.txt").write_text("ignored")

    repo = RetryingRepository(SQLiteWorkflowRepository(tmp_path / "wf.db"))
    engine = WorkflowEngine(repo, config=EngineConfig(definitions_path=str(definitions)))
    report = await engine.initialize()

    assert report.loaded == ["approval@1"]
    assert list(report.rejected) == [str(definitions / "broken.yaml")]
    assert "approval" in engine.registry
    assert [d["id"] for d in await repo.load_active_definitions()] == ["approval"]
    repo.inner.close()


@pytest.mark.asyncio
async def test_concurrent_transitions_with_sqlite(tmp_path):
    callbacks = CallbackRegistry()

    @callbacks.register("yield")
    async def yield_control(payload):
        await asyncio.sleep(0)

    repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
    engine = WorkflowEngine(repo, callbacks=callbacks)
    await engine.registry.register(
        {
            "id": "tally",
            "name": "Tally",
            "startState": "open",
            "states": {"open": {}},
            "transitions": [
                {
                    "name": "add",
                    "from": "open",
                    "to": "open",
                    "actions": [{"type": "callback", "callback": "yield"}],
                }
            ],
        }
    )
    instance = await engine.start_instance("tally", "t-1")

    await asyncio.gather(
        *(engine.execute_transition(instance.id, "add", {f"k{i}": i}) for i in range(5))
    )

    stored = await repo.load_instance(instance.id)
    assert stored.version == 6
    assert len(stored.history) == 6
    assert stored.data == {f"k{i}": i for i in range(5)}
    repo.close()


@pytest.mark.asyncio
async def test_failed_start_leaves_no_row(tmp_path):
    callbacks = CallbackRegistry()

    @callbacks.register("deny")
    def deny(payload):
        raise PermissionError("denied")

    repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
    engine = WorkflowEngine(repo, callbacks=callbacks)
    await engine.registry.register(
        {
            "id": "guarded",
            "name": "Guarded",
            "startState": "open",
            "states": {"open": {"entryActions": [{"type": "callback", "callback": "deny"}]}},
        }
    )

    with pytest.raises(ActionFailed):
        await engine.start_instance("guarded", "g-1")

    assert await engine.list_instances_for_entity("g-1") == []
    repo.close()
