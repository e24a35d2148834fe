import re
from pathlib import Path

import pytest
from typer.testing import CliRunner

import tollgate.persistence as persistence
from tollgate.cli import app
from tollgate.persistence import InMemoryWorkflowRepository

FIXTURES = Path(__file__).parent.parent / "fixtures"

runner = CliRunner()


@pytest.fixture(autouse=True)
def repo(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TOLLGATE_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("TOLLGATE_EVENT_BUS", raising=False)
    repository = InMemoryWorkflowRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repository)
    return repository


def _invoke(*args):
    return runner.invoke(app, list(args))


def _load_approval():
    result = _invoke("definition", "load", str(FIXTURES / "approval.yaml"))
    assert result.exit_code == 0, result.stdout
    return result


def _start(*extra):
    result = _invoke("instance", "start", "approval", "doc-1", *extra)
    assert result.exit_code == 0, result.stdout
    match = re.search(r"Started instance (\S+) in state draft", result.stdout)
    assert match, result.stdout
    return match.group(1)


def test_definition_load_and_list():
    result = _load_approval()
    assert "Loaded approval@1 - Document approval" in result.stdout

    result = _invoke("definition", "list")
    assert result.exit_code == 0
    assert "approval@1\tDocument approval" in result.stdout


def test_definition_list_empty():
    result = _invoke("definition", "list")
    assert result.exit_code == 0
    assert "No workflow definitions found" in result.stdout


def test_definition_load_rejects_invalid_file(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("id: broken\nname: Broken\nstartState: nowhere\nstates:\n  draft:\n")

    result = _invoke("definition", "load", str(path))
    assert result.exit_code == 1
    assert "DefinitionInvalid:" in result.stdout

    missing = _invoke("definition", "load", str(tmp_path / "missing.yaml"))
    assert missing.exit_code == 1
    assert "Specified path does not exist" in missing.stdout


def test_instance_lifecycle_commands():
    _load_approval()
    instance_id = _start("--data", '{"title": "Q3 report"}')

    result = _invoke("instance", "transition", instance_id, "submit")
    assert result.exit_code == 0, result.stdout
    assert "now in state review" in result.stdout

    result = _invoke("instance", "transition", instance_id, "approve", "--data", "{}")
    assert result.exit_code == 1
    assert "ConditionNotMet:" in result.stdout

    result = _invoke(
        "instance", "transition", instance_id, "approve", "--data", '{"approved": true}'
    )
    assert result.exit_code == 0, result.stdout
    assert "Status: completed" in result.stdout

    result = _invoke("instance", "show", instance_id)
    assert result.exit_code == 0
    assert f"Instance {instance_id}: completed" in result.stdout
    assert "- review via submit" in result.stdout
    assert "- approved via approve" in result.stdout
    assert '"title": "Q3 report"' in result.stdout

    result = _invoke("instance", "cancel", instance_id)
    assert result.exit_code == 1
    assert "AlreadyTerminal:" in result.stdout


def test_instance_cancel_and_complete():
    _load_approval()
    first = _start()
    second = _start()

    result = _invoke("instance", "cancel", first, "--reason", "duplicate")
    assert result.exit_code == 0
    assert "cancelled in state draft" in result.stdout

    result = _invoke("instance", "complete", second, "--result", '{"outcome": "manual"}')
    assert result.exit_code == 0
    result = _invoke("instance", "show", second)
    assert 'Result: {"outcome": "manual"}' in result.stdout


def test_instance_list_filters():
    _load_approval()
    first = _start()
    second = _start()
    _invoke("instance", "cancel", first)

    result = _invoke("instance", "list", "doc-1")
    assert result.exit_code == 0
    lines = result.stdout.strip().splitlines()
    assert [line.split("\t")[0] for line in lines] == [second, first]

    result = _invoke("instance", "list", "doc-1", "--status", "cancelled")
    assert result.stdout.strip().split("\t")[0] == first

    result = _invoke("instance", "list", "nobody")
    assert "No instances found" in result.stdout


def test_errors_exit_with_kind():
    result = _invoke("instance", "show", "missing-id")
    assert result.exit_code == 1
    assert "InstanceNotFound: Instance not found: missing-id" in result.stdout

    result = _invoke("instance", "start", "unknown", "e-1")
    assert result.exit_code == 1
    assert "DefinitionNotFound:" in result.stdout


def test_invalid_json_is_a_usage_error():
    _load_approval()
    result = _invoke("instance", "start", "approval", "doc-1", "--data", "{not json")
    assert result.exit_code == 2

    result = _invoke("instance", "start", "approval", "doc-1", "--data", "[1, 2]")
    assert result.exit_code == 2


def test_engine_listen_runs_for_lifespan():
    result = _invoke("engine", "listen", "--lifespan", "0.05")
    assert result.exit_code == 0, result.stdout
    assert "Handled 0 commands" in result.stdout
