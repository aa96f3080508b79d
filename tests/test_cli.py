"""Tests for CLI commands.

These tests verify that all CLI commands are registered and run end to end
against a temporary state database.
"""

import importlib
import json

import httpx
import pytest

from tax_form_importer.processing import HttpFormChannel
from tax_form_importer.runner.main import create_cli, main
from tax_form_importer.state_store import QueueStore, StateStore

main_module = importlib.import_module("tax_form_importer.runner.main")


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Config file, state DB and a clean environment."""
    for var in (
        "TAX_IMPORTER_STATE_DB",
        "TAX_IMPORTER_LOCK_TIMEOUT",
        "FORM_SUBMIT_URL",
        "FORM_TOKEN",
        "FORM_PAYOR_ID",
    ):
        monkeypatch.delenv(var, raising=False)

    db_path = tmp_path / "state.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"state_db_path: {db_path}\n"
        "queue:\n"
        "  inter_attempt_delay_seconds: 0\n"
        "form:\n"
        "  submit_url: https://forms.example.test/stock-transactions\n"
    )
    return tmp_path


@pytest.fixture
def generic_file(workspace, sample_generic_csv):
    path = workspace / "export.csv"
    path.write_text(sample_generic_csv)
    return path


def run(workspace, *args) -> int:
    return main(["-c", str(workspace / "config.yaml"), *args])


def queue_of(workspace) -> QueueStore:
    return QueueStore(StateStore(workspace / "state.db"))


@pytest.fixture
def form_responses(monkeypatch):
    """Route the HTTP channel through a mock transport; returns the posted names."""
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content)["Name"])
        return httpx.Response(201)

    def channel(**kwargs):
        return HttpFormChannel(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(main_module, "HttpFormChannel", channel)
    return posted


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        """Verify all expected commands are registered."""
        parser = create_cli()

        subparsers_action = None
        for action in parser._actions:
            if action.dest == "command":
                subparsers_action = action
                break

        assert subparsers_action is not None
        assert set(subparsers_action.choices) == {
            "parse",
            "import",
            "process",
            "status",
            "clear",
            "remove",
            "retry-failed",
            "init-config",
        }

    def test_import_process_flag(self):
        parser = create_cli()

        assert parser.parse_args(["import", "a.csv"]).process is False
        assert parser.parse_args(["import", "a.csv", "--process"]).process is True

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out


class TestParseCommand:
    def test_parse_prints_records(self, workspace, generic_file, capsys):
        assert run(workspace, "parse", str(generic_file)) == 0

        out = capsys.readouterr().out
        assert "AAPL" in out
        assert "Found 2 transaction(s)" in out
        assert queue_of(workspace).get_state().queue == []

    def test_parse_missing_file(self, workspace, capsys):
        assert run(workspace, "parse", str(workspace / "nope.csv")) == 1
        assert "File not found" in capsys.readouterr().out

    def test_parse_no_records(self, workspace):
        path = workspace / "empty.csv"
        path.write_text("Name,Quantity\nAAPL,10\n")

        assert run(workspace, "parse", str(path)) == 1


class TestImportCommand:
    def test_import_queues_records(self, workspace, generic_file):
        assert run(workspace, "import", str(generic_file)) == 0

        store = queue_of(workspace)
        assert [r.description for r in store.get_state().queue] == ["AAPL", "MSFT"]
        history = store.get_import_history()
        assert history[0].source_name == "export.csv"
        assert history[0].new_count == 2

    def test_reimport_adds_nothing(self, workspace, generic_file, capsys):
        run(workspace, "import", str(generic_file))
        capsys.readouterr()

        assert run(workspace, "import", str(generic_file)) == 0

        out = capsys.readouterr().out
        assert "imported before" in out
        assert "Queued: 0" in out
        assert len(queue_of(workspace).get_state().queue) == 2

    def test_import_and_process(self, workspace, generic_file, form_responses):
        assert run(workspace, "import", str(generic_file), "--process") == 0

        assert form_responses == ["AAPL", "MSFT"]
        assert queue_of(workspace).get_state().queue == []


class TestProcessCommand:
    def test_requires_submit_url(self, workspace, capsys):
        (workspace / "config.yaml").write_text(f"state_db_path: {workspace / 'state.db'}\n")

        assert run(workspace, "process") == 1
        assert "form.submit_url" in capsys.readouterr().out

    def test_rejected_record_fails_run(self, workspace, generic_file, monkeypatch):
        def handler(request):
            return httpx.Response(422)

        def channel(**kwargs):
            return HttpFormChannel(transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(main_module, "HttpFormChannel", channel)
        run(workspace, "import", str(generic_file))

        assert run(workspace, "process") == 1
        assert len(queue_of(workspace).get_state().failed_transactions) == 1

    def test_env_override_submit_url(self, workspace, generic_file, form_responses, monkeypatch):
        (workspace / "config.yaml").write_text(
            f"state_db_path: {workspace / 'state.db'}\n"
            "queue:\n"
            "  inter_attempt_delay_seconds: 0\n"
        )
        monkeypatch.setenv("FORM_SUBMIT_URL", "https://other.example.test/submit")
        run(workspace, "import", str(generic_file))

        assert run(workspace, "process") == 0
        assert form_responses == ["AAPL", "MSFT"]


class TestQueueCommands:
    def test_status(self, workspace, generic_file, capsys):
        run(workspace, "import", str(generic_file))
        capsys.readouterr()

        assert run(workspace, "status") == 0

        out = capsys.readouterr().out
        assert "PROCESSING" in out
        assert "export.csv" in out

    def test_clear(self, workspace, generic_file):
        run(workspace, "import", str(generic_file))

        assert run(workspace, "clear") == 0
        assert queue_of(workspace).get_state().queue == []

    def test_remove(self, workspace, generic_file):
        run(workspace, "import", str(generic_file))
        first = queue_of(workspace).get_state().queue[0].id

        assert run(workspace, "remove", first) == 0
        assert run(workspace, "remove", first) == 1
        assert len(queue_of(workspace).get_state().queue) == 1

    def test_retry_failed(self, workspace, generic_file, capsys):
        run(workspace, "import", str(generic_file))
        store = queue_of(workspace)
        store.fail_by_id(store.get_state().queue[0].id)
        capsys.readouterr()

        assert run(workspace, "retry-failed") == 0

        assert "Requeued 1" in capsys.readouterr().out
        state = queue_of(workspace).get_state()
        assert len(state.queue) == 2
        assert state.failed_transactions == []


class TestInitConfig:
    def test_writes_default(self, tmp_path):
        config_path = tmp_path / "config.yaml"

        assert main(["-c", str(config_path), "init-config"]) == 0
        assert "queue:" in config_path.read_text()

    def test_refuses_overwrite(self, workspace):
        assert run(workspace, "init-config") == 1
        assert "submit_url" in (workspace / "config.yaml").read_text()
