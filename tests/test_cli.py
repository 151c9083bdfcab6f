"""
Tests for the `gguf` command dispatcher.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest

from ggufherd.cli import App, main
from ggufherd.errors import NotRunning
from ggufherd.lifecycle import KillReport, ServerManager
from ggufherd.server_api import RequestFailed, Succeeded
from tests.conftest import FakeProcessTable


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    log = logging.getLogger("ggufherd")
    log.handlers[:] = []
    log.propagate = True


@pytest.fixture
def app(settings, catalog):
    return App(settings, catalog=catalog, manager=MagicMock(), api=MagicMock())


@pytest.fixture
def model_file(settings, catalog):
    path = settings.models_dir / "a" / "b" / "model.Q4_K_M.gguf"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\0" * 10)
    catalog.upsert("qwen-math", "a/b", path.name, path, "10B")
    return path


class TestUsage:

    @pytest.mark.parametrize("argv", [[], ["bogus"], ["--help"]])
    def test_prints_global_usage(self, argv, capsys):
        assert main(argv) == 0
        assert "Usage: gguf <command>" in capsys.readouterr().out

    def test_subcommand_help_exits_zero(self, capsys):
        with pytest.raises(SystemExit) as info:
            main(["ls", "--help"])
        assert info.value.code == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestCatalogCommands:

    def test_ls(self, app, model_file, capsys):
        assert main(["ls"], app=app) == 0
        out = capsys.readouterr().out
        assert "qwen-math" in out
        assert "Never" in out

    def test_alias(self, app, catalog, model_file):
        assert main(["alias", "qwen-math", "qm"], app=app) == 0
        assert catalog.resolve("qm") == str(model_file)

    def test_alias_conflict(self, app, catalog, model_file):
        catalog.upsert("other", "x/y", "y.gguf", "/models/y.gguf", "1.0G")
        assert main(["alias", "qwen-math", "other"], app=app) == 1
        assert catalog.resolve("qwen-math") == str(model_file)

    def test_rm_deletes_file_and_record(self, app, catalog, model_file):
        assert main(["rm", "qwen-math"], app=app) == 0
        assert not model_file.exists()
        assert catalog.get("qwen-math") is None

    def test_rm_unknown_prints_listing_hint(self, app, model_file, capsys):
        assert main(["rm", "ghost"], app=app) == 1
        err = capsys.readouterr().err
        assert "ghost" in err
        assert "SLUG" in err

    def test_import(self, app, catalog, settings):
        path = settings.models_dir / "x" / "y" / "z.gguf"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"\0")
        assert main(["import"], app=app) == 0
        assert catalog.resolve("z-gguf") == str(path.resolve())

    def test_reset_reimports(self, app, catalog, model_file):
        catalog.upsert("stale", "s/s", "s.gguf", "/gone/s.gguf", "1B")
        assert main(["reset"], app=app) == 0
        assert catalog.get("stale") is None
        assert catalog.get("model-q4-k-m-gguf") is not None

    def test_pull_quant_override(self, app):
        with patch("ggufherd.cli.pull", return_value=None) as pull:
            assert main(["pull", "a/b", "--quant", "Q8_0"], app=app) == 0
        assert pull.call_args.args[1].quant == "Q8_0"


class TestModelOperations:

    def test_run_without_text_only_starts(self, app):
        assert main(["run", "qwen-math"], app=app) == 0
        app.manager.ensure_running.assert_called_once_with("qwen-math")
        app.api.completion.assert_not_called()

    def test_run_completes_text(self, app, capsys):
        app.api.completion.return_value = Succeeded(200, "{}", {"content": "\n4\n\n"})
        assert main(["run", "qwen-math", "2+2", "="], app=app) == 0
        assert app.api.completion.call_args.args[0] == "2+2 ="
        assert capsys.readouterr().out.rstrip().endswith("4")

    def test_run_request_failure(self, app, capsys):
        app.api.completion.return_value = RequestFailed(500, "server exploded")
        assert main(["run", "qwen-math", "hi"], app=app) == 1
        captured = capsys.readouterr()
        assert "server exploded" in captured.out
        assert "500" in captured.err

    def test_run_unknown_slug(self, settings, catalog, clock, capsys):
        manager = ServerManager(catalog, settings, processes=FakeProcessTable(),
                                probe=lambda: True, spawn=MagicMock(), sleep=clock.sleep, clock=clock)
        app = App(settings, catalog=catalog, manager=manager, api=MagicMock())
        assert main(["run", "ghost"], app=app) == 1
        assert "not found" in capsys.readouterr().err

    def test_chat_loop(self, app, capsys):
        app.api.chat.return_value = Succeeded(
            200, "{}", {"choices": [{"message": {"content": "hello there"}}]})
        with patch("builtins.input", side_effect=["hi", "exit"]):
            assert main(["chat", "qwen-math"], app=app) == 0
        assert "Assistant: hello there" in capsys.readouterr().out
        messages = app.api.chat.call_args.args[0]
        assert messages == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello there"},
        ]

    def test_chat_ends_on_eof(self, app):
        with patch("builtins.input", side_effect=EOFError):
            assert main(["chat", "qwen-math"], app=app) == 0
        app.api.chat.assert_not_called()

    def test_tokenize(self, app, capsys):
        app.api.tokenize.return_value = Succeeded(200, "{}", {"tokens": [1, 2]})
        assert main(["tokenize", "qwen-math", "hi"], app=app) == 0
        assert '"tokens"' in capsys.readouterr().out

    def test_detokenize_rejects_non_array(self, app):
        assert main(["detokenize", "qwen-math", "not json"], app=app) == 1
        assert main(["detokenize", "qwen-math", '{"a": 1}'], app=app) == 1
        app.api.detokenize.assert_not_called()

    def test_detokenize(self, app):
        app.api.detokenize.return_value = Succeeded(200, "{}", {"content": "hi"})
        assert main(["detokenize", "qwen-math", "[1, 2]"], app=app) == 0
        app.api.detokenize.assert_called_once_with([1, 2])


class TestServerCommands:

    def test_health_failure(self, app):
        app.api.health.return_value = RequestFailed(None, "connection refused")
        assert main(["health"], app=app) == 1

    def test_health_ok(self, app, capsys):
        app.api.health.return_value = Succeeded(200, "{}", {"status": "ok"})
        assert main(["health"], app=app) == 0
        assert '"status": "ok"' in capsys.readouterr().out

    def test_kill_all(self, app):
        assert main(["kill", "all"], app=app) == 0
        app.manager.kill_all.assert_called_once_with()

    def test_kill_not_running(self, app):
        app.manager.kill.side_effect = NotRunning("No running server found for model 'x'.")
        assert main(["kill", "x"], app=app) == 1

    def test_kill_partial_failure(self, app):
        app.manager.kill.return_value = [KillReport(1, ok=True), KillReport(2, ok=False, error="EPERM")]
        assert main(["kill", "x"], app=app) == 1

    def test_ps(self, app, capsys):
        proc = MagicMock(pid=123, model_file="model.Q4_K_M.gguf")
        app.manager.running.return_value = [(proc, "qwen-math")]
        assert main(["ps"], app=app) == 0
        out = capsys.readouterr().out
        assert "123" in out
        assert "model.Q4_K_M" in out


class TestArgumentErrors:

    @pytest.mark.parametrize("argv", [["kill"], ["alias", "a"], ["run"], ["recent", "--limit", "x"]])
    def test_bad_arguments_exit_one(self, app, argv, capsys):
        assert main(argv, app=app) == 1
        err = capsys.readouterr().err
        assert "[ERROR]" in err
        assert "usage" in err.lower()

    def test_missing_server_binary(self, settings, catalog, clock, capsys):
        catalog.upsert("q", "a/q", "q.gguf", "/models/q.gguf", "1.0G")
        settings.server_bin = "/nonexistent/llama-server"
        manager = ServerManager(catalog, settings, processes=FakeProcessTable(),
                                probe=lambda: False, sleep=clock.sleep, clock=clock)
        app = App(settings, catalog=catalog, manager=manager, api=MagicMock())

        assert main(["run", "q"], app=app) == 1
        assert "/nonexistent/llama-server" in capsys.readouterr().err
        assert not settings.state_file.exists()
