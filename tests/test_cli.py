"""Tests for the command line front end (managers mocked where it would touch the network)."""

from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from directlink import cli
from directlink.config import TunnelConfig


def _completed(value):
    future = Future()
    future.set_result(value)
    return future


class TestArguments:

    def test_code_is_normalized(self):
        args = cli.build_arg_parser().parse_args(["host", "--code", "P2P://Happy-Llama-42"])
        assert args.code == "happy-llama-42"

    @pytest.mark.parametrize("code", ["not a code", "happy-llama", "p2p://"])
    def test_malformed_code_rejected(self, code, capsys):
        with pytest.raises(SystemExit) as exc:
            cli.build_arg_parser().parse_args(["host", "--code", code])
        assert exc.value.code == 2
        assert "invalid share code" in capsys.readouterr().err


class TestMain:

    def test_saved_config_does_not_break_startup(self, tmp_path):
        path = tmp_path / "config.json"
        TunnelConfig(path=path, share_code="calm-owl-17").save()

        # Rejected before any lookup; only config loading and logging run
        assert cli.main(["--config", str(path), "--debug", "join", "http://nope"]) == 1
        assert TunnelConfig.load(path).share_code == "calm-owl-17"


class TestHostPrompt:

    @pytest.fixture
    def manager(self, monkeypatch):
        manager = MagicMock()
        manager.start.return_value = _completed(True)
        manager.full_uri = "p2p://happy-llama-42"
        monkeypatch.setattr(cli, "HostManager", MagicMock(return_value=manager))
        return manager

    def _run(self, monkeypatch, commands):
        answers = iter(commands)
        monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))
        args = cli.build_arg_parser().parse_args(["host"])
        return cli.run_host(TunnelConfig(), args)

    def test_stop_keeps_prompt_open(self, manager, monkeypatch):
        assert self._run(monkeypatch, ["stop", "start", "quit"]) == 0
        manager.stop.assert_called_once()
        assert manager.start.call_count == 2
        manager.close.assert_called_once()

    def test_requested_code_saved_before_start(self, manager, monkeypatch):
        config = TunnelConfig()
        answers = iter(["quit"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))
        args = cli.build_arg_parser().parse_args(["host", "--code", "wild-fox-88"])

        assert cli.run_host(config, args) == 0
        assert config.share_code == "wild-fox-88"

    def test_failed_start_exits_nonzero(self, manager, monkeypatch):
        manager.start.return_value = _completed(False)
        assert self._run(monkeypatch, []) == 1
        manager.close.assert_called_once()
