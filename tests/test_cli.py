"""Unit tests for the genqueue command line client."""

import json

import pytest

from client import cli
from shared.errors import InvalidState


class FakeConnection:
    instances = []

    def __init__(self, url, call_timeout_s=10.0):
        self.url = url
        self.call_timeout_s = call_timeout_s
        self.calls = []
        self.closed = False
        self.error = None
        FakeConnection.instances.append(self)

    async def call(self, type_, data=None, timeout=None):
        self.calls.append((type_, data))
        if self.error:
            raise self.error
        return {"type": type_, "echo": data}

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_connection(monkeypatch):
    FakeConnection.instances = []
    monkeypatch.setattr(cli, "ConnectionManager", FakeConnection)
    return FakeConnection


class TestParseArgs:
    def test_generate_config_from_flags(self):
        args = cli.parse_args(["generate", "--name", "A", "--prompt", "a cat", "--steps", "5", "--batch-size", "2"])
        assert cli._generation_config(args) == {"name": "A", "prompt": "a cat", "steps": 5, "batch_size": 2}

    def test_params_file_merged_under_flags(self, tmp_path):
        params = tmp_path / "params.json"
        params.write_text(json.dumps({"prompt": "from file", "cfg_scale": 7}))
        args = cli.parse_args(["generate", "--name", "A", "--params", str(params), "--prompt", "from flag"])
        assert cli._generation_config(args) == {"prompt": "from flag", "cfg_scale": 7, "name": "A"}

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args([])


class TestRun:
    @pytest.mark.asyncio
    async def test_upscale_sends_camel_case_payload(self, fake_connection, capsys):
        args = cli.parse_args(["--url", "ws://h/ws", "upscale", "A/00000.png", "--scale-factor", "2"])

        assert await cli._run(args) == 0

        conn = fake_connection.instances[0]
        assert conn.url == "ws://h/ws"
        assert conn.calls == [("queueUpscale", {"imagePath": "A/00000.png", "config": {"upscale_scale_factor": 2.0}})]
        assert conn.closed
        assert json.loads(capsys.readouterr().out)["type"] == "queueUpscale"

    @pytest.mark.asyncio
    async def test_cancel(self, fake_connection):
        assert await cli._run(cli.parse_args(["cancel", "job-1"])) == 0
        assert fake_connection.instances[0].calls == [("cancelJob", {"jobId": "job-1"})]

    @pytest.mark.asyncio
    async def test_errors_reported_with_code(self, fake_connection, monkeypatch, capsys):
        original_init = FakeConnection.__init__

        def failing_init(self, url, call_timeout_s=10.0):
            original_init(self, url, call_timeout_s)
            self.error = InvalidState("Job job-1 is processing and cannot be cancelled")

        monkeypatch.setattr(FakeConnection, "__init__", failing_init)

        assert await cli._run(cli.parse_args(["cancel", "job-1"])) == 1
        assert "error [InvalidState]" in capsys.readouterr().err
        assert fake_connection.instances[0].closed
