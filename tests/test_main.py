"""CLI tests: exit codes, one-shot prompts and the interactive loop."""

from __future__ import annotations

import asyncio

import pytest
from typer.testing import CliRunner

from factories import make_session
from sse_helpers import ScriptedOpener, text_reply
from tern import main
from tern.errors import TransportError

runner = CliRunner()


class FakeTransport:
    """Stands in for AnthropicTransport; streams come from the class-level opener."""

    opener = ScriptedOpener()
    fail_start: Exception | None = None

    def __init__(self, settings) -> None:
        self.settings = settings

    async def start(self) -> None:
        if self.fail_start is not None:
            raise self.fail_start

    def open_stream(self, payload):
        return self.opener(payload)

    async def close(self) -> None:
        pass


@pytest.fixture
def cli_env(monkeypatch, tmp_path, workdir):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test-key")
    monkeypatch.setenv("TERN_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("TERN_WORKING_DIRECTORY", str(workdir))
    monkeypatch.setenv("TERN_RETRY_BACKOFF_BASE", "0")
    monkeypatch.setattr(FakeTransport, "opener", ScriptedOpener())
    monkeypatch.setattr(FakeTransport, "fail_start", None)
    monkeypatch.setattr(main, "AnthropicTransport", FakeTransport)
    return tmp_path


class TestOneShot:
    def test_prompt_succeeds(self, cli_env, monkeypatch):
        monkeypatch.setattr(FakeTransport, "opener", ScriptedOpener(text_reply("Hello", " there")))
        result = runner.invoke(main.app, ["hi"])
        assert result.exit_code == main.EXIT_OK
        assert "Hello there" in result.output
        assert list((cli_env / "config" / "conversations").glob("*.json"))

    def test_piped_stdin_is_the_prompt(self, cli_env, monkeypatch):
        opener = ScriptedOpener(text_reply("ok"))
        monkeypatch.setattr(FakeTransport, "opener", opener)
        result = runner.invoke(main.app, [], input="summarize this\n")
        assert result.exit_code == main.EXIT_OK
        assert opener.payloads[0]["messages"][0]["content"][0]["text"] == "summarize this"

    def test_model_option(self, cli_env, monkeypatch):
        opener = ScriptedOpener(text_reply("ok"))
        monkeypatch.setattr(FakeTransport, "opener", opener)
        result = runner.invoke(main.app, ["hi", "--model", "claude-haiku-4-5"])
        assert result.exit_code == main.EXIT_OK
        assert opener.payloads[0]["model"] == "claude-haiku-4-5"

    def test_upstream_failure_exits_1(self, cli_env, monkeypatch):
        failure = TransportError("Bad request", retryable=False, status_code=400)
        monkeypatch.setattr(FakeTransport, "opener", ScriptedOpener(failure))
        result = runner.invoke(main.app, ["hi"])
        assert result.exit_code == main.EXIT_ERROR
        assert "[transport_error] Bad request" in result.output

    def test_invalid_configuration_exits_1(self, cli_env, monkeypatch):
        monkeypatch.setenv("TERN_MAX_ATTEMPTS", "0")
        result = runner.invoke(main.app, ["hi"])
        assert result.exit_code == main.EXIT_ERROR
        assert "[config_error]" in result.output

    def test_missing_workdir_exits_1(self, cli_env, tmp_path):
        result = runner.invoke(main.app, ["hi", "--workdir", str(tmp_path / "missing")])
        assert result.exit_code == main.EXIT_ERROR
        assert "Working directory does not exist" in result.output

    def test_unexpected_exception_exits_2(self, cli_env, monkeypatch):
        monkeypatch.setattr(FakeTransport, "fail_start", RuntimeError("kaboom"))
        result = runner.invoke(main.app, ["hi"])
        assert result.exit_code == main.EXIT_INTERNAL
        assert "Internal error" in result.output


class TestSettings:
    def test_flags_become_overrides(self, cli_env, workdir):
        settings = main.build_settings("claude-opus-4-5", workdir, True, True, True)
        assert settings.model == "claude-opus-4-5"
        assert settings.debug
        assert not settings.interactive
        assert "execute" in settings.capabilities


class TestRepl:
    def test_commands_and_prompts(self, settings, monkeypatch, capsys):
        session = make_session(settings, ScriptedOpener(text_reply("Hi back")))
        lines = iter(["/model", "", "hello", "/bogus", "/quit", "never read"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))
        renderer = main.TerminalRenderer()
        renderer.attach(session.events)

        with asyncio.Runner() as loop:
            code = main.repl(loop, session, renderer)

        out = capsys.readouterr()
        assert code == main.EXIT_OK
        assert "Model: claude-sonnet-4-5" in out.out
        assert "Hi back" in out.out
        assert "unknown command /bogus" in out.err
        assert next(lines) == "never read"

    def test_eof_exits_cleanly(self, settings, monkeypatch):
        session = make_session(settings)

        def eof(prompt=""):
            raise EOFError

        monkeypatch.setattr("builtins.input", eof)
        with asyncio.Runner() as loop:
            assert main.repl(loop, session, main.TerminalRenderer()) == main.EXIT_OK
