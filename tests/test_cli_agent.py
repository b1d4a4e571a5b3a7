from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import allure
import pytest

from piecework.agents import AgentRunError, CliAgentProvider, MockAgentProvider, ProviderRouter
from piecework.agents.cli_agent import DEFAULT_COMMAND_TEMPLATES, build_run_args, parse_cli_output
from piecework.engine.models import AgentOptions, AgentStatus, PermissionMode, ProviderKind

pytestmark = [
    allure.epic("Agent Providers"),
    allure.feature("CLI Agent Execution"),
]

ECHO_TEMPLATE = f"{sys.executable} -m piecework.agents.echo_agent --prompt-file {{prompt_file}}"


def _options(cwd: Path | str = ".", **fields) -> AgentOptions:
    params = {
        "cwd": str(cwd),
        "provider": ProviderKind.CLAUDE,
        "model": None,
        "movement_provider": ProviderKind.CLAUDE,
        "movement_model": None,
        "permission_mode": PermissionMode.EDIT,
    }
    params.update(fields)
    return AgentOptions(**params)


def test_default_claude_template_renders_model_permission_and_resume() -> None:
    argv = build_run_args(
        command_template=DEFAULT_COMMAND_TEMPLATES[ProviderKind.CLAUDE],
        kind=ProviderKind.CLAUDE,
        prompt="hello world",
        prompt_file=Path("prompt.md"),
        options=_options(movement_model="sonnet", session_id="s-1"),
    )

    assert argv == [
        "claude",
        "-p",
        "--output-format",
        "json",
        "--model",
        "sonnet",
        "--permission-mode",
        "acceptEdits",
        "--resume",
        "s-1",
        "--",
        "hello world",
    ]


def test_codex_template_maps_permission_to_sandbox() -> None:
    argv = build_run_args(
        command_template=DEFAULT_COMMAND_TEMPLATES[ProviderKind.CODEX],
        kind=ProviderKind.CODEX,
        prompt="hi",
        prompt_file=Path("prompt.md"),
        options=_options(permission_mode=PermissionMode.READONLY, session_id="ignored"),
    )

    assert argv == ["codex", "exec", "--sandbox", "read-only", "hi"]


def test_invalid_templates_are_rejected() -> None:
    for template, message in (
        ("   ", "empty"),
        ("claude -p", "must include"),
        ("claude {unknown} {prompt}", "Unsupported command template placeholder"),
    ):
        with pytest.raises(AgentRunError, match=message) as error:
            build_run_args(
                command_template=template,
                kind=ProviderKind.CLAUDE,
                prompt="x",
                prompt_file=Path("prompt.md"),
                options=_options(),
            )
        assert error.value.transient is False


def test_parse_cli_output_variants() -> None:
    payload = json.dumps(
        {
            "result": "Done [PLAN:1]",
            "session_id": "abc",
            "structured_output": {"step": 1},
        },
    )

    parsed = parse_cli_output(persona="p", exit_code=0, stdout=payload, stderr="", session_id=None)
    plain = parse_cli_output(
        persona="p",
        exit_code=0,
        stdout="working...\nsession_id: plain-1\n",
        stderr="",
        session_id="old",
    )
    failed = parse_cli_output(
        persona="p",
        exit_code=1,
        stdout="",
        stderr="fatal: nope\n",
        session_id="keep",
    )
    flagged = parse_cli_output(
        persona="p",
        exit_code=0,
        stdout=json.dumps({"result": "rate limited", "is_error": True}),
        stderr="",
        session_id=None,
    )

    assert (parsed.status, parsed.content, parsed.session_id) == (
        AgentStatus.DONE,
        "Done [PLAN:1]",
        "abc",
    )
    assert parsed.structured_output == {"step": 1}
    assert plain.session_id == "plain-1"
    assert plain.content.startswith("working...")
    assert (failed.status, failed.error, failed.session_id) == (
        AgentStatus.ERROR,
        "fatal: nope",
        "keep",
    )
    assert (flagged.status, flagged.error) == (AgentStatus.ERROR, "rate limited")


def test_echo_agent_subprocess_round_trip(tmp_path: Path) -> None:
    streamed: list[str] = []
    provider = CliAgentProvider(ProviderKind.CLAUDE, command_template=ECHO_TEMPLATE)

    response = asyncio.run(
        provider.call(
            "coder",
            "## Status\n- [IMPLEMENT:1] done\n",
            _options(tmp_path, on_stream=streamed.append),
        ),
    )

    assert response.status is AgentStatus.DONE
    assert response.content == "Echo agent done. [IMPLEMENT:1]"
    assert response.session_id is not None
    assert response.session_id.startswith("echo-")
    assert streamed
    assert json.loads(streamed[0])["persona"] == "coder"


def test_echo_agent_failure_is_reported_as_error(tmp_path: Path) -> None:
    provider = CliAgentProvider(ProviderKind.CLAUDE, command_template=f"{ECHO_TEMPLATE} --fail")

    response = asyncio.run(provider.call("coder", "prompt", _options(tmp_path)))

    assert response.status is AgentStatus.ERROR
    assert response.error == "echo agent asked to fail"


def test_missing_binary_raises_non_transient_error(tmp_path: Path) -> None:
    provider = CliAgentProvider(
        ProviderKind.CODEX,
        command_template="piecework-missing-agent-binary {prompt}",
    )

    with pytest.raises(AgentRunError, match="command not found") as error:
        asyncio.run(provider.call("coder", "prompt", _options(tmp_path)))

    assert error.value.transient is False


def test_mock_provider_cannot_be_a_cli_provider() -> None:
    with pytest.raises(ValueError, match="mock provider"):
        CliAgentProvider(ProviderKind.MOCK)


def test_router_dispatches_on_movement_provider() -> None:
    mock = MockAgentProvider()
    router = ProviderRouter({ProviderKind.MOCK: mock})

    response = asyncio.run(
        router.call(
            "planner",
            "[PLAN:1] ready",
            _options(provider=ProviderKind.CLAUDE, movement_provider=ProviderKind.MOCK),
        ),
    )

    assert response.content == "Mock response. [PLAN:1]"
    assert len(mock.calls) == 1
    with pytest.raises(AgentRunError, match="Provider not configured: claude"):
        asyncio.run(router.call("planner", "x", _options(movement_provider=None)))
    with pytest.raises(AgentRunError, match="No provider resolved"):
        asyncio.run(
            router.call("planner", "x", _options(provider=None, movement_provider=None)),
        )
