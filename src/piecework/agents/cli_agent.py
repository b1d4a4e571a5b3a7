"""Subprocess-based agent provider for CLI agents (claude, codex)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import tempfile
from pathlib import Path

from piecework.agents.base import AgentRunError
from piecework.engine.models import (
    AgentOptions,
    AgentResponse,
    AgentStatus,
    PermissionMode,
    ProviderKind,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATES = {
    ProviderKind.CLAUDE: (
        "claude -p --output-format json {model_args} --permission-mode {permission_mode} "
        "{resume_args} -- {prompt}"
    ),
    ProviderKind.CODEX: "codex exec {model_args} --sandbox {permission_mode} {prompt}",
}

PERMISSION_FLAGS = {
    ProviderKind.CLAUDE: {
        PermissionMode.READONLY: "plan",
        PermissionMode.EDIT: "acceptEdits",
        PermissionMode.FULL: "bypassPermissions",
    },
    ProviderKind.CODEX: {
        PermissionMode.READONLY: "read-only",
        PermissionMode.EDIT: "workspace-write",
        PermissionMode.FULL: "danger-full-access",
    },
}

_RESUME_FLAGS = {ProviderKind.CLAUDE: "--resume"}
_SESSION_LINE = re.compile(r"^session_id:\s*(\S+)\s*$", re.MULTILINE)
_STDERR_TAIL_CHARS = 2_000
_STREAM_LIMIT = 16 * 1024 * 1024


class CliAgentProvider:
    """Execute a provider command template as an asyncio subprocess."""

    def __init__(
        self,
        kind: ProviderKind,
        *,
        command_template: str | None = None,
        timeout_seconds: float = 1_800.0,
    ) -> None:
        if kind is ProviderKind.MOCK:
            raise ValueError("The mock provider does not run a CLI command.")
        self.kind = kind
        self.command_template = command_template or DEFAULT_COMMAND_TEMPLATES[kind]
        self.timeout_seconds = timeout_seconds

    async def call(self, persona: str, prompt: str, options: AgentOptions) -> AgentResponse:
        with tempfile.TemporaryDirectory(prefix="piecework-prompt-") as tmp_dir:
            prompt_file = Path(tmp_dir) / "prompt.md"
            prompt_file.write_text(prompt, "utf-8")
            argv = build_run_args(
                command_template=self.command_template,
                kind=self.kind,
                prompt=prompt,
                prompt_file=prompt_file,
                options=options,
            )
            env = os.environ.copy()
            env["PIECEWORK_AGENT_PROVIDER"] = self.kind.value
            env["PIECEWORK_AGENT_PERSONA"] = persona
            env["PIECEWORK_AGENT_MODEL"] = options.movement_model or options.model or ""
            env["PIECEWORK_PERMISSION_MODE"] = options.permission_mode.value
            logger.debug(
                "Starting %s agent for persona %s in %s",
                self.kind.value,
                persona,
                options.cwd,
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=options.cwd,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=_STREAM_LIMIT,
                )
            except FileNotFoundError as error:
                raise AgentRunError(
                    f"CLI agent command not found: {argv[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise AgentRunError(
                    f"CLI agent failed to start: {error}",
                    transient=True,
                ) from error

            try:
                stdout, stderr = await asyncio.wait_for(
                    _collect_output(process, options),
                    timeout=self.timeout_seconds,
                )
            except TimeoutError:
                await _terminate_process(process)
                return AgentResponse(
                    persona=persona,
                    status=AgentStatus.ERROR,
                    content="",
                    error=f"{self.kind.value} agent timed out after {self.timeout_seconds:g}s",
                )
            except asyncio.CancelledError:
                await _terminate_process(process)
                raise

        return parse_cli_output(
            persona=persona,
            exit_code=process.returncode or 0,
            stdout=stdout,
            stderr=stderr,
            session_id=options.session_id,
        )


def build_run_args(
    *,
    command_template: str,
    kind: ProviderKind,
    prompt: str,
    prompt_file: Path,
    options: AgentOptions,
) -> list[str]:
    """Render a command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("CLI agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentRunError(
            "CLI agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    model = options.movement_model or options.model
    resume_flag = _RESUME_FLAGS.get(kind)
    resume_args = (
        f"{resume_flag} {shlex.quote(options.session_id)}"
        if resume_flag and options.session_id
        else ""
    )
    try:
        rendered = stripped.format(
            model=shlex.quote(model or ""),
            model_args=f"--model {shlex.quote(model)}" if model else "",
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            permission_mode=shlex.quote(PERMISSION_FLAGS[kind][options.permission_mode]),
            resume_args=resume_args,
        )
    except KeyError as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError("CLI agent command template rendered empty command.", transient=False)
    return argv


def parse_cli_output(
    *,
    persona: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    session_id: str | None,
) -> AgentResponse:
    """Turn process output into an AgentResponse.

    JSON output (``{"result", "session_id", "is_error", "structured_output"}``)
    is unpacked; anything else is taken verbatim as the response content.
    """

    content = stdout.strip()
    structured: dict[str, object] | None = None
    is_error = exit_code != 0
    try:
        payload = json.loads(content) if content.startswith("{") else None
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        result = payload.get("result")
        if isinstance(result, str):
            content = result
        if isinstance(payload.get("session_id"), str):
            session_id = payload["session_id"]
        if isinstance(payload.get("structured_output"), dict):
            structured = payload["structured_output"]
        is_error = is_error or bool(payload.get("is_error"))
    else:
        match = _SESSION_LINE.search(content)
        if match is not None:
            session_id = match.group(1)

    if is_error:
        detail = stderr.strip()[-_STDERR_TAIL_CHARS:] or content or f"exit code {exit_code}"
        return AgentResponse(
            persona=persona,
            status=AgentStatus.ERROR,
            content=content,
            session_id=session_id,
            error=detail,
        )
    return AgentResponse(
        persona=persona,
        status=AgentStatus.DONE,
        content=content,
        session_id=session_id,
        structured_output=structured,
    )


async def _collect_output(
    process: asyncio.subprocess.Process,
    options: AgentOptions,
) -> tuple[str, str]:
    assert process.stdout is not None
    assert process.stderr is not None

    async def _read_stdout() -> str:
        chunks: list[str] = []
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace")
            chunks.append(line)
            if options.on_stream is not None:
                options.on_stream(line)
        return "".join(chunks)

    stdout, stderr_bytes = await asyncio.gather(_read_stdout(), process.stderr.read())
    await process.wait()
    return stdout, stderr_bytes.decode("utf-8", errors="replace")


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=2)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
