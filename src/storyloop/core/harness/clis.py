"""
Supported CLI whitelist and invocation builders.

Only identifiers registered here can ever reach process execution. Each
entry knows how to turn a prompt (and optional model) into an argv list;
the prompt travels as an argv element or on stdin, never through a shell.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass, field

from storyloop.core.errors import UnknownCLIError
from storyloop.core.routing.models import Provider

from .stream import LineParser, parse_claude_line, parse_codex_line, parse_plain_line


@dataclass(frozen=True)
class Invocation:
    """A fully built command for one attempt."""

    argv: list[str]
    stdin: str | None = None


@dataclass(frozen=True)
class CLISpec:
    """
    How to drive one external CLI.

    Attributes:
        name: Whitelisted identifier; also the executable name.
        providers: Providers whose models this CLI can run.
        build: Builds argv (and stdin) from prompt and optional model.
        parser: Line parser for the CLI's output stream.
        streams_json: Whether the CLI emits newline-delimited JSON events.
    """

    name: str
    providers: frozenset[Provider]
    build: Callable[[str, str | None], Invocation]
    parser: LineParser = parse_plain_line
    streams_json: bool = False
    version_args: tuple[str, ...] = field(default=("--version",))


def _claude(prompt: str, model: str | None) -> Invocation:
    argv = [
        "claude",
        "-p",
        "--dangerously-skip-permissions",
        "--verbose",
        "--output-format",
        "stream-json",
    ]
    if model:
        argv.extend(["--model", model])
    return Invocation(argv=argv, stdin=prompt)


def _codex(prompt: str, model: str | None) -> Invocation:
    argv = ["codex", "exec", "--dangerously-bypass-approvals-and-sandbox", "--json"]
    if model:
        argv.extend(["-m", model])
    argv.append("-")
    return Invocation(argv=argv, stdin=prompt)


def _opencode(prompt: str, model: str | None) -> Invocation:
    argv = ["opencode", "run"]
    if model:
        argv.extend(["--model", model])
    argv.append(prompt)
    return Invocation(argv=argv)


def _gemini(prompt: str, model: str | None) -> Invocation:
    argv = ["gemini", "-p", prompt]
    if model:
        argv.extend(["--model", model])
    argv.append("--yolo")
    return Invocation(argv=argv)


def _aider(prompt: str, model: str | None) -> Invocation:
    argv = ["aider", "--yes", "--message", prompt]
    if model:
        argv.extend(["--model", model])
    return Invocation(argv=argv)


def _cody(prompt: str, model: str | None) -> Invocation:
    return Invocation(argv=["cody", "chat", "-m", prompt])


_ALL = frozenset(Provider)

# Canonical auto-detect order.
SUPPORTED_CLIS: dict[str, CLISpec] = {
    spec.name: spec
    for spec in (
        CLISpec(
            "claude",
            frozenset({Provider.ANTHROPIC}),
            _claude,
            parser=parse_claude_line,
            streams_json=True,
        ),
        CLISpec("opencode", _ALL, _opencode),
        CLISpec(
            "codex",
            frozenset({Provider.OPENAI}),
            _codex,
            parser=parse_codex_line,
            streams_json=True,
        ),
        CLISpec("gemini", frozenset({Provider.GEMINI}), _gemini),
        CLISpec("aider", _ALL, _aider),
        CLISpec("cody", frozenset({Provider.ANTHROPIC, Provider.OPENAI}), _cody),
    )
}

CLI_WHITELIST: tuple[str, ...] = tuple(SUPPORTED_CLIS)


def is_whitelisted(name: str | None) -> bool:
    return bool(name) and name in SUPPORTED_CLIS


def get_cli_spec(name: str) -> CLISpec:
    """
    Look up a whitelisted CLI.

    Raises:
        UnknownCLIError: If ``name`` is not whitelisted.
    """
    spec = SUPPORTED_CLIS.get(name)
    if spec is None:
        raise UnknownCLIError(name)
    return spec


def is_installed(name: str) -> bool:
    """Whether a whitelisted CLI is on PATH. Unknown names are never looked up."""
    if not is_whitelisted(name):
        return False
    return shutil.which(name) is not None


def build_invocation(name: str, prompt: str, model: str | None = None) -> Invocation:
    return get_cli_spec(name).build(prompt, model)


def serves_provider(name: str, provider: Provider) -> bool:
    spec = SUPPORTED_CLIS.get(name)
    return spec is not None and provider in spec.providers
