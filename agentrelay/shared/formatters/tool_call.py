"""Chat formatting for tool calls and results.

Registry-based: each tool gets a small formatter producing a
``FormattedToolCall``; ``render_tool_call`` turns that into chat
Markdown. Adding a new tool format requires only a decorated function:

    @tool_formatter("MyTool")
    def _format_my_tool(name, args, working_dir):
        return FormattedToolCall(icon="🔧", label=name, summary=...)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

STATUS_PENDING = "⏳"
STATUS_DONE = "✅"
STATUS_FAILED = "❌"

RESULT_SUMMARY_LIMIT = 100


@dataclass
class FormattedToolCall:
    """Structured representation of a formatted tool call."""

    icon: str = "🔧"
    label: str = ""
    summary: str = ""
    detail: str = ""


# ── Formatter Registry ──

_FORMATTERS: dict[str, Callable[..., FormattedToolCall]] = {}


def tool_formatter(name: str):
    """Decorator to register a formatter for a given tool name."""

    def decorator(fn: Callable[..., FormattedToolCall]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def _normalize_tool_name(name: str) -> str:
    """Strip an MCP server prefix: ``mcp__relay__approve_tool`` → ``approve_tool``."""
    if name.startswith("mcp__") and name.count("__") >= 2:
        return name.split("__", 2)[2]
    return name


def format_tool_call(
    name: str,
    args: dict[str, Any] | None,
    working_dir: str = "",
) -> FormattedToolCall:
    """Dispatch to a registered formatter or the default."""
    args = args if isinstance(args, dict) else {}
    formatter = _FORMATTERS.get(name) or _FORMATTERS.get(
        _normalize_tool_name(name), _format_default
    )
    return formatter(name, args, working_dir)


def render_tool_call(fmt: FormattedToolCall, status: str = STATUS_PENDING) -> str:
    """Render a formatted call as one chat message body."""
    head = f"{status} {fmt.icon} **{fmt.label}**"
    if fmt.summary:
        head += f" `{fmt.summary}`"
    if fmt.detail:
        head += f"\n{fmt.detail}"
    return head


def render_tool_result(
    fmt: FormattedToolCall,
    summary: str,
    is_error: bool,
) -> str:
    """Render the finished form of a tool message."""
    body = render_tool_call(fmt, STATUS_FAILED if is_error else STATUS_DONE)
    if summary:
        body += f"\n*{summary}*"
    return body


# ── Helpers ──


def _trunc(text: str, length: int = 60) -> str:
    """Truncate text with ellipsis."""
    if not text:
        return ""
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


def relative_path(value: str, working_dir: str) -> str:
    """Show paths inside *working_dir* relative to it."""
    if not working_dir:
        return value
    base = working_dir.rstrip("/")
    if value == base:
        return "."
    if value.startswith(base + "/"):
        return "./" + value[len(base) + 1:]
    return value


def _strip_paths(text: str, working_dir: str) -> str:
    if not working_dir:
        return text
    base = working_dir.rstrip("/")
    return text.replace(base + "/", "./")


def summarize_result(content: Any) -> str:
    """First non-empty line of a tool result, capped for display.

    *content* may be a plain string or a list of content blocks as
    Claude emits them (``[{"type": "text", "text": ...}]``).
    """
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
            elif isinstance(block, str):
                parts.append(block)
        text = "\n".join(parts)
    elif content is None:
        text = ""
    elif isinstance(content, str):
        text = content
    else:
        text = json.dumps(content)

    first = ""
    for line in text.splitlines():
        if line.strip():
            first = line.strip()
            break
    if len(first) > RESULT_SUMMARY_LIMIT:
        return first[:RESULT_SUMMARY_LIMIT] + "..."
    return first


def format_cost(cost: float | None) -> str:
    """``0.5¢`` below one cent, ``$1.23`` otherwise."""
    if cost is None:
        return ""
    if cost < 0.01:
        return f"{cost * 100:.2f}¢"
    return f"${cost:.2f}"


# ── Formatters ──


@tool_formatter("Bash")
def _format_bash(name: str, args: dict, working_dir: str) -> FormattedToolCall:
    command = str(args.get("command", ""))
    if not command:
        return _format_default(name, args, working_dir)
    command = _strip_paths(command, working_dir)
    return FormattedToolCall(
        label="Bash",
        detail=f"```bash\n{command}\n```",
    )


@tool_formatter("TodoWrite")
def _format_todo_write(name: str, args: dict, working_dir: str) -> FormattedToolCall:
    todos = args.get("todos")
    if not isinstance(todos, list):
        return _format_default(name, args, working_dir)
    lines = []
    for t in todos:
        if not isinstance(t, dict):
            continue
        status = t.get("status")
        mark = "✅" if status == "completed" else "🔄" if status == "in_progress" else "⬜"
        lines.append(f"{mark} {t.get('content') or t.get('activeForm') or ''}")
    return FormattedToolCall(label="TodoWrite", detail="\n".join(lines))


def _path_formatter(label: str):
    def _format(name: str, args: dict, working_dir: str) -> FormattedToolCall:
        file_path = args.get("file_path") or args.get("path") or ""
        if not file_path:
            return _format_default(name, args, working_dir)
        return FormattedToolCall(
            label=label,
            summary=relative_path(str(file_path), working_dir),
        )
    return _format


for _label in ("Read", "Edit", "MultiEdit", "Write", "NotebookEdit"):
    tool_formatter(_label)(_path_formatter(_label))


@tool_formatter("Glob")
def _format_glob(name: str, args: dict, working_dir: str) -> FormattedToolCall:
    pattern = args.get("pattern", "")
    if not pattern:
        return _format_default(name, args, working_dir)
    return FormattedToolCall(label="Glob", summary=str(pattern))


@tool_formatter("Grep")
def _format_grep(name: str, args: dict, working_dir: str) -> FormattedToolCall:
    pattern = args.get("pattern", "")
    if not pattern:
        return _format_default(name, args, working_dir)
    path = args.get("path")
    detail = f"in `{relative_path(str(path), working_dir)}`" if path else ""
    return FormattedToolCall(label="Grep", summary=str(pattern), detail=detail)


@tool_formatter("AskUserQuestion")
def _format_ask_user(name: str, args: dict, working_dir: str) -> FormattedToolCall:
    return FormattedToolCall(icon="❓", label="Question from the agent")


@tool_formatter("ExitPlanMode")
def _format_exit_plan(name: str, args: dict, working_dir: str) -> FormattedToolCall:
    plan = str(args.get("plan", ""))
    return FormattedToolCall(icon="📋", label="Plan ready", detail=_trunc(plan, 1500))


def _format_default(name: str, args: dict, working_dir: str) -> FormattedToolCall:
    """Fallback formatter for unrecognised tool names."""
    display_args = {
        k: _trunc(str(v), 80) for k, v in args.items() if not k.startswith("_")
    }
    summary = ", ".join(f"{k}={v}" for k, v in display_args.items())
    return FormattedToolCall(label=name, summary=_trunc(summary, 120))
