"""
Bundled workspace tools.

Every function marked with :func:`register_tool` here is exposed to the model by
:func:`toolloop.tools.get_registry`.  Tools return a JSON object encoded as a string: ``status``,
``message``, optionally ``result``, and ``requires_reload`` when the workspace changed on disk and
the host has to resynchronise before the next model round-trip.
"""

import ast
import json
import logging
from pathlib import Path
from typing import (
    Annotated,
    Any,
    Dict,
    List,
)

from toolloop.common import recent_logs
from toolloop.tools import (
    ToolParam,
    register_tool,
)
from toolloop.tools.path_guard import (
    PathGuard,
    get_path_guard,
)

logger = logging.getLogger(__name__)

_IGNORED_NAMES = {"__pycache__", ".mypy_cache", ".pytest_cache"}


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------
def success_response(message: str, result: Any = None, requires_reload: bool = False) -> str:
    response: Dict[str, Any] = {"status": "success", "message": message}
    if result is not None:
        response["result"] = result
    if requires_reload:
        response["requires_reload"] = True
    return json.dumps(response, ensure_ascii=False)


def error_response(message: str) -> str:
    return json.dumps({"status": "error", "message": message}, ensure_ascii=False)


def _split_lines(text: str) -> List[str]:
    return text.replace("\r\n", "\n").replace("\r", "\n").split("\n")


# ---------------------------------------------------------------------------
# Read-only tools
# ---------------------------------------------------------------------------
def _build_tree(
    guard: PathGuard, directory: Path, lines: List[str], indent: str, depth: int
) -> None:
    children = sorted(
        (
            child
            for child in directory.iterdir()
            if child.name not in _IGNORED_NAMES
            and guard.contains(child)
            and not guard.is_protected(child.resolve())
        ),
        key=lambda child: (child.is_file(), child.name.lower()),
    )
    for index, child in enumerate(children):
        last = index == len(children) - 1
        suffix = "/" if child.is_dir() else ""
        lines.append(f"{indent}{'└── ' if last else '├── '}{child.name}{suffix}")
        if child.is_dir() and depth > 1:
            _build_tree(guard, child, lines, indent + ("    " if last else "│   "), depth - 1)


@register_tool("Provides a tree-like view of a directory within the workspace.")
def get_directory_tree(
    directory_path: Annotated[
        str, ToolParam("Directory relative to the workspace root (e.g. 'src/app' or '/' for all).")
    ],
    max_depth: Annotated[int, ToolParam("Optional. How many levels to descend.")] = 4,
) -> str:
    guard = get_path_guard()
    full_path = guard.resolve(directory_path, expect_directory=True)
    lines = [f"{guard.relative(full_path)}"]
    _build_tree(guard, full_path, lines, "", max(max_depth, 1))
    return success_response("Directory tree retrieved successfully.", "\n".join(lines))


@register_tool("Returns the content of a text file with 1-based line numbers.")
def get_file_content(
    file_path: Annotated[str, ToolParam("Path relative to the workspace root.")],
    start_line: Annotated[int, ToolParam("Optional. First line to return (1-based).")] = 1,
    end_line: Annotated[int, ToolParam("Optional. Last line to return; 0 means end of file.")] = 0,
) -> str:
    guard = get_path_guard()
    full_path = guard.resolve(file_path)
    lines = _split_lines(full_path.read_text(encoding="utf-8"))
    last = len(lines) if end_line <= 0 else min(end_line, len(lines))
    first = max(start_line, 1)
    if first > last:
        return error_response(f"Invalid line range {start_line}-{end_line}.")
    width = len(str(last))
    numbered = "\n".join(f"{n:>{width}} | {lines[n - 1]}" for n in range(first, last + 1))
    return success_response(f"Lines {first}-{last} of '{guard.relative(full_path)}'.", numbered)


@register_tool(
    "Retrieves the structure of a Python module: classes, functions and methods with their "
    "signatures and docstring summaries."
)
def get_module_outline(
    file_path: Annotated[str, ToolParam("Path to a .py file relative to the workspace root.")],
) -> str:
    guard = get_path_guard()
    full_path = guard.resolve(file_path)
    try:
        tree = ast.parse(full_path.read_text(encoding="utf-8"), filename=str(full_path))
    except SyntaxError as exc:
        return error_response(f"Could not parse '{file_path}': {exc.msg} (line {exc.lineno}).")

    outline: List[Dict[str, Any]] = []

    def visit(nodes: List[ast.stmt], owner: str) -> None:
        for node in nodes:
            if isinstance(node, ast.ClassDef):
                outline.append(_outline_entry("class", owner + node.name, node, ""))
                visit(node.body, f"{owner}{node.name}.")
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                kind = "method" if owner else "function"
                signature = f"({ast.unparse(node.args)})"
                if node.returns is not None:
                    signature += f" -> {ast.unparse(node.returns)}"
                outline.append(_outline_entry(kind, owner + node.name, node, signature))

    visit(tree.body, "")
    summary = ast.get_docstring(tree)
    return success_response(
        "Module outline retrieved successfully.",
        {"module": guard.relative(full_path), "summary": _first_line(summary), "members": outline},
    )


def _first_line(doc: str | None) -> str:
    return doc.strip().splitlines()[0] if doc and doc.strip() else ""


def _outline_entry(kind: str, name: str, node: ast.AST, signature: str) -> Dict[str, Any]:
    doc = ast.get_docstring(node)  # type: ignore[arg-type]
    return {
        "kind": kind,
        "name": name,
        "signature": signature,
        "line": getattr(node, "lineno", 0),
        "summary": _first_line(doc),
    }


@register_tool(
    "Retrieves the latest log records (errors, warnings, and standard logs), newest first."
)
def get_logs(
    limit: Annotated[int, ToolParam("Optional. Maximum number of records.")] = 50,
) -> str:
    records = [
        f"[{level.title()}] {message.strip()}" for level, message in recent_logs.latest(limit)
    ]
    return success_response("Logs retrieved successfully.", records)


# ---------------------------------------------------------------------------
# Tools that change the workspace
# ---------------------------------------------------------------------------
@register_tool("Creates a new text file. Fails if something already exists at the path.")
def create_file(
    file_path: Annotated[
        str, ToolParam("Path for the new file relative to the workspace root (e.g. 'src/new.py').")
    ],
    content: Annotated[str, ToolParam("The text to write into the file.")],
) -> str:
    guard = get_path_guard()
    full_path = guard.resolve(file_path, must_exist=False)
    if full_path.exists():
        location = guard.relative(full_path)
        return error_response(f"A file or directory already exists at '{location}'.")

    full_path.parent.mkdir(parents=True, exist_ok=True)
    full_path.write_text(content, encoding="utf-8")
    logger.info("Created file %s", full_path)
    return success_response(
        f"Successfully created '{guard.relative(full_path)}'. Workspace refresh is required.",
        requires_reload=True,
    )


@register_tool("Rewrites a range of lines in an existing text file.")
def rewrite_file_lines(
    file_path: Annotated[str, ToolParam("Path to the file relative to the workspace root.")],
    start_line: Annotated[int, ToolParam("The first line to replace (1-based).")],
    end_line: Annotated[int, ToolParam("The last line to replace (1-based, inclusive).")],
    new_content: Annotated[str, ToolParam("The text to insert in place of those lines.")],
) -> str:
    guard = get_path_guard()
    full_path = guard.resolve(file_path)
    text = full_path.read_text(encoding="utf-8")
    trailing_newline = text.endswith("\n")
    lines = _split_lines(text[:-1] if trailing_newline else text)
    if start_line < 1 or end_line > len(lines) or start_line > end_line:
        return error_response("Invalid line range.")

    lines[start_line - 1 : end_line] = _split_lines(new_content)
    full_path.write_text("\n".join(lines) + ("\n" if trailing_newline else ""), encoding="utf-8")
    logger.info("Rewrote lines %d-%d of %s", start_line, end_line, full_path)
    return success_response(
        f"Successfully rewrote lines {start_line}-{end_line} in '{guard.relative(full_path)}'.",
        requires_reload=True,
    )
