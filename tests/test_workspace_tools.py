"""
Tests for the path guard and the bundled workspace tools.

Run with:
$ pytest -q
"""

import json
import logging

import pytest

from toolloop.common import RecentLogHandler
from toolloop.core.errors import PathAccessDenied
from toolloop.tools import workspace_tools
from toolloop.tools.path_guard import PathGuard


def _payload(raw: str) -> dict:
    return json.loads(raw)


# ---------------------------------------------------------------------------
# Path guard
# ---------------------------------------------------------------------------
def test_guard_resolves_inside_root(tmp_path) -> None:
    """Relative and slash-prefixed paths resolve under the root."""

    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("", encoding="utf-8")
    guard = PathGuard(tmp_path)

    assert guard.resolve("src/app.py") == tmp_path.resolve() / "src" / "app.py"
    assert guard.resolve("/src", expect_directory=True) == tmp_path.resolve() / "src"
    assert guard.relative(guard.resolve("/", expect_directory=True)) == "/"


def test_guard_rejects_escape(tmp_path) -> None:
    """Paths that leave the workspace are denied."""

    guard = PathGuard(tmp_path / "root")

    with pytest.raises(PathAccessDenied):
        guard.resolve("../outside.txt", must_exist=False)


def test_guard_rejects_protected_prefix_case_insensitively(tmp_path) -> None:
    """Protected prefixes match whole components, ignoring case."""

    guard = PathGuard(tmp_path, ["Secrets"])

    with pytest.raises(PathAccessDenied):
        guard.resolve("secrets/key.txt", must_exist=False)
    with pytest.raises(PathAccessDenied):
        guard.resolve("SECRETS", must_exist=False)
    # A sibling sharing the prefix text is not protected
    assert guard.resolve("secrets_public.txt", must_exist=False).name == "secrets_public.txt"


def test_guard_missing_targets(tmp_path) -> None:
    """Missing files and directories raise FileNotFoundError when required."""

    guard = PathGuard(tmp_path)

    with pytest.raises(FileNotFoundError, match="File not found"):
        guard.resolve("nope.txt")
    with pytest.raises(FileNotFoundError, match="Directory not found"):
        guard.resolve("nope", expect_directory=True)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
def test_create_file_requests_reload(workspace) -> None:
    """Creating a file writes it and asks the host to resynchronise."""

    result = _payload(workspace_tools.create_file("pkg/new.py", "x = 1\n"))

    assert result["status"] == "success"
    assert result["requires_reload"] is True
    assert (workspace / "pkg" / "new.py").read_text(encoding="utf-8") == "x = 1\n"


def test_create_file_refuses_existing_path(workspace) -> None:
    """An existing file is never overwritten."""

    (workspace / "a.txt").write_text("keep", encoding="utf-8")

    result = _payload(workspace_tools.create_file("a.txt", "replace"))

    assert result["status"] == "error"
    assert (workspace / "a.txt").read_text(encoding="utf-8") == "keep"


def test_create_file_in_protected_directory(workspace) -> None:
    """Protected directories cannot be written to."""

    with pytest.raises(PathAccessDenied):
        workspace_tools.create_file("secrets/token.txt", "x")


def test_get_file_content_numbers_lines(workspace) -> None:
    """File content comes back with 1-based line numbers."""

    (workspace / "f.txt").write_text("one\ntwo\nthree", encoding="utf-8")

    full = _payload(workspace_tools.get_file_content("f.txt"))
    part = _payload(workspace_tools.get_file_content("f.txt", start_line=2, end_line=2))

    assert full["result"] == "1 | one\n2 | two\n3 | three"
    assert part["result"] == "2 | two"
    bad = _payload(workspace_tools.get_file_content("f.txt", start_line=5))
    assert bad["status"] == "error"


def test_rewrite_file_lines(workspace) -> None:
    """A line range is replaced and the trailing newline preserved."""

    target = workspace / "f.txt"
    target.write_text("a\nb\nc\n", encoding="utf-8")

    result = _payload(workspace_tools.rewrite_file_lines("f.txt", 2, 2, "B1\nB2"))

    assert result["requires_reload"] is True
    assert target.read_text(encoding="utf-8") == "a\nB1\nB2\nc\n"
    invalid = _payload(workspace_tools.rewrite_file_lines("f.txt", 3, 9, "x"))
    assert invalid["status"] == "error"


def test_directory_tree_hides_protected_and_cache_dirs(workspace) -> None:
    """The tree lists directories first and skips protected and cache directories."""

    (workspace / "src").mkdir()
    (workspace / "src" / "main.py").write_text("", encoding="utf-8")
    (workspace / "secrets").mkdir()
    (workspace / "__pycache__").mkdir()
    (workspace / "README.md").write_text("", encoding="utf-8")

    tree = _payload(workspace_tools.get_directory_tree("/"))["result"]

    assert tree.splitlines() == ["/", "├── src/", "│   └── main.py", "└── README.md"]


def test_module_outline(workspace) -> None:
    """Classes, methods and functions are listed with signatures and summaries."""

    (workspace / "mod.py").write_text(
        '"""Module doc."""\n'
        "\n"
        "class Greeter:\n"
        '    """Says hello."""\n'
        "\n"
        "    def greet(self, name: str) -> str:\n"
        '        """Greet someone."""\n'
        "        return name\n"
        "\n"
        "\n"
        "async def main() -> None:\n"
        "    pass\n",
        encoding="utf-8",
    )

    result = _payload(workspace_tools.get_module_outline("mod.py"))["result"]

    assert result["summary"] == "Module doc."
    members = [(m["kind"], m["name"], m["signature"]) for m in result["members"]]
    assert members == [
        ("class", "Greeter", ""),
        ("method", "Greeter.greet", "(self, name: str) -> str"),
        ("function", "main", "() -> None"),
    ]
    assert result["members"][1]["summary"] == "Greet someone."


def test_module_outline_syntax_error(workspace) -> None:
    """Unparseable modules produce an error response."""

    (workspace / "bad.py").write_text("def broken(:\n", encoding="utf-8")

    assert _payload(workspace_tools.get_module_outline("bad.py"))["status"] == "error"


def test_get_logs_newest_first(monkeypatch) -> None:
    """Recent log records are returned newest first."""

    handler = RecentLogHandler(capacity=10)
    monkeypatch.setattr(workspace_tools, "recent_logs", handler)
    log = logging.getLogger("toolloop.tests.logs")
    log.addHandler(handler)
    log.setLevel(logging.INFO)
    try:
        log.info("first")
        log.warning("second")
    finally:
        log.removeHandler(handler)

    result = _payload(workspace_tools.get_logs(limit=5))["result"]

    assert result == ["[Warning] second", "[Info] first"]


def test_directory_tree_skips_links_leaving_workspace(workspace, tmp_path_factory) -> None:
    """Symlinked directories pointing outside the workspace are not listed."""

    outside = tmp_path_factory.mktemp("outside")
    (outside / "private.txt").write_text("", encoding="utf-8")
    (workspace / "inside").mkdir()
    (workspace / "escape").symlink_to(outside, target_is_directory=True)

    tree = _payload(workspace_tools.get_directory_tree("/"))["result"]

    assert "escape" not in tree
    assert "private.txt" not in tree
    assert tree.splitlines() == ["/", "└── inside/"]
