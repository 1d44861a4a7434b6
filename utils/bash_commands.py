"""POSIX command builders for file search inside an execution target."""

from __future__ import annotations

import re

from utils.constants import MAX_FILES_GLOB, MAX_GREP_LINES

_WILDCARD_RE = re.compile(r"[*?\[]")


def escape_single_quoted(value: str) -> str:
    """Escape a string for use inside single quotes in sh/bash."""
    return value.replace("'", "'\\''")


def single_quote(value: str) -> str:
    return f"'{escape_single_quoted(value)}'"


def build_glob_command(scope: str) -> str:
    """Translate a glob pattern into a ``find`` invocation.

    ``find`` is used instead of ``globstar`` because older bash builds (macOS
    ships 3.2) do not support it.
    """
    match = _WILDCARD_RE.search(scope)
    if match is None:
        quoted = single_quote(scope)
        return f"test -f {quoted} && echo {quoted} || true"

    prefix = scope[: match.start()]
    if "/" not in prefix:
        base_dir, pattern = ".", scope
    else:
        base_dir = prefix.rsplit("/", 1)[0]
        pattern = scope[len(base_dir) + 1:]
        base_dir = base_dir or "/"

    if "/" in pattern or "**" in pattern:
        # find's -path wildcard already crosses directory boundaries
        find_pattern = pattern.replace("**", "*")
        return (
            f"find {single_quote(base_dir)} -type f -path {single_quote('*/' + find_pattern)} "
            f"2>/dev/null | head -n {MAX_FILES_GLOB}"
        )
    return (
        f"find {single_quote(base_dir)} -type f -name {single_quote(pattern)} "
        f"2>/dev/null | head -n {MAX_FILES_GLOB}"
    )


def build_grep_command(scope: str, regex: str, leading: int = 0, trailing: int = 0) -> str:
    """Recursive extended-regex grep with optional context lines, binaries skipped."""
    flags = ["-r", "-I", "-H", "-n", "-E"]
    if leading > 0:
        flags.append(f"-B {int(leading)}")
    if trailing > 0:
        flags.append(f"-A {int(trailing)}")
    return (
        f"grep {' '.join(flags)} {single_quote(regex)} {scope} "
        f"2>/dev/null | head -n {MAX_GREP_LINES}"
    )
