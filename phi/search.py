"""Recursive content search and file-name globbing over a directory tree.

Both engines share one walk: well-known build, VCS and dependency
directories are pruned, hidden entries are skipped unless asked for, and
two independent limits apply. The scan cap bounds how many files are
visited; the result cap bounds how many results come back. Each report
says which of them was hit.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        ".svn",
        ".hg",
        "dist",
        "build",
        "coverage",
        ".cache",
        "__pycache__",
        ".pytest_cache",
        "venv",
        ".venv",
        "env",
        ".env",
        ".next",
        ".nuxt",
        "vendor",
    }
)

BINARY_EXTENSIONS = frozenset(
    {
        ".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico", ".bmp", ".svg",
        ".mp3", ".mp4", ".wav", ".avi", ".mov", ".mkv",
        ".zip", ".tar", ".gz", ".rar", ".7z",
        ".pdf", ".doc", ".docx", ".xls", ".xlsx",
        ".exe", ".dll", ".so", ".dylib",
        ".woff", ".woff2", ".ttf", ".eot",
        ".sqlite", ".db",
    }
)  # fmt: skip

BINARY_CHECK_BYTES = 8 * 1024
SNIPPET_LENGTH = 200

MAX_SEARCH_RESULTS = 50
MAX_SEARCH_FILES = 1000
MAX_GLOB_RESULTS = 100
MAX_GLOB_FILES = 10000

_BRACES = re.compile(r"\{([^{}]*)\}")


@dataclass(frozen=True)
class SearchResult:
    file: str
    line: int
    column: int
    snippet: str


@dataclass(frozen=True)
class GlobResult:
    path: str
    mtime_ms: float


@dataclass
class SearchReport:
    pattern: str
    root: Path
    results: list[SearchResult] = field(default_factory=list)
    files_scanned: int = 0
    max_results: int = MAX_SEARCH_RESULTS
    max_files: int = MAX_SEARCH_FILES
    result_capped: bool = False
    scan_capped: bool = False

    def render(self) -> str:
        if not self.results:
            text = f'No matches found for "{self.pattern}" in {abbreviate_path(self.root)}'
            if self.scan_capped:
                text += "\n\n" + _scan_hint(self.max_files)
            return text

        plus = "+" if self.result_capped else ""
        parts = [f'Found {len(self.results)}{plus} matches for "{self.pattern}":\n']
        grouped: dict[str, list[SearchResult]] = {}
        for result in self.results:
            grouped.setdefault(result.file, []).append(result)
        for file, file_results in grouped.items():
            parts.append(f"{file}:")
            for r in file_results:
                parts.append(f"  {r.line}:{r.column}: {r.snippet}")
            parts.append("")

        if self.result_capped:
            parts.append(
                f"[Results limited to {self.max_results} matches. "
                "Use more specific pattern or path to narrow search]"
            )
        if self.scan_capped:
            parts.append(_scan_hint(self.max_files))
        return "\n".join(parts).rstrip("\n")


@dataclass
class GlobReport:
    pattern: str
    root: Path
    results: list[GlobResult] = field(default_factory=list)
    total_matches: int = 0
    files_scanned: int = 0
    max_results: int = MAX_GLOB_RESULTS
    max_files: int = MAX_GLOB_FILES
    scan_capped: bool = False

    @property
    def hidden_count(self) -> int:
        return self.total_matches - len(self.results)

    def render(self) -> str:
        if not self.results:
            text = (
                f'No files found matching pattern "{self.pattern}" '
                f"in {abbreviate_path(self.root)}"
            )
            if self.scan_capped:
                text += "\n\n" + _scan_hint(self.max_files)
            return text

        header = f'Found {self.total_matches} file(s) matching "{self.pattern}"'
        if self.hidden_count:
            header += f" (showing first {self.max_results})"
        parts = [header + ":", ""]
        parts.extend(f"{i}. {r.path}" for i, r in enumerate(self.results, start=1))
        if self.hidden_count:
            parts.append(f"\n[{self.hidden_count} more files not shown]")
        if self.scan_capped:
            parts.append(_scan_hint(self.max_files))
        return "\n".join(parts)


def _scan_hint(max_files: int) -> str:
    return (
        f"[Stopped after scanning {max_files} files. "
        "Use a narrower path or pattern to search the rest]"
    )


# ---------------------------------------------------------------------------
# Paths and patterns
# ---------------------------------------------------------------------------


def expand_path(path: str, base_dir: str | os.PathLike = ".") -> Path:
    """Expand ``~`` and resolve *path* against *base_dir*."""
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir).expanduser() / p
    return p.resolve()


def abbreviate_path(path: str | os.PathLike) -> str:
    text = str(path)
    home = str(Path.home())
    if text == home or text.startswith(home + os.sep):
        return "~" + text[len(home) :]
    return text


def expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` alternatives into separate glob patterns."""
    match = _BRACES.search(pattern)
    if match is None:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end() :]
    out: list[str] = []
    for option in match.group(1).split(","):
        out.extend(expand_braces(head + option + tail))
    return out


def glob_matches(rel_path: str, patterns: Iterable[str]) -> bool:
    """True if the root-relative POSIX path matches any of the patterns."""
    candidate = PurePath(rel_path)
    return any(candidate.full_match(p) for p in patterns)


def compile_pattern(pattern: str, case_insensitive: bool = False) -> re.Pattern:
    """Compile *pattern* as a regex, falling back to a literal match."""
    flags = re.IGNORECASE if case_insensitive else 0
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        logger.debug("pattern %r is not a valid regex (%s); matching literally", pattern, exc)
        return re.compile(re.escape(pattern), flags)


# ---------------------------------------------------------------------------
# Walking
# ---------------------------------------------------------------------------


def walk_files(
    root: Path,
    *,
    include_hidden: bool = False,
    exclude_dirs: Iterable[str] = (),
) -> Iterator[tuple[Path, str]]:
    """Yield ``(path, relative_posix_path)`` for every file under *root*.

    Directories in the exclusion set are pruned before descending. Order is
    deterministic: entries are visited in sorted order.
    """
    excluded = DEFAULT_EXCLUDED_DIRS | set(exclude_dirs)
    if root.is_file():
        yield root, root.name
        return

    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(
            d
            for d in dirs
            if d not in excluded and (include_hidden or not d.startswith("."))
        )
        for filename in sorted(files):
            if not include_hidden and filename.startswith("."):
                continue
            filepath = Path(dirpath) / filename
            yield filepath, filepath.relative_to(root).as_posix()


def _is_binary(path: Path) -> bool:
    if path.suffix.lower() in BINARY_EXTENSIONS:
        return True
    try:
        with open(path, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
    except OSError:
        return True
    return b"\x00" in chunk


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------


def search_content(
    pattern: str,
    root: Path,
    *,
    file_glob: str | None = None,
    case_insensitive: bool = False,
    include_hidden: bool = False,
    exclude_dirs: Iterable[str] = (),
    max_results: int = MAX_SEARCH_RESULTS,
    max_files: int = MAX_SEARCH_FILES,
) -> SearchReport:
    """Search file contents under *root* for a regex.

    One result per match, so a line with two matches yields two results with
    different columns. Files are visited in walk order and lines in file
    order, which gives the first-seen-file grouping of the report.
    """
    regex = compile_pattern(pattern, case_insensitive)
    globs = expand_braces(file_glob) if file_glob else None
    report = SearchReport(pattern, root, max_results=max_results, max_files=max_files)

    for filepath, rel in walk_files(
        root, include_hidden=include_hidden, exclude_dirs=exclude_dirs
    ):
        if globs is not None:
            target = rel if any("/" in g for g in globs) else filepath.name
            if not glob_matches(target, globs):
                continue
        if _is_binary(filepath):
            continue
        if report.files_scanned >= max_files:
            report.scan_capped = True
            break
        report.files_scanned += 1

        try:
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue

        for line_no, line in enumerate(text.split("\n"), start=1):
            for match in regex.finditer(line):
                # only flag the cap once a match beyond it turns up
                if len(report.results) >= max_results:
                    report.result_capped = True
                    return report
                report.results.append(
                    SearchResult(
                        rel,
                        line_no,
                        match.start() + 1,
                        line.strip()[:SNIPPET_LENGTH],
                    )
                )
    return report


def glob_paths(
    pattern: str,
    root: Path,
    *,
    include_hidden: bool = False,
    exclude_dirs: Iterable[str] = (),
    max_results: int = MAX_GLOB_RESULTS,
    max_files: int = MAX_GLOB_FILES,
) -> GlobReport:
    """Find files under *root* whose relative path matches *pattern*.

    Directory names are never matched themselves, only used for pruning.
    Results are sorted newest first and cut to *max_results*.
    """
    patterns = expand_braces(pattern)
    report = GlobReport(pattern, root, max_results=max_results, max_files=max_files)
    matched: list[GlobResult] = []

    for filepath, rel in walk_files(
        root, include_hidden=include_hidden, exclude_dirs=exclude_dirs
    ):
        if report.files_scanned >= max_files:
            report.scan_capped = True
            break
        report.files_scanned += 1
        if not glob_matches(rel, patterns):
            continue
        try:
            mtime_ms = filepath.stat().st_mtime_ns / 1_000_000
        except OSError:
            continue
        matched.append(GlobResult(rel, mtime_ms))

    matched.sort(key=lambda r: r.mtime_ms, reverse=True)
    report.total_matches = len(matched)
    report.results = matched[:max_results]
    return report
