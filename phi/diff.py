"""Unified-diff report for a single contiguous change."""

CONTEXT_LINES = 3


def unified_diff(old: str, new: str, path: str) -> str:
    """Return a one-hunk unified diff between *old* and *new*.

    Only correct when the two texts differ in one contiguous region, which
    is what a verified single-occurrence replacement produces.
    """
    old_lines = old.split("\n")
    new_lines = new.split("\n")

    start = 0
    while (
        start < len(old_lines)
        and start < len(new_lines)
        and old_lines[start] == new_lines[start]
    ):
        start += 1

    old_end = len(old_lines) - 1
    new_end = len(new_lines) - 1
    while (
        old_end > start
        and new_end > start
        and old_lines[old_end] == new_lines[new_end]
    ):
        old_end -= 1
        new_end -= 1

    ctx_start = max(0, start - CONTEXT_LINES)
    old_ctx_end = min(len(old_lines) - 1, old_end + CONTEXT_LINES)
    new_ctx_end = min(len(new_lines) - 1, new_end + CONTEXT_LINES)

    out = [
        f"--- {path}",
        f"+++ {path}",
        f"@@ -{ctx_start + 1},{old_ctx_end - ctx_start + 1} "
        f"+{ctx_start + 1},{new_ctx_end - ctx_start + 1} @@",
    ]
    out.extend(f" {line}" for line in old_lines[ctx_start:start])
    out.extend(f"-{line}" for line in old_lines[start : old_end + 1])
    out.extend(f"+{line}" for line in new_lines[start : new_end + 1])
    out.extend(f" {line}" for line in old_lines[old_end + 1 : old_ctx_end + 1])
    return "\n".join(out)
