"""String replacement engine for the edit_file tool.

Provides a single public function `replace()` that swaps exactly one
verbatim occurrence of a string. Near misses are reported, never applied.
"""

from __future__ import annotations

SEARCH_PREVIEW_CHARS = 200


def replace(content: str, old_string: str, new_string: str) -> str:
    """Replace the single occurrence of old_string in content.

    Raises ValueError:
      - old_string empty
      - old_string == new_string
      - no verbatim match (mentions a whitespace-trimmed match if one exists)
      - more than one match
    """
    if not old_string:
        raise ValueError("old_string must not be empty")

    count = content.count(old_string)
    if count == 0:
        trimmed = old_string.strip()
        if trimmed and trimmed != old_string and trimmed in content:
            raise ValueError(
                "The exact string was not found, but a trimmed version was found. "
                "Make sure whitespace matches exactly."
            )
        raise ValueError(
            "String not found in file. Make sure the old_string matches exactly, "
            "including whitespace and line breaks.\n\n"
            f"Searched for:\n{old_string[:SEARCH_PREVIEW_CHARS]}"
        )
    if count > 1:
        raise ValueError(
            f"Found {count} occurrences of the string. The old_string must be unique. "
            "Add more surrounding context to make it unique."
        )

    if old_string == new_string:
        raise ValueError("old_string and new_string are identical. No changes needed.")

    return content.replace(old_string, new_string, 1)

