"""Text replacement for the edit_file tool.

`replace()` tries an exact substring match first. When that finds nothing it
falls back to comparing whole lines with surrounding whitespace stripped, so
an old_text copied with different indentation still lands on the right block.
"""

from __future__ import annotations


def _trimmed_spans(content: str, old_text: str) -> list[tuple[int, int]]:
    """Character spans of every line-trimmed match of old_text, in order."""
    content_lines = content.split("\n")
    body = old_text[:-1] if old_text.endswith("\n") else old_text
    wanted = [line.strip() for line in body.split("\n")]
    n = len(wanted)

    # Offset of the start of each line in content.
    offsets = [0]
    for line in content_lines:
        offsets.append(offsets[-1] + len(line) + 1)

    spans: list[tuple[int, int]] = []
    i = 0
    while i <= len(content_lines) - n:
        if all(content_lines[i + j].strip() == wanted[j] for j in range(n)):
            start = offsets[i]
            end = offsets[i + n] - 1  # drop the newline after the last line
            if old_text.endswith("\n") and end < len(content):
                end += 1
            spans.append((start, end))
            i += n
        else:
            i += 1
    return spans


def replace(
    content: str,
    old_text: str,
    new_text: str,
    replace_all: bool = False,
) -> tuple[str, int]:
    """Replace old_text with new_text in content.

    Returns (new_content, replacements). Without replace_all only the first
    occurrence is replaced.

    Raises ValueError with "old_text must not be empty", "no changes" or
    "text not found".
    """
    if not old_text:
        raise ValueError("old_text must not be empty")
    if old_text == new_text:
        raise ValueError("no changes")

    count = content.count(old_text)
    if count:
        if replace_all:
            return content.replace(old_text, new_text), count
        return content.replace(old_text, new_text, 1), 1

    spans = _trimmed_spans(content, old_text)
    if not spans:
        raise ValueError("text not found")
    if not replace_all:
        spans = spans[:1]

    # Splice from the back so earlier offsets stay valid.
    result = content
    for start, end in reversed(spans):
        result = result[:start] + new_text + result[end:]
    return result, len(spans)
