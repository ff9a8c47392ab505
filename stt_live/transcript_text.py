"""
Transcript text merging and rollback detection.

Used for whole-text providers that stream incremental fragments or resend an
authoritative (possibly shorter) string for the in-flight turn.

Functions:
    merge_text: Append a fragment, dropping the part that overlaps the current text
    resolve_text: Apply a delta or an authoritative server text
    initial_text: Text for a freshly opened turn
    is_rollback: Detect a provider reverting to an earlier, shorter hypothesis
"""

from typing import Optional


def _has_value(value: Optional[str]) -> bool:
    return isinstance(value, str) and len(value) > 0


def merge_text(current: str, delta: str) -> str:
    """
    Append `delta` to `current` using longest suffix/prefix overlap.

    Overlap lengths are tried from min(len(current), len(delta)) down to 1;
    the first (longest) match wins and only the non-overlapping remainder of
    `delta` is appended.

    Examples:
        >>> merge_text("pack the m", "the mic")
        'pack the mic'
        >>> merge_text("hello", " world")
        'hello world'
    """
    current = current or ""
    if not delta:
        return current
    if not current:
        return delta

    for size in range(min(len(current), len(delta)), 0, -1):
        if current.endswith(delta[:size]):
            return current + delta[size:]
    return current + delta


def resolve_text(current: Optional[str], delta: Optional[str] = None, server_text: Optional[str] = None) -> str:
    """
    Resolve the next text for an in-flight turn.

    A delta is merged; otherwise an authoritative server text replaces the
    current text outright; otherwise the current text is returned unchanged.
    """
    base = current if isinstance(current, str) else ""
    if _has_value(delta):
        return merge_text(base, delta)
    if _has_value(server_text):
        return server_text
    return base


def initial_text(delta: Optional[str] = None, server_text: Optional[str] = None) -> str:
    """Text for a new turn: server text first, then the delta, else empty."""
    if _has_value(server_text):
        return server_text
    if _has_value(delta):
        return delta
    return ""


def is_rollback(previous: Optional[str], next_text: Optional[str], is_final: bool, has_server_text: bool) -> bool:
    """
    True when an authoritative update regresses the displayed partial text.

    Only non-final server texts are candidates: the next text must be
    non-empty, strictly shorter than the previous text and a prefix of it.
    """
    if is_final or not has_server_text:
        return False
    if not _has_value(previous) or not _has_value(next_text):
        return False
    if len(next_text) >= len(previous):
        return False
    return previous.startswith(next_text)
