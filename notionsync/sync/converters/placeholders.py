"""
Placeholder references embedded in converted content.

Every link to another remote node is written as an anchor carrying the
target's external id in ``data-ref-id``. While the target is not synced the
anchor points at a ``notionsync://ref/`` href and is marked pending; the
resolver sweep rewrites the same anchor later. The id attribute survives
rewriting, so a link can be rewritten again when its target moves.
"""

import re
from typing import Callable, List, Optional, Tuple

from .base import escape

PENDING_HREF_PREFIX = "notionsync://ref/"

STATUS_PENDING = "pending"
STATUS_RESOLVED = "resolved"
STATUS_BROKEN = "broken"

ANCHOR_PATTERN = re.compile(r'<a\s[^>]*?data-ref-id="([^"]+)"[^>]*>', re.IGNORECASE)


def build_anchor_tag(external_id: str, href: Optional[str], status: str) -> str:
    if status == STATUS_RESOLVED and href:
        return f'<a href="{escape(href)}" data-ref-id="{escape(external_id)}" data-ref-status="{STATUS_RESOLVED}">'
    css = ' class="notionsync-broken-ref"' if status == STATUS_BROKEN else ''
    return (
        f'<a href="{PENDING_HREF_PREFIX}{escape(external_id)}" data-ref-id="{escape(external_id)}" '
        f'data-ref-status="{status}"{css}>'
    )


def reference_anchor(external_id: str, inner_html: str, href: Optional[str] = None) -> str:
    """Anchor for a link to another node; resolved when href is already known."""
    status = STATUS_RESOLVED if href else STATUS_PENDING
    return f"{build_anchor_tag(external_id, href, status)}{inner_html}</a>"


def find_references(html: str) -> List[str]:
    seen: List[str] = []
    for match in ANCHOR_PATTERN.finditer(html or ""):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def find_pending_references(html: str) -> List[str]:
    """Ids whose anchor was written as a pending placeholder."""
    pending: List[str] = []
    for match in ANCHOR_PATTERN.finditer(html or ""):
        if f'data-ref-status="{STATUS_PENDING}"' in match.group(0) and match.group(1) not in pending:
            pending.append(match.group(1))
    return pending


def rewrite_references(html: str, decide: Callable[[str], Tuple[str, Optional[str]]]) -> Tuple[str, int]:
    """
    Rebuild every placeholder anchor's opening tag.

    ``decide(external_id)`` returns ``(status, href)``. Returns the new html and
    how many anchors actually changed.
    """
    changed = 0

    def _replace(match: 're.Match[str]') -> str:
        nonlocal changed
        status, href = decide(match.group(1))
        new_tag = build_anchor_tag(match.group(1), href, status)
        if new_tag != match.group(0):
            changed += 1
        return new_tag

    return ANCHOR_PATTERN.sub(_replace, html or ""), changed
