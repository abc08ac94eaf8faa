"""
Rich text spans to inline HTML.

Annotations nest in a fixed order, innermost first: code, strikethrough,
underline, italic, bold. Links and page mentions that point at other remote
nodes become placeholder anchors; the ids they reference are collected into
the caller's ``references`` list.
"""

import re
from typing import Any, Dict, List, Optional, Sequence

from ..models import normalize_external_id
from .base import ConversionContext, escape
from .placeholders import reference_anchor

INTERNAL_LINK_PATTERNS = [
    re.compile(r'notion\.so/(?:[^/?#]+/)*(?:[^/?#]*-)?([a-f0-9]{32})', re.IGNORECASE),
    re.compile(r'^/([a-f0-9]{32})(?:[?#].*)?$', re.IGNORECASE),
    re.compile(r'^/?([a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12})(?:[?#].*)?$', re.IGNORECASE),
]

ANNOTATION_TAGS = [
    ('code', 'code'),
    ('strikethrough', 's'),
    ('underline', 'u'),
    ('italic', 'em'),
    ('bold', 'strong'),
]


def extract_internal_id(url: str) -> Optional[str]:
    """Normalized external id when the url points at another remote node."""
    if not url:
        return None
    for pattern in INTERNAL_LINK_PATTERNS:
        match = pattern.search(url)
        if match:
            return normalize_external_id(match.group(1))
    return None


def plain_text(spans: Optional[Sequence[Dict[str, Any]]]) -> str:
    if not spans:
        return ""
    return "".join(_span_text(span) for span in spans)


def _span_text(span: Dict[str, Any]) -> str:
    if 'plain_text' in span:
        return span.get('plain_text') or ""
    if span.get('type') == 'equation':
        return (span.get('equation') or {}).get('expression', '')
    return (span.get('text') or {}).get('content', '')


def _annotate(inner: str, annotations: Dict[str, Any]) -> str:
    for key, tag in ANNOTATION_TAGS:
        if annotations.get(key):
            inner = f"<{tag}>{inner}</{tag}>"
    color = annotations.get('color')
    if color and color != 'default':
        inner = f'<span class="notionsync-color-{escape(color)}">{inner}</span>'
    return inner


def _link_target(span: Dict[str, Any]) -> Optional[str]:
    text = span.get('text') or {}
    link = text.get('link') or {}
    return link.get('url') or span.get('href')


def _mention_target(span: Dict[str, Any]) -> Optional[str]:
    mention = span.get('mention') or {}
    mention_type = mention.get('type')
    if mention_type in ('page', 'database'):
        return (mention.get(mention_type) or {}).get('id')
    return None


def span_to_html(span: Dict[str, Any], ctx: Optional[ConversionContext], references: List[str]) -> str:
    text = _span_text(span)
    if span.get('type') == 'equation':
        inner = f'<code class="notionsync-equation">{escape(text)}</code>'
    else:
        inner = escape(text).replace("\n", "<br>")
    inner = _annotate(inner, span.get('annotations') or {})

    internal_id = None
    if span.get('type') == 'mention':
        mention_id = _mention_target(span)
        internal_id = normalize_external_id(mention_id) if mention_id else None
    href = _link_target(span)
    if internal_id is None and href:
        internal_id = extract_internal_id(href)

    if internal_id:
        if internal_id not in references:
            references.append(internal_id)
        return reference_anchor(internal_id, inner, ctx.link_for(internal_id) if ctx else None)
    if href:
        return f'<a href="{escape(href)}">{inner}</a>'
    return inner


def to_html(spans: Optional[Sequence[Dict[str, Any]]], ctx: Optional[ConversionContext] = None,
            references: Optional[List[str]] = None) -> str:
    if not spans:
        return ""
    collected = references if references is not None else []
    return "".join(span_to_html(span, ctx, collected) for span in spans)
