from .base import BlockConverter, ConversionContext, Fragment, GroupingConverter, media_marker, render_markup
from .fallback import FallbackConverter, decode_unsupported_marker
from .media_blocks import render_broken_media, render_media
from .placeholders import find_pending_references, find_references, reference_anchor, rewrite_references
from .registry import ConverterRegistry, ConverterRegistryBuilder, default_registry
from .rich_text import extract_internal_id, plain_text

__all__ = [
    'BlockConverter',
    'ConversionContext',
    'ConverterRegistry',
    'ConverterRegistryBuilder',
    'FallbackConverter',
    'Fragment',
    'GroupingConverter',
    'decode_unsupported_marker',
    'default_registry',
    'extract_internal_id',
    'find_pending_references',
    'find_references',
    'media_marker',
    'plain_text',
    'reference_anchor',
    'render_broken_media',
    'render_markup',
    'render_media',
    'rewrite_references',
]
