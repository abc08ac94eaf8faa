"""
Catch-all converter for block types nothing else handles.

Unknown blocks never fail a sync. Their best-effort text is kept visible and
the original block is encoded into an HTML comment marker so a later version
with a real converter can recover it without refetching.
"""

import base64
import json
import re
from typing import Any, Dict, List, Optional, Union

from ..logging_manager import get_logger
from ..models import Block
from .base import BlockConverter, ConversionContext, Fragment, escape
from .rich_text import plain_text

logger = get_logger(__name__)

MARKER_PATTERN = re.compile(r'<!-- notionsync:unsupported ([A-Za-z0-9_\-=]+) -->')


def encode_unsupported_marker(block: Block) -> str:
    encoded = base64.urlsafe_b64encode(json.dumps(block.to_dict(), sort_keys=True).encode('utf-8')).decode('ascii')
    return f"<!-- notionsync:unsupported {encoded} -->"


def decode_unsupported_marker(html: str) -> Optional[Block]:
    """Recover the original block from a fallback marker, or None when there is no marker."""
    match = MARKER_PATTERN.search(html or "")
    if not match:
        return None
    data = json.loads(base64.urlsafe_b64decode(match.group(1).encode('ascii')).decode('utf-8'))
    return Block.from_dict(data)


def extract_text(block: Block) -> str:
    payload: Dict[str, Any] = block.payload
    for key in ('rich_text', 'title', 'caption'):
        if isinstance(payload.get(key), list):
            return plain_text(payload[key])
    if isinstance(payload.get('text'), str):
        return payload['text']
    if isinstance(payload.get('url'), str):
        return f"Link: {payload['url']}"
    return ""


class FallbackConverter(BlockConverter):

    def supports(self, block_type: str) -> bool:
        return True

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        logger.info(f"Unsupported block type: {block.type} (id: {block.id})")
        text = extract_text(block)
        body = f'<p class="notionsync-unsupported-block">{escape(text)}</p>' if text else ''
        return Fragment('notionsync/unsupported', f"{encode_unsupported_marker(block)}{body}",
                        attrs={'blockType': block.type}, source_block_id=block.id)
