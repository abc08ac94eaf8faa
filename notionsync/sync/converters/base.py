"""
Fragments, the conversion context and the converter capability.

A converter turns one remote block into target-format fragments. Converters
are pure: they never perform I/O. Whatever they need to know about the rest of
the graph (is page X already synced? is image Y already stored?) comes through
read-only lookups on the ConversionContext.
"""

from __future__ import annotations

import html
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, TYPE_CHECKING, Union

from ..models import Block, MediaRequest, normalize_external_id

if TYPE_CHECKING:
    from .registry import ConverterRegistry


@dataclass
class Fragment:
    """One piece of converted content, serialized as a block-comment delimited chunk."""
    block_name: str
    html: str = ""
    attrs: Dict[str, Any] = field(default_factory=dict)
    source_block_id: Optional[str] = None
    references: List[str] = field(default_factory=list)
    media: List[MediaRequest] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def awaiting_media(self) -> bool:
        return any(media_marker(request.external_media_id) in self.html for request in self.media)

    def absorb(self, children: Sequence['Fragment']) -> None:
        """Take over references and media of nested fragments inlined into this one."""
        for child in children:
            self.references.extend(ref for ref in child.references if ref not in self.references)
            self.media.extend(child.media)

    def to_markup(self) -> str:
        attrs_json = f" {json.dumps(self.attrs, ensure_ascii=False, sort_keys=True)}" if self.attrs else ""
        if not self.html:
            return f"<!-- wp:{self.block_name}{attrs_json} /-->\n"
        return f"<!-- wp:{self.block_name}{attrs_json} -->\n{self.html}\n<!-- /wp:{self.block_name} -->\n"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'block_name': self.block_name,
            'html': self.html,
            'attrs': dict(self.attrs),
            'source_block_id': self.source_block_id,
            'references': list(self.references),
            'media': [request.to_dict() for request in self.media],
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Fragment':
        return cls(
            block_name=data['block_name'],
            html=data.get('html', ''),
            attrs=dict(data.get('attrs') or {}),
            source_block_id=data.get('source_block_id'),
            references=list(data.get('references') or []),
            media=[MediaRequest(**request) for request in data.get('media') or []],
            error=data.get('error'),
        )


def media_marker(external_media_id: str) -> str:
    return f"<!-- notionsync:media-pending {external_media_id} -->"


def render_markup(fragments: Sequence[Fragment]) -> str:
    return "\n".join(fragment.to_markup() for fragment in fragments)


class ReferenceLookup(Protocol):
    def resolve(self, external_id: str) -> Optional[str]: ...


class MediaLookup(Protocol):
    def find(self, external_media_id: str) -> Optional[str]: ...
    def needs_refetch(self, external_media_id: str, current_fingerprint: str) -> bool: ...


@dataclass
class ConversionContext:
    """Per-node conversion state handed to every converter."""
    owner_external_id: str
    owner_target_id: Optional[str] = None
    references: Optional[ReferenceLookup] = None
    media: Optional[MediaLookup] = None
    permalink: Callable[[str], str] = lambda target_identifier: target_identifier
    asset_url: Callable[[str], Optional[str]] = lambda target_asset_id: None
    registry: Optional['ConverterRegistry'] = None
    nesting: int = 0

    def link_for(self, external_id: str) -> Optional[str]:
        """Concrete link for an already-synced node, None while it is pending."""
        if self.references is None:
            return None
        target = self.references.resolve(normalize_external_id(external_id))
        return self.permalink(target) if target else None

    def existing_asset(self, external_media_id: str, fingerprint: str) -> Optional[str]:
        """Stored asset id that can be reused as-is, or None when a download is needed."""
        if self.media is None:
            return None
        asset_id = self.media.find(external_media_id)
        if asset_id and not self.media.needs_refetch(external_media_id, fingerprint):
            return asset_id
        return None

    def convert_children(self, blocks: Sequence[Block]) -> List[Fragment]:
        if not blocks or self.registry is None:
            return []
        child_ctx = ConversionContext(
            owner_external_id=self.owner_external_id,
            owner_target_id=self.owner_target_id,
            references=self.references,
            media=self.media,
            permalink=self.permalink,
            asset_url=self.asset_url,
            registry=self.registry,
            nesting=self.nesting + 1,
        )
        return self.registry.convert_all(blocks, child_ctx)


class BlockConverter(ABC):
    """Converter capability: declares the block types it handles and converts one block."""
    block_types: Sequence[str] = ()

    def supports(self, block_type: str) -> bool:
        return block_type in self.block_types

    @abstractmethod
    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        pass


class GroupingConverter(BlockConverter):
    """
    Converter for blocks that only make sense as a run (list items).
    The registry hands it every consecutive block sharing the same group key.
    """

    def group_key(self, block: Block) -> str:
        return block.type

    @abstractmethod
    def convert_group(self, blocks: List[Block], ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        pass

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        return self.convert_group([block], ctx)


def escape(text: str) -> str:
    return html.escape(text or "", quote=True)


def error_fragment(block: Block, message: str) -> Fragment:
    """Visible marker for a block whose payload could not be converted."""
    return Fragment(
        block_name='html',
        html=(
            f'<!-- notionsync:conversion-error type="{escape(block.type)}" id="{escape(block.id)}" -->\n'
            f'<p class="notionsync-conversion-error">Could not convert {escape(block.type)} block: {escape(message)}</p>'
        ),
        source_block_id=block.id,
        error=message,
    )
