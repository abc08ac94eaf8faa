"""
Converter registry.

Dispatch is an exact lookup on the block type. Converters are registered once
at startup through ``ConverterRegistryBuilder`` and the built registry is
immutable; the fallback converter is mandatory, so every block converts to
something.
"""

from typing import Dict, List, Optional, Sequence

from ..error_tracker import ConversionError
from ..logging_manager import get_logger
from ..models import Block
from .base import BlockConverter, ConversionContext, Fragment, GroupingConverter, error_fragment
from .fallback import FallbackConverter
from .layout import ColumnListConverter, TableConverter
from .links import ChildDatabaseConverter, ChildPageConverter, LinkToPageConverter
from .media_blocks import EmbedConverter, FileConverter, ImageConverter
from .text import (
    CalloutConverter,
    CodeConverter,
    DividerConverter,
    EquationConverter,
    HeadingConverter,
    ListItemConverter,
    ParagraphConverter,
    QuoteConverter,
    ToDoConverter,
    ToggleConverter,
)

logger = get_logger(__name__)

DEFAULT_CONVERTERS = [
    ParagraphConverter,
    HeadingConverter,
    ListItemConverter,
    ToDoConverter,
    QuoteConverter,
    CalloutConverter,
    CodeConverter,
    DividerConverter,
    EquationConverter,
    ToggleConverter,
    ImageConverter,
    FileConverter,
    EmbedConverter,
    ChildPageConverter,
    LinkToPageConverter,
    ChildDatabaseConverter,
    TableConverter,
    ColumnListConverter,
]


class ConverterRegistry:
    def __init__(self, converters: Dict[str, BlockConverter], fallback: BlockConverter):
        self._converters = dict(converters)
        self._fallback = fallback

    @property
    def block_types(self) -> List[str]:
        return sorted(self._converters)

    def converter_for(self, block_type: str) -> BlockConverter:
        return self._converters.get(block_type, self._fallback)

    def _run(self, converter: BlockConverter, blocks: List[Block], ctx: ConversionContext) -> List[Fragment]:
        try:
            if isinstance(converter, GroupingConverter):
                result = converter.convert_group(blocks, ctx)
            else:
                result = converter.convert(blocks[0], ctx)
        except (ConversionError, KeyError, TypeError, ValueError, AttributeError, IndexError) as e:
            logger.warning(f"Malformed {blocks[0].type} block {blocks[0].id}: {e}")
            return [error_fragment(block, str(e)) for block in blocks]
        return result if isinstance(result, list) else [result]

    def convert(self, block: Block, ctx: ConversionContext) -> List[Fragment]:
        if ctx.registry is None:
            ctx.registry = self
        return self._run(self.converter_for(block.type), [block], ctx)

    def convert_all(self, blocks: Sequence[Block], ctx: ConversionContext) -> List[Fragment]:
        """Convert blocks in order; consecutive blocks of a grouping converter are handed over as one run."""
        if ctx.registry is None:
            ctx.registry = self
        fragments: List[Fragment] = []
        index = 0
        while index < len(blocks):
            block = blocks[index]
            converter = self.converter_for(block.type)
            run = [block]
            if isinstance(converter, GroupingConverter):
                key = converter.group_key(block)
                while (index + len(run) < len(blocks)
                       and self.converter_for(blocks[index + len(run)].type) is converter
                       and converter.group_key(blocks[index + len(run)]) == key):
                    run.append(blocks[index + len(run)])
            fragments.extend(self._run(converter, run, ctx))
            index += len(run)
        return fragments


class ConverterRegistryBuilder:
    def __init__(self):
        self._converters: Dict[str, BlockConverter] = {}
        self._fallback: Optional[BlockConverter] = None

    def register(self, block_type: str, converter: BlockConverter) -> 'ConverterRegistryBuilder':
        if not converter.supports(block_type):
            raise ValueError(f"{type(converter).__name__} does not support block type '{block_type}'")
        self._converters[block_type] = converter
        return self

    def register_converter(self, converter: BlockConverter) -> 'ConverterRegistryBuilder':
        """Register a converter for every block type it declares."""
        for block_type in converter.block_types:
            self.register(block_type, converter)
        return self

    def with_defaults(self) -> 'ConverterRegistryBuilder':
        for converter_class in DEFAULT_CONVERTERS:
            self.register_converter(converter_class())
        return self

    def with_fallback(self, fallback: BlockConverter) -> 'ConverterRegistryBuilder':
        self._fallback = fallback
        return self

    def build(self) -> ConverterRegistry:
        return ConverterRegistry(self._converters, self._fallback or FallbackConverter())


def default_registry() -> ConverterRegistry:
    return ConverterRegistryBuilder().with_defaults().build()
