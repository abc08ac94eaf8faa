"""Converters for text-bearing blocks."""

from typing import Dict, List, Union

from ..models import Block
from .base import BlockConverter, ConversionContext, Fragment, GroupingConverter, escape
from .rich_text import plain_text, to_html

CODE_LANGUAGES: Dict[str, str] = {
    'c++': 'cpp',
    'c#': 'csharp',
    'f#': 'fsharp',
    'html': 'markup',
    'xml': 'markup',
    'shell': 'bash',
    'plain text': 'plaintext',
    'objective-c': 'objectivec',
    'visual basic': 'vbnet',
    'webassembly': 'wasm',
    'java/c/c++/c#': 'clike',
}


def _color_class(color: str) -> str:
    if not color or color == 'default':
        return ''
    return f" notionsync-color-{escape(color)}"


def _with_children(block: Block, ctx: ConversionContext, fragment: Fragment) -> List[Fragment]:
    return [fragment] + ctx.convert_children(block.children)


class ParagraphConverter(BlockConverter):
    block_types = ('paragraph',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        references: List[str] = []
        inner = to_html(block.payload.get('rich_text'), ctx, references)
        fragment = Fragment('paragraph', f"<p>{inner}</p>", source_block_id=block.id, references=references)
        return _with_children(block, ctx, fragment)


class HeadingConverter(BlockConverter):
    block_types = ('heading_1', 'heading_2', 'heading_3')

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        level = int(block.type.rsplit('_', 1)[1])
        references: List[str] = []
        inner = to_html(block.payload.get('rich_text'), ctx, references)
        attrs = {'level': level} if level != 2 else {}
        fragment = Fragment('heading', f"<h{level} class=\"wp-block-heading\">{inner}</h{level}>",
                            attrs=attrs, source_block_id=block.id, references=references)
        if block.payload.get('is_toggleable') and block.children:
            return _with_children(block, ctx, fragment)
        return fragment


class QuoteConverter(BlockConverter):
    block_types = ('quote',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        references: List[str] = []
        inner = to_html(block.payload.get('rich_text'), ctx, references)
        children = ctx.convert_children(block.children)
        nested = "".join(child.to_markup() for child in children)
        fragment = Fragment('quote', f'<blockquote class="wp-block-quote"><p>{inner}</p>{nested}</blockquote>',
                            source_block_id=block.id, references=references)
        fragment.absorb(children)
        return fragment


class CalloutConverter(BlockConverter):
    block_types = ('callout',)

    def _icon(self, icon: Dict) -> str:
        if not icon:
            return ''
        if icon.get('type') == 'emoji':
            return f'<span class="notionsync-callout-icon">{escape(icon.get("emoji", ""))}</span>'
        url = (icon.get(icon.get('type', ''), {}) or {}).get('url')
        if url:
            return f'<img class="notionsync-callout-icon" src="{escape(url)}" alt="">'
        return ''

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        references: List[str] = []
        text = to_html(block.payload.get('rich_text'), ctx, references)
        icon = self._icon(block.payload.get('icon') or {})
        color = _color_class(block.payload.get('color', 'default'))
        html = (
            f'<div class="notionsync-callout{color}">{icon}'
            f'<div class="notionsync-callout-text">{text}</div></div>'
        )
        return Fragment('html', html, source_block_id=block.id, references=references)


class CodeConverter(BlockConverter):
    block_types = ('code',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        code = plain_text(block.payload.get('rich_text'))
        language = (block.payload.get('language') or 'plain text').lower()
        language = CODE_LANGUAGES.get(language, language)
        attrs = {'language': language} if language != 'plaintext' else {}
        fragments = [Fragment('code', f'<pre class="wp-block-code"><code>{escape(code)}</code></pre>',
                              attrs=attrs, source_block_id=block.id)]
        caption = plain_text(block.payload.get('caption'))
        if caption:
            fragments.append(Fragment('paragraph', f'<p class="notionsync-code-caption"><em>{escape(caption)}</em></p>',
                                      source_block_id=block.id))
        return fragments


class DividerConverter(BlockConverter):
    block_types = ('divider',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        return Fragment('separator', '<hr class="wp-block-separator has-alpha-channel-opacity"/>', source_block_id=block.id)


class EquationConverter(BlockConverter):
    block_types = ('equation',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        expression = block.payload.get('expression', '')
        return Fragment('html', f'<div class="notionsync-equation">{escape(expression)}</div>', source_block_id=block.id)


class ToggleConverter(BlockConverter):
    block_types = ('toggle',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        references: List[str] = []
        summary = to_html(block.payload.get('rich_text'), ctx, references)
        children = ctx.convert_children(block.children)
        body = "".join(child.to_markup() for child in children)
        fragment = Fragment('details', f'<details class="wp-block-details"><summary>{summary}</summary>{body}</details>',
                            source_block_id=block.id, references=references)
        fragment.absorb(children)
        return fragment


class ToDoConverter(BlockConverter):
    block_types = ('to_do',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        references: List[str] = []
        inner = to_html(block.payload.get('rich_text'), ctx, references)
        checked = ' checked' if block.payload.get('checked') else ''
        html = f'<p class="notionsync-todo"><input type="checkbox" disabled{checked}> {inner}</p>'
        return _with_children(block, ctx, Fragment('paragraph', html, source_block_id=block.id, references=references))


class ListItemConverter(GroupingConverter):
    """Consecutive bulleted or numbered items become one list block; nested children become sublists."""
    block_types = ('bulleted_list_item', 'numbered_list_item')

    def convert_group(self, blocks: List[Block], ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        ordered = blocks[0].type == 'numbered_list_item'
        tag = 'ol' if ordered else 'ul'
        references: List[str] = []
        nested_fragments: List[Fragment] = []
        items = []
        for block in blocks:
            inner = to_html(block.payload.get('rich_text'), ctx, references)
            children = ctx.convert_children(block.children)
            nested_fragments.extend(children)
            items.append(f"<li>{inner}{''.join(child.html for child in children)}</li>")
        attrs = {'ordered': True} if ordered else {}
        fragment = Fragment('list', f'<{tag} class="wp-block-list">{"".join(items)}</{tag}>',
                            attrs=attrs, source_block_id=blocks[0].id, references=references)
        fragment.absorb(nested_fragments)
        return fragment
