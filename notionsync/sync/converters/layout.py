"""Converters for tables and column layouts."""

from typing import List, Union

from ..models import Block
from .base import BlockConverter, ConversionContext, Fragment
from .rich_text import to_html


class TableConverter(BlockConverter):
    block_types = ('table',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        has_column_header = bool(block.payload.get('has_column_header'))
        has_row_header = bool(block.payload.get('has_row_header'))
        rows = [child for child in block.children if child.type == 'table_row']
        if not rows:
            return Fragment('paragraph', '<p><em>[Table with no content]</em></p>', source_block_id=block.id)

        references: List[str] = []
        head, body = [], []
        for index, row in enumerate(rows):
            header_row = has_column_header and index == 0
            cells = []
            for position, cell in enumerate(row.payload.get('cells') or []):
                tag = 'th' if header_row or (has_row_header and position == 0) else 'td'
                cells.append(f"<{tag}>{to_html(cell, ctx, references)}</{tag}>")
            (head if header_row else body).append(f"<tr>{''.join(cells)}</tr>")

        html = '<figure class="wp-block-table"><table>'
        if head:
            html += f"<thead>{''.join(head)}</thead>"
        html += f"<tbody>{''.join(body)}</tbody></table></figure>"
        return Fragment('table', html, source_block_id=block.id, references=references)


class ColumnListConverter(BlockConverter):
    block_types = ('column_list',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        columns = [child for child in block.children if child.type == 'column']
        nested_fragments: List[Fragment] = []
        rendered = []
        for column in columns:
            children = ctx.convert_children(column.children)
            nested_fragments.extend(children)
            inner = "".join(child.to_markup() for child in children)
            rendered.append(f'<div class="wp-block-column">{inner}</div>')
        fragment = Fragment('columns', f'<div class="wp-block-columns">{"".join(rendered)}</div>',
                            source_block_id=block.id)
        fragment.absorb(nested_fragments)
        return fragment
