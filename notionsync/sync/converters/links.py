"""Converters for blocks that point at other remote nodes."""

from typing import List, Union

from ..models import Block, normalize_external_id
from .base import BlockConverter, ConversionContext, Fragment, escape
from .placeholders import reference_anchor


class ChildPageConverter(BlockConverter):
    block_types = ('child_page',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        title = block.payload.get('title') or 'Untitled Page'
        if not block.id:
            return Fragment('paragraph', f"<p><strong>{escape(title)}</strong></p>")
        page_id = normalize_external_id(block.id)
        anchor = reference_anchor(page_id, escape(title), ctx.link_for(page_id))
        return Fragment('paragraph', f'<p class="notionsync-child-page">{anchor}</p>',
                        attrs={'notionId': page_id}, source_block_id=block.id, references=[page_id])


class LinkToPageConverter(BlockConverter):
    block_types = ('link_to_page',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        target_type = block.payload.get('type', 'page_id')
        target = block.payload.get(target_type)
        if not target:
            raise ValueError("link_to_page block has no target id")
        target_id = normalize_external_id(target)
        anchor = reference_anchor(target_id, escape(block.payload.get('title') or target_id), ctx.link_for(target_id))
        return Fragment('paragraph', f'<p class="notionsync-link-to-page">{anchor}</p>',
                        attrs={'notionId': target_id}, source_block_id=block.id, references=[target_id])


class ChildDatabaseConverter(BlockConverter):
    """An inline database becomes a database-view placeholder linking to the database's container document."""
    block_types = ('child_database',)

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        title = block.payload.get('title') or 'Untitled Database'
        database_id = normalize_external_id(block.id)
        anchor = reference_anchor(database_id, escape(title), ctx.link_for(database_id))
        html = (f'<div class="notionsync-database-view" data-database-id="{escape(database_id)}">'
                f'<p>{anchor}</p></div>')
        return Fragment('notionsync/database-view', html, attrs={'databaseId': database_id, 'viewType': 'table'},
                        source_block_id=block.id, references=[database_id])
