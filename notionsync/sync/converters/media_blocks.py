"""
Converters for images, files and embeds.

Externally hosted media is embedded by URL. Media hosted by the remote API
(``type == 'file'``) must be copied into the target store: when the media
registry already holds an up-to-date asset it is referenced directly,
otherwise the converter emits a pending marker plus a MediaRequest that the
orchestrator's media step fulfils before the node is persisted.
"""

from typing import Any, Dict, List, Optional, Union

from ..fingerprint import compute_fingerprint
from ..models import Block, MediaRequest, normalize_external_id
from .base import BlockConverter, ConversionContext, Fragment, escape, media_marker
from .rich_text import plain_text

FILE_MEDIA_TYPES = ('file', 'pdf', 'video', 'audio')


def _media_url(payload: Dict[str, Any]) -> Optional[str]:
    source_type = payload.get('type')
    return (payload.get(source_type) or {}).get('url') if source_type else None


def render_image(asset_id: str, url: Optional[str], caption: str) -> str:
    caption_html = f'<figcaption class="wp-element-caption">{escape(caption)}</figcaption>' if caption else ''
    src = f' src="{escape(url)}"' if url else ''
    return (
        f'<figure class="wp-block-image size-large"><img{src} alt="{escape(caption)}" '
        f'class="wp-image-{escape(asset_id)}" data-asset-id="{escape(asset_id)}"/>{caption_html}</figure>'
    )


def render_file(asset_id: str, url: Optional[str], name: str) -> str:
    href = escape(url) if url else f"asset:{escape(asset_id)}"
    return (
        f'<div class="wp-block-file" data-asset-id="{escape(asset_id)}">'
        f'<a href="{href}">{escape(name or "Download")}</a></div>'
    )


def render_media(request: MediaRequest, asset_id: str, url: Optional[str]) -> str:
    if request.media_type == 'image':
        return render_image(asset_id, url, request.caption)
    return render_file(asset_id, url, request.filename or request.caption)


def render_broken_media(request: MediaRequest, reason: str) -> str:
    """Visible placeholder left in content when a media download ultimately fails."""
    return (
        f'<!-- notionsync:media-broken {escape(request.external_media_id)} -->'
        f'<p class="notionsync-broken-media">Media unavailable: '
        f'{escape(request.filename or request.caption or request.external_media_id)} ({escape(reason)})</p>'
    )


class _HostedMediaConverter(BlockConverter):
    block_name = 'file'

    def _request(self, block: Block, url: str) -> MediaRequest:
        payload = block.payload
        file_info = payload.get('file') or {}
        return MediaRequest(
            external_media_id=normalize_external_id(block.id),
            url=url,
            fingerprint=compute_fingerprint(url, file_info.get('content_hash')),
            media_type='image' if block.type == 'image' else block.type,
            caption=plain_text(payload.get('caption')),
            filename=payload.get('name') or file_info.get('name', ''),
        )

    def _hosted(self, block: Block, ctx: ConversionContext, url: str) -> Fragment:
        request = self._request(block, url)
        asset_id = ctx.existing_asset(request.external_media_id, request.fingerprint)
        if asset_id:
            html = render_media(request, asset_id, ctx.asset_url(asset_id))
            return Fragment(self.block_name, html, attrs={'id': asset_id}, source_block_id=block.id)
        return Fragment(self.block_name, media_marker(request.external_media_id),
                        source_block_id=block.id, media=[request])


class ImageConverter(_HostedMediaConverter):
    block_types = ('image',)
    block_name = 'image'

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        url = _media_url(block.payload)
        if not url:
            raise ValueError("image block has no url")
        if block.payload.get('type') == 'external':
            caption = plain_text(block.payload.get('caption'))
            caption_html = f'<figcaption class="wp-element-caption">{escape(caption)}</figcaption>' if caption else ''
            html = (f'<figure class="wp-block-image size-large"><img src="{escape(url)}" '
                    f'alt="{escape(caption)}"/>{caption_html}</figure>')
            return Fragment('image', html, attrs={'sizeSlug': 'large'}, source_block_id=block.id)
        return self._hosted(block, ctx, url)


class FileConverter(_HostedMediaConverter):
    block_types = FILE_MEDIA_TYPES

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        url = _media_url(block.payload)
        if not url:
            raise ValueError(f"{block.type} block has no url")
        if block.payload.get('type') == 'external':
            name = block.payload.get('name') or plain_text(block.payload.get('caption')) or url
            if block.type == 'video':
                return Fragment('embed', f'<figure class="wp-block-embed"><div class="wp-block-embed__wrapper">{escape(url)}</div></figure>',
                                attrs={'url': url}, source_block_id=block.id)
            return Fragment('file', f'<div class="wp-block-file"><a href="{escape(url)}">{escape(name)}</a></div>',
                            source_block_id=block.id)
        return self._hosted(block, ctx, url)


class EmbedConverter(BlockConverter):
    block_types = ('embed', 'bookmark', 'link_preview')

    def convert(self, block: Block, ctx: ConversionContext) -> Union[Fragment, List[Fragment]]:
        url = block.payload.get('url')
        if not url:
            raise ValueError(f"{block.type} block has no url")
        caption = plain_text(block.payload.get('caption'))
        if block.type == 'embed':
            caption_html = f'<figcaption class="wp-element-caption">{escape(caption)}</figcaption>' if caption else ''
            html = (f'<figure class="wp-block-embed"><div class="wp-block-embed__wrapper">{escape(url)}</div>'
                    f'{caption_html}</figure>')
            return Fragment('embed', html, attrs={'url': url}, source_block_id=block.id)
        return Fragment('paragraph', f'<p class="notionsync-bookmark"><a href="{escape(url)}">{escape(caption or url)}</a></p>',
                        source_block_id=block.id)
