"""
In-memory collaborators for tests: a remote source built from dicts and a
target store that counts every create and update.
"""

import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..converters.base import Fragment
from ..error_tracker import FetchError, MediaDownloadError, PersistError
from ..interfaces import ContentSource, ContentStore, MediaDownloader
from ..models import Block, ChildRef, ContentNode, HierarchyNode, NodeKind, normalize_external_id


def text_span(content: str, link: Optional[str] = None, **annotations) -> Dict[str, Any]:
    span = {'type': 'text', 'text': {'content': content, 'link': {'url': link} if link else None},
            'plain_text': content, 'annotations': annotations}
    return span


def paragraph(block_id: str, *spans: Dict[str, Any]) -> Block:
    return Block(id=block_id, type='paragraph', payload={'rich_text': list(spans)})


def hosted_image(block_id: str, url: str, caption: str = '') -> Block:
    return Block(id=block_id, type='image', payload={
        'type': 'file',
        'file': {'url': url},
        'caption': [text_span(caption)] if caption else [],
    })


def page_link(block_id: str, target_id: str) -> Block:
    return Block(id=block_id, type='link_to_page', payload={'type': 'page_id', 'page_id': target_id})


class FakeSource(ContentSource):
    """
    Remote graph from plain dicts. Ids in ``failing`` always raise FetchError;
    ``flaky`` maps an id to the number of failures before a fetch succeeds.
    """

    def __init__(self, nodes: Optional[Dict[str, ContentNode]] = None,
                 children: Optional[Dict[str, Sequence[Union[str, ChildRef]]]] = None,
                 rows: Optional[Dict[str, List[Dict[str, Any]]]] = None, page_size: int = 10):
        self.nodes = {normalize_external_id(k): v for k, v in (nodes or {}).items()}
        self.children = {normalize_external_id(k): list(v) for k, v in (children or {}).items()}
        self.rows = {normalize_external_id(k): list(v) for k, v in (rows or {}).items()}
        self.page_size = page_size
        self.failing = set()
        self.flaky: Dict[str, int] = {}
        self.fetch_counts: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def add_page(self, external_id: str, blocks: Optional[List[Block]] = None, title: str = '',
                 kind: NodeKind = NodeKind.PAGE, properties: Optional[Dict[str, Any]] = None) -> ContentNode:
        node = ContentNode(external_id=external_id, kind=kind, blocks=blocks or [], title=title or external_id,
                           properties=properties or {})
        self.nodes[node.external_id] = node
        return node

    def fetch_node(self, external_id: str) -> ContentNode:
        external_id = normalize_external_id(external_id)
        with self._lock:
            self.fetch_counts[external_id] += 1
            if external_id in self.failing:
                raise FetchError(f"Remote error for {external_id}", external_id=external_id)
            if self.flaky.get(external_id, 0) > 0:
                self.flaky[external_id] -= 1
                raise FetchError(f"Temporary remote error for {external_id}", external_id=external_id)
        if external_id not in self.nodes:
            raise FetchError(f"Unknown node {external_id}", external_id=external_id)
        node = self.nodes[external_id]
        return ContentNode(
            external_id=node.external_id, kind=node.kind, parent_external_id=node.parent_external_id,
            blocks=[Block.from_dict(block.to_dict()) for block in node.blocks],
            last_modified=node.last_modified, title=node.title, properties=dict(node.properties),
        )

    def fetch_children(self, external_id: str) -> Sequence[Union[str, ChildRef]]:
        return list(self.children.get(normalize_external_id(external_id), []))

    def fetch_rows(self, database_id: str, cursor: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        rows = self.rows.get(normalize_external_id(database_id))
        if rows is None:
            raise FetchError(f"Unknown database {database_id}", external_id=database_id)
        start = int(cursor or 0)
        end = start + self.page_size
        return rows[start:end], (str(end) if end < len(rows) else None)

    def fetch_database(self, database_id: str) -> Dict[str, Any]:
        return {'id': database_id, 'title': f"Database {database_id}", 'properties': {}}


class FakeStore(ContentStore):
    """Target store keeping deep copies of fragments, keyed by the external id each document was created for."""

    def __init__(self):
        self.documents: Dict[str, List[Dict[str, Any]]] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.placement: Dict[str, Tuple[Optional[str], int]] = {}
        self.by_external_id: Dict[str, str] = {}
        self.assets: Dict[str, bytes] = {}
        self.asset_metadata: Dict[str, Dict[str, Any]] = {}
        self.created = 0
        self.updated = 0
        self.assets_created = 0
        self.assets_replaced = 0
        self.navigation: Optional[HierarchyNode] = None
        self.fail_upserts = set()
        self.fail_updates = set()

    def upsert_document(self, external_id: str, fragments: List[Any], parent_target_id: Optional[str],
                        order: int, metadata: Optional[Dict[str, Any]] = None) -> str:
        if external_id in self.fail_upserts:
            raise PersistError(f"Store rejected {external_id}", external_id=external_id)
        target = self.by_external_id.get(external_id)
        if target is None:
            self.created += 1
            target = f"post-{self.created}"
            self.by_external_id[external_id] = target
        else:
            self.updated += 1
        self.documents[target] = [fragment.to_dict() for fragment in fragments]
        self.metadata[target] = dict(metadata or {})
        self.placement[target] = (parent_target_id, order)
        return target

    def upsert_media_asset(self, data: bytes, metadata: Dict[str, Any]) -> str:
        asset_id = metadata.get('target_asset_id')
        if asset_id:
            self.assets_replaced += 1
        else:
            self.assets_created += 1
            asset_id = f"asset-{self.assets_created}"
        self.assets[asset_id] = data
        self.asset_metadata[asset_id] = dict(metadata)
        return asset_id

    def get_document(self, target_identifier: str) -> List[Any]:
        return [Fragment.from_dict(data) for data in self.documents[target_identifier]]

    def update_document(self, target_identifier: str, fragments: List[Any]) -> None:
        if target_identifier in self.fail_updates:
            raise PersistError(f"Store rejected update of {target_identifier}")
        self.updated += 1
        self.documents[target_identifier] = [fragment.to_dict() for fragment in fragments]

    def permalink(self, target_identifier: str) -> str:
        return f"https://site.test/?p={target_identifier}"

    def asset_url(self, target_asset_id: str) -> Optional[str]:
        return f"https://site.test/media/{target_asset_id}"

    def rebuild_navigation(self, tree: HierarchyNode) -> None:
        self.navigation = tree

    def html(self, target_identifier: str) -> str:
        return "".join(data['html'] for data in self.documents[target_identifier])


class FakeDownloader(MediaDownloader):
    """Counts downloads per URL path. URLs in ``failing`` always fail."""

    def __init__(self, content: bytes = b"\x89PNG fake"):
        self.content = content
        self.calls: List[str] = []
        self.failing = set()

    def download(self, url: str, timeout: float) -> Tuple[bytes, Dict[str, Any]]:
        self.calls.append(url)
        if url in self.failing:
            raise MediaDownloadError(f"Download failed for {url}")
        return self.content, {'content_type': 'image/png', 'filename': url.rsplit('/', 1)[-1].split('?')[0]}
