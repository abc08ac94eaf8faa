"""
Data model of the synchronization core.

ContentNode and HierarchyNode are transient (rebuilt on every pass);
ReferenceEntry, MediaEntry and Job mirror rows of the durable tables.
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional


def normalize_external_id(external_id: str) -> str:
    """Remote ids are compared without dashes and case-insensitively."""
    return external_id.replace('-', '').strip().lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeKind(str, Enum):
    PAGE = "page"
    DATABASE_ROW = "database_row"
    DATABASE = "database"


class NodeState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    CONVERTING = "converting"
    PERSISTING = "persisting"
    REGISTERED = "registered"
    FAILED = "failed"


class ReferenceStatus(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    FAILED = "failed"


class LinkStatus(str, Enum):
    """Status of one placeholder (owner -> target) inside persisted content."""
    PENDING = "pending"
    RESOLVED = "resolved"
    BROKEN = "broken"


class JobKind(str, Enum):
    SYNC_NODE = "sync_node"
    SYNC_BATCH = "sync_batch"
    RESOLVE_LINKS = "resolve_links"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Block:
    """One typed block of remote content. ``payload`` is the type-specific body."""
    id: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    children: List['Block'] = field(default_factory=list)
    has_children: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Block':
        block_type = data.get('type', 'unknown')
        payload = data.get(block_type)
        children = [cls.from_dict(child) for child in data.get('children', []) or []]
        return cls(
            id=data.get('id', ''),
            type=block_type,
            payload=payload if isinstance(payload, dict) else {},
            children=children,
            has_children=bool(data.get('has_children')) or bool(children),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'type': self.type,
            self.type: self.payload,
            'has_children': self.has_children,
        }
        if self.children:
            data['children'] = [child.to_dict() for child in self.children]
        return data


@dataclass
class ContentNode:
    """A remote page or database row as fetched for one sync pass. Never persisted."""
    external_id: str
    kind: NodeKind = NodeKind.PAGE
    parent_external_id: Optional[str] = None
    blocks: List[Block] = field(default_factory=list)
    last_modified: Optional[datetime] = None
    depth: int = 0
    title: str = ""
    properties: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.external_id = normalize_external_id(self.external_id)
        if self.parent_external_id:
            self.parent_external_id = normalize_external_id(self.parent_external_id)


@dataclass
class ChildRef:
    """A child listed by ContentSource.fetch_children, with its native ordering if known."""
    external_id: str
    title: str = ""
    order: Optional[int] = None


@dataclass
class ReferenceEntry:
    external_id: str
    target_identifier: Optional[str] = None
    status: ReferenceStatus = ReferenceStatus.UNRESOLVED
    last_synced_at: Optional[datetime] = None
    error_detail: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.status == ReferenceStatus.RESOLVED


@dataclass
class MediaEntry:
    external_media_id: str
    target_asset_id: str
    source_fingerprint: str
    registered_at: datetime
    updated_at: Optional[datetime] = None


@dataclass
class HierarchyNode:
    """In-memory tree node. Only parent pointer + order are ever persisted (by the store)."""
    external_id: str
    title: str = ""
    target_identifier: Optional[str] = None
    children: List['HierarchyNode'] = field(default_factory=list)
    order: int = 0
    depth: int = 0
    truncated: bool = False
    truncation_reason: Optional[str] = None  # 'depth' or 'cycle'
    has_more: bool = False  # enumeration stopped here, more descendants exist remotely

    def walk(self) -> Iterator['HierarchyNode']:
        """Breadth-first iteration over this subtree."""
        queue = deque([self])
        while queue:
            node = queue.popleft()
            yield node
            queue.extend(node.children)

    def find(self, external_id: str) -> Optional['HierarchyNode']:
        external_id = normalize_external_id(external_id)
        for node in self.walk():
            if node.external_id == external_id:
                return node
        return None

    def syncable(self) -> List['HierarchyNode']:
        """Nodes that are synced, parents before children."""
        return [node for node in self.walk() if not node.truncated]

    def parent_map(self) -> Dict[str, Optional[str]]:
        parents: Dict[str, Optional[str]] = {self.external_id: None}
        for node in self.walk():
            for child in node.children:
                parents.setdefault(child.external_id, node.external_id)
        return parents

    def attach_targets(self, lookup: Callable[[str], Optional[str]]) -> None:
        for node in self.walk():
            if not node.truncated:
                node.target_identifier = lookup(node.external_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'external_id': self.external_id,
            'title': self.title,
            'target_identifier': self.target_identifier,
            'order': self.order,
            'depth': self.depth,
            'truncated': self.truncated,
            'truncation_reason': self.truncation_reason,
            'has_more': self.has_more,
            'children': [child.to_dict() for child in self.children],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HierarchyNode':
        return cls(
            external_id=data['external_id'],
            title=data.get('title', ''),
            target_identifier=data.get('target_identifier'),
            order=data.get('order', 0),
            depth=data.get('depth', 0),
            truncated=data.get('truncated', False),
            truncation_reason=data.get('truncation_reason'),
            has_more=data.get('has_more', False),
            children=[cls.from_dict(child) for child in data.get('children', [])],
        )


@dataclass
class Job:
    """Unit of queued work. Progress counters are observable while the job runs."""
    kind: JobKind
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    status: JobStatus = JobStatus.QUEUED
    attempt_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    total: int = 0
    completed_count: int = 0
    failed_count: int = 0
    node_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error_detail: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)
    not_before: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def member_ids(self) -> List[str]:
        return list(self.payload.get('node_ids', []))

    @property
    def percentage(self) -> int:
        if not self.total:
            return 0
        return round((self.completed_count + self.failed_count) / self.total * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'kind': self.kind.value,
            'status': self.status.value,
            'attempt_count': self.attempt_count,
            'created_at': self.created_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'total': self.total,
            'completed_count': self.completed_count,
            'failed_count': self.failed_count,
            'percentage': self.percentage,
            'error_detail': self.error_detail,
            'depends_on': list(self.depends_on),
            'result': self.result,
        }


@dataclass
class MediaRequest:
    """A hosted media object a converter needs downloaded before the node is persisted."""
    external_media_id: str
    url: str
    fingerprint: str
    media_type: str = "image"
    caption: str = ""
    filename: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'external_media_id': self.external_media_id,
            'url': self.url,
            'fingerprint': self.fingerprint,
            'media_type': self.media_type,
            'caption': self.caption,
            'filename': self.filename,
        }


@dataclass
class NodeResult:
    """Outcome of one node's pass through the state machine."""
    external_id: str
    state: NodeState
    target_identifier: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    media_downloaded: int = 0
    media_failed: int = 0
    references: int = 0

    @property
    def ok(self) -> bool:
        return self.state == NodeState.REGISTERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'external_id': self.external_id,
            'state': self.state.value,
            'target_identifier': self.target_identifier,
            'error': self.error,
            'retryable': self.retryable,
            'media_downloaded': self.media_downloaded,
            'media_failed': self.media_failed,
            'references': self.references,
        }
