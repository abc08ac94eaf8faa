"""
Collaborators the synchronization core consumes but does not implement.

The host process owns the HTTP client for the remote content API and the
target content store's native document/asset/navigation primitives; it plugs
them in by subclassing these bases.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .models import ChildRef, ContentNode, HierarchyNode


class ContentSource(ABC):
    """
    Remote content graph. Implementations raise FetchError for hard failures and
    RateLimitedError when the remote side asks for backoff.
    """

    @abstractmethod
    def fetch_node(self, external_id: str) -> ContentNode:
        pass

    @abstractmethod
    def fetch_children(self, external_id: str) -> Sequence[Union[str, ChildRef]]:
        pass

    @abstractmethod
    def fetch_rows(self, database_id: str, cursor: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """One page of database rows and the cursor of the next page (None when exhausted)."""
        pass

    def fetch_database(self, database_id: str) -> Dict[str, Any]:
        """Database title and property schema. Optional; defaults to an untitled database."""
        return {'id': database_id, 'title': '', 'properties': {}}


class ContentStore(ABC):
    """
    Target content store. Writes raise PersistError on failure.
    The store is never consulted for dedup decisions; the registries are.
    """

    @abstractmethod
    def upsert_document(self, external_id: str, fragments: List[Any], parent_target_id: Optional[str],
                        order: int, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create or update the document for external_id and return its target identifier."""
        pass

    @abstractmethod
    def upsert_media_asset(self, data: bytes, metadata: Dict[str, Any]) -> str:
        """Store media bytes. Reuses metadata['target_asset_id'] when present."""
        pass

    @abstractmethod
    def get_document(self, target_identifier: str) -> List[Any]:
        """Persisted fragments of a document."""
        pass

    @abstractmethod
    def update_document(self, target_identifier: str, fragments: List[Any]) -> None:
        pass

    @abstractmethod
    def permalink(self, target_identifier: str) -> str:
        pass

    def asset_url(self, target_asset_id: str) -> Optional[str]:
        """Public URL of a stored asset, when the store exposes one."""
        return None

    def rebuild_navigation(self, tree: HierarchyNode) -> None:
        """Menu/navigation generation from the hierarchy tree. No-op unless the store supports it."""
        return None


class MediaDownloader(ABC):

    @abstractmethod
    def download(self, url: str, timeout: float) -> Tuple[bytes, Dict[str, Any]]:
        """Return the raw bytes and response metadata (content_type, filename)."""
        pass
