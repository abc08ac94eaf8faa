"""
Hierarchy builder.

Walks parent/child relationships of the remote graph breadth-first into an
in-memory HierarchyNode tree. The root is at depth 1. Nodes deeper than
``max_depth`` are kept in the tree as truncated "view externally" leaves (down
to ``truncation_lookahead`` further levels, at least one) instead of being
dropped, and an id reached a second time during one walk becomes a truncated
'cycle' leaf.
"""

import time
from collections import deque
from typing import Callable, List, Optional, Sequence, Union

from ..config import MAX_DEPTH_CEILING
from .error_tracker import CycleDetected, ErrorCategory, ErrorSeverity, ErrorTracker, FetchError
from .interfaces import ContentSource
from .logging_manager import get_logger
from .models import ChildRef, HierarchyNode, normalize_external_id
from .resilience import CircuitBreaker, CircuitOpenError, RetryPolicy, with_retry

logger = get_logger(__name__)

TRUNCATED_DEPTH = "depth"
TRUNCATED_CYCLE = "cycle"


def _as_child_refs(children: Sequence[Union[str, ChildRef]]) -> List[ChildRef]:
    refs = [child if isinstance(child, ChildRef) else ChildRef(external_id=child) for child in children]
    # Native order first, discovery order for children without one
    indexed = list(enumerate(refs))
    indexed.sort(key=lambda item: (item[1].order is None, item[1].order if item[1].order is not None else 0, item[0]))
    return [ref for _, ref in indexed]


class HierarchyBuilder:
    def __init__(self, source: ContentSource, max_depth: int = 5, truncation_lookahead: int = 5,
                 error_tracker: Optional[ErrorTracker] = None, fetch_policy: Optional[RetryPolicy] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None, sleep: Callable[[float], None] = time.sleep):
        self.source = source
        self.max_depth = max(1, min(MAX_DEPTH_CEILING, max_depth))
        # At least one level below max_depth is always listed as truncated leaves
        self.truncation_lookahead = max(1, truncation_lookahead)
        self.error_tracker = error_tracker or ErrorTracker()
        self.fetch_policy = fetch_policy or RetryPolicy(retry_on_exceptions=(FetchError,))
        self.circuit_breaker = circuit_breaker
        self.sleep = sleep

    def _children(self, external_id: str) -> Optional[List[ChildRef]]:
        try:
            children = with_retry(
                lambda: self.source.fetch_children(external_id),
                policy=self.fetch_policy,
                circuit_breaker=self.circuit_breaker,
                circuit_key="source",
                sleep=self.sleep,
                description=f"Listing children of {external_id}",
            )
        except (FetchError, CircuitOpenError) as e:
            self.error_tracker.report(
                f"Could not list children of {external_id}: {e}",
                external_id=external_id,
                severity=ErrorSeverity.ERROR,
                category=ErrorCategory.HIERARCHY,
                recovery_suggestion="Rebuild the tree once the remote source is reachable",
            )
            return None
        return _as_child_refs(children)

    def build_tree(self, root_external_id: str, max_depth: Optional[int] = None, root_title: str = "") -> HierarchyNode:
        max_depth = self.max_depth if max_depth is None else max(1, min(MAX_DEPTH_CEILING, max_depth))
        enumerate_until = max_depth + self.truncation_lookahead

        root = HierarchyNode(external_id=normalize_external_id(root_external_id), title=root_title, depth=1)
        visited = {root.external_id}
        queue = deque([root])
        cycles = 0

        while queue:
            node = queue.popleft()
            children = self._children(node.external_id)
            if not children:
                continue
            if node.depth >= enumerate_until:
                node.has_more = True
                continue
            for position, ref in enumerate(children):
                child_id = normalize_external_id(ref.external_id)
                order = ref.order if ref.order is not None else position
                depth = node.depth + 1
                if child_id in visited:
                    cycles += 1
                    warning = CycleDetected(f"{child_id} reached again under {node.external_id}", external_id=child_id,
                                            recovery_suggestion="Remove the circular link in the source workspace")
                    self.error_tracker.report_exception(warning, severity=ErrorSeverity.WARNING,
                                                        details={'parent_external_id': node.external_id})
                    logger.warning(warning.message)
                    node.children.append(HierarchyNode(
                        external_id=child_id, title=ref.title, order=order, depth=depth,
                        truncated=True, truncation_reason=TRUNCATED_CYCLE,
                    ))
                    continue
                visited.add(child_id)
                child = HierarchyNode(external_id=child_id, title=ref.title, order=order, depth=depth)
                if depth > max_depth:
                    child.truncated = True
                    child.truncation_reason = TRUNCATED_DEPTH
                node.children.append(child)
                queue.append(child)

        logger.info(
            f"Built tree for {root.external_id}: {len(root.syncable())} syncable nodes, {cycles} cycles",
            extra={'details': {'root': root.external_id, 'max_depth': max_depth}},
        )
        return root
