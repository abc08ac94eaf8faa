"""
Synchronization core for mirroring a block-structured content workspace into a
target content store.

This module provides idempotent node sync, content-addressed media
deduplication, two-pass reference resolution, depth-bounded hierarchy walks
and a background batch-job scheduler.
"""

from .config import SyncConfig, SweepPolicy

from .models import (
    Block, ContentNode, ChildRef, ReferenceEntry, MediaEntry, MediaRequest,
    HierarchyNode, Job, JobKind, JobStatus, NodeKind, NodeState, NodeResult,
    ReferenceStatus, LinkStatus
)

from .interfaces import (
    ContentSource, ContentStore, MediaDownloader
)

from .converters import (
    ConverterRegistry, ConverterRegistryBuilder, BlockConverter, Fragment,
    ConversionContext, default_registry
)

from .references import (
    ReferenceRegistry, ReferenceResolver, SweepReport
)

from .media import (
    MediaRegistry, MediaSynchronizer, HttpMediaDownloader
)

from .hierarchy import HierarchyBuilder
from .scheduler import JobScheduler, JobStore
from .orchestrator import SyncOrchestrator, SyncPlan, SyncSummary
from .view_renderer import ViewRenderer, PropertyFormatter, FormattedRecord

__all__ = [
    # Configuration
    'SyncConfig',
    'SweepPolicy',

    # Data model
    'Block',
    'ContentNode',
    'ChildRef',
    'ReferenceEntry',
    'MediaEntry',
    'MediaRequest',
    'HierarchyNode',
    'Job',
    'JobKind',
    'JobStatus',
    'NodeKind',
    'NodeState',
    'NodeResult',
    'ReferenceStatus',
    'LinkStatus',

    # Collaborators
    'ContentSource',
    'ContentStore',
    'MediaDownloader',

    # Conversion
    'ConverterRegistry',
    'ConverterRegistryBuilder',
    'BlockConverter',
    'Fragment',
    'ConversionContext',
    'default_registry',

    # Registries
    'ReferenceRegistry',
    'ReferenceResolver',
    'SweepReport',
    'MediaRegistry',
    'MediaSynchronizer',
    'HttpMediaDownloader',

    # Orchestration
    'HierarchyBuilder',
    'JobScheduler',
    'JobStore',
    'SyncOrchestrator',
    'SyncPlan',
    'SyncSummary',

    # Views
    'ViewRenderer',
    'PropertyFormatter',
    'FormattedRecord',
]
