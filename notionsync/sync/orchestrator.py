"""
Sync orchestration.

Drives every node through pending -> fetching -> converting -> persisting ->
registered (or failed), and turns trees and databases into staggered batch
jobs followed by a resolver sweep. Store writes are matched by external id,
so re-syncing a node updates its document instead of creating another.

Node failures are caught here and recorded on the node's reference entry, the
job's per-node results and the error tracker. They never abort siblings.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from .config import SweepPolicy, SyncConfig
from .converters import ConversionContext, ConverterRegistry, Fragment, default_registry, find_pending_references
from .converters.base import escape
from .error_tracker import ErrorCategory, ErrorTracker, FetchError, SyncException
from .external_monitor import get_monitor_from_config
from .hierarchy import HierarchyBuilder
from .interfaces import ContentSource, ContentStore, MediaDownloader
from .logging_manager import LoggingManager
from .media import HttpMediaDownloader, MediaRegistry, MediaSynchronizer
from .models import (
    ContentNode, HierarchyNode, Job, JobKind, JobStatus, LinkStatus, NodeResult, NodeState, ReferenceStatus,
    normalize_external_id, utcnow,
)
from .references import ReferenceRegistry, ReferenceResolver, SweepReport
from .resilience import CircuitBreaker, CircuitOpenError, with_retry
from .scheduler import JobScheduler, JobStore
from .state_manager import StateManager

logger = LoggingManager.get_logger(__name__)


@dataclass
class SyncPlan:
    """Jobs queued for a tree or database sync."""
    root_external_id: str
    batch_job_ids: List[str] = field(default_factory=list)
    resolve_job_id: Optional[str] = None
    node_count: int = 0
    tree: Optional[HierarchyNode] = None
    target_identifier: Optional[str] = None
    error: Optional[str] = None

    @property
    def job_ids(self) -> List[str]:
        return self.batch_job_ids + ([self.resolve_job_id] if self.resolve_job_id else [])


@dataclass
class SyncSummary:
    """Summary of the jobs of one plan."""
    total_nodes: int
    registered_nodes: int
    failed_nodes: int
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    cancelled_jobs: int
    processing_time: float
    results: List[Dict[str, Any]]
    errors: List[str]
    sweep: Optional[Dict[str, Any]] = None


class SyncOrchestrator:
    """
    Owns the registries, the converter registry and the job scheduler of one
    sync deployment. The host plugs in the remote source and the target store.
    """

    def __init__(self, config: SyncConfig, source: ContentSource, store: ContentStore,
                 downloader: Optional[MediaDownloader] = None, converters: Optional[ConverterRegistry] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.source = source
        self.store = store
        self.sleep = sleep

        self.logging_manager = LoggingManager(log_level=config.log_level, log_file=config.log_file)
        self.logger = self.logging_manager.get_logger(__name__)
        self.error_tracker = ErrorTracker()

        state_dir = config.state_path
        self.references = ReferenceRegistry(state_dir)
        self.media_registry = MediaRegistry(state_dir)
        self.state_manager = StateManager(state_dir=str(state_dir))
        self.converters = converters or default_registry()

        self.fetch_policy = config.fetch_retry_policy()
        self.circuit_breaker = CircuitBreaker(failure_threshold=3, reset_timeout_seconds=60.0)
        # Store writes are serialized across workers
        self.persist_lock = threading.Lock()

        self.media = MediaSynchronizer(
            self.media_registry, store, downloader or HttpMediaDownloader(),
            policy=config.media_retry_policy(), timeout=config.fetch_timeout_seconds,
            error_tracker=self.error_tracker, sleep=sleep,
        )
        self.hierarchy = HierarchyBuilder(
            source, max_depth=config.max_depth, truncation_lookahead=config.truncation_lookahead,
            error_tracker=self.error_tracker, fetch_policy=self.fetch_policy,
            circuit_breaker=self.circuit_breaker, sleep=sleep,
        )
        self.resolver = ReferenceResolver(
            self.references, store, max_sweeps=config.resolver_max_sweeps,
            error_tracker=self.error_tracker, write_lock=self.persist_lock,
        )
        self.scheduler = JobScheduler(
            JobStore(state_dir), max_workers=config.max_workers, max_attempts=config.max_job_attempts,
            retry_delay_seconds=config.job_retry_delay_seconds, error_tracker=self.error_tracker,
        )
        self.scheduler.register_member_handler(JobKind.SYNC_NODE, self._sync_member)
        self.scheduler.register_member_handler(JobKind.SYNC_BATCH, self._sync_member)
        self.scheduler.register_task_handler(JobKind.RESOLVE_LINKS, self._resolve_links_job)

        self.monitor = get_monitor_from_config(config)
        self.logger.info("Sync orchestrator initialized", extra={'details': {'state_directory': str(state_dir)}})

    # Single node

    def _fetch(self, description: str, fn):
        return with_retry(fn, policy=self.fetch_policy, circuit_breaker=self.circuit_breaker,
                          circuit_key="source", sleep=self.sleep, description=description)

    def convert_node(self, node: ContentNode, owner_target_id: Optional[str] = None) -> List[Fragment]:
        ctx = ConversionContext(
            owner_external_id=node.external_id,
            owner_target_id=owner_target_id,
            references=self.references,
            media=self.media_registry,
            permalink=self.store.permalink,
            asset_url=self.store.asset_url,
            registry=self.converters,
        )
        return self.converters.convert_all(node.blocks, ctx)

    def sync_node(self, external_id: str, parent_external_id: Optional[str] = None, order: int = 0,
                  job_id: Optional[str] = None) -> NodeResult:
        """Run one node through the state machine. Never raises for node-level failures."""
        external_id = normalize_external_id(external_id)
        entry = self.references.ensure(external_id)
        was_resolved = entry.is_resolved
        if not was_resolved and not self.references.mark_resolving(external_id):
            self.logger.info(f"Node {external_id} is being synced by another worker")
            return NodeResult(external_id, NodeState.FAILED, error="already being synced by another worker",
                              retryable=True)

        self.state_manager.write_checkpoint(external_id, NodeState.PENDING, job_id)
        state = NodeState.PENDING
        try:
            state = self.state_manager.transition(external_id, state, NodeState.FETCHING, job_id)
            node = self._fetch(f"Fetch of {external_id}", lambda: self.source.fetch_node(external_id))

            state = self.state_manager.transition(external_id, state, NodeState.CONVERTING, job_id)
            fragments = self.convert_node(node, entry.target_identifier)
            media_outcomes = self.media.apply(fragments, external_id)

            state = self.state_manager.transition(external_id, state, NodeState.PERSISTING, job_id)
            parent = parent_external_id or node.parent_external_id
            parent_target = self.references.resolve(parent) if parent else None
            metadata = {
                'title': node.title,
                'kind': node.kind.value,
                'properties': node.properties,
                'last_modified': node.last_modified.isoformat() if node.last_modified else None,
            }
            with self.persist_lock:
                target = self.store.upsert_document(external_id, fragments, parent_target, order, metadata=metadata)

            referenced = []
            written_pending = set()
            for fragment in fragments:
                referenced.extend(ref for ref in fragment.references if ref not in referenced)
                written_pending.update(find_pending_references(fragment.html))
            self.references.mark_resolved(external_id, target)
            # Links to self, or to targets resolved mid-conversion, still hold a placeholder to rewrite
            self.references.record_links(external_id, referenced, written_pending=written_pending)
            state = self.state_manager.transition(external_id, state, NodeState.REGISTERED, job_id,
                                                  details={'target_identifier': target})
        except (SyncException, CircuitOpenError) as e:
            retryable = getattr(e, 'retryable', True)
            return self._fail(external_id, state, str(e), retryable, was_resolved, job_id, e)
        except Exception as e:
            self.logger.error(f"Unexpected error syncing {external_id}: {e}", exc_info=True)
            return self._fail(external_id, state, str(e), False, was_resolved, job_id, e)

        downloaded = sum(1 for outcome in media_outcomes if outcome.downloaded)
        failed_media = sum(1 for outcome in media_outcomes if not outcome.ok)
        self.logger.info(
            f"Registered {external_id} as {target}",
            extra={'details': {'external_id': external_id, 'references': len(referenced),
                               'media_downloaded': downloaded, 'media_failed': failed_media}},
        )
        return NodeResult(external_id, NodeState.REGISTERED, target_identifier=target,
                          media_downloaded=downloaded, media_failed=failed_media, references=len(referenced))

    def _fail(self, external_id: str, state: NodeState, error: str, retryable: bool, was_resolved: bool,
              job_id: Optional[str], exc: BaseException) -> NodeResult:
        if state != NodeState.FAILED:
            self.state_manager.transition(external_id, state, NodeState.FAILED, job_id,
                                          details={'error': error, 'failed_in': state.value})
        if was_resolved:
            self.references.record_error(external_id, error)
        else:
            self.references.mark_failed(external_id, error)
        if isinstance(exc, SyncException):
            self.error_tracker.report_exception(exc, details={'stage': state.value, 'job_id': job_id})
        else:
            self.error_tracker.report(error, external_id=external_id, category=ErrorCategory.NODE,
                                      details={'stage': state.value, 'job_id': job_id,
                                               'error_type': type(exc).__name__})
        self.logger.error(f"Sync of {external_id} failed while {state.value}: {error}")
        return NodeResult(external_id, NodeState.FAILED, error=error, retryable=retryable)

    def _sync_member(self, external_id: str, job: Job) -> NodeResult:
        placement = job.payload.get('placement', {}).get(external_id, {})
        return self.sync_node(external_id, parent_external_id=placement.get('parent'),
                              order=placement.get('order', 0), job_id=job.job_id)

    # Bulk work

    def _enqueue_batches(self, node_ids: List[str], placement: Dict[str, Dict[str, Any]]) -> List[str]:
        job_ids = []
        size = self.config.batch_size
        now = utcnow()
        for index, start in enumerate(range(0, len(node_ids), size)):
            chunk = node_ids[start:start + size]
            job = Job(
                kind=JobKind.SYNC_BATCH,
                payload={'node_ids': chunk, 'placement': {node_id: placement.get(node_id, {}) for node_id in chunk}},
            )
            if index:
                job.not_before = now + timedelta(seconds=index * self.config.batch_stagger_seconds)
            job_ids.append(self.scheduler.enqueue(job))
        return job_ids

    def _enqueue_sweep(self, depends_on: List[str], tree: Optional[HierarchyNode] = None) -> Optional[str]:
        if self.config.sweep_policy != SweepPolicy.POST_BATCH:
            return None
        payload: Dict[str, Any] = {}
        if tree is not None:
            payload['tree'] = tree.to_dict()
        return self.scheduler.enqueue(Job(kind=JobKind.RESOLVE_LINKS, payload=payload, depends_on=depends_on))

    def enqueue_node(self, external_id: str) -> str:
        return self.scheduler.enqueue(Job(kind=JobKind.SYNC_NODE, payload={'node_ids': [normalize_external_id(external_id)]}))

    def sync_tree(self, root_external_id: str, max_depth: Optional[int] = None) -> SyncPlan:
        """Build the tree below a root and queue it as staggered batches, parents before children."""
        tree = self.hierarchy.build_tree(root_external_id, max_depth=max_depth)
        parents = tree.parent_map()
        nodes = tree.syncable()
        placement = {node.external_id: {'parent': parents.get(node.external_id), 'order': node.order} for node in nodes}
        node_ids = [node.external_id for node in nodes]
        plan = SyncPlan(root_external_id=tree.external_id, tree=tree, node_count=len(node_ids))
        plan.batch_job_ids = self._enqueue_batches(node_ids, placement)
        plan.resolve_job_id = self._enqueue_sweep(plan.batch_job_ids, tree)
        self.logger.info(
            f"Queued tree {tree.external_id}: {len(node_ids)} nodes in {len(plan.batch_job_ids)} batches",
            extra={'details': {'root': tree.external_id, 'jobs': plan.job_ids}},
        )
        return plan

    def sync_database(self, database_id: str) -> SyncPlan:
        """Persist the database's container document and queue its rows as batches."""
        database_id = normalize_external_id(database_id)
        plan = SyncPlan(root_external_id=database_id)
        try:
            info = self._fetch(f"Fetch of database {database_id}", lambda: self.source.fetch_database(database_id))
            rows: List[Dict[str, Any]] = []
            cursor = None
            while True:
                page, cursor = self._fetch(f"Rows of database {database_id}",
                                           lambda: self.source.fetch_rows(database_id, cursor))
                rows.extend(page)
                if not cursor:
                    break
        except (FetchError, CircuitOpenError) as e:
            self.references.ensure(database_id)
            self.references.mark_failed(database_id, str(e))
            self.error_tracker.report(f"Database {database_id} could not be listed: {e}", external_id=database_id,
                                      category=ErrorCategory.NODE)
            plan.error = str(e)
            return plan

        title = info.get('title') or 'Untitled Database'
        row_ids = [normalize_external_id(row['id']) for row in rows]
        html = (f'<div class="notionsync-database-view" data-database-id="{escape(database_id)}">'
                f'<h2>{escape(title)}</h2></div>')
        fragments = [Fragment('notionsync/database-view', html,
                              attrs={'databaseId': database_id, 'viewType': 'table', 'rowCount': len(row_ids)})]
        metadata = {'title': title, 'kind': 'database', 'properties': info.get('properties', {}), 'last_modified': None}
        try:
            with self.persist_lock:
                target = self.store.upsert_document(database_id, fragments, None, 0, metadata=metadata)
        except SyncException as e:
            self.references.ensure(database_id)
            self.references.mark_failed(database_id, e.message)
            self.error_tracker.report_exception(e)
            plan.error = e.message
            return plan
        self.references.mark_resolved(database_id, target)
        plan.target_identifier = target

        placement = {row_id: {'parent': database_id, 'order': index} for index, row_id in enumerate(row_ids)}
        plan.node_count = len(row_ids)
        plan.batch_job_ids = self._enqueue_batches(row_ids, placement)
        plan.resolve_job_id = self._enqueue_sweep(plan.batch_job_ids)
        self.logger.info(f"Queued database {database_id}: {len(row_ids)} rows in {len(plan.batch_job_ids)} batches")
        return plan

    # Second pass

    def resolve_links(self, owner_external_ids: Optional[List[str]] = None) -> SweepReport:
        return self.resolver.sweep(owner_external_ids)

    def _resolve_links_job(self, job: Job) -> Dict[str, Any]:
        report = self.resolver.sweep()
        result = report.to_dict()
        tree_data = job.payload.get('tree')
        if tree_data:
            tree = HierarchyNode.from_dict(tree_data)
            tree.attach_targets(self.references.resolve)
            with self.persist_lock:
                self.store.rebuild_navigation(tree)
            result['navigation_rebuilt'] = True
        if self.monitor:
            self.monitor.send_report(self.status_report())
        return result

    # Reporting

    def status_report(self) -> Dict[str, Any]:
        """Per-item report: which nodes, media and links failed, and why."""
        failed_nodes = [
            {'external_id': entry.external_id, 'status': entry.status.value, 'error': entry.error_detail,
             'target_identifier': entry.target_identifier}
            for entry in self.references.entries()
            if entry.status == ReferenceStatus.FAILED or (entry.is_resolved and entry.error_detail)
        ]
        return {
            'generated_at': utcnow().isoformat(),
            'failed_nodes': failed_nodes,
            'failed_media': self.media_registry.failures(),
            'broken_links': self.references.links(status=LinkStatus.BROKEN),
            'interrupted_nodes': self.state_manager.interrupted(),
            'references': self.references.stats(),
            'media': self.media_registry.stats(),
            'errors': self.error_tracker.generate_report(),
            'circuit': self.circuit_breaker.get_state_snapshot(),
        }

    def wait(self, plan: SyncPlan, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for job_id in plan.job_ids:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not self.scheduler.wait(job_id, remaining):
                return False
        return True

    def summarize(self, plan: SyncPlan) -> SyncSummary:
        results: List[Dict[str, Any]] = []
        jobs = [job for job in (self.scheduler.status(job_id) for job_id in plan.job_ids) if job is not None]
        for job in jobs:
            if job.kind == JobKind.SYNC_BATCH:
                results.extend(job.node_results.values())
        sweep = next((job.result for job in jobs if job.kind == JobKind.RESOLVE_LINKS), None)
        created = [job.created_at for job in jobs]
        finished = [job.completed_at for job in jobs if job.completed_at]
        elapsed = (max(finished) - min(created)).total_seconds() if created and finished else 0.0
        return SyncSummary(
            total_nodes=plan.node_count,
            registered_nodes=sum(1 for r in results if r['state'] == NodeState.REGISTERED.value),
            failed_nodes=sum(1 for r in results if r['state'] == NodeState.FAILED.value),
            total_jobs=len(jobs),
            completed_jobs=sum(1 for job in jobs if job.status == JobStatus.COMPLETED),
            failed_jobs=sum(1 for job in jobs if job.status == JobStatus.FAILED),
            cancelled_jobs=sum(1 for job in jobs if job.status == JobStatus.CANCELLED),
            processing_time=elapsed,
            results=results,
            errors=[r['error'] for r in results if r.get('error')],
            sweep=sweep,
        )

    def close(self) -> None:
        self.scheduler.shutdown(wait=True)
