"""
Reference registry and the second-pass resolver sweep.

The registry is the single source of truth for "has node X been synced and
where does it live". Entries are created the first time an id is seen, even
before its content is fetched, so pages can link forward to nodes that do not
exist in the target store yet. Entries are never deleted; every status change
is appended to ``reference_history``.

``reference_links`` tracks every placeholder written into persisted content
(owner document -> referenced node). The resolver sweep walks owners with
pending links and rewrites their placeholders once the targets resolve.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .converters.base import Fragment
from .converters.placeholders import STATUS_BROKEN, STATUS_PENDING, STATUS_RESOLVED, rewrite_references
from .error_tracker import ErrorCategory, ErrorSeverity, ErrorTracker, SyncException
from .interfaces import ContentStore
from .logging_manager import get_logger
from .models import LinkStatus, ReferenceEntry, ReferenceStatus, normalize_external_id, utcnow
from .storage import SqliteDatabase

logger = get_logger(__name__)

# An entry stuck in 'resolving' longer than this is assumed abandoned by a crashed worker
RESOLVING_LEASE_SECONDS = 600

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS "references" (
        external_id TEXT PRIMARY KEY,
        target_identifier TEXT,
        status TEXT NOT NULL,
        last_synced_at TEXT,
        error_detail TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reference_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        external_id TEXT NOT NULL,
        status TEXT NOT NULL,
        target_identifier TEXT,
        detail TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reference_links (
        owner_external_id TEXT NOT NULL,
        target_external_id TEXT NOT NULL,
        status TEXT NOT NULL,
        sweep_count INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (owner_external_id, target_external_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_reference_links_status ON reference_links(status)",
    "CREATE INDEX IF NOT EXISTS idx_reference_links_target ON reference_links(target_external_id)",
    "CREATE INDEX IF NOT EXISTS idx_reference_history_id ON reference_history(external_id)",
]


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ReferenceRegistry:
    """Durable external-id -> target-identifier table backed by SQLite."""

    def __init__(self, state_dir: Union[str, Path], filename: str = "references.db"):
        self.db = SqliteDatabase(Path(state_dir) / filename)
        with self.db.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def _row_to_entry(self, row) -> ReferenceEntry:
        return ReferenceEntry(
            external_id=row["external_id"],
            target_identifier=row["target_identifier"],
            status=ReferenceStatus(row["status"]),
            last_synced_at=_parse_time(row["last_synced_at"]),
            error_detail=row["error_detail"],
        )

    def _history(self, conn, external_id: str, status: ReferenceStatus, target: Optional[str], detail: Optional[str]):
        conn.execute(
            "INSERT INTO reference_history (external_id, status, target_identifier, detail, recorded_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (external_id, status.value, target, detail, utcnow().isoformat()),
        )

    def _insert_if_absent(self, conn, external_id: str) -> bool:
        now = utcnow().isoformat()
        cursor = conn.execute(
            'INSERT OR IGNORE INTO "references" (external_id, status, created_at, updated_at) VALUES (?, ?, ?, ?)',
            (external_id, ReferenceStatus.UNRESOLVED.value, now, now),
        )
        if cursor.rowcount:
            self._history(conn, external_id, ReferenceStatus.UNRESOLVED, None, None)
        return bool(cursor.rowcount)

    def get(self, external_id: str) -> Optional[ReferenceEntry]:
        with self.db.reader() as conn:
            row = conn.execute('SELECT * FROM "references" WHERE external_id = ?',
                               (normalize_external_id(external_id),)).fetchone()
        return self._row_to_entry(row) if row else None

    def ensure(self, external_id: str) -> ReferenceEntry:
        """Idempotent: creates an unresolved entry on first encounter and returns the current entry."""
        external_id = normalize_external_id(external_id)
        with self.db.transaction() as conn:
            self._insert_if_absent(conn, external_id)
            row = conn.execute('SELECT * FROM "references" WHERE external_id = ?', (external_id,)).fetchone()
        return self._row_to_entry(row)

    def resolve(self, external_id: str) -> Optional[str]:
        entry = self.get(external_id)
        return entry.target_identifier if entry and entry.is_resolved else None

    def mark_resolving(self, external_id: str, lease_seconds: int = RESOLVING_LEASE_SECONDS) -> bool:
        """
        Compare-and-swap into 'resolving'. Only one concurrent caller wins for an
        unresolved or failed entry; resolved entries keep their target and are
        never moved back.
        """
        external_id = normalize_external_id(external_id)
        now = utcnow()
        stale_before = datetime.fromtimestamp(now.timestamp() - lease_seconds, tz=now.tzinfo).isoformat()
        with self.db.transaction() as conn:
            self._insert_if_absent(conn, external_id)
            cursor = conn.execute(
                'UPDATE "references" SET status = ?, updated_at = ? WHERE external_id = ? '
                'AND (status IN (?, ?) OR (status = ? AND updated_at < ?))',
                (ReferenceStatus.RESOLVING.value, now.isoformat(), external_id,
                 ReferenceStatus.UNRESOLVED.value, ReferenceStatus.FAILED.value,
                 ReferenceStatus.RESOLVING.value, stale_before),
            )
            if cursor.rowcount:
                self._history(conn, external_id, ReferenceStatus.RESOLVING, None, None)
        return bool(cursor.rowcount)

    def mark_resolved(self, external_id: str, target_identifier: str) -> ReferenceEntry:
        """
        Last writer wins. When the target changes, or links to this node had been
        given up as broken, those links go back to pending for the next sweep.
        """
        external_id = normalize_external_id(external_id)
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            self._insert_if_absent(conn, external_id)
            previous = conn.execute('SELECT target_identifier FROM "references" WHERE external_id = ?',
                                    (external_id,)).fetchone()
            conn.execute(
                'UPDATE "references" SET target_identifier = ?, status = ?, last_synced_at = ?, '
                'error_detail = NULL, updated_at = ? WHERE external_id = ?',
                (target_identifier, ReferenceStatus.RESOLVED.value, now, now, external_id),
            )
            self._history(conn, external_id, ReferenceStatus.RESOLVED, target_identifier, None)
            if previous["target_identifier"] and previous["target_identifier"] != target_identifier:
                logger.info(f"Target of {external_id} moved from {previous['target_identifier']} to {target_identifier}")
                conn.execute(
                    "UPDATE reference_links SET status = ?, sweep_count = 0, updated_at = ? WHERE target_external_id = ?",
                    (LinkStatus.PENDING.value, now, external_id),
                )
            else:
                conn.execute(
                    "UPDATE reference_links SET status = ?, sweep_count = 0, updated_at = ? "
                    "WHERE target_external_id = ? AND status = ?",
                    (LinkStatus.PENDING.value, now, external_id, LinkStatus.BROKEN.value),
                )
            row = conn.execute('SELECT * FROM "references" WHERE external_id = ?', (external_id,)).fetchone()
        return self._row_to_entry(row)

    def mark_failed(self, external_id: str, detail: str) -> ReferenceEntry:
        external_id = normalize_external_id(external_id)
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            self._insert_if_absent(conn, external_id)
            conn.execute(
                'UPDATE "references" SET target_identifier = NULL, status = ?, error_detail = ?, updated_at = ? '
                'WHERE external_id = ?',
                (ReferenceStatus.FAILED.value, detail, now, external_id),
            )
            self._history(conn, external_id, ReferenceStatus.FAILED, None, detail)
            row = conn.execute('SELECT * FROM "references" WHERE external_id = ?', (external_id,)).fetchone()
        return self._row_to_entry(row)

    def record_error(self, external_id: str, detail: str) -> None:
        """Note a failed re-sync of an already resolved node without giving up its target."""
        external_id = normalize_external_id(external_id)
        with self.db.transaction() as conn:
            conn.execute('UPDATE "references" SET error_detail = ?, updated_at = ? WHERE external_id = ?',
                         (detail, utcnow().isoformat(), external_id))
            row = conn.execute('SELECT status, target_identifier FROM "references" WHERE external_id = ?',
                               (external_id,)).fetchone()
            if row:
                self._history(conn, external_id, ReferenceStatus(row["status"]), row["target_identifier"], detail)

    def history(self, external_id: str) -> List[Dict[str, Any]]:
        with self.db.reader() as conn:
            rows = conn.execute(
                "SELECT status, target_identifier, detail, recorded_at FROM reference_history "
                "WHERE external_id = ? ORDER BY id",
                (normalize_external_id(external_id),),
            ).fetchall()
        return [dict(row) for row in rows]

    def entries(self, status: Optional[ReferenceStatus] = None) -> List[ReferenceEntry]:
        with self.db.reader() as conn:
            if status:
                rows = conn.execute('SELECT * FROM "references" WHERE status = ? ORDER BY external_id',
                                    (status.value,)).fetchall()
            else:
                rows = conn.execute('SELECT * FROM "references" ORDER BY external_id').fetchall()
        return [self._row_to_entry(row) for row in rows]

    # Link bookkeeping

    def record_links(self, owner_external_id: str, target_external_ids: Iterable[str],
                     written_pending: Iterable[str] = ()) -> None:
        """
        Replace the set of placeholders known for an owner document. Each link starts
        resolved when its target already is, pending otherwise. Targets in
        ``written_pending`` were persisted as pending anchors and start pending
        whatever their registry status, so the next sweep rewrites them.
        """
        owner = normalize_external_id(owner_external_id)
        targets = sorted({normalize_external_id(t) for t in target_external_ids if t})
        forced_pending = {normalize_external_id(t) for t in written_pending if t}
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            if targets:
                placeholders = ",".join("?" for _ in targets)
                conn.execute(
                    f"DELETE FROM reference_links WHERE owner_external_id = ? AND target_external_id NOT IN ({placeholders})",
                    (owner, *targets),
                )
            else:
                conn.execute("DELETE FROM reference_links WHERE owner_external_id = ?", (owner,))
            for target in targets:
                self._insert_if_absent(conn, target)
                row = conn.execute('SELECT status FROM "references" WHERE external_id = ?', (target,)).fetchone()
                resolved = row["status"] == ReferenceStatus.RESOLVED.value and target not in forced_pending
                status = LinkStatus.RESOLVED if resolved else LinkStatus.PENDING
                conn.execute(
                    "INSERT INTO reference_links (owner_external_id, target_external_id, status, sweep_count, updated_at) "
                    "VALUES (?, ?, ?, 0, ?) ON CONFLICT(owner_external_id, target_external_id) "
                    "DO UPDATE SET status = excluded.status, sweep_count = 0, updated_at = excluded.updated_at",
                    (owner, target, status.value, now),
                )

    def update_link(self, owner_external_id: str, target_external_id: str, status: LinkStatus, sweep_count: int) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE reference_links SET status = ?, sweep_count = ?, updated_at = ? "
                "WHERE owner_external_id = ? AND target_external_id = ?",
                (status.value, sweep_count, utcnow().isoformat(), owner_external_id, target_external_id),
            )

    def links(self, owner_external_id: Optional[str] = None, status: Optional[LinkStatus] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM reference_links WHERE 1 = 1"
        params: List[Any] = []
        if owner_external_id:
            query += " AND owner_external_id = ?"
            params.append(normalize_external_id(owner_external_id))
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY owner_external_id, target_external_id"
        with self.db.reader() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def owners_with_pending_links(self) -> List[str]:
        with self.db.reader() as conn:
            rows = conn.execute(
                "SELECT DISTINCT owner_external_id FROM reference_links WHERE status = ? ORDER BY owner_external_id",
                (LinkStatus.PENDING.value,),
            ).fetchall()
        return [row["owner_external_id"] for row in rows]

    def stats(self) -> Dict[str, Any]:
        with self.db.reader() as conn:
            entries = conn.execute('SELECT status, COUNT(*) AS n FROM "references" GROUP BY status').fetchall()
            links = conn.execute("SELECT status, COUNT(*) AS n FROM reference_links GROUP BY status").fetchall()
        return {
            "entries": {row["status"]: row["n"] for row in entries},
            "links": {row["status"]: row["n"] for row in links},
            "db_size_mb": round(self.db.size_mb(), 3),
        }


@dataclass
class SweepReport:
    owners_scanned: int = 0
    documents_updated: int = 0
    links_resolved: int = 0
    links_pending: int = 0
    links_broken: int = 0
    owners_failed: int = 0
    broken: List[Tuple[str, str]] = field(default_factory=list)
    failed_owners: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'owners_scanned': self.owners_scanned,
            'documents_updated': self.documents_updated,
            'links_resolved': self.links_resolved,
            'links_pending': self.links_pending,
            'links_broken': self.links_broken,
            'owners_failed': self.owners_failed,
            'failed_owners': list(self.failed_owners),
            'broken': [{'owner': owner, 'target': target} for owner, target in self.broken],
        }


class ReferenceResolver:
    """
    Pass two of reference resolution: rewrites placeholders in persisted documents
    whose targets have resolved since the owner was written. A link still pending
    after ``max_sweeps`` sweeps is marked broken and reported.
    """

    def __init__(self, registry: ReferenceRegistry, store: ContentStore, max_sweeps: int = 3,
                 error_tracker: Optional[ErrorTracker] = None, write_lock: Optional[threading.Lock] = None):
        self.registry = registry
        self.store = store
        self.max_sweeps = max_sweeps
        self.error_tracker = error_tracker or ErrorTracker()
        self.write_lock = write_lock or threading.Lock()

    def sweep(self, owner_external_ids: Optional[Iterable[str]] = None) -> SweepReport:
        report = SweepReport()
        if owner_external_ids is None:
            owners = self.registry.owners_with_pending_links()
        else:
            owners = [normalize_external_id(owner) for owner in owner_external_ids]
        for owner in owners:
            try:
                self._sweep_owner(owner, report)
            except SyncException as e:
                logger.error(f"Resolver sweep of {owner} failed: {e.message}", extra={'details': {'external_id': owner}})
                self._record_owner_failure(owner, report, e.message, type(e).__name__)
            except Exception as e:
                logger.error(f"Resolver sweep of {owner} raised: {e}", exc_info=True)
                self._record_owner_failure(owner, report, str(e), type(e).__name__)
        logger.info(
            f"Resolver sweep: {report.owners_scanned} owners, {report.documents_updated} documents updated, "
            f"{report.links_resolved} resolved, {report.links_pending} pending, {report.links_broken} broken, "
            f"{report.owners_failed} owners failed",
            extra={'details': report.to_dict()},
        )
        return report

    def _record_owner_failure(self, owner: str, report: SweepReport, message: str, error_type: str) -> None:
        report.owners_failed += 1
        report.failed_owners.append(owner)
        self.error_tracker.report(
            f"Could not rewrite links of {owner}: {message}",
            external_id=owner,
            category=ErrorCategory.LINK,
            details={'error_type': error_type},
            recovery_suggestion="The owner keeps its placeholders and is retried on the next sweep",
        )

    def _sweep_owner(self, owner: str, report: SweepReport) -> None:
        owner_target = self.registry.resolve(owner)
        if owner_target is None:
            # Owner itself is not persisted; nothing to rewrite yet
            return
        report.owners_scanned += 1
        links = {link["target_external_id"]: link for link in self.registry.links(owner)}
        outcomes: Dict[str, Tuple[LinkStatus, int]] = {}
        resolved_targets: Dict[str, Optional[str]] = {}

        def decide(target_id: str) -> Tuple[str, Optional[str]]:
            target_id = normalize_external_id(target_id)
            if target_id not in resolved_targets:
                resolved_targets[target_id] = self.registry.resolve(target_id)
            target = resolved_targets[target_id]
            if target is not None:
                outcomes[target_id] = (LinkStatus.RESOLVED, 0)
                return STATUS_RESOLVED, self.store.permalink(target)
            link = links.get(target_id)
            if link is not None and link["status"] == LinkStatus.BROKEN.value:
                outcomes[target_id] = (LinkStatus.BROKEN, link["sweep_count"])
                return STATUS_BROKEN, None
            if target_id not in outcomes:
                sweeps = (link["sweep_count"] if link else 0) + 1
                status = LinkStatus.BROKEN if sweeps >= self.max_sweeps else LinkStatus.PENDING
                outcomes[target_id] = (status, sweeps)
            return (STATUS_BROKEN if outcomes[target_id][0] == LinkStatus.BROKEN else STATUS_PENDING), None

        with self.write_lock:
            fragments: List[Fragment] = list(self.store.get_document(owner_target))
            changed = 0
            for fragment in fragments:
                fragment.html, count = rewrite_references(fragment.html, decide)
                changed += count
            if changed:
                self.store.update_document(owner_target, fragments)
                report.documents_updated += 1

        # Pending links whose anchor is gone from the document still age towards broken
        for target_id, link in links.items():
            if link["status"] == LinkStatus.PENDING.value and target_id not in outcomes:
                decide(target_id)

        for target_id, (status, sweeps) in outcomes.items():
            previous = links.get(target_id)
            if previous and previous["status"] == status.value and previous["sweep_count"] == sweeps:
                continue
            self.registry.update_link(owner, target_id, status, sweeps)
            if status == LinkStatus.RESOLVED:
                report.links_resolved += 1
            elif status == LinkStatus.BROKEN:
                report.links_broken += 1
                report.broken.append((owner, target_id))
                self.error_tracker.report(
                    f"Link from {owner} to {target_id} is still unresolved after {sweeps} sweeps",
                    external_id=owner,
                    severity=ErrorSeverity.WARNING,
                    category=ErrorCategory.LINK,
                    details={'target_external_id': target_id},
                    recovery_suggestion="Sync the target page or remove the link",
                )
            else:
                report.links_pending += 1
