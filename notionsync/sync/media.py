"""
Media deduplication and synchronization.

Hosted media is downloaded at most once per fingerprint. Before any network
fetch the MediaRegistry is consulted: when the stored asset's fingerprint
matches, the asset is reused and nothing is downloaded. A changed fingerprint
re-downloads and replaces the bytes under the same target asset id.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import unquote, urlsplit

import requests

from .converters.base import Fragment, media_marker
from .converters.media_blocks import render_broken_media, render_media
from .error_tracker import ErrorCategory, ErrorSeverity, ErrorTracker, MediaDownloadError, MediaRateLimitedError
from .interfaces import ContentStore, MediaDownloader
from .logging_manager import get_logger
from .models import MediaEntry, MediaRequest, utcnow
from .resilience import RetryPolicy, with_retry
from .storage import SqliteDatabase

logger = get_logger(__name__)

# Media ids share a fixed set of download locks
MEDIA_LOCK_STRIPES = 64


class MediaRegistry:
    """Durable external-media-id -> target-asset-id table backed by SQLite."""

    def __init__(self, state_dir: Union[str, Path], filename: str = "media.db"):
        self.db = SqliteDatabase(Path(state_dir) / filename)
        with self.db.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS media (
                    external_media_id TEXT PRIMARY KEY,
                    target_asset_id TEXT,
                    source_fingerprint TEXT,
                    registered_at TEXT NOT NULL,
                    updated_at TEXT,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT
                )
            """)

    def find(self, external_media_id: str) -> Optional[str]:
        with self.db.reader() as conn:
            row = conn.execute("SELECT target_asset_id FROM media WHERE external_media_id = ?",
                               (external_media_id,)).fetchone()
        return row["target_asset_id"] if row and row["target_asset_id"] else None

    def get(self, external_media_id: str) -> Optional[MediaEntry]:
        with self.db.reader() as conn:
            row = conn.execute("SELECT * FROM media WHERE external_media_id = ? AND target_asset_id IS NOT NULL",
                               (external_media_id,)).fetchone()
        if not row:
            return None
        return MediaEntry(
            external_media_id=row["external_media_id"],
            target_asset_id=row["target_asset_id"],
            source_fingerprint=row["source_fingerprint"],
            registered_at=_parse_time(row["registered_at"]),
            updated_at=_parse_time(row["updated_at"]),
        )

    def needs_refetch(self, external_media_id: str, current_fingerprint: str) -> bool:
        entry = self.get(external_media_id)
        return entry is None or entry.source_fingerprint != current_fingerprint

    def register(self, external_media_id: str, target_asset_id: str, fingerprint: str) -> None:
        """Upsert: a changed fingerprint updates the row, never adds a second one."""
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO media (external_media_id, target_asset_id, source_fingerprint, registered_at) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(external_media_id) DO UPDATE SET "
                "target_asset_id = excluded.target_asset_id, source_fingerprint = excluded.source_fingerprint, "
                "updated_at = ?, error_count = 0, last_error = NULL",
                (external_media_id, target_asset_id, fingerprint, now, now),
            )

    def record_failure(self, external_media_id: str, error: str) -> None:
        """Count a failed download; an existing asset stays registered."""
        now = utcnow().isoformat()
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO media (external_media_id, registered_at, error_count, last_error) VALUES (?, ?, 1, ?) "
                "ON CONFLICT(external_media_id) DO UPDATE SET error_count = error_count + 1, "
                "last_error = excluded.last_error, updated_at = ?",
                (external_media_id, now, error, now),
            )

    def failures(self) -> List[Dict[str, Any]]:
        with self.db.reader() as conn:
            rows = conn.execute(
                "SELECT external_media_id, target_asset_id, error_count, last_error FROM media "
                "WHERE last_error IS NOT NULL ORDER BY external_media_id"
            ).fetchall()
        return [dict(row) for row in rows]

    def stats(self) -> Dict[str, Any]:
        with self.db.reader() as conn:
            total = conn.execute("SELECT COUNT(*) FROM media WHERE target_asset_id IS NOT NULL").fetchone()[0]
            failed = conn.execute("SELECT COUNT(*) FROM media WHERE last_error IS NOT NULL").fetchone()[0]
        return {"assets": total, "failed": failed, "db_size_mb": round(self.db.size_mb(), 3)}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header, given either as seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class HttpMediaDownloader(MediaDownloader):
    """Downloads media over HTTP with a shared requests session."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def download(self, url: str, timeout: float) -> Tuple[bytes, Dict[str, Any]]:
        try:
            response = self.session.get(url, timeout=timeout)
        except requests.exceptions.RequestException as e:
            raise MediaDownloadError(f"Download failed: {e}", recovery_suggestion="Check network access to the media host")
        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get('Retry-After'))
            raise MediaRateLimitedError(f"Rate limited by media host (Retry-After: {retry_after})", retry_after=retry_after)
        if response.status_code >= 400:
            raise MediaDownloadError(f"Download failed with HTTP {response.status_code}")
        filename = unquote(Path(urlsplit(url).path).name)
        return response.content, {
            'content_type': response.headers.get('Content-Type', 'application/octet-stream'),
            'filename': filename,
            'size': len(response.content),
        }


@dataclass
class MediaOutcome:
    external_media_id: str
    target_asset_id: Optional[str] = None
    downloaded: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MediaSynchronizer:
    """
    Runs the media units of one node. Downloads are retried with backoff and a
    download that keeps failing degrades to a broken-media marker.
    """

    def __init__(self, registry: MediaRegistry, store: ContentStore, downloader: MediaDownloader,
                 policy: Optional[RetryPolicy] = None, timeout: float = 30,
                 error_tracker: Optional[ErrorTracker] = None, sleep: Callable[[float], None] = time.sleep):
        self.registry = registry
        self.store = store
        self.downloader = downloader
        self.policy = policy or RetryPolicy(jitter=False, retry_on_exceptions=(MediaDownloadError,))
        self.timeout = timeout
        self.error_tracker = error_tracker or ErrorTracker()
        self.sleep = sleep
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(MEDIA_LOCK_STRIPES)]

    def _lock_for(self, external_media_id: str) -> threading.Lock:
        return self._locks[hash(external_media_id) % MEDIA_LOCK_STRIPES]

    def ensure(self, request: MediaRequest, owner_external_id: Optional[str] = None) -> MediaOutcome:
        # Two nodes embedding the same media must not download it twice
        with self._lock_for(request.external_media_id):
            existing = self.registry.find(request.external_media_id)
            if existing and not self.registry.needs_refetch(request.external_media_id, request.fingerprint):
                logger.debug(f"Reusing asset {existing} for media {request.external_media_id}")
                return MediaOutcome(request.external_media_id, existing)

            try:
                data, response_meta = with_retry(
                    lambda: self.downloader.download(request.url, self.timeout),
                    policy=self.policy,
                    sleep=self.sleep,
                    description=f"Download of media {request.external_media_id}",
                )
            except MediaDownloadError as e:
                self.registry.record_failure(request.external_media_id, e.message)
                self.error_tracker.report(
                    f"Media {request.external_media_id} could not be downloaded: {e.message}",
                    external_id=owner_external_id,
                    severity=ErrorSeverity.ERROR,
                    category=ErrorCategory.MEDIA,
                    details={'external_media_id': request.external_media_id, 'attempts': self.policy.max_attempts},
                    recovery_suggestion=e.recovery_suggestion or "Re-sync the page once the media host is reachable",
                )
                logger.error(f"Giving up on media {request.external_media_id}: {e.message}")
                return MediaOutcome(request.external_media_id, error=e.message)

            metadata = dict(response_meta)
            metadata.update({
                'external_media_id': request.external_media_id,
                'media_type': request.media_type,
                'caption': request.caption,
                'filename': request.filename or response_meta.get('filename', ''),
            })
            if existing:
                metadata['target_asset_id'] = existing
            asset_id = self.store.upsert_media_asset(data, metadata)
            self.registry.register(request.external_media_id, asset_id, request.fingerprint)
            logger.info(f"Stored media {request.external_media_id} as asset {asset_id}",
                        extra={'details': {'external_id': request.external_media_id, 'target_asset_id': asset_id}})
            return MediaOutcome(request.external_media_id, asset_id, downloaded=True)

    def apply(self, fragments: List[Fragment], owner_external_id: Optional[str] = None) -> List[MediaOutcome]:
        """Fulfil every pending media request and replace its marker with the final markup."""
        outcomes = []
        for fragment in fragments:
            for request in fragment.media:
                outcome = self.ensure(request, owner_external_id)
                outcomes.append(outcome)
                if outcome.ok:
                    html = render_media(request, outcome.target_asset_id, self.store.asset_url(outcome.target_asset_id))
                    if len(fragment.media) == 1:
                        fragment.attrs['id'] = outcome.target_asset_id
                else:
                    html = render_broken_media(request, outcome.error)
                fragment.html = fragment.html.replace(media_marker(request.external_media_id), html)
            fragment.media = []
        return outcomes
