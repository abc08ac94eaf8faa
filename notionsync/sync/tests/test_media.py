"""
Tests for media fingerprinting, the media registry and media synchronization.
"""

import tempfile
from unittest.mock import Mock, patch

import pytest
import requests

from ..converters import Fragment, media_marker
from ..error_tracker import ErrorCategory, ErrorTracker, MediaDownloadError, MediaRateLimitedError
from ..fingerprint import compute_fingerprint
from ..media import MEDIA_LOCK_STRIPES, HttpMediaDownloader, MediaRegistry, MediaSynchronizer
from ..models import MediaRequest
from ..resilience import RetryPolicy
from .fakes import FakeDownloader, FakeStore


def image_request(url: str, media_id: str = "img1", content_hash=None) -> MediaRequest:
    return MediaRequest(external_media_id=media_id, url=url, fingerprint=compute_fingerprint(url, content_hash),
                        caption="Diagram")


class TestFingerprint:

    def test_signed_url_reissue_keeps_fingerprint(self):
        first = compute_fingerprint("https://files.test/ws/a.png?X-Amz-Signature=one&X-Amz-Expires=3600")
        second = compute_fingerprint("https://files.test/ws/a.png?X-Amz-Signature=two&X-Amz-Expires=3600")
        assert first == second
        assert first.startswith("url:")

    def test_path_change_changes_fingerprint(self):
        assert compute_fingerprint("https://files.test/ws/a.png") != compute_fingerprint("https://files.test/ws/b.png")

    def test_content_hash_takes_precedence(self):
        assert compute_fingerprint("https://files.test/a.png", "abc") == "hash:abc"


class TestMediaRegistry:

    @pytest.fixture
    def registry(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield MediaRegistry(temp_dir)

    def test_register_and_find(self, registry):
        assert registry.find("img1") is None
        registry.register("img1", "asset-1", "url:aaa")

        assert registry.find("img1") == "asset-1"
        assert not registry.needs_refetch("img1", "url:aaa")
        assert registry.needs_refetch("img1", "url:bbb")
        assert registry.needs_refetch("img2", "url:aaa")

    def test_changed_fingerprint_updates_the_same_row(self, registry):
        registry.register("img1", "asset-1", "url:aaa")
        registry.register("img1", "asset-1", "url:bbb")

        entry = registry.get("img1")
        assert entry.source_fingerprint == "url:bbb"
        assert entry.updated_at is not None
        assert registry.stats()['assets'] == 1

    def test_failure_keeps_existing_asset(self, registry):
        registry.register("img1", "asset-1", "url:aaa")
        registry.record_failure("img1", "HTTP 500")

        assert registry.find("img1") == "asset-1"
        assert registry.failures() == [
            {'external_media_id': "img1", 'target_asset_id': "asset-1", 'error_count': 1, 'last_error': "HTTP 500"}
        ]

    def test_failure_without_asset_is_not_found(self, registry):
        registry.record_failure("img9", "timeout")

        assert registry.find("img9") is None
        assert registry.get("img9") is None
        stats = registry.stats()
        assert stats['assets'] == 0
        assert stats['failed'] == 1


class TestMediaSynchronizer:

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.registry = MediaRegistry(self.temp_dir.name)
        self.store = FakeStore()
        self.downloader = FakeDownloader()
        self.tracker = ErrorTracker()
        self.sleeps = []
        self.sync = MediaSynchronizer(
            self.registry, self.store, self.downloader,
            policy=RetryPolicy(max_attempts=3, base_delay_seconds=1.0, jitter=False,
                               retry_on_exceptions=(MediaDownloadError,)),
            error_tracker=self.tracker, sleep=self.sleeps.append,
        )

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_unchanged_fingerprint_is_not_downloaded_twice(self):
        first = self.sync.ensure(image_request("https://files.test/a.png?sig=1"))
        second = self.sync.ensure(image_request("https://files.test/a.png?sig=2"))

        assert first.downloaded and not second.downloaded
        assert first.target_asset_id == second.target_asset_id == "asset-1"
        assert len(self.downloader.calls) == 1
        assert self.store.assets_created == 1

    def test_changed_fingerprint_replaces_bytes_under_same_asset(self):
        self.sync.ensure(image_request("https://files.test/a.png", content_hash="v1"))
        outcome = self.sync.ensure(image_request("https://files.test/a.png", content_hash="v2"))

        assert outcome.downloaded
        assert outcome.target_asset_id == "asset-1"
        assert self.store.assets_created == 1
        assert self.store.assets_replaced == 1
        assert self.registry.get("img1").source_fingerprint == "hash:v2"

    def test_failed_download_retries_with_backoff_then_degrades(self):
        url = "https://files.test/broken.png"
        self.downloader.failing.add(url)
        outcome = self.sync.ensure(image_request(url), owner_external_id="pagea")

        assert not outcome.ok
        assert len(self.downloader.calls) == 3
        assert self.sleeps == [1.0, 2.0]
        errors = self.tracker.get_errors(category=ErrorCategory.MEDIA)
        assert len(errors) == 1
        assert errors[0].external_id == "pagea"
        assert self.registry.failures()[0]['external_media_id'] == "img1"

    def test_rate_limited_download_waits_for_retry_after(self):
        self.sync.downloader = Mock()
        self.sync.downloader.download.side_effect = [
            MediaRateLimitedError("Rate limited by media host", retry_after=7),
            (b"data", {'content_type': 'image/png'}),
        ]

        outcome = self.sync.ensure(image_request("https://files.test/a.png"))

        assert outcome.downloaded
        assert self.sleeps == [7]

    def test_download_locks_are_bounded(self):
        for index in range(MEDIA_LOCK_STRIPES * 3):
            self.sync.ensure(image_request(f"https://files.test/{index}.png", media_id=f"img{index}"))

        assert len(self.sync._locks) == MEDIA_LOCK_STRIPES
        assert self.sync._lock_for("img1") is self.sync._lock_for("img1")

    def test_apply_replaces_markers(self):
        ok_request = image_request("https://files.test/a.png", media_id="img1")
        bad_request = image_request("https://files.test/b.png", media_id="img2")
        self.downloader.failing.add(bad_request.url)
        fragments = [
            Fragment('image', media_marker("img1"), media=[ok_request]),
            Fragment('image', media_marker("img2"), media=[bad_request]),
        ]

        outcomes = self.sync.apply(fragments, "pagea")

        assert [o.ok for o in outcomes] == [True, False]
        assert 'data-asset-id="asset-1"' in fragments[0].html
        assert fragments[0].attrs['id'] == "asset-1"
        assert 'notionsync-broken-media' in fragments[1].html
        assert all(not f.media and not f.awaiting_media for f in fragments)


class TestHttpMediaDownloader:

    def _response(self, status_code, content=b"data", headers=None):
        response = Mock()
        response.status_code = status_code
        response.content = content
        response.headers = headers or {'Content-Type': 'image/png'}
        return response

    def test_download_returns_bytes_and_metadata(self):
        session = Mock()
        session.get.return_value = self._response(200)
        data, meta = HttpMediaDownloader(session).download("https://files.test/dir/my%20file.png?sig=1", 30)

        assert data == b"data"
        assert meta == {'content_type': 'image/png', 'filename': 'my file.png', 'size': 4}
        session.get.assert_called_once_with("https://files.test/dir/my%20file.png?sig=1", timeout=30)

    def test_http_errors_raise_media_download_error(self):
        session = Mock()
        session.get.return_value = self._response(404)
        with pytest.raises(MediaDownloadError):
            HttpMediaDownloader(session).download("https://files.test/a.png", 30)

    def test_rate_limit_carries_retry_after(self):
        session = Mock()
        session.get.return_value = self._response(429, headers={'Retry-After': '7'})
        with pytest.raises(MediaRateLimitedError) as excinfo:
            HttpMediaDownloader(session).download("https://files.test/a.png", 30)

        assert excinfo.value.retry_after == 7
        assert excinfo.value.retryable
        assert excinfo.value.category == ErrorCategory.MEDIA

    def test_rate_limit_without_usable_retry_after(self):
        session = Mock()
        session.get.return_value = self._response(429, headers={'Retry-After': 'soon'})
        with pytest.raises(MediaRateLimitedError) as excinfo:
            HttpMediaDownloader(session).download("https://files.test/a.png", 30)

        assert excinfo.value.retry_after is None

    def test_network_errors_raise_media_download_error(self):
        session = Mock()
        session.get.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(MediaDownloadError):
            HttpMediaDownloader(session).download("https://files.test/a.png", 30)

    def test_default_session(self):
        with patch('requests.Session') as session_class:
            downloader = HttpMediaDownloader()
        assert downloader.session is session_class.return_value
