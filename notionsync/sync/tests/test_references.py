"""
Tests for the reference registry and the resolver sweep.
"""

import tempfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from ..converters import Fragment, reference_anchor
from ..error_tracker import ErrorCategory, ErrorTracker
from ..models import LinkStatus, ReferenceStatus
from ..references import ReferenceRegistry, ReferenceResolver
from .fakes import FakeStore


class TestReferenceRegistry:

    @pytest.fixture
    def registry(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield ReferenceRegistry(temp_dir)

    def test_ensure_is_idempotent(self, registry):
        first = registry.ensure("Page-A")
        second = registry.ensure("pagea")

        assert first.external_id == "pagea"
        assert second.status == ReferenceStatus.UNRESOLVED
        assert len(registry.entries()) == 1
        assert registry.resolve("pagea") is None

    def test_target_set_only_when_resolved(self, registry):
        registry.ensure("pagea")
        registry.mark_resolved("pagea", "post-1")
        assert registry.resolve("pagea") == "post-1"

        entry = registry.mark_failed("pagea", "superseded")
        assert entry.status == ReferenceStatus.FAILED
        assert entry.target_identifier is None
        assert registry.resolve("pagea") is None

    def test_last_writer_wins(self, registry):
        registry.mark_resolved("pagea", "post-1")
        registry.mark_resolved("pagea", "post-2")

        assert registry.resolve("pagea") == "post-2"
        statuses = [row['status'] for row in registry.history("pagea")]
        assert statuses == ['unresolved', 'resolved', 'resolved']

    def test_record_error_keeps_resolved_target(self, registry):
        registry.mark_resolved("pagea", "post-1")
        registry.record_error("pagea", "fetch timed out")

        entry = registry.get("pagea")
        assert entry.status == ReferenceStatus.RESOLVED
        assert entry.target_identifier == "post-1"
        assert entry.error_detail == "fetch timed out"

    def test_mark_resolving_has_a_single_winner(self, registry):
        registry.ensure("pagea")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: registry.mark_resolving("pagea"), range(8)))

        assert results.count(True) == 1
        assert registry.get("pagea").status == ReferenceStatus.RESOLVING

    def test_stale_resolving_lease_can_be_taken_over(self, registry):
        assert registry.mark_resolving("pagea")
        assert not registry.mark_resolving("pagea")
        assert registry.mark_resolving("pagea", lease_seconds=-1)

    def test_resolved_entry_is_never_moved_to_resolving(self, registry):
        registry.mark_resolved("pagea", "post-1")
        assert not registry.mark_resolving("pagea")
        assert registry.resolve("pagea") == "post-1"

    def test_record_links_starts_status_from_target(self, registry):
        registry.mark_resolved("pageb", "post-2")
        registry.record_links("pagea", ["pageb", "pagec"])

        links = {link['target_external_id']: link['status'] for link in registry.links("pagea")}
        assert links == {'pageb': 'resolved', 'pagec': 'pending'}
        assert registry.get("pagec").status == ReferenceStatus.UNRESOLVED

        registry.record_links("pagea", ["pagec"])
        assert [link['target_external_id'] for link in registry.links("pagea")] == ["pagec"]

    def test_stats(self, registry):
        registry.mark_resolved("pagea", "post-1")
        registry.record_links("pagea", ["pageb"])
        stats = registry.stats()

        assert stats['entries'] == {'resolved': 1, 'unresolved': 1}
        assert stats['links'] == {'pending': 1}


class TestReferenceResolver:

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.registry = ReferenceRegistry(self.temp_dir.name)
        self.store = FakeStore()
        self.tracker = ErrorTracker()
        self.resolver = ReferenceResolver(self.registry, self.store, max_sweeps=3, error_tracker=self.tracker)

    def teardown_method(self):
        self.temp_dir.cleanup()

    def _persist_owner_linking_to(self, owner: str, target: str) -> str:
        fragment = Fragment('paragraph', f"<p>See {reference_anchor(target, 'the other page')}</p>", references=[target])
        target_id = self.store.upsert_document(owner, [fragment], None, 0)
        self.registry.mark_resolved(owner, target_id)
        self.registry.record_links(owner, [target])
        return target_id

    def test_forward_reference_resolves_after_target_syncs(self):
        owner_target = self._persist_owner_linking_to("pagea", "pageb")
        assert 'data-ref-status="pending"' in self.store.html(owner_target)

        self.registry.mark_resolved("pageb", "post-99")
        report = self.resolver.sweep()

        html = self.store.html(owner_target)
        assert 'href="https://site.test/?p=post-99"' in html
        assert 'data-ref-status="resolved"' in html
        assert report.documents_updated == 1
        assert report.links_resolved == 1
        assert self.registry.links("pagea")[0]['status'] == LinkStatus.RESOLVED.value
        assert self.registry.owners_with_pending_links() == []

    def test_link_becomes_broken_after_max_sweeps(self):
        owner_target = self._persist_owner_linking_to("pagea", "pageb")

        self.resolver.sweep()
        self.resolver.sweep()
        assert self.registry.links("pagea")[0]['status'] == LinkStatus.PENDING.value
        report = self.resolver.sweep()

        assert report.links_broken == 1
        assert report.broken == [("pagea", "pageb")]
        assert 'class="notionsync-broken-ref"' in self.store.html(owner_target)
        errors = self.tracker.get_errors()
        assert len(errors) == 1
        assert errors[0].category == ErrorCategory.LINK

    def test_broken_link_heals_when_target_resolves(self):
        owner_target = self._persist_owner_linking_to("pagea", "pageb")
        for _ in range(3):
            self.resolver.sweep()
        assert self.registry.links("pagea")[0]['status'] == LinkStatus.BROKEN.value

        self.registry.mark_resolved("pageb", "post-5")
        assert self.registry.links("pagea")[0]['status'] == LinkStatus.PENDING.value
        self.resolver.sweep()

        assert 'data-ref-status="resolved"' in self.store.html(owner_target)
        assert 'notionsync-broken-ref' not in self.store.html(owner_target)

    def test_moved_target_is_rewritten(self):
        owner_target = self._persist_owner_linking_to("pagea", "pageb")
        self.registry.mark_resolved("pageb", "post-10")
        self.resolver.sweep()

        self.registry.mark_resolved("pageb", "post-11")
        self.resolver.sweep()

        html = self.store.html(owner_target)
        assert 'p=post-11' in html
        assert 'p=post-10' not in html

    def test_unpersisted_owner_is_skipped(self):
        self.registry.record_links("pagea", ["pageb"])
        report = self.resolver.sweep()

        assert report.owners_scanned == 0
        assert self.store.updated == 0

    def test_failing_owner_does_not_stop_the_sweep(self):
        failing_target = self._persist_owner_linking_to("pagea", "pageb")
        healthy_target = self._persist_owner_linking_to("pagec", "pageb")
        self.store.fail_updates.add(failing_target)
        self.registry.mark_resolved("pageb", "post-99")

        report = self.resolver.sweep()

        assert 'href="https://site.test/?p=post-99"' in self.store.html(healthy_target)
        assert 'data-ref-status="pending"' in self.store.html(failing_target)
        assert report.owners_failed == 1
        assert report.failed_owners == ["pagea"]
        assert report.to_dict()['owners_failed'] == 1
        assert self.registry.links("pagea")[0]['status'] == LinkStatus.PENDING.value
        errors = self.tracker.get_errors(category=ErrorCategory.LINK)
        assert [error.external_id for error in errors] == ["pagea"]
        assert errors[0].details['error_type'] == "PersistError"

        self.store.fail_updates.clear()
        retry = self.resolver.sweep()

        assert retry.owners_failed == 0
        assert 'data-ref-status="resolved"' in self.store.html(failing_target)
