"""Tests for the in-process StatusStore."""

from datetime import UTC, datetime, timedelta

from offer_consensus.models import ContributionStatus
from offer_consensus.status_store import StatusStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.now


class TestStatusStore:
    """Test set/get/list and expiry."""

    def test_unknown_id_defaults_to_pending(self):
        assert StatusStore().get_status("nope") is ContributionStatus.PENDING

    def test_set_and_get(self):
        store = StatusStore()
        store.set_status("c1", "approved")
        assert store.get_status("c1") is ContributionStatus.APPROVED

    def test_update_keeps_created_at(self):
        clock = FakeClock()
        store = StatusStore(clock=clock)
        first = store.set_status("c1", ContributionStatus.PENDING)
        created = first.created_at

        clock.now += timedelta(hours=1)
        record = store.set_status("c1", ContributionStatus.APPROVED)

        assert record.created_at == created
        assert record.updated_at == clock.now
        assert len(store) == 1

    def test_list_all_excludes_stale(self):
        clock = FakeClock()
        store = StatusStore(clock=clock)
        store.set_status("old", "pending")
        clock.now += timedelta(hours=23)
        store.set_status("new", "approved")
        clock.now += timedelta(hours=2)

        records = store.list_all()

        assert [r.contribution_id for r in records] == ["new"]
        assert records[0].to_dict()["status"] == "approved"

    def test_cleanup(self):
        clock = FakeClock()
        store = StatusStore(clock=clock)
        store.set_status("old", "pending")
        clock.now += timedelta(hours=12)
        store.set_status("new", "pending")
        clock.now += timedelta(hours=13)

        assert store.cleanup() == 1
        assert len(store) == 1
        assert store.get_status("new") is ContributionStatus.PENDING

    def test_cleanup_custom_age(self):
        clock = FakeClock()
        store = StatusStore(clock=clock)
        store.set_status("c1", "pending")
        clock.now += timedelta(minutes=10)

        assert store.cleanup(timedelta(minutes=5)) == 1


class TestSubscriptions:
    """Test change notification."""

    def test_listener_called(self):
        store = StatusStore()
        seen = []
        store.subscribe(lambda cid, status: seen.append((cid, status)))

        store.set_status("c1", "pending")
        store.set_status("c1", "approved")

        assert seen == [
            ("c1", ContributionStatus.PENDING),
            ("c1", ContributionStatus.APPROVED),
        ]

    def test_unsubscribe(self):
        store = StatusStore()
        seen = []
        unsubscribe = store.subscribe(lambda cid, status: seen.append(cid))

        store.set_status("c1", "pending")
        unsubscribe()
        store.set_status("c2", "pending")

        assert seen == ["c1"]

    def test_failing_listener_does_not_break_others(self):
        store = StatusStore()
        seen = []

        def broken(cid, status):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(lambda cid, status: seen.append(cid))

        store.set_status("c1", "approved")

        assert seen == ["c1"]
        assert store.get_status("c1") is ContributionStatus.APPROVED

    def test_instances_are_independent(self):
        a = StatusStore()
        b = StatusStore()
        a.set_status("c1", "approved")
        assert b.get_status("c1") is ContributionStatus.PENDING
