"""
Log stream: ordering, hash chain verification and post-commit subscriptions.
"""

import sqlite3
import threading
from unittest.mock import MagicMock

import pytest

from assetgate.core.errors import NotOwnerOrAdmin
from assetgate.core.ledger import GENESIS_HASH, compute_record_hash
from assetgate.core.schema import LogEvent, LogRecord

OWNER = "0xowner"


class TestLogRead:
    """Test reading the log stream."""

    def test_sequence_is_strictly_increasing(self, door):
        door.add_authorization("door-1", "0xa", "viewer", OWNER)
        door.remove_authorization("door-1", "0xa", OWNER)

        seqs = [r.seq for r in door.get_log_records()]
        assert seqs == sorted(seqs)
        assert len(set(seqs)) == len(seqs)
        assert door.head_seq() == seqs[-1]

    def test_empty_log_head_is_zero(self, registry):
        assert registry.head_seq() == 0
        assert registry.get_log_records() == []

    def test_read_after_cursor(self, door):
        cursor = door.head_seq()
        door.add_authorization("door-1", "0xa", "viewer", OWNER)

        records = door.get_log_records(after_seq=cursor)
        assert len(records) == 1
        assert records[0].event == LogEvent.AUTHORIZATION_ADDED

    def test_filter_by_asset(self, door):
        door.create_asset("door-2", "Back door", OWNER)
        door.add_authorization("door-2", "0xa", "viewer", OWNER)

        records = door.get_log_records(asset_key="door-2")
        assert {r.asset_key for r in records} == {"door-2"}
        assert len(records) == 2

    def test_limit(self, door):
        for account in ["0xa", "0xb", "0xc"]:
            door.add_authorization("door-1", account, "viewer", OWNER)

        assert len(door.get_log_records(limit=2)) == 2

    def test_record_round_trips_through_dict(self, door):
        record = door.get_log_records()[0]
        assert LogRecord.from_dict(record.to_dict()) == record


class TestHashChain:
    """Test tamper evidence."""

    def test_first_record_links_to_genesis(self, door):
        assert door.get_log_records()[0].prev_hash == GENESIS_HASH

    def test_records_are_linked(self, door):
        door.add_authorization("door-1", "0xa", "viewer", OWNER)
        first, second = door.get_log_records()
        assert second.prev_hash == first.record_hash

    def test_hash_is_deterministic(self):
        args = (GENESIS_HASH, "tx", "asset_created", "door-1", OWNER, {"description": "d"}, 1000)
        assert compute_record_hash(*args) == compute_record_hash(*args)
        assert compute_record_hash(*args) != compute_record_hash(*args[:-1], 1001)

    def test_verify_intact_chain(self, door):
        door.add_authorization("door-1", "0xa", "viewer", OWNER)
        door.get_access("door-1", "0xa")

        assert door.verify_log_chain() == (True, None)

    def test_verify_detects_edited_record(self, door):
        door.add_authorization("door-1", "0xa", "viewer", OWNER)
        door.add_authorization("door-1", "0xb", "viewer", OWNER)
        target = door.get_log_records()[1].seq

        conn = sqlite3.connect(door.db_path)
        conn.execute("UPDATE ledger_log SET data = ? WHERE seq = ?", ('{"role": "owner"}', target))
        conn.commit()
        conn.close()

        assert door.verify_log_chain() == (False, target)

    def test_verify_detects_deleted_record(self, door):
        door.add_authorization("door-1", "0xa", "viewer", OWNER)
        door.add_authorization("door-1", "0xb", "viewer", OWNER)
        records = door.get_log_records()

        conn = sqlite3.connect(door.db_path)
        conn.execute("DELETE FROM ledger_log WHERE seq = ?", (records[1].seq,))
        conn.commit()
        conn.close()

        assert door.verify_log_chain() == (False, records[2].seq)


class TestSubscriptions:
    """Committed records are pushed to subscribers in order."""

    def test_subscriber_receives_records(self, door):
        received = []
        door.subscribe(received.append)

        door.add_authorization("door-1", "0xa", "viewer", OWNER)

        assert len(received) == 1
        assert received[0].event == LogEvent.AUTHORIZATION_ADDED
        assert received[0].account == "0xa"

    def test_delivered_after_commit(self, door):
        """A subscriber sees the state the record describes."""
        seen = []
        door.subscribe(lambda record: seen.append(door.can_access("door-1", record.account)))

        door.add_authorization("door-1", "0xa", "viewer", OWNER)

        assert seen == [True]

    def test_rejected_mutation_publishes_nothing(self, door):
        callback = MagicMock()
        door.subscribe(callback)

        with pytest.raises(NotOwnerOrAdmin):
            door.add_authorization("door-1", "0xa", "viewer", "0xmallory")

        callback.assert_not_called()

    def test_filters(self, door):
        door.create_asset("door-2", "Back door", OWNER)
        callback = MagicMock()
        door.subscribe(callback, asset_key="door-1", events=[LogEvent.AUTHORIZATION_REMOVED])

        door.add_authorization("door-1", "0xa", "viewer", OWNER)
        door.add_authorization("door-2", "0xa", "viewer", OWNER)
        door.remove_authorization("door-2", "0xa", OWNER)
        door.remove_authorization("door-1", "0xa", OWNER)

        callback.assert_called_once()
        record = callback.call_args[0][0]
        assert record.asset_key == "door-1"
        assert record.event == LogEvent.AUTHORIZATION_REMOVED

    def test_failing_subscriber_is_isolated(self, door):
        good = MagicMock()
        door.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        door.subscribe(good)

        door.add_authorization("door-1", "0xa", "viewer", OWNER)

        good.assert_called_once()
        assert door.can_access("door-1", "0xa") is True

    def test_unsubscribe(self, door):
        callback = MagicMock()
        token = door.subscribe(callback)
        door.unsubscribe(token)

        door.add_authorization("door-1", "0xa", "viewer", OWNER)

        callback.assert_not_called()

    def test_non_callable_rejected(self, door):
        with pytest.raises(ValueError, match="Subscriber must be callable"):
            door.subscribe("not callable")

    def test_slow_subscriber_keeps_commit_order(self, door):
        """A later mutation waits for the earlier one's delivery before publishing."""
        door.add_authorization("door-1", "0xa", "viewer", OWNER)
        delivered = []
        stalled = threading.Event()
        release = threading.Event()

        def slow(record):
            if record.event == LogEvent.AUTHORIZATION_REMOVED:
                stalled.set()
                release.wait(5)
            delivered.append(record.seq)

        door.subscribe(slow, asset_key="door-1")

        revoke = threading.Thread(target=door.remove_authorization, args=("door-1", "0xa", OWNER))
        revoke.start()
        assert stalled.wait(5)

        grant = threading.Thread(target=door.add_authorization, args=("door-1", "0xb", "viewer", OWNER))
        grant.start()
        grant.join(0.3)
        assert grant.is_alive()
        assert door.can_access("door-1", "0xb") is True

        release.set()
        revoke.join(5)
        grant.join(5)

        assert len(delivered) == 2
        assert delivered == sorted(delivered)

    def test_subscriber_may_mutate(self, door):
        def grant_follower(record):
            if record.account == "0xa":
                door.add_authorization("door-1", "0xb", "viewer", OWNER)

        door.subscribe(grant_follower, asset_key="door-1", events=[LogEvent.AUTHORIZATION_ADDED])

        door.add_authorization("door-1", "0xa", "viewer", OWNER)

        assert door.can_access("door-1", "0xb") is True
