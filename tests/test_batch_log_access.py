"""
batch_log_access records externally made decisions on the log stream.
"""

import pytest

from assetgate.core.errors import BatchError, ValidationFailed
from assetgate.core.schema import AccessLogEntry, LogEvent

OWNER = "0xowner"


def make_entries(count, asset_key="door-1"):
    return [
        AccessLogEntry(account=f"0x{i:03d}", asset_key=asset_key, timestamp=1000 + i, granted=i % 2 == 0)
        for i in range(count)
    ]


class TestBatchLogAccess:
    """Test the batch audit operation."""

    def test_records_in_input_order(self, door):
        cursor = door.head_seq()

        assert door.batch_log_access(make_entries(5), "0xcache") == 5

        records = door.get_log_records(after_seq=cursor)
        assert [r.account for r in records] == [f"0x{i:03d}" for i in range(5)]
        assert all(r.event == LogEvent.ACCESS_ATTEMPT for r in records)
        assert records[0].data == {"granted": True, "timestamp": 1000, "reported_by": "0xcache", "batched": True}
        assert records[1].data["granted"] is False

    def test_not_permission_gated(self, door):
        """Any identity may report decisions, including for unknown assets."""
        assert door.batch_log_access(make_entries(1, asset_key="unknown"), "0xstranger") == 1

    def test_accepts_dicts(self, door):
        entries = [{"account": "0xa", "asset_key": "door-1", "timestamp": 5, "granted": True}]
        assert door.batch_log_access(entries, "0xcache") == 1

    def test_malformed_dict_rejected(self, door):
        head = door.head_seq()

        with pytest.raises(ValidationFailed, match="Malformed access log entry"):
            door.batch_log_access([{"account": "0xa"}], "0xcache")

        assert door.head_seq() == head

    def test_empty_rejected(self, door):
        with pytest.raises(BatchError, match="No entries provided"):
            door.batch_log_access([], "0xcache")

    def test_cap_is_100(self, door):
        assert door.batch_log_access(make_entries(100), "0xcache") == 100

    def test_over_cap_rejected_entirely(self, door):
        head = door.head_seq()

        with pytest.raises(BatchError, match="Batch size exceeds maximum of 100"):
            door.batch_log_access(make_entries(101), "0xcache")

        assert door.head_seq() == head

    def test_does_not_change_authorization_state(self, door):
        door.batch_log_access(make_entries(3), "0xcache")

        assert door.get_asset_authorization_count("door-1") == 0
        assert door.verify_log_chain() == (True, None)
