"""
Batch grant and revoke: one permission check, one transaction, all or nothing.
"""

import pytest

from assetgate.core.errors import BatchError, NotOwnerOrAdmin, TemporalPolicyError, ValidationFailed
from assetgate.core.schema import NULL_ACCOUNT, LogEvent

OWNER = "0xowner"


class TestBatchAdd:
    """Test add_authorization_batch."""

    def test_batch_add(self, door):
        door.add_authorization_batch("door-1", ["0xa", "0xb", "0xc"], ["viewer", "admin", "viewer"], OWNER)

        assert door.get_asset_authorization_count("door-1") == 3
        assert door.get_asset_authorization("door-1", "0xb") == "admin"

    def test_batch_shares_one_transaction_id(self, door):
        door.add_authorization_batch("door-1", ["0xa", "0xb"], ["viewer", "viewer"], OWNER)

        records = door.get_log_records(events=[LogEvent.AUTHORIZATION_ADDED])
        assert [r.account for r in records] == ["0xa", "0xb"]
        assert records[0].tx_id == records[1].tx_id

    def test_length_mismatch_applies_nothing(self, door):
        head = door.head_seq()

        with pytest.raises(BatchError, match="Array length mismatch"):
            door.add_authorization_batch("door-1", ["0xa", "0xb"], ["viewer"], OWNER)

        assert door.get_asset_authorization_count("door-1") == 0
        assert door.head_seq() == head

    def test_empty_arrays_rejected(self, door):
        with pytest.raises(BatchError, match="Empty arrays provided"):
            door.add_authorization_batch("door-1", [], [], OWNER)

    def test_one_bad_entry_rolls_back_all(self, door):
        """A failure midway leaves no trace of the entries before it."""
        with pytest.raises(ValidationFailed, match="Invalid account address"):
            door.add_authorization_batch("door-1", ["0xa", NULL_ACCOUNT, "0xc"], ["viewer"] * 3, OWNER)

        assert door.get_asset_authorization_count("door-1") == 0
        assert door.get_authorization_entry("door-1", "0xa").active is False

    def test_stranger_rejected(self, door):
        with pytest.raises(NotOwnerOrAdmin):
            door.add_authorization_batch("door-1", ["0xa"], ["viewer"], "0xmallory")

    def test_duplicate_accounts_in_batch(self, door):
        door.add_authorization_batch("door-1", ["0xa", "0xa"], ["viewer", "admin"], OWNER)

        assert door.get_asset_authorization_count("door-1") == 1
        assert door.get_asset_authorization("door-1", "0xa") == "admin"


class TestBatchAddWithDuration:
    """Test add_authorization_batch_with_duration."""

    def test_mixed_durations(self, door, clock):
        door.add_authorization_batch_with_duration(
            "door-1", ["0xa", "0xb"], ["temporary", "admin"], [60, 0], OWNER
        )

        assert door.get_authorization_entry("door-1", "0xa").expires_at == int(clock.now) + 60
        assert door.get_authorization_entry("door-1", "0xb").expires_at == 0

        clock.advance(60)
        assert door.can_access("door-1", "0xa") is False
        assert door.can_access("door-1", "0xb") is True

    def test_duration_length_mismatch(self, door):
        with pytest.raises(BatchError, match="Array length mismatch"):
            door.add_authorization_batch_with_duration("door-1", ["0xa", "0xb"], ["admin", "admin"], [0], OWNER)

    def test_temporal_policy_rolls_back_batch(self, door):
        with pytest.raises(TemporalPolicyError):
            door.add_authorization_batch_with_duration(
                "door-1", ["0xa", "0xb"], ["admin", "temporary"], [0, 0], OWNER
            )

        assert door.get_asset_authorization_count("door-1") == 0


class TestBatchRemove:
    """Test remove_authorization_batch."""

    def test_batch_remove(self, door):
        door.add_authorization_batch("door-1", ["0xa", "0xb", "0xc"], ["viewer"] * 3, OWNER)

        door.remove_authorization_batch("door-1", ["0xa", "0xc"], OWNER)

        assert door.get_asset_authorization_count("door-1") == 1
        assert door.get_asset_authorization_at_index("door-1", 0) == "0xb"

    def test_empty_array_rejected(self, door):
        with pytest.raises(BatchError, match="Empty array provided"):
            door.remove_authorization_batch("door-1", [], OWNER)

    def test_stranger_rejected(self, door):
        door.add_authorization("door-1", "0xa", "viewer", OWNER)

        with pytest.raises(NotOwnerOrAdmin):
            door.remove_authorization_batch("door-1", ["0xa"], "0xmallory")

        assert door.can_access("door-1", "0xa") is True

    def test_caller_may_remove_itself(self, door):
        """Permission is checked once, before any removal."""
        door.add_authorization("door-1", "0xa", "admin", OWNER)
        door.add_authorization("door-1", "0xb", "viewer", OWNER)

        door.remove_authorization_batch("door-1", ["0xa", "0xb"], "0xa")

        assert door.get_asset_authorization_count("door-1") == 0
