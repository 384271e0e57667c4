"""
Tests for the burn payout journal.
"""

import pytest

from trustless_oracle.db import (
    STATUS_BROADCAST,
    STATUS_BUILDING,
    STATUS_BUILT,
    STATUS_FAILED,
    STATUS_SIGNED,
    STATUS_VALIDATED,
    BurnJournal,
    parse_database_url,
)


@pytest.fixture
def journal(tmp_path):
    journal = BurnJournal(f"sqlite:///{tmp_path}/journal.db")
    yield journal
    journal.close()


class TestClaim:
    """A burn may be built only while no payout for it has been signed."""

    def test_first_claim(self, journal):
        assert journal.claim(1)
        entry = journal.get(1)
        assert entry.status == STATUS_BUILDING
        assert entry.tx_hash is None

    def test_signed_burn_not_reclaimed(self, journal):
        journal.claim(1)
        journal.mark_signed(1, "ab" * 32, "0200")
        assert not journal.claim(1)

    def test_broadcast_and_validated_not_reclaimed(self, journal):
        journal.claim(1)
        journal.mark_broadcast(1)
        journal.claim(2)
        journal.mark_validated(2)
        assert not journal.claim(1)
        assert not journal.claim(2)

    def test_failed_burn_retried(self, journal):
        journal.claim(1)
        journal.mark_failed(1, "Not enough funds")
        assert journal.get(1).error == "Not enough funds"

        assert journal.claim(1)
        entry = journal.get(1)
        assert entry.status == STATUS_BUILDING
        assert entry.error is None

    def test_built_payout_kept_on_failure(self, journal):
        """A payout signed locally survives a failed burnSigned and the burn stays retryable."""
        journal.claim(1)
        journal.mark_built(1, "ab" * 32, "0200ff")
        assert journal.get(1).status == STATUS_BUILT

        journal.mark_failed(1, "receipt timeout")
        entry = journal.get(1)
        assert entry.status == STATUS_FAILED
        assert entry.tx_hash == "ab" * 32
        assert entry.raw_tx_hex == "0200ff"
        assert journal.claim(1)

    def test_large_burn_ids(self, journal):
        burn_id = 2**255 + 1
        assert journal.claim(burn_id)
        assert journal.get(burn_id).burn_id == burn_id


class TestQueries:
    def test_missing_entry(self, journal):
        assert journal.get(42) is None

    def test_signed_payload_stored(self, journal):
        journal.claim(5)
        journal.mark_signed(5, "cd" * 32, "0100abcd")
        entry = journal.get(5)
        assert entry.status == STATUS_SIGNED
        assert entry.tx_hash == "cd" * 32
        assert entry.raw_tx_hex == "0100abcd"

    def test_list_by_status_in_claim_order(self, journal):
        for burn_id in (3, 1, 2):
            journal.claim(burn_id)
        journal.mark_broadcast(1)
        journal.mark_failed(2, "boom")

        assert [e.burn_id for e in journal.list_by_status(STATUS_BUILDING, STATUS_FAILED)] == [3, 2]
        assert [e.burn_id for e in journal.list_by_status(STATUS_BROADCAST)] == [1]
        assert journal.list_by_status(STATUS_VALIDATED) == []


def test_survives_restart(tmp_path):
    url = f"sqlite:///{tmp_path}/journal.db"
    first = BurnJournal(url)
    first.claim(9)
    first.mark_signed(9, "ef" * 32, "00")
    first.close()

    second = BurnJournal(url)
    assert not second.claim(9)
    assert second.get(9).status == STATUS_SIGNED
    second.close()


def test_parse_database_url():
    assert parse_database_url("postgres://u:p@db:5432/oracle") == "postgresql://u:p@db:5432/oracle"
    assert parse_database_url("sqlite:///./oracle.db") == "sqlite:///./oracle.db"


def test_password_masked(journal):
    assert journal._mask_url("postgresql://user:secret@db/oracle") == "postgresql://user:***@db/oracle"
