"""Tests for the commit-reveal approval primitive."""

import pytest
from eth_account import Account
from eth_utils import keccak

from bursar.commit_reveal import (
    REVEAL_WINDOW,
    CommitRevealBook,
    compute_commitment,
    new_nonce,
    normalize_commitment,
)
from bursar.errors import InvalidCommitmentError, RevealTooEarlyError


APPROVER = Account.create()
OTHER = Account.create()
CHAIN_ID = 31337
T0 = 1_700_000_000


def _commit(book, subject_id=1, approver=APPROVER, nonce=42, now=T0):
    book.commit(subject_id, approver.address, compute_commitment(approver.address, subject_id, CHAIN_ID, nonce), now)


class TestComputeCommitment:
    def test_packed_layout(self):
        expected = keccak(
            bytes.fromhex(APPROVER.address[2:])
            + (7).to_bytes(32, "big")
            + CHAIN_ID.to_bytes(32, "big")
            + (99).to_bytes(32, "big")
        )
        assert compute_commitment(APPROVER.address, 7, CHAIN_ID, 99) == "0x" + expected.hex()

    def test_address_case_does_not_matter(self):
        assert compute_commitment(APPROVER.address.lower(), 1, CHAIN_ID, 5) == compute_commitment(
            APPROVER.address, 1, CHAIN_ID, 5
        )

    def test_every_field_is_bound(self):
        base = compute_commitment(APPROVER.address, 1, CHAIN_ID, 5)
        assert compute_commitment(OTHER.address, 1, CHAIN_ID, 5) != base
        assert compute_commitment(APPROVER.address, 2, CHAIN_ID, 5) != base
        assert compute_commitment(APPROVER.address, 1, 1, 5) != base
        assert compute_commitment(APPROVER.address, 1, CHAIN_ID, 6) != base

    def test_rejects_out_of_range_nonce(self):
        with pytest.raises(InvalidCommitmentError, match="uint256"):
            compute_commitment(APPROVER.address, 1, CHAIN_ID, 2**256)

    def test_new_nonce_is_random(self):
        assert new_nonce() != new_nonce()


class TestNormalizeCommitment:
    def test_accepts_bytes_and_mixed_case(self):
        raw = bytes(range(32))
        assert normalize_commitment(raw) == "0x" + raw.hex()
        assert normalize_commitment("0X" + raw.hex().upper()) == "0x" + raw.hex()

    @pytest.mark.parametrize("value", ["0x1234", "0x" + "zz" * 32, "0x" + "00" * 32, 123])
    def test_rejects_malformed(self, value):
        with pytest.raises(InvalidCommitmentError):
            normalize_commitment(value)


class TestRevealWindow:
    def test_window_is_thirty_minutes(self):
        assert REVEAL_WINDOW == 1800

    def test_reveal_one_second_before_boundary_fails(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book)
        with pytest.raises(RevealTooEarlyError):
            book.reveal(1, APPROVER.address, 42, T0 + REVEAL_WINDOW - 1)

    def test_reveal_exactly_at_boundary_fails(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book)
        with pytest.raises(RevealTooEarlyError) as excinfo:
            book.reveal(1, APPROVER.address, 42, T0 + REVEAL_WINDOW)
        assert excinfo.value.reveal_after == T0 + REVEAL_WINDOW

    def test_reveal_one_second_after_boundary_succeeds(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book)
        commitment = book.reveal(1, APPROVER.address, 42, T0 + REVEAL_WINDOW + 1)
        assert commitment.committed_at == T0
        assert book.get(1, APPROVER.address) is None

    def test_custom_window(self):
        book = CommitRevealBook(CHAIN_ID, reveal_window=60)
        _commit(book)
        book.reveal(1, APPROVER.address, 42, T0 + 61)


class TestRevealValidation:
    def test_no_commitment(self):
        book = CommitRevealBook(CHAIN_ID)
        with pytest.raises(InvalidCommitmentError, match="No commitment"):
            book.reveal(1, APPROVER.address, 42, T0 + 10_000)

    def test_wrong_nonce(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book)
        with pytest.raises(InvalidCommitmentError, match="does not match"):
            book.reveal(1, APPROVER.address, 43, T0 + REVEAL_WINDOW + 1)

    def test_commitment_belongs_to_one_approver(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book)
        with pytest.raises(InvalidCommitmentError):
            book.reveal(1, OTHER.address, 42, T0 + REVEAL_WINDOW + 1)

    def test_commitment_from_another_chain_does_not_verify(self):
        book = CommitRevealBook(CHAIN_ID)
        book.commit(1, APPROVER.address, compute_commitment(APPROVER.address, 1, 1, 42), T0)
        with pytest.raises(InvalidCommitmentError):
            book.reveal(1, APPROVER.address, 42, T0 + REVEAL_WINDOW + 1)

    def test_reveal_consumes_exactly_once(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book)
        book.reveal(1, APPROVER.address, 42, T0 + REVEAL_WINDOW + 1)
        with pytest.raises(InvalidCommitmentError):
            book.reveal(1, APPROVER.address, 42, T0 + REVEAL_WINDOW + 2)

    def test_verify_does_not_consume(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book)
        book.verify(1, APPROVER.address, 42, T0 + REVEAL_WINDOW + 1)
        assert book.get(1, APPROVER.address) is not None


class TestOverwrite:
    def test_new_commit_replaces_old_and_restarts_window(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book, nonce=1, now=T0)
        _commit(book, nonce=2, now=T0 + 1000)

        with pytest.raises(InvalidCommitmentError):
            book.reveal(1, APPROVER.address, 1, T0 + 1000 + REVEAL_WINDOW + 1)
        with pytest.raises(RevealTooEarlyError):
            book.reveal(1, APPROVER.address, 2, T0 + REVEAL_WINDOW + 1)
        book.reveal(1, APPROVER.address, 2, T0 + 1000 + REVEAL_WINDOW + 1)

    def test_clear_subject_only_touches_that_subject(self):
        book = CommitRevealBook(CHAIN_ID)
        _commit(book, subject_id=1)
        _commit(book, subject_id=1, approver=OTHER)
        _commit(book, subject_id=2)
        assert book.clear_subject(1) == 2
        assert book.get(1, APPROVER.address) is None
        assert book.get(2, APPROVER.address) is not None
