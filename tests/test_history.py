"""Tests for the history ledger and blob store."""

from __future__ import annotations

import pytest

from imageident.errors import HistoryIndexError
from imageident.history import HistoryLedger
from imageident.sources import BlobStore, ImageReference, ReferenceKind


def _url(name: str) -> ImageReference:
    return ImageReference.from_locator(f"https://images.test/{name}.png")


class TestHistoryLedger:
    def test_record_prepends(self) -> None:
        ledger = HistoryLedger()
        ledger.record(_url("a"))
        ledger.record(_url("b"))

        assert [entry.reference for entry in ledger.list()] == [_url("b"), _url("a")]
        assert [entry.sequence for entry in ledger.list()] == [2, 1]

    def test_duplicates_are_kept(self) -> None:
        ledger = HistoryLedger()
        ledger.record(_url("same"))
        ledger.record(_url("same"))

        entries = ledger.list()
        assert len(entries) == 2
        assert entries[0].reference == entries[1].reference
        assert entries[0].sequence > entries[1].sequence

    def test_select_does_not_change_ledger(self) -> None:
        ledger = HistoryLedger()
        ledger.record(_url("a"))
        ledger.record(_url("b"))

        assert ledger.select(1) == _url("a")
        assert ledger.select(0) == _url("b")
        assert len(ledger) == 2

    @pytest.mark.parametrize("index", [-1, 2, 100])
    def test_select_out_of_range(self, index: int) -> None:
        ledger = HistoryLedger()
        ledger.record(_url("a"))
        ledger.record(_url("b"))
        with pytest.raises(HistoryIndexError):
            ledger.select(index)

    def test_index_error_is_an_index_error(self) -> None:
        with pytest.raises(IndexError):
            HistoryLedger().select(0)

    def test_unbounded_by_default(self) -> None:
        ledger = HistoryLedger()
        for i in range(500):
            ledger.record(_url(str(i)))
        assert len(ledger) == 500
        assert ledger.limit is None

    def test_limit_drops_oldest(self) -> None:
        ledger = HistoryLedger(limit=3)
        for name in "abcde":
            ledger.record(_url(name))

        assert [entry.reference for entry in ledger.list()] == [_url("e"), _url("d"), _url("c")]

    def test_record_reports_dropped_entries(self) -> None:
        ledger = HistoryLedger(limit=2)
        assert ledger.record(_url("a")) == ()
        assert ledger.record(_url("b")) == ()

        dropped = ledger.record(_url("c"))

        assert [entry.reference for entry in dropped] == [_url("a")]
        assert _url("a") not in ledger
        assert _url("c") in ledger

    def test_invalid_limit(self) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            HistoryLedger(limit=0)

    def test_list_is_a_snapshot(self) -> None:
        ledger = HistoryLedger()
        ledger.record(_url("a"))
        snapshot = ledger.list()
        ledger.record(_url("b"))
        assert len(snapshot) == 1

    def test_clear(self) -> None:
        ledger = HistoryLedger()
        ledger.record(_url("a"))
        ledger.clear()
        assert ledger.list() == ()


class TestImageReference:
    def test_blob_locator_kind(self) -> None:
        assert ImageReference.from_locator("blob:abc").kind == ReferenceKind.BLOB

    def test_url_locator_kind(self) -> None:
        assert ImageReference.from_locator("https://x.test/a.png").kind == ReferenceKind.URL

    def test_equality_by_value(self) -> None:
        assert _url("a") == _url("a")
        assert _url("a") != _url("b")


class TestBlobStore:
    def test_create_mints_unique_locators(self) -> None:
        blobs = BlobStore()
        first = blobs.create(b"one")
        second = blobs.create(b"one")

        assert first != second
        assert first.kind == ReferenceKind.BLOB
        assert first.locator.startswith("blob:")
        assert len(blobs) == 2

    def test_get_and_revoke(self) -> None:
        blobs = BlobStore()
        reference = blobs.create(b"data", filename="a.png", content_type="image/png")

        stored = blobs.get(reference.locator)
        assert stored is not None
        assert stored.data == b"data"
        assert stored.content_type == "image/png"

        assert blobs.revoke(reference.locator) is True
        assert blobs.get(reference.locator) is None
        assert blobs.revoke(reference.locator) is False
