"""
Tests for the incremental ledger cache.

Tests:
- Idempotent sync and no double counting under any batching
- Pending entries are never exposed, later settlement is picked up
- Cursor behaviour with pending placeholders
- Age based pruning, window growth and disabling
- Discarded batches on invariant violations
- Event parsers for forwards, pays, invoices and hold invoices
"""

import pytest

from summars.columns import ReportKind
from summars.exceptions import LedgerInvariantError, MalformedEventError
from summars.ledger_cache import (
    LedgerCache, LedgerStatus, parse_forward, parse_hold_invoice, parse_invoice,
    parse_msat, parse_pay,
)

NOW = 1_700_000_000.0
HOUR = 3600


def forward(index, status="settled", in_msat=123_000, out_msat=122_000,
            received=NOW - 600, htlc_id=None):
    event = {
        "created_index": index,
        "in_channel": "100x1x0",
        "in_htlc_id": index if htlc_id is None else htlc_id,
        "out_channel": "200x2x1",
        "in_msat": in_msat,
        "out_msat": out_msat,
        "fee_msat": in_msat - out_msat,
        "status": status,
        "received_time": received,
    }
    if status == "settled":
        event["resolved_time"] = received + 1
    return event


@pytest.fixture
def cache():
    return LedgerCache(ReportKind.FORWARDS, parse_forward)


class TestIdempotentSync:
    """Re-syncing never changes the result."""

    def test_resync_same_events_is_noop(self, cache):
        """The same batch twice leaves the retained set and totals unchanged."""
        events = [forward(1), forward(2), forward(3)]
        cache.sync(events, NOW, HOUR)
        totals = cache.totals()

        result = cache.sync(events, NOW, HOUR)

        assert result.added == 0
        assert len(cache) == 3
        assert cache.totals() == totals

    def test_empty_batch_is_noop(self, cache):
        """No new events keeps items, totals and cursor."""
        cache.sync([forward(1)], NOW, HOUR)
        cursor = cache.cursor

        result = cache.sync([], NOW, HOUR)

        assert result.added == 0
        assert cache.cursor == cursor
        assert cache.totals().count == 1

    @pytest.mark.parametrize("boundaries", [
        [5],
        [1, 4],
        [2, 3],
        [1, 1, 1, 1, 1],
    ])
    def test_batch_boundaries_do_not_matter(self, boundaries):
        """Any split of the same stream yields the same retained set and totals."""
        stream = [
            forward(1),
            forward(2, status="offered"),
            forward(3, status="failed"),
            forward(2, status="settled", in_msat=200_000, out_msat=199_000),
            forward(4),
        ]
        reference = LedgerCache(ReportKind.FORWARDS, parse_forward)
        reference.sync(stream, NOW, HOUR)

        cache = LedgerCache(ReportKind.FORWARDS, parse_forward)
        position = 0
        for size in boundaries:
            cache.sync(stream[position:position + size], NOW, HOUR)
            position += size

        assert [i.key for i in cache.window(NOW, HOUR)] == \
            [i.key for i in reference.window(NOW, HOUR)]
        assert cache.totals() == reference.totals()
        assert cache.totals().count == 3


class TestNoDoubleCounting:
    """A settled entry contributes to totals exactly once."""

    def test_settled_seen_twice_counts_once(self, cache):
        """An overlapping re-fetch does not add the forward again."""
        cache.sync([forward(1)], NOW, HOUR)
        cache.sync([forward(1), forward(2)], NOW, HOUR)

        totals = cache.totals()
        assert totals.count == 2
        assert totals.amount_msat == 246_000
        assert totals.fee_msat == 2_000

    def test_totals_equal_sum_of_retained(self, cache):
        """Totals are always the sum over the retained items."""
        cache.sync([forward(i, in_msat=1000 * i, out_msat=900 * i) for i in range(1, 6)],
                   NOW, HOUR)

        items = cache.window(NOW, HOUR)
        totals = cache.totals()
        assert totals.count == len(items)
        assert totals.amount_msat == sum(i.in_msat for i in items)
        assert totals.amount_out_msat == sum(i.out_msat for i in items)
        assert totals.fee_msat == sum(i.fee_msat for i in items)


class TestPendingEntries:
    """Pending entries are tracked but never shown."""

    def test_pending_not_exposed(self, cache):
        """An offered forward is a placeholder, not an item."""
        cache.sync([forward(1, status="offered")], NOW, HOUR)

        assert cache.window(NOW, HOUR) == []
        assert cache.totals().count == 0
        assert cache.pending_count == 1

    def test_pending_then_settled(self, cache):
        """A later sync sees the transition and reports the forward once."""
        cache.sync([forward(1, status="offered")], NOW, HOUR)
        cache.sync([forward(1)], NOW, HOUR)

        assert len(cache.window(NOW, HOUR)) == 1
        assert cache.pending_count == 0
        assert cache.totals().count == 1

    def test_pending_then_failed_clears_placeholder(self, cache):
        """A failed forward is dropped and never counted."""
        cache.sync([forward(1, status="offered")], NOW, HOUR)
        cache.sync([forward(1, status="local_failed")], NOW, HOUR)

        assert cache.pending_count == 0
        assert cache.window(NOW, HOUR) == []

    def test_cursor_holds_at_lowest_pending(self, cache):
        """The cursor stays on a pending entry so it is fetched again."""
        cache.sync([forward(1), forward(2, status="offered"), forward(3)], NOW, HOUR)
        assert cache.cursor == 2

        cache.sync([forward(2), forward(3), forward(4)], NOW, HOUR)
        assert cache.cursor == 5
        assert cache.totals().count == 4

    def test_cursor_advances_past_newest(self, cache):
        """Without pending entries the cursor moves past the newest index."""
        cache.sync([forward(1), forward(2)], NOW, HOUR)
        assert cache.cursor == 3

    def test_cursor_never_moves_back(self, cache):
        """Events behind the cursor are skipped as out of order."""
        cache.sync([forward(1), forward(2)], NOW, HOUR)

        result = cache.sync([forward(1, htlc_id=99)], NOW, HOUR)

        assert result.skipped == 1
        assert cache.cursor == 3
        assert cache.totals().count == 2


class TestRetention:
    """Age based retention and resets."""

    def test_old_items_pruned_and_subtracted(self, cache):
        """Items that leave the window are removed from totals."""
        cache.sync([forward(1, received=NOW - 2 * HOUR - 100), forward(2)],
                   NOW - HOUR, 2 * HOUR)
        assert cache.totals().count == 2

        result = cache.sync([], NOW, 2 * HOUR)

        assert result.pruned == 1
        assert cache.totals().count == 1

    def test_window_limit_keeps_most_recent(self, cache):
        """The limit keeps the newest entries, oldest first."""
        cache.sync([forward(i, received=NOW - 1000 + i) for i in range(1, 6)], NOW, HOUR)

        items = cache.window(NOW, HOUR, limit=2)

        assert [i.created_index for i in items] == [4, 5]
        assert cache.totals().count == 5

    def test_growing_window_triggers_rescan(self, cache):
        """A longer lookback than the cache covers resets it to cursor 0."""
        cache.sync([forward(1)], NOW, HOUR)
        assert cache.covers(NOW, HOUR)
        assert not cache.covers(NOW, 2 * HOUR)

        result = cache.sync([forward(1)], NOW, 2 * HOUR)

        assert result.reset is True
        assert cache.totals().count == 1

    def test_zero_window_resets(self, cache):
        """Disabling the kind drops everything."""
        cache.sync([forward(1)], NOW, HOUR)

        cache.sync([forward(2)], NOW, 0)

        assert cache.cursor == 0
        assert len(cache) == 0
        assert cache.window(NOW, 0) == []

    def test_forward_aged_by_received_time(self, cache):
        """A forward received before the window is dropped even if it resolved inside."""
        late = forward(1, received=NOW - HOUR - 10)
        late["resolved_time"] = NOW - HOUR + 10

        cache.sync([late, forward(2)], NOW, HOUR)

        assert [i.created_index for i in cache.window(NOW, HOUR)] == [2]
        assert cache.totals().count == 1


class TestInvariantViolations:
    """Invalid batches are discarded whole."""

    def test_conflicting_settlement_discards_batch(self, cache):
        """The same forward settled at two indices leaves the cache untouched."""
        cache.sync([forward(1)], NOW, HOUR)
        cursor = cache.cursor
        conflicting = forward(5, htlc_id=1)

        with pytest.raises(LedgerInvariantError):
            cache.sync([forward(3), conflicting], NOW, HOUR)

        assert cache.cursor == cursor
        assert cache.totals().count == 1
        assert not cache.contains(parse_forward(forward(3)).key)

    def test_malformed_events_skipped(self, cache):
        """Events missing required fields are skipped, the rest is kept."""
        broken = forward(2)
        del broken["in_channel"]

        result = cache.sync([forward(1), broken, {"status": "bogus"}, forward(3)], NOW, HOUR)

        assert result.skipped == 2
        assert cache.totals().count == 2


class TestParsers:
    """Node event parsing."""

    def test_parse_msat_forms(self):
        """Integers, msat strings and msat objects are accepted."""
        assert parse_msat(1000) == 1000
        assert parse_msat("2000msat") == 2000
        assert parse_msat({"msat": 3000}) == 3000
        with pytest.raises(MalformedEventError):
            parse_msat("lots")

    def test_self_payment_ignored(self):
        """Payments to our own node are circular rebalances."""
        event = {"created_index": 1, "status": "complete", "payment_hash": "aa",
                 "destination": "02ff", "amount_msat": 1000, "amount_sent_msat": 1010,
                 "created_at": 1, "completed_at": 2}

        assert parse_pay(event, own_id="02ff").status is LedgerStatus.IGNORED
        assert parse_pay(event, own_id="03ee").status is LedgerStatus.SETTLED

    def test_pay_fee(self):
        """Pay fee is sent minus requested."""
        parsed = parse_pay({"created_index": 1, "status": "complete", "payment_hash": "aa",
                            "amount_msat": 10_000, "amount_sent_msat": 10_015,
                            "created_at": 1, "completed_at": 2})

        assert parsed.item.fee_msat == 15
        assert parsed.item.completed_at == 2

    def test_invoice_statuses(self):
        """unpaid is pending, expired is terminal, paid is settled."""
        base = {"created_index": 1, "payment_hash": "bb", "label": "l"}
        assert parse_invoice(dict(base, status="unpaid")).status is LedgerStatus.PENDING
        assert parse_invoice(dict(base, status="expired")).status is LedgerStatus.EXPIRED
        paid = parse_invoice(dict(base, status="paid", paid_at=5,
                                  amount_received_msat=42_000))
        assert paid.item.amount_received_msat == 42_000

    def test_hold_invoice_states(self):
        """Accepted hold invoices stay pending until settled."""
        base = {"payment_hash": "cc", "amount_msat": 7_000, "created_at": 3}
        assert parse_hold_invoice(dict(base, state="ACCEPTED")).status is LedgerStatus.PENDING
        settled = parse_hold_invoice(dict(base, state="SETTLED", paid_at=4))
        assert settled.item.label == "Holdinvoice"
        assert settled.index is None

    def test_unindexed_sync_does_not_move_cursor(self):
        """Hold invoices merge into the invoices cache without touching its cursor."""
        cache = LedgerCache(ReportKind.INVOICES, parse_invoice)
        cache.sync([{"created_index": 1, "status": "paid", "payment_hash": "dd",
                     "label": "a", "paid_at": int(NOW) - 10, "amount_received_msat": 1}],
                   NOW, HOUR)
        hold = [{"payment_hash": "ee", "state": "SETTLED", "amount_msat": 5,
                 "paid_at": int(NOW) - 5}]

        cache.sync(hold, NOW, HOUR, indexed=False, parser=parse_hold_invoice)
        cache.sync(hold, NOW, HOUR, indexed=False, parser=parse_hold_invoice)

        assert cache.cursor == 2
        assert cache.totals().count == 2
        assert cache.totals().amount_msat == 6
