"""
Ledger cache module for cl-summars

Keeps forwards, pays and invoices across report invocations so each pass
only asks lightningd for what changed since the previous one.

Synchronization model:
- Events are fetched with index=created starting at the cache cursor.
- PENDING events become placeholders and are never shown.
- SETTLED events become retained items and are added to the totals once.
- FAILED, EXPIRED and IGNORED events only clear a placeholder.
- The cursor moves to the lowest created_index still pending, so pending
  entries are fetched again until they resolve, or past the newest event
  when nothing is pending.  It never moves backwards.
- A batch is staged and committed as a whole.  If it would break an
  invariant it is dropped and the cache keeps its previous state, so the
  next pass retries from the same cursor.

Retention is age based.  Items older than the lookback window are pruned and
subtracted from the totals; growing the window past what the cache covers
resets it and triggers a full rescan.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .columns import ReportKind
from .exceptions import LedgerInvariantError, MalformedEventError
from .locale_format import msat_to_sat


class LedgerStatus(Enum):
    """Lifecycle of a ledger entry as far as reporting is concerned."""
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"
    EXPIRED = "expired"
    IGNORED = "ignored"


FORWARD_STATUS = {
    "offered": LedgerStatus.PENDING,
    "settled": LedgerStatus.SETTLED,
    "failed": LedgerStatus.FAILED,
    "local_failed": LedgerStatus.FAILED,
}

PAY_STATUS = {
    "pending": LedgerStatus.PENDING,
    "complete": LedgerStatus.SETTLED,
    "failed": LedgerStatus.FAILED,
}

INVOICE_STATUS = {
    "unpaid": LedgerStatus.PENDING,
    "paid": LedgerStatus.SETTLED,
    "expired": LedgerStatus.EXPIRED,
}

# holdinvoice plugin states
HOLD_INVOICE_STATUS = {
    "OPEN": LedgerStatus.PENDING,
    "ACCEPTED": LedgerStatus.PENDING,
    "SETTLED": LedgerStatus.SETTLED,
    "CANCELED": LedgerStatus.FAILED,
}

HOLD_INVOICE_LABEL = "Holdinvoice"


def parse_msat(value: Any) -> int:
    """
    Parse an msat amount in any form lightningd has used.

    Handles plain integers, "123msat" strings and {"msat": ...} objects.
    """
    if value is None:
        raise MalformedEventError("missing amount")
    if isinstance(value, bool):
        raise MalformedEventError(f"invalid amount {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, dict) and "msat" in value:
        return parse_msat(value["msat"])
    if isinstance(value, str):
        text = value[:-4] if value.endswith("msat") else value
        try:
            return int(text)
        except ValueError:
            pass
    raise MalformedEventError(f"invalid amount {value!r}")


def _optional_msat(value: Any) -> Optional[int]:
    return None if value is None else parse_msat(value)


def _require(event: Dict[str, Any], name: str) -> Any:
    value = event.get(name)
    if value is None:
        raise MalformedEventError(f"missing {name}")
    return value


def _created_index(event: Dict[str, Any]) -> Optional[int]:
    value = event.get("created_index")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedEventError(f"invalid created_index {value!r}")


@dataclass(frozen=True)
class ForwardItem:
    key: str
    created_index: Optional[int]
    received_time: float
    resolved_time: float
    in_channel: str
    out_channel: str
    in_msat: int
    out_msat: int
    fee_msat: int

    @property
    def timestamp(self) -> float:
        # A forward belongs to the window it arrived in
        return self.received_time

    @property
    def contribution(self) -> Tuple[int, int, int]:
        return self.in_msat, self.out_msat, self.fee_msat

    def to_row(self) -> Dict[str, Any]:
        eff_fee_ppm = (self.fee_msat * 1_000_000 // self.out_msat) if self.out_msat else 0
        return {
            "received_time": int(self.received_time),
            "resolved_time": int(self.resolved_time),
            "in_channel": self.in_channel,
            "out_channel": self.out_channel,
            "in_sats": msat_to_sat(self.in_msat),
            "in_msats": self.in_msat,
            "out_sats": msat_to_sat(self.out_msat),
            "out_msats": self.out_msat,
            "fee_sats": msat_to_sat(self.fee_msat),
            "fee_msats": self.fee_msat,
            "eff_fee_ppm": eff_fee_ppm,
        }


@dataclass(frozen=True)
class PayItem:
    key: str
    created_index: Optional[int]
    completed_at: int
    payment_hash: str
    amount_msat: int
    amount_sent_msat: int
    destination: Optional[str] = None
    description: Optional[str] = None
    preimage: Optional[str] = None
    invoice: Optional[str] = None

    @property
    def timestamp(self) -> float:
        return self.completed_at

    @property
    def fee_msat(self) -> int:
        return self.amount_sent_msat - self.amount_msat

    @property
    def contribution(self) -> Tuple[int, int, int]:
        return self.amount_msat, self.amount_sent_msat, self.fee_msat

    def to_row(self) -> Dict[str, Any]:
        return {
            "completed_at": self.completed_at,
            "payment_hash": self.payment_hash,
            "sats_requested": msat_to_sat(self.amount_msat),
            "msats_requested": self.amount_msat,
            "sats_sent": msat_to_sat(self.amount_sent_msat),
            "msats_sent": self.amount_sent_msat,
            "fee_sats": msat_to_sat(self.fee_msat),
            "fee_msats": self.fee_msat,
            "destination": self.destination,
            "description": self.description,
            "preimage": self.preimage,
        }


@dataclass(frozen=True)
class InvoiceItem:
    key: str
    created_index: Optional[int]
    paid_at: int
    label: str
    payment_hash: str
    amount_received_msat: int
    description: Optional[str] = None
    preimage: Optional[str] = None

    @property
    def timestamp(self) -> float:
        return self.paid_at

    @property
    def contribution(self) -> Tuple[int, int, int]:
        return self.amount_received_msat, 0, 0

    def to_row(self) -> Dict[str, Any]:
        return {
            "paid_at": self.paid_at,
            "label": self.label,
            "description": self.description,
            "sats_received": msat_to_sat(self.amount_received_msat),
            "msats_received": self.amount_received_msat,
            "payment_hash": self.payment_hash,
            "preimage": self.preimage,
        }


LedgerItem = Union[ForwardItem, PayItem, InvoiceItem]


@dataclass(frozen=True)
class ParsedEvent:
    """One ledger event reduced to what the cache needs."""
    key: str
    index: Optional[int]
    status: LedgerStatus
    item: Optional[LedgerItem] = None


def parse_forward(event: Dict[str, Any]) -> ParsedEvent:
    """Parse one listforwards entry."""
    status = FORWARD_STATUS.get(event.get("status"))
    if status is None:
        raise MalformedEventError(f"unknown forward status {event.get('status')!r}")
    in_channel = _require(event, "in_channel")
    received_time = float(_require(event, "received_time"))
    in_htlc_id = event.get("in_htlc_id", "")
    key = f"{in_channel}/{in_htlc_id}/{received_time:.3f}"
    index = _created_index(event)

    if status is not LedgerStatus.SETTLED:
        return ParsedEvent(key, index, status)

    in_msat = parse_msat(event.get("in_msat"))
    out_msat = parse_msat(event.get("out_msat"))
    fee = event.get("fee_msat")
    item = ForwardItem(
        key=key,
        created_index=index,
        received_time=received_time,
        resolved_time=float(event.get("resolved_time") or received_time),
        in_channel=in_channel,
        out_channel=_require(event, "out_channel"),
        in_msat=in_msat,
        out_msat=out_msat,
        fee_msat=parse_msat(fee) if fee is not None else in_msat - out_msat,
    )
    return ParsedEvent(key, index, status, item)


def parse_pay(event: Dict[str, Any], own_id: Optional[str] = None) -> ParsedEvent:
    """
    Parse one listpays entry.

    Payments to our own node are circular rebalances and are ignored.
    """
    status = PAY_STATUS.get(event.get("status"))
    if status is None:
        raise MalformedEventError(f"unknown pay status {event.get('status')!r}")
    payment_hash = _require(event, "payment_hash")
    index = _created_index(event)

    if status is not LedgerStatus.SETTLED:
        return ParsedEvent(payment_hash, index, status)

    destination = event.get("destination")
    if own_id and destination == own_id:
        return ParsedEvent(payment_hash, index, LedgerStatus.IGNORED)

    sent = parse_msat(event.get("amount_sent_msat"))
    requested = _optional_msat(event.get("amount_msat"))
    item = PayItem(
        key=payment_hash,
        created_index=index,
        completed_at=int(event.get("completed_at") or _require(event, "created_at")),
        payment_hash=payment_hash,
        amount_msat=sent if requested is None else requested,
        amount_sent_msat=sent,
        destination=destination,
        description=event.get("description"),
        preimage=event.get("preimage"),
        invoice=event.get("bolt11") or event.get("bolt12"),
    )
    return ParsedEvent(payment_hash, index, status, item)


def parse_invoice(event: Dict[str, Any]) -> ParsedEvent:
    """Parse one listinvoices entry."""
    status = INVOICE_STATUS.get(event.get("status"))
    if status is None:
        raise MalformedEventError(f"unknown invoice status {event.get('status')!r}")
    payment_hash = _require(event, "payment_hash")
    index = _created_index(event)

    if status is not LedgerStatus.SETTLED:
        return ParsedEvent(payment_hash, index, status)

    received = event.get("amount_received_msat", event.get("amount_msat"))
    item = InvoiceItem(
        key=payment_hash,
        created_index=index,
        paid_at=int(_require(event, "paid_at")),
        label=str(event.get("label", "")),
        payment_hash=payment_hash,
        amount_received_msat=parse_msat(received),
        description=event.get("description"),
        preimage=event.get("payment_preimage"),
    )
    return ParsedEvent(payment_hash, index, status, item)


def parse_hold_invoice(event: Dict[str, Any]) -> ParsedEvent:
    """Parse one holdinvoicelookup entry; these carry no created_index."""
    status = HOLD_INVOICE_STATUS.get(str(event.get("state", "")).upper())
    if status is None:
        raise MalformedEventError(f"unknown hold invoice state {event.get('state')!r}")
    payment_hash = _require(event, "payment_hash")

    if status is not LedgerStatus.SETTLED:
        return ParsedEvent(payment_hash, None, status)

    received = event.get("amount_received_msat", event.get("amount_msat"))
    item = InvoiceItem(
        key=payment_hash,
        created_index=None,
        paid_at=int(event.get("paid_at") or _require(event, "created_at")),
        label=HOLD_INVOICE_LABEL,
        payment_hash=payment_hash,
        amount_received_msat=parse_msat(received),
        description=event.get("description"),
        preimage=event.get("payment_preimage") or event.get("preimage"),
    )
    return ParsedEvent(payment_hash, None, status, item)


@dataclass
class LedgerTotals:
    """
    Running sums over the retained settled items.

    amount_msat / amount_out_msat / fee_msat mean, per kind:
    forwards: in, out, fee; pays: requested, sent, fee; invoices: received.
    """
    count: int = 0
    amount_msat: int = 0
    amount_out_msat: int = 0
    fee_msat: int = 0

    def add(self, item: LedgerItem) -> None:
        amount, amount_out, fee = item.contribution
        self.count += 1
        self.amount_msat += amount
        self.amount_out_msat += amount_out
        self.fee_msat += fee

    def subtract(self, item: LedgerItem) -> None:
        amount, amount_out, fee = item.contribution
        self.count -= 1
        self.amount_msat -= amount
        self.amount_out_msat -= amount_out
        self.fee_msat -= fee

    def copy(self) -> 'LedgerTotals':
        return LedgerTotals(self.count, self.amount_msat, self.amount_out_msat, self.fee_msat)


@dataclass
class SyncResult:
    """Outcome of one sync call."""
    added: int = 0
    skipped: int = 0
    pending: int = 0
    pruned: int = 0
    cursor: int = 0
    reset: bool = False
    skipped_reasons: List[str] = field(default_factory=list)


class LedgerCache:
    """
    Incremental cache for one ledger kind.

    Owned by the report builder, which serializes access; the cache itself
    holds no lock.
    """

    def __init__(self, kind: ReportKind,
                 parser: Callable[[Dict[str, Any]], ParsedEvent]):
        self.kind = kind
        self._parser = parser
        self.cursor = 0
        self._items: Dict[str, LedgerItem] = {}
        # key -> created_index, None for placeholders from unindexed sources
        self._pending: Dict[str, Optional[int]] = {}
        self._totals = LedgerTotals()
        self._horizon: Optional[float] = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def set_parser(self, parser: Callable[[Dict[str, Any]], ParsedEvent]) -> None:
        self._parser = parser

    def reset(self) -> None:
        """Forget everything; the next sync rescans from index 0."""
        self.cursor = 0
        self._items.clear()
        self._pending.clear()
        self._totals = LedgerTotals()
        self._horizon = None

    def covers(self, now: float, max_age: float) -> bool:
        """Whether the cache holds everything newer than now - max_age."""
        return self._horizon is None or now - max_age >= self._horizon

    def sync(self, events: Iterable[Dict[str, Any]], now: float, max_age: float,
             indexed: bool = True,
             parser: Optional[Callable[[Dict[str, Any]], ParsedEvent]] = None) -> SyncResult:
        """
        Fold a batch of events into the cache.

        Args:
            events: Every event at or after the cursor, in arrival order
            now: Reference time for retention
            max_age: Lookback window in seconds
            indexed: False for sources without created_index (hold invoices);
                     those never move the cursor
            parser: Overrides the cache's parser for this batch

        Returns:
            SyncResult with counts of what changed

        Raises:
            LedgerInvariantError: the batch was discarded, state is unchanged
        """
        result = SyncResult(cursor=self.cursor)
        if max_age <= 0:
            self.reset()
            result.reset = True
            result.cursor = self.cursor
            return result
        if not self.covers(now, max_age):
            self.reset()
            result.reset = True

        parse = parser or self._parser
        threshold = now - max_age
        staged: Dict[str, LedgerItem] = {}
        pending = dict(self._pending)
        max_index: Optional[int] = None

        for event in events:
            try:
                parsed = parse(event)
            except (MalformedEventError, TypeError, ValueError) as e:
                result.skipped += 1
                result.skipped_reasons.append(str(e))
                continue

            if indexed:
                if parsed.index is None:
                    result.skipped += 1
                    result.skipped_reasons.append(f"{parsed.key}: missing created_index")
                    continue
                if parsed.index < self.cursor:
                    result.skipped += 1
                    result.skipped_reasons.append(
                        f"{parsed.key}: created_index {parsed.index} behind cursor {self.cursor}")
                    continue
                max_index = parsed.index if max_index is None else max(max_index, parsed.index)

            existing = staged.get(parsed.key) or self._items.get(parsed.key)

            if parsed.status is LedgerStatus.PENDING:
                if existing is None:
                    pending[parsed.key] = parsed.index
                continue

            pending.pop(parsed.key, None)
            if parsed.status is not LedgerStatus.SETTLED or parsed.item is None:
                continue

            if existing is not None:
                if (indexed and existing.created_index is not None
                        and existing.created_index != parsed.index):
                    raise LedgerInvariantError(
                        self.kind.value, parsed.key,
                        f"settled at created_index {existing.created_index} "
                        f"and again at {parsed.index}")
                continue

            if parsed.item.timestamp < threshold:
                continue
            staged[parsed.key] = parsed.item

        # Commit
        for key, item in staged.items():
            self._items[key] = item
            self._totals.add(item)
        self._pending = pending
        result.added = len(staged)

        if indexed:
            indexed_pending = [i for i in pending.values() if i is not None]
            if indexed_pending:
                new_cursor = min(indexed_pending)
            elif max_index is not None:
                new_cursor = max_index + 1
            else:
                new_cursor = self.cursor
            self.cursor = max(new_cursor, self.cursor)

        result.pruned = self._prune(threshold)
        self._horizon = threshold if self._horizon is None else max(self._horizon, threshold)
        result.pending = len(self._pending)
        result.cursor = self.cursor
        return result

    def _prune(self, threshold: float) -> int:
        stale = [key for key, item in self._items.items() if item.timestamp < threshold]
        for key in stale:
            self._totals.subtract(self._items.pop(key))
        return len(stale)

    def window(self, now: float, max_age: float, limit: int = 0) -> List[LedgerItem]:
        """
        Settled items newer than now - max_age, oldest first.

        Args:
            limit: Keep only the most recent N items, 0 for no limit
        """
        if max_age <= 0:
            return []
        threshold = now - max_age
        items = sorted(
            (item for item in self._items.values() if item.timestamp >= threshold),
            key=lambda item: item.timestamp,
        )
        if limit > 0:
            items = items[-limit:]
        return items

    def totals(self) -> LedgerTotals:
        return self._totals.copy()

    def contains(self, key: str) -> bool:
        return key in self._items
