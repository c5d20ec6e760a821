"""
Column model for cl-summars

Every table the plugin prints is described by a closed catalog of column
descriptors, one catalog per report kind.  A descriptor knows how to pull its
raw value out of a row, how to compare it, and how to display it.

Rows are plain dicts keyed by the lowercase column name.  The same dicts are
returned as structured output, so the text table is only a projection of
them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from .channel_state import ShortChannelState
from .exceptions import ConfigError
from .locale_format import LocaleFormatter


class ReportKind(Enum):
    """Sections of a report."""
    CHANNELS = "channels"
    FORWARDS = "forwards"
    PAYS = "pays"
    INVOICES = "invoices"


class ValueKind(Enum):
    """How a column's raw value is compared and displayed."""
    SAT = "sat"
    MSAT = "msat"
    INTEGER = "integer"
    PERCENT = "percent"
    AVAILABILITY = "availability"
    TIME = "time"
    STATE = "state"
    SCID = "scid"
    TEXT = "text"
    GRAPH = "graph"


NUMERIC_KINDS = frozenset({
    ValueKind.SAT, ValueKind.MSAT, ValueKind.INTEGER,
    ValueKind.PERCENT, ValueKind.AVAILABILITY,
})

TRUNCATION_MARKER = "[..]"
MIN_TEXT_LENGTH = 5

# Sort position of channels that have no short channel id yet
PENDING_SCID = "999999999x9999x99"
PENDING_LABEL = "PENDING"


@dataclass(frozen=True)
class Column:
    """
    Immutable column descriptor.

    Attributes:
        name: Name as the user types it and as printed in the header
        kind: Value kind driving comparison and formatting
        sortable: False for display-only composites
        cap: Which max-length option truncates this column, if any
        normalize_sort: Compare an ASCII-lowercased form, used for aliases
        extract: Custom extractor, defaults to row[name.lower()]
    """
    name: str
    kind: ValueKind
    sortable: bool = True
    cap: Optional[str] = None
    normalize_sort: bool = False
    extract: Optional[Callable[[Dict[str, Any]], Any]] = None

    @property
    def key(self) -> str:
        return self.name.lower()

    @property
    def display_only(self) -> bool:
        return self.kind is ValueKind.GRAPH

    @property
    def justify(self) -> str:
        if self.kind in NUMERIC_KINDS:
            return "right"
        if self.kind in (ValueKind.STATE, ValueKind.GRAPH) or self.name == "FLAG":
            return "center"
        return "left"

    def value(self, row: Dict[str, Any]) -> Any:
        if self.extract is not None:
            return self.extract(row)
        return row.get(self.key)


def _graph_value(row: Dict[str, Any]) -> Tuple[int, int]:
    return row.get("out_sats", 0), row.get("in_sats", 0)


CHANNEL_COLUMNS: Tuple[Column, ...] = (
    Column("GRAPH_SATS", ValueKind.GRAPH, sortable=False, extract=_graph_value),
    Column("PERC_US", ValueKind.PERCENT),
    Column("OUT_SATS", ValueKind.SAT),
    Column("IN_SATS", ValueKind.SAT),
    Column("TOTAL_SATS", ValueKind.SAT),
    Column("SCID", ValueKind.SCID),
    Column("MIN_HTLC", ValueKind.SAT),
    Column("MAX_HTLC", ValueKind.SAT),
    Column("FLAG", ValueKind.TEXT),
    Column("BASE", ValueKind.INTEGER),
    Column("IN_BASE", ValueKind.INTEGER),
    Column("PPM", ValueKind.INTEGER),
    Column("IN_PPM", ValueKind.INTEGER),
    Column("ALIAS", ValueKind.TEXT, cap="alias", normalize_sort=True),
    Column("PEER_ID", ValueKind.TEXT),
    Column("UPTIME", ValueKind.AVAILABILITY),
    Column("HTLCS", ValueKind.INTEGER),
    Column("STATE", ValueKind.STATE),
)

FORWARD_COLUMNS: Tuple[Column, ...] = (
    Column("received_time", ValueKind.TIME),
    Column("resolved_time", ValueKind.TIME),
    Column("in_channel", ValueKind.SCID),
    Column("out_channel", ValueKind.SCID),
    Column("in_alias", ValueKind.TEXT, cap="alias", normalize_sort=True),
    Column("out_alias", ValueKind.TEXT, cap="alias", normalize_sort=True),
    Column("in_sats", ValueKind.SAT),
    Column("in_msats", ValueKind.MSAT),
    Column("out_sats", ValueKind.SAT),
    Column("out_msats", ValueKind.MSAT),
    Column("fee_sats", ValueKind.SAT),
    Column("fee_msats", ValueKind.MSAT),
    Column("eff_fee_ppm", ValueKind.INTEGER),
)

PAY_COLUMNS: Tuple[Column, ...] = (
    Column("completed_at", ValueKind.TIME),
    Column("payment_hash", ValueKind.TEXT),
    Column("sats_requested", ValueKind.SAT),
    Column("msats_requested", ValueKind.MSAT),
    Column("sats_sent", ValueKind.SAT),
    Column("msats_sent", ValueKind.MSAT),
    Column("fee_sats", ValueKind.SAT),
    Column("fee_msats", ValueKind.MSAT),
    Column("destination", ValueKind.TEXT),
    Column("description", ValueKind.TEXT, cap="description"),
    Column("preimage", ValueKind.TEXT),
)

INVOICE_COLUMNS: Tuple[Column, ...] = (
    Column("paid_at", ValueKind.TIME),
    Column("label", ValueKind.TEXT, cap="label"),
    Column("description", ValueKind.TEXT, cap="description"),
    Column("sats_received", ValueKind.SAT),
    Column("msats_received", ValueKind.MSAT),
    Column("payment_hash", ValueKind.TEXT),
    Column("preimage", ValueKind.TEXT),
)

CATALOGS: Dict[ReportKind, Tuple[Column, ...]] = {
    ReportKind.CHANNELS: CHANNEL_COLUMNS,
    ReportKind.FORWARDS: FORWARD_COLUMNS,
    ReportKind.PAYS: PAY_COLUMNS,
    ReportKind.INVOICES: INVOICE_COLUMNS,
}

DEFAULT_COLUMNS: Dict[ReportKind, Tuple[str, ...]] = {
    ReportKind.CHANNELS: ("OUT_SATS", "IN_SATS", "SCID", "MAX_HTLC", "FLAG", "BASE",
                          "PPM", "ALIAS", "PEER_ID", "UPTIME", "HTLCS", "STATE"),
    ReportKind.FORWARDS: ("resolved_time", "in_alias", "out_alias", "in_sats",
                          "out_sats", "fee_msats"),
    ReportKind.PAYS: ("completed_at", "payment_hash", "sats_sent", "fee_sats",
                      "destination"),
    ReportKind.INVOICES: ("paid_at", "label", "sats_received", "payment_hash"),
}

DEFAULT_SORT: Dict[ReportKind, str] = {
    ReportKind.CHANNELS: "SCID",
    ReportKind.FORWARDS: "resolved_time",
    ReportKind.PAYS: "completed_at",
    ReportKind.INVOICES: "paid_at",
}

# Used in "not found in valid ... column names" errors
_CATALOG_LABELS: Dict[ReportKind, str] = {
    ReportKind.CHANNELS: "",
    ReportKind.FORWARDS: "forwards ",
    ReportKind.PAYS: "pays ",
    ReportKind.INVOICES: "invoices ",
}


def find_column(kind: ReportKind, name: str) -> Optional[Column]:
    """Case-insensitive catalog lookup."""
    wanted = name.strip().casefold()
    for column in CATALOGS[kind]:
        if column.name.casefold() == wanted:
            return column
    return None


def resolve_columns(kind: ReportKind, names: Sequence[str]) -> List[Column]:
    """
    Resolve requested column names against the catalog, keeping their order.

    Raises:
        ConfigError: on an unknown name or a repeated one
    """
    resolved: List[Column] = []
    for name in names:
        column = find_column(kind, name)
        if column is None:
            raise ConfigError(
                f"`{name.strip()}` not found in valid {_CATALOG_LABELS[kind]}column names!")
        if column in resolved:
            raise ConfigError(f"Duplicate entry detected in {kind.value} columns: `{name.strip()}`")
        resolved.append(column)
    return resolved


def parse_column_list(kind: ReportKind, value: str) -> Tuple[str, ...]:
    """Parse "a,b,c" into validated canonical column names."""
    names = [n for n in value.split(",") if n.strip()]
    if not names:
        raise ConfigError(f"No {kind.value} columns given!")
    return tuple(column.name for column in resolve_columns(kind, names))


class SortKey(NamedTuple):
    column: str
    reverse: bool

    def __str__(self) -> str:
        return f"{'-' if self.reverse else ''}{self.column}"


def parse_sort_key(kind: ReportKind, value: str) -> SortKey:
    """
    Parse a sort option; a leading "-" reverses the order.

    Raises:
        ConfigError: for unknown or display-only columns
    """
    text = value.strip()
    reverse = text.startswith("-")
    name = text[1:] if reverse else text
    column = find_column(kind, name)
    if column is None:
        valid = ", ".join(c.name for c in CATALOGS[kind] if c.sortable)
        raise ConfigError(f"Not a valid column name: `{name}`. Must be one of: {valid}")
    if not column.sortable:
        raise ConfigError(f"Cannot sort by `{column.name}`, it is a display-only column")
    return SortKey(column.name, reverse)


def _scid_key(value: Optional[str]) -> Tuple[int, ...]:
    if not value or value == PENDING_LABEL:
        value = PENDING_SCID
    try:
        return tuple(int(part) for part in value.split("x"))
    except ValueError:
        return (0,)


def normalize_alias(alias: str) -> str:
    """ASCII-only, lowercase, no whitespace or '@'."""
    return "".join(c for c in alias if c.isascii() and not c.isspace() and c != "@").lower()


def sort_value(column: Column, row: Dict[str, Any]) -> Any:
    """Comparable form of a row's value, None when missing."""
    value = column.value(row)
    if value is None:
        return None
    if column.kind is ValueKind.SCID:
        return _scid_key(value)
    if column.kind is ValueKind.STATE:
        try:
            return ShortChannelState(value).order
        except ValueError:
            return ShortChannelState.UNKNOWN.order
    if column.kind is ValueKind.TEXT:
        text = str(value)
        return normalize_alias(text) if column.normalize_sort else text
    return value


def sort_rows(rows: Sequence[Dict[str, Any]], column: Column,
              reverse: bool = False) -> List[Dict[str, Any]]:
    """
    Sort rows by one column.

    Equal values keep their fetch order in both directions and rows missing
    the value always come last.
    """
    if not column.sortable:
        raise ConfigError(f"Cannot sort by `{column.name}`, it is a display-only column")
    present = []
    missing = []
    for row in rows:
        key = sort_value(column, row)
        if key is None:
            missing.append(row)
        else:
            present.append((key, row))
    present.sort(key=lambda pair: pair[0], reverse=reverse)
    return [row for _, row in present] + missing


def passes_threshold(amount: int, threshold: int) -> bool:
    """
    Signed threshold filter.

    +X keeps amounts >= X, -X keeps amounts <= X, 0 keeps everything.
    """
    if threshold > 0:
        return amount >= threshold
    if threshold < 0:
        return amount <= -threshold
    return True


def truncate(text: str, cap: int) -> str:
    """
    Cut text to cap characters, marker included.

    A negative cap means the renderer wraps the cell instead.
    """
    if cap < 0 or len(text) <= cap:
        return text
    return text[:max(cap - len(TRUNCATION_MARKER), 0)] + TRUNCATION_MARKER


def ascii_only(text: str) -> str:
    return "".join(c if c.isascii() else "?" for c in text)


@dataclass(frozen=True)
class FormatContext:
    """Display settings shared by all cells of one report."""
    formatter: LocaleFormatter
    max_alias_length: int = 20
    max_description_length: int = 30
    max_label_length: int = 30
    utf8: bool = True

    def cap_for(self, column: Column) -> Optional[int]:
        if column.cap == "alias":
            return self.max_alias_length
        if column.cap == "description":
            return self.max_description_length
        if column.cap == "label":
            return self.max_label_length
        return None


def format_cell(column: Column, row: Dict[str, Any], ctx: FormatContext) -> str:
    """Display string for one cell; graph cells are drawn by the renderer."""
    value = column.value(row)
    kind = column.kind

    if kind is ValueKind.AVAILABILITY:
        if value is None or value < 0:
            return "N/A"
        return f"{int(value + 0.5)}%"
    if value is None:
        return "N/A"
    if kind in (ValueKind.SAT, ValueKind.MSAT, ValueKind.INTEGER):
        return ctx.formatter.integer(value)
    if kind is ValueKind.PERCENT:
        return f"{ctx.formatter.one_decimal(value)}%"
    if kind is ValueKind.TIME:
        return ctx.formatter.timestamp(value)

    text = str(value)
    if column.cap == "alias" and not ctx.utf8:
        text = ascii_only(text)
    cap = ctx.cap_for(column)
    if cap is not None:
        text = truncate(text, cap)
    return text
