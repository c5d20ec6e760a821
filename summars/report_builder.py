"""
Report builder module for cl-summars

Runs one report pass:
1. Resolve and validate the requested columns (fails before any fetch)
2. Fetch the channel snapshot and every enabled ledger concurrently
3. Classify channels and build their rows
4. Sync each ledger cache, then window, filter, limit and sort its rows
5. Hand the finished Report to the renderer

Passes are serialized: a second caller waits for the running pass, so two
passes never sync the same cache at the same time.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from pyln.client import Plugin, RpcError

from .channel_state import (
    ACTIVE_RAW_STATES, SPENDABLE_RAW_STATES, AvailabilityTracker,
    ChannelClassification, ChannelFacts, classify,
)
from .columns import (
    PENDING_LABEL, Column, ReportKind, ascii_only, find_column, passes_threshold,
    resolve_columns, sort_rows,
)
from .config import ReportConfig
from .exceptions import LedgerInvariantError, MalformedEventError
from .ledger_cache import (
    LedgerCache, LedgerTotals, parse_forward, parse_hold_invoice,
    parse_invoice, parse_msat, parse_pay,
)
from .locale_format import msat_to_sat
from .node_snapshot import (
    NO_ALIAS_SET, NODE_GOSSIP_MISS, AliasCache, FetchUnavailableError,
    NodeSnapshotProvider,
)

LEDGER_KINDS: Tuple[ReportKind, ...] = (
    ReportKind.FORWARDS, ReportKind.PAYS, ReportKind.INVOICES,
)

DEFAULT_LIGHTNING_PORT = 9735
MAX_WORKERS = 6


def _msat(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return parse_msat(value)
    except MalformedEventError:
        return default


@dataclass
class ChannelView:
    """
    One channel as shown in the channel table.

    Rebuilt on every pass from the current snapshot.
    """
    peer_id: str
    alias: str
    short_channel_id: Optional[str]
    classification: ChannelClassification
    total_msat: int
    to_us_msat: int
    min_htlc_msat: int
    max_htlc_msat: int
    fee_base_msat: int
    fee_ppm: int
    in_fee_base_msat: Optional[int]
    in_fee_ppm: Optional[int]
    htlcs: int
    uptime: Optional[float]

    @property
    def perc_us(self) -> float:
        if self.total_msat <= 0:
            return 0.0
        return self.to_us_msat / self.total_msat * 100.0

    def to_row(self) -> Dict[str, Any]:
        """Raw values keyed by lowercase channel column name."""
        return {
            "perc_us": round(self.perc_us, 1),
            "out_sats": msat_to_sat(self.to_us_msat),
            "in_sats": msat_to_sat(self.total_msat - self.to_us_msat),
            "total_sats": msat_to_sat(self.total_msat),
            "scid": self.short_channel_id or PENDING_LABEL,
            "min_htlc": msat_to_sat(self.min_htlc_msat),
            "max_htlc": msat_to_sat(self.max_htlc_msat),
            "flag": self.classification.flags,
            "base": self.fee_base_msat,
            "in_base": self.in_fee_base_msat,
            "ppm": self.fee_ppm,
            "in_ppm": self.in_fee_ppm,
            "alias": self.alias,
            "peer_id": self.peer_id,
            "uptime": None if self.uptime is None else round(self.uptime, 2),
            "htlcs": self.htlcs,
            "state": self.classification.state.value,
        }


@dataclass
class LedgerSection:
    """Rows and statistics of one enabled ledger kind."""
    kind: ReportKind
    hours: int
    limit: int
    columns: List[Column]
    rows: List[Dict[str, Any]]
    totals: LedgerTotals
    filtered_count: int = 0
    filtered_amount_msat: int = 0
    filtered_fee_msat: int = 0


@dataclass
class Report:
    """Everything the renderer needs, independent of the output mode."""
    config: ReportConfig
    info: Dict[str, Any]
    channel_columns: List[Column]
    channels: List[Dict[str, Any]]
    excluded_channels: int = 0
    sections: Dict[ReportKind, LedgerSection] = field(default_factory=dict)
    unavailable: Dict[str, str] = field(default_factory=dict)
    generated_at: float = 0.0


def node_address(getinfo: Dict[str, Any]) -> str:
    """
    Connection string for this node.

    Prefers an announced IPv4 address, then any announced address, then the
    first binding.
    """
    node_id = getinfo.get("id", "")
    addresses = getinfo.get("address") or []
    chosen = next((a for a in addresses if a.get("type") == "ipv4"), None)
    if chosen is None and addresses:
        chosen = addresses[0]
    if chosen is None:
        bindings = getinfo.get("binding") or []
        if not bindings:
            return "No addresses found!"
        chosen = bindings[0]
    host = chosen.get("address") or chosen.get("socket", "")
    return f"{node_id}@{host}:{chosen.get('port', DEFAULT_LIGHTNING_PORT)}"


def summarize_node(getinfo: Dict[str, Any], peers: List[Dict[str, Any]],
                   channels: List[Dict[str, Any]], funds: Dict[str, Any]) -> Dict[str, Any]:
    """Node level numbers shown above the channel table, amounts in msat."""
    confirmed = [o for o in funds.get("outputs", []) if o.get("status") == "confirmed"]
    active = [c for c in channels if c.get("state") in ACTIVE_RAW_STATES]

    avail_out = 0
    avail_in = 0
    for channel in channels:
        if channel.get("state") not in SPENDABLE_RAW_STATES:
            continue
        total = _msat(channel.get("total_msat"))
        to_us = _msat(channel.get("to_us_msat"))
        avail_out += max(to_us - _msat(channel.get("our_reserve_msat")), 0)
        avail_in += max(total - to_us - _msat(channel.get("their_reserve_msat")), 0)

    gossipers = 0
    for peer in peers:
        num_channels = peer.get("num_channels")
        if num_channels is None:
            num_channels = len(peer.get("channels", []))
        if num_channels == 0:
            gossipers += 1

    return {
        "address": node_address(getinfo),
        "num_utxos": len(confirmed),
        "utxo_amount_msat": sum(_msat(o.get("amount_msat")) for o in confirmed),
        "num_channels": len(active),
        "num_connected": sum(1 for c in active if c.get("peer_connected")),
        "num_gossipers": gossipers,
        "avail_out_msat": avail_out,
        "avail_in_msat": avail_in,
        "fees_collected_msat": _msat(getinfo.get("fees_collected_msat")),
    }


class ReportBuilder:
    """
    Orchestrates report passes and owns the ledger caches.

    One instance lives for the whole plugin process.
    """

    def __init__(self, plugin: Plugin, provider: NodeSnapshotProvider,
                 aliases: AliasCache, availability: Optional[AvailabilityTracker] = None,
                 max_workers: int = MAX_WORKERS):
        self.plugin = plugin
        self.provider = provider
        self.aliases = aliases
        self.availability = availability
        self.max_workers = max_workers
        self._lock = threading.Lock()
        self._caches: Dict[ReportKind, LedgerCache] = {
            ReportKind.FORWARDS: LedgerCache(ReportKind.FORWARDS, parse_forward),
            ReportKind.PAYS: LedgerCache(ReportKind.PAYS, parse_pay),
            ReportKind.INVOICES: LedgerCache(ReportKind.INVOICES, parse_invoice),
        }
        self._descriptions: Dict[str, Optional[str]] = {}

    def _log(self, message: str, level: str = 'debug') -> None:
        if self.plugin:
            self.plugin.log(message, level=level)

    def cache(self, kind: ReportKind) -> LedgerCache:
        return self._caches[kind]

    def build(self, cfg: ReportConfig, now: Optional[float] = None) -> Report:
        """Run one report pass; concurrent callers queue on the builder lock."""
        with self._lock:
            return self._build(cfg, time.time() if now is None else now)

    def _build(self, cfg: ReportConfig, now: float) -> Report:
        started = time.time()
        channel_columns = resolve_columns(ReportKind.CHANNELS, cfg.columns)
        channel_sort = find_column(ReportKind.CHANNELS, cfg.sort_by.column)

        enabled = [k for k in LEDGER_KINDS if cfg.lookback_hours(k) > 0]
        section_columns = {k: resolve_columns(k, cfg.columns_for(k)) for k in enabled}
        for kind in LEDGER_KINDS:
            cache = self._caches[kind]
            if kind not in enabled and (len(cache) or cache.pending_count or cache.cursor):
                self._log(f"{kind.value} disabled, dropping cached entries")
                cache.reset()

        getinfo = self.provider.getinfo()
        self._caches[ReportKind.PAYS].set_parser(partial(parse_pay, own_id=getinfo.get("id")))

        unavailable: Dict[str, str] = {}
        ledger_events: Dict[ReportKind, List[Dict[str, Any]]] = {}
        hold_events: Optional[List[Dict[str, Any]]] = None

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            peers_future = pool.submit(self.provider.listpeers)
            channels_future = pool.submit(self.provider.listpeerchannels)
            funds_future = pool.submit(self.provider.listfunds)

            ledger_futures = {}
            for kind in enabled:
                cache = self._caches[kind]
                if not cache.covers(now, cfg.lookback_hours(kind) * 3600):
                    self._log(f"{kind.value} lookback grew, rescanning")
                    cache.reset()
                ledger_futures[kind] = pool.submit(self.provider.fetch_ledger, kind, cache.cursor)

            hold_future = None
            if ReportKind.INVOICES in enabled and cfg.hold_invoice_support:
                hold_future = pool.submit(self.provider.fetch_hold_invoices)

            channels = channels_future.result()
            # Peers and funds only feed the info block
            peers = self._optional_result(peers_future, "peers", [], unavailable)
            funds = self._optional_result(funds_future, "funds", {}, unavailable)

            for kind, future in ledger_futures.items():
                try:
                    ledger_events[kind] = future.result()
                except (RpcError, FetchUnavailableError) as e:
                    self._log(f"Could not fetch {kind.value}: {e}", level='warn')
                    unavailable[kind.value] = str(e)

            if hold_future is not None:
                try:
                    hold_events = hold_future.result()
                except (RpcError, FetchUnavailableError) as e:
                    self._log(f"Could not fetch hold invoices: {e}", level='warn')
                    unavailable["holdinvoices"] = str(e)

        fetched = time.time()

        views, excluded = self._channel_views(cfg, getinfo, channels)
        channel_rows = sort_rows([v.to_row() for v in views], channel_sort,
                                 cfg.sort_by.reverse)

        scid_peers = {
            c["short_channel_id"]: c.get("peer_id")
            for c in channels if c.get("short_channel_id")
        }

        sections: Dict[ReportKind, LedgerSection] = {}
        for kind in enabled:
            if kind not in ledger_events:
                continue
            max_age = cfg.lookback_hours(kind) * 3600
            cache = self._caches[kind]
            try:
                result = cache.sync(ledger_events[kind], now, max_age)
                if kind is ReportKind.INVOICES and hold_events is not None:
                    cache.sync(hold_events, now, max_age, indexed=False,
                               parser=parse_hold_invoice)
            except LedgerInvariantError as e:
                self._log(f"Discarded {kind.value} batch: {e}", level='warn')
                unavailable[kind.value] = str(e)
                continue

            for reason in result.skipped_reasons:
                self._log(f"Skipped {kind.value} event: {reason}", level='debug')
            self._log(f"{kind.value}: +{result.added} settled, {result.pending} pending, "
                      f"{result.pruned} pruned, cursor={result.cursor}")
            sections[kind] = self._section(kind, cfg, cache, now, scid_peers,
                                           section_columns[kind])

        self._log(f"Report built in {time.time() - started:.3f}s "
                  f"(fetch {fetched - started:.3f}s)")

        return Report(
            config=cfg,
            info=summarize_node(getinfo, peers, channels, funds),
            channel_columns=channel_columns,
            channels=channel_rows,
            excluded_channels=excluded,
            sections=sections,
            unavailable=unavailable,
            generated_at=now,
        )

    def _optional_result(self, future, name: str, default: Any,
                         unavailable: Dict[str, str]) -> Any:
        try:
            return future.result()
        except (RpcError, FetchUnavailableError) as e:
            self._log(f"Could not fetch {name}: {e}", level='warn')
            unavailable[name] = str(e)
            return default

    def _channel_views(self, cfg: ReportConfig, getinfo: Dict[str, Any],
                       channels: List[Dict[str, Any]]) -> Tuple[List[ChannelView], int]:
        blockheight = getinfo.get("blockheight")
        views: List[ChannelView] = []
        excluded = 0

        for channel in channels:
            peer_id = channel.get("peer_id", "")
            classification = classify(ChannelFacts(
                raw_state=channel.get("state", ""),
                connected=bool(channel.get("peer_connected")),
                private=channel.get("private"),
                short_channel_id=channel.get("short_channel_id"),
                minimum_depth=channel.get("minimum_depth"),
                blockheight=blockheight,
            ))
            if cfg.exclude_states.excludes(classification):
                excluded += 1
                continue

            remote = (channel.get("updates") or {}).get("remote") or {}
            in_base = remote.get("fee_base_msat")
            views.append(ChannelView(
                peer_id=peer_id,
                alias=self.aliases.lookup(peer_id),
                short_channel_id=channel.get("short_channel_id"),
                classification=classification,
                total_msat=_msat(channel.get("total_msat")),
                to_us_msat=_msat(channel.get("to_us_msat")),
                min_htlc_msat=_msat(channel.get("minimum_htlc_out_msat")),
                max_htlc_msat=_msat(channel.get("maximum_htlc_out_msat")),
                fee_base_msat=_msat(channel.get("fee_base_msat")),
                fee_ppm=int(channel.get("fee_proportional_millionths") or 0),
                in_fee_base_msat=None if in_base is None else _msat(in_base),
                in_fee_ppm=remote.get("fee_proportional_millionths"),
                htlcs=len(channel.get("htlcs") or []),
                uptime=self.availability.availability(peer_id) if self.availability else None,
            ))
        return views, excluded

    def _section(self, kind: ReportKind, cfg: ReportConfig, cache: LedgerCache,
                 now: float, scid_peers: Dict[str, str],
                 columns: List[Column]) -> LedgerSection:
        hours = cfg.lookback_hours(kind)
        limit = cfg.limit(kind)
        sort = cfg.sort_for(kind)

        items = cache.window(now, hours * 3600)
        rows = [self._ledger_row(kind, item, cfg, scid_peers) for item in items]

        section = LedgerSection(kind=kind, hours=hours, limit=limit, columns=columns,
                                rows=[], totals=cache.totals())
        kept: List[Dict[str, Any]] = []
        for row in rows:
            if self._passes_filters(kind, cfg, row):
                kept.append(row)
                continue
            section.filtered_count += 1
            if kind is ReportKind.FORWARDS:
                section.filtered_amount_msat += row["in_msats"]
                section.filtered_fee_msat += row["fee_msats"]
            elif kind is ReportKind.INVOICES:
                section.filtered_amount_msat += row["msats_received"]

        # Rows are oldest first here, so the limit keeps the most recent ones
        if limit > 0:
            kept = kept[-limit:]
        section.rows = sort_rows(kept, find_column(kind, sort.column), sort.reverse)
        if kind is ReportKind.PAYS:
            self._descriptions = {
                k: v for k, v in self._descriptions.items() if cache.contains(k)
            }
        return section

    @staticmethod
    def _passes_filters(kind: ReportKind, cfg: ReportConfig, row: Dict[str, Any]) -> bool:
        if kind is ReportKind.FORWARDS:
            return (passes_threshold(row["in_msats"], cfg.forwards_filter_amount_msat)
                    and passes_threshold(row["fee_msats"], cfg.forwards_filter_fee_msat))
        if kind is ReportKind.INVOICES:
            return passes_threshold(row["msats_received"], cfg.invoices_filter_amount_msat)
        return True

    def _ledger_row(self, kind: ReportKind, item, cfg: ReportConfig,
                    scid_peers: Dict[str, str]) -> Dict[str, Any]:
        row = item.to_row()
        if kind is ReportKind.FORWARDS:
            row["in_alias"] = self._channel_alias(row["in_channel"], cfg, scid_peers)
            row["out_alias"] = self._channel_alias(row["out_channel"], cfg, scid_peers)
        elif kind is ReportKind.PAYS:
            if item.destination and (cfg.json or "destination" in cfg.pays_columns):
                row["destination"] = self._destination_alias(item.destination, cfg)
            if not row["description"] and item.invoice:
                if cfg.json or "description" in cfg.pays_columns:
                    row["description"] = self._pay_description(item.key, item.invoice)
        return row

    def _channel_alias(self, scid: str, cfg: ReportConfig, scid_peers: Dict[str, str]) -> str:
        """Peer alias of a channel, or the scid when the peer has none."""
        peer_id = scid_peers.get(scid)
        if not cfg.forwards_alias or not peer_id:
            return scid
        alias = self.aliases.lookup(peer_id)
        if alias in (NO_ALIAS_SET, NODE_GOSSIP_MISS):
            return scid
        return alias if cfg.utf8 else ascii_only(alias)

    def _destination_alias(self, node_id: str, cfg: ReportConfig) -> str:
        alias = self.aliases.lookup(node_id)
        if alias == NODE_GOSSIP_MISS:
            return node_id
        return alias if cfg.utf8 else ascii_only(alias)

    def _pay_description(self, key: str, invoice: str) -> Optional[str]:
        if key not in self._descriptions:
            self._descriptions[key] = self.provider.decode_description(invoice)
        return self._descriptions[key]
