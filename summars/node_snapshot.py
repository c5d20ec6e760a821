"""
Node snapshot module for cl-summars

Thin layer over plugin.rpc that the report builder reads from:
- channel snapshot calls (getinfo, listpeers, listpeerchannels, listfunds)
- paginated ledger fetches using index=created
- node alias resolution with a periodically refreshed cache

Transient transport failures are retried a bounded number of times.  Error
responses from lightningd (RpcError) are not retried.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pyln.client import Plugin, RpcError

from .columns import ReportKind

PAGE_SIZE = 1000
RETRY_COUNT = 2
RETRY_DELAY_SECONDS = 0.5

TRANSIENT_ERRORS = (OSError, TimeoutError)

LEDGER_METHODS: Dict[ReportKind, tuple] = {
    ReportKind.FORWARDS: ("listforwards", "forwards"),
    ReportKind.PAYS: ("listpays", "pays"),
    ReportKind.INVOICES: ("listinvoices", "invoices"),
}

# Alias sentinels
NO_ALIAS_SET = "NO_ALIAS_SET"
NODE_GOSSIP_MISS = "NODE_GOSSIP_MISS"


class FetchUnavailableError(RuntimeError):
    """A fetch kept failing after all retries."""
    def __init__(self, method: str, cause: Exception):
        self.method = method
        self.cause = cause
        super().__init__(f"{method} unavailable: {cause}")


@dataclass
class LedgerPage:
    """One page of ledger events and whether more may follow."""
    events: List[Dict[str, Any]]
    more: bool


class NodeSnapshotProvider:
    """
    Read-only access to the node for one report pass.

    Safe to call from several threads: every pyln-client call opens its own
    connection to lightningd.
    """

    def __init__(self, plugin: Plugin, page_size: int = PAGE_SIZE,
                 retry_count: int = RETRY_COUNT,
                 retry_delay: float = RETRY_DELAY_SECONDS):
        self.plugin = plugin
        self.page_size = page_size
        self.retry_count = retry_count
        self.retry_delay = retry_delay

    def _call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(self.retry_count + 1):
            try:
                return self.plugin.rpc.call(method, payload)
            except RpcError:
                raise
            except TRANSIENT_ERRORS as e:
                last_error = e
                self.plugin.log(
                    f"{method} failed (attempt {attempt + 1}/{self.retry_count + 1}): {e}",
                    level='warn')
                if attempt < self.retry_count and self.retry_delay > 0:
                    time.sleep(self.retry_delay)
        raise FetchUnavailableError(method, last_error)

    def getinfo(self) -> Dict[str, Any]:
        return self._call("getinfo")

    def listpeers(self) -> List[Dict[str, Any]]:
        return self._call("listpeers").get("peers", [])

    def listpeerchannels(self) -> List[Dict[str, Any]]:
        return self._call("listpeerchannels").get("channels", [])

    def listfunds(self) -> Dict[str, Any]:
        return self._call("listfunds")

    def fetch_page(self, kind: ReportKind, start: int) -> LedgerPage:
        """Fetch one page of a ledger starting at created_index start."""
        method, field_name = LEDGER_METHODS[kind]
        payload = {"index": "created", "start": start, "limit": self.page_size}
        events = self._call(method, payload).get(field_name, [])
        return LedgerPage(events=events, more=len(events) >= self.page_size)

    def fetch_ledger(self, kind: ReportKind, start: int) -> List[Dict[str, Any]]:
        """All events of a ledger from start onwards, following pages."""
        events: List[Dict[str, Any]] = []
        cursor = start
        while True:
            page = self.fetch_page(kind, cursor)
            events.extend(page.events)
            if not page.more or not page.events:
                return events
            last_index = page.events[-1].get("created_index")
            if last_index is None:
                return events
            cursor = int(last_index) + 1

    def fetch_hold_invoices(self) -> List[Dict[str, Any]]:
        return self._call("holdinvoicelookup").get("holdinvoices", [])

    def decode_description(self, invoice: str) -> Optional[str]:
        """Description of a bolt11/bolt12 string, None when it has none."""
        try:
            decoded = self._call("decode", {"string": invoice})
        except (RpcError, FetchUnavailableError) as e:
            self.plugin.log(f"Could not decode invoice: {e}", level='debug')
            return None
        return decoded.get("description") or decoded.get("offer_description")

    def listnodes(self, node_id: Optional[str] = None) -> List[Dict[str, Any]]:
        payload = {"id": node_id} if node_id else None
        return self._call("listnodes", payload).get("nodes", [])

    def has_plugin(self, name: str) -> bool:
        """Whether a plugin whose path contains name is active."""
        try:
            result = self._call("plugin", {"subcommand": "list"})
        except RpcError:
            result = self._call("listplugins")
        for entry in result.get("plugins", []):
            if name in str(entry.get("name", "")) and entry.get("active", True):
                return True
        return False


class AliasCache:
    """
    Node id -> alias map refreshed from gossip.

    Peers without a gossip entry resolve to NODE_GOSSIP_MISS; nodes that
    announced no alias resolve to NO_ALIAS_SET.  The refresh cadence shortens
    while many peers are still missing from gossip.
    """

    def __init__(self, provider: NodeSnapshotProvider, plugin: Optional[Plugin] = None):
        self.provider = provider
        self.plugin = plugin
        self._aliases: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._last_refresh = 0.0

    def _log(self, message: str, level: str = 'debug') -> None:
        if self.plugin:
            self.plugin.log(message, level=level)

    @staticmethod
    def _alias_of(node: Dict[str, Any]) -> str:
        alias = node.get("alias")
        if alias is None:
            return NODE_GOSSIP_MISS if "last_timestamp" not in node else NO_ALIAS_SET
        return alias if alias.strip() else NO_ALIAS_SET

    def refresh(self) -> int:
        """Reload every alias from listnodes; returns the number of nodes."""
        start = time.time()
        nodes = self.provider.listnodes()
        aliases = {node["nodeid"]: self._alias_of(node) for node in nodes if "nodeid" in node}
        with self._lock:
            self._aliases = aliases
            self._last_refresh = time.time()
        self._log(f"Refreshed {len(aliases)} aliases in {time.time() - start:.2f}s")
        return len(aliases)

    def lookup(self, node_id: str) -> str:
        """Alias for node_id, asking lightningd on a cache miss."""
        with self._lock:
            alias = self._aliases.get(node_id)
        if alias is not None and alias != NODE_GOSSIP_MISS:
            return alias

        try:
            nodes = self.provider.listnodes(node_id)
        except (RpcError, FetchUnavailableError) as e:
            self._log(f"Alias lookup for {node_id[:12]}... failed: {e}", level='debug')
            nodes = []
        alias = self._alias_of(nodes[0]) if nodes else NODE_GOSSIP_MISS
        with self._lock:
            self._aliases[node_id] = alias
        return alias

    def miss_ratio(self, peer_ids: List[str]) -> float:
        """Fraction of peer_ids that resolve to NODE_GOSSIP_MISS."""
        if not peer_ids:
            return 0.0
        with self._lock:
            misses = sum(
                1 for p in peer_ids
                if self._aliases.get(p, NODE_GOSSIP_MISS) == NODE_GOSSIP_MISS
            )
        return misses / len(peer_ids)

    @staticmethod
    def next_refresh_seconds(miss_ratio: float, refresh_hours: int) -> int:
        """Refresh interval given how many peers are still missing from gossip."""
        if miss_ratio <= 0.05:
            return refresh_hours * 3600
        if miss_ratio <= 0.10:
            return 3600
        if miss_ratio <= 0.25:
            return 600
        return 60
