"""
Pytest fixtures for cl-summars tests.

Provides mock plugin and RPC fixtures backed by an in-memory node: channel
snapshot responses plus ledgers that honour index=created pagination.
"""

import os
import sys
import tempfile
from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import MagicMock

# Add the package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

NODE_ID = "02" + "f" * 64


class FakeLedger:
    """In-memory listforwards/listpays/listinvoices honouring start and limit."""

    def __init__(self, field_name: str):
        self.field_name = field_name
        self.entries: List[Dict[str, Any]] = []
        self.calls: List[Optional[Dict[str, Any]]] = []

    def add(self, **entry) -> Dict[str, Any]:
        entry["created_index"] = len(self.entries) + 1
        self.entries.append(entry)
        return entry

    def update(self, created_index: int, **changes) -> None:
        self.entries[created_index - 1].update(changes)

    def __call__(self, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.calls.append(payload)
        payload = payload or {}
        start = payload.get("start", 0)
        limit = payload.get("limit")
        selected = [dict(e) for e in self.entries if e["created_index"] >= start]
        if limit:
            selected = selected[:limit]
        return {self.field_name: selected}


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "03" + "d" * 64,
        "03" + "e" * 64,
    ]


@pytest.fixture
def sample_channels(sample_peer_ids):
    """listpeerchannels entries: two active, one opening, one closing."""
    return [
        {
            "peer_id": sample_peer_ids[0],
            "peer_connected": True,
            "state": "CHANNELD_NORMAL",
            "short_channel_id": "100x1x0",
            "private": False,
            "total_msat": 1_000_000_000,
            "to_us_msat": 600_000_000,
            "our_reserve_msat": 10_000_000,
            "their_reserve_msat": 10_000_000,
            "minimum_htlc_out_msat": 1_000,
            "maximum_htlc_out_msat": 990_000_000,
            "fee_base_msat": 1_000,
            "fee_proportional_millionths": 100,
            "updates": {"remote": {"fee_base_msat": 0, "fee_proportional_millionths": 50}},
            "htlcs": [],
        },
        {
            "peer_id": sample_peer_ids[1],
            "peer_connected": False,
            "state": "CHANNELD_NORMAL",
            "short_channel_id": "200x2x1",
            "private": True,
            "total_msat": 2_000_000_000,
            "to_us_msat": 500_000_000,
            "our_reserve_msat": 20_000_000,
            "their_reserve_msat": 20_000_000,
            "minimum_htlc_out_msat": 1_000,
            "maximum_htlc_out_msat": 1_980_000_000,
            "fee_base_msat": 0,
            "fee_proportional_millionths": 250,
            "htlcs": [{"id": 1}, {"id": 2}],
        },
        {
            "peer_id": sample_peer_ids[2],
            "peer_connected": True,
            "state": "CHANNELD_AWAITING_LOCKIN",
            "private": False,
            "total_msat": 500_000_000,
            "to_us_msat": 500_000_000,
            "fee_base_msat": 1_000,
            "fee_proportional_millionths": 10,
        },
        {
            "peer_id": sample_peer_ids[3],
            "peer_connected": False,
            "state": "ONCHAIN",
            "short_channel_id": "50x1x0",
            "private": False,
            "total_msat": 300_000_000,
            "to_us_msat": 0,
        },
    ]


@pytest.fixture
def forwards_ledger():
    return FakeLedger("forwards")


@pytest.fixture
def pays_ledger():
    return FakeLedger("pays")


@pytest.fixture
def invoices_ledger():
    return FakeLedger("invoices")


@pytest.fixture
def node_responses(sample_peer_ids, sample_channels, forwards_ledger, pays_ledger,
                   invoices_ledger):
    """RPC method -> response dict, or callable taking the payload."""
    return {
        "getinfo": {
            "id": NODE_ID,
            "alias": "test-node",
            "network": "regtest",
            "blockheight": 1000,
            "fees_collected_msat": 5_000,
            "address": [
                {"type": "ipv6", "address": "::1", "port": 9735},
                {"type": "ipv4", "address": "10.0.0.1", "port": 9736},
            ],
            "binding": [{"type": "ipv4", "address": "127.0.0.1", "port": 9735}],
        },
        "listpeers": {
            "peers": [
                {"id": sample_peer_ids[0], "connected": True, "num_channels": 1},
                {"id": sample_peer_ids[4], "connected": True, "num_channels": 0},
            ]
        },
        "listpeerchannels": {"channels": sample_channels},
        "listfunds": {
            "outputs": [
                {"amount_msat": 150_000_000, "status": "confirmed"},
                {"amount_msat": 50_000_000, "status": "unconfirmed"},
            ],
            "channels": [],
        },
        "listnodes": lambda payload: {
            "nodes": [
                {"nodeid": sample_peer_ids[0], "alias": "ALICE", "last_timestamp": 1},
                {"nodeid": sample_peer_ids[1], "alias": "CAROL", "last_timestamp": 1},
                {"nodeid": sample_peer_ids[2], "alias": "", "last_timestamp": 1},
            ] if not payload else [
                n for n in [
                    {"nodeid": sample_peer_ids[0], "alias": "ALICE", "last_timestamp": 1},
                    {"nodeid": sample_peer_ids[1], "alias": "CAROL", "last_timestamp": 1},
                ] if n["nodeid"] == payload.get("id")
            ]
        },
        "listforwards": forwards_ledger,
        "listpays": pays_ledger,
        "listinvoices": invoices_ledger,
        "plugin": {"plugins": [{"name": "/plugins/cl-summars.py", "active": True}]},
        "decode": {"description": "decoded description"},
    }


@pytest.fixture
def mock_rpc(node_responses):
    """Create a mock RPC interface dispatching call() to node_responses."""
    rpc = MagicMock()

    def call(method, payload=None):
        response = node_responses[method]
        if callable(response):
            return response(payload)
        return response

    rpc.call.side_effect = call
    return rpc


@pytest.fixture
def mock_plugin(mock_rpc):
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = mock_rpc
    return plugin


@pytest.fixture
def mock_database():
    """Create a mock database with common methods."""
    db = MagicMock()
    db.load_availability.return_value = {}
    return db


@pytest.fixture
def builder(mock_plugin):
    """ReportBuilder wired to the in-memory node, no retry delays."""
    from summars.node_snapshot import AliasCache, NodeSnapshotProvider
    from summars.report_builder import ReportBuilder

    provider = NodeSnapshotProvider(mock_plugin, retry_delay=0)
    return ReportBuilder(mock_plugin, provider, AliasCache(provider, mock_plugin))
