"""
Channel state module for cl-summars

Derives the compact state shown for every channel from independent signals:

- the raw state lightningd reports for the channel
- the funding depth relative to the channel's minimum depth
- the public/private announcement flag
- the peer's connectivity

and keeps the rolling per-peer availability metric.

Decision table (first matching row wins):
1. Closing or on-chain raw state -> that closing state, whatever the flags
2. CHANNELD_NORMAL below minimum depth -> AWAIT_LOCK
3. Known raw state -> its short state
4. Anything else -> UNKNOWN

Visibility and connectivity never change the state; they are rendered as
the bracketed flag cluster next to it, e.g. "[P_]".
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from pyln.client import Plugin

from .exceptions import ConfigError


class ShortChannelState(Enum):
    """
    Compact channel state, declared in progression order.

    Sorting by STATE follows this declaration order, so an opening channel
    sorts before an active one and an active one before a closing one.
    """
    OPENING = "OPENING"
    DUAL_OPEN = "DUAL_OPEN"
    DUAL_COMMITTED = "DUAL_COMMITTED"
    DUAL_COMMIT_RDY = "DUAL_COMMIT_RDY"
    AWAIT_LOCK = "AWAIT_LOCK"
    DUAL_AWAIT = "DUAL_AWAIT"
    OK = "OK"
    AWAIT_SPLICE = "AWAIT_SPLICE"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    CLOSINGD_SIGEX = "CLOSINGD_SIGEX"
    CLOSINGD_DONE = "CLOSINGD_DONE"
    AWAIT_UNILATERAL = "AWAIT_UNILATERAL"
    FUNDING_SPEND = "FUNDING_SPEND"
    ONCHAIN = "ONCHAIN"
    CLOSED = "CLOSED"
    UNKNOWN = "UNKNOWN"

    @property
    def order(self) -> int:
        return _PROGRESSION[self]


_PROGRESSION: Dict[ShortChannelState, int] = {
    state: index for index, state in enumerate(ShortChannelState)
}

RAW_STATE_MAP: Dict[str, ShortChannelState] = {
    "OPENINGD": ShortChannelState.OPENING,
    "CHANNELD_AWAITING_LOCKIN": ShortChannelState.AWAIT_LOCK,
    "CHANNELD_NORMAL": ShortChannelState.OK,
    "CHANNELD_SHUTTING_DOWN": ShortChannelState.SHUTTING_DOWN,
    "CLOSINGD_SIGEXCHANGE": ShortChannelState.CLOSINGD_SIGEX,
    "CLOSINGD_COMPLETE": ShortChannelState.CLOSINGD_DONE,
    "AWAITING_UNILATERAL": ShortChannelState.AWAIT_UNILATERAL,
    "FUNDING_SPEND_SEEN": ShortChannelState.FUNDING_SPEND,
    "ONCHAIN": ShortChannelState.ONCHAIN,
    "CLOSED": ShortChannelState.CLOSED,
    "DUALOPEND_OPEN_INIT": ShortChannelState.DUAL_OPEN,
    "DUALOPEND_OPEN_COMMITTED": ShortChannelState.DUAL_COMMITTED,
    "DUALOPEND_OPEN_COMMIT_READY": ShortChannelState.DUAL_COMMIT_RDY,
    "DUALOPEND_AWAITING_LOCKIN": ShortChannelState.DUAL_AWAIT,
    "CHANNELD_AWAITING_SPLICE": ShortChannelState.AWAIT_SPLICE,
}

CLOSING_STATES: FrozenSet[ShortChannelState] = frozenset({
    ShortChannelState.SHUTTING_DOWN,
    ShortChannelState.CLOSINGD_SIGEX,
    ShortChannelState.CLOSINGD_DONE,
    ShortChannelState.AWAIT_UNILATERAL,
    ShortChannelState.FUNDING_SPEND,
    ShortChannelState.ONCHAIN,
    ShortChannelState.CLOSED,
})

# Raw states counted towards channel totals and sampled for availability
ACTIVE_RAW_STATES: FrozenSet[str] = frozenset({
    "OPENINGD",
    "CHANNELD_AWAITING_LOCKIN",
    "CHANNELD_NORMAL",
    "DUALOPEND_OPEN_INIT",
    "DUALOPEND_AWAITING_LOCKIN",
    "CHANNELD_AWAITING_SPLICE",
})

# Raw states whose balances are spendable right now
SPENDABLE_RAW_STATES: FrozenSet[str] = frozenset({
    "CHANNELD_NORMAL",
    "CHANNELD_AWAITING_SPLICE",
})

VISIBILITY_FLAGS = ("PUBLIC", "PRIVATE")
CONNECTION_FLAGS = ("ONLINE", "OFFLINE")


def make_channel_flags(private: Optional[bool], connected: bool) -> str:
    """
    Build the bracketed flag cluster.

    First slot: P private, _ public, E unknown.
    Second slot: O offline, _ online.
    """
    if private is None:
        visibility = "E"
    elif private:
        visibility = "P"
    else:
        visibility = "_"
    return f"[{visibility}{'_' if connected else 'O'}]"


def scid_block_height(short_channel_id: Optional[str]) -> Optional[int]:
    if not short_channel_id:
        return None
    try:
        return int(short_channel_id.split("x")[0])
    except (ValueError, IndexError):
        return None


@dataclass(frozen=True)
class ChannelFacts:
    """
    Raw signals about one channel taken from a single node snapshot.

    Attributes:
        raw_state: lightningd's channel state, e.g. CHANNELD_NORMAL
        connected: Whether the peer is currently connected
        private: Announcement flag, None when lightningd did not report it
        short_channel_id: Set once the funding transaction is mined
        minimum_depth: Confirmations required before the channel is usable
        blockheight: Current chain tip from getinfo
    """
    raw_state: str
    connected: bool
    private: Optional[bool] = None
    short_channel_id: Optional[str] = None
    minimum_depth: Optional[int] = None
    blockheight: Optional[int] = None

    @property
    def funding_depth(self) -> Optional[int]:
        height = scid_block_height(self.short_channel_id)
        if height is None or self.blockheight is None:
            return None
        return self.blockheight - height + 1


@dataclass(frozen=True)
class ChannelClassification:
    """Derived state plus the independent flag bits."""
    state: ShortChannelState
    private: Optional[bool]
    connected: bool

    @property
    def flags(self) -> str:
        return make_channel_flags(self.private, self.connected)


def classify(facts: ChannelFacts) -> ChannelClassification:
    """Apply the state decision table to one channel's facts."""
    mapped = RAW_STATE_MAP.get(facts.raw_state, ShortChannelState.UNKNOWN)

    if mapped in CLOSING_STATES:
        state = mapped
    elif (mapped is ShortChannelState.OK
          and facts.minimum_depth is not None
          and facts.funding_depth is not None
          and facts.funding_depth < facts.minimum_depth):
        state = ShortChannelState.AWAIT_LOCK
    else:
        state = mapped

    return ChannelClassification(state=state, private=facts.private,
                                 connected=facts.connected)


@dataclass(frozen=True)
class StateExclusion:
    """
    Channels to hide from the channel table.

    Attributes:
        states: Short states to exclude
        visibility: "PUBLIC", "PRIVATE" or None
        connection: "ONLINE", "OFFLINE" or None
    """
    states: FrozenSet[ShortChannelState] = frozenset()
    visibility: Optional[str] = None
    connection: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> 'StateExclusion':
        """
        Parse a comma separated list of state or flag names, case-insensitively.

        Raises:
            ConfigError: on unknown names or contradicting flag pairs
        """
        states = set()
        visibility: List[str] = []
        connection: List[str] = []

        for raw in value.split(","):
            name = raw.strip().upper()
            if not name:
                continue
            if name in VISIBILITY_FLAGS:
                if name not in visibility:
                    visibility.append(name)
            elif name in CONNECTION_FLAGS:
                if name not in connection:
                    connection.append(name)
            else:
                try:
                    states.add(ShortChannelState(name))
                except ValueError:
                    raise ConfigError(f"Could not parse channel state: `{raw.strip()}`")

        if len(visibility) > 1:
            raise ConfigError("Can only filter `PUBLIC` OR `PRIVATE`, not both.")
        if len(connection) > 1:
            raise ConfigError("Can only filter `ONLINE` OR `OFFLINE`, not both.")

        return cls(
            states=frozenset(states),
            visibility=visibility[0] if visibility else None,
            connection=connection[0] if connection else None,
        )

    def excludes(self, classification: ChannelClassification) -> bool:
        if classification.state in self.states:
            return True
        if self.visibility == "PRIVATE" and classification.private:
            return True
        if self.visibility == "PUBLIC" and classification.private is False:
            return True
        if self.connection == "ONLINE" and classification.connected:
            return True
        if self.connection == "OFFLINE" and not classification.connected:
            return True
        return False

    def __str__(self) -> str:
        names = [s.value for s in sorted(self.states, key=lambda s: s.order)]
        names.extend(n for n in (self.visibility, self.connection) if n)
        return ",".join(names)


@dataclass
class PeerAvailability:
    """EMA state of one peer's connectivity samples."""
    peer_id: str
    count: int
    connected: bool
    avail: float


class AvailabilityTracker:
    """
    Rolling availability per peer.

    Every sample folds the peer's connectivity into an exponential moving
    average whose weight follows the samples actually taken so far, capped
    at the configured window:

        samples = max(min(window, count * interval), interval) / interval
        avail   = connected / samples + avail * (1 - 1 / samples)

    Only peers with an active channel are sampled.
    """

    def __init__(self, plugin: Optional[Plugin], database=None,
                 interval_seconds: int = 300, window_hours: int = 72):
        self.plugin = plugin
        self.database = database
        self.interval_seconds = interval_seconds
        self.window_seconds = window_hours * 3600
        self._peers: Dict[str, PeerAvailability] = {}
        self._lock = threading.Lock()

    def _log(self, message: str, level: str = 'debug') -> None:
        if self.plugin:
            self.plugin.log(message, level=level)

    def load(self) -> int:
        """Load persisted samples; returns the number of peers restored."""
        if not self.database:
            return 0
        records = self.database.load_availability()
        with self._lock:
            self._peers = {
                peer_id: PeerAvailability(
                    peer_id=peer_id,
                    count=int(row["count"]),
                    connected=bool(row["connected"]),
                    avail=float(row["avail"]),
                )
                for peer_id, row in records.items()
            }
            return len(self._peers)

    def record_sample(self, connectivity: Dict[str, bool],
                      timestamp: Optional[int] = None) -> None:
        """
        Fold one round of samples into the averages.

        Args:
            connectivity: peer_id -> connected, for peers with active channels
            timestamp: Sample time, defaults to now
        """
        timestamp = int(timestamp if timestamp is not None else time.time())
        interval = max(self.interval_seconds, 1)

        with self._lock:
            for peer_id, connected in connectivity.items():
                sample = 1.0 if connected else 0.0
                entry = self._peers.get(peer_id)
                if entry is None:
                    self._peers[peer_id] = PeerAvailability(
                        peer_id=peer_id, count=1, connected=connected, avail=sample)
                    continue

                leadwin = max(min(self.window_seconds, entry.count * interval), interval)
                alpha = 1.0 / (leadwin / interval)
                entry.avail = sample * alpha + entry.avail * (1.0 - alpha)
                entry.connected = connected
                entry.count += 1

            gone = [p for p in self._peers if p not in connectivity]
            for peer_id in gone:
                del self._peers[peer_id]
            snapshot = list(self._peers.values())

        if self.database:
            self.database.save_availability(snapshot, timestamp)
            if gone:
                self.database.delete_availability(gone)
        self._log(f"Availability sampled for {len(connectivity)} peers")

    def availability(self, peer_id: str) -> Optional[float]:
        """Availability in percent, None for peers never sampled."""
        with self._lock:
            entry = self._peers.get(peer_id)
            if entry is None:
                return None
            return entry.avail * 100.0

    def peers(self) -> Tuple[PeerAvailability, ...]:
        with self._lock:
            return tuple(self._peers.values())


def connectivity_sample(channels: Iterable[Dict]) -> Dict[str, bool]:
    """peer_id -> connected for peers with at least one active channel."""
    sample: Dict[str, bool] = {}
    for channel in channels:
        if channel.get("state") not in ACTIVE_RAW_STATES:
            continue
        peer_id = channel.get("peer_id")
        if not peer_id:
            continue
        sample[peer_id] = sample.get(peer_id, False) or bool(channel.get("peer_connected"))
    return sample
