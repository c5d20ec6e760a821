"""
Tests for channel state classification and peer availability.

Tests:
- State decision table and flag clusters
- Exclusion parsing and matching
- Availability moving average and persistence hooks
"""

import pytest

from summars.channel_state import (
    AvailabilityTracker, ChannelFacts, ShortChannelState, StateExclusion,
    classify, connectivity_sample, make_channel_flags,
)
from summars.exceptions import ConfigError


class TestClassify:
    """State decision table."""

    def test_normal_is_ok(self):
        result = classify(ChannelFacts(raw_state="CHANNELD_NORMAL", connected=True,
                                       private=False, short_channel_id="100x1x0"))
        assert result.state is ShortChannelState.OK

    def test_closing_wins_over_flags(self):
        """A closing channel stays closing however it is connected."""
        result = classify(ChannelFacts(raw_state="ONCHAIN", connected=True, private=True))

        assert result.state is ShortChannelState.ONCHAIN
        assert result.flags == "[P_]"

    def test_normal_below_minimum_depth(self):
        """Not deep enough yet means still waiting for lock-in."""
        facts = ChannelFacts(raw_state="CHANNELD_NORMAL", connected=True, private=False,
                             short_channel_id="998x1x0", minimum_depth=6, blockheight=1000)

        assert facts.funding_depth == 3
        assert classify(facts).state is ShortChannelState.AWAIT_LOCK

    def test_normal_at_minimum_depth(self):
        facts = ChannelFacts(raw_state="CHANNELD_NORMAL", connected=True, private=False,
                             short_channel_id="995x1x0", minimum_depth=6, blockheight=1000)

        assert classify(facts).state is ShortChannelState.OK

    def test_unknown_raw_state(self):
        result = classify(ChannelFacts(raw_state="SOMETHING_NEW", connected=False))

        assert result.state is ShortChannelState.UNKNOWN

    @pytest.mark.parametrize("raw,short", [
        ("OPENINGD", ShortChannelState.OPENING),
        ("CHANNELD_AWAITING_LOCKIN", ShortChannelState.AWAIT_LOCK),
        ("CHANNELD_SHUTTING_DOWN", ShortChannelState.SHUTTING_DOWN),
        ("CLOSINGD_SIGEXCHANGE", ShortChannelState.CLOSINGD_SIGEX),
        ("DUALOPEND_AWAITING_LOCKIN", ShortChannelState.DUAL_AWAIT),
        ("CHANNELD_AWAITING_SPLICE", ShortChannelState.AWAIT_SPLICE),
    ])
    def test_raw_state_mapping(self, raw, short):
        assert classify(ChannelFacts(raw_state=raw, connected=True)).state is short

    def test_progression_order(self):
        assert ShortChannelState.OPENING.order < ShortChannelState.OK.order
        assert ShortChannelState.OK.order < ShortChannelState.CLOSED.order


class TestFlags:
    """Bracketed visibility/connectivity cluster."""

    @pytest.mark.parametrize("private,connected,expected", [
        (False, True, "[__]"),
        (True, True, "[P_]"),
        (False, False, "[_O]"),
        (True, False, "[PO]"),
        (None, True, "[E_]"),
        (None, False, "[EO]"),
    ])
    def test_flag_cluster(self, private, connected, expected):
        assert make_channel_flags(private, connected) == expected


class TestStateExclusion:
    """exclude-states parsing."""

    def test_parse_states_and_flags(self):
        exclusion = StateExclusion.parse("ok, private ,Offline")

        assert exclusion.states == frozenset({ShortChannelState.OK})
        assert exclusion.visibility == "PRIVATE"
        assert exclusion.connection == "OFFLINE"

    def test_unknown_state(self):
        with pytest.raises(ConfigError, match="Could not parse channel state: `FOO`"):
            StateExclusion.parse("OK,FOO")

    def test_both_visibility_flags(self):
        with pytest.raises(ConfigError, match="`PUBLIC` OR `PRIVATE`"):
            StateExclusion.parse("PUBLIC,PRIVATE")

    def test_both_connection_flags(self):
        with pytest.raises(ConfigError, match="`ONLINE` OR `OFFLINE`"):
            StateExclusion.parse("ONLINE,OFFLINE")

    def test_excludes(self):
        exclusion = StateExclusion.parse("ONCHAIN,OFFLINE")
        online_ok = classify(ChannelFacts(raw_state="CHANNELD_NORMAL", connected=True,
                                          private=False))
        offline_ok = classify(ChannelFacts(raw_state="CHANNELD_NORMAL", connected=False,
                                           private=False))

        assert not exclusion.excludes(online_ok)
        assert exclusion.excludes(offline_ok)

    def test_private_exclusion_spares_unknown_visibility(self):
        exclusion = StateExclusion.parse("PRIVATE")
        unknown = classify(ChannelFacts(raw_state="CHANNELD_NORMAL", connected=True))

        assert not exclusion.excludes(unknown)

    def test_empty(self):
        assert StateExclusion.parse("") == StateExclusion()
        assert str(StateExclusion.parse("closed,ok")) == "OK,CLOSED"


class TestAvailabilityTracker:
    """Rolling availability."""

    def test_first_sample_sets_value(self, mock_plugin):
        tracker = AvailabilityTracker(mock_plugin)

        tracker.record_sample({"a": True, "b": False}, timestamp=1)

        assert tracker.availability("a") == 100.0
        assert tracker.availability("b") == 0.0
        assert tracker.availability("c") is None

    def test_moving_average(self, mock_plugin):
        """Weight follows the samples taken so far: second sample averages 50/50."""
        tracker = AvailabilityTracker(mock_plugin, interval_seconds=300, window_hours=72)

        tracker.record_sample({"a": True}, timestamp=1)
        tracker.record_sample({"a": False}, timestamp=2)
        assert tracker.availability("a") == pytest.approx(0.0)

        tracker.record_sample({"a": True}, timestamp=3)
        assert tracker.availability("a") == pytest.approx(50.0)

    def test_window_caps_weight(self, mock_plugin):
        """Once count * interval exceeds the window the weight stops shrinking."""
        tracker = AvailabilityTracker(mock_plugin, interval_seconds=3600, window_hours=2)
        for ts in range(10):
            tracker.record_sample({"a": True}, timestamp=ts)

        tracker.record_sample({"a": False}, timestamp=10)

        assert tracker.availability("a") == pytest.approx(50.0)

    def test_gone_peers_dropped(self, mock_plugin, mock_database):
        tracker = AvailabilityTracker(mock_plugin, database=mock_database)
        tracker.record_sample({"a": True, "b": True}, timestamp=1)

        tracker.record_sample({"a": True}, timestamp=2)

        assert tracker.availability("b") is None
        mock_database.delete_availability.assert_called_once_with(["b"])
        assert mock_database.save_availability.call_count == 2

    def test_load_from_database(self, mock_plugin, mock_database):
        mock_database.load_availability.return_value = {
            "a": {"count": 5, "connected": True, "avail": 0.8, "updated_at": 1},
        }
        tracker = AvailabilityTracker(mock_plugin, database=mock_database)

        assert tracker.load() == 1
        assert tracker.availability("a") == pytest.approx(80.0)
        assert tracker.peers()[0].count == 5


class TestConnectivitySample:

    def test_only_active_channels(self, sample_channels, sample_peer_ids):
        """Closing channels are not sampled; any connected channel counts."""
        sample = connectivity_sample(sample_channels)

        assert sample == {
            sample_peer_ids[0]: True,
            sample_peer_ids[1]: False,
            sample_peer_ids[2]: True,
        }
