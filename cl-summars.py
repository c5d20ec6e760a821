#!/usr/bin/env python3
"""
cl-summars: A summary report plugin for Core Lightning

Prints a snapshot of the node on demand: node level numbers, every channel
with its balances, fees, compact state and peer uptime, plus optional tables
of recent forwards, payments and paid invoices.

INCREMENTAL LEDGERS:
--------------------
Forwards, pays and invoices are cached between calls.  Each `summars` call
only fetches entries created since the previous call (index=created), so
nodes with long histories stay fast after the first report.

BACKGROUND TASKS:
-----------------
- availability sampler: records peer connectivity every
  summars-availability-interval seconds for the UPTIME column
- alias refresher: reloads node aliases from gossip, more often while many
  peers are still unknown

Dependencies:
- pyln-client: Core Lightning plugin framework
- rich: Table rendering
- Babel: Locale-aware number and date formatting
- holdinvoice plugin (optional): Hold invoices in the invoices table

License: MIT
"""

import os
import signal
import threading
from typing import Any, Dict, Optional

from pyln.client import Plugin, RpcError

from summars.channel_state import AvailabilityTracker, connectivity_sample
from summars.config import OPTION_FIELDS, Config
from summars.database import Database
from summars.exceptions import ConfigError
from summars.node_snapshot import AliasCache, FetchUnavailableError, NodeSnapshotProvider
from summars.renderer import render
from summars.report_builder import ReportBuilder


# Initialize the plugin
plugin = Plugin()

# =============================================================================
# GRACEFUL SHUTDOWN SUPPORT
# =============================================================================
# Set on SIGTERM (`lightning-cli plugin stop cl-summars.py`) so the
# background loops exit instead of finishing their sleep.

shutdown_event = threading.Event()

# Globals set in init
config: Optional[Config] = None
database: Optional[Database] = None
provider: Optional[NodeSnapshotProvider] = None
aliases: Optional[AliasCache] = None
availability: Optional[AvailabilityTracker] = None
builder: Optional[ReportBuilder] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='summars-columns',
    default='OUT_SATS,IN_SATS,SCID,MAX_HTLC,FLAG,BASE,PPM,ALIAS,PEER_ID,UPTIME,HTLCS,STATE',
    description='Comma-separated list of channel columns to show. Valid: GRAPH_SATS, '
                'PERC_US, OUT_SATS, IN_SATS, TOTAL_SATS, SCID, MIN_HTLC, MAX_HTLC, FLAG, '
                'BASE, IN_BASE, PPM, IN_PPM, ALIAS, PEER_ID, UPTIME, HTLCS, STATE',
    dynamic=True
)

plugin.add_option(
    name='summars-sort-by',
    default='SCID',
    description='Channel column to sort by, prefix with - to reverse (default: SCID)',
    dynamic=True
)

plugin.add_option(
    name='summars-exclude-states',
    default='',
    description='Comma-separated channel states to hide, also PUBLIC/PRIVATE and ONLINE/OFFLINE',
    dynamic=True
)

plugin.add_option(
    name='summars-forwards',
    default='0',
    description='Show settled forwards of the last N hours (default: 0, off)',
    dynamic=True
)

plugin.add_option(
    name='summars-forwards-limit',
    default='0',
    description='Show at most the N most recent forwards (default: 0, no limit)',
    dynamic=True
)

plugin.add_option(
    name='summars-forwards-columns',
    default='resolved_time,in_alias,out_alias,in_sats,out_sats,fee_msats',
    description='Comma-separated list of forwards columns. Valid: received_time, '
                'resolved_time, in_channel, out_channel, in_alias, out_alias, in_sats, '
                'in_msats, out_sats, out_msats, fee_sats, fee_msats, eff_fee_ppm',
    dynamic=True
)

plugin.add_option(
    name='summars-forwards-sort-by',
    default='resolved_time',
    description='Forwards column to sort by, prefix with - to reverse',
    dynamic=True
)

plugin.add_option(
    name='summars-forwards-filter-amount-msat',
    default='0',
    description='Only show forwards of at least N msat, or at most N msat if negative '
                '(default: 0, show all)',
    dynamic=True
)

plugin.add_option(
    name='summars-forwards-filter-fee-msat',
    default='0',
    description='Only show forwards earning at least N msat, or at most N msat if negative '
                '(default: 0, show all)',
    dynamic=True
)

plugin.add_option(
    name='summars-forwards-alias',
    default='true',
    description='Show peer aliases instead of channel ids in the forwards table (default: true)',
    dynamic=True
)

plugin.add_option(
    name='summars-pays',
    default='0',
    description='Show completed payments of the last N hours (default: 0, off)',
    dynamic=True
)

plugin.add_option(
    name='summars-pays-limit',
    default='0',
    description='Show at most the N most recent payments (default: 0, no limit)',
    dynamic=True
)

plugin.add_option(
    name='summars-pays-columns',
    default='completed_at,payment_hash,sats_sent,fee_sats,destination',
    description='Comma-separated list of pays columns. Valid: completed_at, payment_hash, '
                'sats_requested, msats_requested, sats_sent, msats_sent, fee_sats, '
                'fee_msats, destination, description, preimage',
    dynamic=True
)

plugin.add_option(
    name='summars-pays-sort-by',
    default='completed_at',
    description='Pays column to sort by, prefix with - to reverse',
    dynamic=True
)

plugin.add_option(
    name='summars-max-description-length',
    default='30',
    description='Truncate descriptions to N characters, wrap at N if negative (default: 30)',
    dynamic=True
)

plugin.add_option(
    name='summars-invoices',
    default='0',
    description='Show paid invoices of the last N hours (default: 0, off)',
    dynamic=True
)

plugin.add_option(
    name='summars-invoices-limit',
    default='0',
    description='Show at most the N most recent invoices (default: 0, no limit)',
    dynamic=True
)

plugin.add_option(
    name='summars-invoices-columns',
    default='paid_at,label,sats_received,payment_hash',
    description='Comma-separated list of invoices columns. Valid: paid_at, label, '
                'description, sats_received, msats_received, payment_hash, preimage',
    dynamic=True
)

plugin.add_option(
    name='summars-invoices-sort-by',
    default='paid_at',
    description='Invoices column to sort by, prefix with - to reverse',
    dynamic=True
)

plugin.add_option(
    name='summars-max-label-length',
    default='30',
    description='Truncate invoice labels to N characters, wrap at N if negative (default: 30)',
    dynamic=True
)

plugin.add_option(
    name='summars-invoices-filter-amount-msat',
    default='0',
    description='Only show invoices of at least N msat, or at most N msat if negative '
                '(default: 0, show all)',
    dynamic=True
)

plugin.add_option(
    name='summars-locale',
    default='',
    description='Locale for numbers and dates, e.g. en_US or de (default: system locale)',
    dynamic=True
)

plugin.add_option(
    name='summars-refresh-alias',
    default='24',
    description='Hours between alias refreshes when gossip is complete (default: 24)'
)

plugin.add_option(
    name='summars-max-alias-length',
    default='20',
    description='Truncate aliases to N characters, wrap at N if negative (default: 20)',
    dynamic=True
)

plugin.add_option(
    name='summars-availability-interval',
    default='300',
    description='Seconds between peer connectivity samples (default: 300)'
)

plugin.add_option(
    name='summars-availability-window',
    default='72',
    description='Hours the availability average spans (default: 72)'
)

plugin.add_option(
    name='summars-utf8',
    default='true',
    description='Use UTF-8 characters; if false aliases and borders are ASCII only (default: true)',
    dynamic=True
)

plugin.add_option(
    name='summars-style',
    default='psql',
    description='Channel table style: psql, blank, ascii, ascii_rounded, modern, sharp, '
                'rounded, extended, markdown, simple, heavy, double (default: psql)',
    dynamic=True
)

plugin.add_option(
    name='summars-flow-style',
    default='blank',
    description='Style of the forwards/pays/invoices tables (default: blank)',
    dynamic=True
)

plugin.add_option(
    name='summars-json',
    default='false',
    description='Return structured data instead of text tables (default: false)',
    dynamic=True
)

plugin.add_option(
    name='summars-db-path',
    default='',
    description='Path to the SQLite database for availability data '
                '(default: <lightning-dir>/summars/summars.db)'
)


def current_config() -> Config:
    """Config built from the options as they are now, after any setconfig."""
    options = {name: plugin.get_option(name) for name in OPTION_FIELDS}
    return Config.from_options(
        options,
        db_path=config.db_path,
        hold_invoice_support=config.hold_invoice_support,
    )


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the summars plugin.

    This is called once when the plugin starts. We:
    1. Parse and validate options
    2. Open the availability database
    3. Create the snapshot provider, alias cache and report builder
    4. Start the availability and alias background loops
    """
    global config, database, provider, aliases, availability, builder

    plugin.log("Initializing cl-summars plugin...")

    lightning_dir = configuration.get("lightning-dir", "~/.lightning")
    try:
        config = Config.from_options(
            options,
            db_path=os.path.join(lightning_dir, "summars", "summars.db"),
        )
    except ConfigError as e:
        plugin.log(f"Invalid configuration: {e}", level='error')
        return {"disable": str(e)}

    plugin.log(f"Configuration loaded: locale={config.locale}, "
               f"forwards={config.forwards}h, pays={config.pays}h, "
               f"invoices={config.invoices}h")

    provider = NodeSnapshotProvider(plugin)

    # Optional holdinvoice plugin
    try:
        config.hold_invoice_support = provider.has_plugin("holdinvoice")
    except (RpcError, FetchUnavailableError) as e:
        plugin.log(f"Could not list plugins: {e}", level='warn')
    if config.hold_invoice_support:
        plugin.log("holdinvoice plugin detected, including hold invoices")

    database = Database(config.db_path, plugin)
    database.initialize()

    availability = AvailabilityTracker(
        plugin,
        database,
        interval_seconds=config.availability_interval,
        window_hours=config.availability_window,
    )
    restored = availability.load()
    plugin.log(f"Restored availability of {restored} peers", level='debug')

    aliases = AliasCache(provider, plugin)
    builder = ReportBuilder(plugin, provider, aliases, availability)

    def availability_loop():
        """Background loop sampling peer connectivity."""
        while not shutdown_event.is_set():
            try:
                sample = connectivity_sample(provider.listpeerchannels())
                availability.record_sample(sample)
            except (RpcError, FetchUnavailableError) as e:
                plugin.log(f"Availability sampling skipped: {e}", level='warn')
            except Exception as e:
                plugin.log(f"Error in availability sampling: {e}", level='error')

            # Interruptible sleep: wait for timeout OR shutdown signal
            if shutdown_event.wait(config.availability_interval):
                plugin.log("Availability loop stopping due to shutdown signal")
                break

    def alias_refresh_loop():
        """Background loop refreshing node aliases from gossip."""
        while not shutdown_event.is_set():
            sleep_time = 60
            try:
                aliases.refresh()
                peer_ids = [c["peer_id"] for c in provider.listpeerchannels() if "peer_id" in c]
                miss_ratio = aliases.miss_ratio(peer_ids)
                sleep_time = aliases.next_refresh_seconds(miss_ratio, config.refresh_alias)
                plugin.log(f"Alias gossip misses {miss_ratio:.0%}, next refresh in {sleep_time}s",
                           level='debug')
            except (RpcError, FetchUnavailableError) as e:
                plugin.log(f"Alias refresh failed: {e}", level='warn')
            except Exception as e:
                plugin.log(f"Error in alias refresh: {e}", level='error')

            if shutdown_event.wait(sleep_time):
                plugin.log("Alias refresh loop stopping due to shutdown signal")
                break

    # =========================================================================
    # SIGNAL HANDLER: Clean Shutdown on `lightning-cli plugin stop`
    # =========================================================================
    def handle_shutdown_signal(signum, frame):
        """Stop the background loops and close the database."""
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()
        if database:
            try:
                database.close()
            except Exception as e:
                plugin.log(f"Error closing database: {e}", level='warn')

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    # Start background threads (daemon=True so they don't block shutdown)
    threading.Thread(target=availability_loop, daemon=True, name="availability").start()
    threading.Thread(target=alias_refresh_loop, daemon=True, name="alias-refresh").start()

    plugin.log("cl-summars plugin initialized successfully!")
    return None


# =============================================================================
# RPC METHODS
# =============================================================================

@plugin.method("summars")
def summars(plugin: Plugin, **kwargs) -> Dict[str, Any]:
    """
    Show a summary of the node's channels, forwards, pays and invoices.

    Any summars-* option except the startup-only ones can be passed to
    override it for this call, e.g. `lightning-cli summars -k summars-forwards=24`.
    """
    cfg = current_config().snapshot().with_overrides(kwargs)
    report = builder.build(cfg)
    return render(report)


@plugin.method("summars-refreshalias")
def summars_refreshalias(plugin: Plugin) -> Dict[str, Any]:
    """Reload all node aliases from gossip now."""
    count = aliases.refresh()
    plugin.log(f"Alias cache refreshed on request ({count} nodes)", level='info')
    return {"result": "success"}


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
