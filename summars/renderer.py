"""
Renderer module for cl-summars

Turns a Report into the RPC result, either:
- text: info lines plus rich tables, wrapped as
  {"format-hint": "simple", "result": text}
- structured: raw values (msat integers, unix timestamps) for every
  non-display-only column of every row

Both modes read the same Report rows.
"""

import io
from typing import Any, Dict, List, Optional, Tuple

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from .columns import CATALOGS, Column, FormatContext, ReportKind, ValueKind, format_cell
from .locale_format import LocaleFormatter
from .report_builder import LedgerSection, Report

# Style option -> table box, None means no borders at all
STYLE_BOXES: Dict[str, Optional[box.Box]] = {
    'psql': box.MINIMAL,
    'blank': None,
    'ascii': box.ASCII,
    'ascii_rounded': box.ASCII2,
    'modern': box.SQUARE,
    'sharp': box.SQUARE,
    'rounded': box.ROUNDED,
    'extended': box.DOUBLE_EDGE,
    'markdown': box.MARKDOWN,
    'simple': box.SIMPLE,
    'heavy': box.HEAVY,
    'double': box.DOUBLE,
}

ASCII_STYLES = frozenset({'blank', 'ascii', 'ascii_rounded', 'markdown'})

GRAPH_WIDTH = 12
# (bar, middle) characters of the balance graph
GRAPH_CHARS_UTF8 = ("─", "┼")
GRAPH_CHARS_ASCII = ("-", "|")

CONSOLE_WIDTH = 1000

SECTION_TOTAL_NAMES: Dict[ReportKind, Tuple[str, str, str]] = {
    ReportKind.FORWARDS: ("forwards_amount_in_msat", "forwards_amount_out_msat",
                          "forwards_fees_msat"),
    ReportKind.PAYS: ("pays_amount_msat", "pays_amount_sent_msat", "pays_fees_msat"),
    ReportKind.INVOICES: ("invoices_amount_received_msat", "", ""),
}


def table_box(style: str, utf8: bool) -> Optional[box.Box]:
    if not utf8 and style not in ASCII_STYLES:
        return box.ASCII
    return STYLE_BOXES.get(style, box.MINIMAL)


def draw_graph(out_sats: int, in_sats: int, scale: int, utf8: bool = True,
               width: int = GRAPH_WIDTH) -> str:
    """
    Balance bar: our side grows left of the middle mark, theirs to the right.

    scale is the largest single side among the displayed channels.
    """
    bar, middle = GRAPH_CHARS_UTF8 if utf8 else GRAPH_CHARS_ASCII
    if scale <= 0:
        left = right = 0
    else:
        left = min(int(out_sats / scale * width + 0.5), width)
        right = min(int(in_sats / scale * width + 0.5), width)
    return " " * (width - left) + bar * left + middle + bar * right + " " * (width - right)


def _console_text(renderable) -> str:
    console = Console(file=io.StringIO(), width=CONSOLE_WIDTH, color_system=None,
                      force_terminal=False, highlight=False, emoji=False,
                      legacy_windows=False)
    console.print(renderable)
    lines = console.file.getvalue().splitlines()
    return "\n".join(line.rstrip() for line in lines)


class Renderer:
    """Formats one Report according to its config."""

    def __init__(self, report: Report):
        self.report = report
        self.cfg = report.config
        self.formatter = LocaleFormatter(self.cfg.locale)
        self.ctx = FormatContext(
            formatter=self.formatter,
            max_alias_length=self.cfg.max_alias_length,
            max_description_length=self.cfg.max_description_length,
            max_label_length=self.cfg.max_label_length,
            utf8=self.cfg.utf8,
        )

    def render(self) -> Dict[str, Any]:
        if self.cfg.json:
            return self.structured()
        return {"format-hint": "simple", "result": self.text()}

    # Structured output

    def structured(self) -> Dict[str, Any]:
        report = self.report
        result: Dict[str, Any] = {
            "info": dict(report.info),
            "channels": [self._raw_row(row, ReportKind.CHANNELS)
                         for row in report.channels],
        }
        if report.excluded_channels:
            result["filtered_channels"] = report.excluded_channels

        totals: Dict[str, int] = {}
        filtered: Dict[str, Dict[str, int]] = {}
        for kind, section in report.sections.items():
            result[kind.value] = [self._raw_row(row, kind)
                                  for row in section.rows]
            names = SECTION_TOTAL_NAMES[kind]
            values = (section.totals.amount_msat, section.totals.amount_out_msat,
                      section.totals.fee_msat)
            for name, value in zip(names, values):
                if name:
                    totals[name] = value
            totals[f"{kind.value}_count"] = section.totals.count
            if section.filtered_count:
                filtered[kind.value] = {
                    "count": section.filtered_count,
                    "amount_msat": section.filtered_amount_msat,
                    "fee_msat": section.filtered_fee_msat,
                }
        result["totals"] = totals
        if filtered:
            result["filtered"] = filtered
        if report.unavailable:
            result["unavailable"] = dict(report.unavailable)
        return result

    @staticmethod
    def _raw_row(row: Dict[str, Any], kind: ReportKind) -> Dict[str, Any]:
        # Every non-display column, not just the selected ones
        return {c.key: c.value(row) for c in CATALOGS[kind] if not c.display_only}

    # Text output

    def text(self) -> str:
        parts = [self._info_text(), "channels_flags=P:private O:offline"]
        parts.append(self._channel_table_text())
        if self.report.excluded_channels:
            parts.append(f" {self.report.excluded_channels} channel(s) filtered.")
        for kind, section in self.report.sections.items():
            parts.append(self._section_text(section))
        for name, reason in self.report.unavailable.items():
            parts.append(f"{name} unavailable: {reason}")
        return "\n".join(p for p in parts if p)

    def _info_text(self) -> str:
        info = self.report.info
        btc = self.formatter.btc
        lines = [
            f"address={info['address']}",
            f"num_utxos={self.formatter.integer(info['num_utxos'])}",
            f"utxo_amount={btc(info['utxo_amount_msat'])} BTC",
            f"num_channels={self.formatter.integer(info['num_channels'])}",
            f"num_connected={self.formatter.integer(info['num_connected'])}",
            f"num_gossipers={self.formatter.integer(info['num_gossipers'])}",
            f"avail_out={btc(info['avail_out_msat'])} BTC",
            f"avail_in={btc(info['avail_in_msat'])} BTC",
            f"fees_collected={btc(info['fees_collected_msat'])} BTC",
        ]
        return "\n".join(lines)

    def _new_table(self, style: str) -> Table:
        table_style = table_box(style, self.cfg.utf8)
        return Table(
            box=table_style,
            show_edge=table_style is not None and style != 'psql',
            pad_edge=False,
            expand=False,
        )

    def _add_columns(self, table: Table, columns: List[Column]) -> None:
        for column in columns:
            cap = self.ctx.cap_for(column)
            if cap is not None and cap < 0:
                table.add_column(escape(column.name), justify=column.justify,
                                 max_width=-cap, overflow="fold")
            else:
                table.add_column(escape(column.name), justify=column.justify, no_wrap=True)

    def _channel_table_text(self) -> str:
        report = self.report
        table = self._new_table(self.cfg.style)
        self._add_columns(table, report.channel_columns)

        scale = max([max(r.get("out_sats", 0), r.get("in_sats", 0)) for r in report.channels]
                    or [0])
        for row in report.channels:
            cells = []
            for column in report.channel_columns:
                if column.kind is ValueKind.GRAPH:
                    out_sats, in_sats = column.value(row)
                    cells.append(Text(draw_graph(out_sats, in_sats, scale, self.cfg.utf8)))
                else:
                    cells.append(Text(format_cell(column, row, self.ctx)))
            table.add_row(*cells)
        return _console_text(table)

    def _section_text(self, section: LedgerSection) -> str:
        # Title and footer stay outside the table so rich does not wrap them
        # to the table width
        limit = str(section.limit) if section.limit > 0 else "off"
        title = f"{section.kind.value} (last {section.hours}h, limit: {limit})"
        table = self._new_table(self.cfg.flow_style)
        self._add_columns(table, section.columns)
        for row in section.rows:
            table.add_row(*[Text(format_cell(c, row, self.ctx)) for c in section.columns])
        return "\n".join([title, _console_text(table), self._section_footer(section)])

    def _section_footer(self, section: LedgerSection) -> str:
        fmt = self.formatter
        totals = section.totals
        lines = []
        if section.kind is ReportKind.FORWARDS:
            if section.filtered_count:
                lines.append(
                    f"Filtered {fmt.integer(section.filtered_count)} forward(s) with "
                    f"{fmt.sats(section.filtered_amount_msat)} sats routed and "
                    f"{fmt.integer(section.filtered_fee_msat)} msat fees.")
            lines.append(
                f"Total forwards stats in the last {section.hours}h: "
                f"{fmt.integer(totals.count)} forward(s), "
                f"{fmt.sats(totals.amount_msat)} sats in, "
                f"{fmt.sats(totals.amount_out_msat)} sats out, "
                f"{fmt.integer(totals.fee_msat)} msat fees")
        elif section.kind is ReportKind.PAYS:
            lines.append(
                f"Total pays stats in the last {section.hours}h: "
                f"{fmt.integer(totals.count)} pay(s), "
                f"{fmt.sats(totals.amount_out_msat)} sats sent, "
                f"{fmt.sats(totals.fee_msat)} sats fees")
        else:
            if section.filtered_count:
                lines.append(
                    f"Filtered {fmt.integer(section.filtered_count)} invoice(s) with "
                    f"{fmt.sats(section.filtered_amount_msat)} sats total.")
            lines.append(
                f"Total invoices stats in the last {section.hours}h: "
                f"{fmt.integer(totals.count)} invoice(s), "
                f"{fmt.sats(totals.amount_msat)} sats received")
        return "\n".join(lines)


def render(report: Report) -> Dict[str, Any]:
    """RPC result for a report, text or structured depending on its config."""
    return Renderer(report).render()
