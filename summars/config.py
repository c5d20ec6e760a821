"""
Configuration module for cl-summars

Contains the Config dataclass holding every `summars-*` plugin option and
the immutable ReportConfig snapshot a report pass runs with.

- Options arrive as strings from lightningd (startup or setconfig) or as
  JSON values from a `summars` call; both go through the same validators.
- Per-call arguments override a snapshot for that call only.
- Availability sampling, alias refresh and the database path are read at
  startup and cannot be overridden per call.
"""

import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from .channel_state import StateExclusion
from .columns import (
    DEFAULT_COLUMNS, DEFAULT_SORT, MIN_TEXT_LENGTH, ReportKind, SortKey,
    parse_column_list, parse_sort_key,
)
from .exceptions import ConfigError
from .locale_format import parse_locale, system_locale

# Plugin option name -> Config field
OPTION_FIELDS: Dict[str, str] = {
    'summars-columns': 'columns',
    'summars-sort-by': 'sort_by',
    'summars-exclude-states': 'exclude_states',
    'summars-forwards': 'forwards',
    'summars-forwards-limit': 'forwards_limit',
    'summars-forwards-columns': 'forwards_columns',
    'summars-forwards-sort-by': 'forwards_sort_by',
    'summars-forwards-filter-amount-msat': 'forwards_filter_amount_msat',
    'summars-forwards-filter-fee-msat': 'forwards_filter_fee_msat',
    'summars-forwards-alias': 'forwards_alias',
    'summars-pays': 'pays',
    'summars-pays-limit': 'pays_limit',
    'summars-pays-columns': 'pays_columns',
    'summars-pays-sort-by': 'pays_sort_by',
    'summars-max-description-length': 'max_description_length',
    'summars-invoices': 'invoices',
    'summars-invoices-limit': 'invoices_limit',
    'summars-invoices-columns': 'invoices_columns',
    'summars-invoices-sort-by': 'invoices_sort_by',
    'summars-max-label-length': 'max_label_length',
    'summars-invoices-filter-amount-msat': 'invoices_filter_amount_msat',
    'summars-locale': 'locale',
    'summars-refresh-alias': 'refresh_alias',
    'summars-max-alias-length': 'max_alias_length',
    'summars-availability-interval': 'availability_interval',
    'summars-availability-window': 'availability_window',
    'summars-utf8': 'utf8',
    'summars-style': 'style',
    'summars-flow-style': 'flow_style',
    'summars-json': 'json',
    'summars-db-path': 'db_path',
}

FIELD_OPTIONS: Dict[str, str] = {field_name: option for option, field_name in OPTION_FIELDS.items()}

# Keys that cannot be set per call
STARTUP_ONLY_FIELDS: FrozenSet[str] = frozenset({
    'refresh_alias',
    'availability_interval',
    'availability_window',
    'db_path',
})

# Type mapping for plain config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'forwards': int,
    'forwards_limit': int,
    'forwards_filter_amount_msat': int,
    'forwards_filter_fee_msat': int,
    'forwards_alias': bool,
    'pays': int,
    'pays_limit': int,
    'max_description_length': int,
    'invoices': int,
    'invoices_limit': int,
    'max_label_length': int,
    'invoices_filter_amount_msat': int,
    'refresh_alias': int,
    'max_alias_length': int,
    'availability_interval': int,
    'availability_window': int,
    'utf8': bool,
    'json': bool,
    'db_path': str,
}

# Range constraints for numeric fields, None means unbounded
CONFIG_FIELD_RANGES: Dict[str, Tuple[Optional[int], Optional[int]]] = {
    'forwards': (0, None),
    'forwards_limit': (0, None),
    'pays': (0, None),
    'pays_limit': (0, None),
    'invoices': (0, None),
    'invoices_limit': (0, None),
    'refresh_alias': (1, None),
    'availability_interval': (1, None),
    'availability_window': (1, None),
}

LOOKBACK_FIELDS: FrozenSet[str] = frozenset({'forwards', 'pays', 'invoices'})

# Values may be negative to wrap instead of truncate
TEXT_LENGTH_FIELDS: FrozenSet[str] = frozenset({
    'max_alias_length', 'max_description_length', 'max_label_length',
})

STYLE_NAMES: Tuple[str, ...] = (
    'psql', 'blank', 'ascii', 'ascii_rounded', 'modern', 'sharp',
    'rounded', 'extended', 'markdown', 'simple', 'heavy', 'double',
)

# Empty string means "use the default" for these
EMPTY_MEANS_DEFAULT: FrozenSet[str] = frozenset({'locale', 'db_path'})

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


def _parse_int(option: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{option} is not a valid integer!")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{option} is not a valid integer!")


def _parse_bool(option: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"{option} is not a valid boolean!")


def _parse_str(option: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{option} is not a valid string!")
    return value


def _check_range(option: str, field_name: str, value: int) -> int:
    if field_name in TEXT_LENGTH_FIELDS:
        if abs(value) < MIN_TEXT_LENGTH:
            raise ConfigError(
                f"{option} must be greater than or equal to {MIN_TEXT_LENGTH} "
                f"or less than or equal to -{MIN_TEXT_LENGTH}")
        return value

    low, high = CONFIG_FIELD_RANGES.get(field_name, (None, None))
    if low is not None and value < low:
        if low == 0:
            raise ConfigError(f"{option} needs to be a positive number")
        raise ConfigError(f"{option} must be greater than or equal to {low}")
    if high is not None and value > high:
        raise ConfigError(f"{option} must be less than or equal to {high}")

    if field_name in LOOKBACK_FIELDS and value * 3600 > time.time():
        raise ConfigError(f"{option} reaches back before 1970, use fewer hours")
    return value


def _parse_style(option: str, value: Any) -> str:
    style = _parse_str(option, value).strip().lower()
    if style not in STYLE_NAMES:
        raise ConfigError(f"{option}: could not parse Style from `{value}`")
    return style


def _parse_locale(option: str, value: Any) -> str:
    locale = parse_locale(_parse_str(option, value))
    return str(locale)


def _columns_parser(kind: ReportKind) -> Callable[[str, Any], Tuple[str, ...]]:
    def parse(option: str, value: Any) -> Tuple[str, ...]:
        return parse_column_list(kind, _parse_str(option, value))
    return parse


def _sort_parser(kind: ReportKind) -> Callable[[str, Any], SortKey]:
    def parse(option: str, value: Any) -> SortKey:
        return parse_sort_key(kind, _parse_str(option, value))
    return parse


def _parse_exclusion(option: str, value: Any) -> StateExclusion:
    return StateExclusion.parse(_parse_str(option, value))


_SPECIAL_PARSERS: Dict[str, Callable[[str, Any], Any]] = {
    'columns': _columns_parser(ReportKind.CHANNELS),
    'forwards_columns': _columns_parser(ReportKind.FORWARDS),
    'pays_columns': _columns_parser(ReportKind.PAYS),
    'invoices_columns': _columns_parser(ReportKind.INVOICES),
    'sort_by': _sort_parser(ReportKind.CHANNELS),
    'forwards_sort_by': _sort_parser(ReportKind.FORWARDS),
    'pays_sort_by': _sort_parser(ReportKind.PAYS),
    'invoices_sort_by': _sort_parser(ReportKind.INVOICES),
    'exclude_states': _parse_exclusion,
    'locale': _parse_locale,
    'style': _parse_style,
    'flow_style': _parse_style,
}


def parse_field(field_name: str, value: Any) -> Any:
    """
    Validate and convert one option value.

    Raises:
        ConfigError: naming the option and what is wrong with the value
    """
    option = FIELD_OPTIONS.get(field_name, field_name)
    special = _SPECIAL_PARSERS.get(field_name)
    if special is not None:
        return special(option, value)

    field_type = CONFIG_FIELD_TYPES.get(field_name, str)
    if field_type == bool:
        return _parse_bool(option, value)
    if field_type == int:
        return _check_range(option, field_name, _parse_int(option, value))
    return _parse_str(option, value)


@dataclass
class Config:
    """
    Configuration container for the summars plugin.

    All values can be set via plugin options at startup and most of them
    changed later with setconfig.
    """

    # Channel table
    columns: Tuple[str, ...] = DEFAULT_COLUMNS[ReportKind.CHANNELS]
    sort_by: SortKey = SortKey(DEFAULT_SORT[ReportKind.CHANNELS], False)
    exclude_states: StateExclusion = StateExclusion()

    # Forwards (lookback in hours, 0 = disabled)
    forwards: int = 0
    forwards_limit: int = 0
    forwards_columns: Tuple[str, ...] = DEFAULT_COLUMNS[ReportKind.FORWARDS]
    forwards_sort_by: SortKey = SortKey(DEFAULT_SORT[ReportKind.FORWARDS], False)
    forwards_filter_amount_msat: int = 0
    forwards_filter_fee_msat: int = 0
    forwards_alias: bool = True

    # Pays
    pays: int = 0
    pays_limit: int = 0
    pays_columns: Tuple[str, ...] = DEFAULT_COLUMNS[ReportKind.PAYS]
    pays_sort_by: SortKey = SortKey(DEFAULT_SORT[ReportKind.PAYS], False)
    max_description_length: int = 30

    # Invoices
    invoices: int = 0
    invoices_limit: int = 0
    invoices_columns: Tuple[str, ...] = DEFAULT_COLUMNS[ReportKind.INVOICES]
    invoices_sort_by: SortKey = SortKey(DEFAULT_SORT[ReportKind.INVOICES], False)
    max_label_length: int = 30
    invoices_filter_amount_msat: int = 0

    # Display
    locale: str = 'en_US'
    max_alias_length: int = 20
    utf8: bool = True
    style: str = 'psql'
    flow_style: str = 'blank'
    json: bool = False

    # Background tasks (startup only)
    refresh_alias: int = 24            # hours
    availability_interval: int = 300   # seconds
    availability_window: int = 72      # hours
    db_path: str = '~/.lightning/summars/summars.db'

    # Runtime dependency flags (set during init based on plugin list)
    hold_invoice_support: bool = False

    @classmethod
    def from_options(cls, options: Dict[str, Any], **runtime: Any) -> 'Config':
        """
        Build a Config from lightningd's option dict.

        Options that are unset (None) keep their defaults; options of other
        plugins are ignored.
        """
        config = cls(locale=system_locale(), **runtime)
        config.load_options(options)
        return config

    def load_options(self, options: Dict[str, Any]) -> None:
        """Validate and apply summars-* options, e.g. after setconfig."""
        for option, value in options.items():
            field_name = OPTION_FIELDS.get(option)
            if field_name is None or value is None:
                continue
            if field_name in EMPTY_MEANS_DEFAULT and value == '':
                continue
            setattr(self, field_name, parse_field(field_name, value))

    def snapshot(self) -> 'ReportConfig':
        """
        Create an immutable snapshot for one report pass.

        The pass uses only the snapshot, so a setconfig landing mid-pass
        cannot produce a report mixing old and new settings.
        """
        return ReportConfig.from_config(self)


@dataclass(frozen=True)
class ReportConfig:
    """
    Immutable configuration for one report pass.

    Usage:
        cfg = config.snapshot().with_overrides(call_args)
        report = builder.build(cfg)
    """
    columns: Tuple[str, ...]
    sort_by: SortKey
    exclude_states: StateExclusion

    forwards: int
    forwards_limit: int
    forwards_columns: Tuple[str, ...]
    forwards_sort_by: SortKey
    forwards_filter_amount_msat: int
    forwards_filter_fee_msat: int
    forwards_alias: bool

    pays: int
    pays_limit: int
    pays_columns: Tuple[str, ...]
    pays_sort_by: SortKey
    max_description_length: int

    invoices: int
    invoices_limit: int
    invoices_columns: Tuple[str, ...]
    invoices_sort_by: SortKey
    max_label_length: int
    invoices_filter_amount_msat: int

    locale: str
    max_alias_length: int
    utf8: bool
    style: str
    flow_style: str
    json: bool

    hold_invoice_support: bool = False

    @classmethod
    def from_config(cls, config: Config) -> 'ReportConfig':
        """Create snapshot from mutable Config."""
        return cls(
            columns=config.columns,
            sort_by=config.sort_by,
            exclude_states=config.exclude_states,
            forwards=config.forwards,
            forwards_limit=config.forwards_limit,
            forwards_columns=config.forwards_columns,
            forwards_sort_by=config.forwards_sort_by,
            forwards_filter_amount_msat=config.forwards_filter_amount_msat,
            forwards_filter_fee_msat=config.forwards_filter_fee_msat,
            forwards_alias=config.forwards_alias,
            pays=config.pays,
            pays_limit=config.pays_limit,
            pays_columns=config.pays_columns,
            pays_sort_by=config.pays_sort_by,
            max_description_length=config.max_description_length,
            invoices=config.invoices,
            invoices_limit=config.invoices_limit,
            invoices_columns=config.invoices_columns,
            invoices_sort_by=config.invoices_sort_by,
            max_label_length=config.max_label_length,
            invoices_filter_amount_msat=config.invoices_filter_amount_msat,
            locale=config.locale,
            max_alias_length=config.max_alias_length,
            utf8=config.utf8,
            style=config.style,
            flow_style=config.flow_style,
            json=config.json,
            hold_invoice_support=config.hold_invoice_support,
        )

    def with_overrides(self, args: Dict[str, Any]) -> 'ReportConfig':
        """
        Apply per-call arguments, validated like the plugin options.

        Raises:
            ConfigError: unknown key, startup-only key or invalid value
        """
        changes: Dict[str, Any] = {}
        for key, value in args.items():
            field_name = OPTION_FIELDS.get(key)
            if field_name is None:
                raise ConfigError(f"Unknown option: `{key}`")
            if field_name in STARTUP_ONLY_FIELDS:
                raise ConfigError(f"Setting `{key}` per call does not make sense!")
            changes[field_name] = parse_field(field_name, value)
        if not changes:
            return self
        return replace(self, **changes)

    def lookback_hours(self, kind: ReportKind) -> int:
        return {
            ReportKind.FORWARDS: self.forwards,
            ReportKind.PAYS: self.pays,
            ReportKind.INVOICES: self.invoices,
        }.get(kind, 0)

    def limit(self, kind: ReportKind) -> int:
        return {
            ReportKind.FORWARDS: self.forwards_limit,
            ReportKind.PAYS: self.pays_limit,
            ReportKind.INVOICES: self.invoices_limit,
        }.get(kind, 0)

    def columns_for(self, kind: ReportKind) -> Tuple[str, ...]:
        return {
            ReportKind.CHANNELS: self.columns,
            ReportKind.FORWARDS: self.forwards_columns,
            ReportKind.PAYS: self.pays_columns,
            ReportKind.INVOICES: self.invoices_columns,
        }[kind]

    def sort_for(self, kind: ReportKind) -> SortKey:
        return {
            ReportKind.CHANNELS: self.sort_by,
            ReportKind.FORWARDS: self.forwards_sort_by,
            ReportKind.PAYS: self.pays_sort_by,
            ReportKind.INVOICES: self.invoices_sort_by,
        }[kind]
