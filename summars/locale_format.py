"""
Locale formatting module for cl-summars

Renders amounts, percentages and timestamps according to the configured
locale using Babel.  Amounts are always carried as integer msat internally
and only converted to sats/BTC at display time.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from babel import Locale, UnknownLocaleError, default_locale
from babel.dates import format_date, format_time, get_timezone
from babel.numbers import format_decimal

from .exceptions import ConfigError

FALLBACK_LOCALE = "en_US"

MSAT_PER_SAT = 1000
MSAT_PER_BTC = 100_000_000_000

_INTEGER_PATTERN = "#,##0"
_BTC_PATTERN = "#,##0.00000000"
_ONE_DECIMAL_PATTERN = "#,##0.0"


def system_locale() -> str:
    """Locale of the environment the node runs in, or en_US."""
    name = default_locale("LC_NUMERIC") or default_locale()
    if not name:
        return FALLBACK_LOCALE
    try:
        Locale.parse(name)
    except (UnknownLocaleError, ValueError):
        return FALLBACK_LOCALE
    return name


def parse_locale(value: str) -> Locale:
    """
    Parse a locale identifier such as "en-US", "en_US" or "de".

    Raises:
        ConfigError: if Babel does not know the locale
    """
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"`{value}` is not a valid locale!")
    try:
        return Locale.parse(value.strip().replace("-", "_"))
    except (UnknownLocaleError, ValueError, TypeError):
        raise ConfigError(f"`{value}` is not a valid locale!")


def msat_to_sat(msat: int) -> int:
    """Round msat to the nearest sat, halves away from zero."""
    if msat < 0:
        return -msat_to_sat(-msat)
    return (msat + MSAT_PER_SAT // 2) // MSAT_PER_SAT


class LocaleFormatter:
    """
    Number and date formatting for one locale.

    Attributes:
        locale: The parsed Babel locale
    """

    def __init__(self, locale_name: str = FALLBACK_LOCALE):
        self.locale = parse_locale(locale_name)

    def integer(self, value: int) -> str:
        """Integer with the locale's thousands separator."""
        return format_decimal(value, format=_INTEGER_PATTERN, locale=self.locale)

    def sats(self, msat: int) -> str:
        return self.integer(msat_to_sat(msat))

    def btc(self, msat: int) -> str:
        """BTC amount with eight decimals, e.g. "0,00000000" for de."""
        value = Decimal(msat) / Decimal(MSAT_PER_BTC)
        return format_decimal(value, format=_BTC_PATTERN, locale=self.locale)

    def one_decimal(self, value: float) -> str:
        return format_decimal(value, format=_ONE_DECIMAL_PATTERN, locale=self.locale)

    def timestamp(self, ts: Optional[float]) -> str:
        """Local date and time of a unix timestamp, in the locale's short form."""
        if ts is None:
            return "N/A"
        dt = datetime.fromtimestamp(float(ts), tz=timezone.utc).astimezone(get_timezone())
        date_part = format_date(dt, format="short", locale=self.locale)
        time_part = format_time(dt, format="medium", locale=self.locale)
        return f"{date_part} {time_part}"
