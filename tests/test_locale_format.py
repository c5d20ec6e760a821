"""
Tests for locale aware formatting.
"""

import pytest

from summars.exceptions import ConfigError
from summars.locale_format import LocaleFormatter, msat_to_sat, parse_locale


class TestMsatToSat:

    @pytest.mark.parametrize("msat,sat", [
        (0, 0),
        (499, 0),
        (500, 1),
        (1_499, 1),
        (123_000, 123),
        (-500, -1),
        (-499, 0),
    ])
    def test_rounding(self, msat, sat):
        """Halves round away from zero."""
        assert msat_to_sat(msat) == sat


class TestParseLocale:

    def test_dash_and_underscore(self):
        assert str(parse_locale("en-US")) == "en_US"
        assert str(parse_locale("de")) == "de"

    @pytest.mark.parametrize("value", ["", "xx_NOPE", "not a locale"])
    def test_invalid(self, value):
        with pytest.raises(ConfigError, match="is not a valid locale!"):
            parse_locale(value)


class TestLocaleFormatter:

    def test_integer_separators(self):
        assert LocaleFormatter("en_US").integer(1234567) == "1,234,567"
        assert LocaleFormatter("de").integer(1234567) == "1.234.567"

    def test_btc_zero_keeps_decimals(self):
        """Zero BTC still shows eight decimals with the locale separator."""
        assert LocaleFormatter("en_US").btc(0) == "0.00000000"
        assert LocaleFormatter("de").btc(0) == "0,00000000"

    def test_btc_amount(self):
        assert LocaleFormatter("en_US").btc(150_000_000) == "0.00150000"
        assert LocaleFormatter("en_US").btc(250_000_000_000) == "2.50000000"

    def test_sats(self):
        assert LocaleFormatter("en_US").sats(1_234_500) == "1,235"

    def test_timestamp_missing(self):
        assert LocaleFormatter("en_US").timestamp(None) == "N/A"

    def test_timestamp_formats(self):
        text = LocaleFormatter("en_US").timestamp(1_700_000_000)

        assert text != "N/A"
        assert "2023" in text or "23" in text
