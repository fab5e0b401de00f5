from __future__ import annotations

from decimal import Decimal

import pytest

from emissor_nfe.services.tax_tables import (
    INTERNAL_RATES,
    STATES,
    internal_rate,
    interstate_rate,
)


class TestInterstateRate:
    def test_south_to_north_is_reduced(self):
        assert interstate_rate("SP", "BA") == Decimal("7")

    def test_south_to_es_is_reduced(self):
        assert interstate_rate("PR", "ES") == Decimal("7")

    def test_between_south_southeast_is_general(self):
        assert interstate_rate("SP", "MG") == Decimal("12")

    def test_from_north_is_general(self):
        assert interstate_rate("BA", "SP") == Decimal("12")

    def test_from_es_is_general(self):
        assert interstate_rate("ES", "BA") == Decimal("12")

    @pytest.mark.parametrize("origin", ["1", "2", "3", "8"])
    def test_imported_goods_get_four_percent(self, origin):
        assert interstate_rate("SP", "BA", origin) == Decimal("4")

    @pytest.mark.parametrize("origin", ["0", "4", "5", "6", "7", None])
    def test_domestic_origins_use_table(self, origin):
        assert interstate_rate("SP", "MG", origin) == Decimal("12")

    def test_case_and_whitespace_insensitive(self):
        assert interstate_rate(" sp", "ba ") == Decimal("7")

    @pytest.mark.parametrize("origin_uf,dest_uf", [("XX", "SP"), ("SP", "ZZ"), ("", "SP"), ("SP", "")])
    def test_unknown_state_returns_none(self, origin_uf, dest_uf):
        assert interstate_rate(origin_uf, dest_uf) is None

    def test_unknown_state_wins_over_import_override(self):
        assert interstate_rate("SP", "XX", "1") is None


class TestInternalRate:
    def test_known_states(self):
        assert internal_rate("SP") == Decimal("18")
        assert internal_rate("RJ") == Decimal("20")
        assert internal_rate("RO") == Decimal("17.5")

    def test_lowercase(self):
        assert internal_rate("mg") == Decimal("18")

    def test_unknown_state(self):
        assert internal_rate("XX") is None

    def test_table_covers_every_state(self):
        assert len(STATES) == 27

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            INTERNAL_RATES["SP"] = Decimal("0")  # type: ignore[index]
