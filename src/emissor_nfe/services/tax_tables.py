"""Official ICMS rate tables used for the interstate differential (DIFAL).

Interstate rates follow Senate Resolution 22/1989 (7% from the South/Southeast,
except ES, to the North, Northeast, Center-West and ES; 12% otherwise) and
Resolution 13/2012 (4% for imported goods). Internal rates are the standard
rate of each state and must be kept in sync with state legislation.
"""

from __future__ import annotations

from decimal import Decimal
from types import MappingProxyType

SOUTH_SOUTHEAST_EXCEPT_ES = frozenset({"MG", "SP", "RJ", "PR", "RS", "SC"})

NORTH_NORTHEAST_MIDWEST_ES = frozenset(
    {
        "AC", "AL", "AM", "AP", "BA", "CE", "DF", "ES", "GO", "MA", "MT",
        "MS", "PA", "PB", "PE", "PI", "RN", "RO", "RR", "SE", "TO",
    }
)  # fmt: skip

# icms_origem codes denoting imported goods
IMPORTED_ORIGINS = frozenset({"1", "2", "3", "8"})

IMPORTED_RATE = Decimal("4")
REDUCED_RATE = Decimal("7")
GENERAL_RATE = Decimal("12")

VALID_INTERSTATE_RATES = frozenset({IMPORTED_RATE, REDUCED_RATE, GENERAL_RATE})

INTERNAL_RATES: MappingProxyType[str, Decimal] = MappingProxyType(
    {
        uf: Decimal(rate)
        for uf, rate in {
            "AC": "18", "AL": "18", "AM": "18", "AP": "18", "BA": "19",
            "CE": "18", "DF": "18", "ES": "17", "GO": "17", "MA": "18",
            "MG": "18", "MS": "17", "MT": "17", "PA": "17", "PB": "18",
            "PE": "18", "PI": "18", "PR": "18", "RJ": "20", "RN": "18",
            "RO": "17.5", "RR": "17", "RS": "18", "SC": "17", "SE": "18",
            "SP": "18", "TO": "18",
        }.items()
    }
)  # fmt: skip

STATES = frozenset(INTERNAL_RATES)


def _uf(value: object) -> str:
    return str(value or "").strip().upper()


def interstate_rate(origin_uf: str, destination_uf: str, goods_origin: object = "0") -> Decimal | None:
    """Official interstate rate for a state pair, or None if either state is unknown.

    Imported goods (origin 1, 2, 3 or 8) always get 4%, whatever the states.
    """
    o, d = _uf(origin_uf), _uf(destination_uf)
    if o not in STATES or d not in STATES:
        return None
    if str(goods_origin if goods_origin is not None else "0").strip() in IMPORTED_ORIGINS:
        return IMPORTED_RATE
    if o in SOUTH_SOUTHEAST_EXCEPT_ES and d in NORTH_NORTHEAST_MIDWEST_ES:
        return REDUCED_RATE
    return GENERAL_RATE


def internal_rate(uf: str) -> Decimal | None:
    """Standard internal ICMS rate of *uf*, or None if the state is unknown."""
    return INTERNAL_RATES.get(_uf(uf))
