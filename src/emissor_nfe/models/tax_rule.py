from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from emissor_nfe.utils.formatters import first_present as _first
from emissor_nfe.utils.formatters import parse_flag, to_decimal

ANY_DESTINATION = "qualquer"

_CST_WITH_DESCRIPTION = re.compile(r"^(\d{2,3})\s*-")
_CST_ONLY = re.compile(r"^\d{2,3}$")


class TaxKind(str, Enum):
    ICMS = "icms"
    PIS = "pis"
    COFINS = "cofins"
    IPI = "ipi"
    WITHHOLDING = "retencoes"
    IS = "is"
    IBS = "ibs"
    CBS = "cbs"


def extract_cst(situacao: object) -> str | None:
    """Extract the code from ``"00 - Tributada integralmente"`` or a bare ``"102"``."""
    if situacao is None:
        return None
    text = str(situacao).strip()
    m = _CST_WITH_DESCRIPTION.match(text)
    if m:
        return m.group(1)
    if _CST_ONLY.match(text):
        return text
    return None


@dataclass(frozen=True)
class TaxRule:
    """Rate and code configuration of one tax kind, attached to an operation nature.

    ``destinations`` is the raw filter: state codes separated by commas/spaces,
    or the sentinel ``qualquer``/``any``.
    """

    kind: TaxKind
    destinations: str = ANY_DESTINATION
    cst: str | None = None
    rate: Decimal | None = None
    base_percent: Decimal | None = None
    id: int | None = None
    nature_id: int | None = None


@dataclass(frozen=True)
class IcmsRule(TaxRule):
    cfop: str | None = None
    presumptive_rate: Decimal | None = None
    internal_rate: Decimal | None = None
    interstate_rate: Decimal | None = None


@dataclass(frozen=True)
class IpiRule(TaxRule):
    framework_code: str | None = None


@dataclass(frozen=True)
class WithholdingRule(TaxRule):
    withholds_csrf: bool = False
    csrf_rate: Decimal | None = None
    withholds_ir: bool = False
    ir_rate: Decimal | None = None


@dataclass(frozen=True)
class ReformRule(TaxRule):
    """IS, IBS or CBS rule (tax reform)."""

    classification: str | None = None


def rule_from_dict(kind: TaxKind | str, d: dict) -> TaxRule:
    """Build the rule variant for *kind* from a raw row, accepting historical column names."""
    kind = TaxKind(kind)
    destinations = d.get("destinos", d.get("Destinos", d.get("destinations")))
    common = {
        "kind": kind,
        "destinations": ANY_DESTINATION if destinations is None else str(destinations),
        "cst": extract_cst(_first(d, "situacaoTributaria", "situacao_tributaria", "cst")),
        "base_percent": to_decimal(_first(d, "base", "base_calculo_percentual")),
        "id": d.get("id"),
        "nature_id": _first(d, "naturezaRef", "natureza_id"),
    }
    if kind is TaxKind.ICMS:
        cfop = _first(d, "cfop", "CFOP")
        return IcmsRule(
            **common,
            rate=to_decimal(_first(d, "aliquota_icms", "aliquota")),
            cfop=None if cfop is None else str(cfop).strip(),
            presumptive_rate=to_decimal(d.get("presumido")),
            internal_rate=to_decimal(
                _first(
                    d,
                    "aliquota_internaUF",
                    "aliquota_internauf",
                    "aliquota_interna_uf_destino",
                    "aliquota_interna_uf",
                )
            ),
            interstate_rate=to_decimal(
                _first(d, "aliquota_interestadual", "icms_aliquota_interestadual")
            ),
        )
    if kind is TaxKind.IPI:
        code = _first(d, "codEnquadramento", "cod_enquadramento")
        return IpiRule(
            **common,
            rate=to_decimal(_first(d, "aliq", "aliquota")),
            framework_code=None if code is None else str(code),
        )
    if kind is TaxKind.WITHHOLDING:
        return WithholdingRule(
            **common,
            withholds_csrf=bool(parse_flag(d.get("possui_retencao_csrf"))),
            csrf_rate=to_decimal(d.get("aliquota_csrf")),
            withholds_ir=bool(parse_flag(d.get("possui_retencao_ir"))),
            ir_rate=to_decimal(d.get("aliquota_ir")),
        )
    if kind in (TaxKind.IS, TaxKind.IBS, TaxKind.CBS):
        classification = _first(d, "classificacaoTributaria", "classificacao_tributaria")
        return ReformRule(
            **common,
            rate=to_decimal(d.get("aliquota")),
            classification=None if classification is None else str(classification),
        )
    return TaxRule(**common, rate=to_decimal(d.get("aliquota")))
