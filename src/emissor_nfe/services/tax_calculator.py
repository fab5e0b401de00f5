"""Pure tax computations for one NF-e: CFOP, CST/CSOSN, ICMS, DIFAL, PIS/COFINS, freight.

Every function here is deterministic and side-effect free. Monetary results are
Decimals rounded half-up to cents; the payload builder formats them.
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import ROUND_DOWN, Decimal
from enum import IntEnum

from emissor_nfe.models.company import REGIME_NORMAL, REGIME_SIMPLIFIED
from emissor_nfe.models.counterparty import (
    IE_CONTRIBUTOR,
    IE_EXEMPT,
    IE_NON_CONTRIBUTOR,
    Counterparty,
)
from emissor_nfe.models.operation_nature import OperationNature
from emissor_nfe.models.tax_rule import TaxRule
from emissor_nfe.services import tax_tables
from emissor_nfe.services.exceptions import InvalidCfopError, MissingRateError, ValidationError
from emissor_nfe.utils.formatters import (
    CENT,
    fmt_percent,
    format_brl,
    money,
    only_digits,
    to_decimal,
)

ZERO = Decimal(0)
HUNDRED = Decimal(100)

# CSTs whose ICMS has a taxed base (modBC required)
TAXED_CSTS = frozenset({"00", "10", "20", "51", "70", "90"})
# CSOSNs (Simples Nacional) that still owe DIFAL on sales to end consumers
DIFAL_CSOSNS = frozenset({"101", "102", "103", "201", "202", "203", "900"})
FULLY_TAXED_CST = "00"
# modBC 3 = value of the operation
BASE_MODALITY_OPERATION_VALUE = "3"

CST_TO_CSOSN = {
    "00": "102",
    "10": "102",
    "20": "102",
    "51": "102",
    "70": "102",
    "90": "102",
    "40": "400",
    "41": "400",
    "50": "500",
    "60": "400",
}
DEFAULT_CSOSN = "102"

DIFAL_DESTINATION_SHARE = Decimal("100")  # post-2019 partilha: all to the destination state

APPROX_TAX_PERCENT = Decimal("15.25")
APPROX_FEDERAL_PERCENT = Decimal("13.45")
APPROX_STATE_PERCENT = Decimal("1.80")
APPROX_TAX_MARKER = "Total aproximado de tributos"


class Destination(IntEnum):
    """``local_destino`` (idDest) of the NF-e."""

    SAME_STATE = 1
    DIFFERENT_STATE = 2
    FOREIGN = 3


def classify_destination(emitter_uf: str, destination_uf: str, foreign: bool = False) -> Destination:
    if foreign:
        return Destination.FOREIGN
    o = (emitter_uf or "").strip().upper()
    d = (destination_uf or "").strip().upper()
    if o and d and o != d:
        return Destination.DIFFERENT_STATE
    return Destination.SAME_STATE


def normalize_cfop(raw: object, interstate: bool) -> str:
    """Four-digit CFOP whose leading digit matches the destination (5 internal, 6 interstate).

    Non-digits are stripped, short codes are zero-padded and the direction digit
    is replaced when it disagrees. An empty code raises InvalidCfopError.
    """
    digits = only_digits(raw)
    prefix = "6" if interstate else "5"
    if len(digits) >= 4:
        return prefix + digits[1:4]
    if digits:
        return prefix + digits.zfill(3)[-3:]
    raise InvalidCfopError(raw)


def csosn_for_simplified(cst: str) -> str:
    """Map a two-digit CST to its Simples Nacional CSOSN; three-digit codes pass through."""
    code = (cst or "").strip()
    if len(code) == 3 and code.isdigit():
        return code
    return CST_TO_CSOSN.get(code, DEFAULT_CSOSN)


def substitute_cst(cst: str, regime: str) -> str:
    code = (cst or "").strip()
    if regime == REGIME_SIMPLIFIED and len(code) == 2 and code.isdigit():
        return csosn_for_simplified(code)
    return code


def default_icms_cst(regime: str) -> str:
    return "00" if regime == REGIME_NORMAL else "400"


def difal_eligible(cst: str) -> bool:
    return cst in TAXED_CSTS or cst in DIFAL_CSOSNS


# --- Counterparty classification ---


def ie_indicator(counterparty: Counterparty) -> int:
    """``indicador_inscricao_estadual_destinatario``: 1 contributor, 2 exempt, 9 non-contributor."""
    ie = counterparty.inscricao_estadual.strip().upper()
    if counterparty.cpf:
        return IE_NON_CONTRIBUTOR
    if counterparty.ind_ie_dest is not None:
        return counterparty.ind_ie_dest
    if counterparty.contribuinte_icms is True and ie and ie != "ISENTO":
        return IE_CONTRIBUTOR
    if ie == "ISENTO":
        return IE_EXEMPT
    if counterparty.cnpj and ie.isdigit() and 2 <= len(ie) <= 14:
        return IE_CONTRIBUTOR
    return IE_NON_CONTRIBUTOR


def is_end_consumer(counterparty: Counterparty, nature: OperationNature, indicator: int) -> bool:
    """Explicit flag (counterparty, then nature) wins; otherwise contributors are not end consumers."""
    for flag in (counterparty.consumidor_final, nature.consumidor_final):
        if flag is True:
            return True
    for flag in (counterparty.consumidor_final, nature.consumidor_final):
        if flag is False:
            return False
    return indicator != IE_CONTRIBUTOR


def normalize_presence(value: str | None) -> str:
    """Buyer presence indicator 1–9; text is mapped, default 2 (internet)."""
    if value is None or not str(value).strip():
        return "2"
    text = str(value).strip()
    if len(text) == 1 and text in "123456789":
        return text
    lower = text.lower()
    if "internet" in lower:
        return "2"
    if "presencial" in lower:
        return "1"
    return "9"


# --- ICMS ---


def effective_icms_rate(
    regime: str, presumptive_rate: Decimal | None, rule_rate: Decimal | None
) -> Decimal:
    """Presumptive rate (regime 3, when configured and positive) overrides the rule rate."""
    if presumptive_rate is not None and presumptive_rate < 0:
        raise ValidationError(
            "Regra ICMS com regime presumido inválido. O campo presumido não pode ser negativo."
        )
    if regime == REGIME_NORMAL and presumptive_rate is not None and presumptive_rate > 0:
        return presumptive_rate
    return rule_rate or ZERO


def compute_icms_own(base: Decimal, cst: str, rate: Decimal) -> dict[str, object]:
    """Own ICMS fields. Only CST 00 carries base/rate/value; every taxed CST gets modBC."""
    fields: dict[str, object] = {}
    if cst in TAXED_CSTS:
        fields["icms_modalidade_base_calculo"] = BASE_MODALITY_OPERATION_VALUE
    if cst == FULLY_TAXED_CST:
        fields["icms_base_calculo"] = money(base)
        fields["icms_aliquota"] = rate
        fields["icms_valor"] = money(base * rate / HUNDRED)
    return fields


# Receives (base, value) and returns the (base, value) actually reported.
SpecialRegimePolicy = Callable[[Decimal, Decimal], tuple[Decimal, Decimal]]


def zero_base_and_value(base: Decimal, value: Decimal) -> tuple[Decimal, Decimal]:
    """Special-regime companies report DIFAL rates with zeroed base and value."""
    return ZERO, ZERO


def compute_difal(
    base: Decimal,
    cst: str,
    emitter_uf: str,
    destination_uf: str,
    goods_origin: object = "0",
    special_regime: bool = False,
    special_regime_policy: SpecialRegimePolicy = zero_base_and_value,
) -> dict[str, object] | None:
    """ICMSUFDest group for one item, or None when the CST does not owe DIFAL.

    The interstate rate always comes from the official table, never from the
    presumptive rate. Missing table data raises MissingRateError.
    """
    if not difal_eligible(cst):
        return None
    inter = tax_tables.interstate_rate(emitter_uf, destination_uf, goods_origin)
    if inter is None:
        raise MissingRateError(
            f"Alíquota interestadual não encontrada para UF origem {emitter_uf} / "
            f"destino {destination_uf}. Verifique se as UFs estão cadastradas corretamente."
        )
    internal = tax_tables.internal_rate(destination_uf)
    if internal is None or internal <= 0:
        raise MissingRateError(
            f"Alíquota interna UF destino não configurada para {destination_uf}."
        )
    base = money(base)
    value = money(base * max(ZERO, internal - inter) / HUNDRED)
    if special_regime:
        base, value = special_regime_policy(base, value)
    return {
        "icms_base_calculo_uf_destino": base,
        "icms_aliquota_interna_uf_destino": internal,
        "icms_aliquota_interestadual": inter,
        "icms_percentual_partilha": DIFAL_DESTINATION_SHARE,
        "fcp_percentual_uf_destino": ZERO,
        "fcp_valor_uf_destino": ZERO,
        "fcp_base_calculo_uf_destino": ZERO,
        "icms_valor_uf_remetente": ZERO,
        "icms_valor_uf_destino": value,
    }


def has_valid_difal(item: dict) -> bool:
    """An edited item keeps its DIFAL group when the rates are plausible."""
    internal = to_decimal(item.get("icms_aliquota_interna_uf_destino"))
    inter = to_decimal(item.get("icms_aliquota_interestadual"))
    return (
        internal is not None
        and internal > 0
        and inter is not None
        and inter in tax_tables.VALID_INTERSTATE_RATES
    )


# --- PIS / COFINS ---


def _contribution(
    prefix: str,
    base: Decimal,
    rule: TaxRule | None,
    item_cst: str | None,
    item_rate: Decimal | None,
    default_cst: str,
) -> dict[str, object]:
    cst = (rule.cst if rule is not None else None) or item_cst or default_cst
    rate = rule.rate if rule is not None and rule.rate is not None else item_rate
    if rate is None or rate <= 0:
        # The schema requires the fields even without a rate.
        return {
            f"{prefix}_situacao_tributaria": cst,
            f"{prefix}_base_calculo": ZERO,
            f"{prefix}_aliquota_porcentual": ZERO,
            f"{prefix}_valor": ZERO,
        }
    return {
        f"{prefix}_situacao_tributaria": cst,
        f"{prefix}_base_calculo": money(base),
        f"{prefix}_aliquota_porcentual": rate,
        f"{prefix}_valor": money(base * rate / HUNDRED),
    }


def compute_pis_cofins(
    base: Decimal,
    regime: str,
    pis_rule: TaxRule | None = None,
    cofins_rule: TaxRule | None = None,
    item_pis_cst: str | None = None,
    item_cofins_cst: str | None = None,
    item_pis_rate: Decimal | None = None,
    item_cofins_rate: Decimal | None = None,
) -> dict[str, object]:
    """PIS and COFINS fields. Priority: rule, then product default, then regime default CST."""
    default_cst = "49" if regime == REGIME_SIMPLIFIED else "01"
    return {
        **_contribution("pis", base, pis_rule, item_pis_cst, item_pis_rate, default_cst),
        **_contribution("cofins", base, cofins_rule, item_cofins_cst, item_cofins_rate, default_cst),
    }


# --- Freight and totals ---


def allocate_freight(item_values: list[Decimal], freight: Decimal) -> list[Decimal]:
    """Split *freight* proportionally to item values; the last item absorbs the remainder.

    Every share but the last is truncated to cents, so the remainder is never
    negative and the sum of the shares always equals the rounded freight exactly.
    """
    freight = money(freight)
    if not item_values:
        return []
    if freight <= 0:
        return [ZERO for _ in item_values]
    if len(item_values) == 1:
        return [freight]
    total = sum(item_values, ZERO)
    if total <= 0:
        total = Decimal(1)
    shares = [(v / total * freight).quantize(CENT, rounding=ROUND_DOWN) for v in item_values[:-1]]
    shares.append(freight - sum(shares, ZERO))
    return shares


def reform_total(products_value: Decimal, rule: TaxRule | None) -> Decimal | None:
    """IS/IBS/CBS header total: products × base% × rate%. None when no rule applies."""
    if rule is None:
        return None
    if rule.rate is None and rule.base_percent is None:
        return ZERO
    rate = rule.rate or ZERO
    base_percent = rule.base_percent if rule.base_percent is not None else HUNDRED
    return money(products_value * base_percent / HUNDRED * rate / HUNDRED)


def approximate_tax_note(total: Decimal, current_note: str | None) -> tuple[Decimal, str]:
    """Approximate tax burden (IBPT) and the disclosure note that carries it.

    Any free text before an existing disclosure block is preserved; the block
    itself is recomputed.
    """
    note = current_note or ""
    idx = note.find(APPROX_TAX_MARKER)
    prefix = (note[:idx] if idx >= 0 else note).rstrip()
    taxes = money(total * APPROX_TAX_PERCENT / HUNDRED)
    if taxes <= 0:
        return ZERO, prefix
    federal = money(taxes * APPROX_FEDERAL_PERCENT / APPROX_TAX_PERCENT)
    state = money(taxes - federal)
    block = (
        f"{APPROX_TAX_MARKER}: {format_brl(taxes)} ({fmt_percent(APPROX_TAX_PERCENT)}%) "
        f"Federais {format_brl(federal)} ({fmt_percent(APPROX_FEDERAL_PERCENT)}%) "
        f"Estaduais {format_brl(state)} ({fmt_percent(APPROX_STATE_PERCENT)}%). Fonte IBPT."
    )
    return taxes, f"{prefix}\n\n{block}" if prefix else block
