"""Build the gateway NF-e document (model 55) from an order and its parties.

The document is a plain dict in the gateway's field vocabulary, with money and
rates as ``"0.00"`` strings. ``renormalize_document`` re-derives the tax figures
on a document that was edited by an operator, keeping consistent edits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from emissor_nfe.config import BRT
from emissor_nfe.models.company import REGIMES, Company
from emissor_nfe.models.counterparty import (
    BRAZIL_NAMES,
    IE_CONTRIBUTOR,
    IE_EXEMPT,
    IE_NON_CONTRIBUTOR,
    Counterparty,
)
from emissor_nfe.models.operation_nature import OperationNature
from emissor_nfe.models.order import Order, OrderItem
from emissor_nfe.models.tax_rule import TaxRule
from emissor_nfe.services import tax_calculator as calc
from emissor_nfe.services.exceptions import TaxRuleNotFoundError, ValidationError
from emissor_nfe.services.rule_resolver import ResolvedRules
from emissor_nfe.utils.formatters import fmt_decimal, money, only_digits, parse_flag, to_decimal

logger = logging.getLogger(__name__)

DIFAL_FIELDS = (
    "icms_base_calculo_uf_destino",
    "icms_aliquota_interna_uf_destino",
    "icms_aliquota_interestadual",
    "icms_percentual_partilha",
    "fcp_percentual_uf_destino",
    "fcp_valor_uf_destino",
    "fcp_base_calculo_uf_destino",
    "icms_valor_uf_remetente",
    "icms_valor_uf_destino",
)

NO_GTIN = "SEM GTIN"


def now_brasilia() -> str:
    """Emission timestamp in Brasília time; the authority rejects times ahead of its clock."""
    return datetime.now(BRT).strftime("%Y-%m-%dT%H:%M:%S")


def _fmt(fields: dict[str, object]) -> dict[str, object]:
    return {k: fmt_decimal(v) if isinstance(v, Decimal) else v for k, v in fields.items()}


def _fmt_quantity(value: Decimal) -> str:
    return f"{value:.4f}"


def _ncm(raw: str | None) -> str:
    digits = only_digits(raw)
    return digits.zfill(8)[:8] if digits else "00000000"


def _cep(raw: str | None) -> str:
    return only_digits(raw).zfill(8)[:8]


def _items(document: dict) -> list[dict]:
    items = document.get("items")
    if items is None:
        items = document.get("itens")
    return list(items or [])


@dataclass(frozen=True)
class NormalizationContext:
    """Company and rule facts that re-normalization needs beyond the document itself."""

    regime: str
    special_regime: bool = False
    presumptive_rate: Decimal | None = None
    include_freight_in_base: bool = True
    pis_rule: TaxRule | None = None
    cofins_rule: TaxRule | None = None
    special_regime_policy: calc.SpecialRegimePolicy = calc.zero_base_and_value

    @classmethod
    def from_sources(
        cls, company: Company, nature: OperationNature, rules: ResolvedRules
    ) -> NormalizationContext:
        return cls(
            regime=company.regime,
            special_regime=company.regime_especial,
            presumptive_rate=rules.icms.presumptive_rate if rules.icms else None,
            include_freight_in_base=nature.incluir_frete_base,
            pis_rule=rules.pis,
            cofins_rule=rules.cofins,
        )


def _require_regime(company: Company) -> str:
    if company.regime not in REGIMES:
        raise ValidationError(
            f"Empresa {company.cnpj}: regime tributário (codRegime_tributario) não configurado. "
            "Cadastre 1 (Simples Nacional), 2 (Simples Excesso) ou 3 (Regime Normal)."
        )
    return company.regime


def _build_item(
    idx: int,
    item: OrderItem,
    freight_share: Decimal,
    *,
    company: Company,
    rules: ResolvedRules,
    interstate: bool,
    needs_difal: bool,
    destination_uf: str,
    include_freight: bool,
) -> dict[str, object]:
    regime = company.regime
    icms_rule = rules.icms
    gross = item.valor_bruto
    tax_base = money(gross + (freight_share if include_freight else calc.ZERO))
    cst = (
        (icms_rule.cst if icms_rule else None) or item.icms_cst or calc.default_icms_cst(regime)
    ).strip()
    cfop_source = item.cfop or (icms_rule.cfop if icms_rule else None)
    unit = money(item.valor_unitario)

    fields: dict[str, object] = {
        "numero_item": str(idx + 1),
        "codigo_produto": item.codigo_produto or str(item.id or idx + 1),
        "descricao": item.descricao,
        "cfop": calc.normalize_cfop(cfop_source, interstate),
        "unidade_comercial": item.unidade or "UN",
        "quantidade_comercial": _fmt_quantity(item.quantidade),
        "valor_unitario_comercial": unit,
        "unidade_tributavel": item.unidade or "UN",
        "quantidade_tributavel": _fmt_quantity(item.quantidade),
        "valor_unitario_tributavel": unit,
        "codigo_ncm": _ncm(item.ncm),
        "valor_bruto": gross,
        "icms_origem": item.icms_origem,
        "icms_situacao_tributaria": cst,
        "codigo_barras_comercial": item.ean or NO_GTIN,
        "codigo_barras_tributavel": item.ean or NO_GTIN,
    }
    if freight_share > 0:
        fields["valor_frete"] = freight_share

    rate = calc.effective_icms_rate(
        regime,
        icms_rule.presumptive_rate if icms_rule else None,
        icms_rule.rate if icms_rule else None,
    )
    fields.update(calc.compute_icms_own(tax_base, cst, rate))
    fields.update(
        calc.compute_pis_cofins(
            tax_base,
            regime,
            rules.pis,
            rules.cofins,
            item.pis_cst,
            item.cofins_cst,
            item.pis_aliquota,
            item.cofins_aliquota,
        )
    )
    fields.update(item.reform_fields)
    if rules.ipi is not None:
        if rules.ipi.cst:
            fields["ipi_situacao_tributaria"] = rules.ipi.cst
        if rules.ipi.framework_code:
            fields["ipi_codigo_enquadramento_legal"] = rules.ipi.framework_code
    if needs_difal:
        difal = calc.compute_difal(
            tax_base,
            cst,
            company.uf,
            destination_uf,
            item.icms_origem,
            company.regime_especial,
        )
        if difal:
            fields.update(difal)
    fields["icms_situacao_tributaria"] = calc.substitute_cst(cst, regime)
    return _fmt(fields)


def _recipient_ie(counterparty: Counterparty, indicator: int) -> str | None:
    ie = counterparty.inscricao_estadual.strip()
    if indicator == IE_CONTRIBUTOR:
        return ie or "ISENTO"
    if indicator == IE_EXEMPT:
        return "ISENTO"
    if indicator == IE_NON_CONTRIBUTOR and counterparty.cnpj and ie and ie.upper() != "ISENTO":
        return ie
    return None


def build_document(
    order: Order,
    company: Company,
    counterparty: Counterparty,
    nature: OperationNature,
    rules: ResolvedRules,
    *,
    issued_at: str | None = None,
) -> dict:
    """Compute a submission-ready NF-e document. Raises ValidationError on domain errors."""
    regime = _require_regime(company)
    destination_uf = counterparty.uf
    if not counterparty.is_foreign and len(destination_uf) != 2:
        raise ValidationError(
            "UF do destinatário não informada. Cadastre o endereço completo do cliente."
        )
    if rules.icms is None:
        raise TaxRuleNotFoundError("icms", nature.id, destination_uf)

    destination = calc.classify_destination(company.uf, destination_uf, counterparty.is_foreign)
    interstate = destination is calc.Destination.DIFFERENT_STATE
    indicator = calc.ie_indicator(counterparty)
    end_consumer = calc.is_end_consumer(counterparty, nature, indicator)
    needs_difal = interstate and end_consumer and len(destination_uf) == 2

    products_value = money(order.valor_produtos)
    freight = money(order.valor_frete)
    shares = calc.allocate_freight([i.valor_bruto for i in order.items], freight)

    items = [
        _build_item(
            idx,
            item,
            shares[idx],
            company=company,
            rules=rules,
            interstate=interstate,
            needs_difal=needs_difal,
            destination_uf=destination_uf,
            include_freight=nature.incluir_frete_base,
        )
        for idx, item in enumerate(order.items)
    ]

    timestamp = issued_at or now_brasilia()
    document: dict[str, object] = {
        "data_emissao": timestamp,
        "data_entrada_saida": timestamp,
        "natureza_operacao": nature.descricao,
        "tipo_documento": "1",
        "finalidade_emissao": "1",
        "consumidor_final": "1" if end_consumer else "0",
        "local_destino": int(destination),
        "indicador_inscricao_estadual_destinatario": indicator,
        "regime_tributario_emitente": regime,
        "presenca_comprador": calc.normalize_presence(nature.indicador_presenca),
        "cnpj_emitente": company.cnpj,
        "nome_emitente": company.razao_social,
        "logradouro_emitente": company.logradouro,
        "numero_emitente": company.numero or "S/N",
        "bairro_emitente": company.bairro,
        "municipio_emitente": company.municipio,
        "uf_emitente": company.uf,
        "cep_emitente": _cep(company.cep),
        "inscricao_estadual_emitente": company.inscricao_estadual,
        "nome_destinatario": counterparty.nome or "Destinatário",
        "logradouro_destinatario": counterparty.logradouro,
        "numero_destinatario": counterparty.numero or "S/N",
        "bairro_destinatario": counterparty.bairro,
        "municipio_destinatario": counterparty.municipio,
        "uf_destinatario": destination_uf,
        "pais_destinatario": counterparty.pais,
        "cep_destinatario": _cep(counterparty.cep),
        "valor_frete": freight,
        "valor_seguro": calc.ZERO,
        "valor_total": money(order.valor_total),
        "valor_produtos": products_value,
        "modalidade_frete": "0",
        "incluir_frete_base_ipi": nature.incluir_frete_base,
    }
    if company.nome_fantasia:
        document["nome_fantasia_emitente"] = company.nome_fantasia
    if company.telefone:
        document["telefone_emitente"] = str(company.telefone)
    if counterparty.cnpj:
        document["cnpj_destinatario"] = counterparty.cnpj
    elif counterparty.cpf:
        document["cpf_destinatario"] = counterparty.cpf
    recipient_ie = _recipient_ie(counterparty, indicator)
    if recipient_ie is not None:
        document["inscricao_estadual_destinatario"] = recipient_ie
    if counterparty.complemento:
        document["complemento_destinatario"] = counterparty.complemento
    if counterparty.telefone:
        document["telefone_destinatario"] = str(counterparty.telefone).strip()
    if order.valor_desconto > 0:
        document["valor_desconto"] = money(order.valor_desconto)

    if nature.indicador_intermediador is not None:
        document["indicador_intermediario"] = nature.indicador_intermediador
        if nature.indicador_intermediador == "1":
            if nature.cnpj_intermediador is not None:
                document["cnpj_intermediador"] = only_digits(nature.cnpj_intermediador)
            if nature.identificador_intermediador is not None:
                document["identificador_intermediador"] = nature.identificador_intermediador
    document.update(nature.reform_fields)

    for key, rule in (("total_is", rules.is_), ("total_ibs", rules.ibs), ("total_cbs", rules.cbs)):
        total = calc.reform_total(products_value, rule)
        if total is not None:
            document[key] = total

    taxes, note = calc.approximate_tax_note(money(order.valor_total), nature.info_adicionais)
    document["valor_total_tributos"] = taxes
    if note:
        document["informacoes_adicionais_contribuinte"] = note

    document = _fmt(document)
    document["items"] = items
    logger.debug(
        "Built document for order %s: %d item(s), destination %s", order.id, len(items), destination.name
    )
    return document


# --- Externally supplied documents ---


def apply_rules_to_document(document: dict, rules: ResolvedRules, regime: str) -> dict:
    """Fill rule-derived item fields the operator left empty on an edited document."""
    result = dict(document)
    result["regime_tributario_emitente"] = regime
    icms = rules.icms
    items = []
    for raw in _items(document):
        it = dict(raw)
        if icms is not None:
            if not str(it.get("icms_situacao_tributaria") or "").strip() and icms.cst:
                it["icms_situacao_tributaria"] = icms.cst
            if not str(it.get("cfop") or "").strip() and icms.cfop:
                it["cfop"] = icms.cfop
            if it.get("icms_aliquota") in (None, "") and icms.rate is not None:
                rate = calc.effective_icms_rate(regime, icms.presumptive_rate, icms.rate)
                it["icms_aliquota"] = fmt_decimal(rate)
        if rules.ipi is not None:
            if rules.ipi.cst and not it.get("ipi_situacao_tributaria"):
                it["ipi_situacao_tributaria"] = rules.ipi.cst
            if rules.ipi.framework_code and not it.get("ipi_codigo_enquadramento_legal"):
                it["ipi_codigo_enquadramento_legal"] = rules.ipi.framework_code
        items.append(it)
    result.pop("itens", None)
    result["items"] = items
    return result


def _item_gross(it: dict) -> Decimal:
    gross = to_decimal(it.get("valor_bruto"))
    if gross is not None:
        return money(gross)
    unit = to_decimal(it.get("valor_unitario_comercial")) or calc.ZERO
    qty = to_decimal(it.get("quantidade_comercial"))
    if qty is None:
        qty = to_decimal(it.get("quantidade_tributavel"))
    return money(unit * (qty if qty is not None else Decimal(1)))


def renormalize_document(document: dict, context: NormalizationContext) -> dict:
    """Re-derive regime, CFOP, freight shares, ICMS, DIFAL, CSOSN and PIS/COFINS.

    Works on a copy. A DIFAL group that is already consistent is kept as edited;
    DIFAL groups on documents that do not owe it are dropped.
    """
    items = _items(document)
    result = dict(document)
    result.pop("itens", None)
    if context.regime:
        result["regime_tributario_emitente"] = context.regime
    if not items:
        result["items"] = []
        return result

    emitter_uf = str(result.get("uf_emitente") or "").strip().upper()
    destination_uf = str(result.get("uf_destinatario") or "").strip().upper()
    foreign = str(result.get("pais_destinatario") or "Brasil").strip().upper() not in BRAZIL_NAMES
    destination = calc.classify_destination(emitter_uf, destination_uf, foreign)
    result["local_destino"] = int(destination)
    interstate = destination is calc.Destination.DIFFERENT_STATE
    end_consumer = str(result.get("consumidor_final", "1")).strip() == "1"
    needs_difal = interstate and end_consumer and len(destination_uf) == 2
    flag = parse_flag(result.get("incluir_frete_base_ipi"))
    include_freight = context.include_freight_in_base if flag is None else flag

    gross_values = [_item_gross(it) for it in items]
    freight = money(to_decimal(result.get("valor_frete")) or calc.ZERO)
    current_shares = [money(to_decimal(it.get("valor_frete")) or calc.ZERO) for it in items]
    if sum(current_shares, calc.ZERO) != freight:
        current_shares = calc.allocate_freight(gross_values, freight)

    normalized = []
    for it, gross, share in zip(items, gross_values, current_shares, strict=True):
        it = dict(it)
        it["cfop"] = calc.normalize_cfop(it.get("cfop"), interstate)
        it["valor_bruto"] = gross
        if share > 0:
            it["valor_frete"] = share
        else:
            it.pop("valor_frete", None)
        cst = str(it.get("icms_situacao_tributaria") or "").strip() or calc.default_icms_cst(
            context.regime
        )
        tax_base = money(gross + (share if include_freight else calc.ZERO))

        if cst in calc.TAXED_CSTS:
            icms_base = to_decimal(it.get("icms_base_calculo"))
            rate = calc.effective_icms_rate(
                context.regime, context.presumptive_rate, to_decimal(it.get("icms_aliquota"))
            )
            it.update(calc.compute_icms_own(icms_base if icms_base is not None else tax_base, cst, rate))

        if needs_difal and calc.difal_eligible(cst):
            if not calc.has_valid_difal(it):
                difal_base = to_decimal(it.get("icms_base_calculo"))
                it.update(
                    calc.compute_difal(
                        difal_base if difal_base is not None else tax_base,
                        cst,
                        emitter_uf,
                        destination_uf,
                        it.get("icms_origem", "0"),
                        context.special_regime,
                        context.special_regime_policy,
                    )
                    or {}
                )
        else:
            for key in DIFAL_FIELDS:
                it.pop(key, None)

        it.update(
            calc.compute_pis_cofins(
                tax_base,
                context.regime,
                context.pis_rule,
                context.cofins_rule,
                it.get("pis_situacao_tributaria") or None,
                it.get("cofins_situacao_tributaria") or None,
                to_decimal(it.get("pis_aliquota_porcentual")),
                to_decimal(it.get("cofins_aliquota_porcentual")),
            )
        )
        it["icms_situacao_tributaria"] = calc.substitute_cst(cst, context.regime)
        normalized.append(_fmt(it))

    total = to_decimal(result.get("valor_total"))
    if total is not None:
        taxes, note = calc.approximate_tax_note(
            money(total), result.get("informacoes_adicionais_contribuinte")
        )
        result["valor_total_tributos"] = fmt_decimal(taxes)
        if note:
            result["informacoes_adicionais_contribuinte"] = note
        else:
            result.pop("informacoes_adicionais_contribuinte", None)
    result["items"] = normalized
    return result
