from __future__ import annotations

import re

from emissor_nfe.models.counterparty import BRAZIL_NAMES
from emissor_nfe.services.exceptions import ValidationError

_VALID_CST_PIS_COFINS = frozenset({
    "01", "02", "03", "04", "05", "06", "07", "08", "09",
    "49", "50", "51", "52", "53", "54", "55", "56",
    "60", "61", "62", "63", "64", "65", "66", "67",
    "70", "71", "72", "73", "74", "75",
    "98", "99",
})

JUSTIFICATION_MIN = 15
JUSTIFICATION_MAX = 255

# NF-e 4.0 schema text limits: (field, max length, label)
HEADER_LIMITS = (
    ("nome_emitente", 60, "Nome/Razão Social do Emitente"),
    ("nome_fantasia_emitente", 60, "Nome Fantasia do Emitente"),
    ("logradouro_emitente", 60, "Logradouro do Emitente"),
    ("numero_emitente", 60, "Número do Endereço do Emitente"),
    ("bairro_emitente", 60, "Bairro do Emitente"),
    ("municipio_emitente", 60, "Município do Emitente"),
    ("nome_destinatario", 60, "Nome/Razão Social do Cliente"),
    ("logradouro_destinatario", 60, "Rua/Logradouro do Cliente"),
    ("numero_destinatario", 60, "Número do Endereço do Cliente"),
    ("bairro_destinatario", 60, "Bairro do Cliente"),
    ("municipio_destinatario", 60, "Município do Cliente"),
    ("complemento_destinatario", 60, "Complemento do Endereço do Cliente"),
)
ITEM_DESCRIPTION_LIMIT = 120

REQUIRED_HEADER = (
    ("natureza_operacao", "Natureza da operação"),
    ("cnpj_emitente", "CNPJ do Emitente"),
    ("nome_emitente", "Nome/Razão Social do Emitente"),
    ("inscricao_estadual_emitente", "Inscrição Estadual do Emitente"),
    ("logradouro_emitente", "Logradouro do Emitente"),
    ("municipio_emitente", "Município do Emitente"),
    ("uf_emitente", "UF do Emitente"),
    ("cep_emitente", "CEP do Emitente"),
    ("nome_destinatario", "Nome/Razão Social do Cliente"),
    ("logradouro_destinatario", "Rua/Logradouro do Cliente"),
    ("municipio_destinatario", "Município do Cliente"),
    ("valor_total", "Valor total"),
)

REQUIRED_ITEM = (
    ("codigo_produto", "Código do produto"),
    ("descricao", "Descrição do produto"),
    ("cfop", "CFOP"),
    ("codigo_ncm", "NCM"),
    ("quantidade_comercial", "Quantidade"),
    ("valor_unitario_comercial", "Valor unitário"),
    ("icms_situacao_tributaria", "CST/CSOSN do ICMS"),
    ("icms_origem", "Origem da mercadoria"),
)


def _blank(value: object) -> bool:
    return value is None or not str(value).strip() or set(str(value).strip()) == {"0"}


def _is_domestic(document: dict) -> bool:
    return str(document.get("pais_destinatario") or "Brasil").strip().upper() in BRAZIL_NAMES


def check_length(value: object, max_len: int, label: str) -> str | None:
    """Return the user-facing message when *value* exceeds *max_len*, else None."""
    if value is None:
        return None
    size = len(str(value).strip())
    if size > max_len:
        return (
            f'Atenção: O campo "{label}" possui {size} caracteres (máx. permitido: {max_len}). '
            "Reduza o tamanho ou abrevie o texto."
        )
    return None


def validate_document(document: dict) -> list[str]:
    """Check mandatory fields, schema text limits and recipient IE consistency.

    Returns every problem found, in document order. An empty list means valid.
    """
    errors: list[str] = []

    for key, label in REQUIRED_HEADER:
        if _blank(document.get(key)):
            errors.append(f"{label}: campo obrigatório não informado.")
    if _is_domestic(document):
        if _blank(document.get("uf_destinatario")):
            errors.append("UF do Cliente: campo obrigatório não informado.")
        if _blank(document.get("cep_destinatario")):
            errors.append("CEP do Cliente: campo obrigatório não informado.")
    if _blank(document.get("cnpj_destinatario")) and _blank(document.get("cpf_destinatario")):
        if _is_domestic(document):
            errors.append("CPF/CNPJ do Cliente: campo obrigatório não informado.")

    for key, max_len, label in HEADER_LIMITS:
        msg = check_length(document.get(key), max_len, label)
        if msg:
            errors.append(msg)

    if str(document.get("indicador_inscricao_estadual_destinatario", "")).strip() == "1":
        ie = str(document.get("inscricao_estadual_destinatario") or "").strip().upper()
        if not ie or ie == "ISENTO":
            errors.append(
                "Cliente marcado como contribuinte de ICMS exige Inscrição Estadual válida "
                "(não pode ser vazia nem ISENTO)."
            )

    items = document.get("items")
    if items is None:
        items = document.get("itens")
    if not items:
        errors.append("A nota precisa de pelo menos um item.")
        return errors
    for idx, item in enumerate(items, start=1):
        for key, label in REQUIRED_ITEM:
            value = item.get(key)
            if value is None or not str(value).strip():
                errors.append(f"{label} (Item {idx}): campo obrigatório não informado.")
        cfop = item.get("cfop")
        if cfop and not re.fullmatch(r"\d{4}", str(cfop)):
            errors.append(f"CFOP (Item {idx}): deve ter 4 dígitos numéricos.")
        msg = check_length(item.get("descricao"), ITEM_DESCRIPTION_LIMIT, f"Descrição do Produto (Item {idx})")
        if msg:
            errors.append(msg)
        for prefix in ("pis", "cofins"):
            cst = item.get(f"{prefix}_situacao_tributaria")
            if cst is not None and str(cst) not in _VALID_CST_PIS_COFINS:
                errors.append(f"CST {prefix.upper()} (Item {idx}): código inválido '{cst}'.")
    return errors


def ensure_valid(document: dict) -> None:
    """Raise ValidationError carrying every message from validate_document."""
    errors = validate_document(document)
    if errors:
        raise ValidationError(errors)


def validate_justification(value: str | None) -> str:
    """Validate a cancellation justification (15 to 255 characters after trimming)."""
    text = (value or "").strip()
    if len(text) < JUSTIFICATION_MIN:
        raise ValidationError(
            f"Justificativa do cancelamento deve ter no mínimo {JUSTIFICATION_MIN} caracteres."
        )
    if len(text) > JUSTIFICATION_MAX:
        raise ValidationError(
            f"Justificativa do cancelamento deve ter no máximo {JUSTIFICATION_MAX} caracteres."
        )
    return text

