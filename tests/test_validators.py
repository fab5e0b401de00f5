from __future__ import annotations

from decimal import Decimal

import pytest

from emissor_nfe.models.tax_rule import IcmsRule, TaxKind, TaxRule
from emissor_nfe.services.exceptions import ValidationError
from emissor_nfe.services.payload_builder import build_document
from emissor_nfe.services.rule_resolver import ResolvedRules
from emissor_nfe.utils.validators import (
    check_length,
    ensure_valid,
    validate_document,
    validate_justification,
)


@pytest.fixture
def document(order, company, counterparty, nature) -> dict:
    rules = ResolvedRules(
        icms=IcmsRule(kind=TaxKind.ICMS, cst="00", rate=Decimal("18"), cfop="5102"),
        pis=TaxRule(kind=TaxKind.PIS, cst="01", rate=Decimal("1.65")),
        cofins=TaxRule(kind=TaxKind.COFINS, cst="01", rate=Decimal("7.6")),
    )
    return build_document(order, company, counterparty, nature, rules, issued_at="2025-06-01T10:00:00")


class TestValidateDocument:
    def test_built_document_is_valid(self, document):
        assert validate_document(document) == []

    def test_reports_every_missing_field(self, document):
        document["nome_destinatario"] = ""
        document["cep_emitente"] = "00000000"
        errors = validate_document(document)
        assert "Nome/Razão Social do Cliente: campo obrigatório não informado." in errors
        assert "CEP do Emitente: campo obrigatório não informado." in errors
        assert len(errors) == 2

    def test_domestic_recipient_needs_document_and_cep(self, document):
        del document["cpf_destinatario"]
        document["cep_destinatario"] = ""
        errors = validate_document(document)
        assert "CPF/CNPJ do Cliente: campo obrigatório não informado." in errors
        assert "CEP do Cliente: campo obrigatório não informado." in errors

    def test_foreign_recipient_skips_domestic_fields(self, document):
        del document["cpf_destinatario"]
        document["cep_destinatario"] = ""
        document["uf_destinatario"] = ""
        document["pais_destinatario"] = "Argentina"
        assert validate_document(document) == []

    def test_text_limits(self, document):
        document["nome_destinatario"] = "X" * 61
        document["items"][0]["descricao"] = "Y" * 121
        errors = validate_document(document)
        assert len(errors) == 2
        assert '"Nome/Razão Social do Cliente" possui 61 caracteres' in errors[0]
        assert "Descrição do Produto (Item 1)" in errors[1]

    def test_contributor_requires_state_registration(self, document):
        document["indicador_inscricao_estadual_destinatario"] = 1
        document["inscricao_estadual_destinatario"] = "ISENTO"
        errors = validate_document(document)
        assert errors == [
            "Cliente marcado como contribuinte de ICMS exige Inscrição Estadual válida "
            "(não pode ser vazia nem ISENTO)."
        ]

    def test_no_items(self, document):
        document["items"] = []
        assert validate_document(document) == ["A nota precisa de pelo menos um item."]

    def test_legacy_itens_key(self, document):
        document["itens"] = document.pop("items")
        assert validate_document(document) == []

    def test_item_fields(self, document):
        item = document["items"][0]
        item["cfop"] = "510"
        item["codigo_ncm"] = " "
        item["pis_situacao_tributaria"] = "10"
        errors = validate_document(document)
        assert "NCM (Item 1): campo obrigatório não informado." in errors
        assert "CFOP (Item 1): deve ter 4 dígitos numéricos." in errors
        assert "CST PIS (Item 1): código inválido '10'." in errors

    def test_item_origin_zero_is_present(self, document):
        assert document["items"][0]["icms_origem"] == "0"
        assert validate_document(document) == []


class TestEnsureValid:
    def test_valid_passes(self, document):
        ensure_valid(document)

    def test_raises_with_all_messages(self, document):
        document["natureza_operacao"] = ""
        document["items"][0]["cfop"] = ""
        with pytest.raises(ValidationError) as exc_info:
            ensure_valid(document)
        assert len(exc_info.value.errors) == 2
        assert "Natureza da operação" in exc_info.value.message
        assert "CFOP (Item 1)" in exc_info.value.message


class TestCheckLength:
    def test_within_limit(self):
        assert check_length("abc", 3, "Campo") is None

    def test_none(self):
        assert check_length(None, 3, "Campo") is None

    def test_trims_before_counting(self):
        assert check_length("  abc  ", 3, "Campo") is None

    def test_over_limit(self):
        msg = check_length("abcd", 3, "Campo")
        assert msg is not None
        assert "possui 4 caracteres (máx. permitido: 3)" in msg


class TestValidateJustification:
    def test_valid_is_trimmed(self):
        assert validate_justification("  Erro no valor do pedido  ") == "Erro no valor do pedido"

    def test_too_short(self):
        with pytest.raises(ValidationError, match="mínimo 15"):
            validate_justification("Erro valor")

    def test_short_after_trim(self):
        with pytest.raises(ValidationError, match="mínimo"):
            validate_justification("   curta demais   ")

    def test_none(self):
        with pytest.raises(ValidationError):
            validate_justification(None)

    def test_exact_bounds(self):
        assert validate_justification("a" * 15) == "a" * 15
        assert validate_justification("a" * 255) == "a" * 255

    def test_too_long(self):
        with pytest.raises(ValidationError, match="máximo 255"):
            validate_justification("a" * 256)
