from __future__ import annotations

import json
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
import requests.exceptions

from emissor_nfe import config
from emissor_nfe.services.exceptions import (
    ErrorKind,
    GatewayPermanentError,
    GatewayTemporaryError,
    MissingCredentialError,
)
from emissor_nfe.services.gateway_client import (
    build_artifact_url,
    cancel_document,
    download_artifact,
    parse_nfe_xml,
    query_document,
    resolve_credential,
    submit_document,
    to_api_document,
)

_SAMPLE_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<nfeProc xmlns="http://www.portalfiscal.inf.br/nfe" versao="4.00">
  <NFe>
    <infNFe Id="NFe35250612345678000195550010000000011000000010" versao="4.00">
      <ide><serie>1</serie><nNF>1</nNF></ide>
    </infNFe>
  </NFe>
  <protNFe versao="4.00">
    <infProt>
      <chNFe>35250612345678000195550010000000011000000010</chNFe>
      <nProt>135250000000001</nProt>
      <cStat>100</cStat>
      <xMotivo>Autorizado o uso da NF-e</xMotivo>
    </infProt>
  </protNFe>
</nfeProc>
"""


def _mock_response(ok: bool = True, status_code: int = 200, json_data=None, text: str | None = None):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status_code
    data = json_data if json_data is not None else {"status": "processando_autorizacao"}
    resp.json.return_value = data
    resp.text = json.dumps(data) if text is None else text
    return resp


class TestSubmitDocument:
    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_success(self, mock_request):
        mock_request.return_value = _mock_response()
        result = submit_document("PEDIDO-1-1", {"itens": [{"cfop": "5102"}]}, "tok")
        assert result == {"status": "processando_autorizacao", "ref": "PEDIDO-1-1"}

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_request_shape(self, mock_request):
        mock_request.return_value = _mock_response()
        submit_document("PEDIDO-1-1", {"itens": [{"cfop": "5102"}]}, "tok", env="producao")
        method, url = mock_request.call_args[0]
        kwargs = mock_request.call_args[1]
        assert method == "POST"
        assert url == "https://api.focusnfe.com.br/v2/nfe"
        assert kwargs["params"] == {"ref": "PEDIDO-1-1"}
        assert kwargs["auth"] == ("tok", "")
        assert kwargs["json"] == {"items": [{"cfop": "5102"}]}
        assert kwargs["timeout"] == config.GATEWAY_TIMEOUT

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_schema_rejection_is_permanent(self, mock_request):
        mock_request.return_value = _mock_response(
            ok=False,
            status_code=422,
            json_data={"codigo": "erro_validacao_schema", "erros": [{"mensagem": "CFOP inválido"}]},
        )
        with pytest.raises(GatewayPermanentError, match="Gateway 422: CFOP inválido") as exc_info:
            submit_document("PEDIDO-1-1", {}, "tok")
        assert exc_info.value.kind is ErrorKind.PERMANENT
        assert exc_info.value.status_code == 422
        assert exc_info.value.response["codigo"] == "erro_validacao_schema"

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404])
    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_client_errors_are_permanent(self, mock_request, status_code):
        mock_request.return_value = _mock_response(
            ok=False, status_code=status_code, json_data={"mensagem": "nope"}
        )
        with pytest.raises(GatewayPermanentError):
            submit_document("PEDIDO-1-1", {}, "tok")

    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_throttle_and_server_errors_are_temporary(self, mock_request, status_code):
        mock_request.return_value = _mock_response(
            ok=False, status_code=status_code, json_data={"mensagem": "tente novamente"}
        )
        with pytest.raises(GatewayTemporaryError) as exc_info:
            submit_document("PEDIDO-1-1", {}, "tok")
        assert exc_info.value.kind is ErrorKind.TEMPORARY

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_timeout_is_temporary(self, mock_request):
        mock_request.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(GatewayTemporaryError, match="timeout"):
            submit_document("PEDIDO-1-1", {}, "tok")

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_network_error_is_temporary(self, mock_request):
        mock_request.side_effect = requests.exceptions.ConnectionError("reset")
        with pytest.raises(GatewayTemporaryError, match="rede"):
            submit_document("PEDIDO-1-1", {}, "tok")

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_unparseable_body_is_temporary(self, mock_request):
        resp = _mock_response(status_code=502, text="<html>bad gateway</html>")
        resp.json.side_effect = ValueError("no json")
        mock_request.return_value = resp
        with pytest.raises(GatewayTemporaryError, match="resposta inválida"):
            submit_document("PEDIDO-1-1", {}, "tok")

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_error_text_is_truncated(self, mock_request):
        mock_request.return_value = _mock_response(
            ok=False, status_code=400, json_data={}, text="x" * 2000
        )
        with pytest.raises(GatewayPermanentError) as exc_info:
            submit_document("PEDIDO-1-1", {}, "tok")
        assert len(exc_info.value.message) < 600


class TestQueryAndCancel:
    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_query_url_quotes_reference(self, mock_request):
        mock_request.return_value = _mock_response(json_data={"status": "autorizado"})
        result = query_document("PEDIDO 1/2", "tok")
        method, url = mock_request.call_args[0]
        assert method == "GET"
        assert url == "https://homologacao.focusnfe.com.br/v2/nfe/PEDIDO%201%2F2"
        assert result["ref"] == "PEDIDO 1/2"

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_cancel_sends_trimmed_justification(self, mock_request):
        mock_request.return_value = _mock_response(json_data={"status": "cancelado"})
        result = cancel_document("PEDIDO-1-1", "  Erro no valor do pedido  ", "tok")
        method, _ = mock_request.call_args[0]
        assert method == "DELETE"
        assert mock_request.call_args[1]["json"] == {"justificativa": "Erro no valor do pedido"}
        assert result["status"] == "cancelado"

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_non_dict_body_is_wrapped(self, mock_request):
        mock_request.return_value = _mock_response(json_data=[1, 2])
        assert query_document("R", "tok")["data"] == [1, 2]


class TestDownloadArtifact:
    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_xml(self, mock_request):
        resp = _mock_response()
        resp.content = _SAMPLE_XML
        mock_request.return_value = resp
        assert download_artifact("PEDIDO-1-1", "xml", "tok") == _SAMPLE_XML
        assert mock_request.call_args[0][1].endswith("/v2/nfe/PEDIDO-1-1.xml")

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Artifact kind"):
            download_artifact("R", "zip", "tok")

    @patch("emissor_nfe.services.gateway_client.requests.request")
    def test_not_found(self, mock_request):
        mock_request.return_value = _mock_response(ok=False, status_code=404, text="not found")
        with pytest.raises(GatewayPermanentError, match="download xml"):
            download_artifact("R", "xml", "tok")


class TestHelpers:
    def test_to_api_document_renames_itens(self):
        doc = {"natureza_operacao": "Venda", "itens": [{"a": 1}]}
        assert to_api_document(doc) == {"natureza_operacao": "Venda", "items": [{"a": 1}]}

    def test_to_api_document_prefers_items(self):
        doc = {"items": [{"a": 1}], "itens": [{"b": 2}]}
        assert to_api_document(doc)["items"] == [{"a": 1}]

    def test_to_api_document_without_items(self):
        assert to_api_document({})["items"] == []

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/arquivos/1.xml", "https://homologacao.focusnfe.com.br/arquivos/1.xml"),
            ("arquivos/1.xml", "https://homologacao.focusnfe.com.br/arquivos/1.xml"),
            ("https://cdn.example/1.pdf", "https://cdn.example/1.pdf"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_build_artifact_url(self, path, expected):
        assert build_artifact_url(path) == expected

    def test_parse_nfe_xml(self):
        info = parse_nfe_xml(_SAMPLE_XML)
        assert info["chave"] == "35250612345678000195550010000000011000000010"
        assert info["numero"] == "1"
        assert info["serie"] == "1"
        assert info["protocolo"] == "135250000000001"
        assert info["status"] == "100"

    def test_parse_nfe_xml_key_from_id(self):
        xml = _SAMPLE_XML.replace(
            b"<chNFe>35250612345678000195550010000000011000000010</chNFe>", b""
        )
        assert parse_nfe_xml(xml)["chave"] == "35250612345678000195550010000000011000000010"


class TestResolveCredential:
    def test_company_token(self, company):
        assert resolve_credential(company, "homologacao") == "tok-hom"

    def test_global_fallback(self, company, monkeypatch):
        monkeypatch.setenv("NFE_GATEWAY_TOKEN", "global")
        assert resolve_credential(company, "producao") == "global"

    def test_company_token_wins(self, company, monkeypatch):
        monkeypatch.setenv("NFE_GATEWAY_TOKEN", "global")
        assert resolve_credential(company, "homologacao") == "tok-hom"

    def test_missing(self, company):
        with pytest.raises(MissingCredentialError, match="tokenProducao") as exc_info:
            resolve_credential(replace(company, token_homologacao="  "), "producao")
        assert exc_info.value.kind is ErrorKind.PERMANENT
