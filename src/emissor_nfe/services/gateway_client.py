"""HTTP client for the NF-e authority gateway (Focus NFe v2 API).

Authentication is HTTP basic with the company token as user and an empty
password. Failures are raised as GatewayPermanentError (retrying cannot help)
or GatewayTemporaryError (the task queue retries with backoff).
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests
from lxml import etree

from emissor_nfe.config import ENDPOINTS, GATEWAY_TIMEOUT, get_global_token
from emissor_nfe.models.company import Company
from emissor_nfe.services.exceptions import (
    GatewayPermanentError,
    GatewayTemporaryError,
    MissingCredentialError,
)

logger = logging.getLogger(__name__)

NFE_NS = "http://www.portalfiscal.inf.br/nfe"
_NFE_XPATH_NS = {"n": NFE_NS}

# Schema rejection (422), bad request, authentication and unknown reference
PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 422})

ARTIFACT_KINDS = ("xml", "pdf")

_MAX_ERROR_TEXT = 500


def _base_url(env: str) -> str:
    return ENDPOINTS[env]


def _ref_path(ref: str) -> str:
    return f"/v2/nfe/{quote(ref, safe='')}"


def _message(data: dict, text: str) -> str:
    msg = data.get("mensagem") or data.get("mensagem_sefaz")
    erros = data.get("erros")
    if not msg and isinstance(erros, list) and erros:
        msg = "; ".join(str(e.get("mensagem", e)) if isinstance(e, dict) else str(e) for e in erros)
    return str(msg or text)[:_MAX_ERROR_TEXT]


def resolve_credential(company: Company, env: str) -> str:
    """Company token for *env*, else the global fallback token."""
    token = company.token_for(env) or get_global_token()
    if not token:
        field = "tokenProducao" if env == "producao" else "tokenHomologacao"
        raise MissingCredentialError(
            f"Token do gateway não configurado para a empresa {company.cnpj} ({env}). "
            f"Preencha {field} no cadastro da empresa ou configure NFE_GATEWAY_TOKEN."
        )
    return token


def _send(
    method: str,
    path: str,
    token: str,
    env: str,
    *,
    body: dict | None = None,
    params: dict | None = None,
) -> requests.Response:
    url = f"{_base_url(env)}{path}"
    try:
        return requests.request(
            method,
            url,
            auth=(token, ""),
            json=body,
            params=params,
            timeout=GATEWAY_TIMEOUT,
        )
    except requests.Timeout as exc:
        raise GatewayTemporaryError(
            f"Gateway timeout após {GATEWAY_TIMEOUT}s: {method} {path}"
        ) from exc
    except requests.RequestException as exc:
        raise GatewayTemporaryError(f"Gateway erro de rede: {exc}") from exc


def _raise_for_status(resp: requests.Response, data: dict) -> None:
    if resp.ok:
        return
    message = f"Gateway {resp.status_code}: {_message(data, resp.text or '')}"
    if resp.status_code in PERMANENT_STATUS_CODES:
        raise GatewayPermanentError(message, status_code=resp.status_code, response=data)
    raise GatewayTemporaryError(message, status_code=resp.status_code, response=data)


def _request_json(
    method: str,
    path: str,
    token: str,
    env: str,
    *,
    body: dict | None = None,
    params: dict | None = None,
) -> dict[str, Any]:
    resp = _send(method, path, token, env, body=body, params=params)
    text = resp.text or ""
    try:
        data = resp.json() if text.strip() else {}
    except ValueError as exc:
        raise GatewayTemporaryError(
            f"Gateway resposta inválida: {resp.status_code} {text[:200]}",
            status_code=resp.status_code,
        ) from exc
    if not isinstance(data, dict):
        data = {"data": data}
    _raise_for_status(resp, data)
    return data


def to_api_document(document: dict) -> dict:
    """Rename the legacy ``itens`` key to ``items`` as the API expects."""
    result = {k: v for k, v in document.items() if k != "itens"}
    items = document.get("items")
    if items is None:
        items = document.get("itens")
    result["items"] = list(items) if isinstance(items, list) else []
    return result


def submit_document(ref: str, document: dict, token: str, env: str = "homologacao") -> dict:
    """Send an NF-e for asynchronous processing. POST /v2/nfe?ref=<ref>."""
    logger.info("Submitting NF-e ref=%s (%s)", ref, env)
    data = _request_json("POST", "/v2/nfe", token, env, body=to_api_document(document), params={"ref": ref})
    data.setdefault("ref", ref)
    return data


def query_document(ref: str, token: str, env: str = "homologacao") -> dict:
    """Current status of an NF-e at the gateway. GET /v2/nfe/<ref>."""
    data = _request_json("GET", _ref_path(ref), token, env)
    data.setdefault("ref", ref)
    return data


def cancel_document(ref: str, justification: str, token: str, env: str = "homologacao") -> dict:
    """Cancel an authorized NF-e. DELETE /v2/nfe/<ref>."""
    logger.info("Cancelling NF-e ref=%s (%s)", ref, env)
    data = _request_json(
        "DELETE", _ref_path(ref), token, env, body={"justificativa": justification.strip()}
    )
    data.setdefault("ref", ref)
    return data


def download_artifact(ref: str, kind: str, token: str, env: str = "homologacao") -> bytes:
    """Download the authorized XML or the DANFE PDF of an NF-e."""
    if kind not in ARTIFACT_KINDS:
        raise ValueError(f"Artifact kind must be one of {ARTIFACT_KINDS}, got {kind!r}")
    resp = _send("GET", f"{_ref_path(ref)}.{kind}", token, env)
    if not resp.ok:
        text = (resp.text or "")[:_MAX_ERROR_TEXT]
        _raise_for_status(resp, {"mensagem": f"download {kind}: {text}"})
    return resp.content


def build_artifact_url(path: str | None, env: str = "homologacao") -> str:
    """Absolute URL for an artifact path returned by the gateway. Absolute URLs pass through."""
    if not path or not path.strip():
        return ""
    trimmed = path.strip()
    if trimmed.startswith(("http://", "https://")):
        return trimmed
    if not trimmed.startswith("/"):
        trimmed = f"/{trimmed}"
    return f"{_base_url(env)}{trimmed}"


def parse_nfe_xml(xml_bytes: bytes) -> dict[str, str]:
    """Extract key, number, series, protocol and status from an authorized NF-e XML."""
    root = etree.fromstring(xml_bytes)

    def txt(xpath: str) -> str:
        return root.findtext(xpath, default="", namespaces=_NFE_XPATH_NS).strip()

    key = txt(".//n:protNFe/n:infProt/n:chNFe")
    if not key:
        inf_nfe = root.find(".//n:infNFe", namespaces=_NFE_XPATH_NS)
        if inf_nfe is not None:
            key = inf_nfe.get("Id", "").removeprefix("NFe")
    return {
        "chave": key,
        "numero": txt(".//n:ide/n:nNF"),
        "serie": txt(".//n:ide/n:serie"),
        "protocolo": txt(".//n:protNFe/n:infProt/n:nProt"),
        "status": txt(".//n:protNFe/n:infProt/n:cStat"),
        "motivo": txt(".//n:protNFe/n:infProt/n:xMotivo"),
    }
