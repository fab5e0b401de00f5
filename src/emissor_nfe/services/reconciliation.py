"""Asynchronous outcome handling: gateway push callbacks and the PROCESSING sweep.

Both paths map the gateway status vocabulary onto InvoiceStatus and apply it
through the registry state machine, so a late or repeated notification is a
no-op instead of an error.
"""

from __future__ import annotations

import hmac
import logging
import threading
from dataclasses import dataclass
from typing import Any

from lxml import etree

from emissor_nfe.config import (
    SYNC_INTERVAL_SECONDS,
    SYNC_MIN_AGE_MINUTES,
    get_env,
    get_issued_dir,
    get_webhook_secret,
    is_sync_disabled,
)
from emissor_nfe.models.invoice import EVENT_CALLBACK, EVENT_SYNC, Invoice, InvoiceStatus
from emissor_nfe.services import data_provider
from emissor_nfe.services.exceptions import (
    CallbackAuthError,
    EmissionError,
    InvalidTransitionError,
    ValidationError,
)
from emissor_nfe.services.gateway_client import (
    build_artifact_url,
    download_artifact,
    parse_nfe_xml,
    query_document,
    resolve_credential,
)
from emissor_nfe.utils.registry import (
    append_event,
    find_invoice_by_reference,
    get_invoice,
    list_processing_older_than,
    update_invoice,
)

logger = logging.getLogger(__name__)

_STATUS_MAP: dict[str, InvoiceStatus] = {
    "autorizado": InvoiceStatus.AUTHORIZED,
    "autorizada": InvoiceStatus.AUTHORIZED,
    "cancelado": InvoiceStatus.CANCELLED,
    "cancelada": InvoiceStatus.CANCELLED,
    "rejeitado": InvoiceStatus.REJECTED,
    "rejeitada": InvoiceStatus.REJECTED,
    "erro": InvoiceStatus.REJECTED,
    "erro_validacao": InvoiceStatus.ERROR,
    "erro_autorizacao": InvoiceStatus.ERROR,
}


def map_gateway_status(raw: object) -> InvoiceStatus:
    """Gateway status text to InvoiceStatus. Unknown or in-flight values are PROCESSING."""
    return _STATUS_MAP.get(str(raw or "").strip().lower(), InvoiceStatus.PROCESSING)


# --- Field mapping ---


def _positive_int(value: object) -> int | None:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _result_fields(data: dict[str, Any], status: InvoiceStatus, env: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    key = str(data.get("chave_nfe") or "").strip()
    if key:
        fields["document_key"] = key
    number = _positive_int(data.get("numero"))
    if number is not None:
        fields["number"] = number
    xml_url = build_artifact_url(data.get("caminho_xml_nota_fiscal"), env)
    if xml_url:
        fields["xml_url"] = xml_url
    pdf_url = build_artifact_url(
        data.get("caminho_danfe") or data.get("caminho_pdf_nota_fiscal"), env
    )
    if pdf_url:
        fields["pdf_url"] = pdf_url
    if status == InvoiceStatus.AUTHORIZED:
        fields["error_message"] = None
    else:
        message = data.get("mensagem_sefaz") or data.get("mensagem")
        if message:
            fields["error_message"] = str(message)
    return fields


def store_authorized_xml(invoice: Invoice, document_key: str | None, env: str) -> dict[str, Any]:
    """Download the authorized XML into the issued dir.

    Returns the invoice fields to update (``xml_path`` and, when it was
    missing, ``document_key``). Failures are logged and yield no fields.
    """
    company = data_provider.get_company(invoice.company_id)
    try:
        if company is None:
            raise ValidationError("Empresa não encontrada")
        token = resolve_credential(company, env)
        xml_bytes = download_artifact(invoice.reference, "xml", token, env)
    except EmissionError as exc:
        logger.warning("XML of invoice %s not downloaded: %s", invoice.id, exc.message)
        return {}

    fields: dict[str, Any] = {}
    if not document_key:
        try:
            document_key = parse_nfe_xml(xml_bytes)["chave"] or None
        except etree.XMLSyntaxError:
            logger.warning("XML of invoice %s could not be parsed", invoice.id)
        if document_key:
            fields["document_key"] = document_key

    issued_dir = get_issued_dir(env)
    xml_path = issued_dir / f"{document_key or invoice.reference}.xml"
    try:
        issued_dir.mkdir(parents=True, exist_ok=True)
        xml_path.write_bytes(xml_bytes)
    except OSError:
        logger.warning("Failed to save XML to %s", xml_path, exc_info=True)
        return fields
    fields["xml_path"] = str(xml_path)
    return fields


def apply_gateway_result(invoice_id: str, data: dict[str, Any], env: str) -> Invoice | None:
    """Apply one gateway status report to an invoice.

    Transitions the state machine refuses (e.g. a late report for an invoice
    already CANCELLED) are logged and skipped.
    """
    invoice = get_invoice(invoice_id)
    if invoice is None:
        return None
    status = map_gateway_status(data.get("status"))
    fields = _result_fields(data, status, env)
    if status == InvoiceStatus.AUTHORIZED and not invoice.xml_path:
        key = fields.get("document_key") or invoice.document_key
        fields.update(store_authorized_xml(invoice, key, env))
    try:
        return update_invoice(invoice_id, status=status, **fields)
    except InvalidTransitionError as exc:
        logger.warning("Invoice %s: gateway report ignored: %s", invoice_id, exc.message)
        return invoice


# --- Push callback ---


def authenticate_callback(authorization: str | None, secret: str | None) -> bool:
    """Check ``Bearer <secret>`` (or the bare secret) in constant time."""
    if not secret:
        logger.warning("NFE_WEBHOOK_TOKEN not configured; refusing callback")
        return False
    provided = (authorization or "").strip()
    if provided.lower().startswith("bearer "):
        provided = provided[len("bearer ") :].strip()
    return hmac.compare_digest(provided.encode(), secret.encode())


def extract_callback_body(raw: object) -> dict[str, Any]:
    """The notification dict, whether sent directly or wrapped as ``[{"body": {...}}]``."""
    if isinstance(raw, list):
        raw = raw[0] if raw else {}
    if isinstance(raw, dict) and isinstance(raw.get("body"), dict):
        return raw["body"]
    return raw if isinstance(raw, dict) else {}


def handle_callback(
    raw: object, authorization: str | None, *, secret: str | None = None
) -> Invoice | None:
    """Authenticate, record and apply a gateway push notification.

    Returns the updated invoice, or None when the notification does not
    match any invoice. Raises CallbackAuthError before reading the body.
    """
    if not authenticate_callback(authorization, secret if secret is not None else get_webhook_secret()):
        raise CallbackAuthError("Callback não autorizado")
    body = extract_callback_body(raw)
    reference = str(body.get("ref") or "").strip()
    if not reference:
        logger.warning("Callback without ref ignored")
        return None
    invoice = find_invoice_by_reference(reference)
    if invoice is None:
        logger.warning("Callback for unknown ref %s ignored", reference)
        return None
    append_event(invoice.id, EVENT_CALLBACK, body)
    logger.info("Callback for invoice %s: %s", invoice.id, body.get("status"))
    return apply_gateway_result(invoice.id, body, get_env())


# --- Sweep ---


@dataclass(frozen=True)
class SyncSummary:
    queried: int
    errors: int
    updated: int


def sync_processing(min_age_minutes: int = SYNC_MIN_AGE_MINUTES) -> SyncSummary:
    """Query the gateway for every invoice stuck in PROCESSING and apply the results."""
    if is_sync_disabled():
        logger.info("Sync disabled (NFE_SYNC_DISABLED)")
        return SyncSummary(0, 0, 0)

    env = get_env()
    queried = errors = updated = 0
    for invoice in list_processing_older_than(min_age_minutes):
        queried += 1
        company = data_provider.get_company(invoice.company_id)
        try:
            if company is None:
                raise ValidationError("Empresa não encontrada")
            token = resolve_credential(company, env)
            data = query_document(invoice.reference, token, env)
        except EmissionError as exc:
            errors += 1
            logger.warning("Sync of invoice %s failed: %s", invoice.id, exc.message)
            continue

        append_event(invoice.id, EVENT_SYNC, data)
        if map_gateway_status(data.get("status")) == InvoiceStatus.PROCESSING:
            continue
        result = apply_gateway_result(invoice.id, data, env)
        if result is not None and result.status != InvoiceStatus.PROCESSING:
            updated += 1

    if queried:
        logger.info("Sync: %d queried, %d errors, %d updated", queried, errors, updated)
    return SyncSummary(queried, errors, updated)


def run_sync_loop(stop_event: threading.Event, interval: float = SYNC_INTERVAL_SECONDS) -> None:
    """Run sync_processing every *interval* seconds until *stop_event* is set."""
    logger.info("Sync loop started (every %ss)", interval)
    while not stop_event.is_set():
        try:
            sync_processing()
        except Exception:
            logger.exception("Sync sweep failed")
        stop_event.wait(timeout=interval)
    logger.info("Sync loop stopped")
