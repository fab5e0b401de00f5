"""Invoice emission: creation, the per-attempt worker pipeline and cancellation.

Creation is synchronous (persist the invoice, enqueue one job). The gateway
call happens in ``process_emission``, which the task queue runs with retries
for temporary failures only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from emissor_nfe.config import DEFAULT_SERIES, get_env
from emissor_nfe.models.company import Company
from emissor_nfe.models.counterparty import Counterparty
from emissor_nfe.models.invoice import (
    EVENT_CALLBACK,
    EVENT_CANCEL,
    EVENT_PAYLOAD_SUBMITTED,
    EVENT_STATUS,
    EVENT_SYNC,
    Event,
    Invoice,
    InvoiceStatus,
)
from emissor_nfe.models.operation_nature import OperationNature
from emissor_nfe.models.order import Order
from emissor_nfe.services import data_provider
from emissor_nfe.services.exceptions import (
    EmissionError,
    ErrorKind,
    InvalidTransitionError,
    ValidationError,
)
from emissor_nfe.services.gateway_client import (
    cancel_document,
    resolve_credential,
    submit_document,
)
from emissor_nfe.services.payload_builder import (
    NormalizationContext,
    apply_rules_to_document,
    build_document,
    now_brasilia,
    renormalize_document,
)
from emissor_nfe.services.reconciliation import apply_gateway_result, map_gateway_status
from emissor_nfe.services.rule_resolver import ResolvedRules, resolve_rules
from emissor_nfe.services.task_queue import EmissionJob, TaskQueue
from emissor_nfe.utils.formatters import money, to_decimal
from emissor_nfe.utils.reference import generate_reference
from emissor_nfe.utils.registry import (
    append_event,
    create_invoice,
    find_last_submitted_payload,
    get_invoice,
    list_events,
    list_invoices,
    update_invoice,
)
from emissor_nfe.utils.sequence import next_number
from emissor_nfe.utils.validators import ensure_valid, validate_document, validate_justification

logger = logging.getLogger(__name__)

# Statuses a queued job may still act on; anything else was settled elsewhere.
_WORKABLE = frozenset({InvoiceStatus.PENDING, InvoiceStatus.PROCESSING})


@dataclass(frozen=True)
class EmissionSources:
    """Every record the payload builder reads for one order."""

    order: Order
    company: Company
    counterparty: Counterparty
    nature: OperationNature
    rules: ResolvedRules


@dataclass(frozen=True)
class Preview:
    document: dict
    errors: list[str]


@dataclass(frozen=True)
class TimelineEntry:
    timestamp: str
    description: str
    status: str | None


@dataclass(frozen=True)
class Timeline:
    invoice: Invoice
    entries: list[TimelineEntry]


def load_sources(order_id: int, company_id: int, nature_id: int) -> EmissionSources:
    """Load order, company, counterparty, nature and resolved rules, or raise ValidationError."""
    order = data_provider.get_order(order_id)
    if order is None:
        raise ValidationError(f"Pedido {order_id} não encontrado")
    company = data_provider.get_company(company_id)
    if company is None:
        raise ValidationError("Empresa não encontrada")
    counterparty = data_provider.get_counterparty(order.counterparty_id)
    if counterparty is None:
        raise ValidationError("Cliente não encontrado")
    nature = data_provider.get_nature(nature_id)
    if nature is None:
        raise ValidationError("Natureza de operação não encontrada")
    rules = resolve_rules(nature_id, counterparty.uf)
    return EmissionSources(order, company, counterparty, nature, rules)


def prepare_document(sources: EmissionSources, payload: dict | None = None) -> dict:
    """Build (or take the edited *payload*), then re-normalize. Does not validate.

    An edited payload is re-dated to the moment it is prepared for sending.
    """
    if payload:
        document = apply_rules_to_document(payload, sources.rules, sources.company.regime)
        timestamp = now_brasilia()
        document["data_emissao"] = timestamp
        document["data_entrada_saida"] = timestamp
    else:
        if not sources.order.items:
            raise ValidationError("Pedido sem itens")
        document = build_document(
            sources.order, sources.company, sources.counterparty, sources.nature, sources.rules
        )
    context = NormalizationContext.from_sources(sources.company, sources.nature, sources.rules)
    return renormalize_document(document, context)


def preview_document(order_id: int, company_id: int, nature_id: int) -> Preview:
    """Build and validate a document without persisting anything."""
    sources = load_sources(order_id, company_id, nature_id)
    document = prepare_document(sources)
    return Preview(document=document, errors=validate_document(document))


# --- Creation ---


def _job_for(invoice: Invoice) -> EmissionJob:
    return EmissionJob(
        invoice_id=invoice.id,
        order_id=invoice.order_id,
        reference=invoice.reference,
        company_id=invoice.company_id,
        nature_id=invoice.nature_id,
        payload=invoice.payload,
    )


def _payload_total(payload: dict) -> str | None:
    total = to_decimal(payload.get("valor_total"))
    return str(money(total)) if total is not None else None


def _require_records(order_id: int, company_id: int, nature_id: int) -> Order:
    """Check that order, company and nature exist before anything is persisted."""
    order = data_provider.get_order(order_id)
    if order is None:
        raise ValidationError(f"Pedido {order_id} não encontrado")
    if data_provider.get_company(company_id) is None:
        raise ValidationError("Empresa não encontrada")
    if data_provider.get_nature(nature_id) is None:
        raise ValidationError("Natureza de operação não encontrada")
    return order


def _create_and_enqueue(
    queue: TaskQueue,
    order_id: int,
    company_id: int,
    nature_id: int,
    *,
    total_value: str | None,
    payload: dict | None = None,
) -> Invoice:
    invoice = create_invoice(
        order_id=order_id,
        company_id=company_id,
        nature_id=nature_id,
        number=next_number(company_id, DEFAULT_SERIES),
        series=DEFAULT_SERIES,
        reference=generate_reference(order_id),
        total_value=total_value,
        payload=payload,
    )
    queue.enqueue(_job_for(invoice))
    return invoice


def emit(queue: TaskQueue, order_id: int, company_id: int, nature_id: int) -> Invoice:
    """Create a PENDING invoice for an order and enqueue its emission."""
    order = _require_records(order_id, company_id, nature_id)
    return _create_and_enqueue(
        queue, order_id, company_id, nature_id, total_value=str(money(order.valor_total))
    )


def emit_with_payload(
    queue: TaskQueue, order_id: int, company_id: int, nature_id: int, payload: dict
) -> Invoice:
    """Like emit, but submits the operator-edited *payload* instead of building one."""
    _require_records(order_id, company_id, nature_id)
    return _create_and_enqueue(
        queue, order_id, company_id, nature_id, total_value=_payload_total(payload), payload=payload
    )


def save_draft(order_id: int, company_id: int, nature_id: int, payload: dict) -> Invoice:
    """Store an edited payload as a DRAFT. An existing draft of the order is overwritten."""
    _require_records(order_id, company_id, nature_id)
    for draft in list_invoices(InvoiceStatus.DRAFT):
        if draft.order_id == order_id and draft.company_id == company_id:
            updated = update_invoice(
                draft.id,
                nature_id=nature_id,
                payload=payload,
                total_value=_payload_total(payload),
            )
            logger.info("Draft %s updated for order %s", draft.id, order_id)
            return updated
    return create_invoice(
        order_id=order_id,
        company_id=company_id,
        nature_id=nature_id,
        number=None,
        series=DEFAULT_SERIES,
        reference=generate_reference(order_id),
        status=InvoiceStatus.DRAFT,
        total_value=_payload_total(payload),
        payload=payload,
    )


def submit_draft(queue: TaskQueue, invoice_id: str) -> Invoice:
    """Promote a DRAFT to PENDING (reserving its number) and enqueue it."""
    draft = get_invoice(invoice_id)
    if draft is None:
        raise ValidationError(f"Nota {invoice_id} não encontrada")
    if draft.status != InvoiceStatus.DRAFT:
        raise InvalidTransitionError(draft.status.value, InvoiceStatus.PENDING.value)
    invoice = update_invoice(
        invoice_id,
        status=InvoiceStatus.PENDING,
        number=next_number(draft.company_id, draft.series),
    )
    queue.enqueue(_job_for(invoice))
    return invoice


def clone_invoice(queue: TaskQueue, invoice_id: str) -> Invoice:
    """Emit a new, independent invoice from the last payload sent for *invoice_id*."""
    source = get_invoice(invoice_id)
    if source is None:
        raise ValidationError(f"Nota {invoice_id} não encontrada")
    payload = find_last_submitted_payload(invoice_id)
    if payload is None:
        raise ValidationError(f"Nota {invoice_id} nunca foi enviada; não há documento para clonar.")
    payload = {k: v for k, v in payload.items() if k not in ("numero", "serie")}
    clone = emit_with_payload(queue, source.order_id, source.company_id, source.nature_id, payload)
    logger.info("Invoice %s cloned from %s", clone.id, invoice_id)
    return clone


def requeue_pending(queue: TaskQueue) -> int:
    """Re-enqueue every PENDING invoice. Returns how many were accepted by the queue."""
    count = 0
    for invoice in list_invoices(InvoiceStatus.PENDING):
        if queue.enqueue(_job_for(invoice)):
            count += 1
    if count:
        logger.info("Re-enqueued %d pending invoice(s)", count)
    return count


# --- Worker pipeline ---


def _fail(invoice_id: str, message: str) -> None:
    try:
        update_invoice(invoice_id, status=InvoiceStatus.ERROR, error_message=message)
    except InvalidTransitionError as exc:
        logger.warning("Invoice %s not marked as error: %s", invoice_id, exc)


def _submit(job: EmissionJob, invoice: Invoice, env: str) -> dict:
    sources = load_sources(job.order_id, job.company_id, job.nature_id)
    document = prepare_document(sources, job.payload or invoice.payload)
    if invoice.number is not None:
        document["numero"] = invoice.number
        document["serie"] = invoice.series
    ensure_valid(document)
    token = resolve_credential(sources.company, env)

    update_invoice(invoice.id, status=InvoiceStatus.PROCESSING, error_message=None)
    append_event(invoice.id, EVENT_PAYLOAD_SUBMITTED, document)
    return submit_document(job.reference, document, token, env)


def process_emission(job: EmissionJob, attempt: int = 1) -> Invoice | None:
    """Run one emission attempt for *job*.

    Validation and permanent failures mark the invoice ERROR and return.
    Temporary failures are re-raised so the queue retries; the invoice stays
    PROCESSING meanwhile.
    """
    invoice = get_invoice(job.invoice_id)
    if invoice is None:
        logger.warning("Job for unknown invoice %s dropped", job.invoice_id)
        return None
    if invoice.status not in _WORKABLE:
        logger.info("Invoice %s already %s, skipping job", invoice.id, invoice.status.value)
        return invoice

    env = get_env()
    logger.info("Emitting invoice %s ref=%s (attempt %d)", invoice.id, job.reference, attempt)
    try:
        response = _submit(job, invoice, env)
    except EmissionError as exc:
        match exc.kind:
            case ErrorKind.TEMPORARY:
                logger.warning("Invoice %s: temporary failure: %s", invoice.id, exc.message)
                raise
            case ErrorKind.VALIDATION | ErrorKind.PERMANENT:
                logger.error("Invoice %s rejected before authorization: %s", invoice.id, exc.message)
                _fail(invoice.id, exc.message)
                return get_invoice(invoice.id)

    # Synchronous answers (rare) settle the invoice right away.
    if map_gateway_status(response.get("status")) != InvoiceStatus.PROCESSING:
        return apply_gateway_result(invoice.id, response, env)
    return get_invoice(invoice.id)


def mark_exhausted(job: EmissionJob, exc: Exception) -> None:
    """Queue failure hook: the job gave up, so the invoice ends in ERROR."""
    message = exc.message if isinstance(exc, EmissionError) else str(exc)
    invoice = get_invoice(job.invoice_id)
    if invoice is None or invoice.status not in _WORKABLE:
        return
    logger.error("Invoice %s: emission gave up: %s", job.invoice_id, message)
    _fail(job.invoice_id, message)


# --- Cancellation ---


def cancel_invoice(invoice_id: str, justification: str) -> Invoice:
    """Cancel an AUTHORIZED invoice at the authority.

    The justification is checked before any gateway call. A pending
    cancellation puts the invoice back in PROCESSING for reconciliation.
    """
    text = validate_justification(justification)
    invoice = get_invoice(invoice_id)
    if invoice is None:
        raise ValidationError(f"Nota {invoice_id} não encontrada")
    if invoice.status != InvoiceStatus.AUTHORIZED:
        raise ValidationError(
            f"Somente notas autorizadas podem ser canceladas (status atual: {invoice.status.value})."
        )
    company = data_provider.get_company(invoice.company_id)
    if company is None:
        raise ValidationError("Empresa não encontrada")
    env = get_env()
    token = resolve_credential(company, env)

    response = cancel_document(invoice.reference, text, token, env)
    append_event(invoice.id, EVENT_CANCEL, {"justificativa": text, "resposta": response})
    gateway_status = str(response.get("status") or "").strip().lower()
    if gateway_status in ("cancelado", "cancelada"):
        return update_invoice(invoice.id, status=InvoiceStatus.CANCELLED)
    logger.info("Invoice %s cancellation pending (%s)", invoice.id, gateway_status or "sem status")
    return update_invoice(invoice.id, status=InvoiceStatus.PROCESSING)


# --- Timeline ---


def _describe(event: Event) -> TimelineEntry:
    payload = event.payload
    status: str | None = None
    if event.type == EVENT_PAYLOAD_SUBMITTED:
        description = "Documento enviado ao gateway"
    elif event.type == EVENT_STATUS:
        status = payload.get("para")
        description = f"Status alterado: {payload.get('de')} → {status}"
        if payload.get("mensagem"):
            description += f" ({payload['mensagem']})"
    elif event.type in (EVENT_CALLBACK, EVENT_SYNC):
        origin = "webhook" if event.type == EVENT_CALLBACK else "consulta"
        gateway_status = payload.get("status") or ""
        status = map_gateway_status(gateway_status).value
        description = f"Retorno do gateway ({origin}): {gateway_status or 'sem status'}"
    elif event.type == EVENT_CANCEL:
        description = f"Cancelamento solicitado: {payload.get('justificativa', '')}"
    else:
        description = event.type
    return TimelineEntry(timestamp=event.created_at, description=description, status=status)


def invoice_timeline(invoice_id: str) -> Timeline:
    """The invoice's event log as readable rows, oldest first, plus its current state."""
    invoice = get_invoice(invoice_id)
    if invoice is None:
        raise ValidationError(f"Nota {invoice_id} não encontrada")
    return Timeline(invoice=invoice, entries=[_describe(e) for e in list_events(invoice_id)])
