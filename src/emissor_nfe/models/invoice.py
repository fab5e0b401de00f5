from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum


class InvoiceStatus(str, Enum):
    DRAFT = "RASCUNHO"
    PENDING = "PENDENTE"
    PROCESSING = "PROCESSANDO"
    AUTHORIZED = "AUTORIZADO"
    REJECTED = "REJEITADO"
    CANCELLED = "CANCELADO"
    ERROR = "ERRO"


TERMINAL = frozenset({InvoiceStatus.REJECTED, InvoiceStatus.CANCELLED, InvoiceStatus.ERROR})

# AUTHORIZED -> PROCESSING happens while a cancellation is pending at the authority.
ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.PENDING}),
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.PROCESSING, InvoiceStatus.ERROR}),
    InvoiceStatus.PROCESSING: frozenset(
        {
            InvoiceStatus.PENDING,
            InvoiceStatus.AUTHORIZED,
            InvoiceStatus.REJECTED,
            InvoiceStatus.CANCELLED,
            InvoiceStatus.ERROR,
        }
    ),
    InvoiceStatus.AUTHORIZED: frozenset({InvoiceStatus.CANCELLED, InvoiceStatus.PROCESSING}),
    InvoiceStatus.REJECTED: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
    InvoiceStatus.ERROR: frozenset(),
}


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    """Same-status updates are always allowed (idempotent webhook/sweep writes)."""
    return current == target or target in ALLOWED_TRANSITIONS[current]


# Event types recorded in the append-only log
EVENT_PAYLOAD_SUBMITTED = "payload_enviado"
EVENT_CALLBACK = "webhook_focusnfe"
EVENT_SYNC = "sync_consulta"
EVENT_CANCEL = "cancelamento"
EVENT_STATUS = "status_alterado"


@dataclass
class Invoice:
    """Persistent NF-e record. Never deleted; every transition is mirrored in the event log."""

    id: str
    order_id: int
    company_id: int
    nature_id: int
    number: int | None
    series: str
    reference: str
    status: InvoiceStatus
    total_value: str | None = None  # "123.45"
    document_key: str | None = None
    xml_url: str | None = None
    pdf_url: str | None = None
    xml_path: str | None = None
    error_message: str | None = None
    payload: dict | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Invoice:
        return cls(
            id=d["id"],
            order_id=int(d["order_id"]),
            company_id=int(d["company_id"]),
            nature_id=int(d["nature_id"]),
            number=d.get("number"),
            series=str(d.get("series") or "1"),
            reference=d["reference"],
            status=InvoiceStatus(d["status"]),
            total_value=d.get("total_value"),
            document_key=d.get("document_key"),
            xml_url=d.get("xml_url"),
            pdf_url=d.get("pdf_url"),
            xml_path=d.get("xml_path"),
            error_message=d.get("error_message"),
            payload=d.get("payload"),
            created_at=d.get("created_at", ""),
            updated_at=d.get("updated_at", ""),
        )


@dataclass(frozen=True)
class Event:
    invoice_id: str
    type: str
    payload: dict = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> Event:
        return cls(
            invoice_id=d["invoice_id"],
            type=d["type"],
            payload=d.get("payload") or {},
            created_at=d.get("created_at", ""),
        )
