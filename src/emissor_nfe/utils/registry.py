"""Local invoice store and append-only event log.

Invoices live in ``<data>/<env>/invoices.json`` and events in
``<data>/<env>/events.jsonl``. Every mutation is a single-row update keyed by
invoice id, done under a file lock.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from filelock import FileLock

from emissor_nfe import config as _config
from emissor_nfe.models.invoice import (
    EVENT_PAYLOAD_SUBMITTED,
    EVENT_STATUS,
    Event,
    Invoice,
    InvoiceStatus,
    can_transition,
)
from emissor_nfe.services.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


def _env_dir() -> Path:
    return _config.get_data_dir() / _config.get_env()


def _registry_path() -> Path:
    return _env_dir() / "invoices.json"


def _events_path() -> Path:
    return _env_dir() / "events.jsonl"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s → %s", path, backup)
    return backup


@contextmanager
def _locked(path: Path) -> Iterator[None]:
    """Hold an exclusive file lock during read-modify-write of *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(path.with_suffix(".lock"))
    with lock:
        yield


def _load() -> list[dict[str, Any]]:
    rp = _registry_path()
    if not rp.exists():
        return []
    try:
        return json.loads(rp.read_text())
    except (json.JSONDecodeError, ValueError):
        _backup_corrupt(rp)
        return []


def _save(entries: list[dict[str, Any]]) -> None:
    rp = _registry_path()
    rp.parent.mkdir(parents=True, exist_ok=True)
    tmp = rp.with_suffix(".tmp")
    tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
    os.replace(tmp, rp)


def create_invoice(
    *,
    order_id: int,
    company_id: int,
    nature_id: int,
    number: int | None,
    series: str,
    reference: str,
    status: InvoiceStatus = InvoiceStatus.PENDING,
    total_value: str | None = None,
    payload: dict | None = None,
) -> Invoice:
    """Persist a new invoice row (DRAFT or PENDING)."""
    now = _now()
    invoice = Invoice(
        id=str(uuid.uuid4()),
        order_id=order_id,
        company_id=company_id,
        nature_id=nature_id,
        number=number,
        series=series,
        reference=reference,
        status=status,
        total_value=total_value,
        payload=payload,
        created_at=now,
        updated_at=now,
    )
    with _locked(_registry_path()):
        entries = _load()
        entries.append(invoice.to_dict())
        _save(entries)
    logger.info("Invoice %s created (%s, ref=%s)", invoice.id, status.value, reference)
    return invoice


def get_invoice(invoice_id: str) -> Invoice | None:
    with _locked(_registry_path()):
        entries = _load()
    for e in entries:
        if e.get("id") == invoice_id:
            return Invoice.from_dict(e)
    return None


def find_invoice_by_reference(reference: str) -> Invoice | None:
    """Look up an invoice by its gateway correlation reference."""
    with _locked(_registry_path()):
        entries = _load()
    for e in entries:
        if e.get("reference") == reference:
            return Invoice.from_dict(e)
    return None


def update_invoice(
    invoice_id: str, *, status: InvoiceStatus | None = None, **fields: Any
) -> Invoice | None:
    """Update one invoice row. Returns the updated invoice, or None if not found.

    A status change is checked against the state machine inside the lock;
    an illegal one raises InvalidTransitionError and nothing is written.
    """
    unknown = set(fields) - set(Invoice.__dataclass_fields__)
    if unknown:
        raise TypeError(f"Unknown invoice field(s): {', '.join(sorted(unknown))}")
    with _locked(_registry_path()):
        entries = _load()
        target = next((e for e in entries if e.get("id") == invoice_id), None)
        if target is None:
            return None
        current = InvoiceStatus(target["status"])
        if status is not None:
            if not can_transition(current, status):
                raise InvalidTransitionError(current.value, status.value)
            target["status"] = status.value
        target.update(fields)
        target["updated_at"] = _now()
        _save(entries)
    if status is not None and status != current:
        logger.info("Invoice %s: %s → %s", invoice_id, current.value, status.value)
        append_event(
            invoice_id,
            EVENT_STATUS,
            {"de": current.value, "para": status.value, "mensagem": target.get("error_message")},
        )
    return Invoice.from_dict(target)


def list_invoices(status: InvoiceStatus | None = None) -> list[Invoice]:
    """Return all invoices, optionally filtered by status."""
    with _locked(_registry_path()):
        entries = _load()
    invoices = [Invoice.from_dict(e) for e in entries]
    if status is not None:
        invoices = [i for i in invoices if i.status == status]
    return invoices


def list_processing_older_than(minutes: int) -> list[Invoice]:
    """PROCESSING invoices whose last update is at least *minutes* old."""
    cutoff = datetime.now(UTC) - timedelta(minutes=minutes)
    return [
        i
        for i in list_invoices(InvoiceStatus.PROCESSING)
        if i.updated_at and datetime.fromisoformat(i.updated_at) <= cutoff
    ]


# --- Event log ---


def append_event(invoice_id: str, event_type: str, payload: dict | None = None) -> Event:
    event = Event(invoice_id=invoice_id, type=event_type, payload=payload or {}, created_at=_now())
    ep = _events_path()
    with _locked(ep):
        with ep.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), ensure_ascii=False, default=str) + "\n")
    return event


def list_events(invoice_id: str) -> list[Event]:
    """Events of one invoice, oldest first. Unreadable lines are skipped."""
    ep = _events_path()
    if not ep.exists():
        return []
    events = []
    with _locked(ep):
        lines = ep.read_text(encoding="utf-8").splitlines()
    for line in lines:
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping unreadable event line in %s", ep)
            continue
        if data.get("invoice_id") == invoice_id:
            events.append(Event.from_dict(data))
    return events


def find_last_submitted_payload(invoice_id: str) -> dict | None:
    """Payload of the most recent submission event, or None if never submitted."""
    for event in reversed(list_events(invoice_id)):
        if event.type == EVENT_PAYLOAD_SUBMITTED:
            return event.payload
    return None
