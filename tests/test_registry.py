from __future__ import annotations

import json

import pytest

from emissor_nfe import config
from emissor_nfe.models.invoice import (
    EVENT_CALLBACK,
    EVENT_PAYLOAD_SUBMITTED,
    EVENT_STATUS,
    InvoiceStatus,
)
from emissor_nfe.services.exceptions import InvalidTransitionError
from emissor_nfe.utils import registry
from emissor_nfe.utils.registry import (
    _backup_corrupt,
    append_event,
    create_invoice,
    find_invoice_by_reference,
    find_last_submitted_payload,
    get_invoice,
    list_events,
    list_invoices,
    list_processing_older_than,
    update_invoice,
)


def _create(status=InvoiceStatus.PENDING, reference="PEDIDO-42-1", **kw):
    return create_invoice(
        order_id=42,
        company_id=1,
        nature_id=3,
        number=kw.pop("number", 1),
        series="1",
        reference=reference,
        status=status,
        **kw,
    )


class TestCreateAndGet:
    def test_create_persists(self):
        invoice = _create(total_value="100.00")
        loaded = get_invoice(invoice.id)
        assert loaded == invoice
        assert loaded.status is InvoiceStatus.PENDING
        assert loaded.total_value == "100.00"
        assert loaded.created_at == loaded.updated_at

    def test_stored_per_environment(self, tmp_path, monkeypatch):
        invoice = _create()
        assert (tmp_path / "data" / "homologacao" / "invoices.json").exists()
        monkeypatch.setenv("NFE_AMBIENTE", "producao")
        assert get_invoice(invoice.id) is None
        assert list_invoices() == []

    def test_get_missing(self):
        assert get_invoice("nope") is None

    def test_find_by_reference(self):
        invoice = _create(reference="PEDIDO-42-999")
        assert find_invoice_by_reference("PEDIDO-42-999").id == invoice.id
        assert find_invoice_by_reference("PEDIDO-1-1") is None

    def test_list_filters_by_status(self):
        pending = _create()
        _create(status=InvoiceStatus.DRAFT, number=None)
        assert [i.id for i in list_invoices(InvoiceStatus.PENDING)] == [pending.id]
        assert len(list_invoices()) == 2


class TestUpdate:
    def test_allowed_transition_records_event(self):
        invoice = _create()
        updated = update_invoice(invoice.id, status=InvoiceStatus.PROCESSING)
        assert updated.status is InvoiceStatus.PROCESSING
        events = list_events(invoice.id)
        assert len(events) == 1
        assert events[0].type == EVENT_STATUS
        assert events[0].payload == {"de": "PENDENTE", "para": "PROCESSANDO", "mensagem": None}

    def test_status_event_carries_error_message(self):
        invoice = _create()
        update_invoice(invoice.id, status=InvoiceStatus.ERROR, error_message="boom")
        assert list_events(invoice.id)[0].payload["mensagem"] == "boom"

    def test_same_status_is_idempotent(self):
        invoice = _create()
        updated = update_invoice(invoice.id, status=InvoiceStatus.PENDING, error_message="x")
        assert updated.error_message == "x"
        assert list_events(invoice.id) == []

    def test_illegal_transition_writes_nothing(self):
        invoice = _create()
        with pytest.raises(InvalidTransitionError) as exc_info:
            update_invoice(invoice.id, status=InvoiceStatus.AUTHORIZED, document_key="123")
        assert exc_info.value.current == "PENDENTE"
        assert exc_info.value.target == "AUTORIZADO"
        loaded = get_invoice(invoice.id)
        assert loaded.status is InvoiceStatus.PENDING
        assert loaded.document_key is None

    def test_terminal_status_is_final(self):
        invoice = _create()
        update_invoice(invoice.id, status=InvoiceStatus.ERROR)
        with pytest.raises(InvalidTransitionError):
            update_invoice(invoice.id, status=InvoiceStatus.PENDING)

    def test_fields_without_status(self):
        invoice = _create()
        updated = update_invoice(invoice.id, pdf_url="https://x/y.pdf")
        assert updated.pdf_url == "https://x/y.pdf"
        assert updated.status is InvoiceStatus.PENDING

    def test_unknown_field_rejected(self):
        invoice = _create()
        with pytest.raises(TypeError, match="bogus"):
            update_invoice(invoice.id, bogus=1)

    def test_missing_invoice(self):
        assert update_invoice("nope", status=InvoiceStatus.ERROR) is None


class TestProcessingAge:
    def test_age_filter(self):
        invoice = _create()
        update_invoice(invoice.id, status=InvoiceStatus.PROCESSING)
        assert [i.id for i in list_processing_older_than(0)] == [invoice.id]
        assert list_processing_older_than(5) == []

    def test_only_processing(self):
        _create()
        assert list_processing_older_than(0) == []


class TestEvents:
    def test_append_and_list_in_order(self):
        append_event("a", EVENT_PAYLOAD_SUBMITTED, {"n": 1})
        append_event("b", EVENT_CALLBACK, {"n": 2})
        append_event("a", EVENT_CALLBACK, {"n": 3})
        events = list_events("a")
        assert [e.payload["n"] for e in events] == [1, 3]
        assert all(e.created_at for e in events)

    def test_unreadable_lines_skipped(self, tmp_path):
        append_event("a", EVENT_CALLBACK)
        path = tmp_path / "data" / "homologacao" / "events.jsonl"
        with path.open("a") as f:
            f.write("{broken\n\n")
        append_event("a", EVENT_CALLBACK)
        assert len(list_events("a")) == 2

    def test_no_log_yet(self):
        assert list_events("a") == []

    def test_last_submitted_payload(self):
        append_event("a", EVENT_PAYLOAD_SUBMITTED, {"v": 1})
        append_event("a", EVENT_PAYLOAD_SUBMITTED, {"v": 2})
        append_event("a", EVENT_CALLBACK, {"status": "autorizado"})
        assert find_last_submitted_payload("a") == {"v": 2}

    def test_never_submitted(self):
        append_event("a", EVENT_CALLBACK)
        assert find_last_submitted_payload("a") is None


class TestCorruptStore:
    def test_corrupt_registry_is_backed_up(self, tmp_path):
        path = registry._registry_path()
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert list_invoices() == []
        backups = list(path.parent.glob("invoices.json.corrupt.*"))
        assert len(backups) == 1
        assert backups[0].read_text() == "{not json"

    def test_new_invoice_after_corruption(self):
        path = registry._registry_path()
        path.parent.mkdir(parents=True)
        path.write_text("garbage")
        invoice = _create()
        assert json.loads(path.read_text())[0]["id"] == invoice.id

    def test_backup_corrupt_renames(self, tmp_path):
        path = tmp_path / "x.json"
        path.write_text("bad")
        backup = _backup_corrupt(path)
        assert not path.exists()
        assert backup.read_text() == "bad"
        assert backup.name.startswith("x.json.corrupt.")

    def test_path_follows_data_dir(self, tmp_path):
        assert registry._registry_path() == config.get_data_dir() / "homologacao" / "invoices.json"
        assert config.get_data_dir() == tmp_path / "data"
