"""HTTP endpoint receiving gateway push notifications."""

from __future__ import annotations

from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException

from emissor_nfe.services.exceptions import CallbackAuthError
from emissor_nfe.services.reconciliation import handle_callback

app = FastAPI(title="emissor-nfe webhook")


@app.post("/webhooks/focusnfe")
def receive_callback(
    payload: Any = Body(...),
    authorization: str | None = Header(default=None),
) -> dict[str, Any]:
    try:
        invoice = handle_callback(payload, authorization)
    except CallbackAuthError as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc
    if invoice is None:
        return {"ok": True, "ignored": True}
    return {"ok": True, "invoice_id": invoice.id, "status": invoice.status.value}


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
