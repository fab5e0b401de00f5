from __future__ import annotations

import time


def generate_reference(order_id: int, now_ms: int | None = None) -> str:
    """Generate the gateway correlation reference for one emission.

    Format: PEDIDO-<order id>-<epoch milliseconds>
    Example: PEDIDO-42-1760000000000
    """
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"PEDIDO-{order_id}-{ms}"
