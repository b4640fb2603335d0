from datetime import datetime

from marketplace.services.clock import utcnow


def generate_invoice_number(order_id: int, issued_at: datetime | None = None) -> str:
    """``INV-YYYYMM-000123``: issue month plus the zero-padded order id."""
    issued_at = issued_at or utcnow()
    return f"INV-{issued_at:%Y%m}-{order_id:06d}"
