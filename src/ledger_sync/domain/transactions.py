from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from ledger_sync.models import Transaction, TransactionUpdate

# Fields a re-sync may overwrite on an existing row.
PROVIDER_OWNED_FIELDS = (
    "amount",
    "type",
    "description",
    "merchant_name",
    "category_id",
    "provider_status",
    "provider_metadata",
)

# The only field a user may change on a synced row.
USER_EDITABLE_SYNCED_FIELDS = frozenset({"category_id"})


def parse_date(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC. Returns None when unparseable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_amount(value: Any) -> Decimal | None:
    """Parse a numeric or numeric-string amount. Returns None for anything non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def changed_fields(existing: Transaction, incoming: dict[str, Any]) -> dict[str, Any]:
    """Return the provider-owned fields of ``incoming`` that differ from ``existing``."""
    changes: dict[str, Any] = {}
    for field_name in PROVIDER_OWNED_FIELDS:
        if field_name not in incoming:
            continue
        if getattr(existing, field_name) != incoming[field_name]:
            changes[field_name] = incoming[field_name]
    return changes


def filter_user_update(transaction: Transaction, update: TransactionUpdate) -> tuple[dict[str, Any], list[str]]:
    """Split a user edit into the fields that may be applied and the ones that were refused."""
    requested = update.model_dump(exclude_unset=True)
    if not transaction.is_provider_owned:
        return requested, []
    allowed = {key: value for key, value in requested.items() if key in USER_EDITABLE_SYNCED_FIELDS}
    rejected = sorted(key for key in requested if key not in USER_EDITABLE_SYNCED_FIELDS)
    return allowed, rejected
