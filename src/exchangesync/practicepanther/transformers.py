"""
PracticePanther record transformers.

Converts raw dicts from the PP API into clean field dicts that map
directly onto the SQLModel columns in models/entities.py. No DB or
network access here: relationship ids are resolved later by the
RelationshipResolver from the pp_*_ref_id keys these functions emit.

All functions return plain dicts so they're easy to test without any
SQLModel or DB dependencies, and every result carries the untouched
source record in pp_data_json.

PP v2 conventions seen in practice:
  - ids are opaque strings (UUIDs), occasionally integers in older data
  - references are nested objects: {"account_ref": {"id": ..., "display_name": ...}}
  - timestamps are ISO 8601, with or without a trailing "Z"
  - money fields on invoices and expenses are integer cents
"""
import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from exchangesync.practicepanther.errors import RecordTransformError

# ── Vocabulary tables ─────────────────────────────────────────────────────────

MATTER_STATUS_MAP = {
    "open": "PENDING",
    "pending": "PENDING",
    "active": "45D",
    "in_progress": "180D",
    "completed": "COMPLETED",
    "closed": "COMPLETED",
    "terminated": "TERMINATED",
    "cancelled": "TERMINATED",
}
DEFAULT_MATTER_STATUS = "PENDING"

TASK_STATUS_MAP = {
    "pending": "PENDING",
    "notcompleted": "PENDING",
    "not_completed": "PENDING",
    "in_progress": "IN_PROGRESS",
    "inprogress": "IN_PROGRESS",
    "completed": "COMPLETED",
    "cancelled": "CANCELLED",
    "on_hold": "ON_HOLD",
}
DEFAULT_TASK_STATUS = "PENDING"

TASK_PRIORITY_MAP = {
    "low": "LOW",
    "normal": "MEDIUM",
    "medium": "MEDIUM",
    "high": "HIGH",
    "urgent": "URGENT",
}
DEFAULT_TASK_PRIORITY = "MEDIUM"

# 1031 statutory windows, counted from the relinquished-property closing
IDENTIFICATION_PERIOD = timedelta(days=45)
EXCHANGE_PERIOD = timedelta(days=180)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _lookup(table: Dict[str, str], value: Any, default: str) -> str:
    if not value:
        return default
    key = str(value).strip().lower().replace(" ", "_")
    return table.get(key, default)


def map_matter_status(pp_status: Any) -> str:
    """PP matter status → exchange status. Unknown values become PENDING."""
    return _lookup(MATTER_STATUS_MAP, pp_status, DEFAULT_MATTER_STATUS)


def map_task_status(pp_status: Any) -> str:
    return _lookup(TASK_STATUS_MAP, pp_status, DEFAULT_TASK_STATUS)


def map_task_priority(pp_priority: Any) -> str:
    return _lookup(TASK_PRIORITY_MAP, pp_priority, DEFAULT_TASK_PRIORITY)


def parse_pp_datetime(value: Any) -> Optional[datetime]:
    """Parse a PP timestamp into a naive UTC datetime.

    Handles "2024-03-01T15:04:05Z", "2024-03-01T15:04:05.123+02:00",
    "2024-03-01 15:04:05" and bare dates. Unparseable values yield None
    rather than failing the whole record.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _external_id(raw: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return str(value)
    raise RecordTransformError(None, f"Record has none of the id fields {keys}")


def _ref_id(raw: Dict[str, Any], key: str) -> Optional[str]:
    """Id of a nested reference object, e.g. raw["matter_ref"]["id"]."""
    ref = raw.get(key)
    if isinstance(ref, dict) and ref.get("id") not in (None, ""):
        return str(ref["id"])
    return None


def _first_ref_id(raw: Dict[str, Any], key: str) -> Optional[str]:
    """Id of the first element of a reference list, e.g. assigned_to_users."""
    refs = raw.get(key)
    if isinstance(refs, list):
        for ref in refs:
            if isinstance(ref, dict) and ref.get("id") not in (None, ""):
                return str(ref["id"])
    return None


def _units(cents: Any) -> float:
    if cents in (None, ""):
        return 0.0
    return float(cents) / 100.0


def _decimal(value: Any) -> Optional[float]:
    """Parse "1,250,000.00" / "$1250000" style custom-field amounts."""
    if value in (None, ""):
        return None
    try:
        return float(str(value).replace(",", "").replace("$", ""))
    except ValueError:
        return None


def _custom_field(raw: Dict[str, Any], label: str) -> Any:
    """Value of a PP custom field by label, from either known layout."""
    values = raw.get("custom_field_values")
    if isinstance(values, list):
        for item in values:
            if not isinstance(item, dict):
                continue
            ref = item.get("custom_field_ref") or {}
            if str(ref.get("label", "")).lower() == label.lower():
                return item.get("value_number") or item.get("value_string")
    custom = raw.get("custom_fields")
    if isinstance(custom, dict):
        return custom.get(label)
    return None


def _join(*parts: Any) -> Optional[str]:
    kept = [str(p) for p in parts if p]
    return ", ".join(kept) if kept else None


def _raw_json(raw: Dict[str, Any]) -> str:
    return json.dumps(raw, default=str)


# ── Transformers ──────────────────────────────────────────────────────────────

def transform_contact(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a PP contact into Contact field dict.

    Names fall back to splitting display_name ("Jane Q Doe" → "Jane",
    "Q Doe") when first_name/last_name are absent.
    """
    pp_id = _external_id(raw, "id")
    display_name = raw.get("display_name") or None
    first_name = raw.get("first_name")
    last_name = raw.get("last_name")
    if display_name and not (first_name or last_name):
        head, _, tail = display_name.partition(" ")
        first_name, last_name = head, tail

    account = raw.get("account_ref") if isinstance(raw.get("account_ref"), dict) else {}
    address = raw.get("address") if isinstance(raw.get("address"), dict) else raw

    return {
        "pp_contact_id": pp_id,
        "first_name": first_name or "",
        "last_name": last_name or "",
        "display_name": display_name,
        "email": raw.get("email") or None,
        "phone_mobile": raw.get("phone_mobile") or raw.get("phone") or None,
        "phone_work": raw.get("phone_work") or None,
        "phone_home": raw.get("phone_home") or None,
        "company": raw.get("company") or account.get("display_name") or None,
        "address": _join(
            address.get("address_line_1") or address.get("street_address_1"),
            address.get("address_line_2") or address.get("street_address_2"),
            address.get("city"),
            address.get("state"),
            address.get("zip_code") or address.get("zip"),
        ),
        "account_ref_id": _ref_id(raw, "account_ref"),
        "account_ref_name": account.get("display_name"),
        "is_primary_contact": bool(raw.get("is_primary_contact")),
        "pp_created_at": parse_pp_datetime(raw.get("created_at")),
        "pp_updated_at": parse_pp_datetime(raw.get("updated_at")),
        "pp_data_json": _raw_json(raw),
    }


def transform_matter(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a PP matter into Exchange field dict.

    An unnamed matter gets the placeholder "Matter <id>". When the matter
    has an opening date, the 45-day identification and 180-day exchange
    deadlines are derived from it.
    """
    pp_id = _external_id(raw, "id", "matter_id")
    start_date = parse_pp_datetime(raw.get("open_date") or raw.get("opened_at"))
    completion_date = parse_pp_datetime(raw.get("close_date") or raw.get("closed_at"))

    return {
        "pp_matter_id": pp_id,
        "pp_matter_number": (
            str(raw["number"]) if raw.get("number") not in (None, "")
            else raw.get("matter_number")
        ),
        "name": raw.get("display_name") or raw.get("name") or f"Matter {pp_id}",
        "status": map_matter_status(raw.get("status")),
        "pp_matter_status": raw.get("status"),
        "pp_practice_area": raw.get("practice_area"),
        "notes": raw.get("notes") or raw.get("description") or None,
        "exchange_value": _decimal(_custom_field(raw, "exchange_value")),
        "pp_account_ref_id": _ref_id(raw, "account_ref") or _ref_id(raw, "client"),
        "pp_coordinator_user_id": _first_ref_id(raw, "assigned_to_users"),
        "start_date": start_date,
        "completion_date": completion_date,
        "identification_deadline": start_date + IDENTIFICATION_PERIOD if start_date else None,
        "completion_deadline": start_date + EXCHANGE_PERIOD if start_date else None,
        "pp_data_json": _raw_json(raw),
    }


def transform_task(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a PP task into Task field dict."""
    pp_id = _external_id(raw, "id")
    return {
        "pp_task_id": pp_id,
        "title": raw.get("subject") or raw.get("title") or f"Task {pp_id}",
        "description": raw.get("notes") or raw.get("description") or None,
        "status": map_task_status(raw.get("status")),
        "priority": map_task_priority(raw.get("priority")),
        "due_date": parse_pp_datetime(raw.get("due_date")),
        "completed_at": parse_pp_datetime(raw.get("completed_at")),
        "pp_matter_ref_id": _ref_id(raw, "matter_ref") or _ref_id(raw, "matter"),
        "pp_assigned_user_id": (
            _first_ref_id(raw, "assigned_to_users") or _ref_id(raw, "assigned_to")
        ),
        "pp_data_json": _raw_json(raw),
    }


def _invoice_status(raw: Dict[str, Any]) -> str:
    if (raw.get("total_outstanding") or 0) == 0 and (raw.get("total") or 0) > 0:
        return "paid"
    if (raw.get("total_paid") or 0) > 0:
        return "partial"
    return "unpaid"


def transform_invoice(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a PP invoice into Invoice field dict. Cents become units."""
    pp_id = _external_id(raw, "id")
    return {
        "pp_invoice_id": pp_id,
        "issue_date": parse_pp_datetime(raw.get("issue_date")),
        "due_date": parse_pp_datetime(raw.get("due_date")),
        "status": _invoice_status(raw),
        "invoice_type": raw.get("invoice_type"),
        "subtotal": _units(raw.get("subtotal")),
        "tax": _units(raw.get("tax")),
        "discount": _units(raw.get("discount")),
        "total": _units(raw.get("total")),
        "total_paid": _units(raw.get("total_paid")),
        "total_outstanding": _units(raw.get("total_outstanding")),
        "pp_matter_ref_id": _ref_id(raw, "matter_ref"),
        "pp_account_ref_id": _ref_id(raw, "account_ref"),
        "pp_data_json": _raw_json(raw),
    }


def transform_expense(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a PP expense into Expense field dict. Cents become units."""
    pp_id = _external_id(raw, "id")
    return {
        "pp_expense_id": pp_id,
        "description": raw.get("description") or None,
        "expense_date": parse_pp_datetime(raw.get("date")),
        "quantity": float(raw.get("qty") or 1),
        "price": _units(raw.get("price")),
        "amount": _units(raw.get("amount")),
        "is_billable": bool(raw.get("is_billable")),
        "is_billed": bool(raw.get("is_billed")),
        "pp_matter_ref_id": _ref_id(raw, "matter_ref"),
        "pp_account_ref_id": _ref_id(raw, "account_ref"),
        "pp_data_json": _raw_json(raw),
    }


def transform_user(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a PP user into User field dict.

    Name keys are only emitted when PP has a value, so linking a PP user to
    an existing local account never blanks the locally entered names.
    """
    pp_id = _external_id(raw, "id")
    email = raw.get("email")
    if not email:
        raise RecordTransformError(pp_id, "PP user has no email to match on")

    fields: Dict[str, Any] = {
        "pp_user_id": pp_id,
        "email": str(email).strip().lower(),
        "pp_display_name": raw.get("display_name"),
        "pp_is_active": raw.get("is_active"),
        "pp_data_json": _raw_json(raw),
    }
    if raw.get("first_name"):
        fields["first_name"] = raw["first_name"]
    if raw.get("last_name"):
        fields["last_name"] = raw["last_name"]
    return fields
