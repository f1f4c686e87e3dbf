"""Tests for PracticePanther record transformers (pure functions, no DB)."""
import json
from datetime import datetime
from pathlib import Path

import pytest

from exchangesync.practicepanther.errors import RecordTransformError
from exchangesync.practicepanther.transformers import (
    map_matter_status,
    map_task_priority,
    map_task_status,
    parse_pp_datetime,
    transform_contact,
    transform_expense,
    transform_invoice,
    transform_matter,
    transform_task,
    transform_user,
)

FIXTURES = Path(__file__).parent.parent / "fixtures"


def load_fixture(name):
    return json.loads((FIXTURES / name).read_text())


CONTACTS = load_fixture("pp_contacts.json")["results"]
MATTERS = load_fixture("pp_matters.json")["results"]
TASKS = load_fixture("pp_tasks.json")["results"]
INVOICE = load_fixture("pp_invoices.json")["results"][0]
EXPENSE = load_fixture("pp_expenses.json")["results"][0]
USERS = load_fixture("pp_users.json")["results"]


# ─── Vocabulary maps ──────────────────────────────────────────────────────────

class TestStatusMaps:
    @pytest.mark.parametrize("pp_status,expected", [
        ("Open", "PENDING"),
        ("active", "45D"),
        ("In Progress", "180D"),
        ("Closed", "COMPLETED"),
        ("Cancelled", "TERMINATED"),
    ])
    def test_matter_status(self, pp_status, expected):
        assert map_matter_status(pp_status) == expected

    def test_unknown_matter_status_is_pending(self):
        assert map_matter_status("archived-ish") == "PENDING"
        assert map_matter_status(None) == "PENDING"

    def test_task_status_not_completed(self):
        assert map_task_status("NotCompleted") == "PENDING"

    def test_task_status_default(self):
        assert map_task_status("") == "PENDING"

    def test_task_priority_normal_is_medium(self):
        assert map_task_priority("Normal") == "MEDIUM"
        assert map_task_priority("whatever") == "MEDIUM"


class TestParseDatetime:
    def test_z_suffix_is_utc(self):
        assert parse_pp_datetime("2024-03-01T15:04:05Z") == datetime(2024, 3, 1, 15, 4, 5)

    def test_offset_converted_to_naive_utc(self):
        assert parse_pp_datetime("2024-03-01T17:04:05+02:00") == datetime(2024, 3, 1, 15, 4, 5)

    def test_garbage_returns_none(self):
        assert parse_pp_datetime("not a date") is None

    def test_empty_returns_none(self):
        assert parse_pp_datetime("") is None
        assert parse_pp_datetime(None) is None


# ─── Contacts ─────────────────────────────────────────────────────────────────

class TestTransformContact:
    def test_ids_and_account(self):
        fields = transform_contact(CONTACTS[0])
        assert fields["pp_contact_id"] == "c-100"
        assert fields["account_ref_id"] == "acct-1"
        assert fields["is_primary_contact"] is True

    def test_company_falls_back_to_account_name(self):
        fields = transform_contact(CONTACTS[0])
        assert fields["company"] == "Harbor Holdings LLC"

    def test_names_split_from_display_name(self):
        fields = transform_contact(CONTACTS[1])
        assert fields["first_name"] == "Sam"
        assert fields["last_name"] == "Harbor"

    def test_address_joined(self):
        fields = transform_contact(CONTACTS[2])
        assert fields["address"] == "1 Main St, Portland, OR, 97201"

    def test_timestamps_parsed(self):
        fields = transform_contact(CONTACTS[0])
        assert fields["pp_updated_at"] == datetime(2024, 3, 1, 15, 4, 5)

    def test_raw_record_preserved(self):
        fields = transform_contact(CONTACTS[0])
        assert json.loads(fields["pp_data_json"])["email"] == "jane@harbor.example"

    def test_missing_id_raises(self):
        with pytest.raises(RecordTransformError):
            transform_contact({"display_name": "No Id"})


# ─── Matters ──────────────────────────────────────────────────────────────────

class TestTransformMatter:
    def test_basic_fields(self):
        fields = transform_matter(MATTERS[0])
        assert fields["pp_matter_id"] == "m-1"
        assert fields["pp_matter_number"] == "1042"
        assert fields["name"] == "Doe 1031 - Elm Street"
        assert fields["status"] == "45D"
        assert fields["pp_matter_status"] == "Active"

    def test_references(self):
        fields = transform_matter(MATTERS[0])
        assert fields["pp_account_ref_id"] == "acct-1"
        assert fields["pp_coordinator_user_id"] == "u-1"

    def test_deadlines_derived_from_open_date(self):
        fields = transform_matter(MATTERS[0])
        assert fields["start_date"] == datetime(2024, 3, 1)
        assert fields["identification_deadline"] == datetime(2024, 4, 15)
        assert fields["completion_deadline"] == datetime(2024, 8, 28)

    def test_exchange_value_from_custom_field(self):
        assert transform_matter(MATTERS[0])["exchange_value"] == 1250000.0

    def test_unnamed_matter_gets_placeholder(self):
        fields = transform_matter(MATTERS[1])
        assert fields["name"] == "Matter m-2"
        assert fields["status"] == "COMPLETED"

    def test_no_open_date_no_deadlines(self):
        fields = transform_matter({"id": "m-9"})
        assert fields["identification_deadline"] is None
        assert fields["completion_deadline"] is None


# ─── Tasks ────────────────────────────────────────────────────────────────────

class TestTransformTask:
    def test_basic_fields(self):
        fields = transform_task(TASKS[0])
        assert fields["title"] == "Collect identification letter"
        assert fields["status"] == "PENDING"
        assert fields["priority"] == "HIGH"
        assert fields["due_date"] == datetime(2024, 4, 15)

    def test_refs(self):
        fields = transform_task(TASKS[0])
        assert fields["pp_matter_ref_id"] == "m-1"
        assert fields["pp_assigned_user_id"] == "u-1"

    def test_placeholder_title(self):
        fields = transform_task(TASKS[1])
        assert fields["title"] == "Task t-2"
        assert fields["status"] == "COMPLETED"
        assert fields["pp_assigned_user_id"] is None


# ─── Invoices / expenses ──────────────────────────────────────────────────────

class TestTransformInvoice:
    def test_cents_to_units(self):
        fields = transform_invoice(INVOICE)
        assert fields["subtotal"] == 1500.0
        assert fields["discount"] == 50.0
        assert fields["total"] == 1450.0
        assert fields["total_outstanding"] == 1000.0

    def test_partial_status(self):
        assert transform_invoice(INVOICE)["status"] == "partial"

    def test_paid_status(self):
        raw = dict(INVOICE, total_paid=145000, total_outstanding=0)
        assert transform_invoice(raw)["status"] == "paid"

    def test_unpaid_status(self):
        raw = dict(INVOICE, total_paid=0, total_outstanding=145000)
        assert transform_invoice(raw)["status"] == "unpaid"

    def test_refs(self):
        fields = transform_invoice(INVOICE)
        assert fields["pp_matter_ref_id"] == "m-1"
        assert fields["pp_account_ref_id"] == "acct-1"


class TestTransformExpense:
    def test_fields(self):
        fields = transform_expense(EXPENSE)
        assert fields["pp_expense_id"] == "exp-1"
        assert fields["quantity"] == 2.0
        assert fields["price"] == 25.0
        assert fields["amount"] == 50.0
        assert fields["is_billable"] is True
        assert fields["is_billed"] is False
        assert fields["expense_date"] == datetime(2024, 3, 6)


# ─── Users ────────────────────────────────────────────────────────────────────

class TestTransformUser:
    def test_email_lowercased(self):
        assert transform_user(USERS[0])["email"] == "casey@exchange.example"

    def test_names_only_when_present(self):
        fields = transform_user(USERS[1])
        assert "first_name" not in fields
        assert "last_name" not in fields

    def test_missing_email_raises_with_id(self):
        with pytest.raises(RecordTransformError) as exc_info:
            transform_user({"id": "u-9"})
        assert exc_info.value.external_id == "u-9"
        assert exc_info.value.stage == "transform"
