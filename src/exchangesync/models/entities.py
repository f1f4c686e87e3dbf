"""
Local business entities populated from PracticePanther.

Every synced table carries:
  - a unique external-id column (the upsert conflict key),
  - pp_data_json, the untransformed PP record verbatim,
  - last_sync_at, stamped on every insert/update by the sync engine.

Foreign keys to other synced tables are nullable: a reference the
resolver cannot map yet is stored as NULL rather than blocking the sync.
"""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    """Internal staff account. PP users are linked to existing rows by email."""

    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "coordinator"

    pp_user_id: Optional[str] = Field(default=None, unique=True, index=True)
    pp_display_name: Optional[str] = None
    pp_is_active: Optional[bool] = None
    pp_data_json: Optional[str] = None
    last_sync_at: Optional[datetime] = None


class Contact(SQLModel, table=True):
    """A PP contact (person). Contacts belong to a PP account (the client)."""

    __tablename__ = "contacts"

    id: Optional[int] = Field(default=None, primary_key=True)
    pp_contact_id: str = Field(unique=True, index=True)
    first_name: str = ""
    last_name: str = ""
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone_mobile: Optional[str] = None
    phone_work: Optional[str] = None
    phone_home: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None

    # Account linkage: matters and invoices reference the account, not the contact
    account_ref_id: Optional[str] = Field(default=None, index=True)
    account_ref_name: Optional[str] = None
    is_primary_contact: bool = False

    pp_created_at: Optional[datetime] = None
    pp_updated_at: Optional[datetime] = None
    pp_data_json: Optional[str] = None
    last_sync_at: Optional[datetime] = None


class Exchange(SQLModel, table=True):
    """A 1031 exchange, synced from a PP matter."""

    __tablename__ = "exchanges"

    id: Optional[int] = Field(default=None, primary_key=True)
    pp_matter_id: str = Field(unique=True, index=True)
    pp_matter_number: Optional[str] = None
    name: str
    status: str = "PENDING"  # PENDING, 45D, 180D, COMPLETED, TERMINATED
    pp_matter_status: Optional[str] = None
    pp_practice_area: Optional[str] = None
    notes: Optional[str] = None
    exchange_value: Optional[float] = None

    client_id: Optional[int] = Field(default=None, foreign_key="contacts.id")
    coordinator_id: Optional[int] = Field(default=None, foreign_key="users.id")
    pp_account_ref_id: Optional[str] = None
    pp_coordinator_user_id: Optional[str] = None

    start_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    identification_deadline: Optional[datetime] = None  # start + 45 days
    completion_deadline: Optional[datetime] = None  # start + 180 days

    pp_data_json: Optional[str] = None
    last_sync_at: Optional[datetime] = None


class Task(SQLModel, table=True):
    """A PP task, attached to an exchange through its matter reference."""

    __tablename__ = "tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    pp_task_id: str = Field(unique=True, index=True)
    title: str
    description: Optional[str] = None
    status: str = "PENDING"
    priority: str = "MEDIUM"
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    exchange_id: Optional[int] = Field(default=None, foreign_key="exchanges.id", index=True)
    assigned_to_user_id: Optional[int] = Field(default=None, foreign_key="users.id")
    pp_matter_ref_id: Optional[str] = None
    pp_assigned_user_id: Optional[str] = None

    pp_data_json: Optional[str] = None
    last_sync_at: Optional[datetime] = None


class Invoice(SQLModel, table=True):
    """A PP invoice. Amounts are stored in currency units (PP sends cents)."""

    __tablename__ = "invoices"

    id: Optional[int] = Field(default=None, primary_key=True)
    pp_invoice_id: str = Field(unique=True, index=True)
    exchange_id: Optional[int] = Field(default=None, foreign_key="exchanges.id", index=True)
    contact_id: Optional[int] = Field(default=None, foreign_key="contacts.id")

    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    status: str = "unpaid"  # paid, partial, unpaid
    invoice_type: Optional[str] = None
    subtotal: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    total: float = 0.0
    total_paid: float = 0.0
    total_outstanding: float = 0.0

    pp_matter_ref_id: Optional[str] = None
    pp_account_ref_id: Optional[str] = None
    pp_data_json: Optional[str] = None
    last_sync_at: Optional[datetime] = None


class Expense(SQLModel, table=True):
    """A PP expense entry. Amounts are stored in currency units."""

    __tablename__ = "expenses"

    id: Optional[int] = Field(default=None, primary_key=True)
    pp_expense_id: str = Field(unique=True, index=True)
    exchange_id: Optional[int] = Field(default=None, foreign_key="exchanges.id", index=True)

    description: Optional[str] = None
    expense_date: Optional[datetime] = None
    quantity: float = 1.0
    price: float = 0.0
    amount: float = 0.0
    is_billable: bool = False
    is_billed: bool = False

    pp_matter_ref_id: Optional[str] = None
    pp_account_ref_id: Optional[str] = None
    pp_data_json: Optional[str] = None
    last_sync_at: Optional[datetime] = None
