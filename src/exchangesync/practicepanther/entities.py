"""
Per-entity sync configuration.

One EntitySpec per PP entity type tells the orchestrator which model and
conflict key to upsert into, which transformer to run, which foreign keys
to resolve, and which resolver kinds the synced rows feed for entity types
later in the same run.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from sqlmodel import SQLModel

from exchangesync.models.entities import Contact, Exchange, Expense, Invoice, Task, User
from exchangesync.practicepanther.transformers import (
    transform_contact,
    transform_expense,
    transform_invoice,
    transform_matter,
    transform_task,
    transform_user,
)


@dataclass(frozen=True)
class Reference:
    """fields[fk_field] = resolver.resolve(kind, fields[source_field])"""

    fk_field: str
    kind: str
    source_field: str


@dataclass(frozen=True)
class Produces:
    """After upsert: resolver.remember(kind, fields[source_field], row.id)."""

    kind: str
    source_field: str
    prefer_field: Optional[str] = None


@dataclass(frozen=True)
class EntitySpec:
    name: str
    model: Type[SQLModel]
    key_field: str
    transform: Callable[[Dict[str, Any]], Dict[str, Any]]
    references: Tuple[Reference, ...] = ()
    produces: Tuple[Produces, ...] = ()
    # Users are linked to existing accounts by email, never created
    create_missing: bool = True
    fallback_match: Optional[str] = None

    @property
    def reference_kinds(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(ref.kind for ref in self.references))


ENTITY_SPECS: Dict[str, EntitySpec] = {
    "contacts": EntitySpec(
        name="contacts",
        model=Contact,
        key_field="pp_contact_id",
        transform=transform_contact,
        produces=(
            Produces("contacts", "pp_contact_id"),
            Produces("accounts", "account_ref_id", prefer_field="is_primary_contact"),
        ),
    ),
    "users": EntitySpec(
        name="users",
        model=User,
        key_field="pp_user_id",
        transform=transform_user,
        produces=(Produces("users", "pp_user_id"),),
        create_missing=False,
        fallback_match="email",
    ),
    "matters": EntitySpec(
        name="matters",
        model=Exchange,
        key_field="pp_matter_id",
        transform=transform_matter,
        references=(
            Reference("client_id", "accounts", "pp_account_ref_id"),
            Reference("coordinator_id", "users", "pp_coordinator_user_id"),
        ),
        produces=(Produces("exchanges", "pp_matter_id"),),
    ),
    "tasks": EntitySpec(
        name="tasks",
        model=Task,
        key_field="pp_task_id",
        transform=transform_task,
        references=(
            Reference("exchange_id", "exchanges", "pp_matter_ref_id"),
            Reference("assigned_to_user_id", "users", "pp_assigned_user_id"),
        ),
    ),
    "invoices": EntitySpec(
        name="invoices",
        model=Invoice,
        key_field="pp_invoice_id",
        transform=transform_invoice,
        references=(
            Reference("exchange_id", "exchanges", "pp_matter_ref_id"),
            Reference("contact_id", "accounts", "pp_account_ref_id"),
        ),
    ),
    "expenses": EntitySpec(
        name="expenses",
        model=Expense,
        key_field="pp_expense_id",
        transform=transform_expense,
        references=(Reference("exchange_id", "exchanges", "pp_matter_ref_id"),),
    ),
}

# Independent entities first, then the ones that reference them
SYNC_ORDER: Tuple[str, ...] = ("contacts", "users", "matters", "tasks", "invoices", "expenses")


def get_entity_spec(entity_type: str) -> EntitySpec:
    try:
        return ENTITY_SPECS[entity_type]
    except KeyError:
        raise ValueError(
            f"Unknown entity type {entity_type!r}; expected one of {', '.join(SYNC_ORDER)}"
        )
