"""
External-id → local-id lookups for wiring foreign keys during a sync run.

One query per kind at the start of the run replaces a query per record.
The cache is never persisted: build a new resolver for every run, since
rows created since the last build would otherwise be invisible.
"""
import logging
from typing import Dict, Iterable, Optional

from sqlmodel import Session, select

from exchangesync.models.entities import Contact, Exchange, User

logger = logging.getLogger(__name__)

# kind → (model, external-id column, column that marks the preferred row)
KIND_SOURCES = {
    "users": (User, "pp_user_id", None),
    "contacts": (Contact, "pp_contact_id", None),
    # Matters and invoices point at the PP account; the account's primary
    # contact stands in for the client.
    "accounts": (Contact, "account_ref_id", "is_primary_contact"),
    "exchanges": (Exchange, "pp_matter_id", None),
}


class RelationshipResolver:
    """Per-run cache of external ids to local primary keys."""

    def __init__(self, engine):
        self.engine = engine
        self._maps: Dict[str, Dict[str, int]] = {}

    def build_cache(self, kinds: Iterable[str]) -> None:
        """Load the mapping for each kind with one query apiece."""
        for kind in kinds:
            if kind not in KIND_SOURCES:
                raise ValueError(f"Unknown relationship kind: {kind}")
            model, column, prefer_column = KIND_SOURCES[kind]
            external = getattr(model, column)
            columns = [model.id, external]
            if prefer_column:
                columns.append(getattr(model, prefer_column))

            mapping: Dict[str, int] = {}
            with Session(self.engine) as s:
                rows = s.exec(
                    select(*columns).where(external != None).order_by(model.id)  # noqa: E711
                ).all()
            for row in rows:
                local_id, external_id = row[0], str(row[1])
                preferred = bool(row[2]) if prefer_column else False
                if preferred or external_id not in mapping:
                    mapping[external_id] = local_id
            self._maps[kind] = mapping
            logger.debug("Resolver cache for %s: %d ids", kind, len(mapping))

    def resolve(self, kind: str, external_id: Optional[str]) -> Optional[int]:
        """Local id for an external id, or None when unmapped."""
        if external_id is None:
            return None
        return self._maps.get(kind, {}).get(str(external_id))

    def remember(
        self,
        kind: str,
        external_id: Optional[str],
        local_id: Optional[int],
        prefer: bool = False,
    ) -> None:
        """Add an id created or updated earlier in the same run."""
        if external_id is None or local_id is None:
            return
        mapping = self._maps.setdefault(kind, {})
        key = str(external_id)
        if prefer or key not in mapping:
            mapping[key] = local_id

    def size(self, kind: str) -> int:
        return len(self._maps.get(kind, {}))
