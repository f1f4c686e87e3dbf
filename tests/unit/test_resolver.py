"""Tests for RelationshipResolver external-id → local-id caching."""
import pytest
from sqlmodel import Session

from exchangesync.models.entities import Contact, Exchange, User
from exchangesync.practicepanther.resolver import RelationshipResolver


@pytest.fixture
def seeded(engine):
    with Session(engine) as s:
        secondary = Contact(pp_contact_id="c-1", account_ref_id="acct-1", is_primary_contact=False)
        primary = Contact(pp_contact_id="c-2", account_ref_id="acct-1", is_primary_contact=True)
        other = Contact(pp_contact_id="c-3", account_ref_id="acct-2")
        user = User(email="casey@exchange.example", pp_user_id="u-1")
        unlinked = User(email="local@exchange.example")
        exchange = Exchange(pp_matter_id="m-1", name="Doe 1031")
        s.add_all([secondary, primary, other, user, unlinked, exchange])
        s.commit()
        return {
            "secondary": secondary.id,
            "primary": primary.id,
            "other": other.id,
            "user": user.id,
            "exchange": exchange.id,
        }


class TestRelationshipResolver:
    def test_resolves_each_kind(self, engine, seeded):
        resolver = RelationshipResolver(engine)
        resolver.build_cache(["contacts", "users", "exchanges"])
        assert resolver.resolve("contacts", "c-3") == seeded["other"]
        assert resolver.resolve("users", "u-1") == seeded["user"]
        assert resolver.resolve("exchanges", "m-1") == seeded["exchange"]

    def test_unknown_external_id_is_none(self, engine, seeded):
        resolver = RelationshipResolver(engine)
        resolver.build_cache(["exchanges"])
        assert resolver.resolve("exchanges", "m-404") is None
        assert resolver.resolve("exchanges", None) is None

    def test_account_prefers_primary_contact(self, engine, seeded):
        resolver = RelationshipResolver(engine)
        resolver.build_cache(["accounts"])
        assert resolver.resolve("accounts", "acct-1") == seeded["primary"]
        assert resolver.resolve("accounts", "acct-2") == seeded["other"]

    def test_users_without_pp_id_not_cached(self, engine, seeded):
        resolver = RelationshipResolver(engine)
        resolver.build_cache(["users"])
        assert resolver.size("users") == 1

    def test_unbuilt_kind_resolves_none(self, engine, seeded):
        assert RelationshipResolver(engine).resolve("users", "u-1") is None

    def test_unknown_kind_raises(self, engine):
        with pytest.raises(ValueError):
            RelationshipResolver(engine).build_cache(["widgets"])

    def test_remember_adds_ids_from_same_run(self, engine):
        resolver = RelationshipResolver(engine)
        resolver.build_cache(["exchanges"])
        resolver.remember("exchanges", "m-9", 42)
        assert resolver.resolve("exchanges", "m-9") == 42

    def test_remember_keeps_first_unless_preferred(self, engine):
        resolver = RelationshipResolver(engine)
        resolver.remember("accounts", "acct-9", 1)
        resolver.remember("accounts", "acct-9", 2)
        assert resolver.resolve("accounts", "acct-9") == 1
        resolver.remember("accounts", "acct-9", 3, prefer=True)
        assert resolver.resolve("accounts", "acct-9") == 3

    def test_remember_ignores_missing_values(self, engine):
        resolver = RelationshipResolver(engine)
        resolver.remember("users", None, 1)
        resolver.remember("users", "u-1", None)
        assert resolver.size("users") == 0

    def test_integer_ids_matched_as_strings(self, engine):
        resolver = RelationshipResolver(engine)
        resolver.remember("exchanges", 1234, 7)
        assert resolver.resolve("exchanges", "1234") == 7
