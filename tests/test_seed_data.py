"""Tests for reference-data seeding."""

from models import Plan
from seed_data import PLANS, seed_database


class TestSeedDatabase:
    def test_seeds_all_plans_once(self, db) -> None:
        assert seed_database(db) == len(PLANS)
        assert seed_database(db) == 0
        assert {p.code for p in db.query(Plan).all()} == {"basic", "prime", "elite"}

    def test_only_missing_plans_are_added(self, db) -> None:
        db.add(Plan(code="prime", name="Prime (legacy)", billing_interval="month"))
        db.commit()

        assert seed_database(db) == len(PLANS) - 1
        assert db.query(Plan).filter(Plan.code == "prime").one().name == "Prime (legacy)"
