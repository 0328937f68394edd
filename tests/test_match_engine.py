from __future__ import annotations

import datetime as dt
import tempfile
import unittest
from pathlib import Path

import pendulum
from sqlalchemy.dialects import sqlite

from contactcache.core.config import MatchSettings
from contactcache.db.base import Base
from contactcache.db.engine import ConnectionRouter, make_engine
from contactcache.db.models.cache import CacheRecord
from contactcache.db.repo import CacheRepo
from contactcache.rules.errors import ConfigurationError, StoreError
from contactcache.rules.models import (
    MATCHING_ADDRESS,
    MATCHING_EMAIL,
    MATCHING_EXPLICIT,
    MATCHING_MOBILE,
    MATCHING_PHONE,
    SCOPE_CATEGORY,
    SCOPE_GLOBAL,
    SCOPE_UTM_SOURCE,
    ClientData,
    ContactData,
    DuplicateRule,
    LimitRule,
)
from contactcache.services.contact_cache import ContactCache
from contactcache.services.match_engine import MatchEngine, ucwords


SETTINGS = MatchSettings(timezone="UTC", phone_region="US", exclusive_address=False)


def _now() -> dt.datetime:
    return pendulum.now("UTC")


class _NoQueryRepo:
    table = CacheRecord.__table__

    def count(self, predicate):  # type: ignore[no-untyped-def]
        raise AssertionError("count should not run")

    def exists_one(self, predicate):  # type: ignore[no-untyped-def]
        raise AssertionError("exists_one should not run")


class _CacheTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        url = f"sqlite:///{(root / 'data' / 'cache.db').as_posix()}"
        engine = make_engine(url)
        Base.metadata.create_all(engine)
        self.router = ConnectionRouter(engine)
        self.cache = ContactCache(self.router, project_root=root, database_url=url, settings=SETTINGS)
        self.engine = self.cache.engine

    def tearDown(self) -> None:
        self.router.dispose()
        self._td.cleanup()

    def _record(self, contact: ContactData, client: ClientData, *, days_ago: float = 0, **kwargs) -> int:  # type: ignore[no-untyped-def]
        send_time = _now() - dt.timedelta(days=days_ago)
        return self.cache.record(contact, client, send_time=send_time, **kwargs)


class FindDuplicateTests(_CacheTestCase):
    def test_email_duplicate_is_client_specific(self) -> None:
        rec_id = self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=2)
        rules = [{"matching": MATCHING_EMAIL, "scope": SCOPE_GLOBAL, "duration": "P7D"}]
        newcomer = ContactData(id=6, email="a@b.com")

        hit = self.engine.find_duplicate(newcomer, ClientData.build(9), rules)
        self.assertIsNotNone(hit)
        self.assertEqual(hit.id, rec_id)
        self.assertEqual(hit.contact_id, 5)

        self.assertIsNone(self.engine.find_duplicate(newcomer, ClientData.build(10), rules))

    def test_window_excludes_older_rows(self) -> None:
        self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=10)
        rules = [DuplicateRule(matching=MATCHING_EMAIL, scope=SCOPE_GLOBAL, duration="P7D")]
        self.assertIsNone(self.engine.find_duplicate(ContactData(id=6, email="a@b.com"), ClientData.build(9), rules))

    def test_any_rule_may_match(self) -> None:
        self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=10)
        rules = [
            DuplicateRule(matching=MATCHING_EXPLICIT, scope=SCOPE_GLOBAL, duration="P1D"),
            DuplicateRule(matching=MATCHING_EMAIL, scope=SCOPE_GLOBAL, duration="P30D"),
        ]
        self.assertIsNotNone(self.engine.find_duplicate(ContactData(id=6, email="a@b.com"), ClientData.build(9), rules))

    def test_explicit_contact_match(self) -> None:
        self._record(ContactData(id=5), ClientData.build(9), days_ago=1)
        rules = [DuplicateRule(matching=MATCHING_EXPLICIT, scope=SCOPE_GLOBAL, duration="P7D")]
        self.assertIsNotNone(self.engine.find_duplicate(ContactData(id=5), ClientData.build(9), rules))
        self.assertIsNone(self.engine.find_duplicate(ContactData(id=50), ClientData.build(9), rules))

    def test_phone_is_normalized_on_both_sides(self) -> None:
        self._record(ContactData(id=5, phone="(555) 123-4567"), ClientData.build(9), days_ago=1)
        rules = [DuplicateRule(matching=MATCHING_PHONE, scope=SCOPE_GLOBAL, duration="P7D")]
        hit = self.engine.find_duplicate(ContactData(id=6, phone="555.123.4567"), ClientData.build(9), rules)
        self.assertIsNotNone(hit)

    def test_mobile_matches_mobile_column(self) -> None:
        self._record(ContactData(id=5, mobile="555-987-6543"), ClientData.build(9), days_ago=1)
        rules = [DuplicateRule(matching=MATCHING_MOBILE, scope=SCOPE_GLOBAL, duration="P7D")]
        self.assertIsNotNone(self.engine.find_duplicate(ContactData(id=6, mobile="5559876543"), ClientData.build(9), rules))

    def test_address_match_is_case_normalized(self) -> None:
        self._record(
            ContactData(id=5, address1="12 main st", city="springfield", zipcode="12345"),
            ClientData.build(9),
            days_ago=1,
        )
        rules = [DuplicateRule(matching=MATCHING_ADDRESS, scope=SCOPE_GLOBAL, duration="P7D")]
        hit = self.engine.find_duplicate(
            ContactData(id=6, address1="12 Main St", city="Springfield", zipcode="12345"),
            ClientData.build(9),
            rules,
        )
        self.assertIsNotNone(hit)

    def test_scope_values_widen_the_match(self) -> None:
        self._record(ContactData(id=5, email="x@y.com"), ClientData.build(9), days_ago=1, utm_source="google")
        rules = [DuplicateRule(matching=MATCHING_EMAIL, scope=SCOPE_UTM_SOURCE, duration="P7D")]
        hit = self.engine.find_duplicate(ContactData(id=6, email="other@y.com"), ClientData.build(9), rules, utm_source="google")
        self.assertIsNotNone(hit)

    def test_no_active_dimension_issues_no_query(self) -> None:
        engine = MatchEngine(_NoQueryRepo(), settings=SETTINGS)  # type: ignore[arg-type]
        client = ClientData.build(9)
        rules = [
            DuplicateRule(matching=MATCHING_EMAIL, scope=SCOPE_GLOBAL, duration="P7D"),
            DuplicateRule(matching=MATCHING_PHONE | MATCHING_MOBILE, scope=SCOPE_GLOBAL, duration="P7D"),
            DuplicateRule(matching=MATCHING_ADDRESS, scope=SCOPE_CATEGORY, duration="P7D"),
        ]
        contact = ContactData(id=6, email="   ", phone="not a phone", address1="12 Main St")
        self.assertIsNone(engine.find_duplicate(contact, client, rules))
        self.assertIsNone(engine.find_duplicate(contact, client, []))

    def test_out_of_range_duration_uses_default_window(self) -> None:
        self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=2)
        rules = [DuplicateRule(matching=MATCHING_EMAIL, scope=SCOPE_GLOBAL, duration="P3000Y")]
        self.assertIsNotNone(self.engine.find_duplicate(ContactData(id=6, email="a@b.com"), ClientData.build(9), rules))

    def test_rules_as_mappings_and_missing_keys(self) -> None:
        with self.assertRaises(ConfigurationError):
            self.engine.find_duplicate(ContactData(id=6), ClientData.build(9), [{"matching": 1}])

    def test_missing_client_fails_fast(self) -> None:
        rules = [DuplicateRule(matching=MATCHING_EMAIL, scope=SCOPE_GLOBAL, duration="P7D")]
        with self.assertRaises(ConfigurationError):
            self.engine.find_duplicate(ContactData(id=6, email="a@b.com"), None, rules)

    def test_store_error_is_not_no_match(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            empty = make_engine(f"sqlite:///{(Path(td) / 'empty.db').as_posix()}")
            try:
                engine = MatchEngine(CacheRepo(ConnectionRouter(empty)), settings=SETTINGS)
                rules = [DuplicateRule(matching=MATCHING_EMAIL, scope=SCOPE_GLOBAL, duration="P7D")]
                with self.assertRaises(StoreError):
                    engine.find_duplicate(ContactData(id=6, email="a@b.com"), ClientData.build(9), rules)
            finally:
                empty.dispose()


class FindLimitTests(_CacheTestCase):
    def test_first_exceeded_rule_wins(self) -> None:
        client = ClientData.build(9)
        for i in range(3):
            self._record(ContactData(id=100 + i), client, days_ago=0.1)
        rules = [
            LimitRule(scope=SCOPE_GLOBAL, duration="P1D", quantity=5),
            LimitRule(scope=SCOPE_GLOBAL, duration="P1D", quantity=2),
            LimitRule(scope=SCOPE_GLOBAL, duration="P1D", quantity=1),
        ]
        hit = self.engine.find_limit(client, rules)
        self.assertIsNotNone(hit)
        self.assertEqual(hit.rule, rules[1])
        self.assertEqual(hit.count, 3)

    def test_count_equal_to_quantity_does_not_trigger(self) -> None:
        client = ClientData.build(9)
        for i in range(3):
            self._record(ContactData(id=100 + i), client, days_ago=0.1)
        self.assertIsNone(self.engine.find_limit(client, [{"scope": 1, "duration": "P1D", "quantity": 3}]))

    def test_limit_counts_only_this_client_and_window(self) -> None:
        self._record(ContactData(id=1), ClientData.build(9), days_ago=0.1)
        self._record(ContactData(id=2), ClientData.build(10), days_ago=0.1)
        self._record(ContactData(id=3), ClientData.build(9), days_ago=5)
        hit = self.engine.find_limit(ClientData.build(9), [LimitRule(scope=SCOPE_GLOBAL, duration="P1D", quantity=0)])
        self.assertEqual(hit.count, 1)

    def test_utm_source_and_category_scopes(self) -> None:
        client = ClientData.build(9, 3)
        self._record(ContactData(id=1), client, days_ago=0.1, utm_source="google")
        self._record(ContactData(id=2), client, days_ago=0.1, utm_source="bing")
        self._record(ContactData(id=3), ClientData.build(9, 4), days_ago=0.1)

        by_source = self.engine.find_limit(client, [LimitRule(scope=SCOPE_UTM_SOURCE, duration="P1D", quantity=0, value="google")])
        self.assertEqual(by_source.count, 1)

        by_category = self.engine.find_limit(client, [LimitRule(scope=SCOPE_CATEGORY, duration="P1D", quantity=0, value="3")])
        self.assertEqual(by_category.count, 2)

    def test_out_of_range_duration_uses_default_window(self) -> None:
        client = ClientData.build(9)
        self._record(ContactData(id=1), client, days_ago=0.1)
        hit = self.engine.find_limit(client, [LimitRule(scope=SCOPE_GLOBAL, duration="P3000Y", quantity=0)])
        self.assertEqual(hit.count, 1)

    def test_send_time_moves_the_window(self) -> None:
        client = ClientData.build(9)
        self._record(ContactData(id=1), client, days_ago=10)
        rules = [LimitRule(scope=SCOPE_GLOBAL, duration="P1D", quantity=0)]
        self.assertIsNone(self.engine.find_limit(client, rules))
        back_dated = _now() - dt.timedelta(days=9.5)
        self.assertIsNotNone(self.engine.find_limit(client, rules, send_time=back_dated))

    def test_missing_client_fails_fast(self) -> None:
        with self.assertRaises(ConfigurationError):
            self.engine.find_limit(ClientData(id=0), [LimitRule(scope=1, duration="P1D", quantity=1)])


class FindExclusiveTests(_CacheTestCase):
    EXCLUSIVE = {"matching": MATCHING_EMAIL | MATCHING_PHONE, "scope": SCOPE_GLOBAL, "duration": "P7D"}

    def test_exclusivity_spans_clients(self) -> None:
        rec_id = self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=1, exclusive=self.EXCLUSIVE)
        hit = self.engine.find_exclusive(ContactData(id=6, email="a@b.com"), ClientData.build(10))
        self.assertIsNotNone(hit)
        self.assertEqual(hit.id, rec_id)

    def test_expired_exclusivity_is_inert(self) -> None:
        self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=10, exclusive=self.EXCLUSIVE)
        self.assertIsNone(self.engine.find_exclusive(ContactData(id=6, email="a@b.com"), ClientData.build(10)))

    def test_non_exclusive_rows_are_ignored(self) -> None:
        self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=1)
        self.assertIsNone(self.engine.find_exclusive(ContactData(id=5, email="a@b.com"), ClientData.build(10)))

    def test_pattern_must_include_the_dimension(self) -> None:
        explicit_only = {"matching": MATCHING_EXPLICIT, "scope": SCOPE_GLOBAL, "duration": "P7D"}
        self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=1, exclusive=explicit_only)
        self.assertIsNone(self.engine.find_exclusive(ContactData(id=6, email="a@b.com"), ClientData.build(10)))
        self.assertIsNotNone(self.engine.find_exclusive(ContactData(id=5), ClientData.build(10)))

    def test_category_scoped_exclusivity(self) -> None:
        locked = {"matching": MATCHING_EMAIL, "scope": SCOPE_CATEGORY, "duration": "P7D"}
        self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9, 3), days_ago=1, exclusive=locked)
        contact = ContactData(id=6, email="a@b.com")
        self.assertIsNotNone(self.engine.find_exclusive(contact, ClientData.build(10, 3)))
        self.assertIsNone(self.engine.find_exclusive(contact, ClientData.build(10, 4)))
        self.assertIsNone(self.engine.find_exclusive(contact, ClientData.build(10)))

    def test_send_time_is_the_expiration_floor(self) -> None:
        self._record(ContactData(id=5, email="a@b.com"), ClientData.build(9), days_ago=1, exclusive=self.EXCLUSIVE)
        later = _now() + dt.timedelta(days=30)
        self.assertIsNone(self.engine.find_exclusive(ContactData(id=6, email="a@b.com"), ClientData.build(10), send_time=later))

    def test_one_group_per_dimension(self) -> None:
        contact = ContactData(id=6, email="a@b.com", phone="555-123-4567", mobile="555-987-6543")
        groups = self.engine.exclusive_filters(contact, ClientData.build(10), scope=SCOPE_GLOBAL)
        self.assertEqual(len(groups), 4)
        self.assertEqual(groups[1].get("exclusive_pattern"), (2, 3, 6, 7, 10, 11, 14, 15))
        self.assertEqual(groups[2].get("exclusive_pattern"), (4, 5, 6, 7, 12, 13, 14, 15))
        self.assertEqual(groups[3].get("mobile"), "+15559876543")
        self.assertTrue(all(g.get("exclusive_scope") == (1,) for g in groups))

    def test_category_scope_duplicates_groups(self) -> None:
        contact = ContactData(id=6, email="a@b.com")
        groups = self.engine.exclusive_filters(contact, ClientData.build(10, 3))
        self.assertEqual(len(groups), 4)
        locked = [g for g in groups if g.get("category_id") == 3]
        self.assertEqual(len(locked), 2)
        self.assertTrue(all(g.get("exclusive_scope") == (2, 3) for g in locked))

    def test_category_scope_without_category_adds_no_clauses(self) -> None:
        contact = ContactData(id=6, email="a@b.com")
        client = ClientData.build(10)
        global_only = self.engine.exclusive_filters(contact, client, scope=SCOPE_GLOBAL)
        both = self.engine.exclusive_filters(contact, client, scope=SCOPE_GLOBAL | SCOPE_CATEGORY)
        self.assertEqual(len(both), len(global_only))
        sql = str(self.engine.builder.compose(both).compile(dialect=sqlite.dialect()))
        self.assertEqual(sql.count("exclusive_pattern IN"), 2)
        self.assertEqual(sql.count("exclusive_expire_date IS NOT NULL"), 1)

    def test_address_exclusivity_requires_opt_in(self) -> None:
        contact = ContactData(id=6, address1="12 Main St", city="Springfield")
        client = ClientData.build(10)
        with self.assertLogs("match_engine", level="INFO") as logs:
            off = self.engine.exclusive_filters(contact, client, matching=MATCHING_ADDRESS)
        self.assertEqual(off, [])
        self.assertTrue(any("CACHE_EXCLUSIVE_ADDRESS" in line for line in logs.output))

        opted_in = MatchEngine(
            self.cache.repo,
            settings=MatchSettings(timezone="UTC", phone_region="US", exclusive_address=True),
        )
        on = opted_in.exclusive_filters(contact, client, matching=MATCHING_ADDRESS)
        self.assertEqual(len(on), 1)
        self.assertEqual(on[0].get("address1"), "12 Main St")

    def test_no_dimensions_means_no_query(self) -> None:
        engine = MatchEngine(_NoQueryRepo(), settings=SETTINGS)  # type: ignore[arg-type]
        self.assertIsNone(engine.find_exclusive(ContactData(email=" "), ClientData.build(10)))


class UcwordsTests(unittest.TestCase):
    def test_only_first_letters_change(self) -> None:
        self.assertEqual(ucwords("  12 main ST "), "12 Main ST")
        self.assertEqual(ucwords(None), "")


if __name__ == "__main__":
    unittest.main()
