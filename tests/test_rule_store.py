"""Unit tests for RuleStore."""

import random

from k8s_ingress_hosts.cli import Rule, RuleStore


class TestRuleStoreAppend:
    """Tests for RuleStore append."""

    def test_append_adds_rule(self) -> None:
        store = RuleStore()

        store.append(Rule(domain="a.local", owner="svc-a"))

        assert list(store) == [Rule(domain="a.local", owner="svc-a")]

    def test_append_allows_duplicates(self) -> None:
        """The same (domain, owner) pair can be stored twice."""
        store = RuleStore()

        store.append(Rule(domain="a.local", owner="svc-a"))
        store.append(Rule(domain="a.local", owner="svc-a"))

        assert len(store) == 2


class TestRuleStoreUpdate:
    """Tests for RuleStore update_owner_domain."""

    def test_update_overwrites_domain_of_owner(self) -> None:
        store = RuleStore(
            [Rule(domain="a.local", owner="svc-a"), Rule(domain="b.local", owner="svc-b")]
        )

        assert store.update_owner_domain("svc-a", "a2.local") is True

        assert list(store) == [
            Rule(domain="a2.local", owner="svc-a"),
            Rule(domain="b.local", owner="svc-b"),
        ]

    def test_update_only_touches_first_matching_entry(self) -> None:
        """An owner with several rules only gets its first entry rewritten."""
        store = RuleStore(
            [Rule(domain="a.local", owner="svc-a"), Rule(domain="a-admin.local", owner="svc-a")]
        )

        store.update_owner_domain("svc-a", "new.local")

        assert [r.domain for r in store] == ["new.local", "a-admin.local"]

    def test_update_unknown_owner_is_noop(self) -> None:
        store = RuleStore([Rule(domain="a.local", owner="svc-a")])

        assert store.update_owner_domain("svc-x", "x.local") is False
        assert list(store) == [Rule(domain="a.local", owner="svc-a")]


class TestRuleStoreRemove:
    """Tests for RuleStore remove_owner_domain."""

    def test_remove_matching_entry(self) -> None:
        store = RuleStore(
            [Rule(domain="a.local", owner="svc-a"), Rule(domain="b.local", owner="svc-b")]
        )

        assert store.remove_owner_domain("svc-a", "a.local") is True

        assert list(store) == [Rule(domain="b.local", owner="svc-b")]

    def test_remove_requires_owner_and_domain_to_match(self) -> None:
        store = RuleStore(
            [Rule(domain="a.local", owner="svc-a"), Rule(domain="b.local", owner="svc-a")]
        )

        assert store.remove_owner_domain("svc-b", "a.local") is False
        assert store.remove_owner_domain("svc-a", "c.local") is False
        assert len(store) == 2

    def test_remove_only_first_duplicate(self) -> None:
        store = RuleStore(
            [Rule(domain="a.local", owner="svc-a"), Rule(domain="a.local", owner="svc-a")]
        )

        store.remove_owner_domain("svc-a", "a.local")

        assert list(store) == [Rule(domain="a.local", owner="svc-a")]

    def test_remove_from_empty_store_is_noop(self) -> None:
        store = RuleStore()

        assert store.remove_owner_domain("svc-a", "a.local") is False
        assert len(store) == 0


class TestRuleStoreSortedView:
    """Tests for RuleStore sorted_view."""

    def test_sorted_view_is_case_insensitive(self) -> None:
        store = RuleStore(
            [
                Rule(domain="beta.local", owner="b"),
                Rule(domain="Alpha.local", owner="a"),
                Rule(domain="CHARLIE.local", owner="c"),
            ]
        )

        assert [r.domain for r in store.sorted_view()] == [
            "Alpha.local",
            "beta.local",
            "CHARLIE.local",
        ]

    def test_sorted_view_ignores_insertion_order(self) -> None:
        domains = [f"{c}{i}.example.com" for i, c in enumerate("qWeRtYuIoP")]
        rules = [Rule(domain=d, owner="svc") for d in domains]
        rng = random.Random(42)

        for _ in range(5):
            shuffled = rules[:]
            rng.shuffle(shuffled)
            view = RuleStore(shuffled).sorted_view()
            keys = [r.domain.lower() for r in view]
            assert keys == sorted(keys)

    def test_sorted_view_does_not_reorder_store(self) -> None:
        store = RuleStore([Rule(domain="b.local", owner="b"), Rule(domain="a.local", owner="a")])

        store.sorted_view()

        assert [r.domain for r in store] == ["b.local", "a.local"]
