"""Tests for search result ranking and owner/name identifiers."""

from mpm.search import OwnerName, parse_owner_name_id, rank_search_results, rank_search_results_stable


def _names(items):
    return [item["name"] for item in items]


class TestOwnerName:
    def test_parses_owner_and_name(self) -> None:
        assert parse_owner_name_id("EssentialsX/Essentials") == OwnerName("EssentialsX", "Essentials")

    def test_free_text_is_not_owner_name(self) -> None:
        assert parse_owner_name_id("essentials") is None
        assert parse_owner_name_id("/Essentials") is None
        assert parse_owner_name_id("a/b/c") is None


class TestRanking:
    items = [{"name": "WorldEdit Extras"}, {"name": "AWorldEdit"}, {"name": "worldedit"}, {"name": "Zeta"}]

    def test_sorting_variant_puts_exact_first_then_alphabetical(self) -> None:
        ranked = rank_search_results(self.items, "WorldEdit", key=lambda item: item["name"])
        assert _names(ranked) == ["worldedit", "AWorldEdit", "WorldEdit Extras", "Zeta"]

    def test_stable_variant_keeps_upstream_order(self) -> None:
        ranked = rank_search_results_stable(self.items, "WorldEdit", key=lambda item: item["name"])
        assert _names(ranked) == ["worldedit", "WorldEdit Extras", "AWorldEdit", "Zeta"]

    def test_hyphen_and_space_are_equivalent(self) -> None:
        items = [{"name": "Other"}, {"name": "Chest Shop"}]
        assert _names(rank_search_results_stable(items, "chest-shop", key=lambda i: i["name"]))[0] == "Chest Shop"
        items = [{"name": "Other"}, {"name": "chest-shop"}]
        assert _names(rank_search_results_stable(items, "Chest Shop", key=lambda i: i["name"]))[0] == "chest-shop"
