from unittest.mock import Mock, patch

import pytest
import requests

from engines.wikidata_fetch import (
    PAGE_SIZE,
    build_query,
    fetch_all_dishes,
    fetch_page,
    infer_keyword_categories,
    normalize_binding,
)


def binding(qid, label, image="http://img/x.jpg", cuisines="", ingredients="", characteristics=""):
    row = {
        "dish": {"type": "uri", "value": f"http://www.wikidata.org/entity/{qid}"},
        "dishLabel": {"type": "literal", "value": label},
        "cuisines": {"type": "literal", "value": cuisines},
        "ingredients": {"type": "literal", "value": ingredients},
        "characteristics": {"type": "literal", "value": characteristics},
    }
    if image:
        row["image"] = {"type": "uri", "value": image}
    return row


def page_response(bindings):
    resp = Mock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = {"results": {"bindings": bindings}}
    return resp


class TestNormalize:

    def test_binding_to_record(self):
        record = normalize_binding(binding(
            "Q1", "Chicken Curry",
            cuisines="Indian cuisine,indian cuisine",
            ingredients="chicken, rice",
            characteristics="Savory",
        ))

        assert record["id"] == "http://www.wikidata.org/entity/Q1"
        assert record["cuisines"] == ["Indian cuisine"]
        assert record["ingredients"] == ["chicken", "rice"]
        # "savory" vient de la fiche et du mot-clé "curry": une seule fois
        assert record["categories"] == ["Savory", "meat", "rice"]

    def test_keyword_categories(self):
        assert infer_keyword_categories("Chocolate Cake", [], []) == ["sweet"]
        assert infer_keyword_categories("Ricecake", [], []) == []

    def test_query_pages(self):
        query = build_query(4000)

        assert f"LIMIT {PAGE_SIZE}" in query
        assert "OFFSET 4000" in query


class TestFetch:

    def test_dedupes_and_skips_placeholders(self):
        http = Mock()
        http.get.return_value = page_response([
            binding("Q1", "Pizza"),
            binding("Q1", "Pizza"),
            binding("Q2", "Q2"),
            binding("Q3", "Sans image", image=""),
            binding("Q4", "Ramen"),
        ])

        dishes = fetch_all_dishes(http)

        assert [d["name"] for d in dishes] == ["Pizza", "Ramen"]
        assert http.get.call_count == 1

    @patch("engines.wikidata_fetch.time.sleep")
    def test_paginates_until_short_page(self, mock_sleep):
        full = [binding(f"Q{i}", f"Dish {i}") for i in range(PAGE_SIZE)]
        http = Mock()
        http.get.side_effect = [page_response(full), page_response([binding("Q999999", "Last")])]

        dishes = fetch_all_dishes(http)

        assert len(dishes) == PAGE_SIZE + 1
        assert http.get.call_count == 2
        second_query = http.get.call_args_list[1][1]["params"]["query"]
        assert f"OFFSET {PAGE_SIZE}" in second_query

    @patch("engines.wikidata_fetch.time.sleep")
    def test_retries_then_gives_up(self, mock_sleep):
        http = Mock()
        http.get.side_effect = requests.exceptions.Timeout("lent")

        with pytest.raises(RuntimeError, match="Wikidata indisponible"):
            fetch_page(0, http)

        assert http.get.call_count == 3

    @patch("engines.wikidata_fetch.time.sleep")
    def test_recovers_after_one_failure(self, mock_sleep):
        http = Mock()
        http.get.side_effect = [requests.exceptions.ConnectionError("reset"), page_response([binding("Q1", "Pizza")])]

        assert len(fetch_page(0, http)) == 1
