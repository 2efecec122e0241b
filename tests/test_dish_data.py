import json
import random

import pytest

from conftest import dish_record, make_dish
from engines.dish_data import (
    DataUnavailableError,
    DishAiMeta,
    calibrate_ai_meta,
    dish_from_dict,
    extract_qid,
    fetch_dishes,
    is_placeholder_dish_name,
    load_dishes,
    round_half_up,
    sanitize_ai_meta,
)


class TestSanitize:

    def test_missing_ai_gives_defaults(self):
        ai = sanitize_ai_meta(None)

        assert ai == DishAiMeta()
        assert ai.serving_temperature == "mixed"
        assert ai.protein_type == "unknown"
        assert ai.comfort_vs_light == "unknown"
        assert ai.spice_level == 0
        assert ai.adventure_level == 3
        assert ai.ai_confidence == 0.0

    def test_out_of_vocabulary_values_are_dropped(self):
        ai = sanitize_ai_meta({
            "flavorProfile": ["Sweet", "cosmic", "sweet", 42],
            "servingTemperature": "lukewarm",
            "proteinType": "seafood",
            "courseType": ["Street Food", "main"],
        })

        assert ai.flavor_profile == ("sweet",)
        assert ai.serving_temperature == "mixed"
        assert ai.protein_type == "seafood"
        assert ai.course_type == ("street_food", "main")

    def test_numbers_are_clamped_and_rounded(self):
        ai = sanitize_ai_meta({"spiceLevel": 9, "adventureLevel": 0, "aiConfidence": 1.7})

        assert ai.spice_level == 5
        assert ai.adventure_level == 1
        assert ai.ai_confidence == 1.0

        assert sanitize_ai_meta({"spiceLevel": 2.5}).spice_level == 3
        assert sanitize_ai_meta({"spiceLevel": "hot"}).spice_level == 0
        assert sanitize_ai_meta({"spiceLevel": True}).spice_level == 0

    def test_non_finite_numbers_fall_back(self):
        ai = sanitize_ai_meta(json.loads('{"spiceLevel": Infinity, "adventureLevel": 1e400, "aiConfidence": NaN}'))

        assert ai.spice_level == 0
        assert ai.adventure_level == 3
        assert ai.ai_confidence == 0.0

    def test_huge_integers_are_clamped(self):
        ai = sanitize_ai_meta({"spiceLevel": 10 ** 400, "aiConfidence": -(10 ** 400)})

        assert ai.spice_level == 5
        assert ai.ai_confidence == 0.0

    def test_key_ingredients_free_vocabulary_is_snake_cased(self):
        ai = sanitize_ai_meta({"keyIngredients": ["Coconut Milk", "rice noodles!", ""]})

        assert ai.key_ingredients == ("coconut_milk", "rice_noodles")

    def test_lists_are_capped(self):
        ai = sanitize_ai_meta({"keyIngredients": [f"item {i}" for i in range(20)]})

        assert len(ai.key_ingredients) == 8

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(0.5) == 1
        assert round_half_up(1.49) == 1


class TestCalibrate:

    def test_weak_evidence_strips_risky_labels(self):
        dish = make_dish("Q1", name="Bob")
        ai = DishAiMeta(
            dietary_tags=("vegan",),
            allergen_risk_tags=("contains_nuts",),
            protein_type="vegan",
            ai_confidence=0.9,
        )

        calibrated = calibrate_ai_meta(ai, dish)

        assert calibrated.dietary_tags == ()
        assert calibrated.allergen_risk_tags == ()
        assert calibrated.protein_type == "unknown"
        assert calibrated.ai_confidence == 0.15

    def test_strong_evidence_keeps_labels(self):
        dish = make_dish(
            "Q2",
            name="Green Curry",
            cuisines=["thai", "asian", "street"],
            ingredients=["coconut", "chili", "basil", "rice", "lime", "garlic"],
            categories=["spicy", "savory", "vegetarian"],
        )
        ai = DishAiMeta(protein_type="vegetarian", flavor_profile=("spicy",), ai_confidence=0.8)

        calibrated = calibrate_ai_meta(ai, dish)

        assert calibrated.protein_type == "vegetarian"
        assert calibrated.ai_confidence == 0.8

    def test_key_ingredients_trimmed_without_source_ingredients(self):
        dish = make_dish("Q3", name="Mystery Stew", cuisines=["french", "belgian", "swiss"])
        ai = DishAiMeta(key_ingredients=("a", "b", "c", "d", "e", "f"), ai_confidence=0.5)

        assert calibrate_ai_meta(ai, dish).key_ingredients == ("a", "b", "c", "d")


class TestPlaceholders:

    def test_extract_qid(self):
        assert extract_qid("http://www.wikidata.org/entity/Q123") == "Q123"
        assert extract_qid("not a url") is None

    def test_placeholder_name(self):
        assert is_placeholder_dish_name("http://www.wikidata.org/entity/Q42", "Q42")
        assert is_placeholder_dish_name("http://www.wikidata.org/entity/Q42", "q42")
        assert not is_placeholder_dish_name("http://www.wikidata.org/entity/Q42", "Q43")
        assert not is_placeholder_dish_name("http://www.wikidata.org/entity/Q42", "Pizza")
        assert is_placeholder_dish_name("weird-id", "Q7")


class TestLoading:

    def test_dish_from_dict_normalizes_lists(self):
        dish = dish_from_dict(dish_record("Q1", "Pizza", cuisines=["Italian", "italian ", 3]))

        assert dish.cuisines == ("italian",)
        assert dish.ai == DishAiMeta()

    def test_load_skips_invalid_and_placeholder_records(self, tmp_path):
        path = tmp_path / "dishes.json"
        path.write_text(json.dumps([
            dish_record("Q1", "Pizza"),
            dish_record("Q2", "Q2"),
            {"id": "http://www.wikidata.org/entity/Q3", "name": "No image"},
            "garbage",
        ]), encoding="utf-8")

        dishes = load_dishes(str(path))

        assert [d.name for d in dishes] == ["Pizza"]

    def test_infinity_in_file_uses_defaults(self, tmp_path):
        path = tmp_path / "dishes.json"
        path.write_text(json.dumps([dish_record("Q1", "Pizza", ai={"spiceLevel": float("inf")})]), encoding="utf-8")

        dishes = load_dishes(str(path))

        assert dishes[0].ai.spice_level == 0

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(DataUnavailableError):
            load_dishes(str(tmp_path / "absent.json"))

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "dishes.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(DataUnavailableError):
            load_dishes(str(path))

    def test_non_list_raises(self, tmp_path):
        path = tmp_path / "dishes.json"
        path.write_text(json.dumps({"dishes": []}), encoding="utf-8")

        with pytest.raises(DataUnavailableError):
            load_dishes(str(path))

    def test_fetch_empty_raises(self, tmp_path):
        path = tmp_path / "dishes.json"
        path.write_text("[]", encoding="utf-8")

        with pytest.raises(DataUnavailableError):
            fetch_dishes(str(path))

    def test_fetch_shuffles_with_injected_rng(self, dishes_file):
        first = fetch_dishes(str(dishes_file), rng=random.Random(7))
        second = fetch_dishes(str(dishes_file), rng=random.Random(7))

        assert [d.id for d in first] == [d.id for d in second]
        assert len(first) == 20

    def test_to_dict_uses_file_keys(self):
        dish = make_dish("Q9", name="Ramen", protein_type="meat", spice_level=2)

        data = dish.to_dict()

        assert data["ai"]["proteinType"] == "meat"
        assert data["ai"]["spiceLevel"] == 2
        assert data["ai"]["flavorProfile"] == []
