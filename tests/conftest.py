import json
import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from engines.dish_data import Dish, DishAiMeta  # noqa: E402


def make_dish(dish_id, name=None, cuisines=(), ingredients=(), categories=(), **ai):
    ai.setdefault("ai_confidence", 1.0)
    return Dish(
        id=f"http://www.wikidata.org/entity/{dish_id}",
        name=name or dish_id,
        image=f"http://img/{dish_id}.jpg",
        cuisines=tuple(cuisines),
        ingredients=tuple(ingredients),
        categories=tuple(categories),
        ai=DishAiMeta(**ai),
    )


def dish_record(qid, name, **extra):
    record = {
        "id": f"http://www.wikidata.org/entity/{qid}",
        "name": name,
        "image": f"http://img/{qid}.jpg",
        "cuisines": [],
        "ingredients": [],
        "categories": [],
    }
    record.update(extra)
    return record


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def protein_pool():
    """10 plats: 4 viande, 3 fruits de mer, 3 végétariens."""
    proteins = ["meat"] * 4 + ["seafood"] * 3 + ["vegetarian"] * 3
    return tuple(make_dish(f"Q{i}", protein_type=p) for i, p in enumerate(proteins, 1))


@pytest.fixture
def varied_pool():
    """24 plats assez variés pour toujours produire des questions."""
    proteins = ["meat", "seafood", "vegetarian", "vegan"]
    temps = ["hot", "cold", "room"]
    courses = ["main", "starter", "dessert", "snack"]
    cuisines = ["italian", "japanese", "mexican", "indian", "french", "thai"]
    dishes = []
    for i in range(24):
        dishes.append(make_dish(
            f"Q{100 + i}",
            name=f"Dish {i}",
            cuisines=[cuisines[i % 6]],
            protein_type=proteins[i % 4],
            serving_temperature=temps[i % 3],
            course_type=(courses[i % 4],),
            spice_level=i % 6,
        ))
    return tuple(dishes)


@pytest.fixture
def dishes_file(tmp_path):
    proteins = ["meat", "seafood", "vegetarian", "vegan"]
    temps = ["hot", "cold", "room"]
    records = [
        dish_record(
            f"Q{200 + i}",
            f"Plat {i}",
            cuisines=[["italian", "japanese", "mexican", "indian"][i % 4]],
            ai={
                "proteinType": proteins[i % 4],
                "servingTemperature": temps[i % 3],
                "courseType": [["main", "starter", "dessert"][i % 3]],
                "spiceLevel": i % 6,
                "aiConfidence": 1,
            },
        )
        for i in range(20)
    ]
    path = tmp_path / "dishes.enriched.json"
    path.write_text(json.dumps(records), encoding="utf-8")
    return path
