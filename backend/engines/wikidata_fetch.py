#!/usr/bin/env python3
import argparse
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from engines.dish_data import DATA_DIR, is_placeholder_dish_name, write_json

logger = logging.getLogger(__name__)

# =========================
# CONFIGURATION
# =========================

ENDPOINT = "https://query.wikidata.org/sparql"
USER_AGENT = "DishDuelBot/1.0 (https://github.com/dishduel)"
PAGE_SIZE = 2000
REQUEST_DELAY = 0.3  # secondes entre deux pages
MAX_RETRIES = 3

# Catégories déduites par mots-clés (nom + cuisines + ingrédients)
KEYWORD_CATEGORIES: Dict[str, List[str]] = {
    "sweet": [r"\bcake\b", r"\bcookie\b", r"\bchocolate\b", r"\bdessert\b", r"\bice cream\b", r"\bsweet\b"],
    "savory": [r"\bsoup\b", r"\bstew\b", r"\bcurry\b", r"\broast\b", r"\bgrill(?:ed)?\b", r"\bsavory\b"],
    "spicy": [r"\bspicy\b", r"\bchili\b", r"\bpepper\b", r"\bmasala\b"],
    "vegetarian": [r"\bvegetarian\b", r"\bveggie\b", r"\btofu\b", r"\blentil\b", r"\bchickpea\b"],
    "vegan": [r"\bvegan\b"],
    "meat": [r"\bbeef\b", r"\bpork\b", r"\bchicken\b", r"\blamb\b", r"\bbacon\b", r"\bsausage\b"],
    "seafood": [r"\bfish\b", r"\bsalmon\b", r"\btuna\b", r"\bshrimp\b", r"\bprawn\b", r"\bcrab\b"],
    "noodle": [r"\bnoodle\b", r"\bramen\b", r"\budon\b", r"\bspaghetti\b", r"\bpasta\b"],
    "rice": [r"\brice\b", r"\brisotto\b", r"\bbiryani\b", r"\bpaella\b"],
    "bread": [r"\bbread\b", r"\bsandwich\b", r"\btoast\b", r"\bpizza\b", r"\bburger\b"],
    "breakfast": [r"\bbreakfast\b", r"\bomelette\b", r"\bpancake\b", r"\bwaffle\b"],
    "snack": [r"\bsnack\b", r"\bfry\b", r"\bfries\b", r"\bnugget\b", r"\bchip\b"],
}


def build_query(offset: int) -> str:
    return f"""
SELECT ?dish ?dishLabel ?image
  (GROUP_CONCAT(DISTINCT ?cuisineLabel; separator=",") AS ?cuisines)
  (GROUP_CONCAT(DISTINCT ?ingredientLabel; separator=",") AS ?ingredients)
  (GROUP_CONCAT(DISTINCT ?characteristicLabel; separator=",") AS ?characteristics)
WHERE {{
  ?dish wdt:P31/wdt:P279* wd:Q746549 .
  ?dish wdt:P18 ?image .

  OPTIONAL {{
    ?dish wdt:P2012 ?cuisine .
    ?cuisine rdfs:label ?cuisineLabel .
    FILTER(LANG(?cuisineLabel) = "en")
  }}

  OPTIONAL {{
    ?dish wdt:P527 ?ingredient .
    ?ingredient rdfs:label ?ingredientLabel .
    FILTER(LANG(?ingredientLabel) = "en")
  }}

  OPTIONAL {{
    ?dish wdt:P1552 ?characteristic .
    ?characteristic rdfs:label ?characteristicLabel .
    FILTER(LANG(?characteristicLabel) = "en")
  }}

  SERVICE wikibase:label {{ bd:serviceParam wikibase:language "[AUTO_LANGUAGE],en". }}
}}
GROUP BY ?dish ?dishLabel ?image
ORDER BY ?dish
LIMIT {PAGE_SIZE}
OFFSET {offset}
"""


# =========================
# Utils
# =========================

def split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]

def unique_lower(values: List[str]) -> List[str]:
    """Dédoublonne sans tenir compte de la casse, garde la première graphie."""
    seen = set()
    result = []
    for v in values:
        key = v.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(v)
    return result

def infer_keyword_categories(name: str, cuisines: List[str], ingredients: List[str]) -> List[str]:
    haystack = f"{name} {' '.join(cuisines)} {' '.join(ingredients)}".lower()
    return [
        category
        for category, patterns in KEYWORD_CATEGORIES.items()
        if any(re.search(p, haystack) for p in patterns)
    ]

def binding_value(binding: Dict[str, Any], key: str) -> Optional[str]:
    cell = binding.get(key)
    return cell.get("value") if isinstance(cell, dict) else None


def normalize_binding(binding: Dict[str, Any]) -> Dict[str, Any]:
    name = binding_value(binding, "dishLabel") or ""
    cuisines = unique_lower(split_csv(binding_value(binding, "cuisines")))
    ingredients = unique_lower(split_csv(binding_value(binding, "ingredients")))
    characteristics = unique_lower(split_csv(binding_value(binding, "characteristics")))
    inferred = infer_keyword_categories(name, cuisines, ingredients)

    return {
        "id": binding_value(binding, "dish") or "",
        "name": name,
        "image": binding_value(binding, "image") or "",
        "cuisines": cuisines,
        "ingredients": ingredients,
        "categories": unique_lower(characteristics + inferred),
    }


# =========================
# SPARQL
# =========================

def fetch_page(offset: int, http: Optional[requests.Session] = None) -> List[Dict[str, Any]]:
    http = http or requests.Session()
    headers = {"Accept": "application/json", "User-Agent": USER_AGENT}

    for attempt in range(1, MAX_RETRIES + 1):
        try:
            resp = http.get(
                ENDPOINT,
                params={"query": build_query(offset), "format": "json"},
                headers=headers,
                timeout=60,
            )
            resp.raise_for_status()
            return resp.json()["results"]["bindings"]
        except (requests.exceptions.RequestException, KeyError, ValueError) as e:
            if attempt == MAX_RETRIES:
                raise RuntimeError(f"Wikidata indisponible (offset {offset}): {e}") from e
            delay = attempt * 1.0
            logger.warning(
                "Requête échouée à l'offset %d (tentative %d/%d), nouvel essai dans %.0fs",
                offset, attempt, MAX_RETRIES, delay,
            )
            time.sleep(delay)
    return []


def fetch_all_dishes(http: Optional[requests.Session] = None) -> List[Dict[str, Any]]:
    http = http or requests.Session()
    deduped: Dict[str, Dict[str, Any]] = {}
    offset = 0
    page = 1

    while True:
        bindings = fetch_page(offset, http)
        if not bindings:
            break

        for b in bindings:
            dish = normalize_binding(b)
            if not dish["id"] or not dish["image"]:
                continue
            if is_placeholder_dish_name(dish["id"], dish["name"]):
                continue
            deduped[dish["id"]] = dish

        print(f"Page {page}: {len(bindings)} lignes, {len(deduped)} plats uniques")

        if len(bindings) < PAGE_SIZE:
            break
        offset += PAGE_SIZE
        page += 1
        time.sleep(REQUEST_DELAY)

    return list(deduped.values())


def main() -> int:
    parser = argparse.ArgumentParser(description="Collecte des plats depuis Wikidata (SPARQL).")
    parser.add_argument("--out", default=str(DATA_DIR / "dishes.json"), help="Fichier de sortie")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    print("Collecte de tous les plats depuis Wikidata...")
    try:
        dishes = fetch_all_dishes()
    except RuntimeError as e:
        print(f"❌ Collecte échouée: {e}")
        return 1

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    write_json(out, dishes)
    print(f"Terminé. {len(dishes)} plats écrits dans {out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
