#!/usr/bin/env python3
import argparse
import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import requests

from engines.dish_data import (
    DATA_DIR,
    Dish,
    DishAiMeta,
    calibrate_ai_meta,
    is_placeholder_dish_name,
    is_valid_record,
    raw_dish_from_dict,
    read_json,
    sanitize_ai_meta,
    write_json,
)

logger = logging.getLogger(__name__)

# =========================
# CONFIGURATION
# =========================

OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen3:30b")

MAX_RETRIES = int(os.getenv("ENRICH_RETRIES", "3"))
RETRY_DELAY = 1  # secondes, multiplié par le numéro de tentative
REQUEST_TIMEOUT = int(os.getenv("ENRICH_TIMEOUT_MS", "120000")) / 1000

BATCH_SIZE = int(os.getenv("ENRICH_BATCH_SIZE", "25"))
TEST_LIMIT = int(os.getenv("ENRICH_TEST_LIMIT", "5"))
TEST_STRICT = os.getenv("ENRICH_TEST_STRICT", "1") != "0"

ENRICHMENT_PROMPT_VERSION = "v3-ollama-local"

RAW_FILE = "dishes.json"
ENRICHED_FILE = "dishes.enriched.json"
TEST_OUTPUT_FILE = "dishes.enriched.test.json"
CACHE_FILE = "dishes.enrichment.cache.json"
PROGRESS_FILE = "dishes.enriched.progress.json"

SCHEMA_DESCRIPTION = """
Return JSON only. Schema:
{
  "flavorProfile": string[], // allowed: sweet,savory,spicy,umami,sour,bitter,salty,rich,smoky,tangy
  "mealContext": string[],   // allowed: breakfast,lunch,dinner,snack,dessert,appetizer,late_night
  "dietaryTags": string[],   // allowed: vegetarian,vegan,gluten_free,dairy_free,nut_free,egg_free,halal,kosher,pescatarian
  "keyIngredients": string[], // snake_case
  "textureProfile": string[], // allowed: crispy,crunchy,creamy,chewy,brothy,tender,silky,sticky
  "servingTemperature": "hot" | "cold" | "room" | "mixed",
  "spiceLevel": 0..5,
  "allergenRiskTags": string[], // allowed: contains_nuts,contains_dairy,contains_gluten,contains_shellfish,contains_egg,contains_soy,contains_fish,contains_sesame
  "proteinType": "meat" | "seafood" | "vegetarian" | "vegan" | "mixed" | "unknown",
  "courseType": string[], // allowed: starter,main,side,dessert,street_food,snack
  "cookingMethodTags": string[], // allowed: fried,stir_fried,grilled,baked,steamed,raw,stewed,boiled,roasted,braised,sauteed,smoked
  "comfortVsLight": "comfort" | "balanced" | "light" | "unknown",
  "adventureLevel": 1..5,
  "aiConfidence": 0..1
}
Use lowercase snake_case tokens.
If uncertain, prefer empty arrays, "unknown", lower spice level, and low aiConfidence.
"""


def extract_json(text: str) -> Any:
    """Isole le premier objet JSON d'une réponse de modèle (avec ou sans texte autour)."""
    trimmed = text.strip()
    if trimmed.startswith("{") and trimmed.endswith("}"):
        return json.loads(trimmed)

    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start >= 0 and end > start:
        return json.loads(trimmed[start:end + 1])
    raise ValueError("La réponse IA ne contient aucun objet JSON.")


def build_prompt(dish: Dish, prompt_version: str) -> str:
    payload = json.dumps({
        "id": dish.id,
        "name": dish.name,
        "image": dish.image,
        "cuisines": list(dish.cuisines),
        "ingredients": list(dish.ingredients),
        "categories": list(dish.categories),
    }, indent=2, ensure_ascii=False)

    return f"""
You are enriching metadata for a food dish. Infer likely properties from dish name and metadata.
Be conservative. If unknown, use empty arrays, "unknown", or low confidence.
Do not use tools. Return JSON only.
Do not invent allergens, dietary labels, or protein type unless there is clear evidence in name/metadata.

Confidence rubric:
- 0.15-0.35: weak inference from name only
- 0.35-0.6: moderate inference with some metadata support
- 0.6-0.85: strong evidence from multiple metadata signals

Dish:
{payload}

promptVersion={prompt_version}

{SCHEMA_DESCRIPTION}
"""


# =========================
# CLIENT OLLAMA
# =========================

class OllamaClient:

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        model: str = OLLAMA_MODEL,
        max_retries: int = MAX_RETRIES,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_retries = max(1, max_retries)
        self.timeout = timeout

    def _post_with_retry(self, url: str, payload: dict) -> requests.Response:
        """POST avec retry (erreur réseau, 429, 5xx) et attente croissante."""
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            logger.info("Appel Ollama (tentative %d/%d): %s model=%s", attempt, self.max_retries, url, self.model)
            try:
                resp = requests.post(url, json=payload, timeout=self.timeout)
                if resp.ok:
                    return resp
                last_error = RuntimeError(f"Ollama HTTP {resp.status_code}: {resp.text[:200]}")
                if resp.status_code not in (429, 500, 502, 503, 504):
                    raise last_error
            except requests.exceptions.RequestException as e:
                last_error = e

            if attempt < self.max_retries:
                wait = RETRY_DELAY * attempt
                logger.warning("Échec Ollama (%s), nouvel essai dans %ss", last_error, wait)
                time.sleep(wait)

        raise RuntimeError(f"Ollama indisponible après {self.max_retries} tentatives: {last_error}")

    def enrich_dish(self, dish: Dish, prompt_version: str = ENRICHMENT_PROMPT_VERSION) -> Tuple[DishAiMeta, str]:
        payload = {
            "model": self.model,
            "prompt": build_prompt(dish, prompt_version),
            "stream": False,
            "options": {"temperature": 0.1},
        }
        resp = self._post_with_retry(f"{self.base_url}/api/generate", payload)

        body = resp.json()
        if not isinstance(body, dict):
            raise RuntimeError(f"Réponse Ollama inattendue: {type(body).__name__}")
        raw_output = str(body.get("response") or "").strip()
        if not raw_output:
            raise RuntimeError("Ollama a renvoyé une sortie vide.")
        return sanitize_ai_meta(extract_json(raw_output)), raw_output


# =========================
# Cache + checkpoint
# =========================

def to_signature(dish: Dish) -> str:
    return json.dumps({
        "id": dish.id,
        "name": dish.name,
        "cuisines": list(dish.cuisines),
        "ingredients": list(dish.ingredients),
        "categories": list(dish.categories),
    })


def empty_cache() -> Dict[str, Any]:
    return {"promptVersion": ENRICHMENT_PROMPT_VERSION, "entries": {}}


def load_cache(path: Path) -> Dict[str, Any]:
    saved = read_json(path, None)
    if not isinstance(saved, dict) or not isinstance(saved.get("entries"), dict):
        return empty_cache()
    # nouvelle version de prompt => cache invalide
    if saved.get("promptVersion") != ENRICHMENT_PROMPT_VERSION:
        return empty_cache()
    return saved


def load_progress(path: Path, total: int, fresh: bool) -> Dict[str, Any]:
    start = {"index": 0, "total": total, "enriched": []}
    if fresh:
        return start
    saved = read_json(path, None)
    if not isinstance(saved, dict) or not isinstance(saved.get("enriched"), list):
        return start
    if not isinstance(saved.get("index"), int) or saved.get("total") != total:
        return start
    return saved


def merge_ai_into_dish(dish: Dish, ai: Any) -> Dict[str, Any]:
    """Sanitize puis calibrage: c'est la seule forme écrite dans le fichier enrichi."""
    meta = ai if isinstance(ai, DishAiMeta) else sanitize_ai_meta(ai)
    record = dish.to_dict()
    record["ai"] = calibrate_ai_meta(meta, dish).to_dict()
    return record


def quality_summary(records: List[Dict[str, Any]]) -> Dict[str, float]:
    if not records:
        return {}

    def share(key: str) -> float:
        n = sum(1 for r in records if r.get("ai", {}).get(key))
        return round(n / len(records) * 100, 1)

    avg = sum(float(r.get("ai", {}).get("aiConfidence", 0)) for r in records) / len(records)
    return {
        "dishes": len(records),
        "avg_ai_confidence": round(avg, 2),
        "flavor_profile_pct": share("flavorProfile"),
        "meal_context_pct": share("mealContext"),
        "key_ingredients_pct": share("keyIngredients"),
        "dietary_tags_pct": share("dietaryTags"),
    }


def print_quality_summary(records: List[Dict[str, Any]]) -> None:
    summary = quality_summary(records)
    if not summary:
        return
    print("[enrich] résumé qualité")
    print(f"  plats: {summary['dishes']}")
    print(f"  aiConfidence moyenne: {summary['avg_ai_confidence']:.2f}")
    print(f"  flavorProfile non vide: {summary['flavor_profile_pct']}%")
    print(f"  mealContext non vide: {summary['meal_context_pct']}%")
    print(f"  keyIngredients non vide: {summary['key_ingredients_pct']}%")
    print(f"  dietaryTags non vide: {summary['dietary_tags_pct']}%")


# =========================
# Enrichissement
# =========================

def load_input_dishes(data_dir: Path) -> List[Dish]:
    records = read_json(data_dir / RAW_FILE, [])
    return [
        raw_dish_from_dict(r)
        for r in records
        if is_valid_record(r) and not is_placeholder_dish_name(r["id"], r["name"])
    ]


def run_enrichment(
    data_dir: Path = DATA_DIR,
    client: Optional[OllamaClient] = None,
    test_mode: bool = False,
    fresh: bool = False,
    bypass_cache: bool = False,
) -> List[Dict[str, Any]]:
    """
    Enrichit dishes.json -> dishes.enriched.json.
    Reprend au dernier checkpoint; le cache évite de rappeler le modèle pour un plat inchangé.
    """
    all_dishes = load_input_dishes(data_dir)
    dishes = all_dishes[:TEST_LIMIT] if test_mode else all_dishes
    if not dishes:
        raise RuntimeError("Aucun plat trouvé. Lance d'abord la collecte Wikidata.")

    fresh = fresh or test_mode
    bypass_cache = bypass_cache or test_mode
    client = client or OllamaClient()

    cache_path = data_dir / CACHE_FILE
    progress_path = data_dir / PROGRESS_FILE
    cache = load_cache(cache_path)
    progress = load_progress(progress_path, len(dishes), fresh)

    enriched: List[Optional[Dict[str, Any]]] = list(progress["enriched"])
    enriched += [None] * (len(dishes) - len(enriched))

    print(f"Enrichissement à partir de {progress['index']} / {len(dishes)}{' (test)' if test_mode else ''}")

    for i in range(progress["index"], len(dishes)):
        dish = dishes[i]
        signature = to_signature(dish)
        cached = cache["entries"].get(dish.id)

        if (
            not bypass_cache
            and cached
            and cached.get("signature") == signature
            and cached.get("promptVersion") == ENRICHMENT_PROMPT_VERSION
        ):
            enriched[i] = merge_ai_into_dish(dish, cached.get("ai"))
            progress["index"] = i + 1
            continue

        try:
            ai, raw_output = client.enrich_dish(dish, ENRICHMENT_PROMPT_VERSION)
            enriched[i] = merge_ai_into_dish(dish, ai)
            cache["entries"][dish.id] = {
                "dishId": dish.id,
                "promptVersion": ENRICHMENT_PROMPT_VERSION,
                "model": client.model,
                "signature": signature,
                "updatedAt": datetime.now(timezone.utc).isoformat(),
                "rawOutput": raw_output,
                "ai": ai.to_dict(),
            }
        except (RuntimeError, ValueError) as e:
            if test_mode and TEST_STRICT:
                raise RuntimeError(f"Mode test en échec pour '{dish.name}': {e}") from e
            logger.warning("Enrichissement IA échoué pour %s, métadonnées vides: %s", dish.name, e)
            enriched[i] = merge_ai_into_dish(dish, {})

        progress["index"] = i + 1
        if progress["index"] % BATCH_SIZE == 0 or progress["index"] == len(dishes):
            progress["enriched"] = enriched[:progress["index"]]
            write_json(progress_path, progress)
            write_json(cache_path, cache)
            print(f"Enrichis {progress['index']} / {len(dishes)}")

    records = [r for r in enriched if r is not None]
    write_json(data_dir / (TEST_OUTPUT_FILE if test_mode else ENRICHED_FILE), records)
    write_json(cache_path, cache)

    if not test_mode and progress_path.exists():
        progress_path.unlink()

    print(f"Enrichissement terminé: {len(records)} plats écrits")
    print_quality_summary(records)
    return records


# =========================
# Nettoyage des fichiers
# =========================

def clean_dish_file(path: Path) -> Set[str]:
    dishes = read_json(path, [])
    cleaned = [d for d in dishes if is_valid_record(d) and not is_placeholder_dish_name(d["id"], d["name"])]
    write_json(path, cleaned)
    print(f"[clean-data] {path.name}: {len(dishes)} -> {len(cleaned)} (retirés {len(dishes) - len(cleaned)})")
    return {d["id"] for d in cleaned}


def clean_cache(path: Path, valid_ids: Set[str]) -> None:
    cache = read_json(path, {})
    entries = cache.get("entries") or {}
    kept = {k: e for k, e in entries.items() if (e.get("dishId") or k) in valid_ids}
    write_json(path, {"promptVersion": cache.get("promptVersion"), "entries": kept})
    print(f"[clean-data] {path.name}: {len(entries)} -> {len(kept)} (retirés {len(entries) - len(kept)})")


def clean_progress(path: Path, valid_ids: Set[str]) -> None:
    if not path.exists():
        return
    progress = read_json(path, {})
    enriched = progress.get("enriched") if isinstance(progress.get("enriched"), list) else []
    cleaned = [
        d for d in enriched
        if is_valid_record(d) and d["id"] in valid_ids and not is_placeholder_dish_name(d["id"], d["name"])
    ]
    progress.update({
        "enriched": cleaned,
        "total": len(cleaned),
        "index": min(int(progress.get("index") or 0), len(cleaned)),
    })
    write_json(path, progress)
    print(f"[clean-data] {path.name}: {len(enriched)} -> {len(cleaned)} (retirés {len(enriched) - len(cleaned)})")


def clean_data(data_dir: Path = DATA_DIR) -> Set[str]:
    if not data_dir.exists():
        raise FileNotFoundError(f"Dossier de données introuvable: {data_dir}")

    raw_ids = clean_dish_file(data_dir / RAW_FILE)
    enriched_path = data_dir / ENRICHED_FILE
    enriched_ids = clean_dish_file(enriched_path) if enriched_path.exists() else set()

    # ids enrichis prioritaires s'ils existent
    valid_ids = enriched_ids or raw_ids
    clean_cache(data_dir / CACHE_FILE, valid_ids)
    clean_progress(data_dir / PROGRESS_FILE, valid_ids)
    print("[clean-data] terminé")
    return valid_ids


def main() -> int:
    parser = argparse.ArgumentParser(description="Enrichissement IA des plats (Ollama local).")
    parser.add_argument("--data-dir", default=str(DATA_DIR), help="Dossier contenant dishes.json")
    parser.add_argument("--test", action="store_true", help=f"N'enrichit que {TEST_LIMIT} plats, sortie séparée")
    parser.add_argument("--fresh", action="store_true", help="Ignore le checkpoint existant")
    parser.add_argument("--bypass-cache", action="store_true", help="Ignore le cache d'enrichissement")
    parser.add_argument("--clean", action="store_true", help="Nettoie les fichiers de données puis quitte")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    data_dir = Path(args.data_dir)

    try:
        if args.clean:
            clean_data(data_dir)
            return 0
        run_enrichment(
            data_dir,
            test_mode=args.test,
            fresh=args.fresh or os.getenv("ENRICH_FRESH") == "1",
            bypass_cache=args.bypass_cache or os.getenv("ENRICH_BYPASS_CACHE") == "1",
        )
    except (RuntimeError, OSError, ValueError) as e:
        print(f"❌ Enrichissement échoué: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
