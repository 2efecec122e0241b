#!/usr/bin/env python3
import json
import logging
import math
import os
import random
import re
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# =========================
# CONFIGURATION
# =========================

DATA_DIR = Path(os.getenv("DISHDUEL_DATA_DIR", str(Path(__file__).resolve().parents[1] / "data")))
DEFAULT_DISHES_PATH = os.getenv("DISHES_PATH", str(DATA_DIR / "dishes.enriched.json"))

LIST_LIMIT = 8

# =========================
# VOCABULAIRES FERMÉS
# =========================

SERVING_ALLOWED = ("hot", "cold", "room", "mixed")
PROTEIN_ALLOWED = ("meat", "seafood", "vegetarian", "vegan", "mixed", "unknown")
COMFORT_ALLOWED = ("comfort", "balanced", "light", "unknown")

FLAVOR_ALLOWED = frozenset({"sweet", "savory", "spicy", "umami", "sour", "bitter", "salty", "rich", "smoky", "tangy"})
MEAL_CONTEXT_ALLOWED = frozenset({"breakfast", "lunch", "dinner", "snack", "dessert", "appetizer", "late_night"})
DIETARY_ALLOWED = frozenset({
    "vegetarian", "vegan", "gluten_free", "dairy_free", "nut_free",
    "egg_free", "halal", "kosher", "pescatarian",
})
TEXTURE_ALLOWED = frozenset({"crispy", "crunchy", "creamy", "chewy", "brothy", "tender", "silky", "sticky"})
ALLERGEN_ALLOWED = frozenset({
    "contains_nuts", "contains_dairy", "contains_gluten", "contains_shellfish",
    "contains_egg", "contains_soy", "contains_fish", "contains_sesame",
})
COURSE_ALLOWED = frozenset({"starter", "main", "side", "dessert", "street_food", "snack"})
METHOD_ALLOWED = frozenset({
    "fried", "stir_fried", "grilled", "baked", "steamed", "raw",
    "stewed", "boiled", "roasted", "braised", "sauteed", "smoked",
})

# Clés JSON (camelCase, format des fichiers de données) -> attributs Python
AI_JSON_KEYS: Dict[str, str] = {
    "flavorProfile": "flavor_profile",
    "mealContext": "meal_context",
    "dietaryTags": "dietary_tags",
    "keyIngredients": "key_ingredients",
    "textureProfile": "texture_profile",
    "servingTemperature": "serving_temperature",
    "spiceLevel": "spice_level",
    "allergenRiskTags": "allergen_risk_tags",
    "proteinType": "protein_type",
    "courseType": "course_type",
    "cookingMethodTags": "cooking_method_tags",
    "comfortVsLight": "comfort_vs_light",
    "adventureLevel": "adventure_level",
    "aiConfidence": "ai_confidence",
}


class DataUnavailableError(RuntimeError):
    """Aucun plat exploitable (fichier absent, illisible ou vide)."""


# =========================
# MODÈLE
# =========================

@dataclass(frozen=True)
class DishAiMeta:
    flavor_profile: Tuple[str, ...] = ()
    meal_context: Tuple[str, ...] = ()
    dietary_tags: Tuple[str, ...] = ()
    key_ingredients: Tuple[str, ...] = ()
    texture_profile: Tuple[str, ...] = ()
    serving_temperature: str = "mixed"
    spice_level: int = 0
    allergen_risk_tags: Tuple[str, ...] = ()
    protein_type: str = "unknown"
    course_type: Tuple[str, ...] = ()
    cooking_method_tags: Tuple[str, ...] = ()
    comfort_vs_light: str = "unknown"
    adventure_level: int = 3
    ai_confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Sérialise au format JSON des fichiers (camelCase, listes)."""
        values = asdict(self)
        out: Dict[str, Any] = {}
        for json_key, attr in AI_JSON_KEYS.items():
            v = values[attr]
            out[json_key] = list(v) if isinstance(v, tuple) else v
        return out


@dataclass(frozen=True)
class Dish:
    id: str
    name: str
    image: str
    cuisines: Tuple[str, ...] = ()
    ingredients: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()
    ai: DishAiMeta = field(default_factory=DishAiMeta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "cuisines": list(self.cuisines),
            "ingredients": list(self.ingredients),
            "categories": list(self.categories),
            "ai": self.ai.to_dict(),
        }


# =========================
# Utils
# =========================

def normalize(value: str) -> str:
    return str(value).strip().lower()

def to_snake_case(value: str) -> str:
    t = re.sub(r"[^a-z0-9]+", "_", str(value).strip().lower())
    return t.strip("_")

def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))

def unique_tokens(values: Iterable[Any]) -> Tuple[str, ...]:
    """Normalise en minuscules et déduplique en gardant l'ordre."""
    seen: List[str] = []
    for v in values or []:
        if not isinstance(v, str):
            continue
        token = normalize(v)
        if token and token not in seen:
            seen.append(token)
    return tuple(seen)

def _is_number(value: Any) -> bool:
    # bool est un int en Python, on l'écarte; NaN et Infinity aussi (json les accepte)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, int):
        return True
    return math.isfinite(value)

def _clean_list(values: Any, allowed: Optional[frozenset] = None) -> Tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    unique: List[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        token = to_snake_case(value)
        if not token:
            continue
        if allowed is not None and token not in allowed:
            continue
        if token not in unique:
            unique.append(token)
        if len(unique) >= LIST_LIMIT:
            break
    return tuple(unique)

def _clamp_int(value: Any, lo: int, hi: int, fallback: int) -> int:
    if not _is_number(value):
        return fallback
    return round_half_up(max(lo, min(hi, value)))

def _clamp_float(value: Any, lo: float, hi: float, fallback: float) -> float:
    if not _is_number(value):
        return fallback
    return float(max(lo, min(hi, value)))

def _pick_enum(value: Any, allowed: Tuple[str, ...], fallback: str) -> str:
    return value if isinstance(value, str) and value in allowed else fallback


# =========================
# Sanitize + defaults
# =========================

def sanitize_ai_meta(raw: Any) -> DishAiMeta:
    """
    Seul point d'entrée des métadonnées IA: tout champ absent, hors vocabulaire
    ou mal typé retombe sur sa valeur par défaut. Le résultat est toujours complet.
    """
    base = DishAiMeta()
    if not isinstance(raw, dict):
        return base

    return DishAiMeta(
        flavor_profile=_clean_list(raw.get("flavorProfile"), FLAVOR_ALLOWED),
        meal_context=_clean_list(raw.get("mealContext"), MEAL_CONTEXT_ALLOWED),
        dietary_tags=_clean_list(raw.get("dietaryTags"), DIETARY_ALLOWED),
        key_ingredients=_clean_list(raw.get("keyIngredients")),
        texture_profile=_clean_list(raw.get("textureProfile"), TEXTURE_ALLOWED),
        serving_temperature=_pick_enum(raw.get("servingTemperature"), SERVING_ALLOWED, base.serving_temperature),
        spice_level=_clamp_int(raw.get("spiceLevel"), 0, 5, base.spice_level),
        allergen_risk_tags=_clean_list(raw.get("allergenRiskTags"), ALLERGEN_ALLOWED),
        protein_type=_pick_enum(raw.get("proteinType"), PROTEIN_ALLOWED, base.protein_type),
        course_type=_clean_list(raw.get("courseType"), COURSE_ALLOWED),
        cooking_method_tags=_clean_list(raw.get("cookingMethodTags"), METHOD_ALLOWED),
        comfort_vs_light=_pick_enum(raw.get("comfortVsLight"), COMFORT_ALLOWED, base.comfort_vs_light),
        adventure_level=_clamp_int(raw.get("adventureLevel"), 1, 5, base.adventure_level),
        ai_confidence=_clamp_float(raw.get("aiConfidence"), 0.0, 1.0, base.ai_confidence),
    )


def calibrate_ai_meta(ai: DishAiMeta, dish: Dish) -> DishAiMeta:
    """
    Plafonne la confiance IA selon les preuves disponibles dans la fiche source.
    Sur preuves faibles (< 0.25), on retire les labels à risque (régime, allergènes, protéine).
    """
    evidence = 0.0
    evidence += min(0.25, len(dish.cuisines) * 0.08)
    evidence += min(0.35, len(dish.ingredients) * 0.06)
    evidence += min(0.2, len(dish.categories) * 0.07)

    tokens = [t for t in re.split(r"[^a-z0-9]+", dish.name.lower()) if len(t) > 2]
    if len(tokens) >= 2:
        evidence += 0.08

    if ai.key_ingredients:
        evidence += 0.06
    if ai.flavor_profile:
        evidence += 0.06
    evidence = min(1.0, evidence)

    max_confidence = 0.15 + evidence * 0.8
    changes: Dict[str, Any] = {
        "ai_confidence": round(min(ai.ai_confidence, max_confidence), 2),
    }

    if evidence < 0.25:
        changes["dietary_tags"] = ()
        changes["allergen_risk_tags"] = ()
        changes["protein_type"] = "unknown"

    if not dish.ingredients and len(ai.key_ingredients) > 4:
        changes["key_ingredients"] = ai.key_ingredients[:4]

    return _replace(ai, changes)


def _replace(ai: DishAiMeta, changes: Dict[str, Any]) -> DishAiMeta:
    values = asdict(ai)
    values.update(changes)
    return DishAiMeta(**values)


# =========================
# Placeholders Wikidata
# =========================

def extract_qid(entity_url: str) -> Optional[str]:
    m = re.search(r"/(Q\d+)$", str(entity_url), flags=re.IGNORECASE)
    return m.group(1).upper() if m else None

def is_placeholder_dish_name(dish_id: str, name: str) -> bool:
    """Wikidata renvoie 'Q12345' comme libellé quand il n'existe aucun label anglais."""
    trimmed = str(name).strip()
    if not re.fullmatch(r"Q\d+", trimmed, flags=re.IGNORECASE):
        return False
    qid = extract_qid(dish_id)
    return trimmed.upper() == qid if qid else True

def is_valid_record(raw: Any) -> bool:
    return isinstance(raw, dict) and bool(raw.get("id") and raw.get("name") and raw.get("image"))


# =========================
# Chargement
# =========================

def raw_dish_from_dict(raw: Dict[str, Any]) -> Dish:
    """Plat de base (sans enrichissement), tel que produit par la collecte Wikidata."""
    return Dish(
        id=str(raw["id"]),
        name=str(raw["name"]),
        image=str(raw["image"]),
        cuisines=unique_tokens(raw.get("cuisines") or []),
        ingredients=unique_tokens(raw.get("ingredients") or []),
        categories=unique_tokens(raw.get("categories") or []),
    )

def dish_from_dict(raw: Dict[str, Any]) -> Dish:
    base = raw_dish_from_dict(raw)
    return Dish(
        id=base.id,
        name=base.name,
        image=base.image,
        cuisines=base.cuisines,
        ingredients=base.ingredients,
        categories=base.categories,
        ai=sanitize_ai_meta(raw.get("ai")),
    )

def read_json(path: Path, fallback: Any) -> Any:
    if not path.exists():
        return fallback
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)

def write_json(path: Path, data: Any) -> None:
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

def load_dishes(path: Optional[str] = None) -> List[Dish]:
    """Charge le fichier enrichi et garantit l'invariant: ai toujours complet."""
    p = Path(path or DEFAULT_DISHES_PATH)
    if not p.exists():
        raise DataUnavailableError(f"Fichier de plats introuvable: {p}")
    try:
        records = read_json(p, [])
    except json.JSONDecodeError as e:
        raise DataUnavailableError(f"Fichier de plats illisible: {p} ({e})") from e
    if not isinstance(records, list):
        raise DataUnavailableError(f"Format inattendu (liste attendue): {p}")

    dishes: List[Dish] = []
    skipped = 0
    for raw in records:
        if not is_valid_record(raw) or is_placeholder_dish_name(raw["id"], raw["name"]):
            skipped += 1
            continue
        dishes.append(dish_from_dict(raw))

    if skipped:
        logger.info("%d enregistrements ignorés dans %s", skipped, p.name)
    return dishes

def fetch_dishes(path: Optional[str] = None, rng: Optional[random.Random] = None) -> List[Dish]:
    """Retourne les plats mélangés; lève DataUnavailableError si rien n'est exploitable."""
    dishes = load_dishes(path)
    if not dishes:
        raise DataUnavailableError("Aucun plat trouvé.")
    shuffled = list(dishes)
    (rng or random).shuffle(shuffled)
    return shuffled
