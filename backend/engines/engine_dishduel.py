#!/usr/bin/env python3
import argparse
import logging
import random
import re
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple, Any

from engines.dish_data import (
    DataUnavailableError,
    Dish,
    DishAiMeta,
    fetch_dishes,
    normalize,
    round_half_up,
)

logger = logging.getLogger(__name__)

# =========================
# PARAMÈTRES DU MOTEUR
# =========================

MIN_RATIO = 0.07
MAX_RATIO = 0.65
NAME_MIN_RATIO = 0.15
NAME_MAX_RATIO = 0.85
NAME_FALLBACK_DISCOUNT = 0.75
MIN_AI_WEIGHT = 0.2

MIN_OPTIONS = 3
MAX_OPTIONS = 4

POOL_SIZE_FOR_DUEL = 8
TOURNAMENT_ENTRY_CAP = 34
QUAD_MIN_POOL_SIZE = 4
DUEL_SIZE = 2
QUAD_SIZE = 4

SPICY_MIN_LEVEL = 3
MILD_MAX_LEVEL = 1

QUESTION_ID_PREFIX = "multi"
NAME_STOP_WORDS = frozenset({"and", "with", "the", "for", "style", "food", "dish"})

# Ordre = priorité de discrimination (protéine, température, piment... puis catégorie)
TYPE_PRIORITY: Dict[str, float] = {
    "protein_type": 1.6,
    "serving_temperature": 1.5,
    "spice_level": 1.45,
    "comfort_vs_light": 1.35,
    "course_type": 1.4,
    "flavor_profile": 1.35,
    "texture_profile": 1.25,
    "meal_context": 1.15,
    "dietary_tags": 1.1,
    "cooking_method_tags": 1.05,
    "key_ingredients": 1.0,
    "cuisine": 0.95,
    "ingredient": 0.9,
    "category": 0.85,
}

QUESTION_TEXTS: Dict[str, str] = {
    "protein_type": "Quelle direction côté protéines ?",
    "serving_temperature": "Plutôt chaud ou froid ?",
    "spice_level": "Quel niveau de piment ?",
    "comfort_vs_light": "Quelle humeur gourmande ?",
    "course_type": "Quel type de plat ?",
    "flavor_profile": "Quel profil de saveurs ?",
    "texture_profile": "Quelle texture te tente ?",
    "meal_context": "Pour quelle occasion ?",
    "dietary_tags": "Une préférence alimentaire ?",
    "cooking_method_tags": "Quel mode de cuisson ?",
    "key_ingredients": "Quel ingrédient te fait envie ?",
    "cuisine": "Quelle cuisine ?",
    "ingredient": "Quel ingrédient principal ?",
    "category": "Quelle catégorie de plat ?",
}

# Champs IA à valeur unique -> valeur neutre ignorée au minage
AI_ENUM_FIELDS: Dict[str, str] = {
    "protein_type": "unknown",
    "serving_temperature": "mixed",
    "comfort_vs_light": "unknown",
}
AI_LIST_FIELDS: Tuple[str, ...] = (
    "course_type",
    "flavor_profile",
    "texture_profile",
    "meal_context",
    "dietary_tags",
    "cooking_method_tags",
    "key_ingredients",
)
BASE_LIST_FIELDS: Dict[str, str] = {
    "cuisine": "cuisines",
    "ingredient": "ingredients",
    "category": "categories",
}

PHASE_LOADING = "loading"
PHASE_NARROWING = "narrowing"
PHASE_DUEL = "duel"
PHASE_RESULT = "result"


class GameActionError(ValueError):
    """Action refusée dans la phase courante (ex: réponse pendant un duel)."""


# =========================
# Candidats
# =========================

@dataclass(frozen=True)
class Candidate:
    attribute_type: str
    value: str
    count: float
    weight: float


def ai_weight(ai: DishAiMeta) -> float:
    return max(MIN_AI_WEIGHT, min(1.0, ai.ai_confidence))

def split_score(ratio: float) -> float:
    return 1.0 - abs(0.5 - ratio)

def add_weight(bucket: Dict[str, float], key: str, weight: float = 1.0) -> None:
    bucket[key] = bucket.get(key, 0.0) + weight

def add_list(bucket: Dict[str, float], values: Sequence[str], weight: float = 1.0) -> None:
    # un plat ne compte qu'une fois par valeur
    unique = {normalize(v) for v in values}
    unique.discard("")
    for value in sorted(unique):
        add_weight(bucket, value, weight)


def collect_candidates(pool: Sequence[Dish]) -> List[Candidate]:
    """
    Compte, pour chaque type d'attribut, combien de plats portent chaque valeur,
    puis ne garde que les valeurs dont la part du pool est dans [MIN_RATIO, MAX_RATIO].
    """
    total = len(pool)
    if total == 0:
        return []

    buckets: Dict[str, Dict[str, float]] = {t: {} for t in TYPE_PRIORITY}

    for dish in pool:
        ai = dish.ai
        w = ai_weight(ai)

        for attr, neutral in AI_ENUM_FIELDS.items():
            value = normalize(getattr(ai, attr))
            if value and value != neutral:
                add_weight(buckets[attr], value, w)

        if ai.spice_level >= SPICY_MIN_LEVEL:
            add_weight(buckets["spice_level"], "spicy", w)
        if ai.spice_level <= MILD_MAX_LEVEL:
            add_weight(buckets["spice_level"], "mild", w)

        for attr in AI_LIST_FIELDS:
            add_list(buckets[attr], getattr(ai, attr), w)

        for attr_type, dish_attr in BASE_LIST_FIELDS.items():
            add_list(buckets[attr_type], getattr(dish, dish_attr))

    candidates: List[Candidate] = []
    for attr_type, counts in buckets.items():
        for value, count in counts.items():
            ratio = count / total
            if ratio < MIN_RATIO or ratio > MAX_RATIO:
                continue
            weight = (split_score(ratio) + 0.01) * TYPE_PRIORITY[attr_type]
            candidates.append(Candidate(attr_type, value, count, weight))
    return candidates


def name_tokens(name: str) -> Set[str]:
    tokens = re.split(r"[^a-z0-9]+", name.lower())
    return {t for t in tokens if len(t) > 2 and t not in NAME_STOP_WORDS}


def collect_name_fallback_candidates(pool: Sequence[Dish]) -> List[Candidate]:
    """Dernier recours: mots des noms de plats, preuve plus faible que les métadonnées."""
    total = len(pool)
    if total == 0:
        return []

    counts: Dict[str, float] = {}
    for dish in pool:
        for token in sorted(name_tokens(dish.name)):
            add_weight(counts, token)

    fallback: List[Candidate] = []
    for token, count in counts.items():
        ratio = count / total
        if ratio < NAME_MIN_RATIO or ratio > NAME_MAX_RATIO:
            continue
        weight = split_score(ratio) * NAME_FALLBACK_DISCOUNT + 0.01
        fallback.append(Candidate("ingredient", token, count, weight))
    return fallback


def mine_candidates(pool: Sequence[Dish]) -> List[Candidate]:
    candidates = collect_candidates(pool)
    if candidates:
        return candidates
    return collect_name_fallback_candidates(pool)


# =========================
# Questions
# =========================

@dataclass(frozen=True)
class Question:
    id: str
    text: str
    attribute_type: str
    options: Tuple[str, ...]
    option_labels: Tuple[str, ...]
    option_hints: Tuple[str, ...]
    predicate: Callable[[Dish, str], bool] = field(compare=False, repr=False)

    def matches(self, dish: Dish, option: str) -> bool:
        return self.predicate(dish, normalize(option))

    def filter_pool(self, pool: Sequence[Dish], option: str) -> Tuple[Dish, ...]:
        return tuple(d for d in pool if self.matches(d, option))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "attribute_type": self.attribute_type,
            "options": list(self.options),
            "option_labels": list(self.option_labels),
            "option_hints": list(self.option_hints),
        }


@dataclass(frozen=True)
class QuestionGroup:
    attribute_type: str
    options: Tuple[Candidate, ...]
    question_id: str
    weight: float

    @property
    def values(self) -> Tuple[str, ...]:
        return tuple(o.value for o in self.options)


def question_id_for(attribute_type: str, values: Sequence[str]) -> str:
    """Même type + même ensemble d'options => même id, quel que soit l'ordre."""
    return f"{QUESTION_ID_PREFIX}-{attribute_type}-{'|'.join(sorted(values))}"

def title_case(value: str) -> str:
    if not value:
        return value
    words = value.replace("_", " ").split()
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def pred_attribute(attribute_type: str) -> Callable[[Dish, str], bool]:
    def p(dish: Dish, value: str) -> bool:
        if not value:
            return False
        ai = dish.ai
        if attribute_type in AI_ENUM_FIELDS:
            return normalize(getattr(ai, attribute_type)) == value
        if attribute_type == "spice_level":
            if value == "spicy":
                return ai.spice_level >= SPICY_MIN_LEVEL
            if value == "mild":
                return ai.spice_level <= MILD_MAX_LEVEL
            return False
        if attribute_type in AI_LIST_FIELDS:
            return any(normalize(v) == value for v in getattr(ai, attribute_type))
        if attribute_type == "ingredient":
            return value in dish.ingredients or value in dish.name.lower()
        if attribute_type in BASE_LIST_FIELDS:
            return value in getattr(dish, BASE_LIST_FIELDS[attribute_type])
        return False
    return p


def build_question(attribute_type: str, options: Sequence[Candidate]) -> Question:
    values = tuple(o.value for o in options)
    total = sum(o.count for o in options)
    hints = tuple(
        f"{round_half_up(o.count / total * 100) if total > 0 else 0}% des plats restants"
        for o in options
    )
    return Question(
        id=question_id_for(attribute_type, values),
        text=QUESTION_TEXTS.get(attribute_type, "Fais ton choix"),
        attribute_type=attribute_type,
        options=values,
        option_labels=tuple(title_case(v) for v in values),
        option_hints=hints,
        predicate=pred_attribute(attribute_type),
    )


def group_candidates(candidates: Sequence[Candidate]) -> List[QuestionGroup]:
    """Un groupe par type: les MAX_OPTIONS meilleurs candidats, rejeté sous MIN_OPTIONS."""
    grouped: Dict[str, List[Candidate]] = {}
    for c in candidates:
        grouped.setdefault(c.attribute_type, []).append(c)

    groups: List[QuestionGroup] = []
    for attr_type, items in grouped.items():
        options = tuple(sorted(items, key=lambda c: c.weight, reverse=True)[:MAX_OPTIONS])
        if len(options) < MIN_OPTIONS:
            continue
        groups.append(QuestionGroup(
            attribute_type=attr_type,
            options=options,
            question_id=question_id_for(attr_type, [o.value for o in options]),
            weight=sum(o.weight for o in options) * TYPE_PRIORITY.get(attr_type, 1.0),
        ))
    return groups


def weighted_pick(items: Sequence[QuestionGroup], rng: random.Random) -> Optional[QuestionGroup]:
    if not items:
        return None
    total = sum(item.weight for item in items)
    if total <= 0:
        return items[0]

    roll = rng.random() * total
    for item in items:
        roll -= item.weight
        if roll <= 0:
            return item
    return items[-1]


def select_question_group(
    groups: Sequence[QuestionGroup],
    asked: Set[str],
    last_options_by_type: Mapping[str, FrozenSet[str]],
    rng: random.Random,
) -> Optional[QuestionGroup]:
    """
    1. écarte les questions déjà posées
    2. écarte les groupes qui partagent une option avec la dernière question du même type
    3. tirage pondéré parmi le reste (None si plus rien à poser)
    """
    fresh = [g for g in groups if g.question_id not in asked]

    eligible: List[QuestionGroup] = []
    for g in fresh:
        previous = last_options_by_type.get(g.attribute_type)
        if previous and any(v in previous for v in g.values):
            continue
        eligible.append(g)

    return weighted_pick(eligible, rng)


def generate_question(
    pool: Sequence[Dish],
    asked: Set[str],
    last_options_by_type: Mapping[str, FrozenSet[str]],
    rng: random.Random,
) -> Optional[Question]:
    if len(pool) <= 1:
        return None
    candidates = mine_candidates(pool)
    if not candidates:
        return None
    selected = select_question_group(group_candidates(candidates), asked, last_options_by_type, rng)
    if selected is None:
        return None
    return build_question(selected.attribute_type, selected.options)


# =========================
# État + événements
# =========================

@dataclass(frozen=True)
class GameState:
    phase: str = PHASE_LOADING
    pool: Tuple[Dish, ...] = ()
    current_question: Optional[Question] = None
    current_round: Tuple[Dish, ...] = ()
    next_round: Tuple[Dish, ...] = ()
    winner: Optional[Dish] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    asked_question_ids: FrozenSet[str] = frozenset()
    last_options_by_type: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    question_count: int = 0
    round_number: int = 0

    @property
    def current_quad(self) -> Optional[Tuple[Dish, ...]]:
        if self.phase == PHASE_DUEL and len(self.current_round) >= QUAD_MIN_POOL_SIZE:
            return self.current_round[:QUAD_SIZE]
        return None

    @property
    def current_duel(self) -> Optional[Tuple[Dish, ...]]:
        if self.phase == PHASE_DUEL and DUEL_SIZE <= len(self.current_round) < QUAD_MIN_POOL_SIZE:
            return self.current_round[:DUEL_SIZE]
        return None


@dataclass(frozen=True)
class DishesLoaded:
    dishes: Tuple[Dish, ...]

@dataclass(frozen=True)
class LoadFailed:
    message: str

@dataclass(frozen=True)
class AnswerSubmitted:
    option: str

@dataclass(frozen=True)
class DuelResolved:
    winner_id: str

@dataclass(frozen=True)
class QuadResolved:
    winner_id: str

@dataclass(frozen=True)
class Restarted:
    pass


# =========================
# Tournoi
# =========================

def start_tournament(state: GameState, contenders: Sequence[Dish], rng: random.Random) -> GameState:
    seeded = tuple(contenders)
    if len(seeded) > TOURNAMENT_ENTRY_CAP:
        shuffled = list(seeded)
        rng.shuffle(shuffled)
        seeded = tuple(shuffled[:TOURNAMENT_ENTRY_CAP])

    base = replace(state, current_question=None)

    if not seeded:
        logger.error("Tournoi lancé sans aucun plat")
        return replace(base, error="Aucun plat disponible pour les duels.")

    if len(seeded) == 1:
        return replace(
            base,
            phase=PHASE_RESULT,
            pool=seeded,
            winner=seeded[0],
            current_round=(),
            next_round=(),
        )

    return replace(
        base,
        phase=PHASE_DUEL,
        pool=seeded,
        current_round=seeded,
        next_round=(),
        round_number=1,
    )


def apply_tournament_progress(
    state: GameState,
    remaining: Tuple[Dish, ...],
    next_round: Tuple[Dish, ...],
) -> GameState:
    if len(remaining) > 1:
        return replace(state, current_round=remaining, next_round=next_round, pool=remaining + next_round)

    # un plat seul en fin de tour passe directement (bye)
    with_bye = next_round + remaining

    if len(with_bye) == 1:
        return replace(
            state,
            phase=PHASE_RESULT,
            winner=with_bye[0],
            pool=with_bye,
            current_round=(),
            next_round=(),
            current_question=None,
        )

    return replace(
        state,
        current_round=with_bye,
        next_round=(),
        pool=with_bye,
        round_number=state.round_number + 1,
    )


def resolve_match(state: GameState, winner_id: str, size: int) -> GameState:
    if state.phase != PHASE_DUEL:
        raise GameActionError("Aucun duel en cours.")

    active = QUAD_SIZE if len(state.current_round) >= QUAD_MIN_POOL_SIZE else DUEL_SIZE
    if size != active:
        kind = "carré" if active == QUAD_SIZE else "duel"
        raise GameActionError(f"Le match en cours est un {kind}.")

    participants = state.current_round[:size]
    # id inconnu -> premier participant, le tableau avance toujours
    winner = next((d for d in participants if d.id == winner_id), participants[0])
    return apply_tournament_progress(state, state.current_round[size:], state.next_round + (winner,))


# =========================
# Rétrécissement
# =========================

def prepare_narrowing(state: GameState, pool: Tuple[Dish, ...], rng: random.Random) -> GameState:
    if len(pool) <= POOL_SIZE_FOR_DUEL:
        return start_tournament(state, pool, rng)

    question = generate_question(pool, state.asked_question_ids, state.last_options_by_type, rng)
    if question is None:
        return start_tournament(state, pool, rng)

    last_options = dict(state.last_options_by_type)
    last_options[question.attribute_type] = frozenset(normalize(o) for o in question.options)

    return replace(
        state,
        phase=PHASE_NARROWING,
        pool=pool,
        current_question=question,
        current_round=(),
        next_round=(),
        asked_question_ids=state.asked_question_ids | {question.id},
        last_options_by_type=last_options,
        question_count=state.question_count + 1,
    )


def apply_answer(state: GameState, option: str, rng: random.Random) -> GameState:
    if state.phase != PHASE_NARROWING or state.current_question is None:
        raise GameActionError("Aucune question active.")

    filtered = state.current_question.filter_pool(state.pool, option)
    if not filtered:
        logger.warning(
            "Le filtre '%s' sur %s a vidé le pool, question ignorée",
            option,
            state.current_question.id,
        )
        return replace(
            state,
            current_question=None,
            warning="Cette réponse ne laisse aucun plat, question ignorée.",
        )

    return prepare_narrowing(replace(state, pool=filtered), filtered, rng)


def transition(state: GameState, event: Any, rng: Optional[random.Random] = None) -> GameState:
    """(état, événement) -> nouvel état. Seul l'aléa (rng) est injecté."""
    rng = rng or random.Random()

    if isinstance(event, Restarted):
        return GameState()

    state = replace(state, warning=None)

    if isinstance(event, DishesLoaded):
        if state.phase != PHASE_LOADING:
            raise GameActionError("Les plats sont déjà chargés.")
        dishes = tuple(event.dishes)
        if not dishes:
            return replace(state, error="Aucun plat trouvé. Réessaie.")
        return prepare_narrowing(replace(state, pool=dishes, error=None), dishes, rng)

    if isinstance(event, LoadFailed):
        return replace(state, error=event.message)

    if isinstance(event, AnswerSubmitted):
        return apply_answer(state, event.option, rng)

    if isinstance(event, DuelResolved):
        return resolve_match(state, event.winner_id, DUEL_SIZE)

    if isinstance(event, QuadResolved):
        return resolve_match(state, event.winner_id, QUAD_SIZE)

    raise GameActionError(f"Événement inconnu: {event!r}")


# =========================
# SESSION
# =========================

def state_to_dict(state: GameState) -> Dict[str, Any]:
    quad = state.current_quad
    duel = state.current_duel
    return {
        "phase": state.phase,
        "pool_size": len(state.pool),
        "question": state.current_question.to_dict() if state.current_question else None,
        "quad": [d.to_dict() for d in quad] if quad else None,
        "duel": [d.to_dict() for d in duel] if duel else None,
        "winner": state.winner.to_dict() if state.winner else None,
        "error": state.error,
        "warning": state.warning,
        "question_count": state.question_count,
        "round_number": state.round_number,
    }


class DishDuelSession:
    """Possède l'état d'une partie et applique les événements un par un."""

    def __init__(
        self,
        fetch_entities: Optional[Callable[[], Sequence[Dish]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.rng = rng or random.Random()
        self.fetch_entities = fetch_entities or (lambda: fetch_dishes(rng=self.rng))
        self.state = GameState()

    def dispatch(self, event: Any) -> GameState:
        self.state = transition(self.state, event, self.rng)
        return self.state

    def start(self) -> Dict[str, Any]:
        self.dispatch(Restarted())
        try:
            dishes = self.fetch_entities()
        except DataUnavailableError as e:
            logger.error("Chargement des plats impossible: %s", e)
            self.dispatch(LoadFailed(str(e)))
            return self.get_state()
        except (OSError, ValueError) as e:
            logger.exception("Échec du chargement des plats")
            self.dispatch(LoadFailed(f"Échec du chargement des plats: {e}"))
            return self.get_state()

        self.dispatch(DishesLoaded(tuple(dishes)))
        return self.get_state()

    def restart(self) -> Dict[str, Any]:
        return self.start()

    def submit_answer(self, option: str) -> Dict[str, Any]:
        self.dispatch(AnswerSubmitted(option))
        return self.get_state()

    def submit_duel_choice(self, dish_id: str) -> Dict[str, Any]:
        self.dispatch(DuelResolved(dish_id))
        return self.get_state()

    def submit_quad_choice(self, dish_id: str) -> Dict[str, Any]:
        self.dispatch(QuadResolved(dish_id))
        return self.get_state()

    def get_state(self) -> Dict[str, Any]:
        return state_to_dict(self.state)


# =========================
# Main loop (terminal)
# =========================

def read_choice(count: int) -> int:
    prompt = f"Ton choix (1-{count}) : "
    ans = input(prompt).strip()
    while not (ans.isdigit() and 1 <= int(ans) <= count):
        ans = input(prompt).strip()
    return int(ans) - 1


def main() -> int:
    parser = argparse.ArgumentParser(description="DishDuel: questions puis tournoi pour choisir un plat.")
    parser.add_argument("--dishes", default=None, help="Chemin vers dishes.enriched.json")
    parser.add_argument("--seed", type=int, default=None, help="Graine aléatoire (parties reproductibles)")
    args = parser.parse_args()

    rng = random.Random(args.seed)
    session = DishDuelSession(fetch_entities=lambda: fetch_dishes(args.dishes, rng=rng), rng=rng)

    print("⏳ Chargement des plats...", end="", flush=True)
    session.start()
    print(f" ✓ {len(session.state.pool)} plats")
    print()

    while True:
        st = session.state

        if st.error:
            print(f"❌ {st.error}")
            return 1

        if st.phase == PHASE_RESULT:
            print()
            print(f"🏆 GAGNANT : {st.winner.name}")
            print(f"Questions: {st.question_count} | Tours: {st.round_number}")
            return 0

        if st.phase == PHASE_NARROWING:
            q = st.current_question
            if q is None:
                print(f"⚠️ {st.warning}")
                return 1
            print(f"Question #{st.question_count}: {q.text}  ({len(st.pool)} plats)")
            for i, (label, hint) in enumerate(zip(q.option_labels, q.option_hints), 1):
                print(f"  {i}. {label} - {hint}")
            session.submit_answer(q.options[read_choice(len(q.options))])
            print()
            continue

        quad = st.current_quad
        match = quad or st.current_duel
        title = "CARRÉ" if quad else "DUEL"
        print(f"{title} (tour {st.round_number})")
        for i, d in enumerate(match, 1):
            print(f"  {i}. {d.name}")
        chosen = match[read_choice(len(match))]
        if quad:
            session.submit_quad_choice(chosen.id)
        else:
            session.submit_duel_choice(chosen.id)
        print()


if __name__ == "__main__":
    raise SystemExit(main())
