#!/usr/bin/env python3
"""
Script de smoke test pour l'API DishDuel (serveur lancé à part)
Joue une partie complète via HTTP: questions, carrés/duels, gagnant
"""

import argparse
import random
import time
from typing import Any, Dict, Optional

import requests


class DishDuelAPITester:
    """Enchaîne les routes /dishduel/* sur un serveur en marche."""

    def __init__(self, base_url: str = "http://localhost:5000/dishduel", delay: float = 0.2):
        self.base_url = base_url.rstrip("/")
        self.delay = delay
        self.game_id: Optional[str] = None

    def _post(self, route: str, payload: Optional[Dict[str, Any]] = None) -> requests.Response:
        return requests.post(f"{self.base_url}{route}", json=payload or {}, timeout=10)

    def test_health(self) -> bool:
        print("🔍 Test: Health Check")
        try:
            data = requests.get(f"{self.base_url}/", timeout=5).json()
        except (requests.exceptions.RequestException, ValueError) as e:
            print(f"   ❌ Erreur: {e}\n")
            return False

        print(f"   Status: {data.get('status')}")
        print(f"   Fichier de plats: {data.get('dishes')}")
        ok = data.get("status") == "ok"
        print("   ✅ Health check OK\n" if ok else "   ⚠️ Statut inattendu\n")
        return ok

    def test_start_game(self) -> Dict[str, Any]:
        print("🔍 Test: Démarrage du jeu")
        try:
            response = self._post("/start")
        except requests.exceptions.RequestException as e:
            print(f"   ❌ Erreur: {e}\n")
            return {}

        if response.status_code != 200:
            print(f"   ❌ Erreur HTTP {response.status_code}")
            print(f"   {response.text}\n")
            return {}

        data = response.json()
        self.game_id = data.get("game_id")
        print(f"   Game ID: {self.game_id}")
        print(f"   Phase: {data.get('phase')} | Plats: {data.get('pool_size')}")
        print("   ✅ Démarrage OK\n")
        return data

    def play_step(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """Un coup au hasard selon la phase: réponse, carré ou duel."""
        if state.get("question"):
            option = random.choice(state["question"]["options"])
            print(f"   ❓ {state['question']['text']} -> {option}")
            response = self._post("/answer", {"game_id": self.game_id, "answer": option})
        elif state.get("quad"):
            pick = random.choice(state["quad"])
            print(f"   🟦 Carré -> {pick['name']}")
            response = self._post("/quad", {"game_id": self.game_id, "winner_id": pick["id"]})
        elif state.get("duel"):
            pick = random.choice(state["duel"])
            print(f"   ⚔️ Duel -> {pick['name']}")
            response = self._post("/duel", {"game_id": self.game_id, "winner_id": pick["id"]})
        else:
            return {}

        if response.status_code != 200:
            print(f"   ❌ Erreur HTTP {response.status_code}: {response.text}\n")
            return {}
        return response.json()

    def test_full_game(self, max_steps: int = 100) -> bool:
        print("🔍 Test: Partie complète")
        state = self.test_start_game()
        for _ in range(max_steps):
            if not state:
                return False
            if state.get("phase") == "result":
                winner = state.get("winner") or {}
                print(f"   🏆 Gagnant: {winner.get('name')}")
                print(f"   Questions: {state.get('question_count')} | Tours: {state.get('round_number')}")
                print("   ✅ Partie OK\n")
                return True
            state = self.play_step(state)
            time.sleep(self.delay)

        print("   ❌ Partie non terminée\n")
        return False

    def test_wrong_phase(self) -> bool:
        """Un duel soumis hors phase duel doit être refusé (409), jamais planter."""
        print("🔍 Test: Action hors phase")
        state = self.test_start_game()
        if not state or state.get("phase") != "narrowing":
            print("   ⚠️ Pas de phase de questions, test ignoré\n")
            return True
        response = self._post("/duel", {"game_id": self.game_id, "winner_id": "nope"})
        ok = response.status_code == 409
        print("   ✅ Refus OK\n" if ok else f"   ❌ HTTP {response.status_code}\n")
        return ok

    def test_unknown_game(self) -> bool:
        print("🔍 Test: Partie inconnue")
        response = requests.get(f"{self.base_url}/state/inconnue", timeout=5)
        ok = response.status_code == 404
        print("   ✅ 404 OK\n" if ok else f"   ❌ HTTP {response.status_code}\n")
        return ok

    def run_full_test_suite(self) -> bool:
        print("=" * 60)
        print("🧪 SMOKE TEST DISHDUEL API")
        print("=" * 60)
        print()

        results = [
            ("Health Check", self.test_health()),
            ("Full Game", self.test_full_game()),
            ("Wrong Phase", self.test_wrong_phase()),
            ("Unknown Game", self.test_unknown_game()),
        ]

        print("=" * 60)
        print("📊 RÉSUMÉ")
        print("=" * 60)
        for name, success in results:
            print(f"{'✅ PASS' if success else '❌ FAIL'} - {name}")

        passed = sum(1 for _, s in results if s)
        print()
        print(f"Total: {passed}/{len(results)} tests réussis")
        return passed == len(results)


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test de l'API DishDuel.")
    parser.add_argument("--base-url", default="http://localhost:5000/dishduel")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    random.seed(args.seed)
    tester = DishDuelAPITester(args.base_url)
    try:
        requests.get(f"{tester.base_url}/", timeout=2)
    except requests.exceptions.RequestException:
        print(f"❌ Le serveur n'est pas accessible sur {tester.base_url}")
        print("   Assurez-vous que le serveur est démarré avec:")
        print("   cd backend && gunicorn -b :5000 app:app")
        return 1

    return 0 if tester.run_full_test_suite() else 1


if __name__ == "__main__":
    raise SystemExit(main())
