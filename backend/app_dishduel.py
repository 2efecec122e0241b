#!/usr/bin/env python3
from __future__ import annotations

import logging
import os
import random
import traceback
from typing import Dict, Any

from flask import Flask, request, jsonify
from flask_cors import CORS

from engines.dish_data import DEFAULT_DISHES_PATH, fetch_dishes
from engines.engine_dishduel import (
    DishDuelSession,
    GameActionError,
)

logger = logging.getLogger(__name__)

FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")

app = Flask(__name__)

CORS(app, resources={
    r"/*": {
        "origins": [FRONTEND_ORIGIN],
        "methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type"],
    }
})

# Parties en mémoire (perdues au redémarrage du serveur)
game_state: Dict[str, DishDuelSession] = {}


def dishes_path() -> str:
    return app.config.get("DISHES_PATH") or DEFAULT_DISHES_PATH


def new_game_id() -> str:
    return os.urandom(8).hex()


def new_session() -> DishDuelSession:
    path = dishes_path()
    rng = random.Random()
    return DishDuelSession(fetch_entities=lambda: fetch_dishes(path, rng=rng), rng=rng)


def internal_error(where: str, exc: Exception):
    logger.exception("Erreur interne dans %s", where)
    return (
        jsonify(
            {
                "error": "Internal error",
                "where": where,
                "detail": str(exc),
                "trace": traceback.format_exc(),
            }
        ),
        500,
    )


def state_response(gid: str, session: DishDuelSession, status: int = 200):
    body = {"game_id": gid, **session.get_state()}
    if session.state.error:
        return jsonify(body), 503
    return jsonify(body), status


def lookup_session(data: Dict[str, Any]):
    """Retourne (gid, session, None) ou (None, None, réponse d'erreur)."""
    gid = data.get("game_id")
    if not gid:
        return None, None, (jsonify({"error": "game_id manquant"}), 400)
    session = game_state.get(gid)
    if session is None:
        return None, None, (jsonify({"error": "Partie non trouvée"}), 404)
    return gid, session, None


@app.get("/")
def health():
    return jsonify({"status": "ok", "service": "DishDuel API", "dishes": dishes_path()}), 200


@app.post("/start")
def start_game():
    try:
        session = new_session()
        session.start()
        gid = new_game_id()
        game_state[gid] = session
        return state_response(gid, session)
    except Exception as e:
        return internal_error("start_game", e)


@app.post("/restart")
def restart_game():
    try:
        data = request.get_json(silent=True) or {}
        gid, session, err = lookup_session(data)
        if err:
            return err
        session.restart()
        return state_response(gid, session)
    except Exception as e:
        return internal_error("restart_game", e)


@app.post("/answer")
def answer():
    try:
        data = request.get_json(silent=True) or {}
        gid, session, err = lookup_session(data)
        if err:
            return err

        option = data.get("answer")
        if not isinstance(option, str) or not option.strip():
            return jsonify({"error": "Réponse invalide", "got": option}), 400

        try:
            session.submit_answer(option)
        except GameActionError as e:
            return jsonify({"error": str(e), "phase": session.state.phase}), 409
        return state_response(gid, session)
    except Exception as e:
        return internal_error("answer", e)


def _resolve(kind: str):
    data = request.get_json(silent=True) or {}
    gid, session, err = lookup_session(data)
    if err:
        return err

    winner_id = data.get("winner_id")
    if winner_id is None:
        return jsonify({"error": "winner_id manquant"}), 400

    try:
        if kind == "quad":
            session.submit_quad_choice(str(winner_id))
        else:
            session.submit_duel_choice(str(winner_id))
    except GameActionError as e:
        return jsonify({"error": str(e), "phase": session.state.phase}), 409
    return state_response(gid, session)


@app.post("/duel")
def resolve_duel():
    try:
        return _resolve("duel")
    except Exception as e:
        return internal_error("resolve_duel", e)


@app.post("/quad")
def resolve_quad():
    try:
        return _resolve("quad")
    except Exception as e:
        return internal_error("resolve_quad", e)


@app.get("/state/<gid>")
def get_state(gid: str):
    session = game_state.get(gid)
    if session is None:
        return jsonify({"error": "Partie non trouvée"}), 404
    return state_response(gid, session)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("DISHDUEL_PORT", "5001"))
    app.run(host="0.0.0.0", port=port, debug=True, use_reloader=False)
