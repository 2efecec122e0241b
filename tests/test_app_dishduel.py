import json
from unittest.mock import patch

import pytest
from werkzeug.test import Client

from app_dishduel import app, game_state, new_session


@pytest.fixture
def client(dishes_file):
    app.config.update(TESTING=True, DISHES_PATH=str(dishes_file))
    yield app.test_client()
    game_state.clear()
    app.config.pop("DISHES_PATH", None)


def start(client):
    resp = client.post("/start")
    assert resp.status_code == 200
    return resp.get_json()


def play(client, state, max_steps=200):
    gid = state["game_id"]
    for _ in range(max_steps):
        if state["phase"] == "result":
            return state
        if state["question"]:
            resp = client.post("/answer", json={"game_id": gid, "answer": state["question"]["options"][0]})
        elif state["quad"]:
            resp = client.post("/quad", json={"game_id": gid, "winner_id": state["quad"][0]["id"]})
        else:
            resp = client.post("/duel", json={"game_id": gid, "winner_id": state["duel"][0]["id"]})
        assert resp.status_code == 200
        state = resp.get_json()
    pytest.fail("la partie ne se termine pas")


class TestRoutes:

    def test_health(self, client):
        resp = client.get("/")

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_start_asks_question(self, client):
        data = start(client)

        assert data["game_id"] in game_state
        assert data["phase"] == "narrowing"
        assert data["pool_size"] == 20
        assert 3 <= len(data["question"]["options"]) <= 4
        assert data["error"] is None

    def test_state_lookup(self, client):
        data = start(client)

        resp = client.get(f"/state/{data['game_id']}")

        assert resp.status_code == 200
        assert resp.get_json()["question"] == data["question"]
        assert client.get("/state/inconnue").status_code == 404

    def test_answer_narrows_pool(self, client):
        data = start(client)

        resp = client.post("/answer", json={"game_id": data["game_id"], "answer": data["question"]["options"][0]})

        assert resp.status_code == 200
        assert resp.get_json()["pool_size"] < data["pool_size"]

    def test_answer_validation(self, client):
        data = start(client)

        assert client.post("/answer", json={"answer": "meat"}).status_code == 400
        assert client.post("/answer", json={"game_id": "nope", "answer": "meat"}).status_code == 404
        assert client.post("/answer", json={"game_id": data["game_id"], "answer": "  "}).status_code == 400
        assert client.post("/answer", data="pas du json").status_code == 400

    def test_degenerate_answer_returns_warning(self, client):
        data = start(client)

        resp = client.post("/answer", json={"game_id": data["game_id"], "answer": "introuvable"})

        body = resp.get_json()
        assert resp.status_code == 200
        assert body["warning"]
        assert body["question"] is None
        assert body["pool_size"] == data["pool_size"]

    def test_duel_during_questions_is_conflict(self, client):
        data = start(client)

        resp = client.post("/duel", json={"game_id": data["game_id"], "winner_id": "x"})

        assert resp.status_code == 409
        assert resp.get_json()["phase"] == "narrowing"

    def test_missing_winner_id(self, client):
        data = start(client)

        assert client.post("/quad", json={"game_id": data["game_id"]}).status_code == 400

    def test_full_game(self, client):
        final = play(client, start(client))

        assert final["winner"]["id"].startswith("http://www.wikidata.org/entity/")
        assert final["question"] is None

    def test_restart(self, client):
        data = start(client)
        client.post("/answer", json={"game_id": data["game_id"], "answer": data["question"]["options"][0]})

        resp = client.post("/restart", json={"game_id": data["game_id"]})

        body = resp.get_json()
        assert resp.status_code == 200
        assert body["game_id"] == data["game_id"]
        assert body["pool_size"] == 20
        assert body["question_count"] == 1

    def test_new_session_reads_configured_file(self, client):
        session = new_session()

        dishes = session.fetch_entities()

        assert len(dishes) == 20
        assert session.state.phase == "loading"


class TestErrors:

    def test_missing_data_is_unavailable(self, client, tmp_path):
        app.config["DISHES_PATH"] = str(tmp_path / "absent.json")

        resp = client.post("/start")

        body = resp.get_json()
        assert resp.status_code == 503
        assert body["phase"] == "loading"
        assert "introuvable" in body["error"]

    def test_unexpected_error_is_500(self, client):
        with patch("app_dishduel.new_session", side_effect=RuntimeError("boom")):
            resp = client.post("/start")

        body = resp.get_json()
        assert resp.status_code == 500
        assert body["where"] == "start_game"
        assert body["detail"] == "boom"


class TestDispatcher:

    def test_root_and_mount(self, client):
        from app import app as wsgi

        c = Client(wsgi)

        health = c.get("/health")
        assert health.status_code == 200
        assert json.loads(health.data)["status"] == "ok"

        mounted = c.get("/dishduel/")
        assert mounted.status_code == 200
        assert json.loads(mounted.data)["service"] == "DishDuel API"
