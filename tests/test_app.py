import pytest
from fastapi.testclient import TestClient

from tetroyale import create_app
from tetroyale_config import AppConfig


@pytest.fixture
def client(tmp_path):
    app = create_app(AppConfig(database=str(tmp_path / "app.db")))
    with TestClient(app) as test_client:
        yield test_client


def test_register_login_and_scores(client):
    registered = client.post("/api/register", json={"username": "ann", "password": "pw"})
    assert registered.status_code == 200
    user_id = registered.json()["user_id"]

    duplicate = client.post("/api/register", json={"username": "ann", "password": "x"})
    assert duplicate.status_code == 400

    login = client.post("/api/login", json={"username": "ann", "password": "pw"})
    assert login.json()["user"] == {"id": user_id, "username": "ann"}
    assert client.post("/api/login", json={"username": "ann", "password": "no"}).status_code == 401

    first = client.post("/api/score", json={"user_id": user_id, "score": 340})
    assert first.json()["new_high_score"] is True
    second = client.post("/api/score", json={"user_id": user_id, "score": 10})
    assert second.json()["new_high_score"] is False

    board = client.get("/api/leaderboard").json()
    assert board["leaderboard"] == [{"username": "ann", "score": 340}]


def test_score_for_unknown_user_degrades(client):
    response = client.post("/api/score", json={"user_id": 404, "score": 10})
    assert response.status_code == 503
    assert response.json()["success"] is False


def test_websocket_room_creation(client):
    with client.websocket_connect("/ws?user_id=1&username=ann") as ws:
        assert ws.receive_json()["type"] == "online_users"
        assert ws.receive_json()["type"] == "room_list"
        assert ws.receive_json()["type"] == "battle_room_list"

        ws.send_json({"type": "create_battle_room", "max_players": 4})
        created = ws.receive_json()
        assert created["type"] == "battle_room_created"
        assert created["max_players"] == 4

        rooms = client.get("/api/rooms").json()
        assert rooms["battle"][0]["id"] == created["room_id"]

    assert client.get("/api/rooms").json() == {"duel": [], "battle": []}


def test_unauthenticated_socket_is_ignored(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "create_room"})
    assert client.app.state.rooms.rooms == {}


def receive_until(ws, message_type):
    while True:
        message = ws.receive_json()
        if message["type"] == message_type:
            return message


def test_bad_message_type_keeps_the_connection_usable(client):
    with client.websocket_connect("/ws?user_id=1&username=ann") as ws:
        for _ in range(3):
            ws.receive_json()
        ws.send_json({"type": "create_battle_room", "max_players": 4})
        room_id = ws.receive_json()["room_id"]

        ws.send_json({"type": ["boom"]})
        ws.send_text('{"type": "create_battle_room", "max_players": 1e999}')
        recreated = receive_until(ws, "battle_room_created")
        assert recreated["max_players"] == 3
        assert room_id not in client.app.state.rooms.rooms

    assert client.app.state.rooms.rooms == {}
    assert client.app.state.relay.hub.sockets == {}


def test_handler_failure_still_removes_the_player(client, monkeypatch):
    relay = client.app.state.relay

    async def explode(conn_id, payload):
        raise ValueError("handler bug")

    with pytest.raises(Exception):
        with client.websocket_connect("/ws?user_id=1&username=ann") as ws:
            for _ in range(3):
                ws.receive_json()
            ws.send_json({"type": "create_battle_room", "max_players": 4})
            ws.receive_json()
            monkeypatch.setattr(relay, "handle", explode)
            ws.send_json({"type": "leave_room"})
            ws.receive_json()

    assert client.app.state.rooms.rooms == {}
    assert relay.hub.sockets == {}


def test_config_route_reflects_ini_values(tmp_path):
    ini = tmp_path / "custom.ini"
    ini.write_text(
        "[server]\n"
        "database = %s\n"
        "[game]\n"
        "attack_threshold = 250\n"
        "speed_step_ms = 75\n"
        "lines_per_speed_step = 5\n" % (tmp_path / "cfg.db")
    )
    app = create_app(AppConfig.from_file(ini))
    with TestClient(app) as test_client:
        settings = test_client.get("/api/config").json()["settings"]
    assert settings["attack_threshold"] == 250
    assert settings["speed_step_ms"] == 75
    assert settings["lines_per_speed_step"] == 5
    assert settings["drop_interval_ms"] == 1000
