from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, TestCase, mock

from fastapi.testclient import TestClient

from backend.hitparty.config import Settings
from backend.hitparty.gateway import ConnectionHub
from backend.hitparty.main import create_app

SONGS = [
    {"id": "s1", "title": "Heroes", "artist": "David Bowie", "year": 1980},
    {"id": "s2", "title": "Wonderwall", "artist": "Oasis", "year": 1995},
]


def _confirm():
    return {
        "type": "confirm_preferences",
        "text": "rock",
        "songs": SONGS,
        "start_year_range": {"min": 1975, "max": 1975},
    }


class HttpTests(TestCase):
    def setUp(self):
        self.app = create_app(Settings(_env_file=None))
        self.client = TestClient(self.app)

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok", "sessions": 0})

    def test_unknown_session_is_404(self):
        resp = self.client.get("/api/session/NOPE99")
        self.assertEqual(resp.status_code, 404)

    def test_events_of_unknown_session_are_empty(self):
        resp = self.client.get("/api/session/NOPE99/events", params={"after": 4})
        self.assertEqual(resp.json(), {"events": [], "latest_seq": 4})


class WebSocketTests(TestCase):
    def setUp(self):
        self.app = create_app(Settings(_env_file=None))

    def test_game_over_the_socket(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as host:
                host.send_json({"type": "create_session"})
                created = host.receive_json()
                self.assertEqual(created["type"], "session_created")
                code = created["code"]
                self.assertEqual(host.receive_json()["state"]["phase"], "setup")

                host.send_json(_confirm())
                self.assertEqual(host.receive_json()["state"]["phase"], "lobby")

                with client.websocket_connect("/ws") as ana:
                    ana.send_json({"type": "join_session", "code": code.lower(), "name": "Ana"})
                    joined = ana.receive_json()
                    self.assertEqual(joined["type"], "joined")
                    self.assertEqual(ana.receive_json()["state"]["you"], joined["player_id"])
                    self.assertEqual(len(host.receive_json()["state"]["players"]), 1)

                    ana.send_json({"type": "start_game"})
                    error = ana.receive_json()
                    self.assertEqual(error["type"], "error")
                    self.assertEqual(error["code"], "not_host")

                    host.send_json({"type": "start_game"})
                    self.assertEqual(host.receive_json()["state"]["current_song"]["id"], "s1")
                    self.assertIsNone(ana.receive_json()["state"]["current_song"])

                    ana.send_json({"type": "submit_placement", "index": 1})
                    self.assertEqual(ana.receive_json()["type"], "placement_accepted")
                    self.assertTrue(host.receive_json()["state"]["players"][0]["is_ready"])

                    host.send_json({"type": "reveal_results"})
                    results = ana.receive_json()
                    self.assertEqual(results["type"], "round_results")
                    self.assertTrue(results["results"][0]["correct"])
                    self.assertEqual(host.receive_json()["type"], "round_results")

                    resp = client.get(f"/api/session/{code}")
                    self.assertEqual(resp.status_code, 200)
                    self.assertEqual(resp.json()["phase"], "reveal")
                    self.assertEqual(resp.json()["players"][0]["score"], 1)

                    events = client.get(f"/api/session/{code}/events").json()
                    self.assertEqual(events["events"][-1]["payload"]["type"], "round_results")
                    self.assertEqual(events["latest_seq"], events["events"][-1]["seq"])

                # the player's socket closed; the host sees them go offline
                state = host.receive_json()["state"]
                self.assertFalse(state["players"][0]["connected"])

                host.send_json({"type": "end_session"})
                ended = host.receive_json()
                self.assertEqual(ended, {"type": "session_ended", "code": code, "reason": "ended_by_host"})

            self.assertEqual(client.get(f"/api/session/{code}").status_code, 404)

    def test_malformed_messages_are_reported_to_the_sender(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text("not json")
                self.assertEqual(ws.receive_json()["code"], "validation")

                ws.send_json({"type": "launch_rockets"})
                self.assertEqual(ws.receive_json()["code"], "validation")

                ws.send_json({"type": "submit_placement", "index": "1"})
                self.assertEqual(ws.receive_json()["code"], "validation")

                ws.send_json({"type": "start_game"})
                self.assertEqual(ws.receive_json()["code"], "not_found")

    def test_unexpected_errors_are_reported_as_internal(self):
        with TestClient(self.app) as client:
            with mock.patch.object(self.app.state.service, "handle", side_effect=RuntimeError("boom")):
                with client.websocket_connect("/ws") as ws:
                    ws.send_json({"type": "create_session"})
                    error = ws.receive_json()
        self.assertEqual(error, {"type": "error", "code": "internal", "message": "Something went wrong"})


class _DeadSocket:
    async def send_json(self, payload):
        raise RuntimeError("socket closed")


class ConnectionHubTests(IsolatedAsyncioTestCase):
    async def test_dead_socket_is_dropped(self):
        hub = ConnectionHub()
        cid = await hub.register(_DeadSocket())
        self.assertEqual(len(hub), 1)
        await hub.send(cid, {"type": "session_state"})
        self.assertEqual(len(hub), 0)
        # sending to a forgotten connection is a no-op
        await hub.send(cid, {"type": "session_state"})
