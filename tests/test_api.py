"""
Tests for the HTTP API in main.py
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient


@pytest.fixture
def client(monkeypatch):
    from loreloom.config_loader import CONFIG
    from main import app

    monkeypatch.setitem(CONFIG["features"], "auto_import", False)
    with TestClient(app) as test_client:
        yield test_client


def _create_book(client, **overrides):
    book = {
        "name": "Eld",
        "entries": [
            {"id": "dragon", "title": "Dragon", "content": "Dragons hoard gold.", "primaryKeys": ["dragon"],
             "order": 10, "cooldown": 2},
            {"id": "realm", "title": "Realm", "content": "The realm of Eld.", "strategy": "constant",
             "position": "before"},
        ],
    }
    book.update(overrides)
    response = client.post("/api/worldbooks", json=book)
    assert response.status_code == 200
    return response.json()["id"]


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": True}


class TestWorldBookEndpoints:
    """Tests for world book CRUD."""

    def test_create_and_fetch(self, client):
        book_id = _create_book(client)
        data = client.get(f"/api/worldbooks/{book_id}").json()
        assert data["name"] == "Eld"
        assert [e["id"] for e in data["entries"]] == ["dragon", "realm"]
        assert data["entries"][0]["primaryKeys"] == ["dragon"]

    def test_list(self, client):
        _create_book(client)
        _create_book(client, name="Other")
        assert sorted(b["name"] for b in client.get("/api/worldbooks").json()) == ["Eld", "Other"]

    def test_unknown_book_is_404(self, client):
        response = client.get("/api/worldbooks/missing")
        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_invalid_book_is_422(self, client):
        response = client.post("/api/worldbooks", json={"name": "Bad", "entries": [{"probability": 500}]})
        assert response.status_code == 422

    def test_delete(self, client):
        book_id = _create_book(client)
        assert client.delete(f"/api/worldbooks/{book_id}").json()["success"] is True
        assert client.get(f"/api/worldbooks/{book_id}").status_code == 404
        assert client.delete(f"/api/worldbooks/{book_id}").status_code == 404

    def test_add_replace_and_delete_entry(self, client):
        book_id = _create_book(client)

        client.post(f"/api/worldbooks/{book_id}/entries", json={"id": "wyrm", "primaryKeys": ["wyrm"]})
        client.post(f"/api/worldbooks/{book_id}/entries",
                    json={"id": "dragon", "content": "Updated", "primaryKeys": ["dragon"]})
        entries = client.get(f"/api/worldbooks/{book_id}").json()["entries"]
        assert [e["id"] for e in entries] == ["dragon", "realm", "wyrm"]
        assert entries[0]["content"] == "Updated"

        assert client.delete(f"/api/worldbooks/{book_id}/entries/wyrm").json()["success"] is True
        assert client.delete(f"/api/worldbooks/{book_id}/entries/wyrm").status_code == 404

    def test_link_and_unlink_character(self, client):
        book_id = _create_book(client)
        assert client.post(f"/api/worldbooks/{book_id}/characters/aria").json()["success"] is True
        assert client.get(f"/api/worldbooks/{book_id}").json()["characterIds"] == ["aria"]
        assert client.delete(f"/api/worldbooks/{book_id}/characters/aria").json()["success"] is True
        assert client.delete(f"/api/worldbooks/{book_id}/characters/aria").json()["success"] is False
        assert client.post("/api/worldbooks/missing/characters/aria").status_code == 404


class TestImportExport:
    """Tests for import/export endpoints."""

    def test_import_sillytavern(self, client):
        payload = {"entries": {"0": {"uid": 0, "key": ["dragon"], "content": "Dragons.", "comment": "Dragon"}}}
        response = client.post("/api/worldbooks/import", params={"name": "Eld"}, json=payload)
        data = response.json()
        assert data["success"] is True
        assert data["entries"] == 1

        exported = client.get(f"/api/worldbooks/{data['id']}/export").json()
        assert exported["name"] == "Eld"
        assert exported["entries"][0]["primaryKeys"] == ["dragon"]

    def test_import_invalid(self, client):
        response = client.post("/api/worldbooks/import", json={"entries": [{"strategy": "psychic"}]})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_reimport_empty_folder(self, client, monkeypatch, tmp_path):
        from loreloom.config_loader import CONFIG

        monkeypatch.setitem(CONFIG["storage"], "worldbook_dir", str(tmp_path / "worldbooks"))
        assert client.post("/api/worldbooks/reimport").json() == {"success": True, "imported": 0}


class TestActivationEndpoints:
    """Tests for the test page and turn evaluation."""

    def test_test_endpoint(self, client):
        book_id = _create_book(client)
        response = client.post(f"/api/worldbooks/{book_id}/test", json={"text": "Tell me about the dragon"})
        data = response.json()
        assert data["success"] is True
        assert data["before"] == "The realm of Eld."
        assert data["after"] == "Dragons hoard gold."
        assert [a["entryId"] for a in data["activations"]] == ["realm", "dragon"]
        assert data["state"]["cooldown"] == {"dragon": 2}

    def test_test_endpoint_is_stateless(self, client):
        book_id = _create_book(client)
        for _ in range(2):
            data = client.post(f"/api/worldbooks/{book_id}/test", json={"text": "dragon"}).json()
            assert data["after"] == "Dragons hoard gold."

    def test_test_endpoint_accepts_state(self, client):
        book_id = _create_book(client)
        data = client.post(f"/api/worldbooks/{book_id}/test",
                           json={"text": "dragon", "state": {"cooldown": {"dragon": 1}}}).json()
        assert data["after"] == ""
        assert "cooldown" in data["skipped"]["dragon"]

    def test_ignore_probability(self, client):
        book_id = _create_book(client, entries=[{"id": "rare", "content": "Rare", "primaryKeys": ["dragon"],
                                                 "probability": 0}])
        body = {"text": "dragon"}
        assert client.post(f"/api/worldbooks/{book_id}/test", json=body).json()["after"] == ""
        body["ignore_probability"] = True
        assert client.post(f"/api/worldbooks/{book_id}/test", json=body).json()["after"] == "Rare"

    def test_world_info_turns_and_reset(self, client):
        """Test that turn evaluation keeps state per session until reset."""
        book_id = _create_book(client)
        client.post(f"/api/worldbooks/{book_id}/characters/aria")
        body = {"character_id": "aria", "session_id": "s1",
                "messages": [{"role": "user", "content": "the dragon!"}]}

        first = client.post("/api/world-info", json=body).json()
        assert first["after"] == "Dragons hoard gold."
        second = client.post("/api/world-info", json=body).json()
        assert second["after"] == ""
        assert second["before"] == "The realm of Eld."

        assert client.delete("/api/world-info/state/s1").json() == {"success": True, "cleared": 1}
        third = client.post("/api/world-info", json=body).json()
        assert third["after"] == "Dragons hoard gold."
