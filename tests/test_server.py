import pytest
from fastapi.testclient import TestClient

from voice_engine import server


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "CONFIG_PATH", tmp_path / "voice_engine.json")
    with TestClient(server.app) as test_client:
        yield test_client


def test_speech_token(client, monkeypatch):
    monkeypatch.setenv("ASSEMBLYAI_API_KEY", "secret-key")
    response = client.post("/speech-token")
    assert response.status_code == 200
    assert response.json() == {"apiKey": "secret-key"}


def test_speech_token_unconfigured(client, monkeypatch):
    monkeypatch.delenv("ASSEMBLYAI_API_KEY", raising=False)
    response = client.post("/speech-token")
    assert response.status_code == 500
    assert response.json() == {"error": "AssemblyAI API key not configured"}


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"


def test_config_defaults_and_patch(client, tmp_path):
    assert client.get("/config").json()["turn_taking"]["silence_threshold_sec"] == 2.0

    response = client.put("/config", json={"turn_taking": {"silence_threshold_sec": 3.0}})
    assert response.status_code == 200
    assert response.json()["turn_taking"]["silence_threshold_sec"] == 3.0
    assert (tmp_path / "voice_engine.json").exists()
    assert client.get("/config").json()["turn_taking"]["silence_threshold_sec"] == 3.0


def test_config_patch_rejected(client, tmp_path):
    response = client.put("/config", json={"turn_taking": {"max_accumulation_sec": 0}})
    assert response.status_code == 422
    assert not (tmp_path / "voice_engine.json").exists()
