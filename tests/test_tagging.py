import json
import sys
from pathlib import Path

import pytest
import requests

sys.path.append(str(Path(__file__).resolve().parents[1]))
import campusdesk as desk_app  # noqa: E402

ALEX = {"name": "alex", "role": "student", "displayName": "Alex Smith", "avatar": "👨‍🎓"}


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


@pytest.fixture(autouse=True)
def tagging_endpoint(tmp_path, monkeypatch):
    desk_app.configure_database(f"sqlite:///{tmp_path / 'campusdesk.db'}")
    monkeypatch.setattr(desk_app, "TAGGING_ENDPOINT_URL", "https://tags.example.test/categorize")
    monkeypatch.setattr(desk_app, "TAGGING_API_KEY", None)


def test_successful_tagging_returns_tags(monkeypatch):
    calls = []

    def fake_post(url, headers=None, json=None, timeout=None):
        calls.append({"url": url, "json": json, "timeout": timeout})
        return FakeResponse({"tags": ["Network", " Wifi ", ""]})

    monkeypatch.setattr(desk_app.requests, "post", fake_post)

    assert desk_app.suggest_tags("Wifi down", "Dorm B") == ["Network", "Wifi"]
    assert calls[0]["json"] == {"title": "Wifi down", "description": "Dorm B"}
    assert calls[0]["timeout"] == desk_app.TAGGING_TIMEOUT


@pytest.mark.parametrize(
    "outcome",
    [
        requests.Timeout("timed out"),
        requests.ConnectionError("offline"),
        FakeResponse({"error": "boom"}, status_code=500),
        FakeResponse({"labels": ["Network"]}),
        FakeResponse(ValueError("not json")),
        FakeResponse(["Network"]),
    ],
)
def test_any_failure_falls_back(monkeypatch, outcome):
    def fake_post(*args, **kwargs):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(desk_app.requests, "post", fake_post)

    assert desk_app.suggest_tags("Wifi down", "") == ["Uncategorized"]


def test_unconfigured_endpoint_falls_back_without_calling(monkeypatch):
    monkeypatch.setattr(desk_app, "TAGGING_ENDPOINT_URL", None)

    def fail_post(*args, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(desk_app.requests, "post", fail_post)

    assert desk_app.suggest_tags("Wifi down", "") == ["Uncategorized"]


def test_ticket_still_created_when_tagging_times_out(monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.Timeout("timed out")

    monkeypatch.setattr(desk_app.requests, "post", fake_post)
    client = desk_app.app.test_client()
    with client.session_transaction() as session:
        session[desk_app.STORAGE_KEY_USER] = json.dumps(ALEX)

    response = client.post("/new", data={"title": "urgent wifi down now", "desc": "", "category": "Technical"})

    assert response.status_code == 302
    tickets = desk_app.load_tickets()
    assert len(tickets) == 1
    assert tickets[0]["tags"] == ["Uncategorized"]
    assert tickets[0]["priority"] == "High"
    assert tickets[0]["urgency"] == "Critical"


def test_categorize_service_parses_model_reply(monkeypatch):
    monkeypatch.setattr(desk_app, "OPENAI_API_KEY", "sk-test")
    captured = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        captured.update(url=url, payload=json)
        content = '```json\n{"tags": ["Printer", "Hardware"]}\n```'
        return FakeResponse({"choices": [{"message": {"content": content}}]})

    monkeypatch.setattr(desk_app.requests, "post", fake_post)
    client = desk_app.app.test_client()

    response = client.post("/api/categorize-ticket", json={"title": "Printer jam", "description": "Tray 2"})

    assert response.status_code == 200
    assert response.get_json() == {"tags": ["Printer", "Hardware"]}
    assert captured["url"].endswith("/chat/completions")
    assert captured["payload"]["temperature"] == 0.3


def test_categorize_service_always_answers_with_fallback(monkeypatch):
    monkeypatch.setattr(desk_app, "OPENAI_API_KEY", None)
    client = desk_app.app.test_client()

    response = client.post("/api/categorize-ticket", json={"title": "Anything"})

    assert response.status_code == 200
    assert response.get_json() == {"tags": ["Uncategorized"]}


def test_categorize_service_checks_shared_key(monkeypatch):
    monkeypatch.setattr(desk_app, "TAGGING_API_KEY", "shared")
    client = desk_app.app.test_client()

    assert client.post("/api/categorize-ticket", json={}).status_code == 401
