"""
Tests against a live server (in-memory store, Jey without API key).

Run against a live server:
  1. Start server: OPENAI_API_KEY= uvicorn elitereply.main:app --host 127.0.0.1 --port 8000
  2. In another terminal: pytest tests/test_live_api.py -v

Or use the run script (starts server, runs tests, stops server):
  python scripts/run_tests_live.py
"""

import os
import time

import pytest

from tests.http_client import get, is_up, post, put

# Use BASE_URL to hit a running server (default: localhost:8000)
BASE_URL = os.environ.get("BASE_URL", "http://127.0.0.1:8000")

CLIENT = {"X-User-Id": "live-client", "X-User-Name": "Awa", "X-User-Role": "client"}
AGENT = {"X-User-Id": "live-agent", "X-User-Name": "Marc", "X-User-Role": "agent"}


def _url(path):
    return f"{BASE_URL}{path}"


pytestmark = pytest.mark.skipif(not is_up(_url("/health")), reason="API server not running")


def _wait_for_messages(ticket_id, count, timeout=5.0):
    deadline = time.time() + timeout
    messages = []
    while time.time() < deadline:
        messages = get(_url(f"/tickets/{ticket_id}/messages")).json()
        if len(messages) >= count:
            break
        time.sleep(0.2)
    return messages


def test_health():
    r = get(_url("/health"))
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_open_ticket_gets_welcome():
    r = post(_url("/tickets"), {"message": "Bonjour"}, CLIENT)
    assert r.status_code == 201
    ticket_id = r.json()["ticket"]["id"]
    assert r.json()["phase"] == "assistant-handling"
    messages = _wait_for_messages(ticket_id, 2)
    assert messages[-1]["sender_id"] == "jey-ai"


def test_agent_request_escalates_then_agent_takes_over():
    ticket_id = post(_url("/tickets"), {"message": "Bonjour"}, CLIENT).json()["ticket"]["id"]
    _wait_for_messages(ticket_id, 2)
    post(_url(f"/tickets/{ticket_id}/messages"), {"text": "un agent s'il vous plait"}, CLIENT)
    deadline = time.time() + 5
    while time.time() < deadline and get(_url(f"/tickets/{ticket_id}")).json()["phase"] != "escalated":
        time.sleep(0.2)
    detail = get(_url(f"/tickets/{ticket_id}")).json()
    assert detail["ticket"]["escalation_reason"] == "Demande Agent"

    r = post(_url(f"/tickets/{ticket_id}/assign"), {}, AGENT)
    assert r.status_code == 200
    assert r.json()["phase"] == "in-progress"
    other = dict(AGENT, **{"X-User-Id": "other-agent"})
    assert post(_url(f"/tickets/{ticket_id}/assign"), {}, other).status_code == 409


def test_typing_roundtrip():
    ticket_id = post(_url("/tickets"), {"message": "Bonjour"}, CLIENT).json()["ticket"]["id"]
    put(_url(f"/tickets/{ticket_id}/typing"), {"is_typing": True}, CLIENT)
    r = get(_url(f"/tickets/{ticket_id}/typing"), AGENT)
    assert "live-client" in r.json()["typing_users"]
