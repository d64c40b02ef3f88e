from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from src.tutorcore.api import main as main_module
from src.tutorcore.api.main import app, tutor_error_handler
from src.tutorcore.domain.errors import GenerationFailure
from src.tutorcore.infrastructure.chat_store import get_chat_store
from src.tutorcore.services import curriculum as curriculum_service

from .utils import ScriptedProvider, fill_turns, structure_json


client = TestClient(app)


def _create(topic="Graph Theory", length="short", complexity="beginner", prefix=""):
    res = client.post(
        f"{prefix}/curricula",
        json={"userId": "u1", "topic": topic, "length": length, "complexity": complexity},
    )
    assert res.status_code == 201, res.text
    return res.json()


def test_root_and_health():
    assert client.get("/").json()["name"] == "Tutoring Core API"
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["timestamp"].endswith("Z")
    assert client.get("/api/health").status_code == 200


def test_create_curriculum_without_model_uses_templates():
    cur = _create()
    assert cur["title"] == "Graph Theory"
    assert [u["order"] for u in cur["units"]] == [0, 1, 2]
    assert all("Graph Theory" in u["body"] for u in cur["units"])
    assert cur["progress"] == 0.0
    assert cur["complete"] is False


def test_create_curriculum_with_model(monkeypatch):
    providers = {
        "curriculum_structure": ScriptedProvider(
            completions=[structure_json("Intro to Graphs", [{"name": f"U{i}", "overview": "o", "order": i} for i in range(3)])]
        ),
        "unit_elaboration": ScriptedProvider(completions=["b0", "b1", "b2"]),
    }
    monkeypatch.setattr(curriculum_service, "get_capability", lambda purpose: providers[purpose])

    cur = _create(prefix="/api")

    assert cur["title"] == "Intro to Graphs"
    assert [u["body"] for u in cur["units"]] == ["b0", "b1", "b2"]


def test_create_curriculum_validation_errors():
    res = client.post("/curricula", json={"userId": "u1", "topic": "  "})
    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"

    res = client.post("/curricula", json={"userId": "u1", "topic": "Graphs", "length": "epic"})
    assert res.status_code == 422

    res = client.post("/curricula", json={"topic": "Graphs"})
    assert res.status_code == 422


def test_list_get_and_delete_curriculum():
    cur = _create()
    listed = client.get("/curricula", params={"user_id": "u1"}).json()
    assert [c["curriculum_id"] for c in listed] == [cur["curriculum_id"]]

    fetched = client.get(f"/curricula/{cur['curriculum_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["units"] == cur["units"]

    unit_id = cur["units"][0]["unit_id"]
    assert client.delete(f"/curricula/{cur['curriculum_id']}").status_code == 204
    assert client.get(f"/curricula/{cur['curriculum_id']}").status_code == 404
    missing = client.get(f"/conversations/{unit_id}/turns")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_complete_units_until_curriculum_done():
    cur = _create()
    flags = []
    for unit in cur["units"]:
        res = client.post(f"/units/{unit['unit_id']}/complete")
        assert res.status_code == 200
        body = res.json()
        assert body["unit"]["complete"] is True
        flags.append(body["curriculumComplete"])
    assert flags == [False, False, True]

    done = client.get(f"/curricula/{cur['curriculum_id']}").json()
    assert done["complete"] is True
    assert done["progress"] == 1.0
    assert client.post("/units/nope/complete").status_code == 404


def test_append_and_list_turns():
    cur = _create()
    cid = cur["units"][0]["unit_id"]

    first = client.post(f"/conversations/{cid}/turns", json={"content": "  Hello  "})
    assert first.status_code == 201
    assert first.json()["sequence"] == 0
    assert first.json()["content"] == "Hello"

    second = client.post(f"/api/conversations/{cid}/turns", json={"role": "assistant", "content": "Hi!"})
    assert second.json()["sequence"] == 1

    turns = client.get(f"/conversations/{cid}/turns").json()
    assert [(t["role"], t["sequence"]) for t in turns] == [("user", 0), ("assistant", 1)]


def test_append_turn_rejections():
    cur = _create()
    cid = cur["units"][0]["unit_id"]

    blank = client.post(f"/conversations/{cid}/turns", json={"content": "   "})
    assert blank.status_code == 422

    bad_role = client.post(f"/conversations/{cid}/turns", json={"role": "system", "content": "x"})
    assert bad_role.status_code == 422

    fill_turns(get_chat_store(), cid, 100)
    full = client.post(f"/conversations/{cid}/turns", json={"content": "one more"})
    assert full.status_code == 429
    assert full.json()["code"] == "quota_exceeded"
    assert len(client.get(f"/conversations/{cid}/turns").json()) == 100

    assert client.post("/conversations/missing/turns", json={"content": "x"}).status_code == 404


def test_follow_ups_endpoint_starts_empty():
    cur = _create()
    cid = cur["units"][0]["unit_id"]
    body = client.get(f"/conversations/{cid}/follow-ups").json()
    assert body == {"conversation_id": cid, "questions": [], "updated_at": None}


def test_profiles_round_trip():
    assert client.get("/profiles/u9").json() == {"user_id": "u9", "display_name": "Learner", "background": ""}
    res = client.put("/profiles/u9", json={"display_name": "Grace", "background": "COBOL"})
    assert res.status_code == 200
    assert client.get("/api/profiles/u9").json()["display_name"] == "Grace"


@pytest.mark.asyncio
async def test_generation_failure_maps_to_bad_gateway():
    res = await tutor_error_handler(None, GenerationFailure("llm_circuit_open"))
    assert res.status_code == 502
    assert json.loads(res.body) == {"detail": "llm_circuit_open", "code": "generation_failure"}


def test_shutdown_drains_follow_ups(monkeypatch):
    drained = []

    class Orchestrator:
        async def drain_follow_ups(self):
            drained.append(True)

    monkeypatch.setattr(main_module, "get_orchestrator", lambda: Orchestrator())
    with TestClient(app) as scoped:
        assert scoped.get("/health").status_code == 200
        assert drained == []
    assert drained == [True]
