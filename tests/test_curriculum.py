from __future__ import annotations

import asyncio
import json

import pytest

from src.tutorcore.domain.errors import NotFound, ValidationError
from src.tutorcore.infrastructure import events
from src.tutorcore.infrastructure.curriculum_store import InMemoryCurriculumStore
from src.tutorcore.services import curriculum as curriculum_service
from src.tutorcore.services.curriculum import CurriculumSynthesizer, complete_unit, create_curriculum

from .utils import ScriptedProvider, make_stores, structure_json


def _units(count, shuffle=False):
    units = [{"name": f"Topic {i}", "overview": f"Overview {i}", "order": i} for i in range(count)]
    return list(reversed(units)) if shuffle else units


def _synth(structure: ScriptedProvider, elaboration: ScriptedProvider, concurrency: int = 1):
    providers = {"curriculum_structure": structure, "unit_elaboration": elaboration}
    return CurriculumSynthesizer(capability_factory=lambda purpose: providers[purpose], concurrency=concurrency)


@pytest.mark.asyncio
@pytest.mark.parametrize("length,count", [("short", 3), ("medium", 5), ("long", 7)])
async def test_synthesize_produces_tier_count_in_order(length, count):
    structure = ScriptedProvider(completions=[structure_json("Graphs", _units(count, shuffle=True))])
    elaboration = ScriptedProvider(completions=[f"Body {i}" for i in range(count)])

    draft = await _synth(structure, elaboration).synthesize("Graphs", length, "beginner")

    assert len(draft.units) == count
    assert [u.order for u in draft.units] == list(range(count))
    assert [u.title for u in draft.units] == [f"Topic {i}" for i in range(count)]
    assert [u.body for u in draft.units] == [f"Body {i}" for i in range(count)]
    assert draft.fallback is False
    assert structure.calls[0]["options"].structured is True


@pytest.mark.asyncio
async def test_synthesize_pads_and_truncates_structure():
    short = ScriptedProvider(completions=[structure_json("Graphs", _units(1))])
    padded = await _synth(short, ScriptedProvider(completions=["b"] * 3)).synthesize("Graphs", "short", "beginner")
    assert len(padded.units) == 3
    assert padded.units[0].title == "Topic 0"
    assert "Graphs" in padded.units[2].title

    long = ScriptedProvider(completions=[structure_json("Graphs", _units(9))])
    truncated = await _synth(long, ScriptedProvider(completions=["b"] * 5)).synthesize("Graphs", "medium", "beginner")
    assert [u.title for u in truncated.units] == [f"Topic {i}" for i in range(5)]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "completion",
    [
        "not json",
        json.dumps({"title": "T", "description": "D", "units": "nope"}),
        json.dumps({"description": "D", "units": []}),
        RuntimeError("structure backend down"),
    ],
)
async def test_structure_failure_yields_template_curriculum(completion):
    structure = ScriptedProvider(completions=[completion])
    elaboration = ScriptedProvider()

    draft = await _synth(structure, elaboration).synthesize("Graphs", "long", "advanced")

    assert draft.fallback is True
    assert len(draft.units) == 7
    assert [u.order for u in draft.units] == list(range(7))
    assert elaboration.calls == []


@pytest.mark.asyncio
async def test_synthesize_maps_unknown_tiers_to_defaults():
    structure = ScriptedProvider(completions=[structure_json("Graphs", _units(5))])
    elaboration = ScriptedProvider(completions=[f"Body {i}" for i in range(5)])

    draft = await _synth(structure, elaboration).synthesize("Graphs", "epic", "Wizard")

    assert draft.length == "medium"
    assert draft.complexity == "intermediate"
    assert [u.body for u in draft.units] == [f"Body {i}" for i in range(5)]
    assert draft.fallback is False


@pytest.mark.asyncio
async def test_synthesize_fallback_accepts_missing_tiers():
    draft = await _synth(ScriptedProvider(), ScriptedProvider()).synthesize("Graphs", None, None)
    assert draft.fallback is True
    assert (draft.length, draft.complexity) == ("medium", "intermediate")
    assert len(draft.units) == 5


@pytest.mark.asyncio
async def test_single_elaboration_failure_keeps_other_units():
    structure = ScriptedProvider(completions=[structure_json("Graphs", _units(3))])
    elaboration = ScriptedProvider(completions=["Body 0", RuntimeError("timeout"), "Body 2"])

    draft = await _synth(structure, elaboration).synthesize("Graphs", "short", "beginner")

    assert [u.order for u in draft.units] == [0, 1, 2]
    assert draft.units[0].body == "Body 0"
    assert draft.units[2].body == "Body 2"
    assert "Topic 1" in draft.units[1].body
    assert draft.fallback is False


@pytest.mark.asyncio
async def test_parallel_elaboration_preserves_unit_order():
    structure = ScriptedProvider(completions=[structure_json("Graphs", _units(5))])
    in_flight = {"now": 0, "peak": 0}

    class SlowElaboration:
        async def complete(self, messages, options):
            in_flight["now"] += 1
            in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
            name = messages[-1]["content"].splitlines()[0].replace("Unit: ", "")
            await asyncio.sleep(0.01 if name.endswith("0") else 0)
            in_flight["now"] -= 1
            return f"Body for {name}"

    providers = {"curriculum_structure": structure, "unit_elaboration": SlowElaboration()}
    synth = CurriculumSynthesizer(capability_factory=lambda purpose: providers[purpose], concurrency=2)

    draft = await synth.synthesize("Graphs", "medium", "intermediate")

    assert [u.body for u in draft.units] == [f"Body for Topic {i}" for i in range(5)]
    assert in_flight["peak"] <= 2


@pytest.mark.asyncio
async def test_graph_theory_with_generation_down():
    chats, curricula, _ = make_stores()
    synth = _synth(ScriptedProvider(), ScriptedProvider())

    cur = await create_curriculum("u1", "Graph Theory", "short", "beginner", synthesizer=synth, store=curricula)

    assert len(cur.units) == 3
    for i, unit in enumerate(cur.units):
        assert unit.order == i
        assert unit.complete is False
        assert unit.overview and "Graph Theory" in unit.overview
        assert unit.body and "Graph Theory" in unit.body
        assert chats.has_conversation(unit.unit_id)


@pytest.mark.asyncio
async def test_default_synthesizer_falls_back_without_credentials():
    cur = await create_curriculum("u1", "Graph Theory", "short", "beginner")
    assert len(cur.units) == 3
    assert cur.title == "Graph Theory"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "topic,length,complexity",
    [("   ", "short", "beginner"), ("Graphs", "huge", "beginner"), ("Graphs", "short", "expert")],
)
async def test_create_curriculum_rejects_bad_requests(topic, length, complexity):
    synth = _synth(ScriptedProvider(), ScriptedProvider())
    with pytest.raises(ValidationError):
        await create_curriculum("u1", topic, length, complexity, synthesizer=synth)


@pytest.mark.asyncio
async def test_create_curriculum_defaults_to_medium_intermediate():
    synth = _synth(ScriptedProvider(), ScriptedProvider())
    cur = await create_curriculum("u1", " Graphs ", synthesizer=synth)
    assert cur.length == "medium"
    assert cur.complexity == "intermediate"
    assert cur.originating_prompt == "Graphs"
    assert len(cur.units) == 5


@pytest.mark.asyncio
async def test_complete_unit_reports_curriculum_completion(monkeypatch):
    published = []
    monkeypatch.setattr(curriculum_service, "publish_event", lambda t, p: published.append((t, p)))
    _, curricula, _ = make_stores()
    synth = _synth(ScriptedProvider(), ScriptedProvider())
    cur = await create_curriculum("u1", "Graphs", "short", "beginner", synthesizer=synth, store=curricula)

    results = [complete_unit(u.unit_id, store=curricula) for u in cur.units]

    assert [r.curriculum_complete for r in results] == [False, False, True]
    assert all(r.unit.complete for r in results)
    assert [t for t, _ in published] == ["curriculum.created", "curriculum.completed"]


@pytest.mark.asyncio
async def test_completing_finished_unit_again_publishes_nothing(monkeypatch):
    published = []
    monkeypatch.setattr(curriculum_service, "publish_event", lambda t, p: published.append(t))
    _, curricula, _ = make_stores()
    synth = _synth(ScriptedProvider(), ScriptedProvider())
    cur = await create_curriculum("u1", "Graphs", "short", "beginner", synthesizer=synth, store=curricula)
    for unit in cur.units:
        complete_unit(unit.unit_id, store=curricula)

    again = complete_unit(cur.units[-1].unit_id, store=curricula)
    first_again = complete_unit(cur.units[0].unit_id, store=curricula)

    assert again.curriculum_complete is True
    assert first_again.curriculum_complete is True
    assert published.count("curriculum.completed") == 1


def test_complete_unknown_unit_raises_not_found():
    with pytest.raises(NotFound):
        complete_unit("missing", store=InMemoryCurriculumStore())


def test_events_module_is_quiet_without_redis():
    assert events._get_publisher() is None
