from __future__ import annotations

"""Curriculum synthesis.

Two generation phases: one structured call lays out the units, then one
free-text call per unit writes its body. Either phase may fail; the caller
always receives a curriculum with exactly the tier's number of units,
ordered 0..N-1.
"""

import asyncio
import logging
import os
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..domain.curriculum_models import (
    COMPLEXITY_TIERS,
    UNIT_COUNT_BY_LENGTH,
    Curriculum,
    CurriculumDraft,
    UnitCompletion,
    UnitDraft,
)
from ..domain.errors import ValidationError
from ..infrastructure.curriculum_store import CurriculumStore, get_curriculum_store
from ..infrastructure.events import publish_event
from ..observability.metrics import record_fallback
from .generation import GenerationOptions, GenerationProvider, get_capability, parse_json_object
from .prompts import PromptKind, compose, unit_count_for


logger = logging.getLogger(__name__)
LOG = logging.getLogger("tutorcore.llm")

DEFAULT_LENGTH = "medium"
DEFAULT_COMPLEXITY = "intermediate"
ELABORATION_CONCURRENCY = max(1, int(os.getenv("TUTOR_ELABORATION_CONCURRENCY", "1")))
_COMPLETION_LOCK = Lock()

_FALLBACK_STAGES = (
    "Foundations",
    "Core Concepts",
    "Key Techniques",
    "Worked Examples",
    "Common Pitfalls",
    "Advanced Ideas",
)


def fallback_unit_title(topic: str, index: int, count: int) -> str:
    if index == count - 1 and count > 1:
        return f"{topic}: Putting It Together"
    return f"{topic}: {_FALLBACK_STAGES[index % len(_FALLBACK_STAGES)]}"


def fallback_overview(unit_name: str, topic: str, complexity: str) -> str:
    return (
        f"This unit introduces {unit_name} within {topic}. "
        f"Objectives: understand the central ideas, work through examples, and apply them at a {complexity} level."
    )


def fallback_body(unit_name: str, topic: str, complexity: str) -> str:
    return (
        f"This unit focuses on {unit_name} within the context of {topic}. You will explore key concepts and "
        f"develop practical skills appropriate for {complexity}-level learners.\n\n"
        "Through this unit you will build a solid foundation that prepares you for the rest of the curriculum. "
        "Ask the tutor for explanations, examples, or practice problems whenever something is unclear."
    )


def fallback_curriculum(topic: str, length: str, complexity: str) -> CurriculumDraft:
    """Template-only curriculum used when the structure phase fails."""
    count = unit_count_for(length)
    units = []
    for i in range(count):
        title = fallback_unit_title(topic, i, count)
        units.append(
            UnitDraft(
                title=title,
                overview=fallback_overview(title, topic, complexity),
                body=fallback_body(title, topic, complexity),
                order=i,
            )
        )
    return CurriculumDraft(
        title=topic,
        description=f"A {length} {complexity}-level learning path for {topic}.",
        originating_prompt=topic,
        length=length,  # type: ignore[arg-type]
        complexity=complexity,  # type: ignore[arg-type]
        units=units,
        fallback=True,
    )


def _order_key(item: Tuple[int, Dict[str, Any]]) -> Tuple[int, int]:
    index, unit = item
    order = unit.get("order")
    if isinstance(order, int) and not isinstance(order, bool):
        return (order, index)
    return (index, index)


def _parse_structure(payload: Dict[str, Any], topic: str, complexity: str, count: int) -> Tuple[str, str, List[Tuple[str, str]]]:
    """Validate the structure response and normalize it to exactly ``count`` units.

    Returns ``(title, description, [(name, overview), ...])`` in unit order.
    Raises ``ValueError`` when the payload is unusable.
    """
    title = payload.get("title")
    description = payload.get("description")
    units = payload.get("units")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("structure is missing a title")
    if not isinstance(description, str) or not description.strip():
        raise ValueError("structure is missing a description")
    if not isinstance(units, list):
        raise ValueError("structure units is not an array")

    candidates = [(i, u) for i, u in enumerate(units) if isinstance(u, dict)]
    outline: List[Tuple[str, str]] = []
    for _, unit in sorted(candidates, key=_order_key):
        name = unit.get("name") or unit.get("title")
        if not isinstance(name, str) or not name.strip():
            continue
        name = name.strip()
        overview = unit.get("overview")
        if not isinstance(overview, str) or not overview.strip():
            overview = fallback_overview(name, topic, complexity)
        outline.append((name, overview.strip()))
        if len(outline) == count:
            break
    # Pad short outlines so the tier count always holds.
    while len(outline) < count:
        name = fallback_unit_title(topic, len(outline), count)
        outline.append((name, fallback_overview(name, topic, complexity)))
    return title.strip(), description.strip(), outline


class CurriculumSynthesizer:
    """Builds a complete curriculum for a topic; never raises for generation problems."""

    def __init__(
        self,
        capability_factory: Optional[Callable[[str], GenerationProvider]] = None,
        concurrency: int = ELABORATION_CONCURRENCY,
    ) -> None:
        self._capability_factory = capability_factory or get_capability
        self.concurrency = max(1, concurrency)

    async def _structure(self, topic: str, length: str, complexity: str) -> Tuple[str, str, List[Tuple[str, str]]]:
        count = unit_count_for(length)
        prompt = compose(
            PromptKind.CURRICULUM_STRUCTURE,
            {"topic": topic, "length": length, "complexity": complexity},
        )
        capability = self._capability_factory("curriculum_structure")
        raw = await capability.complete(
            prompt.to_messages(),
            GenerationOptions(temperature=0.7, structured=True),
        )
        return _parse_structure(parse_json_object(raw), topic, complexity, count)

    async def _elaborate(self, name: str, overview: str, topic: str, complexity: str) -> str:
        prompt = compose(
            PromptKind.UNIT_ELABORATION,
            {"unit_name": name, "topic": topic, "complexity": complexity, "overview": overview},
        )
        try:
            capability = self._capability_factory("unit_elaboration")
            text = await capability.complete(prompt.to_messages(), GenerationOptions(temperature=0.7))
            text = (text or "").strip()
            if not text:
                raise ValueError("empty unit body")
            return text
        except Exception as exc:
            LOG.warning("unit_elaboration_fallback", extra={"unit": name, "err": str(exc)})
            record_fallback("unit_elaboration")
            return fallback_body(name, topic, complexity)

    async def _elaborate_all(self, outline: List[Tuple[str, str]], topic: str, complexity: str) -> List[str]:
        if self.concurrency == 1:
            bodies = []
            for name, overview in outline:
                bodies.append(await self._elaborate(name, overview, topic, complexity))
            return bodies

        gate = asyncio.Semaphore(self.concurrency)

        async def bounded(name: str, overview: str) -> str:
            async with gate:
                return await self._elaborate(name, overview, topic, complexity)

        # gather preserves argument order, so bodies line up with the outline.
        return list(await asyncio.gather(*(bounded(n, o) for n, o in outline)))

    async def synthesize(self, topic: str, length: str = DEFAULT_LENGTH, complexity: str = DEFAULT_COMPLEXITY) -> CurriculumDraft:
        length = _known_tier(length, UNIT_COUNT_BY_LENGTH, DEFAULT_LENGTH)
        complexity = _known_tier(complexity, COMPLEXITY_TIERS, DEFAULT_COMPLEXITY)
        try:
            title, description, outline = await self._structure(topic, length, complexity)
        except Exception as exc:
            LOG.warning("curriculum_structure_fallback", extra={"topic": topic, "err": str(exc)})
            logger.exception("Curriculum structure generation failed; using template curriculum")
            record_fallback("curriculum_structure")
            return fallback_curriculum(topic, length, complexity)

        bodies = await self._elaborate_all(outline, topic, complexity)
        units = [
            UnitDraft(title=name, overview=overview, body=body, order=i)
            for i, ((name, overview), body) in enumerate(zip(outline, bodies))
        ]
        return CurriculumDraft(
            title=title,
            description=description,
            originating_prompt=topic,
            length=length,  # type: ignore[arg-type]
            complexity=complexity,  # type: ignore[arg-type]
            units=units,
        )


def _known_tier(value: Optional[str], tiers, default: str) -> str:
    # Unrecognised tiers map to the default.
    value = (value or "").strip().lower()
    return value if value in tiers else default


def _normalize_request(topic: str, length: Optional[str], complexity: Optional[str]) -> Tuple[str, str, str]:
    topic = (topic or "").strip()
    if not topic:
        raise ValidationError("Topic cannot be empty")
    length = (length or DEFAULT_LENGTH).strip().lower()
    complexity = (complexity or DEFAULT_COMPLEXITY).strip().lower()
    if length not in UNIT_COUNT_BY_LENGTH:
        raise ValidationError(f"Unknown length '{length}'; expected one of {', '.join(UNIT_COUNT_BY_LENGTH)}")
    if complexity not in COMPLEXITY_TIERS:
        raise ValidationError(f"Unknown complexity '{complexity}'; expected one of {', '.join(COMPLEXITY_TIERS)}")
    return topic, length, complexity


async def create_curriculum(
    user_id: str,
    topic: str,
    length: Optional[str] = None,
    complexity: Optional[str] = None,
    synthesizer: Optional[CurriculumSynthesizer] = None,
    store: Optional[CurriculumStore] = None,
) -> Curriculum:
    """Synthesize a curriculum for ``topic`` and persist it for ``user_id``."""
    topic, length, complexity = _normalize_request(topic, length, complexity)
    synthesizer = synthesizer or CurriculumSynthesizer()
    store = store or get_curriculum_store()

    draft = await synthesizer.synthesize(topic, length, complexity)
    curriculum = store.create_curriculum(user_id, draft)
    logger.info(
        "Created curriculum %s for user=%s units=%d fallback=%s",
        curriculum.curriculum_id,
        user_id,
        len(curriculum.units),
        draft.fallback,
    )
    publish_event(
        "curriculum.created",
        {"curriculum_id": curriculum.curriculum_id, "user_id": user_id, "fallback": draft.fallback},
    )
    return curriculum


def complete_unit(unit_id: str, store: Optional[CurriculumStore] = None) -> UnitCompletion:
    """Mark a unit complete and report whether its whole curriculum now is.

    Only the call that finishes the curriculum publishes ``curriculum.completed``.
    """
    store = store or get_curriculum_store()
    with _COMPLETION_LOCK:
        was_complete = store.get_unit(unit_id).complete
        unit = store.complete_unit(unit_id)
        curriculum = store.get_curriculum(unit.curriculum_id)
    if curriculum.complete and not was_complete:
        publish_event("curriculum.completed", {"curriculum_id": curriculum.curriculum_id})
    return UnitCompletion(unit=unit, curriculum_complete=curriculum.complete)
