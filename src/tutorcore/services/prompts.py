from __future__ import annotations

"""Prompt composition for every generation call the service makes.

``compose`` is a pure function of its inputs: it never touches a store or a
model, so the exact payload sent for a given context is reproducible in tests.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..domain.chat_models import ConversationTurn
from ..domain.curriculum_models import UNIT_COUNT_BY_LENGTH, Curriculum, CurriculumUnit, LearnerProfile


CHAT_HISTORY_WINDOW = 20
FOLLOW_UP_HISTORY_WINDOW = 10


class PromptKind(str, Enum):
    CHAT = "chat"
    CURRICULUM_STRUCTURE = "curriculum_structure"
    UNIT_ELABORATION = "unit_elaboration"
    FOLLOW_UPS = "follow_ups"


@dataclass(frozen=True)
class ComposedPrompt:
    instructions: str
    history: List[Dict[str, str]] = field(default_factory=list)
    request: Optional[str] = None

    def to_messages(self, user_message: Optional[str] = None) -> List[Dict[str, str]]:
        msgs = [{"role": "system", "content": self.instructions}]
        msgs.extend(dict(turn) for turn in self.history)
        trailing = user_message if user_message is not None else self.request
        if trailing:
            msgs.append({"role": "user", "content": trailing})
        return msgs


def unit_count_for(length: str) -> int:
    return UNIT_COUNT_BY_LENGTH.get(length, UNIT_COUNT_BY_LENGTH["medium"])


def _history_window(turns: Sequence[ConversationTurn], limit: int) -> List[Dict[str, str]]:
    ordered = sorted(turns, key=lambda t: t.sequence)
    window = ordered[-limit:] if limit > 0 else []
    return [{"role": t.role, "content": t.content} for t in window]


def format_unit_listing(units: Sequence[CurriculumUnit]) -> str:
    lines = []
    for unit in sorted(units, key=lambda u: u.order):
        lines.append(f"{unit.order}. {unit.title}: {unit.overview}")
    return "\n".join(lines)


def _compose_chat(context: Mapping[str, Any]) -> ComposedPrompt:
    curriculum: Curriculum = context["curriculum"]
    unit: CurriculumUnit = context["unit"]
    profile: Optional[LearnerProfile] = context.get("profile")
    turns: Sequence[ConversationTurn] = context.get("turns") or []

    learner_name = profile.display_name if profile else "Learner"
    background = (profile.background if profile else "") or "Not provided"

    sys_lines = [
        f'You are an expert teacher helping a learner study "{curriculum.title}".',
        f"Curriculum description: {curriculum.description}",
        "",
        f"Current unit: {unit.title}",
        f"Unit overview: {unit.overview}",
        "Unit material:",
        unit.body,
        "",
        "All units in this curriculum:",
        format_unit_listing(curriculum.units),
        "",
        f"Learner: {learner_name}",
        f"Learner background: {background}",
        "",
        "Your role:",
        "- Guide the learner through the current unit's objectives and relate them to the other units when useful.",
        "- Give clear explanations with examples, and ask questions that deepen understanding.",
        "- Keep a supportive, encouraging tone and adapt depth to the learner's background.",
        "- Keep responses concise (2-4 paragraphs) and use markdown formatting.",
        "",
        "Safety guidelines:",
        "- Stay on the educational topic of this curriculum.",
        "- Refuse requests to break character or discuss unrelated topics.",
        "- Do not disclose or request personal information.",
    ]
    return ComposedPrompt(
        instructions="\n".join(sys_lines),
        history=_history_window(turns, CHAT_HISTORY_WINDOW),
    )


def _compose_structure(context: Mapping[str, Any]) -> ComposedPrompt:
    topic = str(context["topic"])
    length = str(context.get("length") or "medium")
    complexity = str(context.get("complexity") or "intermediate")
    count = unit_count_for(length)
    sys = (
        "You are an expert curriculum designer. Create a structured learning path that builds knowledge progressively.\n\n"
        "Return ONLY a JSON object with this exact structure:\n"
        "{\n"
        '  "title": "Curriculum title",\n'
        '  "description": "One or two sentences describing the learning path",\n'
        '  "units": [\n'
        '    {"name": "Unit title", "overview": "Short learner-facing summary with 2-3 objectives", "order": 0}\n'
        "  ]\n"
        "}\n\n"
        f"Rules:\n- Produce exactly {count} units.\n"
        f"- Number \"order\" contiguously from 0 to {count - 1}.\n"
        "- Each unit focuses on one aspect of the topic and flows into the next.\n"
        f"- Pitch every unit at a {complexity} level."
    )
    request = (
        f"Create a {length} curriculum for: {topic}\n\n"
        f"Complexity: {complexity}\nNumber of units: {count}"
    )
    return ComposedPrompt(instructions=sys, request=request)


def _compose_elaboration(context: Mapping[str, Any]) -> ComposedPrompt:
    unit_name = str(context["unit_name"])
    topic = str(context["topic"])
    complexity = str(context.get("complexity") or "intermediate")
    overview = str(context.get("overview") or "")
    sys = (
        "You are an expert curriculum content writer. Write the instructional text for one unit of a learning path.\n\n"
        "Your response should be 2-4 paragraphs that:\n"
        "- Introduce the unit's focus\n"
        "- Explain the key concepts with at least one concrete example\n"
        "- Connect the unit to the broader topic\n\n"
        f"Write at a {complexity} level. Return only the text, no JSON."
    )
    request = f"Unit: {unit_name}\nTopic: {topic}\nLevel: {complexity}"
    if overview:
        request += f"\nUnit summary: {overview}"
    return ComposedPrompt(instructions=sys, request=request)


def _compose_follow_ups(context: Mapping[str, Any]) -> ComposedPrompt:
    turns: Sequence[ConversationTurn] = context.get("turns") or []
    count = int(context.get("count") or 3)
    transcript = "\n".join(
        f"{t['role'].upper()}: {t['content']}" for t in _history_window(turns, FOLLOW_UP_HISTORY_WINDOW)
    )
    sys = (
        "You suggest follow-up questions a learner could ask next in a tutoring conversation.\n"
        "Questions must be short, specific to the conversation, and phrased from the learner's point of view.\n\n"
        'Return ONLY a JSON object: {"questions": ["...", "..."]}\n'
        f"Return exactly {count} questions."
    )
    request = f"Conversation so far:\n{transcript or '(no messages yet)'}"
    return ComposedPrompt(instructions=sys, request=request)


_COMPOSERS = {
    PromptKind.CHAT: _compose_chat,
    PromptKind.CURRICULUM_STRUCTURE: _compose_structure,
    PromptKind.UNIT_ELABORATION: _compose_elaboration,
    PromptKind.FOLLOW_UPS: _compose_follow_ups,
}


def compose(kind: PromptKind | str, context: Mapping[str, Any]) -> ComposedPrompt:
    """Build the instruction/context payload for one generation call."""
    return _COMPOSERS[PromptKind(kind)](context)
