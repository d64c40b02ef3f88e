from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol
import os
import uuid

from ..domain.curriculum_models import Curriculum, CurriculumDraft, CurriculumUnit
from ..domain.errors import NotFound
from .chat_store import ConversationStore, get_chat_store


class CurriculumStore(Protocol):
    def create_curriculum(self, user_id: str, draft: CurriculumDraft) -> Curriculum: ...

    def get_curriculum(self, curriculum_id: str) -> Curriculum: ...

    def list_curricula(self, user_id: str) -> List[Curriculum]: ...

    def delete_curriculum(self, curriculum_id: str) -> None: ...

    def get_unit(self, unit_id: str) -> CurriculumUnit: ...

    def complete_unit(self, unit_id: str) -> CurriculumUnit: ...


@dataclass
class _Unit:
    unit_id: str
    curriculum_id: str
    title: str
    overview: str
    body: str
    order: int
    complete: bool = False


@dataclass
class _Curriculum:
    curriculum_id: str
    user_id: str
    title: str
    description: str
    originating_prompt: str
    length: str
    complexity: str
    created_at: str
    unit_ids: List[str] = field(default_factory=list)


class InMemoryCurriculumStore:
    """Curricula and their units. Each unit owns one conversation, keyed by the unit id."""

    def __init__(self, conversations: Optional[ConversationStore] = None) -> None:
        self._curricula: Dict[str, _Curriculum] = {}
        self._units: Dict[str, _Unit] = {}
        self._by_user: Dict[str, List[str]] = {}
        self._conversations = conversations or get_chat_store()
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _unit_model(self, unit: _Unit) -> CurriculumUnit:
        return CurriculumUnit(**unit.__dict__)

    def _curriculum_model(self, cur: _Curriculum) -> Curriculum:
        units = [self._unit_model(self._units[uid]) for uid in cur.unit_ids if uid in self._units]
        units.sort(key=lambda u: u.order)
        data = {k: v for k, v in cur.__dict__.items() if k != "unit_ids"}
        return Curriculum(**data, units=units)

    def create_curriculum(self, user_id: str, draft: CurriculumDraft) -> Curriculum:
        with self._lock:
            cid = uuid.uuid4().hex
            cur = _Curriculum(
                curriculum_id=cid,
                user_id=user_id,
                title=draft.title,
                description=draft.description,
                originating_prompt=draft.originating_prompt,
                length=draft.length,
                complexity=draft.complexity,
                created_at=self._now_iso(),
            )
            # Orders are assigned here, once, from the draft's position.
            for order, unit_draft in enumerate(sorted(draft.units, key=lambda u: u.order)):
                uid = uuid.uuid4().hex
                self._units[uid] = _Unit(
                    unit_id=uid,
                    curriculum_id=cid,
                    title=unit_draft.title,
                    overview=unit_draft.overview,
                    body=unit_draft.body,
                    order=order,
                )
                cur.unit_ids.append(uid)
                self._conversations.create_conversation(uid)
            self._curricula[cid] = cur
            self._by_user.setdefault(user_id, []).append(cid)
            return self._curriculum_model(cur)

    def get_curriculum(self, curriculum_id: str) -> Curriculum:
        with self._lock:
            cur = self._curricula.get(curriculum_id)
            if not cur:
                raise NotFound("Curriculum not found")
            return self._curriculum_model(cur)

    def list_curricula(self, user_id: str) -> List[Curriculum]:
        with self._lock:
            out = [
                self._curriculum_model(self._curricula[cid])
                for cid in self._by_user.get(user_id, [])
                if cid in self._curricula
            ]
            # Newest first
            return sorted(out, key=lambda c: c.created_at, reverse=True)

    def delete_curriculum(self, curriculum_id: str) -> None:
        with self._lock:
            cur = self._curricula.pop(curriculum_id, None)
            if not cur:
                raise NotFound("Curriculum not found")
            for uid in cur.unit_ids:
                self._units.pop(uid, None)
                self._conversations.delete_conversation(uid)
            owned = self._by_user.get(cur.user_id, [])
            if curriculum_id in owned:
                owned.remove(curriculum_id)

    def get_unit(self, unit_id: str) -> CurriculumUnit:
        with self._lock:
            unit = self._units.get(unit_id)
            if not unit:
                raise NotFound("Unit not found")
            return self._unit_model(unit)

    def complete_unit(self, unit_id: str) -> CurriculumUnit:
        with self._lock:
            unit = self._units.get(unit_id)
            if not unit:
                raise NotFound("Unit not found")
            unit.complete = True
            return self._unit_model(unit)


_store: Optional[CurriculumStore] = None


def get_curriculum_store() -> CurriculumStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("TUTOR_STORE_IMPL", "memory").lower()
    if impl != "memory":
        raise RuntimeError(f"Unsupported curriculum store implementation: {impl}")
    _store = InMemoryCurriculumStore()
    return _store
