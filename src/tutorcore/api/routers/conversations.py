from __future__ import annotations

from typing import List
from fastapi import APIRouter, status

from ...domain.chat_models import ConversationTurn, FollowUpSet, TurnCreate
from ...domain.curriculum_models import LearnerProfile, LearnerProfileUpdate
from ...domain.errors import ValidationError
from ...infrastructure.chat_store import get_chat_store
from ...infrastructure.profile_store import get_profile_store


router = APIRouter(tags=["conversations"])


@router.get("/conversations/{conversation_id}/turns", response_model=List[ConversationTurn])
def list_turns(conversation_id: str) -> List[ConversationTurn]:
    return get_chat_store().list_turns(conversation_id)


@router.post(
    "/conversations/{conversation_id}/turns",
    response_model=ConversationTurn,
    status_code=status.HTTP_201_CREATED,
)
def append_turn(conversation_id: str, turn: TurnCreate) -> ConversationTurn:
    content = turn.content.strip()
    if not content:
        raise ValidationError("Message cannot be empty")
    return get_chat_store().append_turn(conversation_id, turn.role, content)


@router.get("/conversations/{conversation_id}/follow-ups", response_model=FollowUpSet)
def get_follow_ups(conversation_id: str) -> FollowUpSet:
    return get_chat_store().get_follow_ups(conversation_id)


@router.get("/profiles/{user_id}", response_model=LearnerProfile)
def get_profile(user_id: str) -> LearnerProfile:
    return get_profile_store().get_profile(user_id)


@router.put("/profiles/{user_id}", response_model=LearnerProfile)
def put_profile(user_id: str, update: LearnerProfileUpdate) -> LearnerProfile:
    return get_profile_store().upsert_profile(user_id, update)
