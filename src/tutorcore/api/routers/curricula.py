from __future__ import annotations

from typing import List
from fastapi import APIRouter, Query, Response, status

from ...domain.curriculum_models import Curriculum, CurriculumCreate, UnitCompletion
from ...infrastructure.curriculum_store import get_curriculum_store
from ...services.curriculum import complete_unit, create_curriculum


router = APIRouter(tags=["curricula"])


@router.post("/curricula", response_model=Curriculum, status_code=status.HTTP_201_CREATED)
async def post_curriculum(req: CurriculumCreate) -> Curriculum:
    return await create_curriculum(req.user_id, req.topic, length=req.length, complexity=req.complexity)


@router.get("/curricula", response_model=List[Curriculum])
def list_curricula(user_id: str = Query(..., min_length=1)) -> List[Curriculum]:
    return get_curriculum_store().list_curricula(user_id)


@router.get("/curricula/{curriculum_id}", response_model=Curriculum)
def get_curriculum(curriculum_id: str) -> Curriculum:
    return get_curriculum_store().get_curriculum(curriculum_id)


@router.delete("/curricula/{curriculum_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_curriculum(curriculum_id: str) -> Response:
    get_curriculum_store().delete_curriculum(curriculum_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/units/{unit_id}/complete", response_model=UnitCompletion)
def post_unit_complete(unit_id: str) -> UnitCompletion:
    return complete_unit(unit_id)
