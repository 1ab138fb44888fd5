from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth import require_admin_key
from app.core.database import get_db
from app.core.errors import NotFoundError
from app.schemas.generation import GenerationErrorsResponse, GenerationStepItem, GenerationStepsResponse
from app.services.generation.store import GenerationStore


router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.get("/errors", response_model=GenerationErrorsResponse)
async def admin_list_errors(limit: int = 100, db: Session = Depends(get_db)) -> dict:
    rows = GenerationStore(db).list_errors(limit=limit)
    return {
        "errors": [
            {
                "generation_id": r.id,
                "pass_id": r.pass_id,
                "mode": r.mode,
                "error": r.error,
                "updated_at": r.updated_at,
            }
            for r in rows
        ]
    }


@router.get("/steps/{generation_id}", response_model=GenerationStepsResponse)
async def admin_list_steps(generation_id: str, db: Session = Depends(get_db)) -> dict:
    store = GenerationStore(db)
    if store.get(generation_id) is None:
        raise NotFoundError("NOT_FOUND", "generation not found")
    steps = [GenerationStepItem.model_validate(s) for s in store.list_steps(generation_id)]
    return {"generation_id": generation_id, "steps": steps}
