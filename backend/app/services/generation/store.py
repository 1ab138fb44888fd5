from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.models.generation import Generation, GenerationStatus, can_transition
from app.models.generation_step import GenerationStep
from app.services.generation.vars import GenerationVars

logger = logging.getLogger(__name__)


class GenerationStore:
    """Row access for generations and their step audit log.

    Every write commits immediately so a crash mid-pipeline leaves the last
    persisted vars readable.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, generation_id: str) -> Generation | None:
        return self.db.query(Generation).filter(Generation.id == generation_id).first()

    def create(
        self,
        *,
        generation_id: str,
        pass_id: str,
        mode: str,
        vars: GenerationVars,
        parent_id: str | None = None,
    ) -> Generation:
        row = Generation(
            id=generation_id,
            parent_id=parent_id,
            pass_id=pass_id,
            mode=mode,
            status=GenerationStatus.QUEUED.value,
            vars=vars.to_json(),
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def load_vars(self, generation_id: str) -> GenerationVars | None:
        row = self.get(generation_id)
        if row is None:
            return None
        return GenerationVars.from_json(row.vars, mode=row.mode)

    def update_vars(self, generation_id: str, vars: GenerationVars) -> None:
        row = self.get(generation_id)
        if row is None:
            return
        row.vars = vars.to_json()
        self.db.commit()

    def update_status(self, generation_id: str, status: GenerationStatus | str) -> bool:
        target = GenerationStatus(status)
        row = self.get(generation_id)
        if row is None:
            return False
        current = GenerationStatus(row.status)
        if not can_transition(current, target):
            logger.warning(
                "generation.status_rejected generation_id=%s current=%s target=%s",
                generation_id,
                current.value,
                target.value,
            )
            return False
        row.status = target.value
        self.db.commit()
        return True

    def set_error(self, generation_id: str, error: dict[str, Any]) -> None:
        row = self.get(generation_id)
        if row is None:
            return
        row.error = error
        self.db.commit()

    def set_prompt(self, generation_id: str, prompt: str) -> None:
        row = self.get(generation_id)
        if row is None:
            return
        row.prompt = prompt
        self.db.commit()

    def finalize(self, generation_id: str, *, url: str, prompt: str | None) -> None:
        row = self.get(generation_id)
        if row is None:
            return
        row.output_url = url
        row.prompt = prompt
        self.db.commit()

    def write_step(
        self,
        *,
        generation_id: str,
        pass_id: str | None,
        step_no: int,
        step_type: str,
        payload: dict[str, Any],
    ) -> GenerationStep:
        step = GenerationStep(
            generation_id=generation_id,
            pass_id=pass_id,
            step_no=int(step_no),
            step_type=step_type,
            payload=payload,
        )
        self.db.add(step)
        self.db.commit()
        return step

    def list_steps(self, generation_id: str) -> list[GenerationStep]:
        return (
            self.db.query(GenerationStep)
            .filter(GenerationStep.generation_id == generation_id)
            .order_by(GenerationStep.step_no.asc())
            .all()
        )

    def list_errors(self, limit: int = 100) -> list[Generation]:
        limit = max(1, min(int(limit), 500))
        return (
            self.db.query(Generation)
            .filter(Generation.status == GenerationStatus.ERROR.value)
            .order_by(Generation.updated_at.desc(), Generation.created_at.desc())
            .limit(limit)
            .all()
        )
