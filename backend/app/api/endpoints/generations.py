from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import NotFoundError
from app.core.identity import PASS_ID_HEADER, explicit_pass_id, resolve_pass_id
from app.schemas.generation import (
    CreditBalanceResponse,
    GenerationQueuedResponse,
    GenerationRequest,
    GenerationResponse,
    RefreshRequest,
    RefreshResponse,
)
from app.services.credits_engine import get_balance
from app.services.generation.handlers import create_generation, fetch_generation, tweak_generation
from app.services.generation.runtime import GenerationRuntime
from app.services.generation.store import GenerationStore
from app.services.generation.vars import GenerationVars

router = APIRouter()


def get_runtime(request: Request) -> GenerationRuntime:
    return request.app.state.runtime


def _launcher(background_tasks: BackgroundTasks, runtime: GenerationRuntime):
    def launch(generation_id: str) -> None:
        background_tasks.add_task(runtime.pipeline.run, generation_id)

    return launch


def _queued(result: dict, response: Response) -> dict:
    response.headers[PASS_ID_HEADER] = result["pass_id"]
    return result


@router.post("/still/create", response_model=GenerationQueuedResponse)
async def still_create(
    body: GenerationRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    runtime: GenerationRuntime = Depends(get_runtime),
):
    result = create_generation(
        db, mode="still", body=body.as_body(), headers=request.headers, launch=_launcher(background_tasks, runtime)
    )
    return _queued(result, response)


@router.post("/still/{generation_id}/tweak", response_model=GenerationQueuedResponse)
async def still_tweak(
    generation_id: str,
    body: GenerationRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    runtime: GenerationRuntime = Depends(get_runtime),
):
    result = tweak_generation(
        db,
        mode="still",
        parent_id=generation_id,
        body=body.as_body(),
        headers=request.headers,
        launch=_launcher(background_tasks, runtime),
    )
    return _queued(result, response)


@router.post("/video/animate", response_model=GenerationQueuedResponse)
async def video_animate(
    body: GenerationRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    runtime: GenerationRuntime = Depends(get_runtime),
):
    result = create_generation(
        db, mode="video", body=body.as_body(), headers=request.headers, launch=_launcher(background_tasks, runtime)
    )
    return _queued(result, response)


@router.post("/video/{generation_id}/tweak", response_model=GenerationQueuedResponse)
async def video_tweak(
    generation_id: str,
    body: GenerationRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    runtime: GenerationRuntime = Depends(get_runtime),
):
    result = tweak_generation(
        db,
        mode="video",
        parent_id=generation_id,
        body=body.as_body(),
        headers=request.headers,
        launch=_launcher(background_tasks, runtime),
    )
    return _queued(result, response)


@router.get("/generations/{generation_id}", response_model=GenerationResponse)
async def get_generation(generation_id: str, db: Session = Depends(get_db)):
    return fetch_generation(db, generation_id)


@router.post("/generations/{generation_id}/refresh", response_model=RefreshResponse)
async def refresh_generation(
    generation_id: str,
    request: Request,
    body: RefreshRequest | None = None,
    runtime: GenerationRuntime = Depends(get_runtime),
):
    pass_id = explicit_pass_id(body.model_dump(exclude_none=True) if body else {}, request.headers) or None
    return await runtime.pipeline.refresh_from_provider(generation_id, pass_id)


@router.get("/stream/{generation_id}")
async def stream_generation(
    generation_id: str,
    db: Session = Depends(get_db),
    runtime: GenerationRuntime = Depends(get_runtime),
):
    row = GenerationStore(db).get(generation_id)
    if row is None:
        raise NotFoundError("NOT_FOUND", "generation not found")

    vars = GenerationVars.from_json(row.vars, mode=row.mode)
    subscription = runtime.hub.subscribe(
        generation_id,
        history=[line.model_dump() for line in vars.user_messages.scan_lines],
        status=row.status or "queued",
    )
    return StreamingResponse(
        subscription.sse(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/credits/balance", response_model=CreditBalanceResponse)
async def credits_balance(
    request: Request,
    response: Response,
    pass_id: str | None = None,
    db: Session = Depends(get_db),
):
    resolved = resolve_pass_id({"pass_id": pass_id}, request.headers)
    bal = get_balance(db, resolved)
    response.headers[PASS_ID_HEADER] = resolved
    return {"pass_id": resolved, "balance": bal["credits"], "expires_at": bal["expires_at"]}
