from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict


class GenerationRequest(BaseModel):
    # camelCase and client-specific keys pass through untouched
    model_config = ConfigDict(extra="allow")

    pass_id: Optional[str] = None
    customer_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    parent_generation_id: Optional[str] = None
    session_id: Optional[str] = None
    platform: Optional[str] = None
    title: Optional[str] = None
    assets: Dict[str, Any] = {}
    inputs: Dict[str, Any] = {}
    feedback: Union[Dict[str, Any], str, None] = None
    prompts: Dict[str, Any] = {}

    def as_body(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    pass_id: Optional[str] = None


class GenerationQueuedResponse(BaseModel):
    generation_id: str
    pass_id: str
    status: str
    sse_url: str


class GenerationResponse(BaseModel):
    generation_id: str
    status: str
    state: str
    mma_vars: Dict[str, Any]
    still_engine: Optional[str] = None
    outputs: Dict[str, Optional[str]]
    prompt: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


class RefreshResponse(BaseModel):
    ok: bool
    refreshed: bool
    already_done: bool = False
    provider_status: Optional[str] = None
    url: Optional[str] = None


class CreditBalanceResponse(BaseModel):
    pass_id: str
    balance: int
    expires_at: Optional[datetime] = None


class GenerationErrorItem(BaseModel):
    generation_id: str
    pass_id: str
    mode: str
    error: Optional[Dict[str, Any]] = None
    updated_at: Optional[datetime] = None


class GenerationStepItem(BaseModel):
    step_no: int
    step_type: str
    payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class GenerationErrorsResponse(BaseModel):
    errors: List[GenerationErrorItem]


class GenerationStepsResponse(BaseModel):
    generation_id: str
    steps: List[GenerationStepItem]
