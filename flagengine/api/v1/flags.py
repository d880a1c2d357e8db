"""
Flag management and evaluation endpoints
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from flagengine.api.dependencies import get_flag_client, get_store
from flagengine.core.errors import ErrorCode, ValidationError
from flagengine.core.flags.client import FlagClient
from flagengine.core.flags.models import EvaluationContext, FlagDefinition, FlagKind
from flagengine.core.flags.store import FlagStore
from flagengine.core.flags.validation import decode_definition, validate_update

logger = logging.getLogger(__name__)
router = APIRouter()


class FlagPayload(BaseModel):
    """Flag definition as written by the management API."""
    name: Optional[str] = Field(None, description="Must match the path when given")
    kind: Any = Field(FlagKind.RELEASE.value, description="Flag kind")
    default_value: Any = Field(None, description="Served when no rule or rollout applies")
    on_value: Any = Field(True, description="Served to subjects inside a rollout")
    off_value: Any = Field(False, description="Served when off, blocked or outside a rollout")
    rules: List[Any] = Field(default_factory=list, description="Ordered targeting rules")
    rollout_percentage: Any = Field(0, description="Flag-level rollout, 0-100")
    dependencies: List[Any] = Field(default_factory=list, description="Prerequisite flags")
    environment_scope: List[str] = Field(default_factory=list, description="Environments where the flag is active")
    enabled: bool = Field(True, description="Master switch")
    fail_safe_value: Any = Field(None, description="Served by stale caches for ops and kill_switch flags")
    description: str = Field("", description="Human description")
    owner: str = Field("", description="Owning team or person")
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    expected_retirement_at: Optional[str] = Field(None, description="ISO-8601 date the flag should be removed by")

    model_config = {"extra": "ignore"}


class FlagWriteResponse(BaseModel):
    name: str
    version: int


class EvaluateRequest(BaseModel):
    flag: str = Field(..., description="Flag name")
    subject_id: Optional[str] = Field(None, description="Stable subject identifier used for bucketing")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Targeting attributes")
    fallback: Any = Field(False, description="Value served for unknown flags")


class EvaluateResponse(BaseModel):
    flag: str
    value: Any
    value_type: str
    reason: str
    version: int
    rule_id: Optional[str] = None


def _validation_response(violations: List[str]) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"code": ErrorCode.VALIDATION_FAILED.value, "violations": violations},
    )


def _get_or_404(store: FlagStore, name: str) -> FlagDefinition:
    definition = store.get(name)
    if definition is None:
        raise HTTPException(
            status_code=404,
            detail={"code": ErrorCode.UNKNOWN_FLAG.value, "flag": name},
        )
    return definition


@router.put("/flags/{name}", response_model=FlagWriteResponse)
async def put_flag(
    name: str,
    payload: FlagPayload,
    store: FlagStore = Depends(get_store),
):
    """Create or replace a flag definition."""
    data = payload.model_dump()
    data["name"] = name
    definition, problems = decode_definition(data)
    if payload.name is not None and payload.name != name:
        problems.insert(0, f"body name {payload.name!r} does not match path {name!r}")
    if problems:
        current = store.current_snapshot().flags
        return _validation_response(problems + validate_update(current, [definition]))

    try:
        stored = store.apply_update(definition)
    except ValidationError as e:
        return JSONResponse(status_code=400, content=e.to_dict())

    return FlagWriteResponse(name=stored.name, version=stored.version)


@router.get("/flags")
async def list_flags(store: FlagStore = Depends(get_store)) -> Dict[str, Any]:
    """List current definitions."""
    snapshot = store.current_snapshot()
    return {
        "version": snapshot.version,
        "flags": [snapshot.flags[n].to_dict() for n in snapshot.names()],
    }


@router.get("/flags/{name}")
async def get_flag(name: str, store: FlagStore = Depends(get_store)) -> Dict[str, Any]:
    return _get_or_404(store, name).to_dict()


@router.get("/flags/{name}/history")
async def get_flag_history(name: str, store: FlagStore = Depends(get_store)) -> Dict[str, Any]:
    """Every stored version of a flag, oldest first."""
    history = store.history(name)
    if not history:
        _get_or_404(store, name)
    return {"name": name, "versions": [d.to_dict() for d in history]}


@router.post("/flags/{name}/retire", response_model=FlagWriteResponse)
async def retire_flag(name: str, store: FlagStore = Depends(get_store)):
    """Publish a retired version of the flag (off, no rules)."""
    retired = store.retire(name)
    if retired is None:
        _get_or_404(store, name)
    return FlagWriteResponse(name=retired.name, version=retired.version)


@router.get("/snapshot")
async def get_snapshot(store: FlagStore = Depends(get_store)) -> Dict[str, Any]:
    """Serialized snapshot for propagation caches."""
    return store.current_snapshot().to_dict()


@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate_flag(
    request: EvaluateRequest,
    client: FlagClient = Depends(get_flag_client),
):
    """Evaluate one flag through this service's local cache."""
    context = EvaluationContext(subject_id=request.subject_id, attributes=request.attributes)
    result = client.evaluate(request.flag, context, request.fallback)
    return EvaluateResponse(**result.to_dict())
