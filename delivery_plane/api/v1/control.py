from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from delivery_plane.core.coordinator import ControlPlaneCoordinator
from delivery_plane.core.feature_flags import EvaluationContext

router = APIRouter()


def get_coordinator(request: Request) -> ControlPlaneCoordinator:
    return request.app.state.coordinator


class FlagUpdateRequest(BaseModel):
    enabled: bool
    rollout_percentage: Optional[int] = None


class FlagResponse(BaseModel):
    key: str
    enabled: bool
    rollout_percentage: int
    allowed_environments: List[str] = Field(default_factory=list)
    user_segments: List[str] = Field(default_factory=list)
    explicit_user_ids: List[str] = Field(default_factory=list)
    variants: Dict[str, int] = Field(default_factory=dict)
    description: str = ""
    snapshot_version: int


class EvaluateRequest(BaseModel):
    environment: str
    user_id: Optional[str] = None
    segments: List[str] = Field(default_factory=list)
    attributes: Dict[str, str] = Field(default_factory=dict)


class DecisionResponse(BaseModel):
    flag_key: str
    enabled: bool
    reason: str
    variant: Optional[str] = None
    bucket: Optional[int] = None
    snapshot_version: int


class PhaseModel(BaseModel):
    traffic_weight_percent: int
    min_observation_windows: int = 3
    success_rate_threshold: float = 0.99
    max_latency_ms: float = 500.0
    consecutive_failure_limit: int = 3


class StartCanaryRequest(BaseModel):
    service_name: str
    phases: List[PhaseModel]


class AbortCanaryRequest(BaseModel):
    reason: str = "aborted by operator"


class CircuitResponse(BaseModel):
    dependency: str
    variant: str
    state: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RoutingResponse(BaseModel):
    service: str
    stable_weight: int
    canary_weight: int
    version: int


@router.put("/flags/{key}", response_model=FlagResponse)
async def update_flag(
    key: str,
    payload: FlagUpdateRequest,
    coordinator: ControlPlaneCoordinator = Depends(get_coordinator),
):
    flag = coordinator.set_flag(key, payload.enabled, payload.rollout_percentage)
    return FlagResponse(**flag.to_dict(), snapshot_version=coordinator.flags.snapshot.version)


@router.post("/flags/{key}/evaluate", response_model=DecisionResponse)
async def evaluate_flag(
    key: str,
    payload: EvaluateRequest,
    coordinator: ControlPlaneCoordinator = Depends(get_coordinator),
):
    engine = coordinator.flags.engine()
    ctx = EvaluationContext.build(
        payload.environment,
        user_id=payload.user_id,
        segments=payload.segments,
        attributes=payload.attributes,
    )
    decision = engine.evaluate_key(key, ctx)
    return DecisionResponse(flag_key=key, snapshot_version=engine.snapshot.version, **decision.to_dict())


@router.post("/canaries", status_code=201)
async def start_canary(
    payload: StartCanaryRequest,
    coordinator: ControlPlaneCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    execution = await coordinator.start_canary(
        payload.service_name,
        [phase.model_dump() for phase in payload.phases],
    )
    return execution.to_dict()


@router.post("/canaries/{execution_id}/abort", status_code=202)
async def abort_canary(
    execution_id: str,
    payload: Optional[AbortCanaryRequest] = None,
    coordinator: ControlPlaneCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    reason = payload.reason if payload else "aborted by operator"
    execution = coordinator.abort_canary(execution_id, reason)
    return {"id": execution.id, "status": execution.status.value, "abort_requested": True}


@router.get("/canaries/{execution_id}")
async def get_canary(
    execution_id: str,
    coordinator: ControlPlaneCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    return coordinator.get_execution(execution_id).to_dict()


@router.get("/circuits/{dependency}", response_model=CircuitResponse)
async def get_circuit(
    dependency: str,
    variant: str = "stable",
    coordinator: ControlPlaneCoordinator = Depends(get_coordinator),
):
    state = coordinator.get_circuit_state(dependency, variant)
    breaker = coordinator.breakers.get(dependency, variant)
    return CircuitResponse(
        dependency=dependency,
        variant=variant,
        state=state.value,
        details=breaker.snapshot() if breaker else {},
    )


@router.get("/routing/{service}", response_model=RoutingResponse)
async def get_routing(
    service: str,
    coordinator: ControlPlaneCoordinator = Depends(get_coordinator),
):
    return RoutingResponse(service=service, **coordinator.routing_snapshot(service).to_dict())


@router.get("/status")
async def control_plane_status(
    coordinator: ControlPlaneCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    return coordinator.get_status()
