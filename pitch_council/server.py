"""FastAPI polling API: start, poll, stop and continue evaluations."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError as SchemaValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config.config_loader import AppConfig
from pitch_council import __version__
from pitch_council.costing import CostEstimator, tiktoken_counter
from pitch_council.models import (
    ConversationTurn,
    EvaluationResult,
    InvestmentVerdict,
    PartialResult,
    SessionSnapshot,
)
from pitch_council.orchestrator import EvaluationOrchestrator, EvaluationStateError
from pitch_council.providers import build_provider
from pitch_council.registry import OrchestratorFactory, RequestValidationError, SessionRegistry
from pitch_council.roles import RoleRegistry

logger = logging.getLogger(__name__)


class EvaluateRequest(BaseModel):
    """Start-evaluation payload. Missing fields are reported as 400 by the registry."""
    idea: str | None = None
    api_key: str | None = Field(default=None, alias="apiKey")
    budget: float | None = None
    mode: str | None = None

    model_config = {"populate_by_name": True}


class TurnOut(BaseModel):
    id: str
    role: str
    content: str
    timestamp: datetime
    round_number: int
    cost: float | None = None


class PitchOut(BaseModel):
    name: str
    problem: str
    solution: str
    market: str
    business_model: str
    competitive_advantage: str
    execution_plan: str


class VerdictOut(BaseModel):
    decision: str
    confidence: int
    reasoning: str
    strengths: list[str]
    concerns: list[str]
    recommended_next: list[str]


class PartialOut(BaseModel):
    pitch: PitchOut | None = None
    verdict: VerdictOut | None = None


class FinalOut(BaseModel):
    pitch: PitchOut
    verdict: VerdictOut
    total_cost: float
    rounds: int


class EvaluationOut(BaseModel):
    evaluation_id: str
    status: str
    idea: str
    transcript: list[TurnOut]
    current_cost: float
    budget: float
    current_round: int
    max_rounds: int
    partial_result: PartialOut | None = None
    final_result: FinalOut | None = None
    error: str | None = None
    halt_reason: str | None = None


class StartedOut(BaseModel):
    evaluation_id: str
    status: str = "started"


def _turn_out(turn: ConversationTurn) -> TurnOut:
    return TurnOut(
        id=turn.id,
        role=turn.role.value,
        content=turn.content,
        timestamp=turn.timestamp,
        round_number=turn.round_number,
        cost=turn.cost,
    )


def _partial_out(partial: PartialResult | None) -> PartialOut | None:
    if partial is None:
        return None
    return PartialOut(
        pitch=PitchOut(**vars(partial.pitch)) if partial.pitch else None,
        verdict=_verdict_out(partial.verdict) if partial.verdict else None,
    )


def _verdict_out(verdict: InvestmentVerdict) -> VerdictOut:
    return VerdictOut(
        decision=verdict.decision.value,
        confidence=verdict.confidence,
        reasoning=verdict.reasoning,
        strengths=list(verdict.strengths),
        concerns=list(verdict.concerns),
        recommended_next=list(verdict.recommended_next),
    )


def _final_out(result: EvaluationResult | None) -> FinalOut | None:
    if result is None:
        return None
    return FinalOut(
        pitch=PitchOut(**vars(result.pitch)),
        verdict=_verdict_out(result.verdict),
        total_cost=result.total_cost,
        rounds=result.rounds,
    )


def evaluation_out(evaluation_id: str, snapshot: SessionSnapshot) -> EvaluationOut:
    """Project a session snapshot onto the polling response."""
    return EvaluationOut(
        evaluation_id=evaluation_id,
        status=snapshot.status.value,
        idea=snapshot.idea,
        transcript=[_turn_out(t) for t in snapshot.transcript],
        current_cost=snapshot.accumulated_cost,
        budget=snapshot.budget,
        current_round=snapshot.current_round,
        max_rounds=snapshot.max_rounds,
        partial_result=_partial_out(snapshot.partial_result),
        final_result=_final_out(snapshot.final_result),
        error=snapshot.error,
        halt_reason=snapshot.halt_reason.value if snapshot.halt_reason else None,
    )


def orchestrator_factory(config: AppConfig) -> OrchestratorFactory:
    """Build orchestrators for the default provider, bound to each request's API key."""
    provider_name = config.defaults.provider
    model_cfg = config.models[provider_name]
    roles = RoleRegistry.from_config(config.roles)
    estimator = CostEstimator(config.pricing_for(provider_name), tiktoken_counter(model_cfg.model))

    def factory(api_key: str, mode: str | None) -> EvaluationOrchestrator:
        return EvaluationOrchestrator(
            provider=build_provider(model_cfg, api_key),
            roles=roles,
            estimator=estimator,
            settings=config.orchestrator,
            mode=mode,
        )

    return factory


async def _purge_loop(registry: SessionRegistry, interval_sec: int) -> None:
    while True:
        await asyncio.sleep(interval_sec)
        registry.purge()


def create_app(config: AppConfig, registry: SessionRegistry | None = None) -> FastAPI:
    """Build the API around ``registry`` (one is created from ``config`` when omitted)."""
    if registry is None:
        registry = SessionRegistry(
            orchestrator_factory(config),
            allowed_budgets=config.server.allowed_budgets,
            retention_sec=config.server.retention_sec,
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(_purge_loop(registry, config.server.sweep_interval_sec))
        logger.info("Session sweep every %ds", config.server.sweep_interval_sec)
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await registry.shutdown()

    app = FastAPI(title="Pitch Council", version=__version__, lifespan=lifespan)
    app.state.registry = registry
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SchemaValidationError)
    async def schema_error(request: Request, exc: SchemaValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "Malformed request", "details": jsonable_encoder(exc.errors())})

    def _lookup(evaluation_id: str):
        try:
            return registry.get(evaluation_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Evaluation not found") from None

    @app.get("/api/health")
    async def health():
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/config/budgets")
    async def budgets():
        return {"budgets": registry.allowed_budgets}

    @app.post("/api/evaluate", response_model=StartedOut)
    async def evaluate(request: EvaluateRequest):
        try:
            evaluation_id = await registry.create(request.idea, request.api_key, request.budget, request.mode)
        except RequestValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return StartedOut(evaluation_id=evaluation_id)

    @app.get("/api/evaluate/{evaluation_id}", response_model=EvaluationOut)
    async def poll(evaluation_id: str):
        entry = _lookup(evaluation_id)
        return evaluation_out(evaluation_id, entry.orchestrator.snapshot())

    @app.post("/api/evaluate/{evaluation_id}/stop", response_model=EvaluationOut)
    async def stop(evaluation_id: str):
        _lookup(evaluation_id)
        return evaluation_out(evaluation_id, registry.stop(evaluation_id))

    @app.post("/api/evaluate/{evaluation_id}/continue", response_model=EvaluationOut)
    async def continue_(evaluation_id: str):
        _lookup(evaluation_id)
        try:
            snapshot = await registry.resume(evaluation_id)
        except RequestValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except EvaluationStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return evaluation_out(evaluation_id, snapshot)

    return app
