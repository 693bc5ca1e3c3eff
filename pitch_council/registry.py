"""In-memory registry of evaluations addressed by id, driven as background asyncio tasks."""

import asyncio
import logging
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from pitch_council.models import SessionSnapshot, SessionStatus
from pitch_council.orchestrator import MODES, EvaluationOrchestrator, EvaluationStateError

logger = logging.getLogger(__name__)

# (api_key, mode) -> a fresh orchestrator bound to that credential
OrchestratorFactory = Callable[[str, str | None], EvaluationOrchestrator]

_RESUMABLE = (SessionStatus.COMPLETED, SessionStatus.STOPPED)


class RequestValidationError(ValueError):
    """Raised for a malformed evaluation request; nothing is created."""


@dataclass
class EvaluationEntry:
    evaluation_id: str
    orchestrator: EvaluationOrchestrator
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task: asyncio.Task | None = None


class SessionRegistry:
    """Maps evaluation ids to orchestrators and runs each one as its own task.

    Sessions never share state; the registry only stores, schedules and purges.
    """

    def __init__(
        self,
        factory: OrchestratorFactory,
        allowed_budgets: list[float] | None = None,
        retention_sec: int = 3600,
    ) -> None:
        self._factory = factory
        self._allowed_budgets = list(allowed_budgets or [])
        self._retention = timedelta(seconds=retention_sec)
        self._entries: dict[str, EvaluationEntry] = {}

    @property
    def allowed_budgets(self) -> list[float]:
        return list(self._allowed_budgets)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, evaluation_id: str) -> bool:
        return evaluation_id in self._entries

    def validate(self, idea: str | None, api_key: str | None, budget: float | None, mode: str | None) -> None:
        """Raise RequestValidationError unless the request can start an evaluation."""
        if not idea or not idea.strip():
            raise RequestValidationError("Idea is required")
        if not api_key or not api_key.strip():
            raise RequestValidationError("API key is required")
        if budget is None or budget <= 0:
            raise RequestValidationError("Valid budget is required")
        if self._allowed_budgets and float(budget) not in self._allowed_budgets:
            allowed = ", ".join(f"${b:g}" for b in self._allowed_budgets)
            raise RequestValidationError(f"Budget must be one of: {allowed}")
        if mode is not None and mode not in MODES:
            raise RequestValidationError(f"Unknown mode '{mode}'; expected one of: {', '.join(MODES)}")

    async def create(self, idea: str, api_key: str, budget: float, mode: str | None = None) -> str:
        """Validate, build an orchestrator and start evaluating in the background.

        Returns the new evaluation id. The session exists (status ``active``)
        by the time this returns.
        """
        self.validate(idea, api_key, budget, mode)
        orchestrator = self._factory(api_key.strip(), mode)
        evaluation_id = uuid.uuid4().hex
        entry = EvaluationEntry(evaluation_id=evaluation_id, orchestrator=orchestrator)
        self._entries[evaluation_id] = entry

        entry.task = self._schedule(evaluation_id, orchestrator.start(idea, float(budget)))
        # Let the task run up to its first provider call so the session is visible to pollers
        await asyncio.sleep(0)
        logger.info("Evaluation %s started (budget $%.2f, mode %s)", evaluation_id, budget, orchestrator.mode)
        return evaluation_id

    def get(self, evaluation_id: str) -> EvaluationEntry:
        """Raises KeyError for an unknown id."""
        return self._entries[evaluation_id]

    def snapshot(self, evaluation_id: str) -> SessionSnapshot:
        return self.get(evaluation_id).orchestrator.snapshot()

    def stop(self, evaluation_id: str) -> SessionSnapshot:
        entry = self.get(evaluation_id)
        entry.orchestrator.stop()
        logger.info("Evaluation %s stop requested", evaluation_id)
        return entry.orchestrator.snapshot()

    async def resume(self, evaluation_id: str) -> SessionSnapshot:
        """Continue a completed or stopped evaluation with an extended round ceiling.

        Raises:
            KeyError: Unknown id.
            RequestValidationError: The evaluation is not completed or stopped.
            EvaluationStateError: The previous run has not finished unwinding.
        """
        entry = self.get(evaluation_id)
        orchestrator = entry.orchestrator
        status = orchestrator.snapshot().status
        if status not in _RESUMABLE:
            raise RequestValidationError(f"Cannot continue an evaluation with status '{status.value}'")
        if orchestrator.is_running:
            raise EvaluationStateError("The previous run is still in progress")

        entry.task = self._schedule(evaluation_id, orchestrator.continue_evaluation())
        await asyncio.sleep(0)
        logger.info("Evaluation %s continued", evaluation_id)
        return orchestrator.snapshot()

    def purge(self, now: datetime | None = None) -> int:
        """Drop inactive evaluations idle for longer than the retention period."""
        now = now or datetime.now(timezone.utc)
        expired = []
        for evaluation_id, entry in self._entries.items():
            if entry.orchestrator.is_running:
                continue
            snapshot = entry.orchestrator.snapshot()
            if snapshot.status is SessionStatus.ACTIVE:
                continue
            last_activity = snapshot.updated_at or entry.created_at
            if now - last_activity > self._retention:
                expired.append(evaluation_id)
        for evaluation_id in expired:
            del self._entries[evaluation_id]
        if expired:
            logger.info("Purged %d expired evaluation(s)", len(expired))
        return len(expired)

    async def shutdown(self) -> None:
        """Request stop on every evaluation and wait for their tasks to unwind."""
        tasks = []
        for entry in self._entries.values():
            entry.orchestrator.stop()
            if entry.task is not None and not entry.task.done():
                tasks.append(entry.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _schedule(self, evaluation_id: str, run: Coroutine[Any, Any, None]) -> asyncio.Task:
        return asyncio.create_task(self._drive(evaluation_id, run), name=f"evaluation-{evaluation_id}")

    async def _drive(self, evaluation_id: str, run: Coroutine[Any, Any, None]) -> None:
        # Failures are already recorded on the session (status=error); pollers read them there
        try:
            await run
        except Exception as exc:
            logger.error("Evaluation %s failed: %s", evaluation_id, exc)
