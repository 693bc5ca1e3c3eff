"""Pure dataclasses and enums for the evaluation pipeline. No logic, no deps."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AgentRole(str, Enum):
    CLARIFIER = "clarifier"
    CRITIC = "critic"
    DEFENDER = "defender"
    PROPOSER = "proposer"
    ASSESSOR = "assessor"
    INVESTOR = "investor"
    SYSTEM = "system"      # orchestration announcements, never sent to a model


class Decision(str, Enum):
    INVEST = "invest"
    PASS = "pass"
    PENDING = "pending"    # partial results only


class SessionStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


class HaltReason(str, Enum):
    USER_STOP = "user_stop"
    BUDGET = "budget"


@dataclass
class Completion:
    provider: str          # "openai", "claude", "gemini", "grok"
    model: str             # actual model string used
    content: str
    latency_sec: float
    input_tokens: int | None
    output_tokens: int | None


@dataclass(frozen=True)
class ConversationTurn:
    id: str
    role: AgentRole
    content: str
    timestamp: datetime
    round_number: int
    cost: float | None = None


@dataclass
class StartupPitch:
    name: str
    problem: str
    solution: str
    market: str
    business_model: str
    competitive_advantage: str
    execution_plan: str


@dataclass
class InvestmentVerdict:
    decision: Decision
    confidence: int        # 0-100
    reasoning: str
    strengths: list[str] = field(default_factory=list)
    concerns: list[str] = field(default_factory=list)
    recommended_next: list[str] = field(default_factory=list)


@dataclass
class ReadinessAssessment:
    ready: bool
    reformulated_idea: str | None
    raw: str


@dataclass
class PartialResult:
    pitch: StartupPitch | None = None
    verdict: InvestmentVerdict | None = None


@dataclass
class EvaluationResult:
    pitch: StartupPitch
    verdict: InvestmentVerdict
    transcript: tuple[ConversationTurn, ...]
    total_cost: float
    rounds: int


@dataclass
class EvaluationSession:
    idea: str
    working_idea: str
    budget: float
    max_rounds: int
    accumulated_cost: float = 0.0
    current_round: int = 1
    stop_requested: bool = False
    has_clarified: bool = False
    transcript: list[ConversationTurn] = field(default_factory=list)
    status: SessionStatus = SessionStatus.IDLE
    partial_result: PartialResult | None = None
    final_result: EvaluationResult | None = None
    error: str | None = None
    halt_reason: HaltReason | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SessionSnapshot:
    status: SessionStatus
    idea: str
    working_idea: str
    budget: float
    accumulated_cost: float
    current_round: int
    max_rounds: int
    transcript: tuple[ConversationTurn, ...]
    partial_result: PartialResult | None
    final_result: EvaluationResult | None
    error: str | None
    halt_reason: HaltReason | None
    started_at: datetime | None
    updated_at: datetime | None
