"""Shared pytest fixtures."""

from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    DefaultsConfig,
    InboxConfig,
    ModelConfig,
    OrchestratorConfig,
    PricingConfig,
    RoleConfig,
    ServerConfig,
)
from pitch_council.costing import CostEstimator
from pitch_council.models import AgentRole, Completion
from pitch_council.orchestrator import EvaluationOrchestrator
from pitch_council.providers.base import AIProvider
from pitch_council.roles import RoleRegistry

# Every scripted reply reports 1000 output tokens and no input tokens, so with
# TEST_PRICING each turn costs exactly $1.00 and every estimate is $1.00 too.
TEST_PRICING = PricingConfig(input_per_1k=0.0, output_per_1k=1.0, assumed_output_tokens=1000)

DEFENDER_REPLY = (
    "We tighten the focus.\n"
    '{"name": "BeanBox", "problem": "Coffee lovers cannot find small roasters", '
    '"solution": "Curated monthly box", "market": "Specialty coffee drinkers", '
    '"business_model": "Subscription", "competitive_advantage": "Roaster network", '
    '"execution_plan": "Launch in one city"}'
)

INVESTOR_REPLY = (
    "After the debate I am convinced.\n"
    '{"pitch": {"name": "BeanBox", "problem": "Discovery of small roasters is hard", '
    '"solution": "Curated box", "market": "Specialty coffee", "business_model": "Subscription", '
    '"competitive_advantage": "Exclusive roasters", "execution_plan": "Pilot then expand"}, '
    '"verdict": {"decision": "invest", "confidence": 72, "reasoning": "Strong retention economics", '
    '"strengths": ["Recurring revenue"], "concerns": ["Churn"], "recommended_next": ["Pilot"]}}'
)

DEFAULT_REPLIES: dict[str, list[str] | str] = {
    "clarifier": "Name: BeanBox\nProblem: Finding great small-batch coffee is hard",
    "critic": "Unit economics look thin and churn is high in subscription boxes.",
    "defender": DEFENDER_REPLY,
    "proposer": "Name: BeanBox\nSolution: Curated box with roaster stories",
    "assessor": '{"verdict": "not ready", "reformulated_idea": "BeanBox for offices"}',
    "investor": INVESTOR_REPLY,
}


def role_of(system_prompt: str) -> str:
    """Scripted system prompts are 'ROLE:<name>'."""
    return system_prompt.split(":", 1)[1]


class MockProvider(AIProvider):
    """Test double AIProvider answering by role from a script."""

    def __init__(
        self,
        replies: dict[str, list[str] | str] | None = None,
        input_tokens: int | None = 0,
        output_tokens: int | None = 1000,
    ) -> None:
        self._replies = {**DEFAULT_REPLIES, **(replies or {})}
        self._input_tokens = input_tokens
        self._output_tokens = output_tokens
        self.calls: list[tuple[str, str]] = []
        self.before_reply: Callable[[str], None] | None = None
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because generate is defined in the class body below.
        self.generate = AsyncMock(side_effect=self._reply)  # type: ignore[assignment]

    def _reply(self, system_prompt: str, user_prompt: str, temperature: float) -> Completion:
        role = role_of(system_prompt)
        self.calls.append((role, user_prompt))
        if self.before_reply is not None:
            self.before_reply(role)
        script = self._replies[role]
        if isinstance(script, list):
            content = script.pop(0) if len(script) > 1 else script[0]
        else:
            content = script
        return Completion(
            provider="mock",
            model="mock-model",
            content=content,
            latency_sec=0.01,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
        )

    def roles_called(self) -> list[str]:
        return [role for role, _ in self.calls]

    def name(self) -> str:
        return "mock"

    def model_string(self) -> str:
        return "mock-model"

    async def generate(self, system_prompt: str, user_prompt: str, temperature: float) -> Completion:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return self._reply(system_prompt, user_prompt, temperature)


def word_count(text: str) -> int:
    return len(text.split())


@pytest.fixture
def role_configs() -> dict[str, RoleConfig]:
    return {
        role.value: RoleConfig(
            system=f"ROLE:{role.value}",
            instruction="Idea: {idea}\n{history}Iteration {iteration}/{max_iterations}",
            temperature=0.5,
        )
        for role in AgentRole
        if role is not AgentRole.SYSTEM
    }


@pytest.fixture
def roles(role_configs) -> RoleRegistry:
    return RoleRegistry.from_config(role_configs)


@pytest.fixture
def estimator() -> CostEstimator:
    return CostEstimator(TEST_PRICING, word_count)


@pytest.fixture
def orchestrator_settings() -> OrchestratorConfig:
    return OrchestratorConfig(
        mode="debate",
        max_rounds=3,
        max_iterations=2,
        max_turns_per_agent=2,
        continue_extension=2,
        history_window=6,
        soft_budget_ratio=0.9,
        pacing_delay_sec=0.0,
    )


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def make_orchestrator(mock_provider, roles, estimator, orchestrator_settings):
    def _make(mode: str = "debate", provider: AIProvider | None = None, **overrides) -> EvaluationOrchestrator:
        settings = OrchestratorConfig(**{**vars(orchestrator_settings), **overrides})
        return EvaluationOrchestrator(
            provider=provider or mock_provider,
            roles=roles,
            estimator=estimator,
            settings=settings,
            mode=mode,
        )
    return _make


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="openai",
        sdk="openai",
        model="gpt-4",
        api_key_env="TEST_OPENAI_KEY",
        timeout_sec=30,
        max_tokens=800,
    )


@pytest.fixture
def sample_app_config(tmp_path: Path, sample_model_config, role_configs, orchestrator_settings) -> AppConfig:
    return AppConfig(
        defaults=DefaultsConfig(provider="openai", budget=10.0, output_dir=tmp_path / "output"),
        models={"openai": sample_model_config},
        pricing={"gpt-4": TEST_PRICING},
        roles=role_configs,
        orchestrator=orchestrator_settings,
        server=ServerConfig(allowed_budgets=[5.0, 10.0, 25.0, 50.0], retention_sec=3600, sweep_interval_sec=3600),
        inbox=InboxConfig(dir=tmp_path / "inbox", archive_dir=tmp_path / "inbox" / "archive"),
        available_providers={"openai"},
    )
