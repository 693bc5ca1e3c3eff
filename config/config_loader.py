"""Load settings.yaml into typed dataclasses. Reports which providers have API keys."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class PricingConfig:
    input_per_1k: float
    output_per_1k: float
    assumed_output_tokens: int = 300


@dataclass
class RoleConfig:
    system: str
    instruction: str
    temperature: float


@dataclass
class OrchestratorConfig:
    mode: str = "debate"
    max_rounds: int = 3
    max_iterations: int = 5
    max_turns_per_agent: int = 10
    continue_extension: int = 2
    history_window: int = 6
    soft_budget_ratio: float = 0.9
    pacing_delay_sec: float = 0.0
    clarify_on_continue: bool = False


@dataclass
class ServerConfig:
    allowed_budgets: list[float] = field(default_factory=list)
    retention_sec: int = 3600
    sweep_interval_sec: int = 3600
    cors_origins: list[str] = field(default_factory=list)


@dataclass
class InboxConfig:
    dir: Path
    archive_dir: Path


@dataclass
class DefaultsConfig:
    provider: str
    budget: float
    output_dir: Path


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    pricing: dict[str, PricingConfig]
    roles: dict[str, RoleConfig]
    orchestrator: OrchestratorConfig
    server: ServerConfig
    inbox: InboxConfig
    available_providers: set[str] = field(default_factory=set)

    def pricing_for(self, provider_name: str) -> PricingConfig:
        """Return the rate table of the model behind ``provider_name``.

        Raises KeyError if the provider or its model has no pricing entry.
        """
        model = self.models[provider_name].model
        if model not in self.pricing:
            raise KeyError(f"No pricing configured for model '{model}'")
        return self.pricing[model]


def _load_orchestrator(raw: dict) -> OrchestratorConfig:
    mode = str(raw.get("mode", "debate"))
    if mode not in ("debate", "iterative"):
        raise ValueError(f"Unknown orchestrator mode: {mode}")
    return OrchestratorConfig(
        mode=mode,
        max_rounds=int(raw.get("max_rounds", 3)),
        max_iterations=int(raw.get("max_iterations", 5)),
        max_turns_per_agent=int(raw.get("max_turns_per_agent", 10)),
        continue_extension=int(raw.get("continue_extension", 2)),
        history_window=int(raw.get("history_window", 6)),
        soft_budget_ratio=float(raw.get("soft_budget_ratio", 0.9)),
        pacing_delay_sec=float(raw.get("pacing_delay_sec", 0.0)),
        clarify_on_continue=bool(raw.get("clarify_on_continue", False)),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError on an
    unknown orchestrator mode.
    Logs which providers have an API key in the environment but does not
    raise; the server accepts per-request credentials instead.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        provider=str(defaults_raw["provider"]),
        budget=float(defaults_raw["budget"]),
        output_dir=Path(defaults_raw["output_dir"]),
    )

    pricing = {
        model: PricingConfig(
            input_per_1k=float(rates["input_per_1k"]),
            output_per_1k=float(rates["output_per_1k"]),
            assumed_output_tokens=int(rates.get("assumed_output_tokens", 300)),
        )
        for model, rates in raw.get("pricing", {}).items()
    }

    roles = {
        role_name: RoleConfig(
            system=str(role_raw["system"]).strip(),
            instruction=str(role_raw["instruction"]).strip(),
            temperature=float(role_raw["temperature"]),
        )
        for role_name, role_raw in raw["roles"].items()
    }

    server_raw = raw.get("server", {})
    server = ServerConfig(
        allowed_budgets=[float(b) for b in server_raw.get("allowed_budgets", [])],
        retention_sec=int(server_raw.get("retention_sec", 3600)),
        sweep_interval_sec=int(server_raw.get("sweep_interval_sec", 3600)),
        cors_origins=list(server_raw.get("cors_origins", [])),
    )

    inbox_raw = raw.get("inbox", {})
    inbox = InboxConfig(
        dir=Path(inbox_raw.get("dir", "./inbox")),
        archive_dir=Path(inbox_raw.get("archive_dir", "./inbox/archive")),
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        if model_cfg.model not in pricing:
            logger.warning("No pricing entry for model %s (%s)", model_cfg.model, provider_name)

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider has no API key in environment: %s (set %s in .env)",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        pricing=pricing,
        roles=roles,
        orchestrator=_load_orchestrator(raw.get("orchestrator", {})),
        server=server,
        inbox=inbox,
        available_providers=available_providers,
    )
