"""Agent role registry: role -> system prompt, instruction template, temperature."""

import logging
from dataclasses import dataclass
from types import MappingProxyType

from config.config_loader import RoleConfig
from pitch_council.models import AgentRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleProfile:
    system_prompt: str
    instruction: str
    temperature: float


class RoleRegistry:
    """Immutable lookup table of the model-backed agent roles.

    Every ``AgentRole`` except ``SYSTEM`` must be configured; a missing role is
    rejected at construction so lookups during a run cannot fail on config.
    """

    def __init__(self, profiles: dict[AgentRole, RoleProfile]) -> None:
        missing = [r.value for r in AgentRole if r is not AgentRole.SYSTEM and r not in profiles]
        if missing:
            raise ValueError(f"Roles missing from configuration: {', '.join(missing)}")
        if AgentRole.SYSTEM in profiles:
            raise ValueError("The system role cannot have a model profile")
        self._profiles = MappingProxyType(dict(profiles))

    @classmethod
    def from_config(cls, roles: dict[str, RoleConfig]) -> "RoleRegistry":
        profiles: dict[AgentRole, RoleProfile] = {}
        for name, cfg in roles.items():
            try:
                role = AgentRole(name)
            except ValueError:
                logger.warning("Ignoring unknown role in configuration: %s", name)
                continue
            profiles[role] = RoleProfile(
                system_prompt=cfg.system,
                instruction=cfg.instruction,
                temperature=cfg.temperature,
            )
        return cls(profiles)

    def get(self, role: AgentRole) -> RoleProfile:
        """Return the profile for ``role``. Raises KeyError for ``SYSTEM``."""
        return self._profiles[role]

    def roles(self) -> list[AgentRole]:
        return list(self._profiles)
