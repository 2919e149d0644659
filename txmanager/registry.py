"""Registry of policy engine factories."""

from __future__ import annotations

from abc import ABC, abstractmethod

from txmanager.config import ConfigSection
from txmanager.errors import ErrorCode, TMError
from txmanager.policyengine import PolicyEngine

_engines: dict[str, "Factory"] = {}
_base = ConfigSection("policyengine")


class Factory(ABC):
    """Creates policy engines of one kind."""

    @abstractmethod
    def name(self) -> str:
        """The name the engine is registered under."""

    @abstractmethod
    def init_config(self, conf: ConfigSection) -> None:
        """Register the engine's configuration keys."""

    @abstractmethod
    def new_policy_engine(self, conf: ConfigSection) -> PolicyEngine:
        """Build an engine from configuration."""


def base_config() -> ConfigSection:
    """The configuration section holding one sub-section per engine."""
    return _base


def reset_registry() -> None:
    """Forget every registered engine and reset the base configuration."""
    global _base
    _engines.clear()
    _base = ConfigSection("policyengine")


def register_engine(factory: Factory) -> str:
    name = factory.name()
    _engines[name] = factory
    factory.init_config(_base.sub_section(name))
    return name


def new_policy_engine(config: ConfigSection, name: str) -> PolicyEngine:
    factory = _engines.get(name)
    if factory is None:
        raise TMError(ErrorCode.POLICY_ENGINE_NOT_REGISTERED, name)
    return factory.new_policy_engine(config.sub_section(name))