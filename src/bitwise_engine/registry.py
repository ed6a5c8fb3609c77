# registry.py
# Script and strategy repositories.
#
# Explicit objects rather than module-level singletons: every engine (and
# every test) owns its own repositories, so independent runs share nothing.

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from bitwise_engine.errors import DuplicateStrategyError, MissingScriptError
from bitwise_engine.models import Role, ScriptRef, StrategyDefinition

logger = logging.getLogger(__name__)


class ScriptRepository:
    """Scripts keyed by unique name."""

    def __init__(self, scripts: list[ScriptRef] | None = None) -> None:
        self._scripts: dict[str, ScriptRef] = {}
        for script in scripts or []:
            self.add(script)

    def add(self, script: ScriptRef) -> ScriptRef:
        """Insert, or replace the script with the same name (keeping its created time)."""
        existing = self._scripts.get(script.name)
        if existing is not None:
            script = script.model_copy(
                update={"created": existing.created, "modified": datetime.now(timezone.utc)}
            )
        self._scripts[script.name] = script
        return script

    def get(self, name: str) -> ScriptRef | None:
        return self._scripts.get(name)

    def require(self, name: str, role: Role | None = None) -> ScriptRef:
        script = self._scripts.get(name)
        if script is None:
            raise MissingScriptError(name, role.value if role else None)
        return script

    def remove(self, name: str) -> None:
        self._scripts.pop(name, None)

    def by_role(self, role: Role) -> list[ScriptRef]:
        return [s for s in self._scripts.values() if s.role is role]

    def names(self) -> list[str]:
        return list(self._scripts)

    def all(self) -> list[ScriptRef]:
        return list(self._scripts.values())

    def __contains__(self, name: object) -> bool:
        return name in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)


class StrategyValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class StrategyRepository:
    """Strategies keyed by id, with unique names."""

    def __init__(self, scripts: ScriptRepository | None = None) -> None:
        self._scripts = scripts
        self._strategies: dict[str, StrategyDefinition] = {}

    def create(
        self,
        name: str,
        scheduler_script: str,
        algorithm_scripts: list[str] | None = None,
        scoring_scripts: list[str] | None = None,
        policy_scripts: list[str] | None = None,
        tags: list[str] | None = None,
    ) -> StrategyDefinition:
        if any(s.name == name for s in self._strategies.values()):
            raise DuplicateStrategyError(f"Strategy '{name}' already exists.")
        if self._scripts is not None and scheduler_script not in self._scripts:
            raise MissingScriptError(scheduler_script, Role.SCHEDULER.value)

        strategy = StrategyDefinition(
            name=name,
            scheduler_script=scheduler_script,
            algorithm_scripts=list(algorithm_scripts or []),
            scoring_scripts=list(scoring_scripts or []),
            policy_scripts=list(policy_scripts or []),
            tags=list(tags or []),
        )
        if not strategy.algorithm_scripts:
            logger.warning("Strategy '%s' has no algorithm scripts; runs will record no steps.", name)
        self._strategies[strategy.id] = strategy
        return strategy

    def update(self, strategy_id: str, **changes) -> StrategyDefinition:
        current = self.get(strategy_id)
        if current is None:
            raise KeyError(strategy_id)
        new_name = changes.get("name", current.name)
        if any(s.name == new_name and s.id != strategy_id for s in self._strategies.values()):
            raise DuplicateStrategyError(f"Strategy '{new_name}' already exists.")
        updated = StrategyDefinition.model_validate({**current.model_dump(), **changes, "id": strategy_id})
        self._strategies[strategy_id] = updated
        return updated

    def delete(self, strategy_id: str) -> None:
        self._strategies.pop(strategy_id, None)

    def get(self, strategy_id: str) -> StrategyDefinition | None:
        return self._strategies.get(strategy_id)

    def get_by_name(self, name: str) -> StrategyDefinition | None:
        return next((s for s in self._strategies.values() if s.name == name), None)

    def all(self) -> list[StrategyDefinition]:
        return sorted(self._strategies.values(), key=lambda s: s.created, reverse=True)

    def validate(self, strategy: StrategyDefinition) -> StrategyValidation:
        """Check every referenced script resolves with the right role."""
        errors: list[str] = []
        warnings: list[str] = []
        expected = [(strategy.scheduler_script, Role.SCHEDULER)]
        expected += [(n, Role.ALGORITHM) for n in strategy.algorithm_scripts]
        expected += [(n, Role.SCORING) for n in strategy.scoring_scripts]
        expected += [(n, Role.POLICY) for n in strategy.policy_scripts]

        for name, role in expected:
            script = self._scripts.get(name) if self._scripts is not None else None
            if script is None:
                errors.append(f"{role.value.capitalize()} script '{name}' not found")
            elif script.role is not role:
                errors.append(f"Script '{name}' is a {script.role.value} script, not {role.value}")

        if not strategy.algorithm_scripts:
            warnings.append("No algorithm scripts - strategy will not perform transformations")
        if not strategy.scoring_scripts:
            warnings.append("No scoring scripts - every proposal scores 0")

        return StrategyValidation(valid=not errors, errors=errors, warnings=warnings)
