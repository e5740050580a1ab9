"""
Stage policy: maps a PR's type to its ordered approval stages.

Default sequence (every PR type unless configured otherwise):
  Purchasing   → purchasing
  Cost Control → cost_control
  GM           → general_manager

The resolved StageList is a pure function of the PR's immutable pr_type,
so an in-flight PR keeps its path for as long as the configuration does.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

import structlog

from prflow.config import settings
from prflow.errors import ConfigurationError
from prflow.services.identity import Role

logger = structlog.get_logger()

STAGE_PURCHASING = "Purchasing"
STAGE_COST_CONTROL = "Cost Control"
STAGE_GM = "GM"

STANDARD_SEQUENCE: tuple[tuple[str, str], ...] = (
    (STAGE_PURCHASING, Role.PURCHASING.value),
    (STAGE_COST_CONTROL, Role.COST_CONTROL.value),
    (STAGE_GM, Role.GENERAL_MANAGER.value),
)


@dataclass(frozen=True)
class Stage:
    name: str
    required_role: Role


@dataclass(frozen=True)
class StageList:
    stages: tuple[Stage, ...]

    def __iter__(self):
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    @property
    def first(self) -> Stage:
        return self.stages[0]

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.stages]

    def index_of(self, stage_name: str) -> int:
        for idx, stage in enumerate(self.stages):
            if stage.name == stage_name:
                return idx
        raise ConfigurationError(
            f"Stage {stage_name!r} is not part of the resolved stage list"
        )

    def required_role(self, stage_name: str) -> Role:
        return self.stages[self.index_of(stage_name)].required_role

    def next_after(self, stage_name: str) -> Optional[Stage]:
        """Stage following stage_name, or None when it is the last one."""
        idx = self.index_of(stage_name)
        if idx + 1 < len(self.stages):
            return self.stages[idx + 1]
        return None


def build_stage_list(pairs: Iterable[Sequence[str]]) -> StageList:
    """Validate raw (stage, role) pairs into a StageList."""
    stages: list[Stage] = []
    seen: set[str] = set()
    for pair in pairs:
        if len(pair) != 2:
            raise ConfigurationError(f"Malformed stage entry: {pair!r}")
        name, role = pair
        name = str(name).strip()
        if not name:
            raise ConfigurationError("Stage name must not be empty")
        if name in seen:
            raise ConfigurationError(f"Duplicate stage name: {name!r}")
        try:
            required_role = Role.parse(role)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        seen.add(name)
        stages.append(Stage(name=name, required_role=required_role))

    if not stages:
        raise ConfigurationError("Resolved stage list is empty")
    return StageList(stages=tuple(stages))


class StagePolicy:
    """Resolves StageLists per PR type. No side effects; safe to share."""

    def __init__(
        self,
        sequences: Optional[Mapping[str, Iterable[Sequence[str]]]] = None,
        default_type: str = "standard",
    ) -> None:
        raw = dict(sequences) if sequences else {default_type: STANDARD_SEQUENCE}
        self._default_type = default_type
        self._raw = {pr_type: tuple(tuple(p) for p in pairs) for pr_type, pairs in raw.items()}

    @property
    def default_type(self) -> str:
        return self._default_type

    @property
    def pr_types(self) -> list[str]:
        return sorted(self._raw)

    def has_type(self, pr_type: str) -> bool:
        return pr_type in self._raw

    def resolve(self, pr_type: str) -> StageList:
        pairs = self._raw.get(pr_type)
        if pairs is None:
            logger.error("stage_policy_unknown_type", pr_type=pr_type)
            raise ConfigurationError(f"No approval sequence configured for {pr_type!r}")
        try:
            return build_stage_list(pairs)
        except ConfigurationError as e:
            logger.error("stage_policy_misconfigured", pr_type=pr_type, error=e.message)
            raise

    def stages_for_role(self, role: Role) -> list[tuple[str, str]]:
        """(pr_type, stage_name) pairs whose stage the given role signs off."""
        matches = []
        for pr_type in self.pr_types:
            for stage in self.resolve(pr_type):
                if stage.required_role is role:
                    matches.append((pr_type, stage.name))
        return matches

    def validate(self) -> None:
        """Resolve every configured type once; raises on the first broken one."""
        if self._default_type not in self._raw:
            raise ConfigurationError(
                f"Default PR type {self._default_type!r} has no approval sequence"
            )
        for pr_type in self.pr_types:
            self.resolve(pr_type)


def get_stage_policy() -> StagePolicy:
    return StagePolicy(settings.APPROVAL_SEQUENCES, settings.DEFAULT_PR_TYPE)
