"""
Unit tests for prflow/services/stage_policy.py

Tests: default sequence, next-stage walk, configured sequences per PR type,
       misconfiguration surfaces as ConfigurationError.
"""

import pytest

from prflow.errors import ConfigurationError
from prflow.services.identity import Role
from prflow.services.stage_policy import (
    STAGE_COST_CONTROL,
    STAGE_GM,
    STAGE_PURCHASING,
    StagePolicy,
    build_stage_list,
)


def test_default_policy_resolves_three_stage_sequence():
    stages = StagePolicy().resolve("standard")

    assert stages.names == [STAGE_PURCHASING, STAGE_COST_CONTROL, STAGE_GM]
    assert stages.first.required_role is Role.PURCHASING
    assert stages.required_role(STAGE_COST_CONTROL) is Role.COST_CONTROL
    assert stages.required_role(STAGE_GM) is Role.GENERAL_MANAGER


def test_next_after_walks_forward_and_ends_with_none():
    stages = StagePolicy().resolve("standard")

    assert stages.next_after(STAGE_PURCHASING).name == STAGE_COST_CONTROL
    assert stages.next_after(STAGE_COST_CONTROL).name == STAGE_GM
    assert stages.next_after(STAGE_GM) is None


def test_resolution_is_deterministic():
    policy = StagePolicy()
    assert policy.resolve("standard") == policy.resolve("standard")


def test_configured_sequence_per_type():
    policy = StagePolicy(
        {
            "standard": [["Purchasing", "purchasing"], ["GM", "GM"]],
            "capex": [
                ["Purchasing", "purchasing"],
                ["Cost Control", "Cost Control"],
                ["Director", "director"],
            ],
        }
    )

    assert policy.resolve("standard").names == ["Purchasing", "GM"]
    assert policy.resolve("capex").required_role("Director") is Role.DIRECTOR
    assert policy.pr_types == ["capex", "standard"]
    assert policy.has_type("capex")
    assert not policy.has_type("opex")


def test_unknown_type_raises_configuration_error():
    with pytest.raises(ConfigurationError):
        StagePolicy().resolve("opex")


def test_stage_not_in_list_raises_configuration_error():
    stages = StagePolicy().resolve("standard")
    with pytest.raises(ConfigurationError):
        stages.index_of("Legal")


@pytest.mark.parametrize(
    "pairs",
    [
        [],
        [["Purchasing", "purchasing"], ["Purchasing", "cost_control"]],
        [["Purchasing", "janitor"]],
        [["", "purchasing"]],
        [["Purchasing"]],
    ],
    ids=["empty", "duplicate", "unknown-role", "blank-name", "malformed"],
)
def test_build_stage_list_rejects_bad_configuration(pairs):
    with pytest.raises(ConfigurationError):
        build_stage_list(pairs)


def test_validate_flags_missing_default_type():
    policy = StagePolicy({"capex": [["GM", "general_manager"]]})
    with pytest.raises(ConfigurationError):
        policy.validate()


def test_stages_for_role_lists_every_type():
    policy = StagePolicy(
        {
            "standard": [["Purchasing", "purchasing"], ["GM", "general_manager"]],
            "capex": [["GM Review", "general_manager"]],
        }
    )

    assert policy.stages_for_role(Role.GENERAL_MANAGER) == [
        ("capex", "GM Review"),
        ("standard", "GM"),
    ]
    assert policy.stages_for_role(Role.SITE_TEAM) == []
