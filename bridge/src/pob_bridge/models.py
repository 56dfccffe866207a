"""Parameter models for bridge requests.

Pydantic models for the structured ``params`` payloads. Fields are
snake_case in Python and camelCase on the wire, matching what the Lua
handlers read.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BaseParams(BaseModel):
    """Base model for request parameters.

    Accepts either field names or wire aliases on input and serializes
    with aliases, leaving out anything unset.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    def to_params(self) -> dict[str, Any]:
        """Dump to the wire representation."""
        return self.model_dump(by_alias=True, exclude_none=True)


class TreeSpec(BaseParams):
    """A full passive tree allocation for set_tree."""

    class_id: int
    ascend_class_id: int
    secondary_ascend_class_id: int | None = None
    nodes: list[int] = Field(default_factory=list)
    mastery_effects: dict[int, int] | None = None
    tree_version: str | None = None


class TreeDelta(BaseParams):
    """Incremental allocation change for update_tree_delta."""

    add_nodes: list[int] | None = None
    remove_nodes: list[int] | None = None
    class_id: int | None = None
    ascend_class_id: int | None = None
    secondary_ascend_class_id: int | None = None
    tree_version: str | None = None


class CalcWithParams(BaseParams):
    """Hypothetical allocation change evaluated by calc_with."""

    add_nodes: list[int] | None = None
    remove_nodes: list[int] | None = None
    use_full_dps: bool | None = Field(default=None, alias="useFullDPS")


class MainSelection(BaseParams):
    """Which socket group / active skill drives the displayed stats."""

    main_socket_group: int | None = None
    main_active_skill: int | None = None
    skill_part: int | None = None


class ConfigUpdate(BaseParams):
    """Build configuration values accepted by set_config."""

    bandit: str | None = None
    pantheon_major_god: str | None = None
    pantheon_minor_god: str | None = None
    enemy_level: int | None = None
