"""
Intent models produced by triage and by the project keyword resolver.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class SimpleResponseIntent(BaseModel):
    kind: Literal["simple_response"] = "simple_response"


class OnboardingFlowIntent(BaseModel):
    kind: Literal["onboarding_flow"] = "onboarding_flow"


class NoReplyIntent(BaseModel):
    kind: Literal["no_reply"] = "no_reply"


class ProjectAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    COMPLETE = "complete"
    REFERENCE = "reference"


class ProjectFlowIntent(BaseModel):
    kind: Literal["project_flow"] = "project_flow"
    action: ProjectAction = ProjectAction.CREATE
    project_name: str = ""
    project_description: str = ""
    updates: dict[str, Any] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    attribute_updates: dict[str, Any] = Field(default_factory=dict)
    replace_attributes: bool = False


Intent = Annotated[
    Union[SimpleResponseIntent, OnboardingFlowIntent, NoReplyIntent, ProjectFlowIntent],
    Field(discriminator="kind"),
]


class ProjectIntentType(str, Enum):
    CONTINUE_CURRENT = "continue_current"
    COMPLETE = "complete"
    REFERENCE = "reference"
    START_NEW = "start_new"


class ProjectIntent(BaseModel):
    """Keyword-level reading of the latest message with respect to projects."""

    type: ProjectIntentType = ProjectIntentType.CONTINUE_CURRENT
    project_id: str | None = None
