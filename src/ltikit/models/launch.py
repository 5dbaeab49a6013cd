"""
Normalized launch payloads handed to the tool's callbacks.

LTI 1.0 form posts and LTI 1.3 id_token claims are both reduced to
``LaunchData`` so the tool never needs to know which protocol carried
the launch.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class LaunchData(BaseModel):
    """A validated resource-link launch."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    launch_type: Literal["lti1.0", "lti1.3"]
    tool_consumer_key: str

    # Course
    course_id: str | None = None
    course_label: str | None = None
    course_name: str | None = None

    # Assignment
    assignment_id: str | None = None
    assignment_lti_id: str | None = None
    assignment_name: str | None = None
    return_url: str | None = None

    # Grade passback
    outcome_url: str | None = None
    outcome_id: str | None = None
    outcome_ags: str | None = Field(default=None, description="JSON of the AGS endpoint claim")

    # User
    user_lis_id: str | None = None
    user_lis13_id: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    user_given_name: str | None = None
    user_family_name: str | None = None
    user_image: str | None = None
    user_roles: Any = None

    custom: dict[str, Any] = Field(default_factory=dict)


class DeeplinkData(BaseModel):
    """A validated LTI 1.3 deep-linking request."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    launch_type: Literal["lti1.3deeplink"] = "lti1.3deeplink"
    tool_consumer_key: str

    course_id: str | None = None
    course_label: str | None = None
    course_name: str | None = None

    user_lis_id: str | None = None
    user_lis13_id: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    user_given_name: str | None = None
    user_family_name: str | None = None
    user_image: str | None = None
    user_roles: Any = None

    custom: dict[str, Any] = Field(default_factory=dict)
    return_url: str | None = None
    deep_link_return_url: str | None = None
