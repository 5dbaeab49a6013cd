"""
Tool-side services: grade passback and deep-link responses.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any

from .errors import ValidationError
from .lti10 import OAuth1Engine
from .lti13 import DL_CLAIM, LTI_CLAIM, LTI_VERSION, MESSAGE_DEEP_LINKING_RESPONSE, OIDCEngine
from .log import log_lti
from .models import Consumer
from .settings import Settings

logger = logging.getLogger(__name__)


def _as_score(score: Any) -> float | None:
    if score is None or isinstance(score, bool):
        return None
    try:
        value = float(score)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(value) else value


class ProviderController:
    """Grade passback and deep linking for the tool role."""

    def __init__(self, settings: Settings, oauth1: OAuth1Engine, oidc: OIDCEngine):
        self.settings = settings
        self.oauth1 = oauth1
        self.oidc = oidc

    async def post_grade(
        self,
        consumer_key: str | None,
        grade_url: str | None,
        lms_grade_id: str | None,
        score: Any,
        user_lis13_id: str | None,
        debug: Mapping[str, str] | None = None,
    ) -> bool:
        """
        Send a score back to the platform that launched the tool.

        A Basic Outcomes (LTI 1.0) post is used when ``lms_grade_id`` is
        present, otherwise an AGS (LTI 1.3) score for ``user_lis13_id``.

        Args:
            consumer_key: Key of the launching consumer
            grade_url: ``outcome_url`` from the launch
            lms_grade_id: ``outcome_id`` from an LTI 1.0 launch
            score: Grade between 0 and 1 inclusive
            user_lis13_id: ``user_lis13_id`` from an LTI 1.3 launch
            debug: Optional ``user``, ``user_id``, ``assignment`` and
                ``assignment_id`` labels for the log line

        Returns:
            True when the platform accepted the grade

        Raises:
            ValidationError: Missing or out-of-range inputs
            UpstreamError: The platform rejected the grade
        """
        debug = debug or {}
        log_lti(
            logger,
            "Posting grade for user %s (%s) to assignment %s (%s)",
            debug.get("user") or "Unknown User",
            debug.get("user_id") or "Unknown User ID",
            debug.get("assignment") or "Unknown Assignment",
            debug.get("assignment_id") or "Unknown Assignment ID",
        )

        if not consumer_key:
            raise ValidationError("Post Grade: Consumer Key is required to post grade")
        if not grade_url:
            raise ValidationError("Post Grade: Grade post does not have a grade URL")
        value = _as_score(score)
        if value is None or value < 0 or value > 1:
            raise ValidationError("Post Grade: Grade post does not have a valid score")
        if not lms_grade_id and not user_lis13_id:
            raise ValidationError(
                "Post Grade: Grade post must have either an LMS grade ID (for LTI 1.0) "
                "or a user LTI 1.3 ID (for LTI 1.3)"
            )

        if lms_grade_id:
            return await self.oauth1.post_outcome(lms_grade_id, value, consumer_key, grade_url)
        return await self.oidc.post_ags_grade(user_lis13_id, value, consumer_key, grade_url)

    async def create_deep_link(
        self,
        consumer: Consumer | None,
        return_url: str | None,
        resource_id: str | None,
        title: str | None,
    ) -> str:
        """
        Build the auto-submitting deep-linking response for one resource link.

        Returns:
            HTML page posting the signed ``JWT`` to ``return_url``
        """
        if consumer is None:
            raise ValidationError("Create Deep Link: Consumer is required")
        if not return_url:
            raise ValidationError("Create Deep Link: Return URL is required")
        if not resource_id:
            raise ValidationError("Create Deep Link: Resource ID is required")
        if not title:
            raise ValidationError("Create Deep Link: Resource title is required")

        claims = {
            "iss": consumer.client_id,
            "aud": consumer.platform_id,
            "nonce": self.oidc.tokens.token(),
            LTI_CLAIM + "deployment_id": consumer.deployment_id,
            LTI_CLAIM + "message_type": MESSAGE_DEEP_LINKING_RESPONSE,
            LTI_CLAIM + "version": LTI_VERSION,
            DL_CLAIM + "content_items": [
                {
                    "type": "ltiResourceLink",
                    "title": title,
                    "url": self.settings.launch_url,
                    "window": {"targetName": "_blank"},
                    "custom": {"custom_id": resource_id},
                }
            ],
        }
        token = await self.oidc.create_tool_token(consumer.key, claims)
        log_lti(logger, "Deep link %s for consumer %s", resource_id, consumer.name)
        return self.oidc.deep_link_form(token, return_url)
