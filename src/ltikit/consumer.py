"""
Platform-side LTI 1.0 services.

Generates signed launch forms for registered providers and answers the
Basic Outcomes requests those providers send back.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any

from . import outcomes
from .errors import LTIError, ValidationError
from .lti10 import SIGNATURE_METHOD, OAuth1Engine
from .log import log_lti
from .settings import Settings

logger = logging.getLogger(__name__)

# (provider_key, context, resource, user, gradebook, score, request) -> bool
ProviderGradeHandler = Callable[[str, str, str, str, str, float, Any], Any]


class ConsumerController:
    """Launch form generation and Basic Outcomes handling for the platform role."""

    def __init__(
        self,
        settings: Settings,
        oauth1: OAuth1Engine,
        post_provider_grade: ProviderGradeHandler | None = None,
    ):
        self.settings = settings
        self.oauth1 = oauth1
        self.post_provider_grade = post_provider_grade

    def generate_launch_form(
        self,
        key: str,
        secret: str,
        url: str,
        return_url: str,
        context: Mapping[str, str],
        resource: Mapping[str, str],
        user: Mapping[str, str],
        manager: bool,
        gradebook_key: str,
        custom: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Build a signed LTI 1.0 launch for a provider.

        Args:
            key: Provider key
            secret: Provider secret
            url: Provider launch URL
            return_url: Where the provider sends the user back to
            context: Course ``key``, ``label`` and ``name``
            resource: Assignment ``key`` and ``name``
            user: ``key`` and ``email``, optionally ``name``, ``given_name``,
                ``family_name`` and ``image``
            manager: True for instructors
            gradebook_key: Gradebook column the result belongs to
            custom: Extra parameters; ``custom_`` is prefixed when missing

        Returns:
            ``{"fields": {...}, "action": url}`` ready for an auto-submit form

        Raises:
            ValidationError: If a required input is missing
        """
        log_lti(logger, "Generating LTI 1.0 launch data for %s", url)

        for value, label in (
            (key, "Consumer Key"),
            (secret, "Consumer Secret"),
            (url, "Launch URL"),
            (return_url, "Return URL"),
        ):
            if not value:
                raise ValidationError(f"{label} is required to generate LTI 1.0 Launch Data")
        if not context or not all(context.get(f) for f in ("key", "label", "name")):
            raise ValidationError(
                "Context with key, label, and name is required to generate LTI 1.0 Launch Data"
            )
        if not resource or not all(resource.get(f) for f in ("key", "name")):
            raise ValidationError(
                "Resource with key and name is required to generate LTI 1.0 Launch Data"
            )
        if not user or not all(user.get(f) for f in ("key", "email")):
            raise ValidationError(
                "User with key and email is required to generate LTI 1.0 Launch Data"
            )
        if not isinstance(manager, bool):
            raise ValidationError("Manager status is required to generate LTI 1.0 Launch Data")
        if not gradebook_key:
            raise ValidationError("Gradebook Key is required to generate LTI 1.0 Launch Data")

        s = self.settings
        fields: dict[str, str] = {
            "oauth_consumer_key": key,
            "oauth_signature_method": SIGNATURE_METHOD,
            "oauth_timestamp": str(int(self.oauth1.clock())),
            "oauth_nonce": self.oauth1.tokens.token(),
            "oauth_version": "1.0",
            "context_id": context["key"],
            "context_label": context["label"],
            "context_title": context["name"],
            "launch_presentation_document_target": "iframe",
            "launch_presentation_locale": "en",
            "launch_presentation_return_url": return_url,
            "lis_outcome_service_url": s.grade_url,
            "lis_result_sourcedid": f"{context['key']}:{resource['key']}:{user['key']}:{gradebook_key}",
            "lis_person_contact_email_primary": user["email"],
            "lis_person_name_family": user.get("family_name") or "",
            "lis_person_name_full": user.get("name") or "",
            "lis_person_name_given": user.get("given_name") or "",
            "lti_message_type": "basic-lti-launch-request",
            "lti_version": "LTI-1p0",
            "oauth_callback": "about:blank",
            "resource_link_id": resource["key"],
            "resource_link_title": resource["name"],
            "roles": "Instructor" if manager else "Learner",
            "tool_consumer_info_product_family_code": s.product_name,
            "tool_consumer_info_version": s.product_version,
            "tool_consumer_instance_contact_email": s.admin_email,
            "tool_consumer_instance_guid": s.deployment_id,
            "tool_consumer_instance_name": s.deployment_name,
            "user_id": user["key"],
            "user_image": user.get("image") or "",
        }
        for name, value in (custom or {}).items():
            fields[name if name.startswith("custom_") else f"custom_{name}"] = str(value)

        fields["oauth_signature"] = self.oauth1.sign(SIGNATURE_METHOD, "POST", url, fields, secret)
        return {"fields": fields, "action": url}

    # ========================================================================
    # Basic Outcomes
    # ========================================================================

    def _response(
        self,
        code_major: str,
        severity: str,
        description: str,
        message_ref: str | None = None,
        operation: str | None = None,
        body_operation: str | None = None,
    ) -> bytes:
        return outcomes.build_response(
            code_major,
            severity,
            description,
            self.oauth1.tokens.hex(),
            message_ref=message_ref,
            operation=operation,
            body_operation=body_operation,
        )

    async def basic_outcomes(
        self,
        headers: Mapping[str, str],
        raw_body: bytes,
        url: str | None = None,
        request: Any = None,
    ) -> bytes:
        """
        Answer a Basic Outcomes request from a provider.

        Protocol failures are reported inside the XML response rather than
        raised, as the outcome service contract expects.

        Returns:
            ``imsx_POXEnvelopeResponse`` document
        """
        log_lti(logger, "Handling Basic Outcomes request")
        try:
            provider_key, _ = await self.oauth1.validate_body_signature(
                headers, raw_body, url or self.settings.grade_url
            )
            message_id, body = outcomes.parse_request(raw_body)
        except LTIError as e:
            log_lti(logger, "Basic Outcomes request rejected: %s", e.message)
            return self._response("failure", "invalidtargetdatafail", e.message)

        if "replaceresultrequest" in body:
            return await self._replace_result(
                body["replaceresultrequest"], provider_key, message_id, request
            )

        operation, element = outcomes.operation_name(body)
        log_lti(logger, "Unsupported Basic Outcomes operation %s", operation)
        return self._response(
            "unsupported",
            "status",
            f"The operation {operation} is not supported by this LTI Tool Consumer",
            message_ref=message_id,
            operation=element,
        )

    async def _replace_result(
        self, request_body: Any, provider_key: str, message_id: str, request: Any
    ) -> bytes:
        try:
            score, sourcedid = outcomes.validate_replace_result(request_body)
        except ValidationError as e:
            log_lti(logger, "replaceResult rejected: %s", e.message)
            return self._response(
                "failure", "invalidtargetdatafail", e.message, message_id, "replaceResult"
            )

        try:
            context_key, resource_key, user_key, gradebook_key = outcomes.split_sourcedid(sourcedid)
        except ValidationError as e:
            log_lti(logger, "replaceResult rejected: %s", e.message)
            return self._response("failure", e.code, e.message, message_id, "replaceResult")

        if self.post_provider_grade is None:
            return self._response(
                "failure",
                "processingfail",
                "Failed to Post Grade: no post_provider_grade callback configured",
                message_id,
                "replaceResult",
            )

        try:
            accepted = self.post_provider_grade(
                provider_key, context_key, resource_key, user_key, gradebook_key, score, request
            )
            if inspect.isawaitable(accepted):
                accepted = await accepted
        except LTIError as e:
            accepted = False
            reason = e.message
        else:
            reason = "grade was not accepted"

        if not accepted:
            log_lti(logger, "Failed to post grade for %s: %s", sourcedid, reason)
            return self._response(
                "failure",
                "processingfail",
                f"Failed to Post Grade: {reason}",
                message_id,
                "replaceResult",
            )

        return self._response(
            "success",
            "status",
            f"Score for {sourcedid} is now {score}",
            message_id,
            "replaceResult",
            body_operation="replaceResultResponse",
        )
