"""
Launch orchestration.

Routes an incoming launch to the OAuth 1.0 or OIDC engine, records the
platform's self-reported product details, normalizes the payload into
``LaunchData``/``DeeplinkData`` and hands it to the tool's callbacks.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .errors import ConfigurationError, TrustError, ValidationError
from .lti10 import OAuth1Engine
from .lti13 import (
    AGS_CLAIM,
    DL_CLAIM,
    LTI_CLAIM,
    MESSAGE_DEEP_LINKING,
    MESSAGE_RESOURCE_LINK,
    OIDCEngine,
)
from .log import log_lti
from .models import Consumer, DeeplinkData, LaunchData
from .storage import LTIStorage

logger = logging.getLogger(__name__)

# (data, consumer, request) -> anything; may be a coroutine function
LaunchHandler = Callable[[LaunchData, Consumer, Any], Any]
DeeplinkHandler = Callable[[DeeplinkData, Consumer, Any], Any]


async def _call(handler: Callable, *args) -> Any:
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _claim(claims: Mapping[str, Any], name: str) -> dict:
    value = claims.get(LTI_CLAIM + name)
    return value if isinstance(value, dict) else {}


class LaunchController:
    """Turns validated launches into tool callbacks."""

    def __init__(
        self,
        storage: LTIStorage,
        oauth1: OAuth1Engine,
        oidc: OIDCEngine,
        handle_launch: LaunchHandler | None = None,
        handle_deeplink: DeeplinkHandler | None = None,
    ):
        self.storage = storage
        self.oauth1 = oauth1
        self.oidc = oidc
        self.handle_launch = handle_launch
        self.handle_deeplink = handle_deeplink

    async def launch(
        self,
        body: Mapping[str, str],
        http_method: str = "POST",
        url: str = "",
        request: Any = None,
    ) -> Any:
        """
        Validate a launch of either protocol version and invoke the tool.

        Args:
            body: Decoded form body of the launch
            http_method: HTTP verb the launch arrived with
            url: Request URL, used for the OAuth 1.0 base string
            request: Opaque request object passed through to the callback

        Returns:
            Whatever the tool's callback returns (usually a redirect URL)
        """
        if body.get("id_token"):
            return await self.launch13(body, request)
        if body.get("oauth_consumer_key"):
            return await self.launch10(body, http_method, url or self.oauth1.settings.launch_url, request)
        log_lti(logger, "Launch without id_token or oauth_consumer_key")
        raise ValidationError("Launch Error: Missing id_token or oauth_consumer_key")

    async def update_lms(
        self,
        key: str,
        product: str | None,
        guid: str | None,
        name: str | None,
        version: str | None,
    ) -> Consumer:
        """
        Record the platform details reported in a launch.

        Drift from the stored values is logged and saved, never rejected.

        Raises:
            TrustError: If no consumer has ``key``
        """
        consumer = await self.storage.get_consumer_by_key(key)
        if consumer is None:
            raise TrustError(f"Launch Error: Cannot find LTI Consumer for key: {key}")

        observed = {"tc_product": product, "tc_version": version, "tc_guid": guid, "tc_name": name}
        stored = {field: getattr(consumer, field) for field in observed}
        if observed == stored:
            return consumer

        logger.warning(
            "Tool Consumer Data Changed! consumer=%s old=%s new=%s",
            consumer.name,
            stored,
            observed,
        )
        return await self.storage.update_consumer_fields(consumer.id, **observed)

    # ========================================================================
    # LTI 1.0
    # ========================================================================

    async def launch10(
        self, body: Mapping[str, str], http_method: str, url: str, request: Any = None
    ) -> Any:
        params = await self.oauth1.validate_launch(body, http_method, url)
        consumer = await self.update_lms(
            params["oauth_consumer_key"],
            params.get("tool_consumer_info_product_family_code"),
            params.get("tool_consumer_instance_guid"),
            params.get("tool_consumer_instance_name"),
            params.get("tool_consumer_info_version"),
        )
        return await self._dispatch_launch(self.launch_data10(params), consumer, request)

    @staticmethod
    def launch_data10(params: Mapping[str, str]) -> LaunchData:
        """Normalize validated LTI 1.0 parameters."""
        return LaunchData(
            launch_type="lti1.0",
            tool_consumer_key=params["oauth_consumer_key"],
            course_id=params.get("context_id"),
            course_label=params.get("context_label"),
            course_name=params.get("context_title"),
            assignment_id=params.get("resource_link_id"),
            assignment_lti_id=params.get("ext_lti_assignment_id"),
            assignment_name=params.get("resource_link_title"),
            return_url=params.get("launch_presentation_return_url"),
            outcome_url=params.get("lis_outcome_service_url"),
            outcome_id=params.get("lis_result_sourcedid"),
            outcome_ags=None,
            user_lis_id=params.get("user_id"),
            user_lis13_id=None,
            user_email=params.get("lis_person_contact_email_primary"),
            user_name=params.get("lis_person_name_full"),
            user_given_name=params.get("lis_person_name_given"),
            user_family_name=params.get("lis_person_name_family"),
            user_image=params.get("user_image"),
            user_roles=params.get("roles"),
            custom={name: value for name, value in params.items() if name.startswith("custom_")},
        )

    # ========================================================================
    # LTI 1.3
    # ========================================================================

    async def launch13(self, body: Mapping[str, str], request: Any = None) -> Any:
        claims = await self.oidc.verify_launch(body)
        platform = _claim(claims, "tool_platform")
        consumer = await self.update_lms(
            claims["key"],
            platform.get("product_family_code"),
            platform.get("guid"),
            platform.get("name"),
            platform.get("version"),
        )

        message_type = claims.get(LTI_CLAIM + "message_type")
        if message_type == MESSAGE_RESOURCE_LINK:
            return await self._dispatch_launch(self.launch_data13(claims), consumer, request)
        if message_type == MESSAGE_DEEP_LINKING:
            return await self._dispatch_deeplink(self.deeplink_data13(claims), consumer, request)
        raise ValidationError(f"Launch Error: Unsupported LTI message type {message_type}")

    @staticmethod
    def _user_fields13(claims: Mapping[str, Any]) -> dict[str, Any]:
        context = _claim(claims, "context")
        lti1p1 = _claim(claims, "lti1p1")
        custom = claims.get(LTI_CLAIM + "custom")
        return {
            "tool_consumer_key": claims["key"],
            "course_id": context.get("id"),
            "course_label": context.get("label"),
            "course_name": context.get("title"),
            "user_lis_id": lti1p1.get("user_id"),
            "user_lis13_id": claims.get("sub"),
            "user_email": claims.get("email"),
            "user_name": claims.get("name"),
            "user_given_name": claims.get("given_name"),
            "user_family_name": claims.get("family_name"),
            "user_image": claims.get("picture"),
            "user_roles": claims.get(LTI_CLAIM + "roles"),
            "custom": custom if isinstance(custom, dict) else {},
        }

    @classmethod
    def launch_data13(cls, claims: Mapping[str, Any]) -> LaunchData:
        """Normalize verified resource-link claims."""
        lti1p1 = _claim(claims, "lti1p1")
        resource_link = _claim(claims, "resource_link")
        presentation = _claim(claims, "launch_presentation")
        ags = claims.get(AGS_CLAIM + "endpoint")
        ags = ags if isinstance(ags, dict) else None
        return LaunchData(
            launch_type="lti1.3",
            assignment_id=lti1p1.get("resource_link_id"),
            assignment_lti_id=resource_link.get("id"),
            assignment_name=resource_link.get("title"),
            return_url=presentation.get("return_url"),
            outcome_url=ags.get("lineitem") if ags else None,
            outcome_id=None,
            outcome_ags=json.dumps(ags) if ags else None,
            **cls._user_fields13(claims),
        )

    @classmethod
    def deeplink_data13(cls, claims: Mapping[str, Any]) -> DeeplinkData:
        """Normalize verified deep-linking claims."""
        settings = claims.get(DL_CLAIM + "deep_linking_settings")
        settings = settings if isinstance(settings, dict) else {}
        presentation = _claim(claims, "launch_presentation")
        return DeeplinkData(
            return_url=presentation.get("return_url"),
            deep_link_return_url=settings.get("deep_link_return_url"),
            **cls._user_fields13(claims),
        )

    # ========================================================================
    # Callbacks
    # ========================================================================

    async def _dispatch_launch(self, data: LaunchData, consumer: Consumer, request: Any) -> Any:
        if self.handle_launch is None:
            raise ConfigurationError("Launch Error: No handle_launch callback configured")
        log_lti(logger, "Launch %s for consumer %s", data.launch_type, consumer.name)
        return await _call(self.handle_launch, data, consumer, request)

    async def _dispatch_deeplink(self, data: DeeplinkData, consumer: Consumer, request: Any) -> Any:
        if self.handle_deeplink is None:
            raise ConfigurationError("Deeplink Error: No handle_deeplink callback configured")
        log_lti(logger, "Deep link request for consumer %s", consumer.name)
        return await _call(self.handle_deeplink, data, consumer, request)
