"""
Tool registration.

Produces the LTI 1.0 cartridge XML a platform admin pastes into the LMS,
and runs LTI 1.3 dynamic registration: fetch the platform's OpenID
configuration, create the consumer, and post this tool's configuration.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from lxml import etree

from .errors import UpstreamError
from .lti13 import AGS_SCORE_SCOPE, PLATFORM_CONFIGURATION, TOOL_CONFIGURATION, OIDCEngine
from .models import Consumer, ConsumerCreate
from .settings import Settings
from .storage import LTIStorage

logger = logging.getLogger(__name__)

CANVAS = "https://canvas.instructure.com/lti/"

PRIVACY_CLAIMS: dict[str, list[str]] = {
    "public": ["iss", "sub", "name", "given_name", "family_name", "email", "picture"],
    "name_only": ["iss", "sub", "name"],
    "email_only": ["iss", "sub", "email"],
    "anonymous": ["iss", "sub"],
}

NS_CC = "http://www.imsglobal.org/xsd/imslticc_v1p0"
NS_BLTI = "http://www.imsglobal.org/xsd/imsbasiclti_v1p0"
NS_LTICM = "http://www.imsglobal.org/xsd/imslticm_v1p0"
NS_LTICP = "http://www.imsglobal.org/xsd/imslticp_v1p0"
NS_XSI = "http://www.w3.org/2001/XMLSchema-instance"

SCHEMA_LOCATION = " ".join(
    [
        NS_CC,
        "http://www.imsglobal.org/xsd/lti/ltiv1p0/imslticc_v1p0.xsd",
        NS_BLTI,
        "http://www.imsglobal.org/xsd/lti/ltiv1p0/imsbasiclti_v1p0.xsd",
        NS_LTICM,
        "http://www.imsglobal.org/xsd/lti/ltiv1p0/imslticm_v1p0.xsd",
        NS_LTICP,
        "http://www.imsglobal.org/xsd/lti/ltiv1p0/imslticp_v1p0.xsd",
    ]
)


def privacy_claims(privacy_level: str) -> list[str]:
    """OIDC claims requested for a privacy level."""
    return list(PRIVACY_CLAIMS.get(privacy_level, PRIVACY_CLAIMS["anonymous"]))


class RegistrationController:
    """Configuration documents and dynamic registration for this tool."""

    def __init__(
        self,
        settings: Settings,
        storage: LTIStorage,
        oidc: OIDCEngine,
        deep_linking: bool = False,
    ):
        self.settings = settings
        self.storage = storage
        self.oidc = oidc
        self.deep_linking = deep_linking

    @property
    def domain(self) -> str:
        """``domain_name`` without its scheme."""
        domain = self.settings.domain_name
        for scheme in ("https://", "http://"):
            if domain.startswith(scheme):
                return domain[len(scheme):]
        return domain

    # ========================================================================
    # LTI 1.0 cartridge
    # ========================================================================

    def lti10_config(self) -> str:
        """The ``cartridge_basiclti_link`` XML describing this tool."""
        s = self.settings
        root = etree.Element(
            f"{{{NS_CC}}}cartridge_basiclti_link",
            nsmap={None: NS_CC, "blti": NS_BLTI, "lticm": NS_LTICM, "lticp": NS_LTICP, "xsi": NS_XSI},
        )
        root.set(f"{{{NS_XSI}}}schemaLocation", SCHEMA_LOCATION)

        for tag, text in (
            ("title", s.title),
            ("description", s.description),
            ("icon", s.icon_url),
            ("launch_url", s.launch_url),
        ):
            etree.SubElement(root, f"{{{NS_BLTI}}}{tag}").text = text

        if s.custom_params:
            custom = etree.SubElement(root, f"{{{NS_BLTI}}}custom")
            for name, value in s.custom_params.items():
                prop = etree.SubElement(custom, f"{{{NS_LTICM}}}property", name=name)
                prop.text = str(value)

        extensions = etree.SubElement(
            root, f"{{{NS_BLTI}}}extensions", platform="canvas.instructure.com"
        )
        for name, value in (
            ("tool_id", s.tool_id),
            ("privacy_level", s.privacy_level),
            ("domain", self.domain),
        ):
            etree.SubElement(extensions, f"{{{NS_LTICM}}}property", name=name).text = value

        if s.navigation:
            options = etree.SubElement(extensions, f"{{{NS_LTICM}}}options", name="course_navigation")
            for name, value in (("default", "disabled"), ("enabled", "true"), ("windowTarget", "_blank")):
                etree.SubElement(options, f"{{{NS_LTICM}}}property", name=name).text = value

        etree.SubElement(root, f"{{{NS_CC}}}cartridge_bundle", identifierref="BLTI001_Bundle")
        etree.SubElement(root, f"{{{NS_CC}}}cartridge_icon", identifierref="BLTI001_Icon")
        return etree.tostring(
            root, xml_declaration=True, encoding="UTF-8", pretty_print=True
        ).decode("utf-8")

    # ========================================================================
    # LTI 1.3 dynamic registration
    # ========================================================================

    def messages(self) -> list[dict[str, Any]]:
        """Message placements offered to the platform."""
        s = self.settings
        messages: list[dict[str, Any]] = []
        if self.deep_linking:
            messages.append(
                {
                    "type": "LtiDeepLinkingRequest",
                    "target_link_url": s.launch_url,
                    "label": s.title,
                    "icon_uri": s.icon_url,
                    "placements": [CANVAS + "assignment_selection"],
                    "supported_types": ["ltiResourceLink"],
                    CANVAS + "visibility": "admins",
                    CANVAS + "display_type": "new_window",
                }
            )
        if s.navigation:
            messages.append(
                {
                    "type": "LtiResourceLinkRequest",
                    "target_link_url": s.launch_url,
                    "label": s.title,
                    "icon_uri": s.icon_url,
                    "placements": [CANVAS + "course_navigation"],
                    "supported_types": ["ltiResourceLink"],
                    CANVAS + "course_navigation/default_enabled": False,
                    CANVAS + "visibility": "members",
                    CANVAS + "display_type": "new_window",
                }
            )
        return messages

    def registration_config(self) -> dict[str, Any]:
        """The client registration document posted to the platform."""
        s = self.settings
        return {
            "application_type": "web",
            "response_types": ["id_token"],
            "grant_types": ["implicit", "client_credentials"],
            "initiate_login_uri": s.login_url,
            "redirect_uris": [s.launch_url],
            "client_name": s.title,
            "logo_uri": s.icon_url,
            "token_endpoint_auth_method": "private_key_jwt",
            "jwks_uri": s.jwks_url,
            "contacts": [s.admin_email],
            "scope": AGS_SCORE_SCOPE,
            TOOL_CONFIGURATION: {
                "domain": self.domain,
                "description": s.description,
                "target_link_uri": s.launch_url,
                "custom_parameters": dict(s.custom_params),
                "claims": privacy_claims(s.privacy_level),
                "messages": self.messages(),
            },
        }

    async def dynamic_registration(self, params: Mapping[str, str]) -> Consumer:
        """
        Register this tool with a platform.

        Args:
            params: ``openid_configuration`` and ``registration_token`` from
                the platform's registration request

        Returns:
            The new consumer, with the client and deployment ids the platform issued

        Raises:
            UpstreamError: The platform configuration is unusable or the
                platform rejected the registration
        """
        token = params.get("registration_token")
        details = await self.oidc.get_lms_details(params.get("openid_configuration"), token)
        if details is None:
            raise UpstreamError("Dynamic Registration: Unable to read platform configuration")

        platform = details[PLATFORM_CONFIGURATION]
        name = platform.get(CANVAS + "account_name") or platform["product_family_code"]

        consumer, _ = await self.storage.create_consumer(
            ConsumerCreate(
                name=name,
                lti13=True,
                client_id=None,
                deployment_id=None,
                platform_id=details["issuer"],
                keyset_url=details["jwks_uri"],
                token_url=details["token_endpoint"],
                auth_url=details["authorization_endpoint"],
            )
        )

        try:
            registered = await self.oidc.send_registration(
                self.registration_config(), details["registration_endpoint"], consumer, token
            )
        except UpstreamError as e:
            logger.error("Error registering LTI 1.3 configuration with LMS: %s", e)
            logger.error("Response Body: %s", e.body)
            await self.storage.delete_consumer(consumer.id)
            raise UpstreamError(
                "Dynamic Registration: Failed to register LTI 1.3 configuration with LMS",
                status_code=e.status_code,
                body=e.body,
            ) from e

        logger.info("Registered with %s as client %s", registered.name, registered.client_id)
        return registered
