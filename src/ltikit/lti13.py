"""
LTI 1.3 OpenID Connect engine.

Handles the third-party initiated login, id_token verification against the
platform's JWKS, the OAuth2 client-credentials grant used for Assignment
and Grade Services, tool JWT signing and the dynamic registration calls.
"""

from __future__ import annotations

import html
import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx
import jwt

from .errors import (
    ConfigurationError,
    ReplayError,
    TrustError,
    UpstreamError,
    ValidationError,
)
from .keys import TokenSource, public_jwk
from .log import log_lti
from .models import Consumer
from .settings import Settings
from .storage import LTIStorage
from .transport import outbound

logger = logging.getLogger(__name__)

LTI_CLAIM = "https://purl.imsglobal.org/spec/lti/claim/"
AGS_CLAIM = "https://purl.imsglobal.org/spec/lti-ags/claim/"
DL_CLAIM = "https://purl.imsglobal.org/spec/lti-dl/claim/"
PLATFORM_CONFIGURATION = "https://purl.imsglobal.org/spec/lti-platform-configuration"
TOOL_CONFIGURATION = "https://purl.imsglobal.org/spec/lti-tool-configuration"

AGS_SCORE_SCOPE = "https://purl.imsglobal.org/spec/lti-ags/scope/score"
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

MESSAGE_RESOURCE_LINK = "LtiResourceLinkRequest"
MESSAGE_DEEP_LINKING = "LtiDeepLinkingRequest"
MESSAGE_DEEP_LINKING_RESPONSE = "LtiDeepLinkingResponse"
LTI_VERSION = "1.3.0"

TOKEN_LIFETIME = 3600


def auto_submit_form(url: str, fields: Mapping[str, Any], title: str = "LTI Autoform") -> str:
    """HTML page that POSTs ``fields`` to ``url`` as soon as it loads."""
    inputs = "\n".join(
        f'    <input type="hidden" name="{html.escape(str(name))}" value="{html.escape(str(value))}" />'
        for name, value in fields.items()
        if value is not None
    )
    return (
        "<!doctype html>\n"
        f"<html>\n<head>\n  <title>{html.escape(title)}</title>\n</head>\n"
        '<body onload="document.forms[0].submit()">\n'
        f'  <form method="POST" action="{html.escape(url)}">\n'
        f"{inputs}\n"
        "  </form>\n</body>\n</html>\n"
    )


def scores_url(lineitem_url: str) -> str:
    """The AGS ``/scores`` endpoint for a line item URL, keeping its query string."""
    parts = urlsplit(lineitem_url)
    return urlunsplit(parts._replace(path=parts.path.rstrip("/") + "/scores"))


class OIDCEngine:
    """LTI 1.3 login, launch verification and platform service calls."""

    def __init__(
        self,
        storage: LTIStorage,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        tokens: TokenSource | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.settings = settings
        self.http_client = http_client
        self.tokens = tokens or storage.tokens
        self.clock = clock

    # ========================================================================
    # Login and launch
    # ========================================================================

    async def build_login_request(self, params: Mapping[str, str]) -> dict:
        """
        Answer a third-party initiated login.

        Args:
            params: Query and form parameters of the login request

        Returns:
            ``{"form": {...}, "url": auth_url, "name": consumer_name}``

        Raises:
            ValidationError: Missing or mismatched login parameters
            TrustError: No consumer is registered for the client and deployment
        """
        client_id = params.get("client_id")
        deployment_id = params.get("lti_deployment_id")
        if not client_id or not deployment_id:
            raise ValidationError("Login requires client_id and lti_deployment_id")

        consumer = await self.storage.find_lti13_consumer(client_id, deployment_id)
        if consumer is None:
            log_lti(logger, "Login rejected: no consumer for client %s / %s", client_id, deployment_id)
            raise TrustError(f"No consumer registered for client {client_id}")

        if not params.get("iss"):
            raise ValidationError("Login is missing iss")
        if not params.get("login_hint"):
            raise ValidationError("Login is missing login_hint")
        if client_id != consumer.client_id or deployment_id != consumer.deployment_id:
            raise ValidationError("Login client_id or deployment_id does not match consumer")
        if params.get("target_link_uri") != self.settings.launch_url:
            log_lti(logger, "Login rejected: target_link_uri %s", params.get("target_link_uri"))
            raise ValidationError(
                f"Login target_link_uri must be {self.settings.launch_url}"
            )
        if not consumer.auth_url or not consumer.keyset_url or not consumer.platform_id:
            raise ConfigurationError(f"Consumer {consumer.name} is missing LTI 1.3 endpoints")

        state = self.tokens.token()
        nonce = self.tokens.token()
        await self.storage.add_login(
            key=consumer.key,
            state=state,
            nonce=nonce,
            iss=consumer.platform_id,
            client_id=consumer.client_id,
            keyset_url=consumer.keyset_url,
        )

        form = {
            "scope": "openid",
            "response_type": "id_token",
            "client_id": consumer.client_id,
            "redirect_uri": self.settings.launch_url,
            "login_hint": params["login_hint"],
            "state": state,
            "response_mode": "form_post",
            "nonce": nonce,
            "prompt": "none",
        }
        if params.get("lti_message_hint"):
            form["lti_message_hint"] = params["lti_message_hint"]

        log_lti(logger, "Login accepted for consumer %s", consumer.name)
        return {"form": form, "url": consumer.auth_url, "name": consumer.name}

    async def fetch_jwks(self, keyset_url: str) -> dict:
        try:
            async with outbound(self.http_client, self.settings.http_timeout) as client:
                response = await client.get(keyset_url)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Unable to fetch JWKS from %s: %s", keyset_url, e)
            raise UpstreamError(f"Unable to fetch platform keys: {e}") from e

    async def verify_launch(self, body: Mapping[str, str]) -> dict:
        """
        Verify the id_token posted back after login.

        The pending login is deleted before any other check so a state value
        can never be replayed.

        Returns:
            The token claims, with ``key`` set to the consumer key

        Raises:
            ValidationError: Missing fields, wrong message type or version
            ReplayError: Unknown or already used state
            TrustError: Bad signature, audience, issuer, expiry or nonce
        """
        state = body.get("state")
        id_token = body.get("id_token")
        if not state or not id_token:
            raise ValidationError("Launch requires state and id_token")

        login = await self.storage.pop_login(state)
        if login is None:
            log_lti(logger, "Launch rejected: state %s not found", state)
            raise ReplayError("Login state not found")

        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise ValidationError(f"Malformed id_token: {e}") from e

        kid = header.get("kid")
        jwks = await self.fetch_jwks(login.keyset_url)
        try:
            keyset = jwt.PyJWKSet.from_dict(jwks)
        except jwt.PyJWKSetError as e:
            raise TrustError(f"Platform keyset is unusable: {e}") from e
        signing_key = next((k for k in keyset.keys if k.key_id == kid), None)
        if signing_key is None:
            log_lti(logger, "Launch rejected: no key %s at %s", kid, login.keyset_url)
            raise TrustError(f"No platform key matches kid {kid}")

        try:
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=login.client_id,
                issuer=login.iss,
                options={"require": ["exp"]},
            )
        except jwt.InvalidTokenError as e:
            log_lti(logger, "Launch rejected: %s", e)
            raise TrustError(f"Invalid id_token: {e}") from e

        if claims.get("nonce") != login.nonce:
            log_lti(logger, "Launch rejected: nonce mismatch for state %s", state)
            raise TrustError("id_token nonce does not match login")

        message_type = claims.get(LTI_CLAIM + "message_type")
        if message_type not in (MESSAGE_RESOURCE_LINK, MESSAGE_DEEP_LINKING):
            raise ValidationError(f"Unsupported LTI message type {message_type}")
        version = claims.get(LTI_CLAIM + "version")
        if version != LTI_VERSION:
            raise ValidationError(f"Unsupported LTI version {version}")

        claims["key"] = login.key
        return claims

    # ========================================================================
    # Tool-signed JWTs
    # ========================================================================

    async def create_tool_token(self, consumer_key: str, claims: Mapping[str, Any]) -> str:
        """Sign ``claims`` with the consumer's private key (RS256, one hour)."""
        private_pem = await self.storage.get_consumer_private_key(consumer_key)
        if not private_pem:
            raise ConfigurationError(f"No private key for consumer key {consumer_key}")
        now = int(self.clock())
        payload = {"iat": now, "exp": now + TOKEN_LIFETIME, **claims}
        return jwt.encode(payload, private_pem, algorithm="RS256", headers={"kid": consumer_key})

    def deep_link_form(self, token: str, return_url: str) -> str:
        return auto_submit_form(return_url, {"JWT": token}, title="LTI Deep Link")

    async def jwks(self) -> dict:
        """Public keys of every consumer, as a JWKS document."""
        keys = await self.storage.list_consumer_public_keys()
        return {"keys": [public_jwk(public_pem, key) for key, public_pem in keys]}

    # ========================================================================
    # Assignment and Grade Services
    # ========================================================================

    async def get_access_token(self, consumer_key: str, scopes: str | list[str]) -> dict | None:
        """
        Obtain an OAuth2 access token with a signed client assertion.

        Returns:
            The token response, or None when the consumer is not set up for
            LTI 1.3 or the platform refuses the grant
        """
        consumer = await self.storage.get_consumer_by_key(consumer_key)
        if consumer is None or not consumer.lti13:
            log_lti(logger, "No LTI 1.3 consumer for key %s", consumer_key)
            return None
        if not consumer.client_id or not consumer.token_url or not consumer.platform_id:
            log_lti(logger, "Consumer %s is missing client_id, token_url or platform_id", consumer.name)
            return None

        scope = scopes if isinstance(scopes, str) else " ".join(scopes)
        try:
            assertion = await self.create_tool_token(
                consumer.key,
                {
                    "sub": consumer.client_id,
                    "iss": consumer.client_id,
                    "aud": consumer.token_url,
                    "jti": self.tokens.token(),
                },
            )
            async with outbound(self.http_client, self.settings.http_timeout) as client:
                response = await client.post(
                    consumer.token_url,
                    data={
                        "grant_type": "client_credentials",
                        "client_assertion_type": CLIENT_ASSERTION_TYPE,
                        "client_assertion": assertion,
                        "scope": scope,
                    },
                )
                response.raise_for_status()
                token = response.json()
        except (ConfigurationError, httpx.HTTPError, ValueError) as e:
            log_lti(logger, "Access token request for %s failed: %s", consumer.name, e)
            return None

        if not isinstance(token, dict) or not token.get("access_token"):
            log_lti(logger, "Access token response for %s has no access_token", consumer.name)
            return None
        return token

    async def post_ags_grade(
        self, user_sub: str, score: float, consumer_key: str, lineitem_url: str
    ) -> bool:
        """
        Publish a score to an AGS line item.

        Returns:
            True when the platform accepted the score

        Raises:
            UpstreamError: No access token, transport failure or a non-200 reply
        """
        token = await self.get_access_token(consumer_key, AGS_SCORE_SCOPE)
        if token is None:
            raise UpstreamError(f"Unable to obtain an AGS access token for {consumer_key}")

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scoreGiven": score,
            "scoreMaximum": 1.0,
            "activityProgress": "Submitted",
            "gradingProgress": "FullyGraded",
            "userId": user_sub,
        }
        url = scores_url(lineitem_url)
        try:
            async with outbound(self.http_client, self.settings.http_timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={
                        "Authorization": f"{token.get('token_type', 'Bearer')} {token['access_token']}",
                        "Content-Type": "application/vnd.ims.lis.v1.score+json",
                    },
                )
        except httpx.HTTPError as e:
            logger.error("AGS score post to %s failed: %s", url, e)
            raise UpstreamError(f"AGS score post failed: {e}") from e

        if response.status_code != 200:
            logger.error("AGS score post to %s rejected: %s %s", url, response.status_code, response.text)
            raise UpstreamError(
                f"AGS score post rejected with status {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        log_lti(logger, "Posted AGS score %s for %s to %s", score, user_sub, url)
        return True

    # ========================================================================
    # Dynamic registration
    # ========================================================================

    async def get_lms_details(
        self, openid_configuration: str | None, registration_token: str | None = None
    ) -> dict | None:
        """
        Fetch and check a platform's OpenID configuration.

        Returns:
            The configuration document, or None if it is unreachable or incomplete
        """
        if not openid_configuration:
            log_lti(logger, "No OpenID configuration URL provided")
            return None

        headers = {"Authorization": f"Bearer {registration_token}"} if registration_token else {}
        try:
            async with outbound(self.http_client, self.settings.http_timeout) as client:
                response = await client.get(openid_configuration, headers=headers)
                response.raise_for_status()
                details = response.json()
        except (httpx.HTTPError, ValueError) as e:
            log_lti(logger, "Error getting LMS details: %s", e)
            return None

        if not isinstance(details, dict):
            log_lti(logger, "OpenID configuration is not a JSON object")
            return None
        for field in ("registration_endpoint", "issuer"):
            if not details.get(field):
                log_lti(logger, "OpenID configuration has no %s", field)
                return None
        if not details["registration_endpoint"].startswith(details["issuer"]):
            log_lti(logger, "Registration endpoint does not match issuer")
            return None
        for field in ("authorization_endpoint", "token_endpoint", "jwks_uri"):
            if not details.get(field):
                log_lti(logger, "OpenID configuration has no %s", field)
                return None

        platform = details.get(PLATFORM_CONFIGURATION)
        if not isinstance(platform, dict):
            log_lti(logger, "OpenID configuration has no LTI platform configuration")
            return None
        for field in ("product_family_code", "version"):
            if not platform.get(field):
                log_lti(logger, "LTI platform configuration has no %s", field)
                return None
        return details

    async def send_registration(
        self,
        config: Mapping[str, Any],
        registration_endpoint: str,
        consumer: Consumer,
        registration_token: str | None,
    ) -> Consumer:
        """
        POST the tool configuration and record the issued client and deployment ids.

        Raises:
            UpstreamError: Transport failure or a non-2xx reply
        """
        headers = {"Authorization": f"Bearer {registration_token}"} if registration_token else {}
        try:
            async with outbound(self.http_client, self.settings.http_timeout) as client:
                response = await client.post(registration_endpoint, json=dict(config), headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Registration request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = response.text
        if not response.is_success:
            raise UpstreamError(
                f"Registration rejected with status {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        if not isinstance(body, dict) or not body.get("client_id"):
            raise UpstreamError("Registration response has no client_id", body=body)

        tool_config = body.get(TOOL_CONFIGURATION) or {}
        return await self.storage.update_consumer_fields(
            consumer.id,
            client_id=body["client_id"],
            deployment_id=tool_config.get("deployment_id"),
        )
