"""
LTI 1.0/1.1 OAuth 1.0 engine.

Signs and verifies HMAC-SHA1 requests as described in RFC 5849, both for
form-encoded launches and for header-signed Basic Outcomes XML bodies, and
posts Basic Outcomes grades back to a platform.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from urllib.parse import urlsplit

import httpx
from oauthlib.common import safe_string_equals, urldecode
from oauthlib.oauth1 import Client
from oauthlib.oauth1.rfc5849 import signature, utils

from . import outcomes
from .errors import ConfigurationError, ReplayError, TrustError, UpstreamError, ValidationError
from .keys import TokenSource
from .log import log_lti
from .settings import Settings
from .storage import LTIStorage
from .transport import outbound

logger = logging.getLogger(__name__)

SIGNATURE_METHOD = "HMAC-SHA1"

# Accepted clock skew, in seconds
MAX_FUTURE_SKEW = 60
MAX_AGE = 600


def body_hash(body: bytes | str) -> str:
    """Base64 SHA-1 of a request body, as carried in ``oauth_body_hash``."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return base64.b64encode(hashlib.sha1(body).digest()).decode("ascii")


class OAuth1Engine:
    """OAuth 1.0 signing, verification and Basic Outcomes passback."""

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
    # Signing
    # ========================================================================

    def sign(
        self,
        method: str,
        http_method: str,
        base_uri: str,
        params: Mapping[str, str | None],
        secret: str,
    ) -> str:
        """
        Compute an OAuth 1.0 signature.

        Args:
            method: Signature method; only ``HMAC-SHA1`` is supported
            http_method: HTTP verb of the signed request
            base_uri: Request URL, absolute or relative to ``domain_name``
            params: Request parameters; ``oauth_signature`` is ignored
            secret: Consumer shared secret

        Returns:
            Base64 signature

        Raises:
            ConfigurationError: If ``method`` is not HMAC-SHA1
        """
        if method != SIGNATURE_METHOD:
            log_lti(logger, "Unsupported OAuth signature method %s", method)
            raise ConfigurationError(f"Unsupported OAuth signature method {method}")

        url = self.settings.url_for(base_uri)
        pairs = [
            (name, "" if value is None else str(value))
            for name, value in params.items()
            if name != "oauth_signature"
        ]
        query = urlsplit(url).query
        if query:
            pairs.extend(urldecode(query))

        base_string = signature.signature_base_string(
            http_method.upper(),
            signature.base_string_uri(url),
            signature.normalize_parameters(pairs),
        )
        client = Client(params.get("oauth_consumer_key") or "", client_secret=secret)
        return signature.sign_hmac_sha1_with_client(base_string, client)

    def _check_timestamp(self, timestamp: str | None) -> None:
        if not timestamp:
            raise ValidationError("Missing OAuth timestamp")
        try:
            ts = int(timestamp)
        except ValueError as e:
            raise ValidationError(f"Invalid OAuth timestamp {timestamp}") from e
        now = int(self.clock())
        if now + MAX_FUTURE_SKEW < ts:
            log_lti(logger, "OAuth timestamp %s is in the future (now %s)", ts, now)
            raise ValidationError("OAuth timestamp is too far in the future")
        if now > ts + MAX_AGE:
            log_lti(logger, "OAuth timestamp %s has expired (now %s)", ts, now)
            raise ValidationError("OAuth timestamp has expired")

    async def _check_nonce(self, key: str, nonce: str | None) -> None:
        if not nonce:
            raise ValidationError("Missing OAuth nonce")
        if await self.storage.nonce_exists(key, nonce):
            log_lti(logger, "Duplicate OAuth nonce %s for key %s", nonce, key)
            raise ReplayError("Duplicate OAuth nonce")

    async def _store_nonce(self, key: str, nonce: str) -> None:
        if not await self.storage.add_nonce(key, nonce):
            log_lti(logger, "Lost race storing OAuth nonce %s for key %s", nonce, key)
            raise ReplayError("Duplicate OAuth nonce")

    # ========================================================================
    # Launch validation
    # ========================================================================

    async def validate_launch(
        self, params: Mapping[str, str], http_method: str, url: str
    ) -> dict[str, str]:
        """
        Validate a form-encoded LTI 1.0 launch.

        Args:
            params: Decoded form body
            http_method: HTTP verb the launch arrived with
            url: Request URL, absolute or relative to ``domain_name``

        Returns:
            The launch parameters without ``oauth_signature``

        Raises:
            ValidationError: Missing or malformed launch fields
            ReplayError: The nonce was already used
            TrustError: Unknown consumer key or bad signature
        """
        expected = {
            "lti_message_type": "basic-lti-launch-request",
            "lti_version": "LTI-1p0",
            "oauth_version": "1.0",
            "oauth_signature_method": SIGNATURE_METHOD,
        }
        for name, value in expected.items():
            if params.get(name) != value:
                log_lti(logger, "Launch rejected: %s=%r", name, params.get(name))
                raise ValidationError(f"Invalid {name}: expected {value}")

        key = params.get("oauth_consumer_key")
        if not key:
            raise ValidationError("Missing oauth_consumer_key")
        if not params.get("oauth_signature"):
            raise ValidationError("Missing oauth_signature")
        if params.get("oauth_callback") != "about:blank":
            raise ValidationError("Invalid oauth_callback: expected about:blank")

        self._check_timestamp(params.get("oauth_timestamp"))
        nonce = params.get("oauth_nonce")
        await self._check_nonce(key, nonce)

        secret = await self.storage.get_consumer_secret(key)
        if secret is None:
            log_lti(logger, "Launch rejected: unknown consumer key %s", key)
            raise TrustError(f"Unknown consumer key {key}")

        signed = {name: value for name, value in params.items() if name != "oauth_signature"}
        computed = self.sign(SIGNATURE_METHOD, http_method, url, signed, secret)
        if not safe_string_equals(computed, params["oauth_signature"]):
            log_lti(logger, "Launch rejected: signature mismatch for key %s", key)
            raise TrustError("OAuth signature does not match")

        await self._store_nonce(key, nonce)
        return signed

    # ========================================================================
    # Header-signed bodies
    # ========================================================================

    async def validate_body_signature(
        self, headers: Mapping[str, str], raw_body: bytes, url: str
    ) -> tuple[str, str]:
        """
        Validate a header-signed Basic Outcomes request from a provider.

        Returns:
            ``(provider_key, secret)``

        Raises:
            ValidationError: Missing or malformed header fields or body hash
            ReplayError: The nonce was already used
            TrustError: Unknown provider key or bad signature
        """
        header = next((v for k, v in headers.items() if k.lower() == "authorization"), None)
        if not header or not header.startswith("OAuth "):
            raise ValidationError("Missing or invalid OAuth Authorization header")
        try:
            oauth = dict(
                signature.collect_parameters(
                    headers={"Authorization": header}, exclude_oauth_signature=False
                )
            )
        except ValueError as e:
            raise ValidationError("Malformed OAuth Authorization header") from e

        key = oauth.get("oauth_consumer_key")
        if not key:
            raise ValidationError("Missing OAuth consumer key")
        if oauth.get("oauth_version") != "1.0":
            raise ValidationError(f"Invalid OAuth version {oauth.get('oauth_version')}")
        if not oauth.get("oauth_signature_method"):
            raise ValidationError("Missing OAuth signature method")
        if oauth["oauth_signature_method"] != SIGNATURE_METHOD:
            raise ValidationError(
                f"Unsupported OAuth signature method {oauth['oauth_signature_method']}"
            )
        if not oauth.get("oauth_signature"):
            raise ValidationError("Missing OAuth signature")

        self._check_timestamp(oauth.get("oauth_timestamp"))
        nonce = oauth.get("oauth_nonce")
        await self._check_nonce(key, nonce)

        if not safe_string_equals(oauth.get("oauth_body_hash", ""), body_hash(raw_body)):
            log_lti(logger, "Body hash mismatch for key %s", key)
            raise ValidationError("OAuth body hash does not match")

        secret = await self.storage.get_provider_secret(key)
        if secret is None:
            log_lti(logger, "Unknown provider key %s", key)
            raise TrustError(f"Unknown provider key {key}")

        computed = self.sign(SIGNATURE_METHOD, "POST", url, oauth, secret)
        if not safe_string_equals(computed, oauth["oauth_signature"]):
            log_lti(logger, "Body signature mismatch for key %s", key)
            raise TrustError("OAuth signature does not match")

        await self._store_nonce(key, nonce)
        return key, secret

    def sign_body(self, body: bytes | str, key: str, secret: str, url: str) -> str:
        """
        Build the ``Authorization`` header for a header-signed POST.

        Returns:
            ``OAuth k1="v1",k2="v2",...``
        """
        oauth = {
            "oauth_consumer_key": key,
            "oauth_signature_method": SIGNATURE_METHOD,
            "oauth_version": "1.0",
            "oauth_body_hash": body_hash(body),
            "oauth_timestamp": str(int(self.clock())),
            "oauth_nonce": self.tokens.hex(),
        }
        oauth["oauth_signature"] = self.sign(SIGNATURE_METHOD, "POST", url, oauth, secret)
        return "OAuth " + ",".join(f'{name}="{utils.escape(value)}"' for name, value in oauth.items())

    # ========================================================================
    # Basic Outcomes passback
    # ========================================================================

    async def post_outcome(
        self, lms_grade_id: str, score: float, consumer_key: str, url: str
    ) -> bool:
        """
        Send a replaceResult grade to the platform's outcome service.

        Args:
            lms_grade_id: ``lis_result_sourcedid`` from the launch
            score: Grade in 0..1
            consumer_key: Consumer whose secret signs the request
            url: ``lis_outcome_service_url`` from the launch

        Returns:
            True when the platform acknowledged the grade

        Raises:
            TrustError: Unknown consumer key
            UpstreamError: Transport failure or a non-success response
        """
        secret = await self.storage.get_consumer_secret(consumer_key)
        if secret is None:
            raise TrustError(f"Unknown consumer key {consumer_key}")

        body = outcomes.build_replace_result_request(self.tokens.hex(), lms_grade_id, score)
        headers = {
            "Authorization": self.sign_body(body, consumer_key, secret, url),
            "Content-Type": "application/xml",
        }

        try:
            async with outbound(self.http_client, self.settings.http_timeout) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Basic Outcomes post to %s failed: %s", url, e)
            raise UpstreamError(f"Basic Outcomes post failed: {e}") from e

        code_major = ""
        description = ""
        if response.content:
            try:
                code_major, description = outcomes.parse_response(response.content)
            except ValidationError:
                log_lti(logger, "Unparseable Basic Outcomes response from %s", url)

        if response.status_code != 200 or code_major != "success":
            logger.error(
                "Basic Outcomes post to %s rejected: %s %s %s",
                url,
                response.status_code,
                code_major,
                description,
            )
            raise UpstreamError(
                f"Basic Outcomes post rejected: {code_major or response.status_code} {description}".strip(),
                status_code=response.status_code,
                body=response.text,
            )

        log_lti(logger, "Posted grade %s for %s to %s", score, lms_grade_id, url)
        return True
