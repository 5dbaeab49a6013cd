"""
Toolkit assembly.

``LTIToolkit`` wires storage, both protocol engines, the controllers and
the expiration sweeper together around one ``Settings`` object.

Usage::

    toolkit = LTIToolkit.from_session_factory(
        get_session_factory(),
        handle_launch=lambda data, consumer, request: "/student",
    )
    await toolkit.start()
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .consumer import ConsumerController, ProviderGradeHandler
from .expiration import ExpirationSweeper
from .keys import TokenSource
from .launch import DeeplinkHandler, LaunchController, LaunchHandler
from .lti10 import OAuth1Engine
from .lti13 import OIDCEngine
from .models import Consumer
from .provider import ProviderController
from .register import RegistrationController
from .settings import Settings, get_settings
from .storage import LTIStorage


class LTIToolkit:
    """Everything a host application needs to act as an LTI tool or platform."""

    def __init__(
        self,
        storage: LTIStorage,
        settings: Settings | None = None,
        handle_launch: LaunchHandler | None = None,
        handle_deeplink: DeeplinkHandler | None = None,
        post_provider_grade: ProviderGradeHandler | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.storage = storage

        self.oauth1 = OAuth1Engine(storage, self.settings, http_client=http_client, clock=clock)
        self.oidc = OIDCEngine(storage, self.settings, http_client=http_client, clock=clock)

        self.launcher = LaunchController(
            storage, self.oauth1, self.oidc, handle_launch=handle_launch, handle_deeplink=handle_deeplink
        )
        self.provider = ProviderController(self.settings, self.oauth1, self.oidc)
        self.registration = RegistrationController(
            self.settings, storage, self.oidc, deep_linking=handle_deeplink is not None
        )
        self.consumer = ConsumerController(
            self.settings, self.oauth1, post_provider_grade=post_provider_grade
        )
        self.sweeper = ExpirationSweeper(
            storage,
            ttl_seconds=self.settings.nonce_ttl_seconds,
            interval_seconds=self.settings.sweep_interval_seconds,
        )

    @classmethod
    def from_session_factory(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        tokens: TokenSource | None = None,
        **kwargs: Any,
    ) -> LTIToolkit:
        settings = settings or get_settings()
        storage = LTIStorage(session_factory, tokens=tokens, key_size=settings.rsa_key_size)
        return cls(storage, settings=settings, **kwargs)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background expiration sweep."""
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()

    # ── Tool role ────────────────────────────────────────────────────

    async def login(self, params: Mapping[str, str]) -> dict:
        return await self.oidc.build_login_request(params)

    async def launch(
        self,
        body: Mapping[str, str],
        http_method: str = "POST",
        url: str = "",
        request: Any = None,
    ) -> Any:
        return await self.launcher.launch(body, http_method, url, request)

    async def jwks(self) -> dict:
        return await self.oidc.jwks()

    async def post_grade(
        self,
        consumer_key: str | None,
        grade_url: str | None,
        lms_grade_id: str | None,
        score: Any,
        user_lis13_id: str | None,
        debug: Mapping[str, str] | None = None,
    ) -> bool:
        return await self.provider.post_grade(
            consumer_key, grade_url, lms_grade_id, score, user_lis13_id, debug
        )

    async def create_deep_link(
        self, consumer: Consumer, return_url: str, resource_id: str, title: str
    ) -> str:
        return await self.provider.create_deep_link(consumer, return_url, resource_id, title)

    async def dynamic_registration(self, params: Mapping[str, str]) -> Consumer:
        return await self.registration.dynamic_registration(params)

    def lti10_config(self) -> str:
        return self.registration.lti10_config()

    # ── Platform role ────────────────────────────────────────────────

    def generate_launch_form(self, *args: Any, **kwargs: Any) -> dict[str, Any]:
        return self.consumer.generate_launch_form(*args, **kwargs)

    async def basic_outcomes(
        self, headers: Mapping[str, str], raw_body: bytes, url: str | None = None, request: Any = None
    ) -> bytes:
        return await self.consumer.basic_outcomes(headers, raw_body, url, request)
