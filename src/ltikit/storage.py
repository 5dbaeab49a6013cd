"""
SQL-backed storage for consumers, providers and protocol state.

Every public coroutine runs in its own transaction.  Nonce and login-state
inserts rely on the primary key to reject duplicates atomically, so two
concurrent requests carrying the same nonce cannot both succeed.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import RecordNotFoundError, ValidationError
from .keys import DEFAULT_KEY_SIZE, TokenSource, generate_keypair
from .models import (
    Consumer,
    ConsumerCreate,
    ConsumerKeyModel,
    ConsumerLogin,
    ConsumerLoginModel,
    ConsumerModel,
    ConsumerUpdate,
    OauthNonceModel,
    Provider,
    ProviderCreate,
    ProviderKeyModel,
    ProviderModel,
    ProviderUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)


class LTIStorage:
    """Persistence for every record the LTI engines read or write."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tokens: TokenSource | None = None,
        key_size: int = DEFAULT_KEY_SIZE,
    ):
        self._session_factory = session_factory
        self.tokens = tokens or TokenSource()
        self._key_size = key_size

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ========================================================================
    # OAuth nonces
    # ========================================================================

    async def nonce_exists(self, key: str, nonce: str) -> bool:
        async with self._session_factory() as session:
            row = await session.get(OauthNonceModel, (key, nonce))
            return row is not None

    async def add_nonce(self, key: str, nonce: str, created_at: datetime | None = None) -> bool:
        """
        Record a consumed nonce.

        Returns:
            True if stored, False if ``(key, nonce)`` was already present
        """
        try:
            async with self._transaction() as session:
                session.add(
                    OauthNonceModel(key=key, nonce=nonce, created_at=created_at or utcnow())
                )
        except IntegrityError:
            return False
        return True

    # ========================================================================
    # LTI 1.3 logins
    # ========================================================================

    async def add_login(
        self,
        key: str,
        state: str,
        nonce: str,
        iss: str,
        client_id: str,
        keyset_url: str,
        created_at: datetime | None = None,
    ) -> None:
        """Persist a pending login. A duplicate ``state`` raises ValidationError."""
        try:
            async with self._transaction() as session:
                session.add(
                    ConsumerLoginModel(
                        key=key,
                        state=state,
                        nonce=nonce,
                        iss=iss,
                        client_id=client_id,
                        keyset_url=keyset_url,
                        created_at=created_at or utcnow(),
                    )
                )
        except IntegrityError as e:
            raise ValidationError(f"Login state {state} already exists") from e

    async def pop_login(self, state: str) -> ConsumerLogin | None:
        """
        Fetch and delete the pending login for ``state``.

        Only one caller can win the delete, so a login is never consumed twice.
        """
        async with self._transaction() as session:
            result = await session.execute(
                select(ConsumerLoginModel).where(ConsumerLoginModel.state == state)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            login = ConsumerLogin.model_validate(row)
            deleted = await session.execute(
                delete(ConsumerLoginModel).where(ConsumerLoginModel.state == state)
            )
            if deleted.rowcount == 0:
                return None
            return login

    async def sweep_expired(self, cutoff: datetime) -> tuple[int, int]:
        """
        Delete nonces and logins created before ``cutoff``.

        Returns:
            ``(nonces_deleted, logins_deleted)``
        """
        async with self._transaction() as session:
            nonces = await session.execute(
                delete(OauthNonceModel).where(OauthNonceModel.created_at < cutoff)
            )
            logins = await session.execute(
                delete(ConsumerLoginModel).where(ConsumerLoginModel.created_at < cutoff)
            )
            return nonces.rowcount or 0, logins.rowcount or 0

    # ========================================================================
    # Consumers
    # ========================================================================

    async def list_consumers(self) -> list[Consumer]:
        async with self._session_factory() as session:
            result = await session.execute(select(ConsumerModel).order_by(ConsumerModel.id))
            return [Consumer.model_validate(row) for row in result.scalars().all()]

    async def get_consumer(self, consumer_id: int) -> Consumer | None:
        async with self._session_factory() as session:
            row = await session.get(ConsumerModel, consumer_id)
            return Consumer.model_validate(row) if row else None

    async def get_consumer_by_key(self, key: str) -> Consumer | None:
        async with self._session_factory() as session:
            result = await session.execute(select(ConsumerModel).where(ConsumerModel.key == key))
            row = result.scalar_one_or_none()
            return Consumer.model_validate(row) if row else None

    async def find_lti13_consumer(self, client_id: str, deployment_id: str) -> Consumer | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConsumerModel).where(
                    ConsumerModel.client_id == client_id,
                    ConsumerModel.deployment_id == deployment_id,
                )
            )
            row = result.scalars().first()
            return Consumer.model_validate(row) if row else None

    async def create_consumer(self, data: ConsumerCreate) -> tuple[Consumer, str]:
        """
        Create a consumer together with its secret and RSA keypair.

        Args:
            data: Consumer fields; ``key`` and ``secret`` are generated when omitted

        Returns:
            The stored consumer and its OAuth secret

        Raises:
            ValidationError: If the name or key is already taken
        """
        key = data.key or self.tokens.token()
        secret = data.secret or self.tokens.token(24)
        public_pem, private_pem = await asyncio.to_thread(generate_keypair, self._key_size)

        fields = data.model_dump(exclude={"key", "secret"})
        try:
            async with self._transaction() as session:
                row = ConsumerModel(key=key, **fields)
                session.add(row)
                session.add(
                    ConsumerKeyModel(key=key, secret=secret, public=public_pem, private=private_pem)
                )
                await session.flush()
                await session.refresh(row)
                consumer = Consumer.model_validate(row)
        except IntegrityError as e:
            raise ValidationError(f"Consumer {data.name!r} or key {key!r} already exists") from e

        logger.info("Created consumer %s (%s)", consumer.id, consumer.name)
        return consumer, secret

    async def update_consumer(self, consumer_id: int, data: ConsumerUpdate) -> Consumer:
        return await self.update_consumer_fields(consumer_id, **data.model_dump(exclude_unset=True))

    async def update_consumer_fields(self, consumer_id: int, **fields) -> Consumer:
        """Set arbitrary consumer columns (registration ids, observed tc_* values)."""
        try:
            async with self._transaction() as session:
                row = await session.get(ConsumerModel, consumer_id)
                if row is None:
                    raise RecordNotFoundError(f"Consumer {consumer_id} not found")
                for name, value in fields.items():
                    setattr(row, name, value)
                await session.flush()
                await session.refresh(row)
                return Consumer.model_validate(row)
        except IntegrityError as e:
            raise ValidationError(f"Consumer update conflicts with an existing consumer: {e.orig}") from e

    async def delete_consumer(self, consumer_id: int) -> None:
        async with self._transaction() as session:
            row = await session.get(ConsumerModel, consumer_id)
            if row is None:
                raise RecordNotFoundError(f"Consumer {consumer_id} not found")
            await session.execute(delete(ConsumerKeyModel).where(ConsumerKeyModel.key == row.key))
            await session.delete(row)
        logger.info("Deleted consumer %s", consumer_id)

    async def get_consumer_secret(self, key: str) -> str | None:
        async with self._session_factory() as session:
            row = await session.get(ConsumerKeyModel, key)
            return row.secret if row else None

    async def get_consumer_private_key(self, key: str) -> str | None:
        async with self._session_factory() as session:
            row = await session.get(ConsumerKeyModel, key)
            return row.private if row else None

    async def list_consumer_public_keys(self) -> list[tuple[str, str]]:
        """``(key, public_pem)`` for every consumer key that has a keypair."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConsumerKeyModel.key, ConsumerKeyModel.public)
                .where(ConsumerKeyModel.public.is_not(None))
                .order_by(ConsumerKeyModel.key)
            )
            return [(key, public) for key, public in result.all()]

    async def rotate_consumer_key(
        self, consumer_id: int, secret: str | None = None
    ) -> tuple[Consumer, str]:
        """
        Replace a consumer's key, secret and keypair in one transaction.

        Returns:
            The updated consumer and its new secret
        """
        new_key = self.tokens.token()
        new_secret = secret or self.tokens.token(24)
        public_pem, private_pem = await asyncio.to_thread(generate_keypair, self._key_size)

        async with self._transaction() as session:
            row = await session.get(ConsumerModel, consumer_id)
            if row is None:
                raise RecordNotFoundError(f"Consumer {consumer_id} not found")
            old_key = row.key
            await session.execute(delete(ConsumerKeyModel).where(ConsumerKeyModel.key == old_key))
            session.add(
                ConsumerKeyModel(
                    key=new_key, secret=new_secret, public=public_pem, private=private_pem
                )
            )
            row.key = new_key
            await session.flush()
            await session.refresh(row)
            consumer = Consumer.model_validate(row)

        logger.info("Rotated key for consumer %s", consumer_id)
        return consumer, new_secret

    # ========================================================================
    # Providers
    # ========================================================================

    async def list_providers(self) -> list[Provider]:
        async with self._session_factory() as session:
            result = await session.execute(select(ProviderModel).order_by(ProviderModel.id))
            return [Provider.model_validate(row) for row in result.scalars().all()]

    async def get_provider(self, provider_id: int) -> Provider | None:
        async with self._session_factory() as session:
            row = await session.get(ProviderModel, provider_id)
            return Provider.model_validate(row) if row else None

    async def get_provider_by_key(self, key: str) -> Provider | None:
        async with self._session_factory() as session:
            result = await session.execute(select(ProviderModel).where(ProviderModel.key == key))
            row = result.scalar_one_or_none()
            return Provider.model_validate(row) if row else None

    async def create_provider(self, data: ProviderCreate) -> tuple[Provider, str]:
        """Create a provider and its secret. Returns the provider and secret."""
        key = data.key or self.tokens.token()
        secret = data.secret or self.tokens.token(24)
        fields = data.model_dump(exclude={"key", "secret"})
        try:
            async with self._transaction() as session:
                row = ProviderModel(key=key, **fields)
                session.add(row)
                session.add(ProviderKeyModel(key=key, secret=secret))
                await session.flush()
                await session.refresh(row)
                provider = Provider.model_validate(row)
        except IntegrityError as e:
            raise ValidationError(f"Provider {data.name!r} or key {key!r} already exists") from e

        logger.info("Created provider %s (%s)", provider.id, provider.name)
        return provider, secret

    async def update_provider(self, provider_id: int, data: ProviderUpdate) -> Provider:
        """Update a provider; a changed key or secret replaces its key row."""
        fields = data.model_dump(exclude_unset=True)
        new_key = fields.pop("key", None)
        new_secret = fields.pop("secret", None)
        try:
            async with self._transaction() as session:
                row = await session.get(ProviderModel, provider_id)
                if row is None:
                    raise RecordNotFoundError(f"Provider {provider_id} not found")
                for name, value in fields.items():
                    setattr(row, name, value)

                if (new_key and new_key != row.key) or new_secret:
                    key_row = await session.get(ProviderKeyModel, row.key)
                    secret = new_secret or (key_row.secret if key_row else self.tokens.token(24))
                    if key_row is not None:
                        await session.delete(key_row)
                        await session.flush()
                    row.key = new_key or row.key
                    session.add(ProviderKeyModel(key=row.key, secret=secret))

                await session.flush()
                await session.refresh(row)
                return Provider.model_validate(row)
        except IntegrityError as e:
            raise ValidationError(f"Provider update conflicts with an existing provider: {e.orig}") from e

    async def delete_provider(self, provider_id: int) -> None:
        async with self._transaction() as session:
            row = await session.get(ProviderModel, provider_id)
            if row is None:
                raise RecordNotFoundError(f"Provider {provider_id} not found")
            await session.execute(delete(ProviderKeyModel).where(ProviderKeyModel.key == row.key))
            await session.delete(row)
        logger.info("Deleted provider %s", provider_id)

    async def get_provider_secret(self, key: str) -> str | None:
        async with self._session_factory() as session:
            row = await session.get(ProviderKeyModel, key)
            return row.secret if row else None
