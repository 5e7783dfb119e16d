"""Contact context access.

The gate only reads business entities. A ContextProvider fetches a fresh
ContactContext; ContextCache keeps the last snapshot per contact and
refetches once it is older than ``max_context_age_minutes``. The cache holds
at most ``max_entries`` contacts and evicts the least recently used.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Protocol

from actiongate.config import ActionRelevanceConfig
from actiongate.models import ContactContext, utcnow

logger = logging.getLogger(__name__)


class ContextProvider(Protocol):
    """Read-only source of contact context."""

    async def get_context(
        self, contact_id: uuid.UUID, organization_id: uuid.UUID
    ) -> ContactContext: ...


class StaticContextProvider:
    """Serves contexts registered with :meth:`put`.

    Unknown contacts get an empty context, so every known-field criterion is
    undetermined rather than failing.
    """

    def __init__(self, contexts: list[ContactContext] | None = None) -> None:
        self._contexts: dict[uuid.UUID, ContactContext] = {}
        for context in contexts or []:
            self.put(context)

    def put(self, context: ContactContext) -> None:
        self._contexts[context.contact_id] = context

    async def get_context(
        self, contact_id: uuid.UUID, organization_id: uuid.UUID
    ) -> ContactContext:
        context = self._contexts.get(contact_id)
        if context is None:
            return ContactContext(contact_id=contact_id, organization_id=organization_id)
        return dataclasses.replace(context, retrieved_at=utcnow())


class ContextCache:
    def __init__(self, provider: ContextProvider, *, max_entries: int = 1024) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._provider = provider
        self._max_entries = max_entries
        self._cache: OrderedDict[uuid.UUID, ContactContext] = OrderedDict()

    def __len__(self) -> int:
        return len(self._cache)

    async def get(
        self,
        contact_id: uuid.UUID,
        organization_id: uuid.UUID,
        policy: ActionRelevanceConfig,
        *,
        now: datetime | None = None,
    ) -> ContactContext:
        now = now or utcnow()
        cached = self._cache.get(contact_id)
        if cached is not None and not cached.is_stale(policy.max_context_age_minutes, now):
            self._cache.move_to_end(contact_id)
            return cached
        context = await self._provider.get_context(contact_id, organization_id)
        if cached is not None:
            logger.debug("Refreshed stale context for contact %s", contact_id)
        self._cache[contact_id] = context
        self._cache.move_to_end(contact_id)
        while len(self._cache) > self._max_entries:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("Evicted cached context for contact %s", evicted)
        return context
