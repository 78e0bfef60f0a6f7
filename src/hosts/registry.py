"""
Ordered host adapter registry: input dispatch, public id parsing and cache keys.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Optional

import requests

from .adapters.base import BaseHostAdapter
from .adapters.imgur import ImgurAdapter
from .adapters.postimages import PostimagesAdapter
from .models import ParsedInput, RateLimitConfig
from .settings import DEFAULT_RATE_LIMIT

logger = logging.getLogger(__name__)

PREFIXED_PUBLIC_ID = re.compile(r"^([a-z0-9_-]+):(.*)$", re.IGNORECASE)


class HostRegistry:
    """
    Adapters in match-precedence order. The first one is the default
    (legacy) provider: its public ids and cache keys are never prefixed.

    Registration order is the only tie-break, so broad matchers such as
    bare-id shapes should be registered after the specific ones.
    """

    def __init__(self, adapters: Sequence[BaseHostAdapter]) -> None:
        if not adapters:
            raise ValueError("HostRegistry needs at least one adapter")
        ids = [adapter.id for adapter in adapters]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate adapter ids: {ids}")
        self._adapters = list(adapters)

    @property
    def adapters(self) -> list[BaseHostAdapter]:
        return list(self._adapters)

    @property
    def default_adapter(self) -> BaseHostAdapter:
        return self._adapters[0]

    def get_adapter(self, adapter_id: str) -> BaseHostAdapter | None:
        for adapter in self._adapters:
            if adapter.id == adapter_id:
                return adapter
        return None

    def resolve_input(self, raw: str) -> ParsedInput | None:
        for adapter in self._adapters:
            if adapter.match_input(raw):
                parsed = adapter.parse_input(raw)
                if parsed:
                    return parsed
        return self.default_adapter.parse_input(raw)

    def parse_public_id(self, public_id: str) -> ParsedInput | None:
        prefix_match = PREFIXED_PUBLIC_ID.match(public_id)
        if prefix_match:
            adapter_id, rest = prefix_match.groups()
            adapter = self.get_adapter(adapter_id)
            if adapter:
                parsed = adapter.parse_public_id(public_id)
                if parsed:
                    return parsed
                # Recognized prefix the adapter can't structure: keep the raw remainder
                return ParsedInput(provider_id=adapter_id, resource_id=rest, public_id=public_id)

        for adapter in self._adapters:
            parsed = adapter.parse_public_id(public_id)
            if parsed:
                return parsed

        return self.default_adapter.parse_public_id(public_id)

    def cache_key(self, adapter: BaseHostAdapter, resource_id: str) -> str:
        candidate = adapter.cache_key(resource_id)
        if adapter is self.default_adapter:
            return candidate
        prefix = f"{adapter.id}:"
        if candidate.startswith(prefix):
            return candidate
        return f"{prefix}{candidate}"

    def resource_id_from_cache_key(self, adapter: BaseHostAdapter, key: str) -> str:
        prefix = f"{adapter.id}:"
        return key[len(prefix):] if key.startswith(prefix) else key

    def to_public_id(self, adapter: BaseHostAdapter, resource_id: str) -> str:
        return adapter.to_public_id(resource_id)

    def get_rate_limit(self, adapter: BaseHostAdapter) -> RateLimitConfig:
        return adapter.config.rate_limit or DEFAULT_RATE_LIMIT


def build_registry(imgur_client_id: str, session: Optional[requests.Session] = None) -> HostRegistry:
    """Built-in hosts. Imgur goes first: it is the default provider."""
    registry = HostRegistry([
        ImgurAdapter(imgur_client_id, session=session),
        PostimagesAdapter(session=session),
    ])
    logger.debug(f"Registered hosts: {[a.id for a in registry.adapters]}")
    return registry
