from __future__ import annotations

from typing import Protocol


class ObjectStorage(Protocol):
    async def persist_remote_url(self, source_url: str, destination_prefix: str) -> str: ...


class PassthroughStorage:
    """Keeps provider URLs as they are; used when no bucket is configured."""

    async def persist_remote_url(self, source_url: str, destination_prefix: str) -> str:
        return source_url
