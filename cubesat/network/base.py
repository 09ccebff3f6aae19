"""Abstract content-addressed block transport."""

from abc import ABC, abstractmethod
from typing import Any


class Network(ABC):
    """Resolves and stores JSON blocks by content fingerprint.

    A block's fingerprint is always ``hashing.content_hash(block)``, so any
    implementation can be swapped for another without changing identities.
    """

    @abstractmethod
    async def put_block(self, block: dict[str, Any]) -> str:
        """Store a block.

        Args:
            block: JSON-serializable mapping.

        Returns:
            The block's fingerprint.
        """
        pass

    @abstractmethod
    async def get_block(self, fingerprint: str) -> dict[str, Any]:
        """Fetch a block.

        Raises:
            NotFound: No block with that fingerprint.
            NetworkUnavailable: The transport failed.
        """
        pass

    @abstractmethod
    async def has_block(self, fingerprint: str) -> bool:
        """Check whether a block is available."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None
