"""FastAPI block server.

Exposes a Network over HTTP so that remote replicas can publish and
resolve log blocks with ``HTTPNetwork``.
"""

import logging
from typing import Any

from fastapi import Body, FastAPI, HTTPException

from ..errors import NetworkUnavailable, NotFound
from ..hashing import is_fingerprint
from ..network import Network

logger = logging.getLogger(__name__)


def create_app(network: Network) -> FastAPI:
    """Create the block server application.

    Args:
        network: Network whose blocks are served (usually a LocalNetwork).

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="cubesat block server",
        description="Content-addressed block exchange for cubesat replicas",
        version="0.1.0",
    )

    app.state.network = network

    def _check(fingerprint: str) -> None:
        if not is_fingerprint(fingerprint):
            raise HTTPException(status_code=400, detail="Malformed fingerprint")

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/blocks/{fingerprint}")
    async def get_block(fingerprint: str) -> dict[str, Any]:
        """Fetch a block by fingerprint."""
        _check(fingerprint)
        try:
            return await network.get_block(fingerprint)
        except NotFound:
            raise HTTPException(status_code=404, detail="Block not found")
        except NetworkUnavailable as e:
            logger.error(f"Upstream network failure: {e}")
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/api/blocks/{fingerprint}/exists")
    async def has_block(fingerprint: str) -> dict[str, bool]:
        _check(fingerprint)
        return {"exists": await network.has_block(fingerprint)}

    @app.post("/api/blocks")
    async def put_block(block: dict[str, Any] = Body(...)) -> dict[str, str]:
        """Store a block; the response carries its fingerprint."""
        fingerprint = await network.put_block(block)
        logger.debug(f"Stored block {fingerprint}")
        return {"fingerprint": fingerprint}

    return app
