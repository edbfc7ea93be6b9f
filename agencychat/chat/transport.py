"""
Transport abstraction shared by the registry, presence and fan-out.
"""
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """A live bidirectional channel to one client."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, data: dict[str, Any]) -> None: ...


async def safe_send(transport: Transport, envelope: dict[str, Any]) -> bool:
    """Best-effort push. Closed or failing transports are skipped, never retried."""
    if not transport.is_open:
        return False
    try:
        await transport.send_json(envelope)
        return True
    except Exception as e:
        logger.debug(f"Push skipped on broken transport: {type(e).__name__}: {e}")
        return False
