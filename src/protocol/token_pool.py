"""Token movement capability attached to each pool.

The ledger never moves tokens itself.  When a withdraw or borrow commits it
asks the pool's ``TokenPool`` to send the underlying and forwards whatever
opaque bytes the variant returns (empty for a local transfer, a bridge
message for a cross-chain burn-and-mint).
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Protocol

logger = logging.getLogger(__name__)


class TokenPool(ABC):
    """Sends a pool's underlying token to a recipient."""

    def __init__(self, pool_id: str) -> None:
        self.pool_id = pool_id

    @abstractmethod
    def send_token(self, recipient: str, amount: int) -> bytes:
        """Send *amount* underlying to *recipient*; return bridging metadata."""


class DirectTokenPool(TokenPool):
    """Underlying held locally; sending needs no forwarded metadata."""

    def __init__(self, pool_id: str) -> None:
        super().__init__(pool_id)
        self.sent: list[tuple[str, int]] = []

    def send_token(self, recipient: str, amount: int) -> bytes:
        self.sent.append((recipient, amount))
        logger.debug("Direct send pool=%s recipient=%s amount=%d", self.pool_id, recipient, amount)
        return b""


class BridgeAdapter(Protocol):
    """Cross-chain adapter used by bridged pools."""

    def encode_send(self, token: str, recipient: str, amount: int) -> bytes: ...


class JsonBridgeAdapter:
    """Adapter encoding the send as a JSON message for a spoke chain."""

    def __init__(self, chain_id: int) -> None:
        self.chain_id = chain_id

    def encode_send(self, token: str, recipient: str, amount: int) -> bytes:
        payload = {"chain_id": self.chain_id, "token": token, "recipient": recipient, "amount": str(amount)}
        return json.dumps(payload, sort_keys=True).encode()


class BridgedTokenPool(TokenPool):
    """Underlying is burned here and minted on another chain via *adapter*."""

    def __init__(self, pool_id: str, token: str, adapter: BridgeAdapter) -> None:
        super().__init__(pool_id)
        self.token = token
        self.adapter = adapter

    def send_token(self, recipient: str, amount: int) -> bytes:
        message = self.adapter.encode_send(self.token, recipient, amount)
        logger.debug("Bridged send pool=%s recipient=%s amount=%d", self.pool_id, recipient, amount)
        return message
