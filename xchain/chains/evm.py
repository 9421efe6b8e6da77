"""
EVM log source for counter-chain monitoring.

Queries eth_getLogs for SecretRevealed events emitted by the escrow contract:

    event SecretRevealed(bytes32 indexed hashlock, bytes32 indexed secret)

Positions are block numbers; from_checkpoint maps to fromBlock.
"""

import logging
from typing import Any, List, Optional, Tuple

import httpx
from web3 import Web3

from ..core import BytesLike, to_bytes32
from ..errors import LedgerCallError

log = logging.getLogger(__name__)

SECRET_REVEALED_SIGNATURE = "SecretRevealed(bytes32,bytes32)"
SECRET_REVEALED_TOPIC = "0x" + bytes(Web3.keccak(text=SECRET_REVEALED_SIGNATURE)).hex()


class EVMLogSource:
    """
    JSON-RPC log reader.

    Args:
        rpc_url: Ethereum JSON-RPC URL
        escrow_address: Contract emitting SecretRevealed
        client: Optional httpx.Client (injected for tests)
    """

    def __init__(self, rpc_url: str, escrow_address: str,
                 client: Optional[httpx.Client] = None, timeout: float = 15.0):
        self.rpc_url = rpc_url
        self.escrow_address = escrow_address
        self._client = client or httpx.Client(timeout=timeout)
        self._request_id = 0

    def close(self):
        self._client.close()

    def _call_rpc(self, method: str, params: List = None) -> Any:
        """Make a JSON-RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": self._request_id,
        }

        try:
            response = self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            raise LedgerCallError(f"RPC timeout: {method}")
        except httpx.HTTPStatusError as e:
            raise LedgerCallError(f"RPC HTTP {e.response.status_code}: {method}")
        except httpx.HTTPError as e:
            raise LedgerCallError(f"RPC transport error: {e}")
        except ValueError as e:
            raise LedgerCallError(f"Invalid JSON response: {e}")

        if "error" in data:
            raise LedgerCallError(f"RPC error: {data['error']}")

        return data.get("result")

    def get_block_number(self) -> int:
        result = self._call_rpc("eth_blockNumber")
        return int(result, 16) if result else 0

    def get_logs_for_hashlock(self, hashlock: BytesLike,
                              from_checkpoint: int = 0) -> List[Tuple[bytes, int]]:
        """
        Secrets revealed for ``hashlock`` from block ``from_checkpoint`` on.

        Returns:
            [(secret, block_number), ...]
        """
        topic_hashlock = "0x" + to_bytes32(hashlock, "hashlock").hex()
        logs = self._call_rpc("eth_getLogs", [{
            "address": self.escrow_address,
            "fromBlock": hex(max(0, from_checkpoint)),
            "toBlock": "latest",
            "topics": [SECRET_REVEALED_TOPIC, topic_hashlock],
        }]) or []

        found = []
        for entry in logs:
            topics = entry.get("topics", [])
            if len(topics) < 3 or topics[1].lower() != topic_hashlock:
                continue
            try:
                secret = bytes.fromhex(topics[2][2:])
                block = int(entry.get("blockNumber") or "0x0", 16)
            except ValueError:
                log.warning(f"Skipping malformed log entry: {entry.get('transactionHash')}")
                continue
            if len(secret) != 32:
                continue
            found.append((secret, block))

        return found
