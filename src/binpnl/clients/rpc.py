"""Lightweight JSON-RPC client for Solana nodes.

This module provides:
- `SolanaRPC`: an async client with sane timeouts/connection limits
- The three calls transaction preparation needs: latest blockhash, recent
  prioritization fees and transaction simulation

Transport failures are raised as `ChainUnavailableError`; a simulation the
node rejects is raised as `SimulationFailedError`.
"""

from __future__ import annotations

import base64
import itertools
import logging
from typing import Any

import httpx
from solders.hash import Hash
from solders.transaction import Transaction

from binpnl.core.config import ClientConfig
from binpnl.core.errors import ChainUnavailableError, SimulationFailedError
from binpnl.core.models import SimulationResult

logger = logging.getLogger(__name__)


class RPCError(ChainUnavailableError):
    """JSON-RPC level error object returned by the node."""

    def __init__(self, method: str, error: dict[str, Any]) -> None:
        self.code = error.get("code")
        super().__init__(f"RPC error in {method}: {self.code} {error.get('message')}")


class SolanaRPC:
    """Minimal async Solana RPC client.

    Parameters
    ----------
    url : str
        RPC endpoint URL.
    timeout_s : int
        Per-operation timeout in seconds (connect/read/write).
    max_connections : int
        Maximum concurrent connections to keep in the pool.
    commitment : str
        Commitment level sent with every read.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (tests use `httpx.MockTransport`).
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: int = 20,
        max_connections: int = 64,
        commitment: str = "confirmed",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.commitment = commitment
        self._ids = itertools.count(1)
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=timeout_s,
                read=timeout_s,
                write=timeout_s,
                pool=max(30, timeout_s * 3),
            ),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max(1, max_connections // 2),
            ),
            http2=True,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs: Any) -> SolanaRPC:
        return cls(config.rpc_url, timeout_s=config.timeout_s, max_connections=config.max_connections, **kwargs)

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = await self.client.post(self.url, json=payload)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            raise ChainUnavailableError(f"{method} failed", str(e)) from e
        except ValueError as e:
            raise ChainUnavailableError(f"{method} returned invalid JSON", str(e)) from e

        if "error" in data:
            raise RPCError(method, data["error"])
        return data.get("result")

    async def latest_blockhash(self) -> Hash:
        """Return the most recent blockhash."""
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def recent_prioritization_fees(self) -> list[int]:
        """Per-slot prioritization fees (micro-lamports per CU) for recent slots."""
        result = await self._call("getRecentPrioritizationFees", [])
        return [int(row.get("prioritizationFee") or 0) for row in result or []]

    async def simulate(self, transaction: Transaction) -> SimulationResult:
        """Simulate an unsigned transaction without signature verification."""
        encoded = base64.b64encode(bytes(transaction)).decode("ascii")
        config = {
            "encoding": "base64",
            "sigVerify": False,
            "replaceRecentBlockhash": True,
            "commitment": self.commitment,
        }
        try:
            result = await self._call("simulateTransaction", [encoded, config])
        except RPCError as e:
            raise SimulationFailedError("Transaction simulation was rejected", str(e)) from e

        value = result["value"]
        err = value.get("err")
        sim = SimulationResult(
            units_consumed=value.get("unitsConsumed"),
            error=None if err is None else str(err),
            logs=tuple(value.get("logs") or ()),
        )
        logger.debug("Simulation: %s CU, error=%s", sim.units_consumed, sim.error)
        return sim

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> SolanaRPC:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
