"""Network clients for Solana JSON-RPC."""

from binpnl.clients.rpc import SolanaRPC

__all__ = ["SolanaRPC"]
