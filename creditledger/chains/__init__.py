"""
Chain clients: EVM (web3), Solana (JSON-RPC) and the Alchemy NFT API.
"""

from .alchemy import AlchemyNFTClient
from .evm import EVMClient, TransferLog, decode_transfer_log, is_evm_address
from .solana import SolanaRPCClient, SolanaRPCError, is_solana_address

__all__ = [
    "AlchemyNFTClient",
    "EVMClient",
    "SolanaRPCClient",
    "SolanaRPCError",
    "TransferLog",
    "decode_transfer_log",
    "is_evm_address",
    "is_solana_address",
]
