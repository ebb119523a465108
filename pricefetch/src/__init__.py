"""
PriceFetch Oracle - On-Chain Price Sync Module

This module reads and refreshes the prices cached by the PriceFetchOracle
contract:
- Token: Supported tokens with contract index, decimals and Pyth feed id
- PriceFormatter: Fixed-point price tuples to validated decimal prices
- FeedSource: Signed price-update payloads from Pyth Hermes
- OracleReadClient: Cached price and metadata reads
- OracleWriteClient: Update submission with nonce tracking
- PriceSyncController: Cache-first reads with a single on-chain refresh
"""

from .ContractUtility import DEFAULT_ORACLE_ADDRESS, ContractUtility
from .errors import (
    ChainCallFailed,
    FeedUnavailable,
    InvalidToken,
    NoSigningIdentity,
    PriceFetchError,
    SequenceConflict,
    UpdateRejected,
)
from .FeedSource import FeedSource
from .OracleReadClient import ContractInfo, OracleReadClient
from .OracleWriteClient import OracleWriteClient
from .PriceFormatter import NormalizedPrice, RawPriceTuple, format_price
from .PriceSyncController import PriceSyncController, SyncResult, SyncState
from .Token import Token

__all__ = [
    "ChainCallFailed",
    "ContractInfo",
    "ContractUtility",
    "DEFAULT_ORACLE_ADDRESS",
    "FeedSource",
    "FeedUnavailable",
    "InvalidToken",
    "NoSigningIdentity",
    "NormalizedPrice",
    "OracleReadClient",
    "OracleWriteClient",
    "PriceFetchError",
    "PriceSyncController",
    "RawPriceTuple",
    "SequenceConflict",
    "SyncResult",
    "SyncState",
    "Token",
    "UpdateRejected",
    "format_price",
]
