"""Asyncio client for the BigQuery REST API."""

from bq_stream.bq_client import BigQueryClient
from bq_stream.config import ClientConfig, discover_config, load_config
from bq_stream.credentials import (
    CredentialCache,
    KeyProvider,
    ServiceAccountTokenMinter,
    TokenMinter,
)
from bq_stream.errors import MalformedResponseError, QueryFailedError
from bq_stream.gate import GateState, RequestGate
from bq_stream.query import CursorState, QueryJob, QueryObserver
from bq_stream.transport import HttpClient, HttpxClient

__all__ = [
    "BigQueryClient",
    "ClientConfig",
    "CredentialCache",
    "CursorState",
    "GateState",
    "HttpClient",
    "HttpxClient",
    "KeyProvider",
    "MalformedResponseError",
    "QueryFailedError",
    "QueryJob",
    "QueryObserver",
    "RequestGate",
    "ServiceAccountTokenMinter",
    "TokenMinter",
    "discover_config",
    "load_config",
]
