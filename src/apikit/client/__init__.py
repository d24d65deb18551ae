"""HTTP client layer for apikit.

Exports :class:`HttpClient`, the asynchronous request pipeline built on
:class:`httpx.AsyncClient`, together with its collaborators:
:class:`InterceptorChain`, :class:`RequestState`, the opt-in retry
helpers, the :class:`CircuitBreaker` and the :class:`OfflineQueue`.
"""

from apikit.client.async_client import HttpClient, create_http_client
from apikit.client.circuit import CircuitBreaker, CircuitBreakerConfig, CircuitState
from apikit.client.interceptors import InterceptorChain
from apikit.client.offline import (
    OfflineQueue,
    OfflineQueueConfig,
    QueuedRequest,
    QueueStats,
    QueueStatus,
    client_executor,
    create_offline_sender,
)
from apikit.client.retry import RetryConfig, RetryHandler, retry_with_backoff, retrying
from apikit.client.state import RequestState

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "HttpClient",
    "InterceptorChain",
    "OfflineQueue",
    "OfflineQueueConfig",
    "QueueStats",
    "QueueStatus",
    "QueuedRequest",
    "RequestState",
    "RetryConfig",
    "RetryHandler",
    "client_executor",
    "create_http_client",
    "create_offline_sender",
    "retry_with_backoff",
    "retrying",
]
