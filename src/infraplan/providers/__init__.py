from .base import Provider, call_maybe_async
from .retry import RetryPolicy, RetryingProvider
from .memory import InMemoryProvider, ProviderCall

__all__ = [
    'Provider',
    'call_maybe_async',
    'RetryPolicy',
    'RetryingProvider',
    'InMemoryProvider',
    'ProviderCall',
]
