"""Request API clients."""

from .client import HttpRequestApi, RequestApi

__all__ = [
    "HttpRequestApi",
    "RequestApi",
]
