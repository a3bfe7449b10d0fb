"""Adapters for the collaborators flow nodes call into."""

from .datastore import SqlDataStore
from .http_client import HttpClient
from .text_generation import OpenAITextGenerator

__all__ = [
    "SqlDataStore",
    "HttpClient",
    "OpenAITextGenerator",
]
