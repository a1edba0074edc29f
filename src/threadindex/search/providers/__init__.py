"""Embedding gateways — protocol and implementations."""

from threadindex.search.protocols import EmbeddingGateway
from threadindex.search.providers.gateway import HttpEmbeddingGateway

__all__ = [
    "EmbeddingGateway",
    "HttpEmbeddingGateway",
]

# Optional gateways, available only when their extra is installed.
try:
    from threadindex.search.providers.openai import OpenAIEmbeddingGateway

    __all__.append("OpenAIEmbeddingGateway")
except ImportError:  # pragma: no cover
    pass
