"""
Embedding Package

Embedding providers, the keyed refresh queue and the per-row vector cache
used for semantic retrieval of cards, memories and relationships.
"""

from embedding.indexer import EmbeddingIndexer
from embedding.provider import EmbeddingProvider, OpenAIEmbedding
from embedding.queue import EmbeddingQueue

__all__ = ['EmbeddingIndexer', 'EmbeddingProvider', 'OpenAIEmbedding', 'EmbeddingQueue']
