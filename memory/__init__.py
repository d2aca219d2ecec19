"""Cards, memories, relationships, stats and their retrieval."""
