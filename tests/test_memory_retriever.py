import pytest

from db.models import MemoryInput, RelationshipInput
from embedding.indexer import EmbeddingIndexer
from embedding.queue import EmbeddingQueue
from memory.cards import CardService
from memory.character_memory import MemoryService
from memory.memory_retriever import ContextRetriever, format_context
from utils.error_handling import UpstreamError


def _retriever(store, embedder):
    indexer = EmbeddingIndexer(store, embedder, EmbeddingQueue())
    return ContextRetriever(store, embedder, indexer, MemoryService(store, indexer))


@pytest.mark.asyncio
async def test_equal_distance_memories_rank_by_importance(store, embedder):
    story = await store.create_story("user-1", "Ranks")
    low, high = await store.insert_memories([
        MemoryInput(story.id, "The bridge creaks", importance=1),
        MemoryInput(story.id, "The bridge is cursed", importance=5),
    ])
    vector = [0.5] * embedder.dimension
    await store.set_memory_embedding(low.id, vector)
    await store.set_memory_embedding(high.id, vector)

    context = await _retriever(store, embedder).retrieve_context(story.id, "bridge", memory_limit=2)

    assert [memory.id for memory in context.memories] == [high.id, low.id]


@pytest.mark.asyncio
async def test_retrieved_memories_are_touched(store, embedder):
    story = await store.create_story("user-1", "Touch")
    retriever = _retriever(store, embedder)
    memory = await retriever.memory_service.record_memory(MemoryInput(story.id, "The bell rang at midnight"))
    assert memory.last_accessed_at is None

    await retriever.retrieve_context(story.id, "bell")

    touched = await store.get_memory(memory.id)
    assert touched.last_accessed_at is not None
    await retriever.indexer.queue.drain()


@pytest.mark.asyncio
async def test_rows_without_vectors_are_embedded_before_search(store, embedder):
    story = await store.create_story("user-1", "Backfill")
    cards = CardService(store)
    mira = await cards.upsert_card(story.id, "character", "Mira", description="A hedge witch")
    bren = await cards.upsert_card(story.id, "character", "Bren")
    await store.upsert_relationship(RelationshipInput(story.id, mira.id, bren.id, summary="Owes a debt"))

    context = await _retriever(store, embedder).retrieve_context(story.id, "who is the witch?")

    assert {card.id for card in context.cards} == {mira.id, bren.id}
    assert len(context.relationships) == 1
    # one query embedding plus one per backfilled row
    assert embedder.call_count == 4
    assert all(card.embedding is not None for card in await store.list_cards(story.id))


@pytest.mark.asyncio
async def test_limits_are_respected(store, embedder):
    story = await store.create_story("user-1", "Limits")
    cards = CardService(store)
    for index in range(5):
        await cards.upsert_card(story.id, "item", f"Trinket {index}")

    context = await _retriever(store, embedder).retrieve_context(story.id, "trinket", card_limit=2)

    assert len(context.cards) == 2


@pytest.mark.asyncio
async def test_embedding_failure_propagates(store, embedder):
    story = await store.create_story("user-1", "Broken")
    embedder.fail = UpstreamError("embedding down", provider="embedding")

    with pytest.raises(UpstreamError):
        await _retriever(store, embedder).retrieve_context(story.id, "anything")


@pytest.mark.asyncio
async def test_format_context_names_cards(store, embedder):
    story = await store.create_story("user-1", "Notes")
    retriever = _retriever(store, embedder)
    cards = CardService(store)
    mira = await cards.upsert_card(story.id, "character", "Mira", description="A hedge witch")
    await retriever.memory_service.record_memory(
        MemoryInput(story.id, "Mira hid the key", owner_card_id=mira.id, importance=3)
    )

    context = await retriever.retrieve_context(story.id, "key")
    text = format_context(context, {mira.id: mira})

    assert "- [character] Mira: A hedge witch" in text
    assert "memory (system, importance 3, about Mira): Mira hid the key" in text
    await retriever.indexer.queue.drain()
