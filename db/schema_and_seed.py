# db/schema_and_seed.py

import logging
from typing import Optional

import asyncpg

from db.connection import get_db_dsn
from utils.embedding_dimensions import apply_embedding_dimension

logger = logging.getLogger(__name__)

SCHEMA_COMMANDS = [
    '''
    CREATE TABLE IF NOT EXISTS stories (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        beginning_key TEXT,
        world_key TEXT,
        character_name TEXT,
        character_gender TEXT,
        character_race TEXT,
        message_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_played_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    ''',
    '''
    CREATE INDEX IF NOT EXISTS idx_stories_user_played
        ON stories (user_id, last_played_at DESC);
    ''',
    '''
    CREATE TABLE IF NOT EXISTS story_messages (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        story_id UUID NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('dm', 'you')),
        content TEXT NOT NULL,
        image_url TEXT,
        sequence INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (story_id, sequence)
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS cards (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        story_id UUID NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
        type TEXT NOT NULL CHECK (type IN (
            'story', 'character', 'environment', 'item',
            'faction', 'quest', 'world', 'beginning'
        )),
        name TEXT NOT NULL,
        description TEXT,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        embedding vector(1024),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (story_id, type, name)
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS character_memories (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        story_id UUID NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
        owner_card_id UUID REFERENCES cards(id) ON DELETE CASCADE,
        subject_card_id UUID REFERENCES cards(id) ON DELETE CASCADE,
        source_message_id UUID REFERENCES story_messages(id) ON DELETE SET NULL,
        source_type TEXT NOT NULL DEFAULT 'system'
            CHECK (source_type IN ('player', 'dm', 'npc', 'system', 'world')),
        summary TEXT NOT NULL,
        context JSONB NOT NULL DEFAULT '{}'::jsonb,
        tags TEXT[] NOT NULL DEFAULT '{}',
        importance INTEGER NOT NULL DEFAULT 1,
        decay_factor REAL NOT NULL DEFAULT 1,
        embedding vector(1024),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_accessed_at TIMESTAMPTZ
    );
    ''',
    '''
    CREATE INDEX IF NOT EXISTS idx_character_memories_story
        ON character_memories (story_id, created_at DESC);
    ''',
    '''
    CREATE TABLE IF NOT EXISTS character_stats (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        story_id UUID NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
        character_card_id UUID NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
        key TEXT NOT NULL,
        value JSONB NOT NULL DEFAULT '{}'::jsonb,
        confidence REAL NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (story_id, character_card_id, key)
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS character_relationships (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        story_id UUID NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
        source_card_id UUID NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
        target_card_id UUID NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
        summary TEXT,
        metrics JSONB NOT NULL DEFAULT '{}'::jsonb,
        importance INTEGER NOT NULL DEFAULT 1,
        embedding vector(1024),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (story_id, source_card_id, target_card_id)
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS gm_settings (
        story_id UUID PRIMARY KEY REFERENCES stories(id) ON DELETE CASCADE,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    ''',
]


async def create_all_tables(dsn: Optional[str] = None, dimension: Optional[int] = None):
    """
    Create the extension, tables and indexes.

    Runs on a dedicated connection: the pooled connections register the
    pgvector codec on connect, which fails before the extension exists.
    """
    logger.info("Starting table creation process...")
    conn = await asyncpg.connect(dsn or get_db_dsn())
    try:
        await conn.execute("CREATE EXTENSION IF NOT EXISTS vector;")
        await conn.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
        async with conn.transaction():
            for command in SCHEMA_COMMANDS:
                await conn.execute(apply_embedding_dimension(command, dimension))
        logger.info("Created %d schema objects", len(SCHEMA_COMMANDS))
    finally:
        await conn.close()
