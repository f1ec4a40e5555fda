"""
Search Functions
================

Server-side SQL for knowledge search, installed by ``create_tables``.

- search_vector trigger: keeps ``knowledge_chunks.search_vector`` in sync
- search_similar_chunks: cosine similarity only
- search_hybrid_chunks: cosine similarity plus a lexical boost of
  ``0.2 * LEAST(ts_rank_cd * 5, 1)`` for rows matching the query text

Both functions filter by workspace/source type, skip rows without an
embedding, and return rows ordered by similarity descending.
"""

from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from helpdesk_retrieval.config import settings

TEXT_MATCH_WEIGHT = 0.2
TEXT_RANK_SCALE = 5

HYBRID_SEARCH_FUNCTION = "search_hybrid_chunks"
VECTOR_SEARCH_FUNCTION = "search_similar_chunks"


def build_search_ddl(dimension: Optional[int] = None, language: Optional[str] = None) -> List[str]:
    """Return the DDL statements, in execution order."""
    dimension = dimension or settings.embedding_dimension
    language = language or settings.knowledge_text_search_config

    trigger_function = f"""
CREATE OR REPLACE FUNCTION knowledge_chunks_search_vector_update() RETURNS trigger AS $$
BEGIN
    NEW.search_vector := to_tsvector('{language}', coalesce(NEW.content, ''));
    RETURN NEW;
END
$$ LANGUAGE plpgsql
"""

    drop_trigger = "DROP TRIGGER IF EXISTS knowledge_chunks_search_vector_trigger ON knowledge_chunks"

    create_trigger = """
CREATE TRIGGER knowledge_chunks_search_vector_trigger
BEFORE INSERT OR UPDATE OF content ON knowledge_chunks
FOR EACH ROW EXECUTE FUNCTION knowledge_chunks_search_vector_update()
"""

    backfill = f"""
UPDATE knowledge_chunks
SET search_vector = to_tsvector('{language}', coalesce(content, ''))
WHERE search_vector IS NULL
"""

    vector_search = f"""
CREATE OR REPLACE FUNCTION {VECTOR_SEARCH_FUNCTION}(
    query_embedding vector({dimension}),
    filter_workspace uuid DEFAULT NULL,
    filter_source text DEFAULT NULL,
    match_limit integer DEFAULT 10,
    min_similarity double precision DEFAULT 0.7
)
RETURNS TABLE (
    id uuid,
    content text,
    "sourceType" text,
    "sourceId" text,
    metadata jsonb,
    similarity double precision
)
LANGUAGE sql STABLE AS $$
    SELECT
        c.id,
        c.content,
        CAST(c.source_type AS text),
        CAST(c.source_id AS text),
        c.metadata,
        1 - (c.embedding <=> query_embedding)
    FROM knowledge_chunks c
    WHERE c.embedding IS NOT NULL
      AND (filter_workspace IS NULL OR c.workspace_id = filter_workspace)
      AND (filter_source IS NULL OR c.source_type = filter_source)
      AND 1 - (c.embedding <=> query_embedding) >= min_similarity
    ORDER BY c.embedding <=> query_embedding
    LIMIT match_limit
$$
"""

    hybrid_search = f"""
CREATE OR REPLACE FUNCTION {HYBRID_SEARCH_FUNCTION}(
    query_embedding vector({dimension}),
    query_text text,
    filter_workspace uuid DEFAULT NULL,
    filter_source text DEFAULT NULL,
    match_limit integer DEFAULT 10,
    min_similarity double precision DEFAULT 0.7
)
RETURNS TABLE (
    id uuid,
    content text,
    "sourceType" text,
    "sourceId" text,
    metadata jsonb,
    similarity double precision,
    "textRank" double precision
)
LANGUAGE sql STABLE AS $$
    WITH q AS (
        SELECT plainto_tsquery('{language}', coalesce(query_text, '')) AS tsq
    ),
    scored AS (
        SELECT
            c.id AS chunk_id,
            c.content AS chunk_content,
            CAST(c.source_type AS text) AS chunk_source_type,
            CAST(c.source_id AS text) AS chunk_source_id,
            c.metadata AS chunk_metadata,
            1 - (c.embedding <=> query_embedding) AS vector_similarity,
            coalesce(c.search_vector @@ q.tsq, false) AS text_match,
            CAST(ts_rank_cd(coalesce(c.search_vector, ''), q.tsq) AS double precision) AS text_rank
        FROM knowledge_chunks c, q
        WHERE c.embedding IS NOT NULL
          AND (filter_workspace IS NULL OR c.workspace_id = filter_workspace)
          AND (filter_source IS NULL OR c.source_type = filter_source)
    )
    SELECT
        chunk_id,
        chunk_content,
        chunk_source_type,
        chunk_source_id,
        chunk_metadata,
        vector_similarity + CASE
            WHEN text_match THEN {TEXT_MATCH_WEIGHT} * LEAST(text_rank * {TEXT_RANK_SCALE}, 1.0)
            ELSE 0
        END AS combined_similarity,
        CASE WHEN text_match THEN text_rank ELSE 0 END
    FROM scored
    WHERE vector_similarity >= min_similarity OR text_match
    ORDER BY combined_similarity DESC
    LIMIT match_limit
$$
"""

    return [
        trigger_function,
        drop_trigger,
        create_trigger,
        backfill,
        vector_search,
        hybrid_search,
    ]


async def install_search_functions(conn: AsyncConnection) -> None:
    """Create or replace the trigger and search functions."""
    for statement in build_search_ddl():
        await conn.execute(text(statement))
