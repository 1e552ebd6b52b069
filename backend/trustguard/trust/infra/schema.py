"""DDL for the trust subsystem tables (idempotent)."""

from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger(__name__)

# Content and identity tables are owned by other services; the IF NOT EXISTS
# definitions only give local and test databases the columns read here.
_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS users (
        did TEXT PRIMARY KEY,
        handle TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        reputation_score INTEGER NOT NULL DEFAULT 0,
        first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        pds_host TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS users_role_idx ON users (role)",
    """
    CREATE TABLE IF NOT EXISTS replies (
        uri TEXT PRIMARY KEY,
        root_uri TEXT NOT NULL,
        author_did TEXT NOT NULL,
        community_did TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS topics (
        uri TEXT PRIMARY KEY,
        author_did TEXT NOT NULL,
        community_did TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reactions (
        uri TEXT PRIMARY KEY,
        author_did TEXT NOT NULL,
        subject_uri TEXT NOT NULL,
        community_did TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interaction_graph (
        id BIGSERIAL PRIMARY KEY,
        source_did TEXT NOT NULL,
        target_did TEXT NOT NULL,
        community_did TEXT NOT NULL,
        interaction_type TEXT NOT NULL,
        weight INTEGER NOT NULL DEFAULT 1,
        first_interaction_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_interaction_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT interaction_graph_no_self_loop CHECK (source_did <> target_did),
        CONSTRAINT interaction_graph_edge_key UNIQUE (source_did, target_did, community_did, interaction_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS interaction_graph_target_idx ON interaction_graph (target_did)",
    "CREATE INDEX IF NOT EXISTS interaction_graph_community_idx ON interaction_graph (community_did)",
    """
    CREATE TABLE IF NOT EXISTS trust_seeds (
        id TEXT PRIMARY KEY,
        did TEXT NOT NULL,
        community_did TEXT NOT NULL DEFAULT '',
        added_by TEXT NOT NULL,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT trust_seeds_scope_key UNIQUE (did, community_did)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trust_scores (
        did TEXT NOT NULL,
        community_did TEXT NOT NULL DEFAULT '',
        score DOUBLE PRECISION NOT NULL CHECK (score >= 0 AND score <= 1),
        computed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (did, community_did)
    )
    """,
    "CREATE INDEX IF NOT EXISTS trust_scores_scope_score_idx ON trust_scores (community_did, score)",
    """
    CREATE TABLE IF NOT EXISTS pds_trust_factors (
        id TEXT PRIMARY KEY,
        pds_host TEXT NOT NULL UNIQUE,
        trust_factor DOUBLE PRECISION NOT NULL CHECK (trust_factor >= 0 AND trust_factor <= 1),
        is_default BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS pds_trust_factors_single_default ON pds_trust_factors (is_default) WHERE is_default",
    """
    INSERT INTO pds_trust_factors (id, pds_host, trust_factor, is_default)
    VALUES ('default', '*', 0.3, TRUE)
    ON CONFLICT DO NOTHING
    """,
    """
    CREATE TABLE IF NOT EXISTS sybil_clusters (
        id TEXT PRIMARY KEY,
        cluster_hash TEXT NOT NULL,
        internal_edge_count INTEGER NOT NULL DEFAULT 0,
        external_edge_count INTEGER NOT NULL DEFAULT 0,
        member_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'flagged'
            CHECK (status IN ('flagged', 'monitoring', 'dismissed', 'banned')),
        reviewed_by TEXT,
        reviewed_at TIMESTAMPTZ,
        detected_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS sybil_clusters_hash_idx ON sybil_clusters (cluster_hash)",
    "CREATE INDEX IF NOT EXISTS sybil_clusters_status_idx ON sybil_clusters (status, detected_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS sybil_cluster_members (
        cluster_id TEXT NOT NULL REFERENCES sybil_clusters (id) ON DELETE CASCADE,
        did TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('core', 'peripheral')),
        joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (cluster_id, did)
    )
    """,
    "CREATE INDEX IF NOT EXISTS sybil_cluster_members_did_idx ON sybil_cluster_members (did)",
    """
    CREATE TABLE IF NOT EXISTS behavioral_flags (
        id TEXT PRIMARY KEY,
        flag_type TEXT NOT NULL CHECK (flag_type IN ('burst_voting', 'content_similarity', 'low_diversity')),
        affected_dids TEXT[] NOT NULL,
        details TEXT NOT NULL,
        community_did TEXT,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'dismissed', 'action_taken')),
        detected_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS behavioral_flags_status_idx ON behavioral_flags (status, detected_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS moderation_queue (
        id TEXT PRIMARY KEY,
        content_uri TEXT NOT NULL,
        content_type TEXT NOT NULL CHECK (content_type IN ('topic', 'reply')),
        author_did TEXT NOT NULL,
        community_did TEXT NOT NULL,
        queue_reason TEXT NOT NULL,
        matched_words TEXT[],
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS moderation_queue_content_idx ON moderation_queue (content_uri)",
    "CREATE INDEX IF NOT EXISTS moderation_queue_created_idx ON moderation_queue (created_at DESC, id DESC)",
    """
    CREATE TABLE IF NOT EXISTS account_trust (
        did TEXT NOT NULL,
        community_did TEXT NOT NULL,
        approved_post_count INTEGER NOT NULL DEFAULT 0,
        is_trusted BOOLEAN NOT NULL DEFAULT FALSE,
        trusted_at TIMESTAMPTZ,
        PRIMARY KEY (did, community_did)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_filters (
        did TEXT NOT NULL,
        community_did TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'monitored', 'filtered')),
        reason TEXT,
        filtered_by TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (did, community_did)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS moderation_actions (
        id BIGSERIAL PRIMARY KEY,
        action TEXT NOT NULL,
        target_did TEXT NOT NULL,
        moderator_did TEXT NOT NULL,
        community_did TEXT NOT NULL DEFAULT '',
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS moderation_actions_target_idx ON moderation_actions (target_did, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS community_settings (
        community_did TEXT PRIMARY KEY,
        moderation_thresholds JSONB NOT NULL DEFAULT '{}'::jsonb,
        word_filter TEXT[] NOT NULL DEFAULT '{}',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _STATEMENTS:
                await conn.execute(statement)
    logger.info("trust schema ensured", extra={"statements": len(_STATEMENTS)})
