"""Core tables: identities, points, sponsorships, agents, activity.

Creates identities, points_accounts, points_ledger, sponsorships,
location_sponsor_totals, agent_accounts, agent_skills, agent_transactions,
event_boosts, schedule_entries and checkins.

Revision ID: 001_core_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_core_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Identities ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS identities (
            id SERIAL PRIMARY KEY,
            platform VARCHAR(16) NOT NULL,
            platform_user_id VARCHAR(128) UNIQUE NOT NULL,
            canonical_id VARCHAR(128) NOT NULL,
            display_name VARCHAR(128),
            external_auth_id VARCHAR(128),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_identities_canonical_id
        ON identities(canonical_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_identities_external_auth_id
        ON identities(external_auth_id)
    """)

    # --- Points ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS points_accounts (
            platform_user_id VARCHAR(128) PRIMARY KEY,
            platform VARCHAR(16) NOT NULL,
            total_points BIGINT NOT NULL DEFAULT 0,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            milestone_level INTEGER NOT NULL DEFAULT 1,
            last_award_date DATE,
            first_actions JSON NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS points_ledger (
            id BIGSERIAL PRIMARY KEY,
            platform_user_id VARCHAR(128) NOT NULL,
            platform VARCHAR(16) NOT NULL,
            action VARCHAR(64) NOT NULL,
            points INTEGER NOT NULL,
            details JSON NOT NULL DEFAULT '{}',
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_points_ledger_user_action_created
        ON points_ledger(platform_user_id, action, created_at)
    """)

    # --- Sponsorships ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS sponsorships (
            id SERIAL PRIMARY KEY,
            sponsor_identity VARCHAR(128) NOT NULL,
            sponsor_platform VARCHAR(16) NOT NULL,
            target_type VARCHAR(16) NOT NULL,
            target_id VARCHAR(128) NOT NULL,
            amount_units BIGINT NOT NULL,
            confirmed_units BIGINT,
            tx_reference VARCHAR(80) UNIQUE NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            rejection_reason TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            verified_at TIMESTAMPTZ,
            expires_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_sponsorships_target
        ON sponsorships(target_type, target_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_sponsorships_status
        ON sponsorships(status)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS location_sponsor_totals (
            location_id VARCHAR(128) PRIMARY KEY,
            total_units BIGINT NOT NULL DEFAULT 0,
            sponsor_count INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Agents ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS agent_accounts (
            slot INTEGER PRIMARY KEY,
            owner_identity VARCHAR(128) UNIQUE,
            owner_display_name VARCHAR(128),
            agent_name VARCHAR(128),
            status VARCHAR(16) NOT NULL DEFAULT 'open',
            reserved_for VARCHAR(32),
            balance_units BIGINT NOT NULL DEFAULT 0 CHECK (balance_units >= 0),
            total_earned_units BIGINT NOT NULL DEFAULT 0,
            total_spent_units BIGINT NOT NULL DEFAULT 0,
            skills JSON NOT NULL DEFAULT '[]',
            version INTEGER NOT NULL DEFAULT 0,
            claimed_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS agent_skills (
            slug VARCHAR(64) PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            price_units BIGINT NOT NULL,
            category VARCHAR(32) NOT NULL DEFAULT 'utility',
            capabilities JSON NOT NULL DEFAULT '[]'
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS agent_transactions (
            id BIGSERIAL PRIMARY KEY,
            agent_slot INTEGER,
            from_agent INTEGER,
            to_agent INTEGER,
            amount_units BIGINT NOT NULL CHECK (amount_units > 0),
            tx_type VARCHAR(32) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'completed',
            details JSON NOT NULL DEFAULT '{}',
            tx_hash VARCHAR(80) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_agent_transactions_agent_slot
        ON agent_transactions(agent_slot)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_agent_transactions_to_agent
        ON agent_transactions(to_agent)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS event_boosts (
            id SERIAL PRIMARY KEY,
            agent_slot INTEGER NOT NULL,
            event_id VARCHAR(128) NOT NULL,
            amount_units BIGINT NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Activity ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS schedule_entries (
            id SERIAL PRIMARY KEY,
            user_id VARCHAR(128) NOT NULL,
            event_id VARCHAR(128) NOT NULL,
            event_title VARCHAR(256) NOT NULL,
            venue_name VARCHAR(256),
            starts_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT schedule_entries_user_event_key UNIQUE (user_id, event_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS checkins (
            id SERIAL PRIMARY KEY,
            user_id VARCHAR(128) NOT NULL,
            venue_name VARCHAR(256) NOT NULL,
            status VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS checkins CASCADE")
    op.execute("DROP TABLE IF EXISTS schedule_entries CASCADE")
    op.execute("DROP TABLE IF EXISTS event_boosts CASCADE")
    op.execute("DROP TABLE IF EXISTS agent_transactions CASCADE")
    op.execute("DROP TABLE IF EXISTS agent_skills CASCADE")
    op.execute("DROP TABLE IF EXISTS agent_accounts CASCADE")
    op.execute("DROP TABLE IF EXISTS location_sponsor_totals CASCADE")
    op.execute("DROP TABLE IF EXISTS sponsorships CASCADE")
    op.execute("DROP TABLE IF EXISTS points_ledger CASCADE")
    op.execute("DROP TABLE IF EXISTS points_accounts CASCADE")
    op.execute("DROP TABLE IF EXISTS identities CASCADE")
