"""Progress ledger and gamification tables.

Creates user_languages, lesson_progress, task_progress, applied_mutations,
user_gamification, xp_ledger, pending_xp_awards, streaks,
achievement_definitions and user_achievements. The users, languages and
lessons tables are owned by the auth and content services.

Revision ID: 001_progress_tables
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_progress_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- User Languages ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_languages (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            language_id UUID NOT NULL REFERENCES languages(id),
            started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            last_practiced_at TIMESTAMPTZ,
            CONSTRAINT uq_user_languages_user_language UNIQUE (user_id, language_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_languages_language
        ON user_languages(language_id)
    """)

    # --- Lesson Progress ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS lesson_progress (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            lesson_id UUID NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
            percent_complete INTEGER NOT NULL DEFAULT 0 CHECK (percent_complete BETWEEN 0 AND 100),
            time_spent_seconds INTEGER NOT NULL DEFAULT 0 CHECK (time_spent_seconds >= 0),
            is_completed BOOLEAN NOT NULL DEFAULT false,
            xp_earned INTEGER NOT NULL DEFAULT 0,
            started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            completed_at TIMESTAMPTZ,
            last_accessed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_lesson_progress_user_lesson UNIQUE (user_id, lesson_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_lesson_progress_user_completed
        ON lesson_progress(user_id) WHERE is_completed
    """)

    # --- Task Progress ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS task_progress (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            lesson_id UUID NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
            task_number INTEGER NOT NULL CHECK (task_number BETWEEN 1 AND 5),
            percent_complete INTEGER NOT NULL DEFAULT 0 CHECK (percent_complete BETWEEN 0 AND 100),
            time_spent_seconds INTEGER NOT NULL DEFAULT 0 CHECK (time_spent_seconds >= 0),
            reps_completed INTEGER NOT NULL DEFAULT 0,
            sentences_completed INTEGER NOT NULL DEFAULT 0,
            current_sentence_index INTEGER NOT NULL DEFAULT 0,
            is_completed BOOLEAN NOT NULL DEFAULT false,
            completed_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_task_progress_user_lesson_task UNIQUE (user_id, lesson_id, task_number)
        )
    """)

    # --- Applied Mutations ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS applied_mutations (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            mutation_id VARCHAR(64) NOT NULL,
            lesson_id UUID NOT NULL,
            task_number INTEGER,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_applied_mutations_user_mutation UNIQUE (user_id, mutation_id)
        )
    """)

    # --- User Gamification ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_gamification (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            total_xp BIGINT NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            level_title VARCHAR(64) NOT NULL DEFAULT 'Novice',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_gamification_total_xp
        ON user_gamification(total_xp DESC)
    """)

    # --- XP Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_ledger (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            amount INTEGER NOT NULL,
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128),
            description VARCHAR(256),
            total_after BIGINT NOT NULL,
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_xp_ledger_user_created
        ON xp_ledger(user_id, created_at DESC)
    """)

    # --- Pending XP Awards ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS pending_xp_awards (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            amount INTEGER NOT NULL,
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128),
            description VARCHAR(256),
            idempotency_key VARCHAR(256) UNIQUE NOT NULL,
            last_error TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            resolved_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_pending_xp_awards_unresolved
        ON pending_xp_awards(id) WHERE resolved_at IS NULL
    """)

    # --- Streaks ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS streaks (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT UNIQUE NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            current_streak INTEGER NOT NULL DEFAULT 0 CHECK (current_streak >= 0),
            longest_streak INTEGER NOT NULL DEFAULT 0,
            last_activity_date DATE,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CHECK (longest_streak >= current_streak)
        )
    """)

    # --- Achievement Definitions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_definitions (
            id SERIAL PRIMARY KEY,
            code VARCHAR(50) UNIQUE NOT NULL,
            name VARCHAR(100) NOT NULL,
            description TEXT NOT NULL,
            icon VARCHAR(50) NOT NULL,
            requirement_type VARCHAR(50) NOT NULL,
            requirement_value INTEGER NOT NULL,
            xp_reward INTEGER NOT NULL DEFAULT 50,
            is_active BOOLEAN NOT NULL DEFAULT true,
            display_order INTEGER NOT NULL DEFAULT 0
        )
    """)

    # --- User Achievements ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_achievements (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            achievement_id INTEGER NOT NULL REFERENCES achievement_definitions(id),
            unlocked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            xp_awarded INTEGER NOT NULL DEFAULT 0,
            CONSTRAINT uq_user_achievements_user_achievement UNIQUE (user_id, achievement_id)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS user_achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS achievement_definitions CASCADE")
    op.execute("DROP TABLE IF EXISTS streaks CASCADE")
    op.execute("DROP TABLE IF EXISTS pending_xp_awards CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_ledger CASCADE")
    op.execute("DROP TABLE IF EXISTS user_gamification CASCADE")
    op.execute("DROP TABLE IF EXISTS applied_mutations CASCADE")
    op.execute("DROP TABLE IF EXISTS task_progress CASCADE")
    op.execute("DROP TABLE IF EXISTS lesson_progress CASCADE")
    op.execute("DROP TABLE IF EXISTS user_languages CASCADE")
