"""Initial schema: reference data, fixtures, odds, mappings, batches, jobs, groups

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS external_mappings (
          id BIGSERIAL PRIMARY KEY,
          entity_kind VARCHAR(32) NOT NULL,
          external_id TEXT NOT NULL,
          internal_id BIGINT NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          CONSTRAINT uq_external_mappings_kind_ext UNIQUE (entity_kind, external_id)
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_external_mappings_kind_internal ON external_mappings(entity_kind, internal_id)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS countries (
          id BIGSERIAL PRIMARY KEY,
          name TEXT NOT NULL,
          iso2 VARCHAR(2),
          iso3 VARCHAR(3),
          image_path TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS leagues (
          id BIGSERIAL PRIMARY KEY,
          name TEXT NOT NULL,
          country_id BIGINT REFERENCES countries(id),
          short_code TEXT,
          type TEXT,
          sub_type TEXT,
          image_path TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS seasons (
          id BIGSERIAL PRIMARY KEY,
          name TEXT NOT NULL,
          league_id BIGINT NOT NULL REFERENCES leagues(id),
          start_date DATE,
          end_date DATE,
          is_current BOOLEAN NOT NULL DEFAULT FALSE,
          is_finished BOOLEAN NOT NULL DEFAULT FALSE,
          is_pending BOOLEAN NOT NULL DEFAULT FALSE,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS teams (
          id BIGSERIAL PRIMARY KEY,
          name TEXT NOT NULL,
          short_code TEXT,
          country_id BIGINT REFERENCES countries(id),
          founded INTEGER,
          type TEXT,
          image_path TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS bookmakers (
          id BIGSERIAL PRIMARY KEY,
          name TEXT NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS markets (
          id BIGSERIAL PRIMARY KEY,
          name TEXT NOT NULL,
          description TEXT,
          developer_name TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS fixtures (
          id BIGSERIAL PRIMARY KEY,
          external_id TEXT NOT NULL,
          name TEXT,
          league_id BIGINT REFERENCES leagues(id),
          season_id BIGINT REFERENCES seasons(id),
          home_team_id BIGINT NOT NULL REFERENCES teams(id),
          away_team_id BIGINT NOT NULL REFERENCES teams(id),
          start_ts BIGINT NOT NULL,
          state VARCHAR(32) NOT NULL DEFAULT 'NS',
          live_minute INTEGER,
          result VARCHAR(16),
          home_score_90 INTEGER,
          away_score_90 INTEGER,
          home_score_et INTEGER,
          away_score_et INTEGER,
          pen_home INTEGER,
          pen_away INTEGER,
          stage TEXT,
          round TEXT,
          has_odds BOOLEAN,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          CONSTRAINT uq_fixtures_external_id UNIQUE (external_id),
          CONSTRAINT ck_fixtures_distinct_teams CHECK (home_team_id <> away_team_id)
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_fixtures_state_start ON fixtures(state, start_ts)")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS odds (
          id BIGSERIAL PRIMARY KEY,
          fixture_id BIGINT NOT NULL REFERENCES fixtures(id),
          bookmaker_id BIGINT NOT NULL REFERENCES bookmakers(id),
          market_id BIGINT NOT NULL REFERENCES markets(id),
          label TEXT,
          name TEXT,
          value NUMERIC(10,3) NOT NULL CHECK (value > 1),
          probability NUMERIC(6,4),
          total TEXT,
          handicap TEXT,
          winning BOOLEAN,
          sort_order INTEGER,
          starting_at_ts BIGINT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_odds_fixture ON odds(fixture_id, bookmaker_id, market_id)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
          key TEXT PRIMARY KEY,
          description TEXT,
          enabled BOOLEAN NOT NULL DEFAULT TRUE,
          interval_minutes INTEGER NOT NULL,
          meta JSONB NOT NULL DEFAULT '{}'::jsonb,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS job_runs (
          id BIGSERIAL PRIMARY KEY,
          job_key TEXT NOT NULL REFERENCES jobs(key),
          status VARCHAR(20) NOT NULL DEFAULT 'running',
          trigger VARCHAR(20) NOT NULL,
          triggered_by TEXT,
          triggered_by_id TEXT,
          started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          finished_at TIMESTAMPTZ,
          duration_ms BIGINT,
          rows_affected INTEGER NOT NULL DEFAULT 0,
          error_message TEXT,
          error_stack TEXT,
          meta JSONB NOT NULL DEFAULT '{}'::jsonb
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_key_started ON job_runs(job_key, started_at DESC)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_status_started ON job_runs(status, started_at DESC)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS seed_batches (
          id BIGSERIAL PRIMARY KEY,
          name TEXT NOT NULL,
          version TEXT NOT NULL DEFAULT 'v1',
          status VARCHAR(20) NOT NULL DEFAULT 'running',
          trigger VARCHAR(20) NOT NULL,
          triggered_by TEXT,
          triggered_by_id TEXT,
          job_run_id BIGINT REFERENCES job_runs(id),
          started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          finished_at TIMESTAMPTZ,
          duration_ms BIGINT,
          items_total INTEGER NOT NULL DEFAULT 0,
          items_success INTEGER NOT NULL DEFAULT 0,
          items_failed INTEGER NOT NULL DEFAULT 0,
          error_message TEXT,
          error_stack TEXT,
          meta JSONB NOT NULL DEFAULT '{}'::jsonb,
          CONSTRAINT ck_seed_batches_counts CHECK (items_success + items_failed <= items_total)
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_seed_batches_name_started ON seed_batches(name, started_at DESC)")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS seed_items (
          id BIGSERIAL PRIMARY KEY,
          batch_id BIGINT NOT NULL REFERENCES seed_batches(id) ON DELETE CASCADE,
          item_key TEXT NOT NULL,
          status VARCHAR(20) NOT NULL,
          error_message TEXT,
          meta JSONB NOT NULL DEFAULT '{}'::jsonb,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_seed_items_batch ON seed_items(batch_id, id)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS groups (
          id BIGSERIAL PRIMARY KEY,
          name TEXT NOT NULL,
          status VARCHAR(20) NOT NULL DEFAULT 'active',
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS group_rules (
          group_id BIGINT PRIMARY KEY REFERENCES groups(id) ON DELETE CASCADE,
          prediction_mode VARCHAR(20) NOT NULL DEFAULT 'CorrectScore',
          on_the_nose_points INTEGER NOT NULL DEFAULT 3,
          correct_difference_points INTEGER NOT NULL DEFAULT 2,
          outcome_points INTEGER NOT NULL DEFAULT 1,
          ko_round_mode VARCHAR(20) NOT NULL DEFAULT 'FullTime'
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS group_fixtures (
          id BIGSERIAL PRIMARY KEY,
          group_id BIGINT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
          fixture_id BIGINT NOT NULL REFERENCES fixtures(id),
          CONSTRAINT uq_group_fixtures UNIQUE (group_id, fixture_id)
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_group_fixtures_fixture ON group_fixtures(fixture_id)")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS group_predictions (
          id BIGSERIAL PRIMARY KEY,
          group_id BIGINT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
          group_fixture_id BIGINT NOT NULL REFERENCES group_fixtures(id) ON DELETE CASCADE,
          user_id BIGINT NOT NULL,
          prediction TEXT NOT NULL,
          points INTEGER,
          winning_correct_score BOOLEAN,
          winning_match_winner BOOLEAN,
          settled_at TIMESTAMPTZ,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          CONSTRAINT uq_group_predictions_user UNIQUE (group_fixture_id, user_id),
          CONSTRAINT ck_group_predictions_settled CHECK ((settled_at IS NULL) = (points IS NULL))
        )
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_group_predictions_unsettled ON group_predictions(group_fixture_id) WHERE settled_at IS NULL"
    )


def downgrade():
    for table in (
        "group_predictions",
        "group_fixtures",
        "group_rules",
        "groups",
        "seed_items",
        "seed_batches",
        "job_runs",
        "jobs",
        "odds",
        "fixtures",
        "markets",
        "bookmakers",
        "teams",
        "seasons",
        "leagues",
        "countries",
        "external_mappings",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table}")
