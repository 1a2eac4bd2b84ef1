#!/usr/bin/env python3
"""
Create the deal-flow tables in Supabase using a direct PostgreSQL connection
"""

import os
import sys
import psycopg2
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent / 'backend'
load_dotenv(ROOT_DIR / '.env')

DATABASE_URL = os.environ.get('DATABASE_URL')

TABLES = ['deal_flow_segments', 'flow_metrics_config', 'deal_flow_sync_status']

SQL_COMMANDS = [
    "CREATE EXTENSION IF NOT EXISTS \"uuid-ossp\";",

    # One row per stage visit. source_event_id is the CRM's stage-change id;
    # upserts are keyed on it so re-syncing a deal never duplicates rows.
    """
    CREATE TABLE IF NOT EXISTS deal_flow_segments (
        id BIGSERIAL PRIMARY KEY,
        source_event_id VARCHAR(100) UNIQUE NOT NULL,
        deal_id BIGINT NOT NULL,
        pipeline_id BIGINT NOT NULL,
        stage_id BIGINT NOT NULL,
        stage_name VARCHAR(255),
        entered_at TIMESTAMPTZ NOT NULL,
        left_at TIMESTAMPTZ,
        duration_seconds BIGINT,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_deal_flow_segments_deal_id ON deal_flow_segments(deal_id);",
    "CREATE INDEX IF NOT EXISTS idx_deal_flow_segments_stage ON deal_flow_segments(pipeline_id, stage_id, entered_at);",
    "CREATE INDEX IF NOT EXISTS idx_deal_flow_segments_entered_at ON deal_flow_segments(entered_at);",

    # Metric definitions. config holds start/end stage refs, thresholds and comment.
    """
    CREATE TABLE IF NOT EXISTS flow_metrics_config (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        metric_key VARCHAR(100) UNIQUE NOT NULL,
        display_title VARCHAR(255) NOT NULL,
        config JSONB NOT NULL DEFAULT '{}',
        sort_order INTEGER DEFAULT 0,
        is_active BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_flow_metrics_config_active ON flow_metrics_config(is_active, sort_order);",

    """
    CREATE TABLE IF NOT EXISTS deal_flow_sync_status (
        id UUID PRIMARY KEY,
        sync_type VARCHAR(20) NOT NULL,
        status VARCHAR(20) NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        total_deals INTEGER DEFAULT 0,
        processed_deals INTEGER DEFAULT 0,
        successful_deals INTEGER DEFAULT 0,
        failed_deals JSONB DEFAULT '[]',
        duration INTEGER DEFAULT 0,
        timed_out BOOLEAN DEFAULT FALSE,
        segments_inserted INTEGER DEFAULT 0,
        segments_updated INTEGER DEFAULT 0,
        segments_skipped INTEGER DEFAULT 0,
        errors JSONB DEFAULT '[]'
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_deal_flow_sync_status_started ON deal_flow_sync_status(started_at DESC);",
]


def create_tables():
    """Create all required tables"""
    try:
        conn = psycopg2.connect(DATABASE_URL)
        conn.autocommit = True
        cursor = conn.cursor()

        print("Creating tables...")
        for i, sql in enumerate(SQL_COMMANDS, 1):
            try:
                cursor.execute(sql)
                print(f"✅ Command {i}/{len(SQL_COMMANDS)} executed")
            except psycopg2.Error as e:
                print(f"⚠️  Command {i} warning: {e}")

        cursor.close()
        conn.close()
        print("✅ All tables created successfully!")
        return True

    except Exception as e:
        print(f"❌ Error creating tables: {str(e)}")
        return False


def verify_tables():
    """Verify tables were created"""
    try:
        print("\n🔍 Verifying table creation...")
        conn = psycopg2.connect(DATABASE_URL)
        cursor = conn.cursor()

        for table in TABLES:
            cursor.execute(f"SELECT COUNT(*) FROM {table};")
            count = cursor.fetchone()[0]
            print(f"   ✅ Table '{table}' exists (rows: {count})")

        cursor.close()
        conn.close()

        print("✅ All tables verified!")
        return True

    except Exception as e:
        print(f"❌ Verification error: {str(e)}")
        return False


def main():
    if not DATABASE_URL:
        print("❌ Missing DATABASE_URL")
        return False

    print("Deal Flow Database Setup")
    print("=" * 50)
    print(f"Database URL: {DATABASE_URL[:50]}...")

    if not create_tables():
        print("\n❌ Database setup failed")
        return False
    if not verify_tables():
        print("\n❌ Table verification failed")
        return False

    print("\n🎉 Database setup completed successfully!")
    return True


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
