"""
Migration: Create cloaker tables.

Creates 4 tables:
1. cloaked_links       - link policies and their click counters
2. cloaker_visitors    - append-only decision log
3. cloaker_domains     - custom domains and their DNS / SSL state
4. cloaker_rate_limits - per-IP fixed-window counters

Key design principles:
- Counters are only ever changed by conditional UPDATEs
- At most one default domain per owner (partial unique index)
- Visitor rows cascade with their link
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/cloaker"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def run_migration():
    """Create the cloaker tables, indexes and enum types."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # ENUM TYPES
        # =================================================================
        for name, values in (
            ("cloaker_decision", "'allow', 'safe', 'block'"),
            ("cloaker_dns_status", "'pending', 'verified', 'failed'"),
            ("cloaker_ssl_status", "'pending', 'provisioning', 'active', 'failed'"),
        ):
            conn.execute(text(f"""
                DO $$ BEGIN
                    CREATE TYPE {name} AS ENUM ({values});
                EXCEPTION WHEN duplicate_object THEN NULL;
                END $$;
            """))

        # =================================================================
        # TABLE 1: cloaked_links
        # =================================================================
        if table_exists(conn, "cloaked_links"):
            print("cloaked_links table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE cloaked_links (
                    id VARCHAR(36) PRIMARY KEY,
                    user_id VARCHAR(36) NOT NULL,
                    name VARCHAR(255) NOT NULL DEFAULT '',
                    slug VARCHAR(100) NOT NULL UNIQUE,
                    custom_domain VARCHAR(255),
                    safe_url TEXT NOT NULL,
                    target_url TEXT,
                    target_urls JSON,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    allowed_countries JSON,
                    blocked_countries JSON,
                    allowed_devices JSON,
                    allowed_referers JSON,
                    blocked_referers JSON,
                    allowed_languages JSON,
                    blocked_languages JSON,
                    required_url_params JSON,
                    blocked_url_params JSON,
                    whitelist_ips JSON,
                    blacklist_ips JSON,
                    custom_user_agents JSON,
                    blocked_isps JSON,
                    blocked_asns JSON,
                    block_bots BOOLEAN NOT NULL DEFAULT TRUE,
                    block_vpn BOOLEAN NOT NULL DEFAULT FALSE,
                    block_proxy BOOLEAN NOT NULL DEFAULT FALSE,
                    block_datacenter BOOLEAN NOT NULL DEFAULT FALSE,
                    block_tor BOOLEAN NOT NULL DEFAULT FALSE,
                    allow_social_previews BOOLEAN NOT NULL DEFAULT FALSE,
                    min_score INTEGER NOT NULL DEFAULT 40,
                    collect_fingerprint BOOLEAN NOT NULL DEFAULT FALSE,
                    require_behavior BOOLEAN NOT NULL DEFAULT FALSE,
                    behavior_time_ms INTEGER DEFAULT 2000,
                    max_clicks_daily INTEGER,
                    max_clicks_total INTEGER,
                    clicks_today INTEGER NOT NULL DEFAULT 0,
                    clicks_count INTEGER NOT NULL DEFAULT 0,
                    last_click_reset DATE,
                    timezone VARCHAR(64) NOT NULL DEFAULT 'UTC',
                    allowed_hours_start INTEGER,
                    allowed_hours_end INTEGER,
                    rate_limit_per_ip INTEGER,
                    rate_limit_window_minutes INTEGER,
                    redirect_delay_ms INTEGER,
                    passthrough_utm BOOLEAN NOT NULL DEFAULT FALSE,
                    webhook_url TEXT,
                    webhook_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    webhook_events JSON,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT ck_cloaked_links_min_score CHECK (min_score BETWEEN 0 AND 100)
                )
            """))
            conn.execute(text("CREATE INDEX idx_cloaked_links_user ON cloaked_links(user_id)"))
            conn.execute(text("CREATE INDEX idx_cloaked_links_domain ON cloaked_links(custom_domain)"))
            print("Created cloaked_links table")

        # =================================================================
        # TABLE 2: cloaker_visitors
        # =================================================================
        if table_exists(conn, "cloaker_visitors"):
            print("cloaker_visitors table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE cloaker_visitors (
                    id VARCHAR(36) PRIMARY KEY,
                    link_id VARCHAR(36) NOT NULL REFERENCES cloaked_links(id) ON DELETE CASCADE,
                    fingerprint_hash VARCHAR(64),
                    score INTEGER NOT NULL,
                    composite_score INTEGER NOT NULL,
                    score_device_consistency INTEGER,
                    score_webrtc INTEGER,
                    score_mouse_pattern INTEGER,
                    score_keyboard INTEGER,
                    score_session_replay INTEGER,
                    score_automation INTEGER,
                    score_behavior INTEGER,
                    score_fingerprint INTEGER,
                    score_network INTEGER,
                    decision cloaker_decision NOT NULL,
                    decision_reason VARCHAR(100),
                    ip_address VARCHAR(64),
                    country_code VARCHAR(8),
                    city VARCHAR(120),
                    isp VARCHAR(255),
                    asn VARCHAR(32),
                    device_type VARCHAR(16),
                    user_agent TEXT,
                    language VARCHAR(64),
                    is_bot BOOLEAN NOT NULL DEFAULT FALSE,
                    is_headless BOOLEAN NOT NULL DEFAULT FALSE,
                    is_automated BOOLEAN NOT NULL DEFAULT FALSE,
                    is_vpn BOOLEAN NOT NULL DEFAULT FALSE,
                    is_proxy BOOLEAN NOT NULL DEFAULT FALSE,
                    is_datacenter BOOLEAN NOT NULL DEFAULT FALSE,
                    is_tor BOOLEAN NOT NULL DEFAULT FALSE,
                    is_blacklisted BOOLEAN NOT NULL DEFAULT FALSE,
                    referer TEXT,
                    utm_source VARCHAR(255),
                    utm_medium VARCHAR(255),
                    utm_campaign VARCHAR(255),
                    utm_term VARCHAR(255),
                    utm_content VARCHAR(255),
                    redirect_url TEXT,
                    processing_time_ms INTEGER,
                    detection_details JSON,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("CREATE INDEX idx_cloaker_visitors_link ON cloaker_visitors(link_id)"))
            conn.execute(text("CREATE INDEX idx_cloaker_visitors_created ON cloaker_visitors(created_at)"))
            conn.execute(text("CREATE INDEX idx_cloaker_visitors_ip ON cloaker_visitors(ip_address)"))
            conn.execute(text("CREATE INDEX idx_cloaker_visitors_fp ON cloaker_visitors(fingerprint_hash)"))
            print("Created cloaker_visitors table")

        # =================================================================
        # TABLE 3: cloaker_domains
        # =================================================================
        if table_exists(conn, "cloaker_domains"):
            print("cloaker_domains table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE cloaker_domains (
                    id VARCHAR(36) PRIMARY KEY,
                    user_id VARCHAR(36) NOT NULL,
                    domain VARCHAR(255) NOT NULL UNIQUE,
                    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    is_default BOOLEAN NOT NULL DEFAULT FALSE,
                    verification_token VARCHAR(64) NOT NULL,
                    dns_status cloaker_dns_status NOT NULL DEFAULT 'pending',
                    ssl_status cloaker_ssl_status NOT NULL DEFAULT 'pending',
                    last_check_at TIMESTAMP,
                    verified_at TIMESTAMP,
                    last_error TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("CREATE INDEX idx_cloaker_domains_user ON cloaker_domains(user_id)"))
            conn.execute(text("""
                CREATE UNIQUE INDEX uq_cloaker_domains_one_default
                ON cloaker_domains(user_id) WHERE is_default
            """))
            print("Created cloaker_domains table")

        # =================================================================
        # TABLE 4: cloaker_rate_limits
        # =================================================================
        if table_exists(conn, "cloaker_rate_limits"):
            print("cloaker_rate_limits table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE cloaker_rate_limits (
                    id SERIAL PRIMARY KEY,
                    link_id VARCHAR(36) NOT NULL REFERENCES cloaked_links(id) ON DELETE CASCADE,
                    ip_address VARCHAR(64) NOT NULL,
                    window_start TIMESTAMP NOT NULL,
                    hits INTEGER NOT NULL DEFAULT 0,
                    CONSTRAINT uq_cloaker_rate_limit_window UNIQUE (link_id, ip_address, window_start)
                )
            """))
            conn.execute(text("CREATE INDEX idx_cloaker_rate_limits_window ON cloaker_rate_limits(window_start)"))
            print("Created cloaker_rate_limits table")

        conn.commit()
        print("Migration complete!")


if __name__ == "__main__":
    run_migration()
