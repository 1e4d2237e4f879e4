import logging
import os

import duckdb

# --- Configuration ---
DB_FILE = "data/stats_warehouse.db"
SOURCE_DB_FILE = "data/journals_source.db"
LOG_FILE = "etl.log"

# Dimensions that are just <name>_key plus a unique value column
GENERIC_DIMENSIONS = [
    ("alert_profile", "alert_profile"),
    ("filename", "filename"),
    ("http_status", "http_status"),
    ("ip_address", "ip_address"),
    ("ref_target", "ref_target"),
    ("rss_type", "rss_type"),
    ("service", "service_code"),
    ("syndicategroup", "syndicategroup"),
    ("ticket_session", "ticket_session_id"),
    ("user_agent", "user_agent"),
]


def setup_database(db_file: str = None):
    """
    Connects to the DuckDB warehouse and creates the dimension, sequence and
    fact load tables if they don't exist. Every dimension has a BIGINT
    surrogate key and a UNIQUE natural key, which is what lets sibling workers
    race on inserts safely.
    """
    db_file = db_file or DB_FILE
    os.makedirs(os.path.dirname(db_file) or ".", exist_ok=True)
    con = duckdb.connect(db_file)
    logging.info(f"Successfully connected to DuckDB database: {db_file}")

    # Surrogate key allocation, one row per dimension / fact sequence
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS etl_sequences (
        name VARCHAR PRIMARY KEY,
        last_value BIGINT NOT NULL
    );
    """
    )

    for name, column in GENERIC_DIMENSIONS:
        con.execute(
            f"""
        CREATE TABLE IF NOT EXISTS dim_{name} (
            {name}_key BIGINT PRIMARY KEY,
            {column} VARCHAR NOT NULL UNIQUE
        );
        """
        )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_access (
        access_key BIGINT PRIMARY KEY,
        access_id VARCHAR NOT NULL UNIQUE,
        access_role VARCHAR,
        free_reason_code VARCHAR,
        free_reason_name VARCHAR,
        collection_code VARCHAR,
        collection_name VARCHAR,
        age_years INTEGER,
        age_days INTEGER
    );
    """
    )

    # Journal content at any level: issn, issn/vol, issn/vol/iss or a full article
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_content_item (
        content_item_key BIGINT PRIMARY KEY,
        content_item VARCHAR NOT NULL UNIQUE,
        issn VARCHAR,
        volnum VARCHAR,
        issnum VARCHAR,
        artnum VARCHAR,
        cover_date DATE,
        online_date DATE,
        article_type VARCHAR,
        journal_name_full VARCHAR,
        journal_name_short VARCHAR,
        ecs VARCHAR,
        title VARCHAR,
        authors VARCHAR
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_country (
        country_key BIGINT PRIMARY KEY,
        country_code VARCHAR NOT NULL UNIQUE,
        country_name VARCHAR
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_date (
        date_key BIGINT PRIMARY KEY,
        date_value DATE NOT NULL UNIQUE,
        year INTEGER,
        quarter VARCHAR,
        month_num INTEGER,
        month_name VARCHAR,
        day_of_month INTEGER,
        day_of_week VARCHAR,
        week_num INTEGER
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_external_authen (
        external_authen_key BIGINT PRIMARY KEY,
        authen_value VARCHAR NOT NULL UNIQUE,
        authen_service VARCHAR,
        authen_id VARCHAR
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_identity (
        identity_key BIGINT PRIMARY KEY,
        identity_id VARCHAR NOT NULL UNIQUE,
        classification VARCHAR,
        include_identity BOOLEAN,
        country_key BIGINT
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_ics_session (
        ics_session_key BIGINT PRIMARY KEY,
        ics_session_id VARCHAR NOT NULL UNIQUE,
        identity_key_primary BIGINT,
        syndicategroup_key BIGINT
    );
    """
    )

    # Participation of every identity in a session: primary/shared/individual/inherited
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_session_identity (
        ics_session_key BIGINT NOT NULL,
        identity_key BIGINT NOT NULL,
        participation_type VARCHAR NOT NULL,
        PRIMARY KEY (ics_session_key, identity_key)
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_syndicategroup_identity (
        syndicategroup_key BIGINT NOT NULL,
        identity_key BIGINT NOT NULL,
        PRIMARY KEY (syndicategroup_key, identity_key)
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_license (
        license_key BIGINT PRIMARY KEY,
        license_id VARCHAR NOT NULL UNIQUE,
        subscription_id VARCHAR,
        product_id VARCHAR,
        identity_key BIGINT
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_page_type (
        page_type_key BIGINT PRIMARY KEY,
        page_type_exp VARCHAR NOT NULL UNIQUE,
        page_type VARCHAR
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_referrer (
        referrer_key BIGINT PRIMARY KEY,
        referrer VARCHAR NOT NULL UNIQUE,
        host VARCHAR
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_search (
        search_key BIGINT PRIMARY KEY,
        search_value VARCHAR NOT NULL UNIQUE,
        search_query VARCHAR,
        search_field VARCHAR,
        search_within VARCHAR
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_url (
        url_key BIGINT PRIMARY KEY,
        url VARCHAR NOT NULL UNIQUE,
        host VARCHAR,
        path VARCHAR,
        query VARCHAR
    );
    """
    )

    # Names are filled in by the directory reconciliation pass
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_userid (
        userid VARCHAR PRIMARY KEY,
        username VARCHAR
    );
    """
    )

    # Column metadata for the bulk-load file header; rows arrive via the loader
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS fact_request_load (
        request_key BIGINT,
        request_id VARCHAR,
        year INTEGER,
        date_key BIGINT,
        request_timestamp TIMESTAMP,
        service_key BIGINT,
        ticket_session_key BIGINT,
        ip_address_key BIGINT,
        country_key_ip BIGINT,
        country_key_inst BIGINT,
        userid BIGINT,
        page_type_key BIGINT,
        identity_key_primary BIGINT,
        identity_key_license BIGINT,
        user_agent_key BIGINT,
        from_alert BOOLEAN,
        license_key BIGINT,
        http_status_key BIGINT,
        access_key BIGINT,
        content_item_key BIGINT,
        filename_key BIGINT,
        referrer_key BIGINT,
        ref_target_key BIGINT,
        rss_type_key BIGINT,
        include_identity BOOLEAN,
        include_status BOOLEAN,
        ics_session_key BIGINT,
        external_authen_key BIGINT,
        syndicategroup_key BIGINT,
        url_key BIGINT,
        search_key BIGINT,
        alert_profile_key BIGINT,
        usage_count INTEGER
    );
    """
    )

    con.close()
    logging.info("Database setup complete. Connection closed.")


def setup_source_database(db_file: str = None):
    """Creates the journal catalogue tables read by the content and access resolvers."""
    db_file = db_file or SOURCE_DB_FILE
    os.makedirs(os.path.dirname(db_file) or ".", exist_ok=True)
    con = duckdb.connect(db_file)
    logging.info(f"Successfully connected to DuckDB database: {db_file}")

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS jnl_journals (
        issn VARCHAR PRIMARY KEY,
        name_full VARCHAR,
        name_short VARCHAR
    );
    CREATE TABLE IF NOT EXISTS jnl_volumes (
        issn VARCHAR NOT NULL,
        volnum VARCHAR NOT NULL,
        volnum_phys VARCHAR,
        PRIMARY KEY (issn, volnum)
    );
    CREATE TABLE IF NOT EXISTS jnl_issues (
        issn VARCHAR NOT NULL,
        volnum VARCHAR NOT NULL,
        issnum VARCHAR NOT NULL,
        issnum_phys VARCHAR,
        PRIMARY KEY (issn, volnum, issnum)
    );
    """
    )

    # cover_date is free text upstream and is sanitised on the way in
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS jnl_articles (
        issn VARCHAR NOT NULL,
        volnum VARCHAR NOT NULL,
        issnum VARCHAR NOT NULL,
        artnum VARCHAR NOT NULL,
        cover_date VARCHAR,
        online_date DATE,
        article_type VARCHAR,
        ecs VARCHAR,
        title VARCHAR,
        authors VARCHAR,
        PRIMARY KEY (issn, volnum, issnum, artnum)
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS jnl_free_reasons (
        reason_reason VARCHAR PRIMARY KEY,
        reason_description VARCHAR,
        reason_priority INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE IF NOT EXISTS jnl_free_history (
        free_item VARCHAR NOT NULL,
        free_reason VARCHAR NOT NULL,
        free_start DATE,
        free_end DATE
    );
    CREATE TABLE IF NOT EXISTS jnl_collections (
        cln_id VARCHAR PRIMARY KEY,
        cln_name VARCHAR
    );
    """
    )

    con.close()
    logging.info("Source catalogue setup complete. Connection closed.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.FileHandler(LOG_FILE, mode="a"), logging.StreamHandler()],
    )
    logging.info("--- Starting Database Setup ---")
    setup_database()
    logging.info("--- Database Setup Finished ---")
