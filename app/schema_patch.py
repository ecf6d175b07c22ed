from sqlalchemy import text

from app.database import engine


def _get_table_columns(conn, table_name: str):
    if conn.dialect.name == "sqlite":
        result = conn.execute(text(f"PRAGMA table_info({table_name})"))
        return {row[1] for row in result}

    result = conn.execute(
        text(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = :table_name
            """
        ),
        {"table_name": table_name},
    )
    return {row[0] for row in result}


def ensure_subscription_renewal_columns(bind=None):
    """
    Patch subscriptions table schema in-place for databases created before renewal chains.
    """
    with (bind or engine).begin() as conn:
        columns = _get_table_columns(conn, "subscriptions")
        if not columns:
            return

        if "original_start_date" not in columns:
            conn.execute(text("ALTER TABLE subscriptions ADD COLUMN original_start_date TIMESTAMP"))

        if "contiguous_chain_id" not in columns:
            conn.execute(text("ALTER TABLE subscriptions ADD COLUMN contiguous_chain_id VARCHAR"))

        if "renewed_from_id" not in columns:
            conn.execute(text("ALTER TABLE subscriptions ADD COLUMN renewed_from_id INTEGER"))

        if "replaced_subscription_id" not in columns:
            conn.execute(text("ALTER TABLE subscriptions ADD COLUMN replaced_subscription_id INTEGER"))

        if "is_renewal" not in columns:
            conn.execute(text("ALTER TABLE subscriptions ADD COLUMN is_renewal BOOLEAN NOT NULL DEFAULT FALSE"))


def ensure_latest_subscription_index(bind=None):
    """
    Enforce one latest subscription per (user, product) for databases without the index.
    """
    with (bind or engine).begin() as conn:
        columns = _get_table_columns(conn, "subscriptions")
        if "is_latest" not in columns:
            return

        predicate = "is_latest = 1" if conn.dialect.name == "sqlite" else "is_latest"
        conn.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_subscriptions_latest_per_product "
                f"ON subscriptions (user_id, product_id) WHERE {predicate}"
            )
        )


def ensure_promo_usage_columns(bind=None):
    """
    Allow usage limits and validity windows on promo codes created before they existed.
    """
    with (bind or engine).begin() as conn:
        columns = _get_table_columns(conn, "promo_codes")
        if not columns:
            return

        if "usage_count" not in columns:
            conn.execute(text("ALTER TABLE promo_codes ADD COLUMN usage_count INTEGER NOT NULL DEFAULT 0"))

        if "usage_limit" not in columns:
            conn.execute(text("ALTER TABLE promo_codes ADD COLUMN usage_limit INTEGER"))

        if "valid_from" not in columns:
            conn.execute(text("ALTER TABLE promo_codes ADD COLUMN valid_from TIMESTAMP"))

        if "valid_until" not in columns:
            conn.execute(text("ALTER TABLE promo_codes ADD COLUMN valid_until TIMESTAMP"))


def apply_schema_patches(bind=None):
    ensure_subscription_renewal_columns(bind)
    ensure_latest_subscription_index(bind)
    ensure_promo_usage_columns(bind)
