"""Stripe sync queue and product sync columns.

Adds the provider reference columns to the storefront's products table,
creates the sync queue with its claim and dedupe indexes, the stats view
and the triggers that enqueue jobs when a product changes.

Revision ID: 5d2e8a41c7b3
Revises:
Create Date: 2026-10-12 09:00:00.000000+00:00
"""

import sqlalchemy as sa
from alembic import op

revision = "5d2e8a41c7b3"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Products belong to the storefront; only add what the sync needs
    op.execute("ALTER TABLE products ADD COLUMN IF NOT EXISTS stripe_product_id VARCHAR(255)")
    op.execute("ALTER TABLE products ADD COLUMN IF NOT EXISTS stripe_price_id VARCHAR(255)")
    op.execute(
        "ALTER TABLE products ADD COLUMN IF NOT EXISTS sync_status VARCHAR(20) "
        "NOT NULL DEFAULT 'unsynced'"
    )
    op.execute("ALTER TABLE products ADD COLUMN IF NOT EXISTS last_synced_at TIMESTAMP")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_products_stripe_product_id ON products (stripe_product_id)"
    )

    op.create_table(
        "stripe_sync_queue",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("operation_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text()),
        sa.Column("metadata", sa.JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("stripe_product_id", sa.String(255)),
        sa.Column("stripe_price_id", sa.String(255)),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("claimed_at", sa.DateTime()),
        sa.Column("processed_at", sa.DateTime()),
        sa.Column("next_attempt_at", sa.DateTime()),
        sa.CheckConstraint(
            "operation_type IN ('create', 'update', 'delete')",
            name="ck_stripe_sync_queue_operation_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'retrying', 'failed')",
            name="ck_stripe_sync_queue_status",
        ),
    )
    op.create_index("ix_stripe_sync_queue_product_id", "stripe_sync_queue", ["product_id"])
    op.create_index(
        "ix_stripe_sync_queue_status_created", "stripe_sync_queue", ["status", "created_at"]
    )
    # At most one pending job per product
    op.create_index(
        "uq_stripe_sync_queue_pending_product",
        "stripe_sync_queue",
        ["product_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.execute("""
        CREATE VIEW stripe_sync_queue_stats AS
        SELECT
            status,
            operation_type,
            COUNT(*) AS count,
            MIN(created_at) AS oldest_created_at,
            MAX(processed_at) AS last_processed_at
        FROM stripe_sync_queue
        GROUP BY status, operation_type
    """)

    # Catalog edits enqueue jobs. Sync columns are excluded so the processor's
    # own writes never re-trigger.
    op.execute("""
        CREATE OR REPLACE FUNCTION enqueue_stripe_sync() RETURNS trigger AS $$
        DECLARE
            op_type TEXT;
            target_id UUID;
            job_metadata JSON;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                IF OLD.stripe_product_id IS NULL THEN
                    RETURN OLD;
                END IF;
                op_type := 'delete';
                target_id := OLD.id;
                job_metadata := json_build_object(
                    'stripe_product_id', OLD.stripe_product_id,
                    'stripe_price_id', OLD.stripe_price_id
                );
            ELSE
                IF TG_OP = 'INSERT' OR NEW.stripe_product_id IS NULL THEN
                    op_type := 'create';
                ELSE
                    op_type := 'update';
                END IF;
                target_id := NEW.id;
                job_metadata := '{}'::json;
                NEW.sync_status := 'pending';
            END IF;

            INSERT INTO stripe_sync_queue (product_id, operation_type, metadata)
            VALUES (target_id, op_type, job_metadata)
            ON CONFLICT (product_id) WHERE status = 'pending'
            DO UPDATE SET
                operation_type = CASE
                    WHEN EXCLUDED.operation_type = 'delete' THEN 'delete'
                    WHEN stripe_sync_queue.operation_type = 'create' THEN 'create'
                    ELSE EXCLUDED.operation_type
                END,
                metadata = (
                    COALESCE(stripe_sync_queue.metadata::jsonb, '{}'::jsonb)
                    || EXCLUDED.metadata::jsonb
                )::json;

            IF TG_OP = 'DELETE' THEN
                RETURN OLD;
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER products_enqueue_stripe_sync_insert
        BEFORE INSERT ON products
        FOR EACH ROW EXECUTE FUNCTION enqueue_stripe_sync()
    """)
    op.execute("""
        CREATE TRIGGER products_enqueue_stripe_sync_update
        BEFORE UPDATE OF title, description, price, image, images, category, subcategory, available
        ON products
        FOR EACH ROW
        WHEN (
            (OLD.title, OLD.description, OLD.price, OLD.image, OLD.category,
             OLD.subcategory, OLD.available, OLD.images::text)
            IS DISTINCT FROM
            (NEW.title, NEW.description, NEW.price, NEW.image, NEW.category,
             NEW.subcategory, NEW.available, NEW.images::text)
        )
        EXECUTE FUNCTION enqueue_stripe_sync()
    """)
    op.execute("""
        CREATE TRIGGER products_enqueue_stripe_sync_delete
        AFTER DELETE ON products
        FOR EACH ROW EXECUTE FUNCTION enqueue_stripe_sync()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS products_enqueue_stripe_sync_delete ON products")
    op.execute("DROP TRIGGER IF EXISTS products_enqueue_stripe_sync_update ON products")
    op.execute("DROP TRIGGER IF EXISTS products_enqueue_stripe_sync_insert ON products")
    op.execute("DROP FUNCTION IF EXISTS enqueue_stripe_sync()")
    op.execute("DROP VIEW IF EXISTS stripe_sync_queue_stats")
    op.drop_index("uq_stripe_sync_queue_pending_product", table_name="stripe_sync_queue")
    op.drop_index("ix_stripe_sync_queue_status_created", table_name="stripe_sync_queue")
    op.drop_index("ix_stripe_sync_queue_product_id", table_name="stripe_sync_queue")
    op.drop_table("stripe_sync_queue")
    op.execute("DROP INDEX IF EXISTS ix_products_stripe_product_id")
    op.execute("ALTER TABLE products DROP COLUMN IF EXISTS last_synced_at")
    op.execute("ALTER TABLE products DROP COLUMN IF EXISTS sync_status")
    op.execute("ALTER TABLE products DROP COLUMN IF EXISTS stripe_price_id")
    op.execute("ALTER TABLE products DROP COLUMN IF EXISTS stripe_product_id")
