"""initial_hierarchy_sync_schema

Creates the roadmap-sync schema:
  - workspaces             : tenant boundary + encrypted connection credentials
  - products / components / initiatives / features
                           : Hierarchy Store (features.parent_id self-reference)
  - initiative_features / component_initiatives
                           : junction sets
  - sync_history           : Ledger; one in_progress row per workspace
  - entity_mappings        : Source ↔ Target anchor rows
  - ranking_records        : board priority snapshots

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7c1e2a9b4d10
Revises:
Create Date: 2026-10-18 09:12:44.513201
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e2a9b4d10'
down_revision = None
branch_labels = None
depends_on = None


def _workspace_fk():
    return sa.Column(
        "workspace_id", sa.String(length=36),
        sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
    )


def _source_entity_columns():
    return [
        sa.Column("id", sa.String(length=36), nullable=False),
        _workspace_fk(),
        sa.Column("source_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=100), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Workspace ─────────────────────────────────────────────────────────
    if "workspaces" not in existing:
        op.create_table(
            "workspaces",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("source_api_url", sa.String(length=500), nullable=True),
            sa.Column(
                "encrypted_source_token", sa.Text(), nullable=True,
                comment="Fernet-encrypted Source System API token. NEVER expose.",
            ),
            sa.Column("target_organization", sa.String(length=200), nullable=True),
            sa.Column("target_project", sa.String(length=200), nullable=True),
            sa.Column(
                "encrypted_target_token", sa.Text(), nullable=True,
                comment="Fernet-encrypted Target System personal access token. NEVER expose.",
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    # ── Hierarchy Store ───────────────────────────────────────────────────
    if "products" not in existing:
        op.create_table(
            "products",
            *_source_entity_columns(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workspace_id", "source_id", name="uq_products_ws_source"),
        )
        op.create_index("ix_products_workspace_id", "products", ["workspace_id"])

    if "components" not in existing:
        op.create_table(
            "components",
            *_source_entity_columns(),
            sa.Column(
                "product_id", sa.String(length=36),
                sa.ForeignKey("products.id", ondelete="SET NULL"), nullable=True,
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workspace_id", "source_id", name="uq_components_ws_source"),
        )
        op.create_index("ix_components_workspace_id", "components", ["workspace_id"])
        op.create_index("ix_components_product_id", "components", ["product_id"])

    if "initiatives" not in existing:
        op.create_table(
            "initiatives",
            *_source_entity_columns(),
            sa.Column(
                "product_id", sa.String(length=36),
                sa.ForeignKey("products.id", ondelete="SET NULL"), nullable=True,
            ),
            sa.Column("timeframe", sa.JSON(), nullable=True),
            sa.Column("owner", sa.String(length=200), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workspace_id", "source_id", name="uq_initiatives_ws_source"),
        )
        op.create_index("ix_initiatives_workspace_id", "initiatives", ["workspace_id"])
        op.create_index("ix_initiatives_product_id", "initiatives", ["product_id"])

    if "features" not in existing:
        op.create_table(
            "features",
            *_source_entity_columns(),
            sa.Column(
                "component_id", sa.String(length=36),
                sa.ForeignKey("components.id", ondelete="SET NULL"), nullable=True,
            ),
            # No ON DELETE action: teardown strips leaves first.
            sa.Column("parent_id", sa.String(length=36), sa.ForeignKey("features.id"), nullable=True),
            sa.Column("owner", sa.String(length=200), nullable=True),
            sa.Column("target_start_date", sa.Date(), nullable=True),
            sa.Column("target_end_date", sa.Date(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workspace_id", "source_id", name="uq_features_ws_source"),
        )
        op.create_index("ix_features_workspace_id", "features", ["workspace_id"])
        op.create_index("ix_features_component_id", "features", ["component_id"])
        op.create_index("ix_features_ws_parent", "features", ["workspace_id", "parent_id"])

    if "initiative_features" not in existing:
        op.create_table(
            "initiative_features",
            sa.Column("id", sa.String(length=36), nullable=False),
            _workspace_fk(),
            sa.Column(
                "initiative_id", sa.String(length=36),
                sa.ForeignKey("initiatives.id", ondelete="CASCADE"), nullable=False,
            ),
            sa.Column(
                "feature_id", sa.String(length=36),
                sa.ForeignKey("features.id", ondelete="CASCADE"), nullable=False,
            ),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("initiative_id", "feature_id", name="uq_initiative_features_pair"),
        )
        op.create_index("ix_initiative_features_workspace_id", "initiative_features", ["workspace_id"])
        op.create_index("ix_initiative_features_initiative_id", "initiative_features", ["initiative_id"])
        op.create_index("ix_initiative_features_feature_id", "initiative_features", ["feature_id"])

    if "component_initiatives" not in existing:
        op.create_table(
            "component_initiatives",
            sa.Column("id", sa.String(length=36), nullable=False),
            _workspace_fk(),
            sa.Column(
                "component_id", sa.String(length=36),
                sa.ForeignKey("components.id", ondelete="CASCADE"), nullable=False,
            ),
            sa.Column(
                "initiative_id", sa.String(length=36),
                sa.ForeignKey("initiatives.id", ondelete="CASCADE"), nullable=False,
            ),
            sa.Column("direct_link", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column(
                "link_via_feature_id", sa.String(length=36),
                sa.ForeignKey("features.id", ondelete="SET NULL"), nullable=True,
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("component_id", "initiative_id", name="uq_component_initiatives_pair"),
        )
        op.create_index("ix_component_initiatives_workspace_id", "component_initiatives", ["workspace_id"])
        op.create_index("ix_component_initiatives_component_id", "component_initiatives", ["component_id"])
        op.create_index("ix_component_initiatives_initiative_id", "component_initiatives", ["initiative_id"])

    # ── Ledger ────────────────────────────────────────────────────────────
    if "sync_history" not in existing:
        op.create_table(
            "sync_history",
            sa.Column("id", sa.String(length=36), nullable=False),
            _workspace_fk(),
            sa.Column(
                "status", sa.String(length=20), nullable=False,
                comment="in_progress | completed | failed",
            ),
            sa.Column("products_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("components_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("features_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("initiatives_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("initiative_features_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("component_initiatives_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sync_history_workspace_id", "sync_history", ["workspace_id"])
        op.create_index("ix_sync_history_ws_started", "sync_history", ["workspace_id", "started_at"])
        op.create_index(
            "uq_sync_history_one_active", "sync_history", ["workspace_id"],
            unique=True,
            sqlite_where=sa.text("status = 'in_progress'"),
            postgresql_where=sa.text("status = 'in_progress'"),
        )

    # ── Entity mapping ────────────────────────────────────────────────────
    if "entity_mappings" not in existing:
        op.create_table(
            "entity_mappings",
            sa.Column("id", sa.String(length=36), nullable=False),
            _workspace_fk(),
            sa.Column("source_id", sa.String(length=100), nullable=False),
            sa.Column("source_parent_id", sa.String(length=100), nullable=True),
            sa.Column(
                "source_type", sa.String(length=20), nullable=True,
                comment="initiative | feature | subfeature",
            ),
            sa.Column("target_id", sa.String(length=50), nullable=True),
            sa.Column("target_title", sa.String(length=500), nullable=True),
            sa.Column(
                "sync_status", sa.String(length=20), nullable=False,
                server_default="unsynced",
                comment="unsynced | synced | conflict",
            ),
            sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workspace_id", "source_id", name="uq_entity_mappings_ws_source"),
        )
        op.create_index("ix_entity_mappings_workspace_id", "entity_mappings", ["workspace_id"])
        op.create_index("ix_entity_mappings_ws_target", "entity_mappings", ["workspace_id", "target_id"])

    # ── Rankings ──────────────────────────────────────────────────────────
    if "ranking_records" not in existing:
        op.create_table(
            "ranking_records",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            _workspace_fk(),
            sa.Column("board_id", sa.String(length=100), nullable=False),
            sa.Column("sync_history_id", sa.String(length=36), nullable=False),
            sa.Column("story_id", sa.String(length=100), nullable=False),
            sa.Column("story_name", sa.String(length=500), nullable=True),
            sa.Column("current_rank", sa.Integer(), nullable=False),
            sa.Column("previous_rank", sa.Integer(), nullable=True),
            sa.Column("matching_id", sa.String(length=50), nullable=True),
            sa.Column("is_synced_to_ado", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("sync_history_id", "story_id", name="uq_ranking_records_batch_story"),
        )
        op.create_index("ix_ranking_records_workspace_id", "ranking_records", ["workspace_id"])
        op.create_index("ix_ranking_records_ws_board", "ranking_records", ["workspace_id", "board_id"])
        op.create_index("ix_ranking_records_sync_history_id", "ranking_records", ["sync_history_id"])


def downgrade():
    for table in (
        "ranking_records",
        "entity_mappings",
        "sync_history",
        "component_initiatives",
        "initiative_features",
        "features",
        "initiatives",
        "components",
        "products",
        "workspaces",
    ):
        op.drop_table(table)
