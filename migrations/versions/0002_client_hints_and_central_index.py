# migrations/versions/0002_client_hints_and_central_index.py
from alembic import op
import sqlalchemy as sa

# revision identifiers:
revision = "0002_client_hints_central"
down_revision = "0001_create_event_logs"
branch_labels = None
depends_on = None

BigId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "clienthint_values",
        sa.Column("chv_id", BigId, primary_key=True, autoincrement=True),
        sa.Column("chv_name", sa.String(length=32), nullable=False),
        sa.Column("chv_value", sa.String(length=255), nullable=False),
        sa.UniqueConstraint("chv_name", "chv_value", name="chv_name_value"),
    )
    op.create_table(
        "clienthint_map",
        sa.Column("chm_value_id", sa.BigInteger(), nullable=False),
        sa.Column("chm_reference_type", sa.SmallInteger(), nullable=False),
        sa.Column("chm_reference_id", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("chm_reference_type", "chm_reference_id", "chm_value_id"),
    )
    op.create_index("chm_value_id", "clienthint_map", ["chm_value_id"])

    op.create_table(
        "domain_map",
        sa.Column("dm_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("dm_domain", sa.String(length=255), nullable=False, unique=True),
    )
    op.create_table(
        "central_actor_activity",
        sa.Column("caa_central_id", sa.BigInteger(), nullable=False),
        sa.Column("caa_domain_id", sa.Integer(), nullable=False),
        sa.Column("caa_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("caa_central_id", "caa_domain_id"),
    )
    op.create_index("caa_central_id_timestamp", "central_actor_activity", ["caa_central_id", "caa_timestamp"])
    op.create_index("caa_domain_timestamp", "central_actor_activity", ["caa_domain_id", "caa_timestamp"])
    op.create_table(
        "central_temp_activity",
        sa.Column("cta_ip_hex", sa.String(length=255), nullable=False),
        sa.Column("cta_domain_id", sa.Integer(), nullable=False),
        sa.Column("cta_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cta_ip_hex", "cta_domain_id"),
    )
    op.create_index("cta_domain_timestamp", "central_temp_activity", ["cta_domain_id", "cta_timestamp"])

    op.create_table(
        "job_locks",
        sa.Column("jl_name", sa.String(length=255), primary_key=True),
        sa.Column("jl_owner", sa.String(length=64), nullable=False),
        sa.Column("jl_expires", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_locks")
    op.drop_index("cta_domain_timestamp", table_name="central_temp_activity")
    op.drop_table("central_temp_activity")
    op.drop_index("caa_domain_timestamp", table_name="central_actor_activity")
    op.drop_index("caa_central_id_timestamp", table_name="central_actor_activity")
    op.drop_table("central_actor_activity")
    op.drop_table("domain_map")
    op.drop_index("chm_value_id", table_name="clienthint_map")
    op.drop_table("clienthint_map")
    op.drop_table("clienthint_values")
