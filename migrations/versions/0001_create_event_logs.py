# migrations/versions/0001_create_event_logs.py
from alembic import op
import sqlalchemy as sa

# revision identifiers:
revision = "0001_create_event_logs"
down_revision = None
branch_labels = None
depends_on = None

BigId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _addresses(prefix: str) -> list:
    return [
        sa.Column(f"{prefix}_ip", sa.String(length=255), nullable=True),
        sa.Column(f"{prefix}_ip_hex", sa.String(length=255), nullable=True),
        sa.Column(f"{prefix}_xff", sa.String(length=255), nullable=True),
        sa.Column(f"{prefix}_xff_hex", sa.String(length=255), nullable=True),
        sa.Column(f"{prefix}_agent", sa.String(length=255), nullable=True),
    ]


def _event_indexes(prefix: str, table: str) -> None:
    op.create_index(f"{prefix}_actor_ip_time", table, [f"{prefix}_actor", f"{prefix}_ip", f"{prefix}_timestamp"])
    op.create_index(f"{prefix}_ip_hex_time", table, [f"{prefix}_ip_hex", f"{prefix}_timestamp"])
    op.create_index(f"{prefix}_xff_hex_time", table, [f"{prefix}_xff_hex", f"{prefix}_timestamp"])
    op.create_index(f"{prefix}_timestamp", table, [f"{prefix}_timestamp"])


def upgrade() -> None:
    op.create_table(
        "actors",
        sa.Column("actor_id", BigId, primary_key=True, autoincrement=True),
        sa.Column("actor_user", sa.Integer(), nullable=True, unique=True),
        sa.Column("actor_name", sa.String(length=255), nullable=False, unique=True),
    )
    op.create_table(
        "comments",
        sa.Column("comment_id", BigId, primary_key=True, autoincrement=True),
        sa.Column("comment_text", sa.Text(), nullable=False),
        sa.Column("comment_data", sa.Text(), nullable=True),
    )
    op.create_table(
        "log_entries",
        sa.Column("log_id", BigId, primary_key=True, autoincrement=True),
        sa.Column("log_type", sa.String(length=32), nullable=False),
        sa.Column("log_action", sa.String(length=32), nullable=False),
        sa.Column("log_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("log_actor", sa.BigInteger(), nullable=False),
        sa.Column("log_namespace", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("log_title", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("log_page", sa.Integer(), nullable=True),
        sa.Column("log_comment_id", sa.BigInteger(), nullable=True),
        sa.Column("log_params", sa.LargeBinary(), nullable=True),
        sa.Column("log_deleted", sa.SmallInteger(), nullable=False, server_default="0"),
    )

    op.create_table(
        "change_events",
        sa.Column("ce_id", BigId, primary_key=True, autoincrement=True),
        sa.Column("ce_page_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ce_namespace", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ce_title", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("ce_actor", sa.BigInteger(), nullable=False),
        sa.Column("ce_actiontext", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("ce_comment_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("ce_minor", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("ce_this_oldid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ce_last_oldid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ce_type", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("ce_timestamp", sa.DateTime(timezone=True), nullable=False),
        *_addresses("ce"),
    )
    _event_indexes("ce", "change_events")
    op.create_index("ce_this_oldid", "change_events", ["ce_this_oldid"])

    op.create_table(
        "log_events",
        sa.Column("le_id", BigId, primary_key=True, autoincrement=True),
        sa.Column("le_log_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("le_actor", sa.BigInteger(), nullable=False),
        sa.Column("le_timestamp", sa.DateTime(timezone=True), nullable=False),
        *_addresses("le"),
    )
    _event_indexes("le", "log_events")

    op.create_table(
        "private_events",
        sa.Column("pe_id", BigId, primary_key=True, autoincrement=True),
        sa.Column("pe_namespace", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pe_title", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("pe_page", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pe_actor", sa.BigInteger(), nullable=False),
        sa.Column("pe_log_type", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("pe_log_action", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("pe_params", sa.LargeBinary(), nullable=True),
        sa.Column("pe_comment_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("pe_timestamp", sa.DateTime(timezone=True), nullable=False),
        *_addresses("pe"),
    )
    _event_indexes("pe", "private_events")


def downgrade() -> None:
    op.drop_index("ce_this_oldid", table_name="change_events")
    for prefix, table in (("pe", "private_events"), ("le", "log_events"), ("ce", "change_events")):
        for suffix in ("timestamp", "xff_hex_time", "ip_hex_time", "actor_ip_time"):
            op.drop_index(f"{prefix}_{suffix}", table_name=table)
        op.drop_table(table)
    op.drop_table("log_entries")
    op.drop_table("comments")
    op.drop_table("actors")
