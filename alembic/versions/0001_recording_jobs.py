from alembic import op
import sqlalchemy as sa

revision = "0001_recording_jobs"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE = sa.text("status IN ('recording', 'processing')")


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)

    # create only when missing
    if not insp.has_table("recording_jobs"):
        op.create_table(
            "recording_jobs",
            sa.Column("id", sa.String(32), primary_key=True),
            sa.Column("room_id", sa.String(64), nullable=False),
            sa.Column("room_code", sa.String(64), nullable=False),
            sa.Column("room_name", sa.String(255), nullable=False),
            sa.Column("owner_id", sa.String(64), nullable=False),
            sa.Column("owner_name", sa.String(255)),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("start_time", sa.DateTime, nullable=False),
            sa.Column("end_time", sa.DateTime),
            sa.Column("duration_seconds", sa.Integer),
            sa.Column("storage_locator", sa.String(512)),
            sa.Column("storage_url", sa.String(1024)),
            sa.Column("file_size_bytes", sa.BigInteger),
            sa.Column("scratch_file_path", sa.String(1024)),
            sa.Column("error_detail", sa.Text),
            sa.Column("retention_deadline", sa.DateTime),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.current_timestamp()),
            sa.Column("updated_at", sa.DateTime, server_default=sa.func.current_timestamp()),
        )
        op.create_index("ix_recording_jobs_room_id", "recording_jobs", ["room_id"])
        op.create_index("ix_recording_jobs_owner_id", "recording_jobs", ["owner_id"])
        op.create_index("ix_recording_jobs_status", "recording_jobs", ["status"])
        op.create_index("ix_recording_jobs_retention_deadline", "recording_jobs", ["retention_deadline"])
        op.create_index(
            "uq_recording_jobs_active_room",
            "recording_jobs",
            ["room_id"],
            unique=True,
            sqlite_where=ACTIVE,
            postgresql_where=ACTIVE,
        )

    if not insp.has_table("recording_participants"):
        op.create_table(
            "recording_participants",
            sa.Column(
                "recording_id",
                sa.String(32),
                sa.ForeignKey("recording_jobs.id", ondelete="CASCADE"),
                primary_key=True,
            ),
            sa.Column("user_id", sa.String(64), primary_key=True),
        )
        op.create_index("ix_recording_participants_user_id", "recording_participants", ["user_id"])


def downgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    # drop only what exists
    if insp.has_table("recording_participants"):
        op.drop_table("recording_participants")
    if insp.has_table("recording_jobs"):
        op.drop_table("recording_jobs")
