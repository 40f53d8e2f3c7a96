"""Initial dispatch schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_user_role = postgresql.ENUM("client", "technician", "admin", name="user_role", create_type=False)
_service_category = postgresql.ENUM(
    "electrician", "mechanic", "plumber", name="service_category", create_type=False
)
_request_status = postgresql.ENUM(
    "pending", "accepted", "in_progress", "completed", "cancelled",
    name="request_status",
    create_type=False,
)
_urgency = postgresql.ENUM("low", "medium", "high", "emergency", name="urgency", create_type=False)
_availability_status = postgresql.ENUM(
    "available", "busy", "offline", name="availability_status", create_type=False
)
_session_status = postgresql.ENUM(
    "active", "paused", "completed", "cancelled", name="session_status", create_type=False
)

_ENUMS = (
    _user_role,
    _service_category,
    _request_status,
    _urgency,
    _availability_status,
    _session_status,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("display_name", sa.String(200), nullable=True),
        sa.Column("role", _user_role, nullable=False),
        sa.Column("verification_code", sa.String(16), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "service_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "client_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "technician_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("service_category", _service_category, nullable=False),
        sa.Column("status", _request_status, nullable=False),
        sa.Column("urgency", _urgency, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("location_lat", sa.Numeric(10, 8), nullable=False),
        sa.Column("location_lng", sa.Numeric(11, 8), nullable=False),
        sa.Column("location_address", sa.Text, nullable=False),
        sa.Column("distance_km", sa.Numeric(8, 3), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_service_requests_client_id", "service_requests", ["client_id"])
    op.create_index("idx_service_requests_technician_id", "service_requests", ["technician_id"])
    op.create_index("idx_service_requests_status", "service_requests", ["status"])

    op.create_table(
        "technician_locations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "technician_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("service_category", _service_category, nullable=True),
        sa.Column("rating", sa.Float, nullable=False),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("accuracy", sa.Float, nullable=True),
        sa.Column("heading", sa.Float, nullable=True),
        sa.Column("speed", sa.Float, nullable=True),
        sa.Column("availability_status", _availability_status, nullable=False),
        sa.Column("reported_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "idx_technician_locations_category_availability",
        "technician_locations",
        ["service_category", "availability_status"],
    )

    op.create_table(
        "service_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "service_request_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("service_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("technician_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", _session_status, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "uq_service_sessions_open_request",
        "service_sessions",
        ["service_request_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('active', 'paused')"),
    )
    op.create_index(
        "idx_service_sessions_technician_status",
        "service_sessions",
        ["technician_id", "status"],
    )
    op.create_index(
        "idx_service_sessions_client_status",
        "service_sessions",
        ["client_id", "status"],
    )

    op.create_table(
        "location_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "service_session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("service_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("technician_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("lat", sa.Float, nullable=False),
        sa.Column("lng", sa.Float, nullable=False),
        sa.Column("accuracy", sa.Float, nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "service_session_id",
            "recorded_at",
            name="uq_location_history_session_recorded_at",
        ),
    )
    op.create_index(
        "idx_location_history_technician_time",
        "location_history",
        ["technician_id", "recorded_at"],
    )


def downgrade() -> None:
    op.drop_table("location_history")
    op.drop_table("service_sessions")
    op.drop_table("technician_locations")
    op.drop_table("service_requests")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
