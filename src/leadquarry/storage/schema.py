"""
Database schema for the feedback and email-pattern store.
"""

from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, Index, Integer, MetaData, Table, Text
from sqlalchemy.sql import func

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

BOUNCE_TYPES = ("hard", "soft", "complaint", "unsubscribe")

domain_patterns_table = Table(
    "domain_patterns",
    metadata,
    Column("domain", Text, primary_key=True),
    Column("email_pattern", Text, nullable=False),
    Column("pattern_confidence", Float, nullable=False, server_default="0.5"),
    Column("sample_count", Integer, nullable=False, server_default="1"),
    Column("last_updated", DateTime, server_default=func.now()),
)

verified_businesses_table = Table(
    "verified_businesses",
    metadata,
    Column("business_id", Text, primary_key=True),
    Column("verification_score", Integer, nullable=False, server_default="50"),
    Column("positive_reports", Integer, nullable=False, server_default="0"),
    Column("negative_reports", Integer, nullable=False, server_default="0"),
    Column("total_reports", Integer, nullable=False, server_default="0"),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("phone_verified", Boolean, nullable=False, server_default="0"),
    Column("address_verified", Boolean, nullable=False, server_default="0"),
    Column("website_verified", Boolean, nullable=False, server_default="0"),
    Column("is_closed", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    CheckConstraint("verification_score BETWEEN 0 AND 100", name="score_range"),
    CheckConstraint("positive_reports + negative_reports = total_reports", name="report_totals"),
)

email_bounces_table = Table(
    "email_bounces",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", Text, nullable=False, index=True),
    Column("domain", Text, nullable=False),
    Column("bounce_type", Text, nullable=False),
    Column("reason", Text),
    Column("business_id", Text),
    Column("bounced_at", DateTime, server_default=func.now()),
    CheckConstraint(
        "bounce_type IN ('hard', 'soft', 'complaint', 'unsubscribe')",
        name="bounce_type",
    ),
)

user_feedback_table = Table(
    "user_feedback",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("business_id", Text, nullable=False, index=True),
    Column("feedback_type", Text, nullable=False),
    Column("field", Text),
    Column("original_value", Text),
    Column("corrected_value", Text),
    Column("confidence_impact", Float, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.now()),
)

# Indexes for common query patterns
Index("ix_email_bounces_domain_bounced_at", email_bounces_table.c.domain, email_bounces_table.c.bounced_at)
Index("ix_user_feedback_type_created_at", user_feedback_table.c.feedback_type, user_feedback_table.c.created_at)
