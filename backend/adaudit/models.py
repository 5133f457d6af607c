"""
Ads Audit Decisions — Database Models
Versioned decisions, change sets, export artifacts and the activity log.
All data persisted to PostgreSQL.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime, LargeBinary,
    JSON, ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID
from adaudit.database import Base


def _utcnow() -> datetime:
    """Naive UTC now, matching the TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class DecisionStatus(str, enum.Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    EXPORTED = "exported"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


class ChangeSetStatus(str, enum.Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    EXPORTED = "exported"
    APPLIED = "applied"


class EntityType(str, enum.Enum):
    CAMPAIGN = "campaign"
    AD_GROUP = "ad_group"
    KEYWORD = "keyword"
    NEGATIVE_KEYWORD_CAMPAIGN = "negative_keyword_campaign"
    NEGATIVE_KEYWORD_ADGROUP = "negative_keyword_adgroup"
    AD = "ad"
    ASSET = "asset"
    SITELINK = "sitelink"
    CALL_EXTENSION = "call_extension"
    SEARCH_TERM = "search_term"


class ActionType(str, enum.Enum):
    PAUSE = "pause"
    ENABLE = "enable"
    REMOVE = "remove"
    ADD = "add"
    UPDATE_STATUS = "update_status"
    UPDATE_BID = "update_bid"
    UPDATE_BUDGET = "update_budget"
    UPDATE_URL = "update_url"
    UPDATE_MATCH_TYPE = "update_match_type"
    UPDATE_AD_COPY = "update_ad_copy"
    UPDATE_BIDDING_STRATEGY = "update_bidding_strategy"
    PROMOTE_TO_KEYWORD = "promote_to_keyword"
    ADD_AS_NEGATIVE = "add_as_negative"


# Statuses a decision may hold while it sits in a change set
ATTACHABLE_STATUSES = (DecisionStatus.DRAFT.value, DecisionStatus.APPROVED.value)
# Exported/applied decisions are part of the audit trail
FROZEN_STATUSES = (DecisionStatus.EXPORTED.value, DecisionStatus.APPLIED.value)

ENTITY_ID_MAX_LENGTH = 100
ENTITY_NAME_MAX_LENGTH = 500


# ══════════════════════════════════════════════════════════════════════
#  CHANGE SETS — Named bundles of decisions destined for one export
# ══════════════════════════════════════════════════════════════════════

class ChangeSet(Base):
    """
    A named bundle of decisions. Membership lives on the decision side
    (decisions.change_set_id); a change set never owns decision rows.
    """
    __tablename__ = "change_sets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    audit_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ChangeSetStatus.DRAFT.value)

    # Manifest of the last export: [{"filename": "...", "rows": 3}]
    export_files: Mapped[list] = mapped_column(JSON, nullable=True)
    export_hash: Mapped[str] = mapped_column(String(64), nullable=True)

    created_by: Mapped[str] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)
    approved_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    exported_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    applied_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_change_sets_account_id", "account_id"),
        Index("ix_change_sets_status", "status"),
        Index("ix_change_sets_created_at", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  DECISIONS — Append-only version chain of proposed changes
# ══════════════════════════════════════════════════════════════════════

class Decision(Base):
    """
    One version of a proposed change to a Google Ads entity.
    Edits never touch a stored row: they append version N+1 to the group and
    flip the old row to is_current=False / superseded_by=<new id>.
    The one exception: deleting a change set clears change_set_id on every row
    that pointed at it, superseded rows included, since the set no longer exists.
    """
    __tablename__ = "decisions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Versioning
    decision_group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    superseded_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)

    # Scope
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    audit_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    module_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # Target
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(ENTITY_ID_MAX_LENGTH), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(ENTITY_NAME_MAX_LENGTH), nullable=True)

    # Change payload
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    before_value: Mapped[dict] = mapped_column(JSON, nullable=True)
    after_value: Mapped[dict] = mapped_column(JSON, nullable=True)
    rationale: Mapped[str] = mapped_column(Text, nullable=True)
    evidence: Mapped[dict] = mapped_column(JSON, nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=DecisionStatus.DRAFT.value)
    change_set_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("change_sets.id", ondelete="SET NULL"), nullable=True,
    )
    exported_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    applied_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[str] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("decision_group_id", "version", name="uq_decision_group_version"),
        Index("ix_decisions_account_id", "account_id"),
        Index("ix_decisions_group_current", "decision_group_id", "is_current"),
        Index("ix_decisions_status", "status"),
        Index("ix_decisions_change_set_id", "change_set_id"),
        Index("ix_decisions_module_id", "module_id"),
        Index("ix_decisions_entity", "entity_type", "entity_id"),
        Index("ix_decisions_created_at", "created_at"),
        # At most one current row per decision group
        Index(
            "uq_decisions_one_current_per_group", "decision_group_id", unique=True,
            postgresql_where=text("is_current"), sqlite_where=text("is_current = 1"),
        ),
    )


# ══════════════════════════════════════════════════════════════════════
#  EXPORT ARTIFACTS — The downloadable bundle recorded at export time
# ══════════════════════════════════════════════════════════════════════

class ExportArtifact(Base):
    """ZIP bundle generated by an export. Download streams these bytes as-is."""
    __tablename__ = "export_artifacts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    change_set_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("change_sets.id", ondelete="CASCADE"), nullable=False,
    )
    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    manifest: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("change_set_id", name="uq_export_artifact_change_set"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ACTIVITY LOG — Comprehensive action logging
# ══════════════════════════════════════════════════════════════════════

class ActivityLog(Base):
    """Logs all actions taken in the system for audit trail."""
    __tablename__ = "activity_log"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor: Mapped[str] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # decisions, change_sets, export
    description: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=True)  # decision, change_set
    entity_id: Mapped[str] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="success")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_activity_log_category", "category"),
        Index("ix_activity_log_action", "action"),
        Index("ix_activity_log_created_at", "created_at"),
        Index("ix_activity_log_entity", "entity_type", "entity_id"),
    )
