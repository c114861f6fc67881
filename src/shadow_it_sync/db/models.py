from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # Cascading deletes rely on SQLite enforcing foreign keys
    module = type(dbapi_connection).__module__
    if "sqlite" in module:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class ManagementStatus(str, enum.Enum):
    MANAGED = "Managed"
    UNMANAGED = "Unmanaged"
    NEEDS_REVIEW = "Needs Review"


class RunStatus(str, enum.Enum):
    STARTED = "STARTED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TimestampMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Organization(Base):
    __tablename__ = 'organizations'

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    domain = Column(String, index=True)
    auth_provider = Column(String, nullable=False)  # google | microsoft
    created_at = Column(DateTime, default=utcnow, nullable=False)


class SyncCredential(Base):
    """Stored provider consent; the newest row with a refresh token is active."""
    __tablename__ = 'sync_status'

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False)
    provider = Column(String, nullable=False)
    refresh_token = Column(Text)
    scope = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_sync_status_org_created', 'organization_id', 'created_at'),
    )


class User(TimestampMixin, Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False)
    email = Column(String, nullable=False)  # stored lower-cased
    name = Column(String)
    provider_user_id = Column(String, index=True)
    suspended = Column(Boolean, default=False, nullable=False)
    archived = Column(Boolean, default=False, nullable=False)
    account_enabled = Column(Boolean, default=True, nullable=False)
    user_type = Column(String, default="Member")

    __table_args__ = (
        UniqueConstraint('organization_id', 'email', name='uix_org_user_email'),
    )


class Application(TimestampMixin, Base):
    __tablename__ = 'applications'

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False)
    name = Column(String, nullable=False)
    provider_app_id = Column(String)
    all_scopes = Column(JSON, default=list, nullable=False)
    risk_level = Column(String, default="LOW", nullable=False)
    total_permissions = Column(Integer, default=0, nullable=False)
    user_count = Column(Integer, default=0, nullable=False)

    # Annotations; never written by the sync engine
    owner = Column(String)
    notes = Column(Text)
    management_status = Column(String, default=ManagementStatus.NEEDS_REVIEW.value)

    __table_args__ = (
        Index('idx_app_org_name', 'organization_id', 'name'),
    )


class UserApplication(TimestampMixin, Base):
    __tablename__ = 'user_applications'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    application_id = Column(Integer, ForeignKey('applications.id', ondelete='CASCADE'), nullable=False, index=True)
    scopes = Column(JSON, default=list, nullable=False)
    first_seen = Column(DateTime, default=utcnow)
    last_used = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'application_id', name='user_application_unique_relationship'),
    )


class OrganizationSettings(TimestampMixin, Base):
    """Per-organization risk scoring configuration (camelCase JSON documents)."""
    __tablename__ = 'organization_settings'

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey('organizations.id', ondelete='CASCADE'),
                             nullable=False, unique=True)
    bucket_weights = Column(JSON)
    ai_multipliers = Column(JSON)
    scope_multipliers = Column(JSON)


class ReconciliationRun(Base):
    __tablename__ = 'reconciliation_runs'

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False)
    operation = Column(String, nullable=False)  # reconciliation | deduplication
    dry_run = Column(Boolean, default=False, nullable=False)
    status = Column(SQLEnum(RunStatus), nullable=False, default=RunStatus.STARTED)
    counts = Column(JSON)
    error_message = Column(Text)
    start_time = Column(DateTime, default=utcnow, nullable=False)
    end_time = Column(DateTime)

    __table_args__ = (
        Index('idx_runs_org_start', 'organization_id', 'start_time'),
    )
