from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Boolean, DateTime, Table, ForeignKey,
    UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()


class ResourceStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ModerationAction(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    DEMOTED = "demoted"  # admin edit sent an approved resource back to review


class SyncStatus(str, enum.Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


class Role(str, enum.Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"
    ALUMNI = "alumni"


# Association table for resource tags (many-to-many)
resource_tags = Table(
    'resource_tags',
    Base.metadata,
    Column('resource_id', Integer, ForeignKey('resources.id', ondelete='CASCADE'), primary_key=True),
    Column('tag_id', Integer, ForeignKey('tags.id'), primary_key=True)
)


class School(Base):
    __tablename__ = 'schools'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    code = Column(String(10), unique=True, nullable=False, index=True)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    country = Column(String(100), default='United States')
    description = Column(String(1000), nullable=True)
    is_active = Column(Boolean, default=True)

    # Cached counters; the resources/downloads tables are the source of truth
    total_resources = Column(Integer, default=0, nullable=False)
    total_downloads = Column(Integer, default=0, nullable=False)
    active_users = Column(Integer, default=0, nullable=False)
    statistics_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship('User', back_populates='school')
    resources = relationship('Resource', back_populates='school')


class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    role = Column(String(20), nullable=False, default=Role.STUDENT.value)
    school_id = Column(Integer, ForeignKey('schools.id'), nullable=False, index=True)
    grade = Column(String(50), nullable=True)
    strand = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    school = relationship('School', back_populates='users')

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


class Resource(Base):
    __tablename__ = 'resources'
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')", name='ck_resources_status'
        ),
        CheckConstraint('download_count >= 0', name='ck_resources_download_count'),
        Index('ix_resources_school_status_created', 'school_id', 'status', 'created_at'),
        Index('ix_resources_subject_grade', 'subject', 'grade'),
        Index('ix_resources_uploader_status', 'uploader_id', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=False)
    subject = Column(String(100), nullable=False, index=True)
    grade = Column(String(50), nullable=False)
    strand = Column(String(100), nullable=True)
    is_public = Column(Boolean, default=True)

    # File descriptor, never changed after creation
    file_original_name = Column(String(255), nullable=False)
    file_key = Column(String(500), nullable=False, unique=True)
    file_mime_type = Column(String(150), nullable=False)
    file_size = Column(BigInteger, nullable=False)

    status = Column(String(20), nullable=False, default=ResourceStatus.PENDING.value)
    moderation_notes = Column(String(500), nullable=True)
    moderated_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    moderated_at = Column(DateTime, nullable=True)
    download_count = Column(Integer, default=0, nullable=False)

    uploader_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    school_id = Column(Integer, ForeignKey('schools.id'), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tags = relationship('Tag', secondary=resource_tags, back_populates='resources')
    uploader = relationship('User', foreign_keys=[uploader_id])
    moderated_by = relationship('User', foreign_keys=[moderated_by_id])
    school = relationship('School', back_populates='resources')

    @property
    def tag_names(self):
        return [tag.name for tag in self.tags]


class Tag(Base):
    __tablename__ = 'tags'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    resources = relationship('Resource', secondary=resource_tags, back_populates='tags')


class ModerationLog(Base):
    """Append-only audit entry, one per moderation status change."""
    __tablename__ = 'moderation_logs'
    __table_args__ = (
        Index('ix_moderation_logs_resource_created', 'resource_id', 'created_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    # Set to NULL when the resource is hard-deleted so the trail survives
    resource_id = Column(Integer, ForeignKey('resources.id', ondelete='SET NULL'), nullable=True)
    resource_title = Column(String(200), nullable=False)
    moderator_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    action = Column(String(20), nullable=False)
    notes = Column(String(500), nullable=True)
    previous_status = Column(String(20), nullable=False)
    new_status = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    moderator = relationship('User')


class Download(Base):
    __tablename__ = 'downloads'
    __table_args__ = (
        UniqueConstraint('user_id', 'resource_id', name='uq_downloads_user_resource'),
        Index('ix_downloads_user_downloaded', 'user_id', 'downloaded_at'),
        Index('ix_downloads_resource_downloaded', 'resource_id', 'downloaded_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    resource_id = Column(Integer, ForeignKey('resources.id', ondelete='SET NULL'), nullable=True)
    downloaded_at = Column(DateTime, default=datetime.utcnow)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    offline = Column(Boolean, default=False)
    sync_status = Column(String(20), default=SyncStatus.SYNCED.value)
    created_at = Column(DateTime, default=datetime.utcnow)

    resource = relationship('Resource')


class StorageFailureRecord(Base):
    """Blob the storage driver could not release; kept for manual cleanup."""
    __tablename__ = 'storage_failures'

    id = Column(Integer, primary_key=True, index=True)
    file_key = Column(String(500), nullable=False)
    operation = Column(String(20), nullable=False)  # delete, rollback
    resource_id = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
