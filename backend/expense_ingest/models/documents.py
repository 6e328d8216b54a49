import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()

FILE_NAME_MAX_LENGTH = 260
FILE_EXTENSION_MAX_LENGTH = 10
HASH_LENGTH = 64
STATUS_MAX_LENGTH = 24
FAILURE_REASON_MAX_LENGTH = 400
KEYWORD_MAX_LENGTH = 160
EXPENSE_DESCRIPTION_MAX_LENGTH = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = uuid.UUID(value)
        return value if dialect.name == "postgresql" else str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class ImportedDocument(Base):
    __tablename__ = "imported_documents"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    original_file_name = Column(String(FILE_NAME_MAX_LENGTH), nullable=False)
    stored_file_name = Column(String(FILE_NAME_MAX_LENGTH), nullable=False, unique=True)
    file_extension = Column(String(FILE_EXTENSION_MAX_LENGTH), nullable=False)
    size_bytes = Column(Integer, nullable=False)
    content_hash = Column(String(HASH_LENGTH), nullable=False)
    status = Column(String(STATUS_MAX_LENGTH), nullable=False, default="UPLOADED")
    is_ocr_used = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    failure_reason = Column(String(FAILURE_REASON_MAX_LENGTH))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True))
    deleted_at = Column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("size_bytes >= 0", name="ck_imported_documents_size"),
        Index(
            "uq_imported_documents_hash_active",
            "content_hash",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )


class Category(Base):
    __tablename__ = "categories"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class VendorCategoryRule(Base):
    __tablename__ = "vendor_category_rules"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    keyword = Column(String(KEYWORD_MAX_LENGTH), nullable=False)
    keyword_normalized = Column(String(KEYWORD_MAX_LENGTH), nullable=False, unique=True)
    category_id = Column(UUID_TYPE, ForeignKey("categories.id"), nullable=False)
    confidence = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    last_used_at = Column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_vendor_category_rules_confidence"),
    )


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    expense_date = Column(Date, nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    description = Column(String(EXPENSE_DESCRIPTION_MAX_LENGTH))
    category_id = Column(UUID_TYPE, ForeignKey("categories.id"))
    document_id = Column(UUID_TYPE, ForeignKey("imported_documents.id"), index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False, index=True)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    message = Column(Text)
    timestamp = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
