"""Flowgate database models: the persisted schema contract.

Design principles:
- Every row is scoped by tenant_id (the Identity Provider's principal id)
- Connections are soft-deactivated, never deleted, so ledger rows stay traceable
- credit_transactions is append-only; credit_accounts is a cache of its fold
- Check constraints keep both balances non-negative at the storage layer
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB as _JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class JSONB(TypeDecorator):
    """JSONB on PostgreSQL, plain JSON elsewhere; serializes UUID/datetime/Enum."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return json.loads(json.dumps(value, default=self._json_default))

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class Base(DeclarativeBase):
    """Base class with common utilities."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        datetime: DateTime(timezone=True),
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dict for serialization."""
        return {
            c.name: getattr(self, c.name)
            for c in self.__table__.columns
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class Platform(str, Enum):
    """Hosted automation platforms Flowgate can dispatch to."""
    N8N = "n8n"
    MAKE = "make"
    ZAPIER = "zapier"


class CreditKind(str, Enum):
    """Which balance a ledger row touches."""
    REGULAR = "regular"  # Monthly plan allocation, reset each period
    BONUS = "bonus"      # Granted out-of-band, never expires


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [e.value for e in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# CONNECTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class Connection(Base):
    """Stored credential binding one tenant to one platform instance."""

    __tablename__ = "platform_connections"
    __table_args__ = (
        Index("ix_platform_connections_tenant_platform", "tenant_id", "platform", "is_active"),
        # At most one active connection per (tenant, platform)
        Index(
            "uq_platform_connections_one_active", "tenant_id", "platform",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        {"comment": "Per-tenant platform credentials (soft-deactivated, never deleted)"},
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    base_url: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    credential: Mapped[str] = mapped_column(
        Text, nullable=False, default="",
        comment="Opaque API key / token; never logged"
    )
    settings: Mapped[dict[str, Any]] = mapped_column(
        JSONB, default=dict,
        comment="Platform-specific config: make region/organization_id, zapier zaps"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Last connectivity probe
    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_test_success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow, nullable=False
    )
    deactivated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
        comment="Soft delete timestamp"
    )

    def __repr__(self) -> str:
        # credential omitted
        return (
            f"Connection(id={self.id}, tenant_id={self.tenant_id!r}, "
            f"platform={self.platform.value}, is_active={self.is_active})"
        )


# ═══════════════════════════════════════════════════════════════════════════════
# CREDITS
# ═══════════════════════════════════════════════════════════════════════════════

class CreditAccount(Base):
    """Cached per-tenant balances. Always equal to the fold of the ledger."""

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("regular_balance >= 0", name="ck_credit_accounts_regular_non_negative"),
        CheckConstraint("bonus_balance >= 0", name="ck_credit_accounts_bonus_non_negative"),
        {"comment": "One row per tenant; cache over credit_transactions"},
    )

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tier: Mapped[str] = mapped_column(
        String(20), nullable=False, default="free",
        comment="free|starter|pro|growth|agency"
    )
    regular_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bonus_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prefer_bonus_first: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    period_started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow, nullable=False
    )

    transactions: Mapped[list["CreditTransaction"]] = relationship(
        back_populates="account", lazy="raise"
    )

    @property
    def total_balance(self) -> int:
        return self.regular_balance + self.bonus_balance


class CreditTransaction(Base):
    """Immutable ledger entry. Never updated, never deleted."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_tenant_created", "tenant_id", "created_at"),
        Index("ix_credit_transactions_tenant_kind", "tenant_id", "kind"),
        {"comment": "Append-only credit ledger"},
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("credit_accounts.tenant_id", ondelete="RESTRICT"), nullable=False
    )
    amount: Mapped[int] = mapped_column(
        Integer, nullable=False,
        comment="Signed: positive = added, negative = spent"
    )
    kind: Mapped[CreditKind] = mapped_column(
        SQLEnum(CreditKind, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
    )
    reason: Mapped[str] = mapped_column(
        String(255), nullable=False,
        comment="Operation tag: toggle|push|grant|plan_change|period_renewal|..."
    )
    connection_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("platform_connections.id", ondelete="RESTRICT"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    account: Mapped[CreditAccount] = relationship(back_populates="transactions", lazy="raise")

    def to_row(self) -> dict[str, Any]:
        """The on-disk ledger contract: {tenantId, amount, kind, reason, createdAt}."""
        return {
            "tenantId": self.tenant_id,
            "amount": self.amount,
            "kind": self.kind.value,
            "reason": self.reason,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
