from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so tests can run against SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AutoId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # ISO 3166-1 alpha-2 code used by the country rollout guard.
    country_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    # Denormalized tier label; free tenants may run without a subscription row.
    subscription_tier: Mapped[str] = mapped_column(String, default="free", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantUser(Base):
    __tablename__ = "tenant_users"
    __table_args__ = (
        Index("ix_tenant_users_tenant_email", "tenant_id", "email"),
        Index("ix_tenant_users_tenant_role", "tenant_id", "role"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String)
    # Fine-grained permissions granted on top of the role.
    permissions_json: Mapped[list[str] | None] = mapped_column(JsonType, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Addon(Base):
    __tablename__ = "addons"

    # Marketplace catalog entry; installs are tracked per tenant in tenant_addons.
    code: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    trial_days: Mapped[int] = mapped_column(Integer, default=14, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantAddon(Base):
    __tablename__ = "tenant_addons"
    __table_args__ = (
        UniqueConstraint("tenant_id", "addon_code", name="uq_tenant_addons_tenant_addon"),
    )

    id: Mapped[int] = mapped_column(AutoId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    addon_code: Mapped[str] = mapped_column(String, index=True)
    # Install state: active | trial | disabled | cancelled.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    # Billing state: active | trialing | grace_period | past_due | suspended | cancelled | expired.
    subscription_status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    installed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Tier label: free | starter | pro | enterprise.
    tier: Mapped[str] = mapped_column(String, index=True)
    # Named feature flags plus an optional "addons" list of bundled modules.
    features_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_tenant_current", "tenant_id", "is_current"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # No FK so a dangling plan id surfaces as INVALID_PLAN instead of failing writes.
    plan_id: Mapped[str] = mapped_column(String)
    tier: Mapped[str] = mapped_column(String)
    # trialing | active | grace_period | past_due | suspended | cancelled.
    status: Mapped[str] = mapped_column(String)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Plan changes supersede the current row instead of mutating it.
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CountryRolloutPolicy(Base):
    __tablename__ = "country_rollout_policies"

    country_code: Mapped[str] = mapped_column(String(2), primary_key=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Empty list means every module is allowed.
    enabled_modules: Mapped[list[str] | None] = mapped_column(JsonType, default=list)
    # Features must be explicitly true to be available.
    enabled_features: Mapped[dict[str, bool] | None] = mapped_column(JsonType, default=dict)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StepUpChallenge(Base):
    __tablename__ = "step_up_challenges"
    __table_args__ = (
        Index("ix_step_up_challenges_user_purpose", "user_id", "purpose", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    purpose: Mapped[str] = mapped_column(String)
    # SHA-256 of the issued code; plaintext codes are never stored.
    code_hash: Mapped[str] = mapped_column(String)
    # issued | verified | expired | failed.
    status: Mapped[str] = mapped_column(String, default="issued", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Stamped when the guarded action spends the verification.
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ImpersonationSession(Base):
    __tablename__ = "impersonation_sessions"
    __table_args__ = (
        # At most one open session per acting user.
        Index(
            "uq_impersonation_sessions_active_actor",
            "acting_user_id",
            unique=True,
            postgresql_where=text("ended_at IS NULL"),
            sqlite_where=text("ended_at IS NULL"),
        ),
        Index("ix_impersonation_sessions_token_hash", "token_hash", unique=True),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    acting_user_id: Mapped[str] = mapped_column(String)
    target_user_id: Mapped[str] = mapped_column(String, index=True)
    token_prefix: Mapped[str] = mapped_column(String)
    token_hash: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # exit | expired.
    end_reason: Mapped[str | None] = mapped_column(String, nullable=True)


class AuditLogEntry(Base):
    __tablename__ = "audit_log_entries"

    # Monotonic id for stable pagination; rows are never updated or deleted by the API.
    id: Mapped[int] = mapped_column(AutoId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Acting identity for business effect (the target while impersonating).
    actor_user_id: Mapped[str] = mapped_column(String, index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    target_type: Mapped[str | None] = mapped_column(String, nullable=True)
    target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    before_value: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    after_value: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    is_impersonating: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Real identity behind an impersonated action.
    real_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
