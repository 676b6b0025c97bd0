from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from frontdesk.core.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScenarioTemplateRecord(Base):
    """A global template stored as one JSON document (categories + scenarios)."""

    __tablename__ = "scenario_templates"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    document = Column(Text, nullable=False)  # JSON, camelCase keys as authored
    is_active = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class TenantScenarioSettingsRecord(Base):
    """Which templates a tenant uses (current and legacy fields side by side)."""

    __tablename__ = "tenant_scenario_settings"

    tenant_id = Column(String, primary_key=True, index=True)
    template_references = Column(Text, nullable=True)  # JSON list
    active_templates = Column(Text, nullable=True)  # JSON list, legacy v1
    cloned_from = Column(String, nullable=True)  # legacy single template
    company_name = Column(String, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class ScenarioOverrideRecord(Base):
    """Per-tenant enable/disable switch for one template scenario."""

    __tablename__ = "scenario_overrides"
    __table_args__ = (
        UniqueConstraint("tenant_id", "template_id", "scenario_id", name="uq_scenario_override"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    template_id = Column(String, nullable=False)
    scenario_id = Column(String, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    disabled_at = Column(DateTime, nullable=True)
    disabled_by = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
