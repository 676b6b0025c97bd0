"""Frontdesk – Scenario Store adapters.

The engine only ever reads from the store. Documents are handed out as raw
camelCase mappings, exactly as authored; validation and normalization happen
in the pool loader so schema drift never needs a migration here.
"""

from __future__ import annotations

import asyncio
import copy
import json
from pathlib import Path
from typing import Any, Protocol

import structlog
import yaml
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config.settings import Settings
from frontdesk.core.errors import StoreUnavailable
from frontdesk.core.models import (
    ScenarioOverrideRecord,
    ScenarioTemplateRecord,
    TenantScenarioSettingsRecord,
)

logger = structlog.get_logger()


class ScenarioStore(Protocol):
    async def get_tenant_settings(self, tenant_id: str) -> dict[str, Any] | None: ...

    async def get_template(self, template_id: str) -> dict[str, Any] | None: ...

    async def get_version_marker(self, tenant_id: str) -> str | None: ...


# ── In-memory ──────────────────────────────────────────────────────────────────


class InMemoryScenarioStore:
    """Dict-backed store for tests and embedding.

    ``available`` and ``latency`` let callers simulate an outage or a slow
    store; ``reads`` counts document fetches.
    """

    def __init__(
        self,
        templates: list[dict[str, Any]] | None = None,
        tenants: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self._templates: dict[str, dict[str, Any]] = {}
        self._tenants: dict[str, dict[str, Any]] = {}
        self._revision = 0
        self.available = True
        self.latency = 0.0
        self.reads = 0
        for template in templates or []:
            self.put_template(template)
        for tenant_id, settings in (tenants or {}).items():
            self.put_tenant(tenant_id, settings)

    # --- writes (authoring surface stand-in) ---

    def put_template(self, document: dict[str, Any]) -> None:
        template_id = document.get("id") or document.get("_id") or document.get("templateId")
        if not template_id:
            raise ValueError("template document requires an id")
        self._templates[str(template_id)] = copy.deepcopy(document)
        self._revision += 1

    def put_tenant(self, tenant_id: str, settings: dict[str, Any]) -> None:
        self._tenants[tenant_id] = copy.deepcopy(settings)
        self._revision += 1

    def set_override(self, tenant_id: str, template_id: str, scenario_id: str, *, is_enabled: bool, **audit: Any) -> None:
        settings = self._tenants.setdefault(tenant_id, {})
        controls = [
            c for c in settings.get("scenarioControls", [])
            if (c.get("templateId"), c.get("scenarioId")) != (template_id, scenario_id)
        ]
        controls.append({"templateId": template_id, "scenarioId": scenario_id, "isEnabled": is_enabled, **audit})
        settings["scenarioControls"] = controls
        self._revision += 1

    # --- reads ---

    async def _access(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise StoreUnavailable("in-memory store marked unavailable")

    async def get_tenant_settings(self, tenant_id: str) -> dict[str, Any] | None:
        await self._access()
        self.reads += 1
        settings = self._tenants.get(tenant_id)
        return copy.deepcopy(settings) if settings is not None else None

    async def get_template(self, template_id: str) -> dict[str, Any] | None:
        await self._access()
        self.reads += 1
        document = self._templates.get(template_id)
        return copy.deepcopy(document) if document is not None else None

    async def get_version_marker(self, tenant_id: str) -> str | None:
        await self._access()
        return f"r{self._revision}"


# ── YAML corpus ────────────────────────────────────────────────────────────────


class YamlScenarioStore(InMemoryScenarioStore):
    """Serves a corpus file; edits to the file are picked up by mtime.

    Layout::

        templates:
          - id: hvac-core
            categories: [...]
        tenants:
          acme-hvac:
            companyName: Acme Heating
            templateReferences: [{templateId: hvac-core, priority: 1}]
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._mtime_ns: int | None = None

    def _reload(self) -> None:
        try:
            mtime_ns = self.path.stat().st_mtime_ns
        except OSError as exc:
            raise StoreUnavailable(f"scenario corpus not readable: {self.path}") from exc
        if mtime_ns == self._mtime_ns:
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise StoreUnavailable(f"scenario corpus could not be parsed: {exc}") from exc

        self._templates.clear()
        self._tenants.clear()
        for template in data.get("templates") or []:
            if not isinstance(template, dict):
                continue
            try:
                self.put_template(template)
            except ValueError:
                logger.warning("store.template_without_id", path=str(self.path), name=template.get("name"))
        for tenant_id, settings in (data.get("tenants") or {}).items():
            self.put_tenant(str(tenant_id), settings or {})
        self._mtime_ns = mtime_ns
        logger.info(
            "store.corpus_loaded",
            path=str(self.path),
            templates=len(self._templates),
            tenants=len(self._tenants),
        )

    async def _access(self) -> None:
        await super()._access()
        await asyncio.to_thread(self._reload)

    async def get_version_marker(self, tenant_id: str) -> str | None:
        await self._access()
        return f"m{self._mtime_ns}"


# ── SQL ────────────────────────────────────────────────────────────────────────


class SqlScenarioStore:
    """SQLAlchemy-backed store. Blocking queries run in a worker thread."""

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        if session_factory is None:
            from frontdesk.core.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    async def _run(self, fn, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(self._with_session, fn, *args)
        except SQLAlchemyError as exc:
            logger.error("store.sql_error", error=str(exc))
            raise StoreUnavailable(f"scenario store query failed: {exc.__class__.__name__}") from exc

    def _with_session(self, fn, *args: Any) -> Any:
        db: Session = self._session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    async def get_tenant_settings(self, tenant_id: str) -> dict[str, Any] | None:
        return await self._run(self._tenant_settings, tenant_id)

    async def get_template(self, template_id: str) -> dict[str, Any] | None:
        return await self._run(self._template, template_id)

    async def get_version_marker(self, tenant_id: str) -> str | None:
        return await self._run(self._version_marker, tenant_id)

    @staticmethod
    def _tenant_settings(db: Session, tenant_id: str) -> dict[str, Any] | None:
        record = db.get(TenantScenarioSettingsRecord, tenant_id)
        overrides = (
            db.query(ScenarioOverrideRecord)
            .filter(ScenarioOverrideRecord.tenant_id == tenant_id)
            .all()
        )
        if record is None and not overrides:
            return None
        settings: dict[str, Any] = {"tenantId": tenant_id}
        if record is not None:
            settings.update(
                {
                    "companyName": record.company_name,
                    "templateReferences": _json_list(record.template_references),
                    "activeTemplates": _json_list(record.active_templates),
                    "clonedFrom": record.cloned_from,
                }
            )
        settings["scenarioControls"] = [
            {
                "templateId": o.template_id,
                "scenarioId": o.scenario_id,
                "isEnabled": o.is_enabled,
                "disabledAt": o.disabled_at,
                "disabledBy": o.disabled_by,
                "notes": o.notes,
            }
            for o in overrides
        ]
        return settings

    @staticmethod
    def _template(db: Session, template_id: str) -> dict[str, Any] | None:
        record = db.get(ScenarioTemplateRecord, template_id)
        if record is None:
            return None
        try:
            document = json.loads(record.document or "{}")
        except json.JSONDecodeError:
            logger.warning("store.template_document_invalid", template_id=template_id)
            document = {}
        # Row columns are authoritative over whatever the document repeats
        document.update(
            {
                "id": record.id,
                "name": record.name,
                "version": record.version,
                "isActive": record.is_active,
                "updatedAt": record.updated_at,
            }
        )
        return document

    @staticmethod
    def _version_marker(db: Session, tenant_id: str) -> str:
        settings_ts = (
            db.query(TenantScenarioSettingsRecord.updated_at)
            .filter(TenantScenarioSettingsRecord.tenant_id == tenant_id)
            .scalar()
        )
        override_ts, override_count = (
            db.query(func.max(ScenarioOverrideRecord.updated_at), func.count(ScenarioOverrideRecord.id))
            .filter(ScenarioOverrideRecord.tenant_id == tenant_id)
            .one()
        )
        template_ts, template_versions = db.query(
            func.max(ScenarioTemplateRecord.updated_at), func.sum(ScenarioTemplateRecord.version)
        ).one()
        return "|".join(
            str(part)
            for part in (settings_ts, override_ts, override_count, template_ts, template_versions)
        )


def _json_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []


def build_store(settings: Settings) -> ScenarioStore:
    """Store adapter selected by ``scenario_store_backend``."""
    if settings.scenario_store_backend == "yaml":
        return YamlScenarioStore(settings.scenario_corpus_path)
    return SqlScenarioStore()
