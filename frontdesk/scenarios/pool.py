"""Frontdesk – Scenario Pool and its loader.

A ScenarioPool is an immutable snapshot of one tenant's effective scenario
corpus. Rebuilds publish a brand-new snapshot; readers holding the previous
one keep using it undisturbed.

Loader guarantees:
- one in-flight build per tenant (single-flight); late callers await it,
- a caller being cancelled never cancels the shared build,
- store outages serve the last good snapshot flagged ``stale``,
- ``invalidate()`` racing a build makes that build publish as already expired.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError

from config.settings import get_settings
from frontdesk.core.errors import ScenarioConfigError, StoreUnavailable
from frontdesk.core.instrumentation import POOL_BUILDS, SCENARIOS_EXCLUDED
from frontdesk.matching.text import PhraseNormalizer
from frontdesk.matching.types import MatchContext
from frontdesk.scenarios.normalize import (
    build_scenario,
    category_key,
    merge_nlp_configs,
    parse_scenario_document,
    resolve_template_refs,
)
from frontdesk.scenarios.schemas import (
    Channel,
    EffectiveNLPConfig,
    Scenario,
    ScenarioStatus,
    TemplateDocument,
    TenantScenarioSettings,
)
from frontdesk.scenarios.store import ScenarioStore

logger = structlog.get_logger()

T = TypeVar("T")

# Retry interval while serving a stale snapshot
STALE_RETRY_SECONDS = 5.0


@dataclass(frozen=True, eq=False)
class ScenarioPool:
    tenant_id: str
    version: int
    scenarios: tuple[Scenario, ...] = ()
    nlp_configs: dict[str, EffectiveNLPConfig] = field(default_factory=dict)
    normalizers: dict[str, PhraseNormalizer] = field(default_factory=dict)
    templates_used: tuple[str, ...] = ()
    excluded: dict[str, str] = field(default_factory=dict)
    company_name: str | None = None
    version_marker: str | None = None
    # Digest of the documents the snapshot was built from; equal across workers
    fingerprint: str = ""
    built_at: float = field(default_factory=time.time)
    stale: bool = False
    # Derived per-snapshot data (Tier-2 statistics …), filled on first use
    memo: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def __len__(self) -> int:
        return len(self.scenarios)

    @property
    def cache_tag(self) -> str:
        """Namespace for routing decisions made from this snapshot."""
        return self.fingerprint or str(self.version)

    def get(self, scenario_id: str) -> Scenario | None:
        """First scenario with this id, in template priority order."""
        index = self.memoize("by_id", self._index_by_id)
        return index.get(scenario_id)

    def by_key(self, key: str) -> Scenario | None:
        index = self.memoize("by_key", lambda: {s.key: s for s in self.scenarios})
        return index.get(key)

    def _index_by_id(self) -> dict[str, Scenario]:
        index: dict[str, Scenario] = {}
        for scenario in self.scenarios:
            index.setdefault(scenario.scenario_id, scenario)
        return index

    def memoize(self, name: str, build: Callable[[], T]) -> T:
        if name not in self.memo:
            self.memo[name] = build()
        return self.memo[name]

    def in_scope(self, channel: Channel | str, context: MatchContext | None = None) -> list[Scenario]:
        """Scenarios eligible this turn: channel filter, then cooldown filter."""
        recent = context.recent_scenarios if context is not None else {}
        eligible: list[Scenario] = []
        for scenario in self.scenarios:
            if not scenario.serves(channel):
                continue
            if scenario.cooldown_seconds and scenario.scenario_id in recent:
                if recent[scenario.scenario_id] < scenario.cooldown_seconds:
                    continue
            eligible.append(scenario)
        return eligible

    def as_stale(self) -> ScenarioPool:
        return replace(self, stale=True, memo=self.memo)


def snapshot_fingerprint(settings: TenantScenarioSettings, templates: list[TemplateDocument]) -> str:
    """Content digest of the tenant settings and templates, in priority order.

    Local pool versions are per process; workers sharing a decision cache
    agree on this digest whenever they hold the same data.
    """
    digest = hashlib.sha256(settings.model_dump_json().encode("utf-8"))
    for template in templates:
        digest.update(b"\x00")
        digest.update(template.model_dump_json().encode("utf-8"))
    return digest.hexdigest()[:20]


def assemble_pool(
    tenant_id: str,
    settings: TenantScenarioSettings,
    templates: list[TemplateDocument],
    *,
    version: int,
    version_marker: str | None = None,
) -> ScenarioPool:
    """Flatten templates into a pool: overrides, normalization, NLP merge.

    Malformed scenarios are excluded with a warning; they never fail the build.
    """
    disabled = {
        (c.template_id, c.scenario_id)
        for c in settings.scenario_controls
        if not c.is_enabled
    }
    nlp_configs = merge_nlp_configs(templates)
    normalizers = {key: PhraseNormalizer(config) for key, config in nlp_configs.items()}

    scenarios: list[Scenario] = []
    excluded: dict[str, str] = {}
    seen: set[str] = set()
    order = 0
    for template in templates:
        for category in template.categories:
            normalizer = normalizers[category_key(category.name)]
            for raw in category.scenarios:
                order += 1
                try:
                    doc = parse_scenario_document(raw)
                    if doc.status != ScenarioStatus.LIVE or not doc.is_active:
                        continue
                    if (template.id, doc.scenario_id) in disabled:
                        continue
                    scenario = build_scenario(
                        doc,
                        template=template,
                        category=category,
                        order=order,
                        normalizer=normalizer,
                    )
                except ScenarioConfigError as exc:
                    excluded[f"{template.id}:{exc.scenario_id}"] = exc.reason
                    logger.warning(
                        "pool.scenario_excluded",
                        tenant_id=tenant_id,
                        template_id=template.id,
                        scenario_id=exc.scenario_id,
                        reason=exc.reason,
                    )
                    continue
                if scenario.key in seen:
                    excluded[scenario.key] = "duplicate scenarioId within template"
                    logger.warning("pool.scenario_duplicate", tenant_id=tenant_id, key=scenario.key)
                    continue
                seen.add(scenario.key)
                scenarios.append(scenario)

    if excluded:
        SCENARIOS_EXCLUDED.labels(tenant_id=tenant_id).inc(len(excluded))

    return ScenarioPool(
        tenant_id=tenant_id,
        version=version,
        scenarios=tuple(scenarios),
        nlp_configs=nlp_configs,
        normalizers=normalizers,
        templates_used=tuple(t.id for t in templates),
        excluded=excluded,
        company_name=settings.company_name,
        version_marker=version_marker,
        fingerprint=snapshot_fingerprint(settings, templates),
    )


@dataclass
class _PoolEntry:
    pool: ScenarioPool
    expires_at: float
    # False when the entry may not be revalidated by version marker alone
    reusable: bool = True


class ScenarioPoolLoader:
    """Per-tenant pool cache with TTL, single-flight loads and stale fallback."""

    def __init__(
        self,
        store: ScenarioStore,
        *,
        ttl_seconds: float | None = None,
        store_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._ttl = settings.pool_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._store_timeout = settings.store_timeout_seconds if store_timeout is None else store_timeout
        self._clock = clock
        self._entries: dict[str, _PoolEntry] = {}
        self._last_good: dict[str, ScenarioPool] = {}
        self._inflight: dict[str, asyncio.Task[ScenarioPool]] = {}
        self._generation: dict[str, int] = {}
        self._versions = itertools.count(1)
        self.builds = 0

    @property
    def store(self) -> ScenarioStore:
        return self._store

    def cached(self, tenant_id: str) -> ScenarioPool | None:
        entry = self._entries.get(tenant_id)
        return entry.pool if entry else None

    async def load(self, tenant_id: str) -> ScenarioPool:
        entry = self._entries.get(tenant_id)
        if entry is not None and self._clock() < entry.expires_at:
            return entry.pool

        task = self._inflight.get(tenant_id)
        if task is None:
            task = asyncio.create_task(self._refresh(tenant_id), name=f"pool-load:{tenant_id}")
            self._inflight[tenant_id] = task
            task.add_done_callback(lambda t, key=tenant_id: self._forget(key, t))
        return await asyncio.shield(task)

    def _forget(self, tenant_id: str, task: asyncio.Task[ScenarioPool]) -> None:
        if self._inflight.get(tenant_id) is task:
            del self._inflight[tenant_id]
        # Every waiter may have been cancelled; retrieve so asyncio stays quiet
        if not task.cancelled():
            task.exception()

    def invalidate(self, tenant_id: str) -> int:
        """Evict the tenant's pool; any pool published afterwards has a higher version."""
        self._generation[tenant_id] = self._generation.get(tenant_id, 0) + 1
        self._entries.pop(tenant_id, None)
        version = next(self._versions)
        logger.info("pool.invalidated", tenant_id=tenant_id, version=version)
        return version

    async def _refresh(self, tenant_id: str) -> ScenarioPool:
        generation = self._generation.get(tenant_id, 0)
        entry = self._entries.get(tenant_id)
        started = time.perf_counter()
        try:
            marker = await self._read(self._store.get_version_marker(tenant_id), tenant_id)
            if entry is not None and entry.reusable and marker is not None and marker == entry.pool.version_marker:
                # Nothing changed in the store: extend the TTL of the same snapshot
                entry.expires_at = self._clock() + self._ttl
                POOL_BUILDS.labels(outcome="refreshed").inc()
                logger.debug("pool.refreshed", tenant_id=tenant_id, version=entry.pool.version)
                return entry.pool
            pool = await self._build(tenant_id, marker)
        except StoreUnavailable as exc:
            fallback = entry.pool if entry is not None else self._last_good.get(tenant_id)
            if fallback is None:
                POOL_BUILDS.labels(outcome="failed").inc()
                logger.error("pool.load_failed", tenant_id=tenant_id, error=str(exc))
                raise
            stale = fallback if fallback.stale else fallback.as_stale()
            self._entries[tenant_id] = _PoolEntry(
                stale, self._clock() + min(self._ttl, STALE_RETRY_SECONDS), reusable=False
            )
            POOL_BUILDS.labels(outcome="stale").inc()
            logger.warning("pool.serving_stale", tenant_id=tenant_id, version=stale.version, error=str(exc))
            return stale

        self.builds += 1
        raced = self._generation.get(tenant_id, 0) != generation
        # An invalidate() during the build means the data may predate the edit
        expires_at = self._clock() if raced else self._clock() + self._ttl
        self._entries[tenant_id] = _PoolEntry(pool, expires_at, reusable=not raced)
        self._last_good[tenant_id] = pool
        POOL_BUILDS.labels(outcome="fresh").inc()
        logger.info(
            "pool.loaded",
            tenant_id=tenant_id,
            version=pool.version,
            scenarios=len(pool.scenarios),
            excluded=len(pool.excluded),
            templates=list(pool.templates_used),
            raced_invalidate=raced,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return pool

    async def _read(self, call: Awaitable[T], tenant_id: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._store_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(
                f"scenario store did not answer within {self._store_timeout}s", tenant_id=tenant_id
            ) from exc

    async def _build(self, tenant_id: str, marker: str | None) -> ScenarioPool:
        raw_settings = await self._read(self._store.get_tenant_settings(tenant_id), tenant_id)
        if raw_settings is None:
            logger.warning("pool.tenant_unknown", tenant_id=tenant_id)
        settings = TenantScenarioSettings.model_validate({**(raw_settings or {}), "tenantId": tenant_id})

        refs = resolve_template_refs(settings)
        raw_templates = await asyncio.gather(
            *(self._read(self._store.get_template(ref.template_id), tenant_id) for ref in refs)
        )
        templates: list[TemplateDocument] = []
        for ref, raw in zip(refs, raw_templates):
            if raw is None:
                logger.warning("pool.template_missing", tenant_id=tenant_id, template_id=ref.template_id)
                continue
            try:
                template = TemplateDocument.model_validate(raw)
            except ValidationError as exc:
                logger.warning(
                    "pool.template_invalid",
                    tenant_id=tenant_id,
                    template_id=ref.template_id,
                    error=str(exc.errors()[0].get("msg")),
                )
                continue
            if not template.is_active:
                logger.info("pool.template_inactive", tenant_id=tenant_id, template_id=template.id)
                continue
            templates.append(template)

        return assemble_pool(
            tenant_id,
            settings,
            templates,
            version=next(self._versions),
            version_marker=marker,
        )
