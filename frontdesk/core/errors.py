"""Frontdesk – Error taxonomy.

Configuration errors are isolated per scenario, provider errors are absorbed
by Tier 3. Only StoreUnavailable (with no cached pool) reaches the caller.
"""


class FrontdeskError(Exception):
    """Base class for engine errors."""


class StoreUnavailable(FrontdeskError):
    """Scenario Store could not be reached (or timed out)."""

    def __init__(self, message: str, tenant_id: str | None = None) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id


class ScenarioConfigError(FrontdeskError):
    """A single scenario is malformed and must be excluded from the pool."""

    def __init__(self, scenario_id: str, reason: str) -> None:
        super().__init__(f"{scenario_id}: {reason}")
        self.scenario_id = scenario_id
        self.reason = reason


class LLMProviderError(FrontdeskError):
    """Tier-3 language-model call failed or returned an unusable answer."""
