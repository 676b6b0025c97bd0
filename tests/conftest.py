"""Frontdesk – Pytest Configuration.

Shared fixtures for all tests.
"""

import copy
import os

# Force testing mode so frontdesk/core/db.py falls back to in-memory SQLite
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["LLM_API_KEY"] = ""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from config.settings import Settings
from frontdesk.gateway.main import app
from frontdesk.matching.learning import LearningRecorder
from frontdesk.matching.llm import LLMClient, LLMResponse
from frontdesk.routing.cache import MemoryDecisionCache
from frontdesk.routing.router import ScenarioRouter, build_router
from frontdesk.scenarios.pool import ScenarioPool, assemble_pool
from frontdesk.scenarios.schemas import TemplateDocument, TenantScenarioSettings
from frontdesk.scenarios.store import InMemoryScenarioStore

HVAC_TEMPLATE: dict[str, Any] = {
    "id": "hvac",
    "name": "HVAC",
    "version": 1,
    "fillerWords": ["um", "uh", "please"],
    "synonymMap": {"air conditioner": ["ac", "a/c", "air con"]},
    "categories": [
        {
            "name": "Office Info",
            "scenarios": [
                {
                    "scenarioId": "hours",
                    "name": "Business hours",
                    "scenarioType": "INFO_FAQ",
                    "triggers": ["what are your hours"],
                    "quickReplies": ["Sure."],
                    "fullReplies": ["We are open 8am to 6pm, Monday to Friday."],
                },
            ],
        },
        {
            "name": "Repairs",
            "scenarios": [
                {
                    "scenarioId": "ac-repair",
                    "name": "AC repair",
                    "scenarioType": "ACTION_FLOW",
                    "triggers": ["air conditioner is broken", "air conditioner not cooling"],
                    "negativeTriggers": ["warranty"],
                    "exampleUserPhrases": ["my house is getting really hot"],
                    "negativeUserPhrases": ["sauna"],
                    "quickReplies": ["Sorry to hear that."],
                    "fullReplies": ["Let's get a technician out to you."],
                    "followUpMode": "ASK_IF_BOOK",
                    "followUpPrompts": ["Want the first available slot?"],
                },
                {
                    "scenarioId": "cancel",
                    "name": "Cancel appointment",
                    "scenarioType": "ACTION_FLOW",
                    "triggers": ["cancel my appointment"],
                    "fullReplies": ["I can cancel that for you."],
                },
            ],
        },
    ],
}

TENANT_SETTINGS: dict[str, Any] = {
    "companyName": "Acme Heating",
    "templateReferences": [{"templateId": "hvac", "priority": 1}],
}


@pytest.fixture(autouse=True)
def mock_redis_bus():
    """Mock RedisBus for all tests."""
    from frontdesk.gateway.dependencies import redis_bus

    redis_bus.connect = AsyncMock()
    redis_bus.disconnect = AsyncMock()
    redis_bus.health_check = AsyncMock(return_value=True)
    return redis_bus


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def hvac_template() -> dict[str, Any]:
    return copy.deepcopy(HVAC_TEMPLATE)


@pytest.fixture
def store(hvac_template: dict[str, Any]) -> InMemoryScenarioStore:
    return InMemoryScenarioStore(templates=[hvac_template], tenants={"acme": TENANT_SETTINGS})


@pytest.fixture
def make_pool():
    """Assemble a pool straight from template documents, no store involved."""

    def _make(*templates: dict[str, Any], tenant: dict[str, Any] | None = None, version: int = 1) -> ScenarioPool:
        settings = TenantScenarioSettings.model_validate({**(tenant or TENANT_SETTINGS), "tenantId": "acme"})
        docs = [TemplateDocument.model_validate(t) for t in (templates or (HVAC_TEMPLATE,))]
        return assemble_pool("acme", settings, docs, version=version)

    return _make


@pytest.fixture
def llm() -> MagicMock:
    """Configured Tier-3 client whose answer each test sets on ``chat``."""
    client = MagicMock(spec=LLMClient)
    client.configured = True
    client.chat = AsyncMock(
        return_value=LLMResponse(content='{"scenario_id": "NONE", "confidence": 0.0}')
    )
    return client


@pytest.fixture
def recorder() -> LearningRecorder:
    return LearningRecorder(maxsize=100)


@pytest.fixture
def router(store: InMemoryScenarioStore, llm: MagicMock, recorder: LearningRecorder) -> ScenarioRouter:
    return build_router(
        Settings(),
        store=store,
        cache=MemoryDecisionCache(),
        recorder=recorder,
        llm=llm,
    )


@pytest.fixture
async def client():
    """Async test client for the FastAPI gateway."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
