from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from insightdesk.application.aggregates import WorkspaceAggregateManager
from insightdesk.application.mutations import MutationOrchestrator
from insightdesk.application.quota import QuotaLedger
from insightdesk.core.plans import load_plan_table
from insightdesk.domain.errors import AssistantUnavailableError
from insightdesk.domain.workspaces import Identity
from insightdesk.infrastructure.assistant import AssistantReply, AssistantRequest
from insightdesk.infrastructure.duckdb_driver import DuckDBDocumentDriver
from insightdesk.infrastructure.local_storage import LocalStorageRegistry
from insightdesk.infrastructure.quota_store import DurableQuotaCounterStore, LocalQuotaCounterStore
from insightdesk.infrastructure.selector import StoreSelector

GUEST = Identity.guest("guest-session")
MEMBER = Identity.member("member-1")


class FakeAssistant:
    def __init__(self, *, fail: bool = False, error: Exception | None = None) -> None:
        self.fail = fail
        self.error = error
        self.requests: list[AssistantRequest] = []

    async def reply(self, request: AssistantRequest) -> AssistantReply:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.fail:
            raise AssistantUnavailableError("assistant offline")
        return AssistantReply(content=f"Answer to: {request.prompt}", total_tokens=10)


@pytest.fixture()
def driver():
    driver = DuckDBDocumentDriver(":memory:")
    yield driver
    driver.close()


@pytest.fixture()
def selector(driver):
    return StoreSelector(LocalStorageRegistry(), driver)


@pytest.fixture()
def ledger(selector):
    return QuotaLedger(
        load_plan_table(),
        LocalQuotaCounterStore(selector.local_storage),
        DurableQuotaCounterStore(selector.driver),
    )


@pytest.fixture()
def aggregates(selector):
    return WorkspaceAggregateManager(selector)


@pytest.fixture()
def assistant():
    return FakeAssistant()


@pytest.fixture()
def orchestrator(selector, ledger, aggregates, assistant):
    return MutationOrchestrator(selector, ledger, aggregates, assistant=assistant)


@pytest.fixture(params=["guest", "member"])
def identity(request):
    return GUEST if request.param == "guest" else MEMBER
