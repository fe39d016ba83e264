"""Pausing and reactivating ads against a mocked Graph API."""

import httpx
import pytest

from app.connectors.meta.client import MetaClient
from app.connectors.meta.endpoints import MetaEndpoints
from app.models.ad_models import Ad
from app.sync.ad_status import (
    ACTIVE,
    PAUSED,
    AdStatusService,
    error_message,
    looks_already,
    status_matches,
)

from conftest import SleepRecorder, add_local_ads


class GraphStub:
    """Answers the status POST and the verification GET separately."""

    def __init__(self, post, get=None):
        self.post = post
        self.get = get
        self.posts = []
        self.gets = []

    def __call__(self, request):
        if request.method == "POST":
            self.posts.append(request)
            return fresh(self.post)
        self.gets.append(request)
        if self.get is None:
            return graph_error(803, "not found", status=404)
        return fresh(self.get)


def fresh(resp):
    return httpx.Response(
        resp.status_code, content=resp.content, headers={"content-type": "application/json"}
    )


@pytest.fixture
def make_service(session, account, rate_limits):
    add_local_ads(session, account, ["a1"])

    def build(stub):
        client = MetaClient(
            "token-abc",
            "123",
            rate_limits=rate_limits,
            transport=httpx.MockTransport(stub),
            sleep=SleepRecorder(),
        )
        return AdStatusService(session, MetaEndpoints(client), sleep=SleepRecorder())

    return build


def graph_error(code, message, status=400):
    return httpx.Response(status, json={"error": {"code": code, "message": message}})


@pytest.mark.asyncio
async def test_pause_success_updates_local_status(make_service, session):
    stub = GraphStub(httpx.Response(200, json={"success": True}))

    result = await make_service(stub).pause("a1")

    assert result.ok
    assert result.status == PAUSED
    assert "status=PAUSED" in stub.posts[0].content.decode()
    assert session.get(Ad, "a1").effective_status == PAUSED


@pytest.mark.asyncio
async def test_already_paused_counts_as_success(make_service, session):
    stub = GraphStub(graph_error(100, "Ad is already paused"))

    result = await make_service(stub).pause("a1")

    assert result.ok
    assert result.already
    assert session.get(Ad, "a1").effective_status == PAUSED


@pytest.mark.asyncio
async def test_expired_token_is_reported_and_nothing_changes(make_service, session):
    stub = GraphStub(graph_error(190, "Invalid OAuth access token"))

    result = await make_service(stub).pause("a1")

    assert not result.ok
    assert result.error_code == 190
    assert result.error == "Access token expired or invalid. Update the account's access token."
    assert stub.gets == []
    assert session.get(Ad, "a1").effective_status == ACTIVE


@pytest.mark.asyncio
async def test_unknown_error_is_settled_by_reading_status_back(make_service, session):
    stub = GraphStub(
        graph_error(2, "Service temporarily unavailable", status=500),
        httpx.Response(200, json={"id": "a1", "effective_status": "PAUSED"}),
    )
    service = make_service(stub)

    result = await service.pause("a1")

    assert result.ok
    assert result.verified
    assert len(stub.posts) == 3
    assert service._sleep.calls == [0.5]
    assert session.get(Ad, "a1").effective_status == PAUSED


@pytest.mark.asyncio
async def test_unconfirmed_success_that_did_not_apply_fails(make_service, session):
    stub = GraphStub(
        httpx.Response(200, json={}),
        httpx.Response(200, json={"id": "a1", "effective_status": "ACTIVE"}),
    )

    result = await make_service(stub).pause("a1")

    assert not result.ok
    assert result.error.startswith("The ad was not paused")
    assert session.get(Ad, "a1").effective_status == ACTIVE


@pytest.mark.asyncio
async def test_reactivate_accepts_id_echo(make_service, session):
    ad = session.get(Ad, "a1")
    ad.effective_status = PAUSED
    session.add(ad)
    session.commit()
    stub = GraphStub(httpx.Response(200, json={"id": "a1"}))

    result = await make_service(stub).reactivate("a1")

    assert result.ok
    assert session.get(Ad, "a1").effective_status == ACTIVE


def test_looks_already():
    assert looks_already(PAUSED, "This ad is already paused")
    assert looks_already(ACTIVE, "Current status is already ACTIVE")
    assert looks_already(PAUSED, "Cannot change status of this object")
    assert not looks_already(ACTIVE, "This ad is already paused")
    assert not looks_already(PAUSED, None)


def test_status_matches_any_status_field():
    assert status_matches(PAUSED, {"effective_status": "campaign_paused"})
    assert status_matches(PAUSED, {"effective_status": "ACTIVE", "configured_status": "PAUSED"})
    assert status_matches(ACTIVE, {"effective_status": "LEARNING_LIMITED"})
    assert not status_matches(ACTIVE, {"effective_status": "DISAPPROVED"})


def test_error_messages_for_known_codes():
    assert "ad id" in error_message(PAUSED, 100, None, 400, "Unsupported post request")
    assert "permissions" in error_message(PAUSED, 10, None, 403, "denied")
    assert error_message(ACTIVE, 17, None, 400, "limit").startswith("Rate limit reached")
    assert "reactivated" in error_message(ACTIVE, 2635, None, 400, "x")
    assert "being updated" in error_message(PAUSED, 2, 1487758, 400, "x")
    assert error_message(PAUSED, 2, None, 500, "boom") is None
