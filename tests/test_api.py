import pytest
from fastapi.testclient import TestClient

from celocred.api.contributions import get_gateway, get_pipeline
from celocred.compute.pipeline import ContributionPipeline
from celocred.main import app
from celocred.rate_limit import rate_limit_submit
from celocred.trust.advisory import AdvisoryVerifier

from conftest import WALLET, StaticOracle


async def no_rate_limit():
    return None


@pytest.fixture
def client(github, gateway):
    pipeline = ContributionPipeline(
        source=github.source(),
        verifier=AdvisoryVerifier(oracle=StaticOracle()),
        gateway=gateway,
    )
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[rate_limit_submit] = no_rate_limit
    yield TestClient(app)
    app.dependency_overrides.clear()


def body(**overrides):
    data = {"address": WALLET, "type": "PR_MERGED", "link": "https://github.com/dev"}
    data.update(overrides)
    return data


def ecosystem_dev(github):
    github.add_profile("dev", bio=f"gm {WALLET}")
    github.add_repo("dev", "celo-tools", stars=20, language="TypeScript")
    github.commits["dev/celo-tools"] = 5


# ── Submit ────────────────────────────────────────

def test_submit_success(client, github):
    ecosystem_dev(github)
    resp = client.post("/v1/contributions/submit", json=body())
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["contribution"]["status"] == "verified"
    assert data["execution"]["score_tx"]
    assert data["breakdown"]["delta"] == 75
    assert "X-Request-Id" in resp.headers


def test_submit_zero_activity_is_400_with_reason(client, github, ledger):
    github.add_profile("dev", bio=f"gm {WALLET}")
    resp = client.post("/v1/contributions/submit", json=body())
    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["error"] == "rejected"
    assert "No ecosystem contributions" in detail["message"]
    assert detail["contribution"]["status"] == "rejected"
    assert ledger.calls == []


def test_submit_invalid_address(client):
    resp = client.post("/v1/contributions/submit", json=body(address="0xnope"))
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "invalid_input"


def test_submit_ownership_mismatch(client, github):
    github.add_profile("dev", bio="0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359")
    resp = client.post("/v1/contributions/submit", json=body())
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "ownership_mismatch"


def test_submit_github_down_is_503(client, github):
    ecosystem_dev(github)
    github.profile_status = 503
    resp = client.post("/v1/contributions/submit", json=body())
    assert resp.status_code == 503
    assert resp.json()["detail"]["source"] == "github"


def test_submit_ledger_failure_is_502_with_step(client, github, ledger):
    ecosystem_dev(github)
    ledger.inject_fault("register", "revert")
    resp = client.post("/v1/contributions/submit", json=body())
    assert resp.status_code == 502
    detail = resp.json()["detail"]
    assert detail["failed_step"] == "Registering"
    assert detail["retry_safe"] is False


def test_submit_missing_field_is_422(client):
    resp = client.post("/v1/contributions/submit", json={"address": WALLET})
    assert resp.status_code == 422


# ── Reputation ────────────────────────────────────

def test_reputation(client, ledger):
    ledger.scores[WALLET.lower()] = 150
    resp = client.get(f"/v1/reputation/{WALLET.lower()}")
    assert resp.status_code == 200
    data = resp.json()
    assert data["address"] == WALLET
    assert data["score"] == 150
    assert data["tier"] == "BUILDER"
    assert data["next_tier"] == "CONTRIBUTOR"
    assert data["points_to_next_tier"] == 150
    assert data["badge_count"] == 0


def test_reputation_leader_has_no_next_tier(client, ledger):
    ledger.scores[WALLET.lower()] = 900
    data = client.get(f"/v1/reputation/{WALLET}").json()
    assert data["tier"] == "LEADER"
    assert data["next_tier"] is None


def test_reputation_invalid_address(client):
    assert client.get("/v1/reputation/0x12").status_code == 400


# ── Health ────────────────────────────────────────

def test_health(client):
    data = client.get("/v1/contributions/health").json()
    assert data["status"] == "healthy"
    assert data["ledger"] == {"backend": "memory", "reachable": True}
