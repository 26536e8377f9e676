from fastapi.testclient import TestClient

from staffing_api.main import app


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_unknown_bearer_token_is_rejected(api_client: TestClient, bearer) -> None:
    response = api_client.get("/postings/anything", headers=bearer("not-a-token"))
    assert response.status_code == 401


def test_missing_bearer_token_is_rejected(api_client: TestClient) -> None:
    response = api_client.post("/referrals", json={"referredUserSub": "someone"})
    assert response.status_code == 401
