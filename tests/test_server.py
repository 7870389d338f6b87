import json

import pytest
from fastapi.testclient import TestClient

import server
from server import app


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"] == "1.0.0"
    assert set(body["services"]) == {"mock_data_sets", "test_cases", "load_tests"}


class TestMockDataRoutes:
    def test_generate_fetch_export_delete(self, client):
        response = client.post("/api/v1/mock-data/generate",
                               json={"type": "user-profile", "count": 2, "seed": 11})
        assert response.status_code == 200
        data_set = response.json()
        assert len(data_set["data"]) == 2
        assert "count:2" in data_set["metadata"]["tags"]

        fetched = client.get(f"/api/v1/mock-data/{data_set['id']}").json()
        assert fetched["checksum"] == data_set["checksum"]

        exported = client.get(f"/api/v1/mock-data/{data_set['id']}/export", params={"format": "json"})
        assert json.loads(exported.text) == data_set["data"]

        assert client.delete(f"/api/v1/mock-data/{data_set['id']}").json()["success"]
        assert client.get(f"/api/v1/mock-data/{data_set['id']}").status_code == 404

    def test_import_and_list(self, client):
        response = client.post("/api/v1/mock-data/import", json={
            "content": "id,name\n1,Ada\n", "format": "csv", "name": "people", "tags": ["seeded"],
        })
        assert response.status_code == 200
        data_set = response.json()
        assert data_set["data"] == [{"id": 1, "name": "Ada"}]

        listed = client.get("/api/v1/mock-data", params={"tag": "seeded"}).json()
        assert data_set["id"] in [d["id"] for d in listed["data_sets"]]

    def test_templates_and_cache_stats(self, client):
        templates = client.get("/api/v1/mock-data/templates").json()["templates"]
        assert "user-profile-template" in [t["id"] for t in templates]
        assert client.get("/api/v1/mock-data/cache/stats").status_code == 200

    def test_errors_are_mapped(self, client):
        assert client.post("/api/v1/mock-data/generate", json={"type": "other"}).status_code == 404
        assert client.post("/api/v1/mock-data/generate", json={"type": "cv", "count": 0}).status_code == 422
        bad_format = client.post("/api/v1/mock-data/import", json={"content": "x", "format": "toml"})
        assert bad_format.status_code == 400
        missing = client.get("/api/v1/mock-data/nope/export")
        assert missing.status_code == 404


class TestApiTestRoutes:
    def test_crud(self, client):
        created = client.post("/api/v1/api-tests", json={
            "name": "List users", "endpoint": "/users", "tags": ["server-crud"],
        })
        assert created.status_code == 200
        case = created.json()
        assert case["curl_command"].endswith('"${BASE_URL}/users"')

        listed = client.get("/api/v1/api-tests", params={"tag": "server-crud"}).json()
        assert [c["id"] for c in listed["test_cases"]] == [case["id"]]
        assert client.get(f"/api/v1/api-tests/{case['id']}").json()["name"] == "List users"

        assert client.delete(f"/api/v1/api-tests/{case['id']}").status_code == 200
        assert client.get(f"/api/v1/api-tests/{case['id']}").status_code == 404

    def test_invalid_case_is_rejected(self, client):
        response = client.post("/api/v1/api-tests", json={"name": "bad", "endpoint": "users"})
        assert response.status_code == 422
        assert response.json()["rule"] == "endpoint_format"

    def test_unparseable_curl(self, client):
        result = client.post("/api/v1/api-tests/curl", json={"command": "wget http://example.com"}).json()
        assert result["status"] == "error"
        assert result["errors"][0].startswith("Failed to parse curl command")

        by_id = client.get(f"/api/v1/api-tests/results/{result['id']}")
        assert by_id.status_code == 200

    def test_reports(self, client):
        client.post("/api/v1/api-tests/curl", json={"command": "curl"})
        text = client.get("/api/v1/api-tests/results/report", params={"format": "text"})
        assert text.status_code == 200
        assert text.text.startswith("API Test Report")
        html = client.get("/api/v1/api-tests/results/report", params={"format": "html"})
        assert html.headers["content-type"].startswith("text/html")
        assert client.get("/api/v1/api-tests/results/report", params={"format": "pdf"}).status_code == 400

    def test_batch_with_unknown_ids(self, client):
        response = client.post("/api/v1/api-tests/execute", json={"test_case_ids": ["ghost-1", "ghost-2"]})
        assert response.status_code == 404
        assert "ghost-1, ghost-2" in response.json()["detail"]


class TestSuiteRoutes:
    def test_create_and_extend(self, client):
        case = client.post("/api/v1/api-tests", json={"name": "Health", "endpoint": "/health"}).json()
        suite = client.post("/api/v1/suites", json={"name": "server-smoke"}).json()
        assert suite["test_ids"] == []

        extended = client.post(f"/api/v1/suites/server-smoke/tests/{case['id']}").json()
        assert extended["test_ids"] == [case["id"]]
        assert "server-smoke" in [s["name"] for s in client.get("/api/v1/suites").json()["suites"]]

    def test_unknown_members(self, client):
        assert client.post("/api/v1/suites", json={"name": "ghosts", "test_ids": ["x"]}).status_code == 404
        assert client.post("/api/v1/suites/ghosts/tests/x").status_code == 404
        assert client.post("/api/v1/suites/ghosts/execute", json={}).status_code == 404


class TestScenarioRoutes:
    def test_actions(self, client):
        actions = client.get("/api/v1/scenarios/actions").json()["actions"]
        assert {"api_request", "generate_mock_data", "wait"} <= set(actions)

    def test_execute(self, client):
        response = client.post("/api/v1/scenarios/execute", json={"scenario": {
            "name": "pause",
            "timeout": 5000,
            "steps": [{"name": "pause", "action": "wait", "parameters": {"duration_ms": 1}}],
            "expected_outcomes": [{"description": "waited", "field": "waited_ms", "expected_value": 1}],
        }})
        assert response.status_code == 200
        body = response.json()
        assert body["result"]["status"] == "passed"
        assert body["scenario"]["status"] == "passed"

    def test_retry_keeps_base_url(self, client, monkeypatch, fake_transport):
        monkeypatch.setattr(server.service.api_testing_service, "transport", fake_transport)
        response = client.post("/api/v1/scenarios/execute", json={
            "retry": True,
            "base_url": "http://custom.test",
            "scenario": {
                "name": "health",
                "steps": [{"name": "health", "action": "api_request",
                           "parameters": {"request": {"endpoint": "/health"}}}],
                "expected_outcomes": [{"description": "healthy", "field": "body.status", "expected_value": "ok"}],
            },
        })
        assert response.status_code == 200
        assert response.json()["result"]["status"] == "passed"
        assert [call["url"] for call in fake_transport.calls] == ["http://custom.test/health"]

    def test_invalid_scenario(self, client):
        response = client.post("/api/v1/scenarios/execute", json={"scenario": {"name": "empty"}})
        assert response.status_code == 422
        assert response.json()["rule"] == "no_steps"


class TestLoadTestRoutes:
    def test_unknown_run(self, client):
        assert client.get("/api/v1/load-tests/ghost").status_code == 404
        assert client.post("/api/v1/load-tests/ghost/stop").status_code == 404

    def test_invalid_config_is_rejected(self, client):
        response = client.post("/api/v1/load-tests", json={"test_case_ids": ["x"], "target_users": 2})
        assert response.status_code == 422
        assert response.json()["rule"] == "sustain_positive"

    def test_unknown_preset_and_cases(self, client):
        assert client.post("/api/v1/load-tests", json={"test_case_ids": ["x"], "preset": "nope"}).status_code == 404
        response = client.post("/api/v1/load-tests", json={
            "test_case_ids": ["x"], "target_users": 1, "sustain_duration": 1,
        })
        assert response.status_code == 404
