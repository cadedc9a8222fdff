"""
Test suite for the HTTP API.

Tests cover:
- Instant and range query envelopes
- Error envelopes for bad queries and parameters
- Push gateway writes and deletes
- Rules, alerts, targets and status surfaces
"""

import pytest
from fastapi.testclient import TestClient

from metricstore.alerting import AlertRule, RuleGroup
from metricstore.api import create_api_server
from metricstore.config import Settings
from metricstore.engine import MetricStore
from metricstore.index import MetricKind

from .conftest import T0, FakeClock


@pytest.fixture
def store():
    store = MetricStore(Settings(), clock=FakeClock())
    yield store
    store.evaluator.close()
    store.scheduler.executor.shutdown(wait=False)


@pytest.fixture
def client(store):
    api, _ = create_api_server(store)
    return TestClient(api.app)


def write(store, name, labels, value, seconds=T0):
    assert store.gateway.write(name, labels, value, int(seconds * 1000), MetricKind.GAUGE).ok


class TestQueryEndpoints:
    """Tests for /api/v1/query and /api/v1/query_range."""

    def test_instant_query(self, client, store):
        write(store, "up", {"job": "api"}, 1)
        response = client.get("/api/v1/query", params={"query": "up", "time": str(T0)})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["data"]["resultType"] == "vector"
        assert body["data"]["result"][0]["metric"] == {"__name__": "up", "job": "api"}
        assert body["data"]["result"][0]["value"][1] == "1"

    def test_time_defaults_to_now(self, client, store):
        write(store, "up", {}, 1)
        body = client.get("/api/v1/query", params={"query": "up"}).json()
        assert body["data"]["result"][0]["value"][0] == T0

    def test_rfc3339_time(self, client):
        response = client.get("/api/v1/query", params={"query": "1", "time": "2023-11-14T22:13:20Z"})
        assert response.json()["data"]["result"] == [T0, "1"]

    def test_range_query(self, client, store):
        for i in range(5):
            write(store, "load", {}, i, T0 - 60 + i * 15)
        response = client.get("/api/v1/query_range", params={
            "query": "load", "start": str(T0 - 60), "end": str(T0), "step": "15s"
        })
        body = response.json()
        assert body["data"]["resultType"] == "matrix"
        assert [v[1] for v in body["data"]["result"][0]["values"]] == ["0", "1", "2", "3", "4"]

    def test_parse_error(self, client):
        response = client.get("/api/v1/query", params={"query": "sum(up"})
        assert response.status_code == 400
        assert response.json()["errorType"] == "bad_data"
        assert response.json()["status"] == "error"

    def test_missing_parameter(self, client):
        response = client.get("/api/v1/query_range", params={"query": "up"})
        assert response.status_code == 400
        assert response.json()["errorType"] == "bad_data"

    def test_bad_time(self, client):
        response = client.get("/api/v1/query", params={"query": "up", "time": "yesterday"})
        assert response.status_code == 400

    @pytest.mark.parametrize("value", ["nan", "inf", "-inf", "NaN"])
    def test_non_finite_time(self, client, value):
        response = client.get("/api/v1/query", params={"query": "up", "time": value})
        assert response.status_code == 400
        assert response.json()["errorType"] == "bad_data"

    @pytest.mark.parametrize("param", ["start", "end", "step"])
    def test_non_finite_range_parameter(self, client, param):
        params = {"query": "up", "start": str(T0), "end": str(T0 + 60), "step": "15"}
        params[param] = "inf"
        response = client.get("/api/v1/query_range", params=params)
        assert response.status_code == 400
        assert response.json()["errorType"] == "bad_data"

    def test_execution_error(self, client):
        response = client.get("/api/v1/query_range", params={
            "query": "up", "start": str(T0), "end": str(T0 + 100000), "step": "1"
        })
        assert response.status_code == 422
        assert response.json()["errorType"] == "execution"

    def test_labels(self, client, store):
        write(store, "up", {"job": "api"}, 1)
        assert "job" in client.get("/api/v1/labels").json()["data"]
        assert client.get("/api/v1/label/job/values").json()["data"] == ["api"]


class TestPushEndpoints:
    """Tests for the push gateway routes."""

    def test_push_and_delete(self, client, store):
        response = client.put("/metrics/job/batch/instance/host1", content="last_success 1\n")
        assert response.status_code == 200
        assert response.json()["samples"] == 1
        assert 'last_success{instance="host1",job="batch"}' in client.get("/metrics").text

        assert client.delete("/metrics/job/batch/instance/host1").json()["data"]["deleted"]
        assert "last_success" not in client.get("/metrics").text

    def test_post_without_instance(self, client, store):
        response = client.post("/metrics/job/batch", content="a 1\n", params={"ttl": "1m"})
        assert response.json()["ttl_seconds"] == 60
        assert store.pushgateway.get_group("batch", "") is not None

    def test_malformed_line_in_push(self, client, store):
        response = client.put("/metrics/job/batch/instance/host1", content="ok 1\nbroken{ 1\n")
        assert response.status_code == 200
        assert response.json()["samples"] == 1
        assert response.json()["invalid_lines"] == 1
        assert [s.name for s in store.pushgateway.get_group("batch", "host1").samples] == ["ok"]

    def test_unparseable_push(self, client, store):
        response = client.put("/metrics/job/batch/instance/host1", content="broken{ 1\n")
        assert response.status_code == 400
        assert response.json()["errorType"] == "bad_data"
        assert store.pushgateway.get_group("batch", "host1") is None

    def test_non_utf8_body(self, client, store):
        """Undecodable bytes only spoil the lines they appear on."""
        response = client.put("/metrics/job/b/instance/i", content=b"x 1\n\xff\xfe bad 2\n")
        assert response.status_code == 200
        assert response.json()["invalid_lines"] == 1
        assert [s.name for s in store.pushgateway.get_group("b", "i").samples] == ["x"]

    def test_non_utf8_only_body(self, client):
        response = client.put("/metrics/job/b/instance/i", content=b"\xff\xfe 2\n")
        assert response.status_code == 400
        assert response.json()["errorType"] == "bad_data"


class TestStatusEndpoints:
    """Tests for rules, alerts, targets, probes and status."""

    def test_rules_and_alerts(self, client, store):
        group = store.add_rule_group(RuleGroup(name="node", rules=[AlertRule(name="Up", expr="up > 0")]))
        write(store, "up", {"job": "api"}, 1)
        store.evaluator.evaluate_group(group, now=T0)

        rules = client.get("/api/v1/rules").json()["data"]["groups"]
        assert rules[0]["rules"][0]["health"] == "ok"
        alerts = client.get("/api/v1/alerts").json()["data"]["alerts"]
        assert alerts[0]["state"] == "firing"
        assert alerts[0]["labels"] == {"alertname": "Up", "job": "api"}

    def test_targets_include_pushgateway(self, client):
        targets = client.get("/api/v1/targets").json()["data"]["activeTargets"]
        assert [t["job"] for t in targets] == ["pushgateway"]

    def test_probes(self, client):
        assert client.get("/api/v1/probes").json()["data"]["probes"] == []

    def test_status_and_health(self, client):
        status = client.get("/api/v1/status").json()["data"]
        assert status["degraded"] is False
        assert "storage:maintenance" in status["scheduler"]["tasks"]
        assert client.get("/health").json()["status"] == "healthy"
