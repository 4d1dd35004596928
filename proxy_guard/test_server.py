import pytest
from fastapi.testclient import TestClient

from proxy_guard.vars import _parse_key_value_list


@pytest.fixture(scope="module")
def test_client():
    from proxy_guard.server import app

    with TestClient(app) as client:
        yield client


def test_metrics_exposed(test_client):
    r = test_client.get("/metrics")
    assert r.status_code == 200
    assert "fastapi_app_info" in r.text
    assert "proxy_attempts" in r.text


def test_proxy_errors_rendered_as_json(test_client):
    r = test_client.get("/api/proxy")
    assert r.status_code == 400
    assert r.headers["content-type"] == "application/json"
    assert r.json() == {"message": "No URL provided"}


def test_unknown_route(test_client):
    assert test_client.get("/api/nope").status_code == 404


class TestParseKeyValueList:
    def test_pairs(self):
        assert _parse_key_value_list("authorization=Bearer x, team = core") == {
            "authorization": "Bearer x",
            "team": "core",
        }

    def test_value_may_contain_equals(self):
        assert _parse_key_value_list("sig=a=b") == {"sig": "a=b"}

    def test_malformed_entries_skipped(self):
        assert _parse_key_value_list("novalue,=x,k=,,ok=1") == {"ok": "1"}

    def test_empty(self):
        assert _parse_key_value_list("") == {}
