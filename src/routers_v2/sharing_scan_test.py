# Tests for sharing_scan.py router endpoints
# Run: pytest src/routers_v2/sharing_scan_test.py

import json
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from routers_v2 import sharing_scan

ANONYMOUS_LINK = {"id": "anon", "roles": ["read"], "link": {"scope": "anonymous", "type": "view"}}

def parse_sse(text: str) -> list[tuple[str, str]]:
  events = []
  for block in text.split("\n\n"):
    lines = [line for line in block.split("\n") if line]
    if not lines or not lines[0].startswith("event: "): continue
    events.append((lines[0][len("event: "):], "\n".join(line[len("data: "):] for line in lines[1:])))
  return events

@pytest.fixture
def client(tmp_path, make_gateway):
  app = FastAPI()
  sharing_scan.set_config(SimpleNamespace(LOCAL_PERSISTENT_STORAGE_PATH=str(tmp_path)), "/v2")
  sharing_scan.set_gateway(make_gateway())
  app.include_router(sharing_scan.router, tags=["Sharing Scan"], prefix="/v2")
  with TestClient(app) as test_client:
    yield test_client

@pytest.fixture
def scanned_site(fake_graph):
  fake_graph.add_json("GET", "/sites/s1", {"id": "s1", "displayName": "Project Site", "webUrl": "https://contoso.sharepoint.com/sites/project"})
  fake_graph.add_json("GET", "/domains", {"value": [{"id": "contoso.com", "isVerified": True}]})
  fake_graph.add_json("GET", "/sites/s1/drives", {"value": [{"id": "d1", "name": "Documents"}]})
  fake_graph.add_json("GET", "/drives/d1/root/delta", {"value": [
    {"id": "i1", "name": "a.txt", "file": {}, "parentReference": {"path": "/drive/root:"}, "permissions": [ANONYMOUS_LINK]}
  ]})
  return fake_graph

def run_scan(client) -> list[tuple[str, str]]:
  response = client.get("/v2/sharing_scan/scan", params={"target": "sites", "ids": "s1", "format": "stream"})
  assert response.status_code == 200
  return parse_sse(response.text)


# ----------------------------------------- START: Endpoint validation --------------------------------------------------------

def test_endpoints_without_params_return_docs(client):
  response = client.get("/v2/sharing_scan")
  assert response.status_code == 200
  assert response.headers["content-type"].startswith("text/plain")
  assert "/v2/sharing_scan/scan?target=sites&format=stream" in response.text
  assert "{router_prefix}" not in client.get("/v2/sharing_scan/scan").text
  assert "set_expiration" in client.get("/v2/sharing_scan/remediate").text

def test_status_is_idle_before_first_scan(client):
  response = client.get("/v2/sharing_scan/status", params={"format": "json"})
  assert response.json()["ok"] is True
  assert response.json()["data"]["state"] == "idle"
  assert response.json()["data"]["results_found"] == 0

def test_scan_requires_stream_format(client):
  response = client.get("/v2/sharing_scan/scan", params={"target": "sites", "format": "json"})
  assert response.status_code == 400
  assert response.json()["ok"] is False

def test_scan_rejects_unknown_target(client):
  response = client.get("/v2/sharing_scan/scan", params={"target": "groups", "format": "stream"})
  assert response.status_code == 400
  assert "Invalid target" in response.json()["error"]

def test_stop_without_running_scan(client):
  response = client.get("/v2/sharing_scan/stop", params={"format": "json"})
  assert response.status_code == 400
  assert response.json()["error"] == "No scan is running."

# ----------------------------------------- END: Endpoint validation ----------------------------------------------------------


# ----------------------------------------- START: Scan and export ------------------------------------------------------------

def test_scan_streams_and_stores_results(client, scanned_site, tmp_path):
  events = run_scan(client)

  assert events[0][0] == "start_json"
  assert any(event_type == "log" and "FOUND: /Documents/a.txt" in data for event_type, data in events)
  end = json.loads(events[-1][1])
  assert events[-1][0] == "end_json"
  assert end["state"] == "completed"
  assert end["result"]["ok"] is True
  assert end["result"]["data"]["results_found"] == 1

  status = client.get("/v2/sharing_scan/status", params={"format": "json"}).json()["data"]
  assert status["state"] == "completed"

  results = client.get("/v2/sharing_scan/results", params={"format": "json"}).json()["data"]
  assert len(results) == 1
  assert results[0]["index"] == 0
  assert results[0]["item_path"] == "/Documents/a.txt"
  assert results[0]["sharing"][0]["who"] == "Anyone (Anonymous Link)"
  assert results[0]["sharing"][0]["classification"] == "external"

  job_id = json.loads(events[0][1])["job_id"]
  joblog = client.get("/v2/sharing_scan/joblog", params={"job_id": job_id, "format": "text"})
  assert joblog.status_code == 200
  assert "event: end_json" in joblog.text
  assert list((tmp_path / "jobs" / "sharing_scan").glob("*.completed"))

def test_statistics_and_csv_export(client, scanned_site):
  run_scan(client)

  stats = client.get("/v2/sharing_scan/statistics", params={"format": "json"}).json()["data"]
  assert stats["totalItems"] == 1 and stats["externalSharingCount"] == 1

  response = client.get("/v2/sharing_scan/export", params={"format": "csv"})
  assert response.status_code == 200
  assert response.headers["content-type"].startswith("text/csv")
  assert "attachment" in response.headers["content-disposition"]
  lines = response.text.splitlines()
  assert lines[0].startswith("Source,Site Name,")
  assert len(lines) == 2

def test_report_export(client, scanned_site, tmp_path):
  run_scan(client)
  response = client.get("/v2/sharing_scan/export", params={"format": "report"})
  assert response.json()["ok"] is True
  report_id = response.json()["data"]["report_id"]
  assert (tmp_path / "reports" / f"{report_id}.zip").exists()

def test_export_without_results(client):
  response = client.get("/v2/sharing_scan/export", params={"format": "csv"})
  assert response.status_code == 400
  assert response.json()["error"] == "No results to export."

# ----------------------------------------- END: Scan and export --------------------------------------------------------------


# ----------------------------------------- START: Remediation ----------------------------------------------------------------

def test_remediate_rejects_invalid_action(client):
  response = client.post("/v2/sharing_scan/remediate", json={"action": "delete_everything", "result_indexes": [0]})
  assert response.status_code == 400
  assert "Invalid action" in response.json()["error"]

def test_remediate_rejects_non_integer_indexes(client):
  response = client.post("/v2/sharing_scan/remediate", json={"action": "refresh", "result_indexes": ["0"]})
  assert response.status_code == 400

def test_remediate_refresh(client, scanned_site):
  run_scan(client)
  scanned_site.add_json("GET", "/drives/d1/items/i1/permissions", {"value": []})

  response = client.post("/v2/sharing_scan/remediate", json={"action": "refresh", "result_indexes": [0]})

  assert response.status_code == 200
  assert response.json()["data"][0]["ok"] is True
  assert client.get("/v2/sharing_scan/results", params={"format": "json"}).json()["data"] == []

# ----------------------------------------- END: Remediation ------------------------------------------------------------------
