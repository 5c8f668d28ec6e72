# Tests for common_batch_permission_functions_v2.py
# Run: pytest src/routers_v2/common_batch_permission_functions_v2_test.py

import asyncio, json

import httpx
import pytest

from routers_v2.common_batch_permission_functions_v2 import PermissionRequest, build_batch_body, fetch_permissions_for, map_batch_responses
from routers_v2.common_drive_traversal_functions_v2 import ScanController
from routers_v2.common_graph_request_functions_v2 import AuthExpiredError

LINK = {"id": "l1", "roles": ["read"], "link": {"scope": "anonymous"}}

def make_requests(count: int, drive_id: str = "d1") -> list[PermissionRequest]:
  return [PermissionRequest(drive_id=drive_id, item={"id": f"i{n}", "name": f"file{n}.txt", "file": {}}, item_path=f"/Documents/file{n}.txt") for n in range(count)]


# ----------------------------------------- START: Wire format --------------------------------------------------------------

def test_build_batch_body_uses_absolute_ids():
  body = build_batch_body(make_requests(3), offset=15)
  assert [r["id"] for r in body["requests"]] == ["15", "16", "17"]
  assert body["requests"][0] == {"id": "15", "method": "GET", "url": "/drives/d1/items/i0/permissions"}

def test_map_batch_responses_by_id():
  requests = make_requests(3)
  batch_data = {"responses": [
    {"id": "2", "status": 403, "body": {"error": {"code": "accessDenied"}}},
    {"id": "0", "status": 200, "body": {"value": [LINK]}}
  ]}
  entries = map_batch_responses(requests, 0, batch_data)
  assert [e.item["id"] for e in entries] == ["i0", "i1", "i2"]
  assert entries[0].permissions == [LINK] and entries[0].error == ""
  assert entries[1].permissions == [] and entries[1].error == "missing sub-response"
  assert entries[2].permissions == [] and "403" in entries[2].error

# ----------------------------------------- END: Wire format ----------------------------------------------------------------


# ----------------------------------------- START: fetch_permissions_for ----------------------------------------------------

def test_groups_of_batch_size(fake_graph, make_gateway, batch_responder):
  fake_graph.add("POST", "/$batch", batch_responder({f"i{n}": [LINK] for n in range(20)}))
  gateway = make_gateway()
  entries = asyncio.run(fetch_permissions_for(gateway, make_requests(20), batch_size=15, delay_between_batches_seconds=0))
  batch_calls = fake_graph.calls_to("POST", "/$batch")
  assert len(batch_calls) == 2
  assert len(json.loads(batch_calls[0].content)["requests"]) == 15
  assert len(json.loads(batch_calls[1].content)["requests"]) == 5
  assert [e.item["id"] for e in entries] == [f"i{n}" for n in range(20)]
  assert all(e.permissions == [LINK] for e in entries)

def test_failed_batch_falls_back_to_individual_requests(fake_graph, make_gateway):
  fake_graph.add_json("POST", "/$batch", {"error": {"code": "generalException"}}, status_code=500)
  for n in range(5):
    fake_graph.add_json("GET", f"/drives/d1/items/i{n}/permissions", {"value": [LINK]})
  # Item i3 cannot carry permissions
  fake_graph.routes[("GET", "/drives/d1/items/i3/permissions")] = [lambda request: httpx.Response(501, json={"error": {"code": "notSupported"}})]
  gateway = make_gateway(max_retries=0)

  entries = asyncio.run(fetch_permissions_for(gateway, make_requests(5), batch_size=15, delay_between_batches_seconds=0))

  individual_calls = [r for r in fake_graph.calls if r.method == "GET"]
  assert len(individual_calls) == 5
  assert len(entries) == 5
  assert [len(e.permissions) for e in entries] == [1, 1, 1, 0, 1]
  assert entries[3].error == "not_supported"

def test_auth_expired_is_not_absorbed(fake_graph, make_gateway, failing_token_provider):
  fake_graph.add_json("POST", "/$batch", {"error": {"code": "InvalidAuthenticationToken"}}, status_code=401)
  gateway = make_gateway(provider=failing_token_provider)
  with pytest.raises(AuthExpiredError):
    asyncio.run(fetch_permissions_for(gateway, make_requests(3), delay_between_batches_seconds=0))
  assert not [r for r in fake_graph.calls if r.method == "GET"]

def test_stop_between_groups(fake_graph, make_gateway, batch_responder):
  controller = ScanController()
  respond = batch_responder({f"i{n}": [LINK] for n in range(6)})
  def respond_and_stop(request: httpx.Request) -> httpx.Response:
    controller.request_stop()
    return respond(request)
  fake_graph.add("POST", "/$batch", respond_and_stop)
  gateway = make_gateway()

  entries = asyncio.run(fetch_permissions_for(gateway, make_requests(6), controller=controller, batch_size=2, delay_between_batches_seconds=0))

  assert len(fake_graph.calls_to("POST", "/$batch")) == 1
  assert [e.item["id"] for e in entries] == ["i0", "i1"]

# ----------------------------------------- END: fetch_permissions_for ------------------------------------------------------
