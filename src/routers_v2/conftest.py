# Shared fixtures for routers_v2 tests
# FakeGraph answers Graph calls through httpx.MockTransport, so the real gateway code path runs.

import json
from typing import Callable, Union

import httpx
import pytest

from routers_v2.common_graph_request_functions_v2 import AuthExpiredError, GatewaySettings, GraphRequestGateway

GRAPH_PATH_PREFIX = "/v1.0"

ResponseSpec = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]

class FakeGraph:
  """
  Route table keyed by (method, path without /v1.0 and without query).
  Each route holds a list of responses: consumed in order, the last one repeats.
  A response can be a callable taking the request.
  """

  def __init__(self):
    self.routes: dict[tuple[str, str], list[ResponseSpec]] = {}
    self.calls: list[httpx.Request] = []

  def add(self, method: str, path: str, *responses: ResponseSpec) -> "FakeGraph":
    self.routes.setdefault((method.upper(), path), []).extend(responses)
    return self

  def add_json(self, method: str, path: str, data, status_code: int = 200, headers: dict = None) -> "FakeGraph":
    return self.add(method, path, lambda request: httpx.Response(status_code, json=data, headers=headers))

  def calls_to(self, method: str, path: str) -> list[httpx.Request]:
    return [r for r in self.calls if r.method == method.upper() and self.path_of(r) == path]

  @staticmethod
  def path_of(request: httpx.Request) -> str:
    path = request.url.path
    return path[len(GRAPH_PATH_PREFIX):] if path.startswith(GRAPH_PATH_PREFIX) else path

  def handle(self, request: httpx.Request) -> httpx.Response:
    self.calls.append(request)
    key = (request.method, self.path_of(request))
    responses = self.routes.get(key)
    if not responses:
      return httpx.Response(404, json={"error": {"code": "itemNotFound", "message": f"No fake route for {key}"}})
    response = responses.pop(0) if len(responses) > 1 else responses[0]
    if callable(response): return response(request)
    return response

class FakeTokenProvider:
  def __init__(self, fail_refresh: bool = False):
    self.fail_refresh = fail_refresh
    self.refresh_count = 0
    self.token = "token-1"

  async def get_valid_token(self) -> str:
    return self.token

  def is_expiring_soon(self, horizon_minutes: int) -> bool:
    return False

  async def force_refresh(self) -> str:
    self.refresh_count += 1
    if self.fail_refresh: raise AuthExpiredError("Token refresh failed -> test")
    self.token = f"token-{self.refresh_count + 1}"
    return self.token

def zero_delay_settings(**overrides) -> GatewaySettings:
  values = dict(
    max_retries=3,
    backoff_base_seconds=0.0,
    backoff_jitter_seconds=0.0,
    low_quota_delay_seconds=0.0,
    page_low_quota_delay_seconds=0.0,
    page_delay_seconds=0.0,
    delay_between_requests_seconds=0.0
  )
  values.update(overrides)
  return GatewaySettings(**values)

def batch_handler(permissions_by_item_id: dict) -> Callable[[httpx.Request], httpx.Response]:
  """$batch responder: answers each sub-request from permissions_by_item_id, 404 for unknown items."""
  def handle(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    responses = []
    for sub_request in body["requests"]:
      item_id = sub_request["url"].split("/items/")[1].split("/")[0]
      if item_id in permissions_by_item_id:
        responses.append({"id": sub_request["id"], "status": 200, "body": {"value": permissions_by_item_id[item_id]}})
      else:
        responses.append({"id": sub_request["id"], "status": 404, "body": {"error": {"code": "itemNotFound"}}})
    return httpx.Response(200, json={"responses": responses})
  return handle

@pytest.fixture
def fake_graph() -> FakeGraph:
  return FakeGraph()

@pytest.fixture
def token_provider() -> FakeTokenProvider:
  return FakeTokenProvider()

@pytest.fixture
def make_gateway(fake_graph, token_provider):
  def make(provider=None, **setting_overrides) -> GraphRequestGateway:
    return GraphRequestGateway(
      provider or token_provider,
      zero_delay_settings(**setting_overrides),
      http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_graph.handle))
    )
  return make

@pytest.fixture
def failing_token_provider() -> FakeTokenProvider:
  return FakeTokenProvider(fail_refresh=True)

@pytest.fixture
def batch_responder():
  return batch_handler
