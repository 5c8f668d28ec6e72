# Tests for common_graph_request_functions_v2.py
# Run: pytest src/routers_v2/common_graph_request_functions_v2_test.py

import asyncio, time

import httpx
import pytest

from hardcoded_config import SCANNER_HARDCODED_CONFIG
from routers_v2.common_graph_request_functions_v2 import AuthExpiredError, GraphRequestError, NonRetryableRequestError, RequestQueue, ThrottleState


# ----------------------------------------- START: ThrottleState ----------------------------------------------------------

class FakeClock:
  def __init__(self): self.now = 100.0
  def __call__(self): return self.now

def test_throttle_state_window():
  clock = FakeClock()
  state = ThrottleState(clock=clock)
  assert not state.is_active()
  assert state.remaining_seconds() == 0.0

  state.set_throttled(5)
  assert state.is_active()
  assert state.remaining_seconds() == 5.0

  # A shorter second signal does not shorten the window
  state.set_throttled(2)
  assert state.remaining_seconds() == 5.0

  clock.now += 5
  assert not state.is_active()
  state.clear()
  assert not state.is_throttled
  assert state.resume_until == 0.0

def test_release_keeps_a_longer_window():
  clock = FakeClock()
  state = ThrottleState(clock=clock)
  long_deadline = state.set_throttled(5)
  short_deadline = state.set_throttled(1)
  assert short_deadline == 101.0

  state.release(short_deadline)
  assert state.is_active()
  assert state.remaining_seconds() == 5.0

  state.release(long_deadline)
  assert not state.is_throttled

# ----------------------------------------- END: ThrottleState ------------------------------------------------------------


# ----------------------------------------- START: Status policy ----------------------------------------------------------

def test_success_sends_auth_and_user_agent(fake_graph, make_gateway):
  fake_graph.add_json("GET", "/sites/s1", {"id": "s1"})
  gateway = make_gateway()
  data = asyncio.run(gateway.get_json("/sites/s1"))
  assert data == {"id": "s1"}
  request = fake_graph.calls[0]
  assert request.headers["Authorization"] == "Bearer token-1"
  assert request.headers["User-Agent"] == SCANNER_HARDCODED_CONFIG.GRAPH_USER_AGENT
  assert str(request.url) == "https://graph.microsoft.com/v1.0/sites/s1"

def test_503_without_retry_after_makes_max_retries_plus_one_attempts(fake_graph, make_gateway):
  fake_graph.add_json("GET", "/sites", {"error": {"code": "serviceNotAvailable"}}, status_code=503)
  gateway = make_gateway(max_retries=3)
  with pytest.raises(GraphRequestError) as exc_info:
    asyncio.run(gateway.execute("GET", "/sites"))
  assert exc_info.value.status_code == 503
  assert len(fake_graph.calls) == 4

def test_429_waits_retry_after_then_succeeds(fake_graph, make_gateway):
  fake_graph.add(
    "GET", "/sites",
    lambda request: httpx.Response(429, headers={"Retry-After": "0.05"}, json={"error": {"code": "tooManyRequests"}}),
    lambda request: httpx.Response(200, json={"value": []})
  )
  gateway = make_gateway()
  started = time.monotonic()
  response = asyncio.run(gateway.execute("GET", "/sites"))
  assert response.status_code == 200
  assert len(fake_graph.calls) == 2
  assert time.monotonic() - started >= 0.04
  assert not gateway.throttle_state.is_throttled

def test_429_retry_keeps_longer_concurrent_throttle_window(fake_graph, make_gateway):
  gateway = make_gateway()

  def throttled_while_other_request_is_throttled(request: httpx.Request) -> httpx.Response:
    gateway.throttle_state.set_throttled(5)
    return httpx.Response(429, headers={"Retry-After": "0.01"}, json={"error": {"code": "tooManyRequests"}})

  fake_graph.add("GET", "/sites", throttled_while_other_request_is_throttled, lambda request: httpx.Response(200, json={"value": []}))
  response = asyncio.run(gateway.execute("GET", "/sites"))
  assert response.status_code == 200
  assert gateway.throttle_state.is_active()
  assert gateway.throttle_state.remaining_seconds() > 4

def test_501_not_supported_is_not_retried(fake_graph, make_gateway):
  fake_graph.add_json("GET", "/drives/d1/root/delta", {"error": {"code": "notSupported", "message": "Delta not supported"}}, status_code=501)
  gateway = make_gateway(max_retries=3)
  with pytest.raises(NonRetryableRequestError) as exc_info:
    asyncio.run(gateway.execute("GET", "/drives/d1/root/delta"))
  assert exc_info.value.reason == "not_supported"
  assert len(fake_graph.calls) == 1

def test_404_mysite_not_found_is_not_provisioned(fake_graph, make_gateway):
  fake_graph.add_json("GET", "/users/u1/drive", {"error": {"code": "ResourceNotFound", "message": "User's mysite not found."}}, status_code=404)
  gateway = make_gateway()
  with pytest.raises(NonRetryableRequestError) as exc_info:
    asyncio.run(gateway.execute("GET", "/users/u1/drive"))
  assert exc_info.value.reason == "not_provisioned"
  assert len(fake_graph.calls) == 1

def test_plain_404_is_retried_as_generic_failure(fake_graph, make_gateway):
  fake_graph.add_json("GET", "/drives/d1/items/x", {"error": {"code": "itemNotFound"}}, status_code=404)
  gateway = make_gateway(max_retries=2)
  with pytest.raises(GraphRequestError) as exc_info:
    asyncio.run(gateway.execute("GET", "/drives/d1/items/x"))
  assert not isinstance(exc_info.value, NonRetryableRequestError)
  assert len(fake_graph.calls) == 3

def test_401_forces_one_refresh_then_succeeds(fake_graph, make_gateway, token_provider):
  fake_graph.add(
    "GET", "/sites",
    lambda request: httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}}),
    lambda request: httpx.Response(200, json={"value": []})
  )
  gateway = make_gateway()
  response = asyncio.run(gateway.execute("GET", "/sites"))
  assert response.status_code == 200
  assert token_provider.refresh_count == 1
  assert fake_graph.calls[0].headers["Authorization"] == "Bearer token-1"
  assert fake_graph.calls[1].headers["Authorization"] == "Bearer token-2"

def test_401_after_refresh_raises_auth_expired(fake_graph, make_gateway, token_provider):
  fake_graph.add_json("GET", "/sites", {"error": {"code": "InvalidAuthenticationToken"}}, status_code=401)
  gateway = make_gateway(max_retries=3)
  with pytest.raises(AuthExpiredError):
    asyncio.run(gateway.execute("GET", "/sites"))
  assert token_provider.refresh_count == 1
  assert len(fake_graph.calls) == 2

def test_failed_refresh_raises_auth_expired(fake_graph, make_gateway, failing_token_provider):
  fake_graph.add_json("GET", "/sites", {"error": {"code": "InvalidAuthenticationToken"}}, status_code=401)
  gateway = make_gateway(provider=failing_token_provider)
  with pytest.raises(AuthExpiredError):
    asyncio.run(gateway.execute("GET", "/sites"))
  assert len(fake_graph.calls) == 1

def test_transport_error_is_retried(fake_graph, make_gateway):
  attempts = []
  def flaky(request: httpx.Request) -> httpx.Response:
    attempts.append(request)
    if len(attempts) == 1: raise httpx.ConnectError("connection reset", request=request)
    return httpx.Response(200, json={"id": "s1"})
  fake_graph.add("GET", "/sites/s1", flaky)
  gateway = make_gateway()
  assert asyncio.run(gateway.get_json("/sites/s1")) == {"id": "s1"}
  assert len(attempts) == 2

def test_low_quota_slows_down_next_request(fake_graph, make_gateway):
  fake_graph.add_json("GET", "/sites/s1", {"id": "s1"}, headers={"RateLimit-Remaining": "5", "RateLimit-Reset": "10"})
  gateway = make_gateway(low_quota_delay_seconds=0.01)
  asyncio.run(gateway.get_json("/sites/s1"))
  assert gateway._pending_slowdown_seconds == 0.01

  fake_graph.routes.clear()
  fake_graph.add_json("GET", "/sites/s1", {"id": "s1"})
  asyncio.run(gateway.get_json("/sites/s1"))
  assert gateway._pending_slowdown_seconds == 0.0

# ----------------------------------------- END: Status policy ------------------------------------------------------------


# ----------------------------------------- START: Pagination -------------------------------------------------------------

def test_get_all_follows_next_link(fake_graph, make_gateway):
  fake_graph.add(
    "GET", "/sites",
    lambda request: httpx.Response(200, json={"value": [{"id": "s1"}, {"id": "s2"}], "@odata.nextLink": "https://graph.microsoft.com/v1.0/sites?$skiptoken=abc"}),
    lambda request: httpx.Response(200, json={"value": [{"id": "s3"}]})
  )
  gateway = make_gateway()
  items = asyncio.run(gateway.get_all("/sites?search=*"))
  assert [i["id"] for i in items] == ["s1", "s2", "s3"]
  assert len(fake_graph.calls) == 2
  assert "skiptoken=abc" in str(fake_graph.calls[1].url)

# ----------------------------------------- END: Pagination ---------------------------------------------------------------


# ----------------------------------------- START: Admission queue --------------------------------------------------------

def test_queue_respects_concurrency_ceiling():
  running = 0
  peak = 0

  async def unit(n: int) -> int:
    nonlocal running, peak
    running += 1
    peak = max(peak, running)
    await asyncio.sleep(0.01)
    running -= 1
    return n

  async def run():
    queue = RequestQueue(ThrottleState(), max_concurrent=2, delay_between_requests_seconds=0)
    return await asyncio.gather(*[queue.add(lambda n=n: unit(n)) for n in range(6)])

  results = asyncio.run(run())
  assert results == list(range(6))
  assert peak == 2

def test_queue_waits_for_throttle_window():
  async def run() -> float:
    throttle_state = ThrottleState()
    queue = RequestQueue(throttle_state, max_concurrent=6, delay_between_requests_seconds=0)
    throttle_state.set_throttled(0.2)
    started = time.monotonic()
    async def unit(): return time.monotonic()
    dispatched = await queue.add(unit)
    return dispatched - started

  assert asyncio.run(run()) >= 0.15

def test_queue_propagates_unit_errors():
  async def run():
    queue = RequestQueue(ThrottleState(), max_concurrent=1, delay_between_requests_seconds=0)
    async def failing(): raise GraphRequestError("boom", 500)
    async def ok(): return "ok"
    with pytest.raises(GraphRequestError):
      await queue.add(failing)
    # The slot is released after a failure
    return await queue.add(ok), queue.running

  assert asyncio.run(run()) == ("ok", 0)

def test_queue_admits_in_fifo_order():
  started = []

  async def unit(n: int) -> int:
    started.append(n)
    await asyncio.sleep(0)
    return n

  async def run():
    queue = RequestQueue(ThrottleState(), max_concurrent=1, delay_between_requests_seconds=0)
    return await asyncio.gather(*[queue.add(lambda n=n: unit(n)) for n in range(8)])

  assert asyncio.run(run()) == list(range(8))
  assert started == list(range(8))

def test_queue_holds_units_while_a_request_is_throttled(fake_graph, make_gateway):
  fake_graph.add(
    "GET", "/sites",
    lambda request: httpx.Response(429, headers={"Retry-After": "0.2"}, json={"error": {"code": "tooManyRequests"}}),
    lambda request: httpx.Response(200, json={"value": []})
  )
  gateway = make_gateway(max_concurrent_requests=2)

  async def run() -> float:
    throttled = asyncio.ensure_future(gateway.queued(lambda: gateway.execute("GET", "/sites")))
    for _ in range(200):
      if gateway.throttle_state.is_active(): break
      await asyncio.sleep(0.005)
    assert gateway.throttle_state.is_active()
    queued_at = time.monotonic()
    async def unit(): return time.monotonic()
    dispatched = await gateway.queued(unit)
    assert (await throttled).status_code == 200
    return dispatched - queued_at

  assert asyncio.run(run()) >= 0.15

def test_queue_spaces_admissions_by_delay():
  started = []

  async def unit():
    started.append(time.monotonic())

  async def run():
    queue = RequestQueue(ThrottleState(), max_concurrent=1, delay_between_requests_seconds=0.05)
    await asyncio.gather(*[queue.add(unit) for _ in range(3)])

  asyncio.run(run())
  assert len(started) == 3
  assert all(later - earlier >= 0.04 for earlier, later in zip(started, started[1:]))

# ----------------------------------------- END: Admission queue ----------------------------------------------------------
