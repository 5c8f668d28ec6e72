# Graph request gateway - retry/backoff, global throttle coordination and bounded-concurrency admission queue
# One GraphRequestGateway per process: Graph throttles per tenant and app, not per drive.

import asyncio, logging, random, time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import httpx

from hardcoded_config import SCANNER_HARDCODED_CONFIG

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_SUPPORTED_MARKERS = ["notSupported", "Permission is not supported"]
NOT_PROVISIONED_MARKERS = ["mysite not found", "ResourceNotFound"]


# ----------------------------------------- START: Errors ---------------------------------------------------------------------

class GraphRequestError(Exception):
  """Request failed after retries, or with a status the gateway does not retry."""
  def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
    super().__init__(message)
    self.status_code = status_code
    self.body = body

class NonRetryableRequestError(GraphRequestError):
  """Item-level failure that is never retried. reason: 'not_supported' or 'not_provisioned'."""
  def __init__(self, message: str, reason: str, status_code: Optional[int] = None, body: str = ""):
    super().__init__(message, status_code, body)
    self.reason = reason

class AuthExpiredError(GraphRequestError):
  """Bearer token could not be refreshed. Aborts the whole scan."""

# ----------------------------------------- END: Errors -----------------------------------------------------------------------


# ----------------------------------------- START: Throttle state and settings ------------------------------------------------

class ThrottleState:
  """Process-wide throttle window. Set on 429/503, read by the admission queue before each dispatch."""

  def __init__(self, clock: Callable[[], float] = time.monotonic):
    self._clock = clock
    self.is_throttled = False
    self.resume_until = 0.0

  def set_throttled(self, wait_seconds: float) -> float:
    """Extends the window to at least now + wait_seconds. Returns the deadline this caller asked for."""
    deadline = self._clock() + wait_seconds
    self.is_throttled = True
    self.resume_until = max(self.resume_until, deadline)
    return deadline

  def release(self, deadline: float) -> None:
    """Clears the window only if no later deadline was set meanwhile."""
    if self.resume_until <= deadline: self.clear()

  def clear(self) -> None:
    self.is_throttled = False
    self.resume_until = 0.0

  def remaining_seconds(self) -> float:
    if not self.is_throttled: return 0.0
    return max(0.0, self.resume_until - self._clock())

  def is_active(self) -> bool:
    return self.is_throttled and self._clock() < self.resume_until

@dataclass
class GatewaySettings:
  max_retries: int = SCANNER_HARDCODED_CONFIG.GRAPH_MAX_RETRIES
  token_refresh_horizon_minutes: int = SCANNER_HARDCODED_CONFIG.TOKEN_REFRESH_HORIZON_MINUTES
  backoff_base_seconds: float = 1.0
  backoff_jitter_seconds: float = 1.0
  low_quota_threshold: int = SCANNER_HARDCODED_CONFIG.GRAPH_LOW_QUOTA_THRESHOLD
  low_quota_delay_seconds: float = SCANNER_HARDCODED_CONFIG.GRAPH_LOW_QUOTA_DELAY_MS / 1000
  page_low_quota_threshold: int = SCANNER_HARDCODED_CONFIG.GRAPH_PAGE_LOW_QUOTA_THRESHOLD
  page_low_quota_delay_seconds: float = SCANNER_HARDCODED_CONFIG.GRAPH_PAGE_LOW_QUOTA_DELAY_MS / 1000
  page_delay_seconds: float = SCANNER_HARDCODED_CONFIG.GRAPH_PAGE_DELAY_MS / 1000
  max_concurrent_requests: int = SCANNER_HARDCODED_CONFIG.GRAPH_MAX_CONCURRENT_REQUESTS
  delay_between_requests_seconds: float = SCANNER_HARDCODED_CONFIG.GRAPH_DELAY_BETWEEN_REQUESTS_MS / 1000

class TokenProvider(Protocol):
  async def get_valid_token(self) -> str: ...
  def is_expiring_soon(self, horizon_minutes: int) -> bool: ...
  async def force_refresh(self) -> str: ...

# ----------------------------------------- END: Throttle state and settings --------------------------------------------------


# ----------------------------------------- START: Admission queue ------------------------------------------------------------

class RequestQueue:
  """
  FIFO admission queue with a concurrency ceiling.
  A unit is admitted only below the ceiling and outside an active throttle window.
  After a unit finishes the next admission waits delay_between_requests_seconds.
  """

  def __init__(self, throttle_state: ThrottleState, max_concurrent: int = 6, delay_between_requests_seconds: float = 0.2):
    self.throttle_state = throttle_state
    self.max_concurrent = max_concurrent
    self.delay_between_requests_seconds = delay_between_requests_seconds
    self._queue: deque = deque()
    self._running = 0
    self._tasks: set = set()

  @property
  def running(self) -> int:
    return self._running

  @property
  def pending(self) -> int:
    return len(self._queue)

  async def add(self, request_fn: Callable[[], Awaitable[T]]) -> T:
    future = asyncio.get_running_loop().create_future()
    self._queue.append((request_fn, future))
    self._process()
    return await future

  def _process(self) -> None:
    if self._running >= self.max_concurrent or not self._queue: return
    loop = asyncio.get_running_loop()
    if self.throttle_state.is_active():
      loop.call_later(max(0.1, self.throttle_state.remaining_seconds()), self._process)
      return
    request_fn, future = self._queue.popleft()
    if future.cancelled():
      self._process()
      return
    self._running += 1
    task = loop.create_task(self._run(request_fn, future))
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)

  async def _run(self, request_fn: Callable[[], Awaitable[Any]], future: asyncio.Future) -> None:
    try:
      result = await request_fn()
      if not future.done(): future.set_result(result)
    except Exception as e:
      if not future.done(): future.set_exception(e)
    finally:
      self._running -= 1
      if self.delay_between_requests_seconds > 0:
        asyncio.get_running_loop().call_later(self.delay_between_requests_seconds, self._process)
      else:
        self._process()

# ----------------------------------------- END: Admission queue --------------------------------------------------------------


# ----------------------------------------- START: Gateway --------------------------------------------------------------------

class GraphRequestGateway:
  """
  Issues Graph calls with bearer auth, retry policy and throttle coordination.

  Status policy:
  - 429/503: wait Retry-After (or exponential backoff with jitter), pause the whole queue meanwhile, retry
  - 401: one forced token refresh, then retry; a second 401 or a failed refresh raises AuthExpiredError
  - 501 with a not-supported marker, 404 with a not-provisioned marker: NonRetryableRequestError, no retry
  - other non-2xx and transport errors: exponential backoff with jitter, retry up to max_retries
  """

  def __init__(self, token_provider: TokenProvider, settings: Optional[GatewaySettings] = None, throttle_state: Optional[ThrottleState] = None, http_client: Optional[httpx.AsyncClient] = None, base_url: str = SCANNER_HARDCODED_CONFIG.GRAPH_BASE_URL):
    self.token_provider = token_provider
    self.settings = settings or GatewaySettings()
    self.throttle_state = throttle_state or ThrottleState()
    self.queue = RequestQueue(self.throttle_state, self.settings.max_concurrent_requests, self.settings.delay_between_requests_seconds)
    self.base_url = base_url.rstrip("/")
    self._http_client = http_client
    self._owns_http_client = http_client is None
    self._pending_slowdown_seconds = 0.0
    self.request_count = 0

  def _get_http_client(self) -> httpx.AsyncClient:
    if self._http_client is None:
      self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(60.0))
    return self._http_client

  async def aclose(self) -> None:
    if self._http_client is not None and self._owns_http_client:
      await self._http_client.aclose()
      self._http_client = None

  def build_url(self, url: str) -> str:
    if url.startswith("http://") or url.startswith("https://"): return url
    return f"{self.base_url}/{url.lstrip('/')}"

  async def _acquire_token(self) -> str:
    try:
      token = await self.token_provider.get_valid_token()
      if not token or self.token_provider.is_expiring_soon(self.settings.token_refresh_horizon_minutes):
        logger.info("Token missing or expiring soon, refreshing before request...")
        token = await self.token_provider.force_refresh()
    except AuthExpiredError: raise
    except Exception as e:
      raise AuthExpiredError(f"Authentication token expired and refresh failed -> {e}") from e
    if not token: raise AuthExpiredError("Authentication token expired and refresh failed -> no token returned")
    return token

  async def _force_refresh(self) -> str:
    try:
      token = await self.token_provider.force_refresh()
    except AuthExpiredError: raise
    except Exception as e:
      raise AuthExpiredError(f"Authentication failed and token refresh failed -> {e}") from e
    if not token: raise AuthExpiredError("Authentication failed and token refresh returned no token")
    return token

  def _backoff_seconds(self, attempt: int) -> float:
    return (2 ** attempt) * self.settings.backoff_base_seconds + random.random() * self.settings.backoff_jitter_seconds

  def _retry_after_seconds(self, response: httpx.Response, attempt: int) -> float:
    retry_after = response.headers.get("Retry-After")
    if retry_after:
      try: return max(0.0, float(retry_after))
      except ValueError: pass
    return self._backoff_seconds(attempt)

  def _read_rate_limit_remaining(self, response: httpx.Response) -> Optional[int]:
    """Read RateLimit-Remaining. Low quota slows down the next request, not this one."""
    remaining = response.headers.get("RateLimit-Remaining")
    if remaining is None: return None
    try: remaining_count = int(remaining)
    except ValueError: return None
    if remaining_count < self.settings.low_quota_threshold:
      reset = response.headers.get("RateLimit-Reset", "?")
      logger.warning(f"Graph rate limit quota low: remaining={remaining_count}, reset={reset} secs")
      self._pending_slowdown_seconds = self.settings.low_quota_delay_seconds
    return remaining_count

  async def _apply_pending_slowdown(self) -> None:
    if self._pending_slowdown_seconds <= 0: return
    delay = self._pending_slowdown_seconds
    self._pending_slowdown_seconds = 0.0
    await asyncio.sleep(delay)

  async def execute(self, method: str, url: str, headers: Optional[dict] = None, json_body: Any = None, max_retries: Optional[int] = None) -> httpx.Response:
    """Issue one Graph call with retries. Returns the successful response or raises a GraphRequestError subclass."""
    if max_retries is None: max_retries = self.settings.max_retries
    full_url = self.build_url(url)
    token = await self._acquire_token()
    refreshed_after_401 = False
    last_error: Optional[GraphRequestError] = None

    for attempt in range(max_retries + 1):
      await self._apply_pending_slowdown()
      request_headers = {
        "Authorization": f"Bearer {token}",
        "User-Agent": SCANNER_HARDCODED_CONFIG.GRAPH_USER_AGENT,
        "Accept": "application/json"
      }
      if json_body is not None: request_headers["Content-Type"] = "application/json"
      if headers: request_headers.update(headers)

      self.request_count += 1
      try:
        response = await self._get_http_client().request(method, full_url, headers=request_headers, json=json_body)
      except httpx.HTTPError as e:
        last_error = GraphRequestError(f"{method} {url} failed -> {type(e).__name__}: {e}")
        if attempt >= max_retries: raise last_error from e
        await asyncio.sleep(self._backoff_seconds(attempt))
        continue

      self._read_rate_limit_remaining(response)
      status = response.status_code
      if 200 <= status < 300: return response

      if status in (429, 503):
        wait_seconds = self._retry_after_seconds(response, attempt)
        resume_at = self.throttle_state.set_throttled(wait_seconds)
        last_error = GraphRequestError(f"{method} {url} throttled with HTTP {status}", status, response.text)
        if attempt >= max_retries: raise last_error
        logger.warning(f"Graph throttled request (HTTP {status}), waiting {wait_seconds:.1f} secs before retry {attempt + 1} / {max_retries}...")
        await asyncio.sleep(wait_seconds)
        self.throttle_state.release(resume_at)
        continue

      body = response.text
      if status == 401:
        if refreshed_after_401:
          raise AuthExpiredError(f"{method} {url} rejected with HTTP 401 after token refresh", status, body)
        logger.warning("Graph returned HTTP 401, forcing token refresh...")
        token = await self._force_refresh()
        refreshed_after_401 = True
        continue

      if status == 501 and any(marker in body for marker in NOT_SUPPORTED_MARKERS):
        raise NonRetryableRequestError(f"{method} {url} not supported on this item (HTTP 501)", "not_supported", status, body)
      if status == 404 and any(marker in body for marker in NOT_PROVISIONED_MARKERS):
        raise NonRetryableRequestError(f"{method} {url} resource not provisioned (HTTP 404)", "not_provisioned", status, body)

      last_error = GraphRequestError(f"{method} {url} failed with HTTP {status}: {body[:300]}", status, body)
      if attempt >= max_retries: raise last_error
      await asyncio.sleep(self._backoff_seconds(attempt))

    # Only reachable when the final attempt was spent on a 401 token refresh
    raise last_error or GraphRequestError(f"{method} {url} failed with HTTP 401 on final attempt", 401)

  async def get_json(self, url: str) -> dict:
    response = await self.execute("GET", url)
    return response.json()

  async def get_all(self, url: str) -> list:
    """Follow @odata.nextLink until exhausted, concatenating 'value' arrays."""
    items = []
    next_url: Optional[str] = url
    while next_url:
      response = await self.execute("GET", next_url)
      data = response.json()
      items.extend(data.get("value", []))
      next_url = data.get("@odata.nextLink")
      if not next_url: break
      remaining = response.headers.get("RateLimit-Remaining")
      if remaining is not None and remaining.isdigit() and int(remaining) < self.settings.page_low_quota_threshold:
        await asyncio.sleep(self.settings.page_low_quota_delay_seconds)
      elif self.settings.page_delay_seconds > 0:
        await asyncio.sleep(self.settings.page_delay_seconds)
    return items

  async def queued(self, request_fn: Callable[[], Awaitable[T]]) -> T:
    """Run request_fn through the admission queue."""
    return await self.queue.add(request_fn)

  async def queued_get_all(self, url: str) -> list:
    return await self.queue.add(lambda: self.get_all(url))

  async def queued_get_json(self, url: str) -> dict:
    return await self.queue.add(lambda: self.get_json(url))

# ----------------------------------------- END: Gateway ----------------------------------------------------------------------
