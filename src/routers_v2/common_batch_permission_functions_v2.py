# Batch permission fetcher - resolves permissions for many drive items via Graph $batch
# Groups of PERMISSION_BATCH_SIZE; a failed $batch call falls back to one paginated request per item.

import asyncio
from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

from hardcoded_config import SCANNER_HARDCODED_CONFIG
from routers_v2.common_graph_request_functions_v2 import AuthExpiredError, GraphRequestGateway, NonRetryableRequestError
from routers_v2.common_logging_functions_v2 import MiddlewareLogger, pluralize

if TYPE_CHECKING:
  from routers_v2.common_drive_traversal_functions_v2 import ScanController

@dataclass
class PermissionRequest:
  drive_id: str
  item: dict
  item_path: str = ""

  @property
  def relative_url(self) -> str:
    return f"/drives/{self.drive_id}/items/{self.item.get('id')}/permissions"

@dataclass
class ItemPermissions:
  item: dict
  item_path: str
  permissions: list = field(default_factory=list)
  error: str = ""

def build_batch_body(requests: list[PermissionRequest], offset: int) -> dict:
  """Graph $batch body. Sub-request ids are the absolute index of the item in the full request list."""
  return {"requests": [{"id": str(offset + i), "method": "GET", "url": r.relative_url} for i, r in enumerate(requests)]}

def map_batch_responses(requests: list[PermissionRequest], offset: int, batch_data: dict) -> list[ItemPermissions]:
  """Map each sub-response back to its item by id. Non-200 or missing sub-responses yield an empty permission list."""
  results = [ItemPermissions(item=r.item, item_path=r.item_path, error="missing sub-response") for r in requests]
  for sub_response in batch_data.get("responses", []):
    try: index = int(sub_response.get("id")) - offset
    except (TypeError, ValueError): continue
    if index < 0 or index >= len(requests): continue
    status = sub_response.get("status")
    body = sub_response.get("body") or {}
    if status == 200 and isinstance(body, dict):
      results[index].permissions = list(body.get("value") or [])
      results[index].error = ""
    else:
      error = body.get("error", {}) if isinstance(body, dict) else {}
      results[index].error = f"HTTP {status}: {error.get('code', '') if isinstance(error, dict) else error}".strip()
  return results

async def _fetch_individually(gateway: GraphRequestGateway, requests: list[PermissionRequest], controller: Optional["ScanController"], logger: Optional[MiddlewareLogger]) -> list[ItemPermissions]:
  results = []
  for request in requests:
    if controller is not None and controller.stopped: break
    try:
      permissions = await gateway.queued_get_all(request.relative_url)
      results.append(ItemPermissions(item=request.item, item_path=request.item_path, permissions=permissions))
    except AuthExpiredError: raise
    except NonRetryableRequestError as e:
      results.append(ItemPermissions(item=request.item, item_path=request.item_path, error=e.reason))
    except Exception as e:
      if logger: logger.log_function_output(f"  WARNING: Permission request failed for item_name='{request.item.get('name')}' -> {e}")
      results.append(ItemPermissions(item=request.item, item_path=request.item_path, error=str(e)))
  return results

async def fetch_permissions_for(gateway: GraphRequestGateway, requests: list[PermissionRequest], controller: Optional["ScanController"] = None, logger: Optional[MiddlewareLogger] = None, batch_size: int = SCANNER_HARDCODED_CONFIG.PERMISSION_BATCH_SIZE, delay_between_batches_seconds: float = SCANNER_HARDCODED_CONFIG.PERMISSION_BATCH_DELAY_MS / 1000) -> list[ItemPermissions]:
  """
  Resolve permissions for all requests with one $batch call per group.

  - A failed sub-request yields an empty permission list (with error set), never an exception.
  - A failed $batch call falls back to individual paginated requests for that group.
  - Stops before the next group (or next fallback item) once the controller is stopped.
  - AuthExpiredError always propagates.
  """
  results: list[ItemPermissions] = []
  for offset in range(0, len(requests), batch_size):
    if controller is not None and controller.stopped: break
    group = requests[offset:offset + batch_size]
    try:
      response = await gateway.queued(lambda: gateway.execute("POST", "/$batch", json_body=build_batch_body(group, offset)))
      results.extend(map_batch_responses(group, offset, response.json()))
    except AuthExpiredError: raise
    except Exception as e:
      if logger: logger.log_function_output(pluralize(f"  WARNING: Batch request failed, falling back to {len(group)} individual request(s) -> {e}", len(group)))
      results.extend(await _fetch_individually(gateway, group, controller, logger))
    if offset + batch_size < len(requests) and delay_between_batches_seconds > 0:
      await asyncio.sleep(delay_between_batches_seconds)
  return results
