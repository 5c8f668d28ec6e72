# Remediation actions on scan findings - all calls go through the queued request gateway
# set_expiration / remove_links / remove_all modify sharing; refresh re-reads permissions of one finding.

import datetime
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from routers_v2.common_drive_traversal_functions_v2 import ScanResult
from routers_v2.common_graph_request_functions_v2 import AuthExpiredError, GraphRequestGateway
from routers_v2.common_logging_functions_v2 import MiddlewareLogger
from routers_v2.common_permission_classification_functions_v2 import SharingFilter, filter_permissions

REMEDIATION_ACTIONS = ["set_expiration", "remove_links", "remove_all", "refresh"]

@dataclass
class RemediationOutcome:
  item_id: str
  item_path: str
  ok: bool = True
  changed_ids: list = field(default_factory=list)
  errors: list = field(default_factory=list)

  @property
  def changed(self) -> int:
    return len(self.changed_ids)

  def to_dict(self) -> dict:
    return {"item_id": self.item_id, "item_path": self.item_path, "ok": self.ok, "changed": self.changed, "errors": list(self.errors)}

def parse_expiration_date(value: Optional[str]) -> Optional[str]:
  """'YYYY-MM-DD' -> 'YYYY-MM-DDT23:59:59.000Z'. Empty value removes the expiration (None). Raises ValueError on bad input."""
  if value is None or not str(value).strip(): return None
  date = datetime.datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
  return f"{date.isoformat()}T23:59:59.000Z"

def _permission_url(result: ScanResult, permission_id: str) -> str:
  return f"/drives/{result.drive_id}/items/{result.item_id}/permissions/{permission_id}"

def is_protected_permission(permission: dict) -> bool:
  """Owner grants and the inherited root grant are never removed."""
  if permission.get("id") == "root": return True
  return any("owner" in (role or "").lower() for role in permission.get("roles") or [])

async def _apply(gateway: GraphRequestGateway, result: ScanResult, permissions: list, method: str, json_body: Optional[dict], logger: MiddlewareLogger) -> RemediationOutcome:
  outcome = RemediationOutcome(item_id=result.item_id, item_path=result.item_path)
  for permission in permissions:
    permission_id = permission.get("id")
    if not permission_id: continue
    url = _permission_url(result, permission_id)
    try:
      await gateway.queued(lambda: gateway.execute(method, url, json_body=json_body))
      outcome.changed_ids.append(permission_id)
    except AuthExpiredError: raise
    except Exception as e:
      outcome.ok = False
      outcome.errors.append(f"{permission_id}: {e}")
      logger.log_function_output(f"  ERROR: {method} permission_id='{permission_id}' on item_path='{result.item_path}' failed -> {e}")
  return outcome

async def set_expiration(gateway: GraphRequestGateway, result: ScanResult, expiration_date: Optional[str], logger: MiddlewareLogger) -> RemediationOutcome:
  """Set (or clear) the expiration of every sharing link on the item."""
  expiration = parse_expiration_date(expiration_date)
  links = [p for p in result.permissions if p.get("link")]
  outcome = await _apply(gateway, result, links, "PATCH", {"expirationDateTime": expiration}, logger)
  for permission in result.permissions:
    if permission.get("id") in outcome.changed_ids:
      permission["expirationDateTime"] = expiration
  return outcome

async def remove_sharing_links(gateway: GraphRequestGateway, result: ScanResult, logger: MiddlewareLogger) -> RemediationOutcome:
  links = [p for p in result.permissions if p.get("link")]
  return await _apply(gateway, result, links, "DELETE", None, logger)

async def remove_all_sharing(gateway: GraphRequestGateway, result: ScanResult, logger: MiddlewareLogger) -> RemediationOutcome:
  removable = [p for p in result.permissions if not is_protected_permission(p)]
  return await _apply(gateway, result, removable, "DELETE", None, logger)

async def refresh_item_permissions(gateway: GraphRequestGateway, result: ScanResult, tenant_domains: FrozenSet[str], sharing_filter: SharingFilter, logger: MiddlewareLogger) -> RemediationOutcome:
  """Re-read the item's permissions and replace both permission lists of the finding."""
  outcome = RemediationOutcome(item_id=result.item_id, item_path=result.item_path)
  try:
    permissions = await gateway.queued_get_all(f"/drives/{result.drive_id}/items/{result.item_id}/permissions")
  except AuthExpiredError: raise
  except Exception as e:
    outcome.ok = False
    outcome.errors.append(str(e))
    logger.log_function_output(f"  ERROR: Failed to refresh permissions of item_path='{result.item_path}' -> {e}")
    return outcome
  result.all_permissions = list(permissions)
  result.permissions = filter_permissions(permissions, tenant_domains, sharing_filter)
  outcome.changed_ids = [p.get("id") for p in result.permissions]
  return outcome

async def remediate(gateway: GraphRequestGateway, results: list[ScanResult], indexes: list[int], action: str, tenant_domains: FrozenSet[str], sharing_filter: SharingFilter, logger: MiddlewareLogger, expiration_date: Optional[str] = None) -> list[RemediationOutcome]:
  """
  Apply action to the findings at the given indexes. Modifying actions refresh the finding afterwards,
  so the results list reflects the remote state.
  """
  if action not in REMEDIATION_ACTIONS: raise ValueError(f"Unknown action '{action}'. Use: {', '.join(REMEDIATION_ACTIONS)}")
  if action == "set_expiration": parse_expiration_date(expiration_date)
  logger.log_function_header(f"remediate(action='{action}')")
  outcomes = []
  try:
    for index in indexes:
      if index < 0 or index >= len(results):
        outcomes.append(RemediationOutcome(item_id="", item_path="", ok=False, errors=[f"Result index {index} out of range"]))
        continue
      result = results[index]
      logger.log_function_output(f"{action}: item_path='{result.item_path}'")
      if action == "set_expiration":
        outcome = await set_expiration(gateway, result, expiration_date, logger)
      elif action == "remove_links":
        outcome = await remove_sharing_links(gateway, result, logger)
      elif action == "remove_all":
        outcome = await remove_all_sharing(gateway, result, logger)
      else:
        outcome = await refresh_item_permissions(gateway, result, tenant_domains, sharing_filter, logger)
      if action in ("remove_links", "remove_all") and outcome.changed:
        await refresh_item_permissions(gateway, result, tenant_domains, sharing_filter, logger)
      outcomes.append(outcome)
  finally:
    logger.log_function_footer()
  return outcomes
