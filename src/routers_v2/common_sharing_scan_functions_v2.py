# Sharing scan orchestration - discovery, tenant domains and the scan state machine
# Idle -> Running -> Completed | Stopped | Failed. One scan at a time per orchestrator.

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, Optional

from routers_v2.common_drive_traversal_functions_v2 import DriveContainer, ScanContext, ScanController, ScanResult, ScanSettings, ScanType, is_preservation_hold_library, scan_drive
from routers_v2.common_graph_request_functions_v2 import AuthExpiredError, GraphRequestGateway, NonRetryableRequestError
from routers_v2.common_logging_functions_v2 import MiddlewareLogger, pluralize
from routers_v2.common_permission_classification_functions_v2 import email_domain, normalize_tenant_domains


# ----------------------------------------- START: Discovery ------------------------------------------------------------------

async def discover_sharepoint_sites(gateway: GraphRequestGateway, logger: MiddlewareLogger) -> list[dict]:
  logger.log_function_header("discover_sharepoint_sites")
  try:
    sites = await gateway.queued_get_all("/sites?search=*")
    logger.log_function_output(pluralize(f"{len(sites)} site(s) found.", len(sites)))
    return sites
  finally:
    logger.log_function_footer()

async def discover_onedrive_users(gateway: GraphRequestGateway, logger: MiddlewareLogger) -> list[dict]:
  logger.log_function_header("discover_onedrive_users")
  try:
    users = await gateway.queued_get_all("/users?$select=id,displayName,userPrincipalName,mail&$top=50")
    logger.log_function_output(pluralize(f"{len(users)} user(s) found.", len(users)))
    return users
  finally:
    logger.log_function_footer()

async def load_tenant_domains(gateway: GraphRequestGateway, logger: MiddlewareLogger, account_username: str = "") -> FrozenSet[str]:
  """
  Verified tenant domains, lower-cased, including the verified *.onmicrosoft.com domains.
  On failure or an empty list, falls back to the operator account's domain (or an empty set).
  """
  logger.log_function_header("load_tenant_domains")
  account_domain = email_domain(account_username)
  try:
    domains = await gateway.queued_get_all("/domains")
    verified = set()
    for domain in domains:
      domain_id = (domain.get("id") or "").lower()
      if not domain.get("isVerified") or "." not in domain_id: continue
      verified.add(domain_id)
    if not verified: raise ValueError("No verified domains returned")
    result = normalize_tenant_domains(verified)
    logger.log_function_output(pluralize(f"{len(result)} verified tenant domain(s): {', '.join(sorted(result))}", len(result)))
    return result
  except AuthExpiredError: raise
  except Exception as e:
    if account_domain:
      logger.log_function_output(f"WARNING: Failed to load tenant domains, using account domain '{account_domain}' -> {e}")
      return frozenset([account_domain])
    logger.log_function_output(f"WARNING: Failed to load tenant domains, all principals will be treated as external -> {e}")
    return frozenset()
  finally:
    logger.log_function_footer()

# ----------------------------------------- END: Discovery --------------------------------------------------------------------


# ----------------------------------------- START: Container resolution -------------------------------------------------------

def site_display_name(site: dict) -> str:
  return site.get("displayName") or site.get("name") or site.get("webUrl") or site.get("id", "")

def user_display_name(user: dict) -> str:
  return user.get("displayName") or user.get("userPrincipalName") or user.get("mail") or user.get("id", "")

async def resolve_site_containers(gateway: GraphRequestGateway, site: dict, settings: ScanSettings, logger: MiddlewareLogger) -> list[DriveContainer]:
  """All document libraries of a site, minus preservation hold libraries when exclusion is enabled."""
  site_name = site_display_name(site)
  drives = await gateway.queued_get_all(f"/sites/{site['id']}/drives")
  containers = []
  for drive in drives:
    drive_name = drive.get("name") or "Documents"
    if settings.exclude_preservation_holds and any(is_preservation_hold_library(n) for n in (drive_name, f"{site_name}/{drive_name}", site_name)):
      logger.log_function_output(f"  Skipping preservation hold library drive_name='{drive_name}'")
      continue
    containers.append(DriveContainer(
      site_id=site["id"],
      site_name=site_name,
      site_url=site.get("webUrl", ""),
      drive_id=drive["id"],
      drive_name=drive_name,
      scan_type=ScanType.SHAREPOINT
    ))
  return containers

async def resolve_user_containers(gateway: GraphRequestGateway, user: dict, settings: ScanSettings, logger: MiddlewareLogger) -> list[DriveContainer]:
  """The personal drive of a user. Users without a provisioned OneDrive yield no container."""
  try:
    drive = await gateway.queued_get_json(f"/users/{user['id']}/drive")
  except NonRetryableRequestError as e:
    logger.log_function_output(f"  No OneDrive provisioned for user='{user_display_name(user)}' ({e.reason})")
    return []
  drive_name = drive.get("name") or "OneDrive"
  if settings.exclude_preservation_holds and is_preservation_hold_library(drive_name): return []
  return [DriveContainer(
    site_id=user["id"],
    site_name=f"{user_display_name(user)} OneDrive",
    site_url=drive.get("webUrl", ""),
    drive_id=drive["id"],
    drive_name=drive_name,
    scan_type=ScanType.ONEDRIVE
  )]

# ----------------------------------------- END: Container resolution ---------------------------------------------------------


# ----------------------------------------- START: Orchestrator ---------------------------------------------------------------

class ScanState(str, Enum):
  IDLE = "idle"
  RUNNING = "running"
  COMPLETED = "completed"
  STOPPED = "stopped"
  FAILED = "failed"

@dataclass
class ScanSummary:
  state: ScanState = ScanState.IDLE
  target: str = ""
  units_total: int = 0
  units_scanned: int = 0
  units_failed: int = 0
  drives_scanned: int = 0
  results_found: int = 0
  items_scanned: int = 0
  items_skipped: int = 0
  strategies: dict = field(default_factory=dict)
  error: str = ""
  started_utc: str = ""
  finished_utc: str = ""

  def to_dict(self) -> dict:
    return {
      "state": self.state.value,
      "target": self.target,
      "units_total": self.units_total,
      "units_scanned": self.units_scanned,
      "units_failed": self.units_failed,
      "drives_scanned": self.drives_scanned,
      "results_found": self.results_found,
      "items_scanned": self.items_scanned,
      "items_skipped": self.items_skipped,
      "strategies": dict(self.strategies),
      "error": self.error,
      "started_utc": self.started_utc,
      "finished_utc": self.finished_utc
    }

def _utc_now() -> str:
  return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

ResolveContainers = Callable[[GraphRequestGateway, dict, ScanSettings, MiddlewareLogger], Awaitable[list[DriveContainer]]]

class SharingScanOrchestrator:
  """
  Runs scans over sites or users, one unit after another, and keeps the findings of the last run.

  - A scan request while another one is running returns None and changes nothing.
  - The stop flag is checked between units and throughout the traversal.
  - AuthExpiredError aborts the scan (state=failed). Other per-unit errors are logged and the unit is skipped.
  """

  def __init__(self, gateway: GraphRequestGateway, account_username: str = ""):
    self.gateway = gateway
    self.account_username = account_username
    self.controller = ScanController()
    self.state = ScanState.IDLE
    self.summary = ScanSummary()
    self.results: list[ScanResult] = []
    self.settings = ScanSettings()
    self.tenant_domains: FrozenSet[str] = frozenset()

  @property
  def is_running(self) -> bool:
    return self.state == ScanState.RUNNING

  def request_stop(self) -> bool:
    """Request cooperative stop. Returns False if no scan is running."""
    if not self.is_running: return False
    self.controller.request_stop()
    return True

  async def scan_sites(self, sites: list[dict], settings: ScanSettings, logger: MiddlewareLogger, on_result: Optional[Callable[[ScanResult], None]] = None, on_progress: Optional[Callable[[int, int, str], None]] = None) -> Optional[ScanSummary]:
    return await self._run("sites", sites, resolve_site_containers, site_display_name, settings, logger, on_result, on_progress)

  async def scan_users(self, users: list[dict], settings: ScanSettings, logger: MiddlewareLogger, on_result: Optional[Callable[[ScanResult], None]] = None, on_progress: Optional[Callable[[int, int, str], None]] = None) -> Optional[ScanSummary]:
    return await self._run("users", users, resolve_user_containers, user_display_name, settings, logger, on_result, on_progress)

  async def _run(self, target: str, units: list[dict], resolve_containers: ResolveContainers, display_name: Callable[[dict], str], settings: ScanSettings, logger: MiddlewareLogger, on_result, on_progress) -> Optional[ScanSummary]:
    if self.is_running:
      logger.log_function_output("WARNING: Scan already running, request ignored.")
      return None

    # Enter Running before the first await so overlapping requests see it
    self.state = ScanState.RUNNING
    self.controller.reset()
    self.settings = settings
    self.results = []
    summary = ScanSummary(state=ScanState.RUNNING, target=target, units_total=len(units), started_utc=_utc_now())
    self.summary = summary

    logger.log_function_header(f"sharing_scan_{target}")
    try:
      self.tenant_domains = await load_tenant_domains(self.gateway, logger, self.account_username)
      ctx = ScanContext(
        gateway=self.gateway,
        controller=self.controller,
        settings=settings,
        tenant_domains=self.tenant_domains,
        logger=logger,
        results=self.results,
        on_result=on_result,
        on_progress=on_progress,
        units_total=len(units)
      )

      for index, unit in enumerate(units, 1):
        if self.controller.stopped: break
        ctx.unit_index = index
        name = display_name(unit)
        logger.log_function_output(f"[ {index} / {len(units)} ] Scanning '{name}'...")
        try:
          containers = await resolve_containers(self.gateway, unit, settings, logger)
          for container in containers:
            if self.controller.stopped: break
            stats = await scan_drive(ctx, container)
            summary.drives_scanned += 1
            summary.items_scanned += stats.items_scanned
            summary.items_skipped += stats.items_skipped
            if stats.strategy: summary.strategies[stats.strategy] = summary.strategies.get(stats.strategy, 0) + 1
          summary.units_scanned += 1
        except AuthExpiredError: raise
        except Exception as e:
          summary.units_failed += 1
          logger.log_function_output(f"  ERROR: Failed to scan '{name}' -> {type(e).__name__}: {e}")
        summary.results_found = len(self.results)
        if on_progress: on_progress(index, len(units), f"Scanned '{name}': {len(self.results)} shared items found")

      summary.state = ScanState.STOPPED if self.controller.stopped else ScanState.COMPLETED
    except Exception as e:
      summary.state = ScanState.FAILED
      summary.error = f"{type(e).__name__}: {e}"
      logger.log_function_output(f"ERROR: Scan failed -> {summary.error}")
    finally:
      summary.results_found = len(self.results)
      summary.finished_utc = _utc_now()
      if summary.state == ScanState.RUNNING: summary.state = ScanState.FAILED
      self.state = summary.state
      logger.log_function_output(f"Scan {summary.state.value}: {summary.units_scanned} / {summary.units_total} units, {summary.results_found} shared items found.")
      logger.log_function_footer()
    return summary

# ----------------------------------------- END: Orchestrator -----------------------------------------------------------------
