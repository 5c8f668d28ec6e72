# Drive traversal - finds shared items in one drive (SharePoint document library or OneDrive)
# Strategy A: delta feed with permissions expanded inline. Strategy B: folder walk with batched permission lookups.
# Any Strategy A failure falls back to Strategy B after a short cooldown.

import asyncio, re
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, Optional

from hardcoded_config import SCANNER_HARDCODED_CONFIG
from routers_v2.common_batch_permission_functions_v2 import PermissionRequest, fetch_permissions_for
from routers_v2.common_graph_request_functions_v2 import AuthExpiredError, GraphRequestGateway
from routers_v2.common_logging_functions_v2 import MiddlewareLogger, pluralize
from routers_v2.common_permission_classification_functions_v2 import SharingFilter, filter_permissions

DELTA_SELECT = "id,name,folder,file,parentReference,permissions,createdBy,lastModifiedBy,root,deleted"
CHILDREN_SELECT = "id,name,folder,file,parentReference"
FOLDER_CHILDREN_SELECT = "id,name,folder,parentReference"


# ----------------------------------------- START: Types ----------------------------------------------------------------------

class ContentScope(str, Enum):
  ALL = "all"
  FOLDERS = "folders"

class ScanType(str, Enum):
  SHAREPOINT = "sharepoint"
  ONEDRIVE = "onedrive"

class ScanController:
  """Cooperative stop flag for one scan run. Polled at loop boundaries, never blocks."""

  def __init__(self):
    self._stopped = False

  @property
  def stopped(self) -> bool:
    return self._stopped

  def request_stop(self) -> None:
    self._stopped = True

  def reset(self) -> None:
    self._stopped = False

@dataclass
class ScanSettings:
  sharing_filter: SharingFilter = SharingFilter.ALL
  content_scope: ContentScope = ContentScope.ALL
  exclude_preservation_holds: bool = False
  permission_batch_size: int = SCANNER_HARDCODED_CONFIG.PERMISSION_BATCH_SIZE
  permission_batch_delay_seconds: float = SCANNER_HARDCODED_CONFIG.PERMISSION_BATCH_DELAY_MS / 1000
  folder_batch_size: int = SCANNER_HARDCODED_CONFIG.FOLDER_RECURSION_BATCH_SIZE
  folder_batch_delay_seconds: float = SCANNER_HARDCODED_CONFIG.FOLDER_RECURSION_BATCH_DELAY_MS / 1000
  delta_page_delay_seconds: float = SCANNER_HARDCODED_CONFIG.DELTA_PAGE_DELAY_MS / 1000
  fallback_cooldown_seconds: float = SCANNER_HARDCODED_CONFIG.DELTA_FALLBACK_COOLDOWN_MS / 1000
  progress_every_n_items: int = SCANNER_HARDCODED_CONFIG.PROGRESS_EVERY_N_ITEMS
  use_delta: bool = True

@dataclass(frozen=True)
class DriveContainer:
  """One drive to traverse. For SharePoint a site can expose several of these."""
  site_id: str
  site_name: str
  site_url: str
  drive_id: str
  drive_name: str
  scan_type: ScanType

@dataclass
class ScanResult:
  site_name: str
  site_url: str
  drive_id: str
  drive_name: str
  item_id: str
  item_name: str
  item_path: str
  item_type: str
  permissions: list
  all_permissions: list
  scan_type: str

  def to_dict(self) -> dict:
    return asdict(self)

@dataclass
class TraversalStats:
  strategy: str = ""
  items_scanned: int = 0
  results_found: int = 0
  items_skipped: int = 0
  folders_walked: int = 0
  permission_batches: int = 0

@dataclass
class ScanContext:
  """Everything one drive traversal needs. Shared by all drives of a scan run."""
  gateway: GraphRequestGateway
  controller: ScanController
  settings: ScanSettings
  tenant_domains: FrozenSet[str]
  logger: MiddlewareLogger
  results: list = field(default_factory=list)
  on_result: Optional[Callable[[ScanResult], None]] = None
  on_progress: Optional[Callable[[int, int, str], None]] = None
  unit_index: int = 0
  units_total: int = 0
  _emitted_keys: set = field(default_factory=set)

  def emit(self, result: ScanResult) -> bool:
    """Append result unless this drive item was already reported in this run. Returns True if appended."""
    key = (result.drive_id, result.item_id)
    if key in self._emitted_keys: return False
    self._emitted_keys.add(key)
    self.results.append(result)
    if self.on_result: self.on_result(result)
    return True

  def report_progress(self, message: str) -> None:
    if self.on_progress: self.on_progress(self.unit_index, self.units_total, message)

# ----------------------------------------- END: Types ------------------------------------------------------------------------


# ----------------------------------------- START: Folder rules and paths -----------------------------------------------------

def is_preservation_hold_library(name: str) -> bool:
  if not name: return False
  name_lower = name.lower()
  return any(pattern.lower() in name_lower for pattern in SCANNER_HARDCODED_CONFIG.PRESERVATION_HOLD_PATTERNS)

def should_skip_preservation_hold(name: str, settings: ScanSettings) -> bool:
  return settings.exclude_preservation_holds and is_preservation_hold_library(name)

def should_skip_folder(name: str) -> bool:
  """System and administrative folders: skip-list substring match, or names starting with '_' or '.'."""
  if not name: return True
  if name.startswith("_") or name.startswith("."): return True
  name_lower = name.lower()
  return any(skip.lower() in name_lower for skip in SCANNER_HARDCODED_CONFIG.SKIP_FOLDERS)

def strip_drive_root(parent_path: str) -> str:
  """'/drive/root:/A/B' or '/drives/b!xyz/root:/A/B' -> '/A/B'."""
  if not parent_path: return ""
  clean = re.sub(r'^/drives?/(?:[^/]+/)?root:', '', parent_path)
  clean = re.sub(r'^/drives/[^/]+', '', clean)
  return clean

def format_item_path(parent_path: str, item_name: str, drive_name: str, scan_type: ScanType) -> str:
  """Container-relative display path, e.g. ('/drive/root:/A/B', 'C.txt', 'Documents') -> '/Documents/A/B/C.txt'."""
  clean = strip_drive_root(parent_path)
  if scan_type == ScanType.ONEDRIVE:
    path = f"{clean}/{item_name}"
  else:
    prefix = (drive_name or "Documents").strip("/")
    path = f"/{prefix}{clean}/{item_name}"
  path = re.sub(r'/{2,}', '/', path)
  if not path.startswith("/"): path = "/" + path
  return path

def join_item_path(folder_path: str, item_name: str) -> str:
  return re.sub(r'/{2,}', '/', f"{folder_path}/{item_name}")

def item_type_of(item: dict) -> str:
  return "folder" if item.get("folder") is not None else "file"

def _path_segments(parent_path: str) -> list[str]:
  return [s for s in strip_drive_root(parent_path).split("/") if s]

def _create_scan_result(container: DriveContainer, item: dict, item_path: str, permissions: list, all_permissions: list) -> ScanResult:
  return ScanResult(
    site_name=container.site_name,
    site_url=container.site_url,
    drive_id=container.drive_id,
    drive_name=container.drive_name,
    item_id=item.get("id", ""),
    item_name=item.get("name", ""),
    item_path=item_path,
    item_type=item_type_of(item),
    permissions=permissions,
    all_permissions=all_permissions,
    scan_type=container.scan_type.value
  )

def evaluate_item(ctx: ScanContext, container: DriveContainer, item: dict, item_path: str, permissions: list) -> Optional[ScanResult]:
  """Filter permissions for the active sharing filter; emit a ScanResult when at least one remains."""
  matching = filter_permissions(permissions, ctx.tenant_domains, ctx.settings.sharing_filter)
  if not matching: return None
  result = _create_scan_result(container, item, item_path, matching, list(permissions))
  return result if ctx.emit(result) else None

# ----------------------------------------- END: Folder rules and paths -------------------------------------------------------


# ----------------------------------------- START: Strategy A - delta ---------------------------------------------------------

async def fetch_delta_items(ctx: ScanContext, drive_id: str) -> list[dict]:
  """Read the complete delta feed. Raises on any failure so the caller can fall back."""
  items = []
  next_url = f"/drives/{drive_id}/root/delta?$expand=permissions&$select={DELTA_SELECT}"
  while next_url:
    if ctx.controller.stopped: break
    data = await ctx.gateway.queued_get_json(next_url)
    items.extend(data.get("value", []))
    next_url = data.get("@odata.nextLink")
    if next_url and ctx.settings.delta_page_delay_seconds > 0:
      await asyncio.sleep(ctx.settings.delta_page_delay_seconds)
  return items

async def scan_drive_with_delta(ctx: ScanContext, container: DriveContainer, stats: TraversalStats) -> None:
  items = await fetch_delta_items(ctx, container.drive_id)
  ctx.logger.log_function_output(pluralize(f"Delta feed returned {len(items)} item(s) for drive_name='{container.drive_name}'.", len(items)))

  for item in items:
    if ctx.controller.stopped: return
    if "root" in item or "deleted" in item: continue
    stats.items_scanned += 1
    parent_path = (item.get("parentReference") or {}).get("path", "")
    is_folder = item.get("folder") is not None
    if is_folder and should_skip_preservation_hold(item.get("name", ""), ctx.settings): continue
    if ctx.settings.exclude_preservation_holds and any(is_preservation_hold_library(s) for s in _path_segments(parent_path)): continue
    if ctx.settings.content_scope == ContentScope.FOLDERS and not is_folder: continue
    permissions = item.get("permissions") or []
    if not permissions: continue
    item_path = format_item_path(parent_path, item.get("name", ""), container.drive_name, container.scan_type)
    if evaluate_item(ctx, container, item, item_path, permissions):
      stats.results_found += 1
    if stats.items_scanned % max(1, ctx.settings.progress_every_n_items) == 0:
      ctx.report_progress(f"{container.site_name}: {stats.items_scanned} items checked, {len(ctx.results)} shared items found")

# ----------------------------------------- END: Strategy A - delta -----------------------------------------------------------


# ----------------------------------------- START: Strategy B - folder walk ---------------------------------------------------

@dataclass
class FolderTask:
  item_id: str
  folder_path: str

async def list_children(ctx: ScanContext, drive_id: str, item_id: str) -> list[dict]:
  folders_only = ctx.settings.content_scope == ContentScope.FOLDERS
  base = f"/drives/{drive_id}/root" if item_id == "root" else f"/drives/{drive_id}/items/{item_id}"
  if folders_only:
    url = f"{base}/children?$select={FOLDER_CHILDREN_SELECT}&$filter=folder ne null"
  else:
    url = f"{base}/children?$select={CHILDREN_SELECT}"
  return await ctx.gateway.queued_get_all(url)

def _keep_child(ctx: ScanContext, child: dict) -> bool:
  is_folder = child.get("folder") is not None
  if is_folder:
    name = child.get("name", "")
    if should_skip_preservation_hold(name, ctx.settings): return False
    if should_skip_folder(name): return False
    return True
  if ctx.settings.content_scope == ContentScope.FOLDERS: return False
  return child.get("file") is not None

async def _walk_folder(ctx: ScanContext, container: DriveContainer, task: FolderTask, stats: TraversalStats, pending: deque) -> None:
  """List one folder, batch-fetch permissions of its children, emit matches and queue subfolders."""
  if ctx.controller.stopped: return
  try:
    children = await list_children(ctx, container.drive_id, task.item_id)
  except AuthExpiredError: raise
  except Exception as e:
    stats.items_skipped += 1
    ctx.logger.log_function_output(f"  WARNING: Failed to list children of folder_path='{task.folder_path or '/'}' -> {e}")
    return

  valid_children = [c for c in children if _keep_child(ctx, c)]
  if not valid_children or ctx.controller.stopped: return

  requests = []
  for child in valid_children:
    if task.item_id == "root":
      item_path = format_item_path((child.get("parentReference") or {}).get("path", ""), child.get("name", ""), container.drive_name, container.scan_type)
    else:
      item_path = join_item_path(task.folder_path, child.get("name", ""))
    requests.append(PermissionRequest(drive_id=container.drive_id, item=child, item_path=item_path))

  stats.permission_batches += 1
  item_permissions = await fetch_permissions_for(
    ctx.gateway, requests, ctx.controller, ctx.logger,
    batch_size=ctx.settings.permission_batch_size,
    delay_between_batches_seconds=ctx.settings.permission_batch_delay_seconds
  )

  for entry in item_permissions:
    if ctx.controller.stopped: return
    stats.items_scanned += 1
    if entry.error: stats.items_skipped += 1
    if evaluate_item(ctx, container, entry.item, entry.item_path, entry.permissions):
      stats.results_found += 1
    # Folders are always walked: children can carry their own sharing
    if entry.item.get("folder") is not None:
      pending.append(FolderTask(item_id=entry.item.get("id"), folder_path=entry.item_path))
    if stats.items_scanned % max(1, ctx.settings.progress_every_n_items) == 0:
      ctx.report_progress(f"{container.site_name}: {stats.items_scanned} items checked, {len(ctx.results)} shared items found")

async def scan_drive_comprehensive(ctx: ScanContext, container: DriveContainer, stats: TraversalStats) -> None:
  """
  Walk the drive from its root. Pending folders are drained in batches of folder_batch_size;
  folders in a batch run concurrently, the next batch starts after the previous one finished.
  """
  root_path = "" if container.scan_type == ScanType.ONEDRIVE else f"/{(container.drive_name or 'Documents').strip('/')}"
  pending: deque = deque([FolderTask(item_id="root", folder_path=root_path)])
  visited: set = set()

  while pending:
    if ctx.controller.stopped: return
    batch = []
    while pending and len(batch) < max(1, ctx.settings.folder_batch_size):
      task = pending.popleft()
      if task.item_id in visited: continue
      visited.add(task.item_id)
      batch.append(task)
    if not batch: continue

    outcomes = await asyncio.gather(*[_walk_folder(ctx, container, task, stats, pending) for task in batch], return_exceptions=True)
    stats.folders_walked += len(batch)
    errors = [o for o in outcomes if isinstance(o, BaseException)]
    auth_errors = [e for e in errors if isinstance(e, AuthExpiredError)]
    if auth_errors: raise auth_errors[0]
    if errors: raise errors[0]

    if pending and ctx.settings.folder_batch_delay_seconds > 0:
      await asyncio.sleep(ctx.settings.folder_batch_delay_seconds)

# ----------------------------------------- END: Strategy B - folder walk -----------------------------------------------------


async def scan_drive(ctx: ScanContext, container: DriveContainer) -> TraversalStats:
  """Scan one drive with the delta feed, falling back to the folder walk on any delta failure."""
  ctx.logger.log_function_header(f"scan_drive(drive_name='{container.drive_name}')")
  stats = TraversalStats()
  try:
    if ctx.settings.use_delta:
      try:
        stats.strategy = "delta"
        await scan_drive_with_delta(ctx, container, stats)
        return stats
      except Exception as e:
        ctx.logger.log_function_output(f"Delta scan not available for drive_name='{container.drive_name}', falling back to folder walk -> {e}")
        stats = TraversalStats()
        if ctx.settings.fallback_cooldown_seconds > 0:
          await asyncio.sleep(ctx.settings.fallback_cooldown_seconds)
    if ctx.controller.stopped: return stats
    stats.strategy = "comprehensive"
    await scan_drive_comprehensive(ctx, container, stats)
    return stats
  finally:
    ctx.logger.log_function_output(f"{stats.strategy or 'none'}: {stats.items_scanned} items checked, {stats.results_found} shared, {stats.items_skipped} skipped.")
    ctx.logger.log_function_footer()
