# Report functions for sharing scan findings
# Display helpers (who has access, owners, expiration), CSV export, statistics and zip report archives.

import datetime, json, os, re, zipfile
from pathlib import Path
from typing import FrozenSet, Optional

from hardcoded_config import SCANNER_HARDCODED_CONFIG
from routers_v2.common_drive_traversal_functions_v2 import ScanResult
from routers_v2.common_logging_functions_v2 import MiddlewareLogger
from routers_v2.common_permission_classification_functions_v2 import (
  Classification, GroupPrincipal, Identity, LinkPrincipal, MultipleIdentitiesPrincipal, SharingFilter, UserPrincipal,
  classify, is_external_email, parse_grant
)

CSV_COLUMNS_SHARING_FINDINGS = ["Source", "Site Name", "Site URL", "Drive Name", "Item ID", "Item Name", "Item Path", "Item Type", "Owners", "Who Has Access", "Permission Level", "Sharing Type", "Link Expiration", "Permission ID"]
NO_EXPIRATION = "No expiration"
ANONYMOUS_LINK = "Anyone (Anonymous Link)"
DIRECT_GRANT = "(direct grant)"


# ----------------------------------------- START: Display Functions ----------------------------------------------------------

def _identity_display(identity: Identity, tenant_domains: Optional[FrozenSet[str]] = None) -> str:
  if identity.is_group: return identity.display_name or identity.email or "(group)"
  name, email = identity.display_name, identity.email
  if name and email and name != email: text = f"{name} ({email})"
  else: text = email or name or "(user)"
  if email and tenant_domains is not None:
    text += " (External)" if is_external_email(email, tenant_domains) else " (Internal)"
  return text

def describe_principal(permission: dict, tenant_domains: Optional[FrozenSet[str]] = None) -> str:
  """Who has access, for display: link kind, group name, or the identities behind the grant."""
  principal = parse_grant(permission).principal
  if isinstance(principal, LinkPrincipal):
    if principal.scope == "anonymous": return ANONYMOUS_LINK
    if principal.scope == "organization": return "Organization Link"
    if principal.identities: return ", ".join(_identity_display(i, tenant_domains) for i in principal.identities)
    return f"Link ({principal.scope or 'unknown scope'})"
  if isinstance(principal, GroupPrincipal):
    return principal.identity.display_name or principal.identity.email or ("(site group)" if principal.is_site_group else "(group)")
  if isinstance(principal, UserPrincipal):
    if not principal.identity.email and not principal.identity.display_name: return DIRECT_GRANT
    return _identity_display(principal.identity, tenant_domains)
  if isinstance(principal, MultipleIdentitiesPrincipal):
    return ", ".join(_identity_display(i, tenant_domains) for i in principal.identities)
  return DIRECT_GRANT

def _parse_graph_datetime(value: str) -> Optional[datetime.datetime]:
  try:
    parsed = datetime.datetime.fromisoformat(re.sub(r'(\.\d{6})\d*', r'\1', value.replace("Z", "+00:00")))
  except (TypeError, ValueError):
    return None
  if parsed.tzinfo is None: parsed = parsed.replace(tzinfo=datetime.timezone.utc)
  return parsed

def extract_expiration_date(permission: dict) -> str:
  """Expiration as 'YYYY-MM-DD' from the grant or its link, otherwise 'No expiration'."""
  value = permission.get("expirationDateTime") or (permission.get("link") or {}).get("expirationDateTime")
  if not value: return NO_EXPIRATION
  parsed = _parse_graph_datetime(value)
  return parsed.strftime("%Y-%m-%d") if parsed else value

def is_expired(permission: dict, now: Optional[datetime.datetime] = None) -> bool:
  value = permission.get("expirationDateTime") or (permission.get("link") or {}).get("expirationDateTime")
  parsed = _parse_graph_datetime(value) if value else None
  if not parsed: return False
  return parsed < (now or datetime.datetime.now(datetime.timezone.utc))

def is_default_sharepoint_group(group_name: str) -> bool:
  """Bidirectional case-insensitive substring match against the built-in SharePoint group names."""
  if not group_name: return False
  name_lower = group_name.lower()
  for default_group in SCANNER_HARDCODED_CONFIG.DEFAULT_SHAREPOINT_GROUPS:
    default_lower = default_group.lower()
    if default_lower in name_lower or name_lower in default_lower: return True
  return False

def grants_default_sharepoint_group(permission: dict) -> bool:
  granted_v2 = permission.get("grantedToV2") or {}
  group = granted_v2.get("group")
  if group and is_default_sharepoint_group(group.get("displayName") or group.get("email") or ""): return True
  site_group = granted_v2.get("siteGroup")
  if site_group and is_default_sharepoint_group(site_group.get("displayName") or site_group.get("loginName") or ""): return True
  for entry in permission.get("grantedToIdentitiesV2") or []:
    group = (entry or {}).get("group")
    if group and is_default_sharepoint_group(group.get("displayName") or group.get("email") or ""): return True
  return False

def filter_permissions_for_display(permissions: list, tenant_domains: FrozenSet[str], sharing_filter: SharingFilter, show_sharepoint_groups: bool = True) -> list:
  """Display filter on top of the scan filter: classification filter, then optionally hide default SharePoint groups."""
  filtered = permissions
  if sharing_filter == SharingFilter.EXTERNAL:
    filtered = [p for p in filtered if classify(parse_grant(p), tenant_domains) in (Classification.EXTERNAL, Classification.MIXED)]
  elif sharing_filter == SharingFilter.INTERNAL:
    filtered = [p for p in filtered if classify(parse_grant(p), tenant_domains) in (Classification.INTERNAL, Classification.MIXED)]
  if not show_sharepoint_groups:
    filtered = [p for p in filtered if not grants_default_sharepoint_group(p)]
  return filtered

def extract_owners(result: ScanResult) -> str:
  """Comma-separated principals holding owner-like roles on the item, from the complete permission list."""
  owners = []
  keywords = SCANNER_HARDCODED_CONFIG.OWNER_ROLE_KEYWORDS
  for permission in result.all_permissions or result.permissions:
    roles = [(r or "").lower() for r in permission.get("roles") or []]
    if not any(keyword in role for role in roles for keyword in keywords): continue
    who = describe_principal(permission)
    if who and who not in (DIRECT_GRANT, ANONYMOUS_LINK) and who not in owners:
      owners.append(who)
  return ", ".join(owners) if owners else "n/a"

def visible_results(results: list[ScanResult], tenant_domains: FrozenSet[str], sharing_filter: SharingFilter, show_sharepoint_groups: bool = True) -> list[tuple[int, ScanResult, list]]:
  """(index, result, displayed permissions) for every result with at least one displayed permission."""
  visible = []
  for index, result in enumerate(results):
    permissions = filter_permissions_for_display(result.permissions, tenant_domains, sharing_filter, show_sharepoint_groups)
    if permissions: visible.append((index, result, permissions))
  return visible

# ----------------------------------------- END: Display Functions ------------------------------------------------------------


# ----------------------------------------- START: CSV Functions --------------------------------------------------------------

def csv_escape(value) -> str:
  """Quote values that spreadsheet apps would reinterpret (formulas, dates, numbers) or that contain separators."""
  if value is None: return ''
  value = str(value)
  if not value: return '""'
  if re.match(r'^([+\-=\/]*[\.\d\s\/\:]*|.*[\,\"\n].*|[\n]*)$', value):
    return '"' + value.replace('"', '""') + '"'
  return value

def csv_row(row: dict, columns: list) -> str:
  return ','.join(csv_escape(row.get(col, '')) for col in columns)

def build_export_rows(results: list[ScanResult], tenant_domains: FrozenSet[str], sharing_filter: SharingFilter, show_sharepoint_groups: bool = True) -> list[dict]:
  """One row per displayed permission."""
  rows = []
  for _, result, permissions in visible_results(results, tenant_domains, sharing_filter, show_sharepoint_groups):
    owners = extract_owners(result)
    for permission in permissions:
      rows.append({
        "Source": "OneDrive" if result.scan_type == "onedrive" else "SharePoint",
        "Site Name": result.site_name or "OneDrive",
        "Site URL": result.site_url or "Personal OneDrive",
        "Drive Name": result.drive_name,
        "Item ID": result.item_id,
        "Item Name": result.item_name,
        "Item Path": result.item_path,
        "Item Type": result.item_type or "folder",
        "Owners": owners,
        "Who Has Access": describe_principal(permission, tenant_domains),
        "Permission Level": ", ".join(permission.get("roles") or []) or "Not specified",
        "Sharing Type": classify(parse_grant(permission), tenant_domains).value.upper(),
        "Link Expiration": extract_expiration_date(permission),
        "Permission ID": permission.get("id", "")
      })
  return rows

def export_results_csv(results: list[ScanResult], tenant_domains: FrozenSet[str], sharing_filter: SharingFilter, show_sharepoint_groups: bool = True) -> str:
  rows = build_export_rows(results, tenant_domains, sharing_filter, show_sharepoint_groups)
  lines = [','.join(CSV_COLUMNS_SHARING_FINDINGS)]
  lines.extend(csv_row(row, CSV_COLUMNS_SHARING_FINDINGS) for row in rows)
  return '\n'.join(lines) + '\n'

# ----------------------------------------- END: CSV Functions ----------------------------------------------------------------


# ----------------------------------------- START: Statistics -----------------------------------------------------------------

def compute_statistics(results: list[ScanResult], tenant_domains: FrozenSet[str], now: Optional[datetime.datetime] = None) -> dict:
  stats = {
    "totalItems": len(results),
    "sharePointItems": sum(1 for r in results if r.scan_type == "sharepoint"),
    "oneDriveItems": sum(1 for r in results if r.scan_type == "onedrive"),
    "foldersCount": sum(1 for r in results if r.item_type == "folder"),
    "filesCount": sum(1 for r in results if r.item_type == "file"),
    "externalSharingCount": 0,
    "internalSharingCount": 0,
    "mixedSharingCount": 0,
    "totalPermissions": 0,
    "linkPermissions": 0,
    "directPermissions": 0,
    "expiredPermissions": 0
  }
  for result in results:
    has_external = False
    has_internal = False
    for permission in result.permissions:
      stats["totalPermissions"] += 1
      if permission.get("link"): stats["linkPermissions"] += 1
      else: stats["directPermissions"] += 1
      if is_expired(permission, now): stats["expiredPermissions"] += 1
      classification = classify(parse_grant(permission), tenant_domains)
      if classification == Classification.EXTERNAL: has_external = True
      if classification == Classification.INTERNAL: has_internal = True
    if has_external and has_internal: stats["mixedSharingCount"] += 1
    elif has_external: stats["externalSharingCount"] += 1
    elif has_internal: stats["internalSharingCount"] += 1
  return stats

# ----------------------------------------- END: Statistics -------------------------------------------------------------------


# ----------------------------------------- START: Report Archives ------------------------------------------------------------

def get_reports_path(storage_path: str) -> Path:
  return Path(storage_path) / SCANNER_HARDCODED_CONFIG.PERSISTENT_STORAGE_PATH_REPORTS_SUBFOLDER

def get_folder_for_type(report_type: str) -> str:
  return report_type + "s"

def create_report(storage_path: str, report_type: str, filename: str, files: list[tuple[str, bytes]], metadata: dict, logger: Optional[MiddlewareLogger] = None) -> str:
  """
  Create a report archive [storage]/reports/[type]s/[filename].zip with report.json and the given files.
  Returns report_id '[type]s/[filename]'.
  """
  folder = get_folder_for_type(report_type)
  report_id = f"{folder}/{filename}"
  folder_path = get_reports_path(storage_path) / folder
  folder_path.mkdir(parents=True, exist_ok=True)
  archive_path = folder_path / f"{filename}.zip"

  if logger: logger.log_function_output(f"Creating report '{report_id}'...")
  now_utc = datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
  metadata = dict(metadata)
  metadata["report_id"] = report_id
  metadata["created_utc"] = now_utc
  metadata.setdefault("type", report_type)
  metadata["files"] = [{"filename": os.path.basename(p), "file_path": p, "file_size": len(c), "last_modified_utc": now_utc} for p, c in files]

  with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zf:
    zf.writestr("report.json", json.dumps(metadata, indent=2, ensure_ascii=False).encode("utf-8"))
    for file_path, content in files:
      zf.writestr(file_path, content)
  if logger: logger.log_function_output("  OK.")
  return report_id

def get_report_archive_path(storage_path: str, report_id: str) -> Optional[Path]:
  archive_path = get_reports_path(storage_path) / f"{report_id}.zip"
  return archive_path if archive_path.exists() else None

def create_sharing_scan_report(storage_path: str, results: list[ScanResult], tenant_domains: FrozenSet[str], sharing_filter: SharingFilter, summary: dict, show_sharepoint_groups: bool = True, logger: Optional[MiddlewareLogger] = None) -> str:
  """Write findings CSV and statistics into a 'sharing_scan' report archive. Returns report_id."""
  timestamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
  csv_content = export_results_csv(results, tenant_domains, sharing_filter, show_sharepoint_groups)
  statistics = compute_statistics(results, tenant_domains)
  files = [
    ("01_SharingFindings.csv", csv_content.encode("utf-8")),
    ("02_Statistics.json", json.dumps(statistics, indent=2).encode("utf-8"))
  ]
  metadata = {
    "title": f"Sharing scan ({summary.get('target', '')}, filter={sharing_filter.value})",
    "ok": summary.get("state") in ("completed", "stopped"),
    "error": summary.get("error", ""),
    "scan": summary,
    "statistics": statistics,
    "tenant_domains": sorted(tenant_domains)
  }
  return create_report(storage_path, "sharing_scan", f"{timestamp}_sharing_scan", files, metadata, logger)

# ----------------------------------------- END: Report Archives --------------------------------------------------------------
