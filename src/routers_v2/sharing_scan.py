# Sharing Scan Router V2 - audit sharing permissions of SharePoint sites and OneDrive drives
# Endpoints: /v2/sharing_scan, /sites, /users, /scan (stream), /stop, /status, /joblog, /results, /statistics, /export, /remediate
# Uses common_sharing_scan_functions_v2.py for the scan itself

import asyncio, datetime, json, os
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from routers_v2.common_drive_traversal_functions_v2 import ContentScope, ScanResult, ScanSettings
from routers_v2.common_graph_request_functions_v2 import GatewaySettings, GraphRequestGateway
from routers_v2.common_job_functions_v2 import StreamingJobWriter, find_job_file, read_job_log
from routers_v2.common_logging_functions_v2 import MiddlewareLogger, pluralize
from routers_v2.common_permission_classification_functions_v2 import classify, parse_grant, parse_sharing_filter
from routers_v2.common_remediation_functions_v2 import REMEDIATION_ACTIONS, remediate
from routers_v2.common_report_functions_v2 import compute_statistics, create_sharing_scan_report, describe_principal, export_results_csv, extract_expiration_date, extract_owners, visible_results
from routers_v2.common_sharing_scan_functions_v2 import ScanState, ScanSummary, SharingScanOrchestrator, discover_onedrive_users, discover_sharepoint_sites
from routers_v2.common_token_functions_v2 import create_token_provider
from routers_v2.common_ui_functions_v2 import endpoint_docs_response, json_result

router = APIRouter()
config = None
router_prefix = None
router_name = "sharing_scan"

_orchestrator: Optional[SharingScanOrchestrator] = None

def set_config(app_config, prefix):
  global config, router_prefix
  config = app_config
  router_prefix = prefix

def set_gateway(gateway: GraphRequestGateway, account_username: str = "") -> SharingScanOrchestrator:
  """Use this gateway for all scans (replaces the orchestrator and its findings)."""
  global _orchestrator
  _orchestrator = SharingScanOrchestrator(gateway, account_username)
  return _orchestrator

def get_persistent_storage_path(request: Request) -> str:
  """Get persistent storage path from system_info (works in Azure where path is computed)."""
  if hasattr(request.app.state, 'system_info') and request.app.state.system_info:
    return getattr(request.app.state.system_info, 'PERSISTENT_STORAGE_PATH', None) or ''
  return getattr(config, 'LOCAL_PERSISTENT_STORAGE_PATH', None) or ''

def get_orchestrator(storage_path: str = "") -> SharingScanOrchestrator:
  """Process-wide orchestrator. Builds the Graph gateway from config on first use."""
  if _orchestrator is not None: return _orchestrator
  tenant_id = getattr(config, 'SCANNER_TENANT_ID', None) or ''
  client_id = getattr(config, 'SCANNER_CLIENT_ID', None) or ''
  cert_filename = getattr(config, 'SCANNER_CLIENT_CERTIFICATE_PFX_FILE', None) or ''
  cert_path = os.path.join(storage_path, cert_filename) if cert_filename and storage_path else cert_filename
  token_provider = create_token_provider(
    tenant_id=tenant_id,
    client_id=client_id,
    cert_path=cert_path,
    cert_password=getattr(config, 'SCANNER_CLIENT_CERTIFICATE_PASSWORD', None) or '',
    client_secret=getattr(config, 'SCANNER_CLIENT_SECRET', None) or ''
  )
  settings = GatewaySettings(
    max_retries=getattr(config, 'SCANNER_MAX_RETRIES', GatewaySettings.max_retries),
    token_refresh_horizon_minutes=getattr(config, 'SCANNER_TOKEN_REFRESH_HORIZON_MINUTES', GatewaySettings.token_refresh_horizon_minutes),
    max_concurrent_requests=getattr(config, 'SCANNER_MAX_CONCURRENT_REQUESTS', GatewaySettings.max_concurrent_requests),
    delay_between_requests_seconds=getattr(config, 'SCANNER_DELAY_BETWEEN_REQUESTS_MS', GatewaySettings.delay_between_requests_seconds * 1000) / 1000
  )
  return set_gateway(GraphRequestGateway(token_provider, settings), getattr(config, 'SCANNER_ACCOUNT_USERNAME', None) or '')

def _bool_param(request_params: dict, name: str, default: bool) -> bool:
  return request_params.get(name, "true" if default else "false").lower() == "true"

def _result_to_json(index: int, result: ScanResult, permissions: list, tenant_domains) -> dict:
  data = result.to_dict()
  data["index"] = index
  data["owners"] = extract_owners(result)
  data["sharing"] = [{
    "permission_id": p.get("id", ""),
    "who": describe_principal(p, tenant_domains),
    "roles": p.get("roles") or [],
    "classification": classify(parse_grant(p), tenant_domains).value,
    "expiration": extract_expiration_date(p)
  } for p in permissions]
  return data


# ----------------------------------------- START: Router root -------------------------------------------------------------

@router.get(f"/{router_name}")
async def sharing_scan_root(request: Request):
  """
  Sharing Scan - find shared files and folders in SharePoint sites and OneDrive drives.

  Endpoints:
  - {router_prefix}/sharing_scan/sites?format=json - List SharePoint sites
  - {router_prefix}/sharing_scan/users?format=json - List users (OneDrive owners)
  - {router_prefix}/sharing_scan/scan?target=sites&format=stream - Run scan (SSE stream)
  - {router_prefix}/sharing_scan/stop?format=json - Stop running scan
  - {router_prefix}/sharing_scan/status?format=json - Scan state and summary
  - {router_prefix}/sharing_scan/joblog?job_id=jb_1&format=text - Job file of a scan (SSE transcript)
  - {router_prefix}/sharing_scan/results?format=json - Findings of the last scan
  - {router_prefix}/sharing_scan/statistics?format=json - Statistics of the last scan
  - {router_prefix}/sharing_scan/export?format=csv - Export findings (csv, report)
  - {router_prefix}/sharing_scan/remediate - Change sharing of findings (POST)
  """
  return endpoint_docs_response(sharing_scan_root, router_prefix)

# ----------------------------------------- END: Router root ---------------------------------------------------------------


# ----------------------------------------- START: Discovery ---------------------------------------------------------------

@router.get(f"/{router_name}/sites")
async def sharing_scan_sites(request: Request):
  """
  List SharePoint sites visible to the scanner app registration.

  Parameters:
  - format: Response format - json (required)

  Examples:
  {router_prefix}/sharing_scan/sites?format=json
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_sites, router_prefix)
  logger = MiddlewareLogger.create()
  logger.log_function_header("sharing_scan_sites")
  try:
    orchestrator = get_orchestrator(get_persistent_storage_path(request))
    sites = await discover_sharepoint_sites(orchestrator.gateway, logger)
    data = [{"id": s.get("id"), "name": s.get("displayName") or s.get("name"), "url": s.get("webUrl")} for s in sites]
    return json_result(True, "", data)
  except Exception as e:
    logger.log_function_output(f"ERROR: Failed to list sites -> {e}")
    return json_result(False, str(e), [])
  finally:
    logger.log_function_footer()

@router.get(f"/{router_name}/users")
async def sharing_scan_users(request: Request):
  """
  List users whose OneDrive can be scanned.

  Parameters:
  - format: Response format - json (required)

  Examples:
  {router_prefix}/sharing_scan/users?format=json
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_users, router_prefix)
  logger = MiddlewareLogger.create()
  logger.log_function_header("sharing_scan_users")
  try:
    orchestrator = get_orchestrator(get_persistent_storage_path(request))
    users = await discover_onedrive_users(orchestrator.gateway, logger)
    data = [{"id": u.get("id"), "name": u.get("displayName"), "upn": u.get("userPrincipalName"), "mail": u.get("mail")} for u in users]
    return json_result(True, "", data)
  except Exception as e:
    logger.log_function_output(f"ERROR: Failed to list users -> {e}")
    return json_result(False, str(e), [])
  finally:
    logger.log_function_footer()

# ----------------------------------------- END: Discovery -----------------------------------------------------------------


# ----------------------------------------- START: Scan --------------------------------------------------------------------

async def _load_units(orchestrator: SharingScanOrchestrator, target: str, ids: list[str], logger: MiddlewareLogger) -> list[dict]:
  gateway = orchestrator.gateway
  if not ids:
    if target == "sites": return await discover_sharepoint_sites(gateway, logger)
    return await discover_onedrive_users(gateway, logger)
  units = []
  for unit_id in ids:
    if target == "sites":
      units.append(await gateway.queued_get_json(f"/sites/{unit_id}"))
    else:
      units.append(await gateway.queued_get_json(f"/users/{unit_id}?$select=id,displayName,userPrincipalName,mail"))
  return units

@router.get(f"/{router_name}/scan")
async def sharing_scan_scan(request: Request):
  """
  Scan sites or OneDrive drives for shared items. Streams progress as Server-Sent Events.

  Parameters:
  - target: sites (default) or users
  - ids: Comma-separated site or user IDs (optional, default: all discovered)
  - filter: Sharing filter - all (default), external, internal
  - scope: Content scope - all (default) or folders
  - exclude_holds: Skip preservation hold libraries (default: false)
  - use_delta: Try the delta feed before the folder walk (default: true)
  - format: Response format - stream (required)

  Output:
  - SSE stream with start_json, log and end_json events; end_json.result.data holds the scan summary
  - Job file in jobs/sharing_scan/

  Examples:
  {router_prefix}/sharing_scan/scan?target=sites&filter=external&format=stream
  {router_prefix}/sharing_scan/scan?target=users&ids=USER_ID1,USER_ID2&exclude_holds=true&format=stream
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_scan, router_prefix)
  logger = MiddlewareLogger.create()
  logger.log_function_header("sharing_scan_scan")

  request_params = dict(request.query_params)
  target = request_params.get("target", "sites")
  ids = [i.strip() for i in request_params.get("ids", "").split(",") if i.strip()]
  scope = request_params.get("scope", "all")
  format_param = request_params.get("format", "")

  if format_param != "stream":
    logger.log_function_footer()
    return json_result(False, "Scan only supports format=stream", {})
  if target not in ["sites", "users"]:
    logger.log_function_footer()
    return json_result(False, f"Invalid target '{target}'. Use: sites, users", {})
  if scope not in ["all", "folders"]:
    logger.log_function_footer()
    return json_result(False, f"Invalid scope '{scope}'. Use: all, folders", {})

  storage_path = get_persistent_storage_path(request)
  if not storage_path:
    logger.log_function_footer()
    return json_result(False, "PERSISTENT_STORAGE_PATH not configured", {})

  try:
    orchestrator = get_orchestrator(storage_path)
  except Exception as e:
    logger.log_function_footer()
    return json_result(False, f"Scanner not configured -> {e}", {})
  if orchestrator.is_running:
    logger.log_function_footer()
    return json_result(False, "A scan is already running. Stop it first or wait for it to finish.", orchestrator.summary.to_dict())

  settings = ScanSettings(
    sharing_filter=parse_sharing_filter(request_params.get("filter", "all")),
    content_scope=ContentScope(scope),
    exclude_preservation_holds=_bool_param(request_params, "exclude_holds", False),
    use_delta=_bool_param(request_params, "use_delta", True)
  )
  logger.log_function_footer()

  writer = StreamingJobWriter(
    persistent_storage_path=storage_path,
    router_name=router_name,
    action="scan",
    object_id=target,
    source_url=str(request.url),
    router_prefix=router_prefix
  )
  stream_logger = MiddlewareLogger.create(stream_job_writer=writer)

  def on_result(result: ScanResult) -> None:
    stream_logger.log_function_output(pluralize(f"  FOUND: {result.item_path} ({len(result.permissions)} shared permission(s))", len(result.permissions)))

  def on_progress(unit_index: int, units_total: int, message: str) -> None:
    stream_logger.log_function_output(f"[ {unit_index} / {units_total} ] {message}")

  async def run_scan():
    scan_task = None
    try:
      yield writer.emit_start()
      stream_logger.log_function_header("sharing_scan_scan")
      stream_logger.log_function_output(f"target={target}, filter={settings.sharing_filter.value}, scope={settings.content_scope.value}, exclude_holds={settings.exclude_preservation_holds}, use_delta={settings.use_delta}")
      for sse in writer.drain_sse_queue(): yield sse

      units = await _load_units(orchestrator, target, ids, stream_logger)
      for sse in writer.drain_sse_queue(): yield sse

      if target == "sites":
        scan_task = asyncio.create_task(orchestrator.scan_sites(units, settings, stream_logger, on_result=on_result, on_progress=on_progress))
      else:
        scan_task = asyncio.create_task(orchestrator.scan_users(units, settings, stream_logger, on_result=on_result, on_progress=on_progress))

      while not scan_task.done():
        await asyncio.wait({scan_task}, timeout=0.5)
        for sse in writer.drain_sse_queue(): yield sse

      summary: Optional[ScanSummary] = scan_task.result()
      stream_logger.log_function_footer()
      for sse in writer.drain_sse_queue(): yield sse

      if summary is None:
        yield writer.emit_end(ok=False, error="A scan is already running.", data={})
      else:
        yield writer.emit_end(ok=summary.state != ScanState.FAILED, error=summary.error, data=summary.to_dict(), cancelled=summary.state == ScanState.STOPPED)
    except Exception as e:
      stream_logger.log_function_output(f"ERROR: Scan failed -> {e}")
      stream_logger.log_function_footer()
      for sse in writer.drain_sse_queue(): yield sse
      yield writer.emit_end(ok=False, error=str(e), data={})
    finally:
      # Client went away: let the running scan stop at its next checkpoint
      if scan_task is not None and not scan_task.done(): orchestrator.request_stop()
      writer.finalize()

  return StreamingResponse(run_scan(), media_type="text/event-stream")

@router.get(f"/{router_name}/stop")
async def sharing_scan_stop(request: Request):
  """
  Request the running scan to stop. Findings collected so far are kept.

  Parameters:
  - format: Response format - json (required)

  Examples:
  {router_prefix}/sharing_scan/stop?format=json
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_stop, router_prefix)
  logger = MiddlewareLogger.create()
  logger.log_function_header("sharing_scan_stop")
  try:
    if _orchestrator is None or not _orchestrator.request_stop():
      return json_result(False, "No scan is running.", {})
    logger.log_function_output("Stop requested.")
    return json_result(True, "", _orchestrator.summary.to_dict())
  finally:
    logger.log_function_footer()

@router.get(f"/{router_name}/status")
async def sharing_scan_status(request: Request):
  """
  State of the current or last scan: idle, running, completed, stopped, failed.

  Parameters:
  - format: Response format - json (required)

  Examples:
  {router_prefix}/sharing_scan/status?format=json
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_status, router_prefix)
  if _orchestrator is None: return json_result(True, "", ScanSummary().to_dict())
  data = _orchestrator.summary.to_dict()
  data["state"] = _orchestrator.state.value
  data["results_found"] = len(_orchestrator.results)
  return json_result(True, "", data)

@router.get(f"/{router_name}/joblog")
async def sharing_scan_joblog(request: Request):
  """
  Full SSE transcript of a scan job file (start_json, log and end_json events).

  Parameters:
  - job_id: Job ID from start_json, e.g. jb_12 (required)
  - format: text (required)

  Examples:
  {router_prefix}/sharing_scan/joblog?job_id=jb_12&format=text
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_joblog, router_prefix)
  job_id = request.query_params.get("job_id", "")
  if not job_id: return json_result(False, "Missing 'job_id' parameter.", {})
  storage_path = get_persistent_storage_path(request)
  if not storage_path or not find_job_file(storage_path, job_id):
    return json_result(False, f"Job '{job_id}' not found.", {})
  return PlainTextResponse(read_job_log(storage_path, job_id), media_type="text/plain; charset=utf-8")

# ----------------------------------------- END: Scan ----------------------------------------------------------------------


# ----------------------------------------- START: Results and export ------------------------------------------------------

@router.get(f"/{router_name}/results")
async def sharing_scan_results(request: Request):
  """
  Findings of the current or last scan.

  Parameters:
  - filter: Display filter - all (default), external, internal
  - show_sharepoint_groups: Show default SharePoint groups like 'Site Members' (default: true)
  - format: Response format - json (required)

  Examples:
  {router_prefix}/sharing_scan/results?format=json
  {router_prefix}/sharing_scan/results?filter=external&show_sharepoint_groups=false&format=json
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_results, router_prefix)
  if _orchestrator is None: return json_result(True, "", [])
  request_params = dict(request.query_params)
  sharing_filter = parse_sharing_filter(request_params.get("filter", "all"))
  show_groups = _bool_param(request_params, "show_sharepoint_groups", True)
  tenant_domains = _orchestrator.tenant_domains
  visible = visible_results(_orchestrator.results, tenant_domains, sharing_filter, show_groups)
  return json_result(True, "", [_result_to_json(index, result, permissions, tenant_domains) for index, result, permissions in visible])

@router.get(f"/{router_name}/statistics")
async def sharing_scan_statistics(request: Request):
  """
  Statistics of the current or last scan: item counts, external/internal/mixed sharing, link and expired permissions.

  Parameters:
  - format: Response format - json (required)

  Examples:
  {router_prefix}/sharing_scan/statistics?format=json
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_statistics, router_prefix)
  if _orchestrator is None: return json_result(True, "", compute_statistics([], frozenset()))
  return json_result(True, "", compute_statistics(_orchestrator.results, _orchestrator.tenant_domains))

@router.get(f"/{router_name}/export")
async def sharing_scan_export(request: Request):
  """
  Export findings. One row per displayed permission.

  Parameters:
  - filter: Display filter - all (default), external, internal
  - show_sharepoint_groups: Include default SharePoint groups (default: true)
  - format: csv (download) or report (zip archive in reports/sharing_scans/)

  Examples:
  {router_prefix}/sharing_scan/export?format=csv
  {router_prefix}/sharing_scan/export?filter=external&format=report
  """
  if len(request.query_params) == 0: return endpoint_docs_response(sharing_scan_export, router_prefix)
  logger = MiddlewareLogger.create()
  logger.log_function_header("sharing_scan_export")
  request_params = dict(request.query_params)
  format_param = request_params.get("format", "csv")
  sharing_filter = parse_sharing_filter(request_params.get("filter", "all"))
  show_groups = _bool_param(request_params, "show_sharepoint_groups", True)
  try:
    if _orchestrator is None or not _orchestrator.results:
      return json_result(False, "No results to export.", {})
    if _orchestrator.is_running:
      return json_result(False, "Scan still running. Stop it or wait for it to finish before exporting.", {})
    results, tenant_domains = _orchestrator.results, _orchestrator.tenant_domains

    if format_param == "csv":
      content = export_results_csv(results, tenant_domains, sharing_filter, show_groups)
      filename = f"sharepoint_onedrive_sharing_{datetime.datetime.now().strftime('%Y-%m-%d')}.csv"
      logger.log_function_output(f"Exported {len(content.splitlines()) - 1} row(s) to '{filename}'.")
      return Response(content=content, media_type="text/csv; charset=utf-8", headers={"Content-Disposition": f'attachment; filename="{filename}"'})

    if format_param == "report":
      storage_path = get_persistent_storage_path(request)
      if not storage_path: return json_result(False, "PERSISTENT_STORAGE_PATH not configured", {})
      report_id = create_sharing_scan_report(storage_path, results, tenant_domains, sharing_filter, _orchestrator.summary.to_dict(), show_groups, logger)
      return json_result(True, "", {"report_id": report_id})

    return json_result(False, f"Format '{format_param}' not supported. Use: csv, report", {})
  except Exception as e:
    logger.log_function_output(f"ERROR: Export failed -> {e}")
    return json_result(False, str(e), {})
  finally:
    logger.log_function_footer()

# ----------------------------------------- END: Results and export --------------------------------------------------------


# ----------------------------------------- START: Remediation -------------------------------------------------------------

@router.get(f"/{router_name}/remediate")
async def sharing_scan_remediate_docs():
  """
  Change sharing of findings. POST a JSON body.

  Body:
  - action: set_expiration, remove_links, remove_all, refresh
  - result_indexes: List of finding indexes (see 'index' in /results)
  - expiration_date: 'YYYY-MM-DD' for set_expiration; null or empty removes the expiration

  Notes:
  - remove_all keeps owner permissions and the inherited root permission
  - Modified findings are re-read from Graph afterwards

  Examples:
  POST {router_prefix}/sharing_scan/remediate
  {"action": "set_expiration", "result_indexes": [0, 3], "expiration_date": "2026-12-31"}
  """
  return endpoint_docs_response(sharing_scan_remediate_docs, router_prefix)

@router.post(f"/{router_name}/remediate")
async def sharing_scan_remediate(request: Request):
  logger = MiddlewareLogger.create()
  logger.log_function_header("sharing_scan_remediate")
  try:
    try:
      body = await request.json()
    except json.JSONDecodeError as e:
      return json_result(False, f"Invalid JSON body -> {e}", {})
    if not isinstance(body, dict): return json_result(False, "Body must be a JSON object.", {})
    action = body.get("action", "")
    indexes = body.get("result_indexes") or []
    if action not in REMEDIATION_ACTIONS:
      return json_result(False, f"Invalid action '{action}'. Use: {', '.join(REMEDIATION_ACTIONS)}", {})
    if not isinstance(indexes, list) or not all(isinstance(i, int) for i in indexes):
      return json_result(False, "'result_indexes' must be a list of integers.", {})
    if _orchestrator is None or not _orchestrator.results:
      return json_result(False, "No results to remediate.", {})
    if _orchestrator.is_running:
      return json_result(False, "Scan still running. Stop it or wait for it to finish before changing sharing.", {})

    outcomes = await remediate(
      _orchestrator.gateway, _orchestrator.results, indexes, action,
      _orchestrator.tenant_domains, _orchestrator.settings.sharing_filter, logger,
      expiration_date=body.get("expiration_date")
    )
    data = [o.to_dict() for o in outcomes]
    failed = sum(1 for o in outcomes if not o.ok)
    if failed: return json_result(False, pluralize(f"{failed} of {len(outcomes)} item(s) failed.", len(outcomes)), data)
    return json_result(True, "", data)
  except ValueError as e:
    return json_result(False, str(e), {})
  except Exception as e:
    logger.log_function_output(f"ERROR: Remediation failed -> {e}")
    return json_result(False, str(e), {})
  finally:
    logger.log_function_footer()

# ----------------------------------------- END: Remediation ---------------------------------------------------------------
