import logging, os, platform, shutil, tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

from hardcoded_config import SCANNER_HARDCODED_CONFIG
from routers_v2 import sharing_scan
from routers_v2.common_logging_functions_v2 import MiddlewareLogger, pluralize

# Load environment variables from a local .env file if present
load_dotenv()

# Global initialization errors array
initialization_errors = []

@dataclass
class SystemInfo:
  ENVIRONMENT: str
  OS_PLATFORM: str
  PERSISTENT_STORAGE_PATH: str
  PERSISTENT_STORAGE_FREE_SPACE_BYTES: int | str
  APP_SRC_PATH: str

@dataclass
class Config:
  LOCAL_PERSISTENT_STORAGE_PATH: Optional[str]
  # Scanner app registration
  SCANNER_TENANT_ID: Optional[str]
  SCANNER_CLIENT_ID: Optional[str]
  SCANNER_CLIENT_CERTIFICATE_PFX_FILE: Optional[str]
  SCANNER_CLIENT_CERTIFICATE_PASSWORD: Optional[str]
  SCANNER_CLIENT_SECRET: Optional[str]
  SCANNER_ACCOUNT_USERNAME: Optional[str]
  # Scanner request pacing
  SCANNER_MAX_CONCURRENT_REQUESTS: int
  SCANNER_DELAY_BETWEEN_REQUESTS_MS: int
  SCANNER_MAX_RETRIES: int
  SCANNER_TOKEN_REFRESH_HORIZON_MINUTES: int


def load_config() -> Config:
  """Load configuration from environment variables."""

  return Config(
    LOCAL_PERSISTENT_STORAGE_PATH=os.getenv('LOCAL_PERSISTENT_STORAGE_PATH')
    # Scanner app registration
    ,SCANNER_TENANT_ID=os.getenv('SCANNER_TENANT_ID')
    ,SCANNER_CLIENT_ID=os.getenv('SCANNER_CLIENT_ID')
    ,SCANNER_CLIENT_CERTIFICATE_PFX_FILE=os.getenv('SCANNER_CLIENT_CERTIFICATE_PFX_FILE')
    ,SCANNER_CLIENT_CERTIFICATE_PASSWORD=os.getenv('SCANNER_CLIENT_CERTIFICATE_PASSWORD')
    ,SCANNER_CLIENT_SECRET=os.getenv('SCANNER_CLIENT_SECRET')
    ,SCANNER_ACCOUNT_USERNAME=os.getenv('SCANNER_ACCOUNT_USERNAME')
    # Scanner request pacing
    ,SCANNER_MAX_CONCURRENT_REQUESTS=int(os.getenv('SCANNER_MAX_CONCURRENT_REQUESTS', str(SCANNER_HARDCODED_CONFIG.GRAPH_MAX_CONCURRENT_REQUESTS)))
    ,SCANNER_DELAY_BETWEEN_REQUESTS_MS=int(os.getenv('SCANNER_DELAY_BETWEEN_REQUESTS_MS', str(SCANNER_HARDCODED_CONFIG.GRAPH_DELAY_BETWEEN_REQUESTS_MS)))
    ,SCANNER_MAX_RETRIES=int(os.getenv('SCANNER_MAX_RETRIES', str(SCANNER_HARDCODED_CONFIG.GRAPH_MAX_RETRIES)))
    ,SCANNER_TOKEN_REFRESH_HORIZON_MINUTES=int(os.getenv('SCANNER_TOKEN_REFRESH_HORIZON_MINUTES', str(SCANNER_HARDCODED_CONFIG.TOKEN_REFRESH_HORIZON_MINUTES)))
  )

def configure_logging():
  """Configure logging to suppress verbose Azure SDK and HTTP logs."""
  logging.getLogger('azure').setLevel(logging.WARNING)
  logging.getLogger('azure.core.pipeline.policies.http_logging_policy').setLevel(logging.WARNING)
  logging.getLogger('azure.identity').setLevel(logging.WARNING)
  logging.getLogger('azure.identity._credentials').setLevel(logging.WARNING)
  logging.getLogger('azure.identity._internal').setLevel(logging.WARNING)
  logging.getLogger('msal').setLevel(logging.WARNING)
  logging.getLogger('httpx').setLevel(logging.WARNING)
  logging.getLogger('httpcore').setLevel(logging.WARNING)


def is_running_on_azure_app_service() -> bool:
  """Detect if the application is running on Azure App Service."""
  return os.path.exists("/home/site/wwwroot") or os.path.exists("/opt/startup") or os.path.exists("/home/site")

def test_directory_writable(directory_path: str) -> bool:
  """Test if a directory is writable by creating a temporary file."""
  if not os.path.exists(directory_path):
    return False

  try:
    with tempfile.NamedTemporaryFile(dir=directory_path, delete=False) as temp_file:
      temp_file.write(b"test")
      temp_file_path = temp_file.name
    os.unlink(temp_file_path)
    return True
  except OSError:
    return False

def create_system_info() -> SystemInfo:
  """Create system information."""
  retVal = SystemInfo(
    ENVIRONMENT="Azure" if is_running_on_azure_app_service() else "Local",
    OS_PLATFORM="Windows" if platform.system() == "Windows" else "Linux",
    PERSISTENT_STORAGE_PATH="",
    PERSISTENT_STORAGE_FREE_SPACE_BYTES="N/A",
    APP_SRC_PATH=os.path.dirname(os.path.abspath(__file__))
  )

  # Set persistent storage path
  if retVal.ENVIRONMENT == "Azure":
    retVal.PERSISTENT_STORAGE_PATH = os.path.join(os.getenv("HOME", r"d:\home"), "data") if platform.system() == "Windows" else "/home/data"
  else:
    retVal.PERSISTENT_STORAGE_PATH = os.getenv('LOCAL_PERSISTENT_STORAGE_PATH') or ""

  # Create persistent storage directory if it doesn't exist
  if retVal.PERSISTENT_STORAGE_PATH:
    try: os.makedirs(retVal.PERSISTENT_STORAGE_PATH, exist_ok=True)
    except OSError as e: initialization_errors.append({"component": "Persistent Storage", "error": f"Failed to create '{retVal.PERSISTENT_STORAGE_PATH}' -> {e}"})

  # Get disk space for persistent storage path
  try:
    if retVal.PERSISTENT_STORAGE_PATH and os.path.exists(retVal.PERSISTENT_STORAGE_PATH):
      retVal.PERSISTENT_STORAGE_FREE_SPACE_BYTES = shutil.disk_usage(retVal.PERSISTENT_STORAGE_PATH).free
  except OSError: retVal.PERSISTENT_STORAGE_FREE_SPACE_BYTES = "N/A"

  return retVal

def verify_config(config: Config, system_info: SystemInfo) -> list[dict]:
  """Configuration fields with verification results. Secrets are masked."""
  config_list = []
  for field in config.__dataclass_fields__:
    value = getattr(config, field)
    verification = ""
    if field in ("SCANNER_CLIENT_CERTIFICATE_PASSWORD", "SCANNER_CLIENT_SECRET"):
      value = "✅ ***" if value else "⚠️ Not set"
    elif field == "SCANNER_CLIENT_CERTIFICATE_PFX_FILE" and value:
      cert_path = os.path.join(system_info.PERSISTENT_STORAGE_PATH, value)
      verification = "✅ Found" if os.path.exists(cert_path) else "❌ Not found"
    elif field == "LOCAL_PERSISTENT_STORAGE_PATH" and value:
      verification = "✅ Writable" if test_directory_writable(value) else "❌ Not writable"
    elif value is None or value == "":
      value = "⚠️ Not set"
    config_list.append({"Field": field, "Value": value, "Verification": verification})
  return config_list

def convert_to_flat_html_table(rows: list[dict]) -> str:
  if not rows: return "<p>(none)</p>"
  columns = list(rows[0].keys())
  header = "".join(f"<th>{c}</th>" for c in columns)
  body = "".join("<tr>" + "".join(f"<td>{row.get(c, '')}</td>" for c in columns) + "</tr>" for row in rows)
  return f"<table><thead><tr>{header}</tr></thead><tbody>{body}</tbody></table>"

@asynccontextmanager
async def lifespan(app: FastAPI):
  yield
  # Close Graph HTTP client and credential of the scanner, if one was created
  orchestrator = sharing_scan._orchestrator
  if orchestrator is not None:
    orchestrator.request_stop()
    await orchestrator.gateway.aclose()
    close = getattr(orchestrator.gateway.token_provider, "close", None)
    if close: await close()

def create_app() -> FastAPI:
  """Create and configure the FastAPI application."""
  logger = MiddlewareLogger.create()
  logger.log_function_header("create_app")
  # Configure logging first to ensure all initialization logs are properly formatted
  configure_logging()
  logger.log_function_output("Logging configured")
  # Load configuration
  config = load_config()
  logger.log_function_output("Configuration loaded")
  # Create FastAPI app instance
  app = FastAPI(title="SharePoint-Sharing-Scanner", lifespan=lifespan)
  app.state.config = config
  system_info = create_system_info()
  app.state.system_info = system_info
  logger.log_function_output(f"System info: ENVIRONMENT={system_info.ENVIRONMENT}, PERSISTENT_STORAGE_PATH='{system_info.PERSISTENT_STORAGE_PATH or 'N/A'}'")

  if not system_info.PERSISTENT_STORAGE_PATH:
    initialization_errors.append({"component": "Persistent Storage", "error": "PERSISTENT_STORAGE_PATH not configured. Set LOCAL_PERSISTENT_STORAGE_PATH environment variable."})
  if not config.SCANNER_TENANT_ID or not config.SCANNER_CLIENT_ID:
    initialization_errors.append({"component": "Scanner Credentials", "error": "SCANNER_TENANT_ID and SCANNER_CLIENT_ID must be set."})
  elif not config.SCANNER_CLIENT_CERTIFICATE_PFX_FILE and not config.SCANNER_CLIENT_SECRET:
    initialization_errors.append({"component": "Scanner Credentials", "error": "Set SCANNER_CLIENT_CERTIFICATE_PFX_FILE or SCANNER_CLIENT_SECRET."})

  # Add CORS middleware to handle preflight OPTIONS requests
  app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
  logger.log_function_output("CORS middleware added")

  # Include V2 routers
  v2_router_prefix = "/v2"

  # Include Sharing Scan router under /v2
  try:
    app.include_router(sharing_scan.router, tags=["Sharing Scan"], prefix=v2_router_prefix)
    sharing_scan.set_config(config, v2_router_prefix)
    logger.log_function_output(f"Sharing Scan router included at {v2_router_prefix}")
  except Exception as e:
    initialization_errors.append({"component": "Sharing Scan Router", "error": str(e)})

  # Final summary - log any initialization errors
  if initialization_errors:
    logger.log_function_output(pluralize(f"App initialization completed with {len(initialization_errors)} initialization error(s):", len(initialization_errors)))
    for error in initialization_errors:
      logger.log_function_output(f"  - {error['component']}: {error['error']}")
  else:
    logger.log_function_output("App initialization completed successfully with no errors")
  logger.log_function_footer()
  return app

# Initialize the FastAPI application
app = create_app()

@app.get("/alive", response_class=PlainTextResponse)
async def health():
  """Health check endpoint for monitoring."""
  return PlainTextResponse(content="alive", status_code=200)

@app.get("/favicon.ico")
async def favicon(): return Response(status_code=204)

@app.get("/", response_class=HTMLResponse)
def root() -> str:
  errors_html = f'<div class="section"><h4>Errors</h4>{convert_to_flat_html_table(initialization_errors)}</div>' if initialization_errors else ""
  config_list = verify_config(app.state.config, app.state.system_info)

  return f"""
<!doctype html><html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>SharePoint-Sharing-Scanner</title>
</head>
<body>
  <h1>SharePoint-Sharing-Scanner</h1>
  <p>Finds files and folders shared with external or internal users in SharePoint sites and OneDrive drives.</p>

  <h4>Available Links</h4>
  <ul>
    <li><a href="/docs">/docs</a> - API Documentation</li>
    <li><a href="/openapi.json">/openapi.json</a> - OpenAPI JSON</li>
    <p>Version 2 Routers</p>
    <li><a href="/v2/sharing_scan">/v2/sharing_scan</a> - Sharing Scan (<a href="/v2/sharing_scan/sites?format=json">Sites</a> + <a href="/v2/sharing_scan/users?format=json">Users</a> + <a href="/v2/sharing_scan/status?format=json">Status</a> + <a href="/v2/sharing_scan/results?format=json">Results</a> + <a href="/v2/sharing_scan/statistics?format=json">Statistics</a> + <a href="/v2/sharing_scan/export?format=csv">CSV</a>)</li>
  </ul>

  <div class="section">
    <h4>Configuration</h4>
    {convert_to_flat_html_table(config_list)}
  </div>

  {errors_html}
</body>
</html>
"""
