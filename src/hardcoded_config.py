from dataclasses import dataclass
from typing import List

@dataclass
class ScannerHardcodedConfig:
  PERSISTENT_STORAGE_PATH_JOBS_SUBFOLDER: str
  PERSISTENT_STORAGE_PATH_REPORTS_SUBFOLDER: str
  PERSISTENT_STORAGE_LOG_EVENTS_PER_WRITE: int
  GRAPH_BASE_URL: str
  GRAPH_USER_AGENT: str
  GRAPH_MAX_RETRIES: int
  GRAPH_MAX_CONCURRENT_REQUESTS: int
  GRAPH_DELAY_BETWEEN_REQUESTS_MS: int
  GRAPH_LOW_QUOTA_THRESHOLD: int
  GRAPH_LOW_QUOTA_DELAY_MS: int
  GRAPH_PAGE_LOW_QUOTA_THRESHOLD: int
  GRAPH_PAGE_LOW_QUOTA_DELAY_MS: int
  GRAPH_PAGE_DELAY_MS: int
  TOKEN_REFRESH_HORIZON_MINUTES: int
  PERMISSION_BATCH_SIZE: int
  PERMISSION_BATCH_DELAY_MS: int
  FOLDER_RECURSION_BATCH_SIZE: int
  FOLDER_RECURSION_BATCH_DELAY_MS: int
  DELTA_PAGE_DELAY_MS: int
  DELTA_FALLBACK_COOLDOWN_MS: int
  PROGRESS_EVERY_N_ITEMS: int
  SKIP_FOLDERS: List[str]
  PRESERVATION_HOLD_PATTERNS: List[str]
  DEFAULT_SHAREPOINT_GROUPS: List[str]
  OWNER_ROLE_KEYWORDS: List[str]


SCANNER_HARDCODED_CONFIG = ScannerHardcodedConfig(
  PERSISTENT_STORAGE_PATH_JOBS_SUBFOLDER="jobs"
  ,PERSISTENT_STORAGE_PATH_REPORTS_SUBFOLDER="reports"
  ,PERSISTENT_STORAGE_LOG_EVENTS_PER_WRITE=5
  ,GRAPH_BASE_URL="https://graph.microsoft.com/v1.0"
  # https://learn.microsoft.com/en-us/sharepoint/dev/general-development/how-to-avoid-getting-throttled-or-blocked-in-sharepoint-online
  ,GRAPH_USER_AGENT="NONISV|YourCompany|SharePointOneDriveScanner/3.0.0"
  ,GRAPH_MAX_RETRIES=3
  ,GRAPH_MAX_CONCURRENT_REQUESTS=6
  ,GRAPH_DELAY_BETWEEN_REQUESTS_MS=200
  ,GRAPH_LOW_QUOTA_THRESHOLD=100
  ,GRAPH_LOW_QUOTA_DELAY_MS=1000
  ,GRAPH_PAGE_LOW_QUOTA_THRESHOLD=50
  ,GRAPH_PAGE_LOW_QUOTA_DELAY_MS=200
  ,GRAPH_PAGE_DELAY_MS=25
  ,TOKEN_REFRESH_HORIZON_MINUTES=5
  # Graph $batch accepts up to 20 requests, 15 leaves headroom
  ,PERMISSION_BATCH_SIZE=15
  ,PERMISSION_BATCH_DELAY_MS=500
  ,FOLDER_RECURSION_BATCH_SIZE=3
  ,FOLDER_RECURSION_BATCH_DELAY_MS=300
  ,DELTA_PAGE_DELAY_MS=200
  ,DELTA_FALLBACK_COOLDOWN_MS=300
  ,PROGRESS_EVERY_N_ITEMS=5
  ,SKIP_FOLDERS=["Forms", "SiteAssets", "_catalogs", "Style Library", "SitePages", "Lists", "PublishingImages", "SiteCollectionImages", "MasterPageGallery", "_themes", "_layouts", "_vti_", "wpresources", "ClientSideAssets"]
  ,PRESERVATION_HOLD_PATTERNS=["Preservation Hold Library", "Preservation Hold", "Hold Library", "PreservationHoldLibrary", "Legal Hold", "Compliance Hold", "eDiscovery Hold"]
  ,DEFAULT_SHAREPOINT_GROUPS=[
    "Company Administrator", "Team Site Owners", "Site Owners", "Team Site Members", "Site Members", "Members"
    ,"Excel Services Viewers", "Team Site Visitors", "Site Visitors", "Visitors", "Style Resource Readers"
    ,"Hierarchy Managers", "Quick Deploy Users", "Restricted Readers", "Viewers", "Web Analytics Data Viewers"
    ,"Site Collection Administrators", "Site Collection Auditors"
  ]
  ,OWNER_ROLE_KEYWORDS=["owner", "owners", "full control", "fullcontrol", "edit", "write", "manage", "control"]
)
