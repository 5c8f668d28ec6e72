# Bearer token provider for Microsoft Graph using azure-identity app-only credentials
# Certificate (PFX) credentials are preferred, client secret is the fallback.

import asyncio, time
from typing import Optional

from azure.core.credentials import AccessToken
from azure.identity.aio import CertificateCredential, ClientSecretCredential

from routers_v2.common_graph_request_functions_v2 import AuthExpiredError

GRAPH_SCOPE = "https://graph.microsoft.com/.default"

class GraphTokenProvider:
  """
  Caches one Graph access token and refreshes it through the wrapped azure-identity credential.
  Implements get_valid_token(), is_expiring_soon(horizon_minutes) and force_refresh() for the request gateway.
  """

  def __init__(self, credential, scope: str = GRAPH_SCOPE):
    self._credential = credential
    self._scope = scope
    self._access_token: Optional[AccessToken] = None
    self._lock = asyncio.Lock()

  def is_expiring_soon(self, horizon_minutes: int) -> bool:
    if not self._access_token: return True
    return self._access_token.expires_on - time.time() < horizon_minutes * 60

  async def get_valid_token(self) -> str:
    if self._access_token and self._access_token.expires_on > time.time():
      return self._access_token.token
    return await self.force_refresh()

  async def force_refresh(self) -> str:
    async with self._lock:
      try:
        self._access_token = await self._credential.get_token(self._scope)
      except Exception as e:
        self._access_token = None
        raise AuthExpiredError(f"Token refresh failed -> {type(e).__name__}: {e}") from e
      return self._access_token.token

  async def close(self) -> None:
    await self._credential.close()


def create_token_provider(tenant_id: str, client_id: str, cert_path: str = "", cert_password: str = "", client_secret: str = "") -> GraphTokenProvider:
  """Create token provider from certificate (cert_path + cert_password) or from client_secret."""
  if not tenant_id or not client_id:
    raise ValueError("Missing tenant_id or client_id for Graph token provider")
  if cert_path:
    credential = CertificateCredential(tenant_id, client_id, certificate_path=cert_path, password=cert_password or None)
  elif client_secret:
    credential = ClientSecretCredential(tenant_id, client_id, client_secret)
  else:
    raise ValueError("Missing credentials: provide a certificate file or a client secret")
  return GraphTokenProvider(credential)
