# Permission classification for Graph driveItem permissions
# Pure functions: parse a raw permission into a Grant, classify it against the tenant domains, decide inclusion.

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Tuple, Union

class Classification(str, Enum):
  INTERNAL = "internal"
  EXTERNAL = "external"
  MIXED = "mixed"
  UNKNOWN = "unknown"

class SharingFilter(str, Enum):
  ALL = "all"
  EXTERNAL = "external"
  INTERNAL = "internal"

def parse_sharing_filter(value: Optional[str]) -> SharingFilter:
  """Unknown or empty values fall back to EXTERNAL."""
  try: return SharingFilter((value or "").lower())
  except ValueError: return SharingFilter.EXTERNAL


# ----------------------------------------- START: Grant model ----------------------------------------------------------------

@dataclass(frozen=True)
class Identity:
  display_name: str = ""
  email: str = ""
  is_group: bool = False

@dataclass(frozen=True)
class LinkPrincipal:
  scope: str
  link_type: str = ""
  identities: Tuple[Identity, ...] = ()

@dataclass(frozen=True)
class GroupPrincipal:
  identity: Identity
  is_site_group: bool = False

@dataclass(frozen=True)
class UserPrincipal:
  identity: Identity

@dataclass(frozen=True)
class MultipleIdentitiesPrincipal:
  identities: Tuple[Identity, ...]

@dataclass(frozen=True)
class UnresolvedPrincipal:
  pass

Principal = Union[LinkPrincipal, GroupPrincipal, UserPrincipal, MultipleIdentitiesPrincipal, UnresolvedPrincipal]

@dataclass(frozen=True)
class Grant:
  id: str
  principal: Principal
  roles: Tuple[str, ...] = ()
  expiration: Optional[str] = None
  application: Optional[str] = None
  raw: dict = field(default_factory=dict, compare=False, hash=False, repr=False)

def _identity_from_user(user: dict) -> Identity:
  return Identity(display_name=user.get("displayName") or "", email=(user.get("email") or "").strip())

def _identity_from_group(group: dict) -> Identity:
  return Identity(display_name=group.get("displayName") or group.get("loginName") or "", email=(group.get("email") or "").strip(), is_group=True)

def _collect_identities(permission: dict) -> Tuple[Identity, ...]:
  identities = []
  for entry in permission.get("grantedToIdentitiesV2") or permission.get("grantedToIdentities") or []:
    if not isinstance(entry, dict): continue
    if entry.get("user"): identities.append(_identity_from_user(entry["user"]))
    elif entry.get("group"): identities.append(_identity_from_group(entry["group"]))
    elif entry.get("siteUser"): identities.append(_identity_from_user(entry["siteUser"]))
    elif entry.get("siteGroup"): identities.append(_identity_from_group(entry["siteGroup"]))
  return tuple(identities)

def _direct_user(permission: dict) -> Optional[dict]:
  for key in ("grantedTo", "grantedToV2"):
    granted = permission.get(key) or {}
    if granted.get("user"): return granted["user"]
  return None

def parse_grant(permission: dict) -> Grant:
  """
  Resolve a raw Graph permission into exactly one principal kind.
  Precedence: link > group > site group > direct user > identities list > unresolved.
  """
  granted_v2 = permission.get("grantedToV2") or {}
  link = permission.get("link")
  principal: Principal

  if link:
    identities = _collect_identities(permission)
    user = _direct_user(permission)
    if user and not identities: identities = (_identity_from_user(user),)
    principal = LinkPrincipal(scope=(link.get("scope") or "").lower(), link_type=link.get("type") or "", identities=identities)
  elif granted_v2.get("group"):
    principal = GroupPrincipal(_identity_from_group(granted_v2["group"]))
  elif granted_v2.get("siteGroup"):
    principal = GroupPrincipal(_identity_from_group(granted_v2["siteGroup"]), is_site_group=True)
  elif _direct_user(permission):
    principal = UserPrincipal(_identity_from_user(_direct_user(permission)))
  elif _collect_identities(permission):
    principal = MultipleIdentitiesPrincipal(_collect_identities(permission))
  else:
    principal = UnresolvedPrincipal()

  application = None
  for key in ("grantedTo", "grantedToV2"):
    app = (permission.get(key) or {}).get("application")
    if app: application = app.get("displayName") or app.get("id"); break

  return Grant(
    id=permission.get("id") or "",
    principal=principal,
    roles=tuple(permission.get("roles") or ()),
    expiration=permission.get("expirationDateTime") or (link or {}).get("expirationDateTime"),
    application=application,
    raw=permission
  )

# ----------------------------------------- END: Grant model ------------------------------------------------------------------


# ----------------------------------------- START: Classification -------------------------------------------------------------

def normalize_tenant_domains(domains: Iterable[str]) -> FrozenSet[str]:
  return frozenset(d.strip().lower() for d in domains if d and d.strip())

def email_domain(email: str) -> str:
  if not email or "@" not in email: return ""
  return email.rsplit("@", 1)[1].strip().lower()

def is_external_email(email: str, tenant_domains: FrozenSet[str]) -> bool:
  """Addresses without a domain part are never external."""
  domain = email_domain(email)
  return bool(domain) and domain not in tenant_domains

def _classify_identities(identities: Tuple[Identity, ...], tenant_domains: FrozenSet[str]) -> Classification:
  has_internal = False
  has_external = False
  for identity in identities:
    if identity.is_group:
      has_internal = True
    elif identity.email:
      if is_external_email(identity.email, tenant_domains): has_external = True
      else: has_internal = True
  if has_internal and has_external: return Classification.MIXED
  if has_external: return Classification.EXTERNAL
  if has_internal: return Classification.INTERNAL
  return Classification.UNKNOWN

def classify(grant: Grant, tenant_domains: FrozenSet[str]) -> Classification:
  principal = grant.principal
  if isinstance(principal, LinkPrincipal):
    if principal.scope == "anonymous": return Classification.EXTERNAL
    if principal.scope == "organization": return Classification.INTERNAL
    return _classify_identities(principal.identities, tenant_domains)
  if isinstance(principal, GroupPrincipal):
    return Classification.INTERNAL
  if isinstance(principal, UserPrincipal):
    return _classify_identities((principal.identity,), tenant_domains)
  if isinstance(principal, MultipleIdentitiesPrincipal):
    return _classify_identities(principal.identities, tenant_domains)
  if isinstance(principal, UnresolvedPrincipal):
    return Classification.UNKNOWN
  raise TypeError(f"Unhandled principal type: {type(principal).__name__}")

def is_direct_grant(grant: Grant) -> bool:
  """A bare grant to one person: no link, no group, no site group."""
  return isinstance(grant.principal, UserPrincipal)

def should_include(grant: Grant, tenant_domains: FrozenSet[str], sharing_filter: SharingFilter) -> bool:
  """Direct single-user grants are never reported. Everything else is matched against the filter."""
  if is_direct_grant(grant): return False
  if sharing_filter == SharingFilter.ALL: return True
  classification = classify(grant, tenant_domains)
  if sharing_filter == SharingFilter.INTERNAL:
    return classification in (Classification.INTERNAL, Classification.MIXED)
  return classification in (Classification.EXTERNAL, Classification.MIXED)

def should_include_permission(permission: dict, tenant_domains: FrozenSet[str], sharing_filter: SharingFilter) -> bool:
  return should_include(parse_grant(permission), tenant_domains, sharing_filter)

def filter_permissions(permissions: list, tenant_domains: FrozenSet[str], sharing_filter: SharingFilter) -> list:
  return [p for p in permissions if should_include_permission(p, tenant_domains, sharing_filter)]

# ----------------------------------------- END: Classification ---------------------------------------------------------------
