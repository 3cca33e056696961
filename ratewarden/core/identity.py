"""Identity resolution and endpoint classification for inbound requests.

Role lookup belongs to the auth layer; the limiter only depends on a
RoleResolver callable. The default resolver reads ``request.state.role`` and
``request.state.user_id`` as set by upstream authentication middleware.
"""

import ipaddress
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, Union

from starlette.requests import Request

from ratewarden.core.limits import EndpointClass, Identity, Role
from ratewarden.core.logging import get_logger

logger = get_logger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

# Trusted proxy IP ranges for X-Forwarded-* header validation
TRUSTED_PROXY_NETS: List[IPNetwork] = [
    # Loopback
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    # Docker bridge (common internal networking)
    ipaddress.ip_network("172.17.0.0/16"),
    # Kubernetes pod network (if running in k8s)
    ipaddress.ip_network("10.244.0.0/16"),
]

RoleResolver = Callable[[Request], Awaitable[Tuple[Optional[Role], Optional[str]]]]


def parse_trusted_networks(proxies: Iterable[str]) -> List[IPNetwork]:
    """Parse CIDR strings, skipping invalid ones. Empty input = defaults."""
    nets: List[IPNetwork] = []
    for proxy in proxies:
        try:
            nets.append(ipaddress.ip_network(proxy, strict=False))
        except ValueError:
            logger.warning(f"Invalid trusted proxy network: {proxy}")
    return nets or list(TRUSTED_PROXY_NETS)


def _is_trusted_proxy(client_ip: str, trusted_nets: Optional[List[IPNetwork]] = None) -> bool:
    """Check if the client IP is from a trusted proxy."""
    try:
        ip = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    return any(ip in net for net in (trusted_nets or TRUSTED_PROXY_NETS))


def get_client_ip(request: Request, trusted_nets: Optional[List[IPNetwork]] = None) -> Tuple[str, bool]:
    """Get the real client IP, respecting forwarding headers from trusted proxies.

    Checks X-Forwarded-For (first hop), then X-Real-IP, then CF-Connecting-IP.

    Returns:
        Tuple of (client_ip, is_trusted) where is_trusted indicates whether
        the IP came from a header set by a trusted proxy.
    """
    direct_ip = request.client.host if request.client else None
    from_proxy = bool(direct_ip and _is_trusted_proxy(direct_ip, trusted_nets))

    forwarded_for = request.headers.get("x-forwarded-for", "")
    candidates = [
        forwarded_for.split(",")[0].strip() if forwarded_for else "",
        request.headers.get("x-real-ip", "").strip(),
        request.headers.get("cf-connecting-ip", "").strip(),
    ]
    forwarded_ip = next((c for c in candidates if c), "")

    if forwarded_ip:
        if from_proxy:
            return (forwarded_ip, True)
        logger.warning(
            "Untrusted forwarding header ignored",
            data={"forwarded_ip": forwarded_ip, "direct_ip": direct_ip},
        )

    return (direct_ip or "unknown", False)


async def state_role_resolver(request: Request) -> Tuple[Optional[Role], Optional[str]]:
    """Read role and user id placed on ``request.state`` by the auth layer."""
    raw_role = getattr(request.state, "role", None)
    user_id = getattr(request.state, "user_id", None)
    if raw_role is None:
        return (None, None)
    try:
        role = raw_role if isinstance(raw_role, Role) else Role(str(raw_role).upper())
    except ValueError:
        logger.warning("Unknown role on request, treating as unauthenticated", data={"role": str(raw_role)})
        return (None, None)
    return (role, str(user_id) if user_id else None)


async def resolve_identity(
    request: Request,
    role_resolver: RoleResolver = state_role_resolver,
    trusted_nets: Optional[List[IPNetwork]] = None,
) -> Identity:
    """Build the Identity a decision is made for.

    Callers without a resolvable role are UNAUTHENTICATED and keyed by IP only.
    """
    client_ip, _ = get_client_ip(request, trusted_nets)
    role, user_id = await role_resolver(request)
    if role is None or role is Role.UNAUTHENTICATED:
        return Identity(ip=client_ip, role=Role.UNAUTHENTICATED)
    return Identity(ip=client_ip, role=role, user_id=user_id)


AUTH_PREFIXES = ("/api/auth",)
UPLOAD_PREFIXES = ("/api/upload", "/api/files")
MODERATION_PREFIXES = ("/api/moderation", "/api/admin/moderation")
READ_METHODS = frozenset({"GET", "HEAD"})


def _matches(path: str, prefixes: Tuple[str, ...]) -> bool:
    return any(path == p or path.startswith(p + "/") or path.startswith(p + "?") for p in prefixes)


def classify_endpoint(method: str, path: str) -> EndpointClass:
    """Map a request onto its endpoint class.

    Auth, upload and moderation are matched by path prefix regardless of
    method; remaining safe reads are READ; everything else is API.
    """
    normalized = path.rstrip("/") or "/"
    if _matches(normalized, AUTH_PREFIXES):
        return EndpointClass.AUTH
    if _matches(normalized, UPLOAD_PREFIXES):
        return EndpointClass.UPLOAD
    if _matches(normalized, MODERATION_PREFIXES):
        return EndpointClass.MODERATION
    if method.upper() in READ_METHODS:
        return EndpointClass.READ
    return EndpointClass.API
