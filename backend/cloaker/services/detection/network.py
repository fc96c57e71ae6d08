"""
Network Classification

Builds the VisitorContext from edge headers (Cloudflare / Vercel style geo
headers) and classifies the network: datacenter, VPN provider, proxy, Tor.
"""
import ipaddress
import logging
import os
from functools import lru_cache
from typing import FrozenSet, Iterable, Mapping, Optional

from ...models.click import VisitorContext

logger = logging.getLogger(__name__)


TOR_EXIT_NODES_FILE = os.getenv("TOR_EXIT_NODES_FILE", "")

DATACENTER_KEYWORDS = [
    "amazon", "aws", "google cloud", "gcp", "microsoft azure", "azure",
    "digitalocean", "linode", "akamai connected cloud", "vultr", "ovh", "hetzner",
    "oracle cloud", "ibm cloud", "alibaba", "tencent", "scaleway",
    "upcloud", "kamatera", "contabo", "hostinger", "godaddy", "leaseweb",
    "choopa", "m247", "hosting", "datacenter", "data center", "colocation",
]

VPN_PROVIDER_KEYWORDS = [
    "nordvpn", "expressvpn", "surfshark", "mullvad", "protonvpn", "proton ag",
    "private internet access", "cyberghost", "ipvanish", "hide.me", "windscribe",
    "purevpn", "torguard", "vpn",
]

COUNTRY_HEADERS = ("cf-ipcountry", "x-vercel-ip-country", "x-country-code")
CITY_HEADERS = ("cf-ipcity", "cf-city", "x-vercel-ip-city")
ISP_HEADERS = ("cf-isp", "x-isp", "x-ip-org")
ASN_HEADERS = ("cf-asn", "x-asn")


def _first_header(headers: Mapping[str, str], names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = headers.get(name)
        if value:
            return value.strip()
    return None


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> Optional[str]:
    """Originating client IP: CDN header, then first X-Forwarded-For hop, then socket."""
    ip = headers.get("cf-connecting-ip") or headers.get("true-client-ip")
    if not ip and headers.get("x-forwarded-for"):
        ip = headers["x-forwarded-for"].split(",")[0]
    if not ip:
        ip = headers.get("x-real-ip") or remote_addr
    return ip.strip() if ip else None


def build_visitor_context(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    remote_addr: Optional[str] = None,
) -> VisitorContext:
    """Build the VisitorContext for a request. Header names must be lowercase."""
    headers = {k.lower(): v for k, v in headers.items()}
    country = _first_header(headers, COUNTRY_HEADERS)
    asn = _first_header(headers, ASN_HEADERS)
    if asn and not asn.upper().startswith("AS"):
        asn = f"AS{asn}"
    return VisitorContext(
        ip=client_ip(headers, remote_addr),
        user_agent=headers.get("user-agent", ""),
        country=country.upper() if country and country.upper() != "XX" else None,
        city=_first_header(headers, CITY_HEADERS),
        isp=_first_header(headers, ISP_HEADERS),
        asn=asn.upper() if asn else None,
        referer=headers.get("referer"),
        accept_language=headers.get("accept-language"),
        host=headers.get("host"),
        headers=headers,
        query_params=dict(query_params),
    )


# =============================================================================
# IP LIST MATCHING
# =============================================================================

def ip_in_list(ip: Optional[str], entries: Iterable[str]) -> bool:
    """Exact IP or CIDR membership. Unparseable entries are ignored."""
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return ip in set(entries)
    for entry in entries:
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


# =============================================================================
# NETWORK CLASSIFIERS
# =============================================================================

def is_datacenter_isp(isp: Optional[str]) -> bool:
    name = (isp or "").lower()
    return bool(name) and any(keyword in name for keyword in DATACENTER_KEYWORDS)


def is_vpn_isp(isp: Optional[str]) -> bool:
    name = (isp or "").lower()
    return bool(name) and any(keyword in name for keyword in VPN_PROVIDER_KEYWORDS)


def is_proxy_request(headers: Mapping[str, str]) -> bool:
    """Via / Forwarded headers or a multi-hop X-Forwarded-For chain."""
    if headers.get("via") or headers.get("forwarded") or headers.get("proxy-connection"):
        return True
    forwarded_for = headers.get("x-forwarded-for") or ""
    hops = [hop for hop in forwarded_for.split(",") if hop.strip()]
    return len(hops) > 1


@lru_cache(maxsize=1)
def _load_tor_exit_nodes(path: str) -> FrozenSet[str]:
    if not path:
        return frozenset()
    try:
        with open(path, "r", encoding="utf-8") as fh:
            nodes = frozenset(
                line.strip() for line in fh
                if line.strip() and not line.startswith("#")
            )
    except OSError as e:
        logger.warning(f"Tor exit list unreadable at {path}: {e}")
        return frozenset()
    logger.info(f"Loaded {len(nodes)} Tor exit nodes from {path}")
    return nodes


def is_tor_exit(ip: Optional[str], exit_nodes: Optional[FrozenSet[str]] = None) -> bool:
    if not ip:
        return False
    nodes = exit_nodes if exit_nodes is not None else _load_tor_exit_nodes(TOR_EXIT_NODES_FILE)
    return ip in nodes
