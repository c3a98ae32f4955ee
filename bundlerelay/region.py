"""Discovery of the region this node runs in."""

from __future__ import annotations

import functools
import ipaddress
import json
import os
import urllib.request
from typing import Any

IP_ECHO_URL = "https://api.ipify.org"
UNKNOWN_REGION = "UNKNOWN"
_TIMEOUT = 10


def find_region(payload: Any, my_ip: str | ipaddress.IPv4Address | ipaddress.IPv6Address) -> str | None:
    """Return the region of the searcher node whose address is ``my_ip``.

    A searcher entry with a missing or malformed address or region ends the search with None.
    """
    target = ipaddress.ip_address(my_ip) if isinstance(my_ip, str) else my_ip
    nodes = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(nodes, list):
        return None
    for node in nodes:
        if not isinstance(node, dict) or node.get("category") != "SEARCHER":
            continue
        address = node.get("ip")
        if not isinstance(address, str):
            return None
        try:
            node_ip = ipaddress.ip_address(address.split(":", 1)[0])
        except ValueError:
            return None
        if node_ip == target:
            region = node.get("region")
            return region if isinstance(region, str) else None
    return None


def _fetch(url: str) -> bytes:
    with urllib.request.urlopen(url, timeout=_TIMEOUT) as resp:
        return resp.read()


def detect_region(host: str | None = None, api_key: str | None = None) -> str | None:
    """Look up this node's public address in the node directory; None on any failure."""
    host = host if host is not None else os.environ.get("MEVITY_HOST", "https://")
    api_key = api_key if api_key is not None else os.environ.get("MEVITY_API_KEY")
    if api_key is None:
        return None
    try:
        my_ip = ipaddress.ip_address(_fetch(IP_ECHO_URL).decode().strip())
        payload = json.loads(_fetch(f"{host}/api/nodes?api_key={api_key}"))
    except (OSError, ValueError):
        return None
    return find_region(payload, my_ip)


@functools.lru_cache(maxsize=None)
def local_region() -> str:
    """The detected region of this node, computed once; ``UNKNOWN`` if it cannot be found."""
    return detect_region() or UNKNOWN_REGION