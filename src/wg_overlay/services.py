# src/wg_overlay/services.py
from __future__ import annotations

import ipaddress
import logging
import shutil
from typing import List, Optional, Protocol, Tuple

import requests

from .config import ENDPOINT_LOOKUP_URL, REQUIRED_TOOLS, WG_INTERFACE
from .errors import ExternalToolError
from .wireguard import _which, run_cmd

logger = logging.getLogger(__name__)


# -----------------------------
# Service wg-quick
# -----------------------------

class ServiceController(Protocol):
    def enable(self) -> None: ...

    def start(self) -> None: ...

    def restart(self) -> None: ...

    def stop(self) -> None: ...

    def disable(self) -> None: ...


class SystemdService:
    def __init__(self, interface: str = WG_INTERFACE):
        self.unit = f"wg-quick@{interface}"

    def _systemctl(self, action: str) -> None:
        _which("systemctl")
        logger.info("systemctl %s %s", action, self.unit)
        run_cmd(["systemctl", action, self.unit], timeout=30)

    def enable(self) -> None:
        self._systemctl("enable")

    def start(self) -> None:
        self._systemctl("start")

    def restart(self) -> None:
        self._systemctl("restart")

    def stop(self) -> None:
        self._systemctl("stop")

    def disable(self) -> None:
        self._systemctl("disable")


# -----------------------------
# Endpoint public (suggestion uniquement)
# -----------------------------

def resolve_public_ip(url: str = ENDPOINT_LOOKUP_URL, timeout: int = 5) -> Optional[str]:
    try:
        r = requests.get(url, timeout=timeout)
        r.raise_for_status()
        ip = r.text.strip()
        ipaddress.ip_address(ip)
        return ip
    except (requests.RequestException, ValueError) as e:
        logger.warning("public IP lookup via %s failed: %s", url, e)
        return None


# -----------------------------
# Interfaces de l'hôte
# -----------------------------

def detect_wan_iface() -> str:
    _which("ip")
    out = run_cmd(["ip", "route", "show", "default"]).stdout.strip()
    line = next((l for l in out.splitlines() if l.strip()), "")
    if not line:
        raise ExternalToolError(["ip", "route", "show", "default"], stderr="no default route")
    parts = line.split()
    if "dev" not in parts or parts.index("dev") + 1 >= len(parts):
        raise ExternalToolError(["ip", "route", "show", "default"], stderr=f"cannot parse '{line}'")
    return parts[parts.index("dev") + 1]


def list_interfaces(exclude: Tuple[str, ...] = ("lo", WG_INTERFACE)) -> List[Tuple[str, str]]:
    """
    Interfaces IPv4 candidates pour la sortie : [(nom, cidr), ...]
    """
    _which("ip")
    out = run_cmd(["ip", "-o", "-4", "addr", "show"]).stdout
    found = []
    for line in out.splitlines():
        parts = line.split()
        # "2: eth0    inet 192.0.2.10/24 brd ..."
        if len(parts) < 4 or parts[2] != "inet":
            continue
        name = parts[1]
        if name in exclude:
            continue
        found.append((name, parts[3]))
    return found


def missing_tools(tools: Tuple[str, ...] = REQUIRED_TOOLS) -> List[str]:
    return [t for t in tools if shutil.which(t) is None]
