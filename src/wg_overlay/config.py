# src/wg_overlay/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_WG_DIR = Path("/etc/wireguard")
DEFAULT_RULES_FILE = Path("/etc/iptables/rules.v4")

WG_INTERFACE = "wg0"
OVERLAY_NETWORK = "10.16.0.0/24"
SERVER_ADDRESS = "10.16.0.1/24"
DEFAULT_PORT = 51820

# Plage des hôtes attribuables aux peers (10.16.0.2 .. 10.16.0.254)
FIRST_HOST_ID = 2
LAST_HOST_ID = 254

OWNERSHIP_TAG = "WG_SCRIPT_MANAGED"

CLIENT_DNS = ["1.1.1.1", "8.8.8.8"]
CLIENT_KEEPALIVE = 15
ENDPOINT_LOOKUP_URL = "https://ifconfig.me"

REQUIRED_TOOLS = ("wg", "iptables")


@dataclass(frozen=True)
class Paths:
    """
    Emplacements sur disque d'une installation.
    Tout est dérivé du répertoire racine (par défaut /etc/wireguard).
    """
    root: Path
    rules_file: Path

    @classmethod
    def from_root(cls, root: Path, rules_file: Optional[Path] = None) -> "Paths":
        return cls(root=Path(root), rules_file=Path(rules_file or DEFAULT_RULES_FILE))

    @classmethod
    def default(cls) -> "Paths":
        root = os.environ.get("WG_OVERLAY_DIR") or DEFAULT_WG_DIR
        rules = os.environ.get("WG_OVERLAY_RULES_FILE") or DEFAULT_RULES_FILE
        return cls.from_root(Path(root), Path(rules))

    @property
    def config_file(self) -> Path:
        return self.root / f"{WG_INTERFACE}.conf"

    @property
    def clients_dir(self) -> Path:
        return self.root / "clients"

    @property
    def private_key(self) -> Path:
        return self.root / "privatekey"

    @property
    def public_key(self) -> Path:
        return self.root / "publickey"

    @property
    def interface_file(self) -> Path:
        return self.root / ".interface"

    @property
    def port_file(self) -> Path:
        return self.root / ".port"

    @property
    def marker(self) -> Path:
        return self.root / ".installed_by_script"

    @property
    def pending_marker(self) -> Path:
        return self.root / ".install_pending"

    @property
    def lock_file(self) -> Path:
        # hors du répertoire : il doit survivre à la désinstallation
        return self.root.with_name(self.root.name + ".lock")

    def client_dir(self, name: str) -> Path:
        return self.clients_dir / name
