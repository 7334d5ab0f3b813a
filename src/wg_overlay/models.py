
# src/wg_overlay/models.py
from __future__ import annotations
import ipaddress
from dataclasses import dataclass, field
from typing import List, Tuple

from .config import OWNERSHIP_TAG


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    public_key: str


@dataclass(frozen=True)
class PeerEntry:
    name: str
    public_key: str
    address: ipaddress.IPv4Address   # ex 10.16.0.2 (toujours /32 dans le fichier)

    @property
    def allowed_ips(self) -> str:
        return f"{self.address}/32"


@dataclass
class ServerConfig:
    address: str                 # ex "10.16.0.1/24"
    listen_port: int             # ex 51820
    private_key: str
    public_key: str
    outbound_interface: str      # ex "eth0", utilisée pour le NAT
    peers: List[PeerEntry] = field(default_factory=list)

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Interface(self.address).network

    @property
    def ip(self) -> ipaddress.IPv4Address:
        return ipaddress.IPv4Interface(self.address).ip


@dataclass(frozen=True)
class FirewallRule:
    table: str                   # "filter" ou "nat"
    chain: str                   # ex "FORWARD"
    match: Tuple[str, ...]       # ex ("-i", "wg0", "-o", "eth0")
    action: str                  # ex "ACCEPT"
    tag: str = OWNERSHIP_TAG
    insert_first: bool = False   # -I <chain> 1 au lieu de -A

    def spec(self) -> List[str]:
        """Arguments après le nom de chaîne, commentaire de propriété inclus."""
        return [*self.match, "-m", "comment", "--comment", self.tag, "-j", self.action]

    def same_rule(self, other: "FirewallRule") -> bool:
        return (self.table, self.chain, self.match, self.action) == (
            other.table, other.chain, other.match, other.action
        )

    def save_line(self) -> str:
        """Format iptables-save (tel qu'il apparaît dans rules.v4)."""
        return " ".join(["-A", self.chain, *self.spec()])
