# src/wg_overlay/wireguard.py
from __future__ import annotations
import ipaddress
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .config import CLIENT_DNS, CLIENT_KEEPALIVE
from .errors import CorruptConfig, ExternalToolError
from .ipam import overlay_network
from .models import KeyPair, PeerEntry

logger = logging.getLogger(__name__)


# ---------- Exécution de commandes ----------

def _which(tool: str) -> str:
    path = shutil.which(tool)
    if path is None:
        raise ExternalToolError([tool], stderr=f"'{tool}' not found in PATH")
    return path


def run_cmd(
    cmd: Sequence[str],
    check: bool = True,
    input: Optional[str] = None,
    timeout: int = 15,
) -> subprocess.CompletedProcess:
    logger.debug("run: %s", " ".join(cmd))
    try:
        return subprocess.run(
            list(cmd), input=input, capture_output=True, text=True,
            timeout=timeout, check=check,
        )
    except subprocess.CalledProcessError as e:
        raise ExternalToolError(cmd, e.returncode, e.stderr or "") from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(cmd, stderr=f"timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise ExternalToolError(cmd, stderr=str(e)) from e


# ---------- Génération de clés ----------

def generate_keypair() -> KeyPair:
    """
    Retourne une paire de clés en utilisant wg(8).
    'wg pubkey' lit la clé privée sur stdin.
    """
    _which("wg")
    priv = run_cmd(["wg", "genkey"]).stdout.strip()
    pub = run_cmd(["wg", "pubkey"], input=priv + "\n").stdout.strip()
    return KeyPair(private_key=priv, public_key=pub)


class WgKeyGenerator:
    def generate(self) -> KeyPair:
        return generate_keypair()


# ---------- Fichier wg0.conf ----------

_BEGIN_RE = re.compile(r"^# BEGIN (\S+)\s*$")
_END_RE = re.compile(r"^# END (\S+)\s*$")

PEER_PADDING = "\n"


def render_peer_block(peer: PeerEntry) -> str:
    return (
        f"# BEGIN {peer.name}\n"
        "[Peer]\n"
        f"PublicKey = {peer.public_key}\n"
        f"AllowedIPs = {peer.allowed_ips}\n"
        f"# END {peer.name}\n"
    )


@dataclass
class PeerBlock:
    peer: PeerEntry
    raw: str                     # texte exact de "# BEGIN" à "# END" inclus
    leading: str = PEER_PADDING  # au plus une ligne vide avant le bloc
    trailing: str = ""           # lignes vides en surplus après "# END"

    @classmethod
    def new(cls, peer: PeerEntry) -> "PeerBlock":
        return cls(peer=peer, raw=render_peer_block(peer))


@dataclass
class ConfigDocument:
    """
    wg0.conf découpé en : section [Interface] (texte libre, jamais modifié
    par le registre), blocs peers délimités, puis lignes vides finales.
    parse() et render() sont exactement inverses.
    """
    header: str
    blocks: List[PeerBlock] = field(default_factory=list)
    trailer: str = ""

    def render(self) -> str:
        return self.header + "".join(b.leading + b.raw + b.trailing for b in self.blocks) + self.trailer

    @property
    def peers(self) -> List[PeerEntry]:
        return [b.peer for b in self.blocks]

    def find(self, name: str) -> Optional[PeerBlock]:
        for b in self.blocks:
            if b.peer.name == name:
                return b
        return None

    def interface_values(self) -> Dict[str, str]:
        values: Dict[str, str] = {}
        in_interface = False
        for line in self.header.splitlines():
            s = line.strip()
            if not s or s.startswith("#"):
                continue
            if s.startswith("["):
                in_interface = s == "[Interface]"
                continue
            if in_interface and "=" in s:
                key, _, value = s.partition("=")
                values[key.strip()] = value.strip()
        return values

    def unmanaged_addresses(
        self, network: Optional[ipaddress.IPv4Network] = None
    ) -> Set[ipaddress.IPv4Address]:
        """Adresses des [Peer] ajoutés à la main, hors marqueurs."""
        net = network or overlay_network()
        found: Set[ipaddress.IPv4Address] = set()
        for line in self.header.splitlines():
            key, sep, value = line.strip().partition("=")
            if not sep or key.strip() != "AllowedIPs":
                continue
            for item in value.split(","):
                try:
                    iface = ipaddress.ip_interface(item.strip())
                except ValueError:
                    continue
                if iface.version == 4 and iface.ip in net:
                    found.add(iface.ip)
        return found

    @classmethod
    def parse(
        cls, text: str, network: Optional[ipaddress.IPv4Network] = None
    ) -> "ConfigDocument":
        net = network or overlay_network()
        lines = text.splitlines(keepends=True)

        first = next((i for i, l in enumerate(lines) if _BEGIN_RE.match(l.rstrip("\n"))), None)
        for i, l in enumerate(lines[:first] if first is not None else lines):
            if _END_RE.match(l.rstrip("\n")):
                raise CorruptConfig(f"line {i + 1}: '{l.strip()}' without matching BEGIN")
        if first is None:
            return cls(header=text)

        head = lines[:first]
        pending = ""
        while head and not head[-1].strip():
            pending = head.pop() + pending

        doc = cls(header="".join(head))
        seen: Set[str] = set()
        idx = first
        while idx < len(lines):
            line = lines[idx]
            if not line.strip():
                pending += line
                idx += 1
                continue

            m = _BEGIN_RE.match(line.rstrip("\n"))
            if m is None:
                raise CorruptConfig(
                    f"line {idx + 1}: unexpected content outside peer block: '{line.strip()}'"
                )
            name = m.group(1)
            end = _find_end(lines, idx, name)
            peer = _parse_peer_body(name, lines[idx + 1:end], idx + 1, net)
            if name in seen:
                raise CorruptConfig(f"line {idx + 1}: duplicate peer block '{name}'")
            seen.add(name)

            # une seule ligne de padding par bloc ; le surplus reste à l'en-tête
            # ou au bloc précédent
            extra, leading = _split_padding(pending)
            if doc.blocks:
                doc.blocks[-1].trailing += extra
            else:
                doc.header += extra
            doc.blocks.append(PeerBlock(peer=peer, raw="".join(lines[idx:end + 1]), leading=leading))
            pending = ""
            idx = end + 1

        doc.trailer = pending
        return doc


def _split_padding(pending: str) -> Tuple[str, str]:
    if not pending:
        return "", ""
    blanks = pending.splitlines(keepends=True)
    return "".join(blanks[:-1]), blanks[-1]


def _find_end(lines: List[str], begin: int, name: str) -> int:
    for j in range(begin + 1, len(lines)):
        stripped = lines[j].rstrip("\n")
        if _BEGIN_RE.match(stripped):
            raise CorruptConfig(f"line {j + 1}: BEGIN inside block '{name}' (missing '# END {name}')")
        m = _END_RE.match(stripped)
        if m:
            if m.group(1) != name:
                raise CorruptConfig(f"line {j + 1}: '# END {m.group(1)}' closes block '{name}'")
            return j
    raise CorruptConfig(f"line {begin + 1}: '# BEGIN {name}' without matching '# END {name}'")


def _parse_peer_body(
    name: str, body: List[str], begin_lineno: int, net: ipaddress.IPv4Network
) -> PeerEntry:
    values: Dict[str, str] = {}
    saw_section = False
    for line in body:
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        if s == "[Peer]":
            saw_section = True
            continue
        key, sep, value = s.partition("=")
        if not sep:
            raise CorruptConfig(f"peer '{name}' (line {begin_lineno}): unparsable line '{s}'")
        values[key.strip()] = value.strip()

    if not saw_section:
        raise CorruptConfig(f"peer '{name}' (line {begin_lineno}): missing [Peer] header")
    public_key = values.get("PublicKey")
    allowed = values.get("AllowedIPs")
    if not public_key or not allowed:
        raise CorruptConfig(f"peer '{name}' (line {begin_lineno}): PublicKey and AllowedIPs are required")

    try:
        iface = ipaddress.IPv4Interface(allowed)
    except ValueError as e:
        raise CorruptConfig(f"peer '{name}': invalid AllowedIPs '{allowed}'") from e
    if iface.network.prefixlen != 32 or iface.ip not in net:
        raise CorruptConfig(f"peer '{name}': AllowedIPs '{allowed}' is not a /32 inside {net}")

    return PeerEntry(name=name, public_key=public_key, address=iface.ip)


# ---------- Rendu des configs ----------

def render_interface_section(
    address: str,
    listen_port: int,
    private_key: str,
    pre_up: Sequence[str],
    post_up: Sequence[str],
    post_down: Sequence[str],
) -> str:
    lines = [
        "[Interface]",
        f"Address = {address}",
        f"ListenPort = {listen_port}",
        f"PrivateKey = {private_key}",
        "",
        "# Enable IP forwarding and set up firewall rules",
    ]
    if pre_up:
        lines.append(f"PreUp = {'; '.join(pre_up)}")
    lines.append(f"PostUp = {'; '.join(post_up)}")
    lines.append(f"PostDown = {'; '.join(post_down)}")
    return "\n".join(lines) + "\n"


def render_client_conf(
    peer: PeerEntry,
    private_key: str,
    server_public_key: str,
    endpoint: str,
    listen_port: int,
    dns: Optional[List[str]] = None,
) -> str:
    dns = CLIENT_DNS if dns is None else dns

    lines = [
        "[Interface]",
        f"PrivateKey = {private_key}",
        f"Address = {peer.allowed_ips}",
    ]
    if dns:
        lines.append(f"DNS = {', '.join(dns)}")

    lines += [
        "",
        "[Peer]",
        f"PublicKey = {server_public_key}",
        f"Endpoint = {endpoint}:{listen_port}",
        "AllowedIPs = 0.0.0.0/0",
        # keepalive court : clients mobiles derrière NAT
        f"PersistentKeepalive = {CLIENT_KEEPALIVE}",
    ]
    return "\n".join(lines) + "\n"
