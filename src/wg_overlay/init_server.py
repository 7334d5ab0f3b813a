# src/wg_overlay/init_server.py

from __future__ import annotations
import ipaddress
import logging
import re
from typing import Optional

from .config import OVERLAY_NETWORK, SERVER_ADDRESS, Paths
from .errors import InputValidationError, NotInstalled, PreconditionFailed
from .firewall import FirewallRuleSet
from .guard import InstallApproval
from .models import KeyPair, ServerConfig
from .state import (
    load_interface,
    load_port,
    mark_installed,
    mark_pending,
    save_interface,
    save_port,
    write_atomic,
)
from .wireguard import ConfigDocument, render_interface_section

logger = logging.getLogger(__name__)

# IFNAMSIZ - 1 caractères, sans espace ni '/'
_IFACE_RE = re.compile(r"[A-Za-z0-9_.@:-]{1,15}")


def validate_port(port) -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise InputValidationError(f"Invalid listen port '{port}': not a number")
    if not 1 <= value <= 65535:
        raise InputValidationError(f"Invalid listen port {value}: must be between 1 and 65535")
    return value


def validate_interface(name: str) -> str:
    if not name or not _IFACE_RE.fullmatch(name):
        raise InputValidationError(f"Invalid outbound interface name '{name}'")
    return name


class ServerConfigStore:
    """
    Propriétaire de wg0.conf et des valeurs durables (.port, .interface, clés).
    """

    def __init__(self, paths: Paths, subnet: str = OVERLAY_NETWORK):
        self.paths = paths
        self.network = ipaddress.IPv4Network(subnet)

    def exists(self) -> bool:
        return self.paths.config_file.exists()

    def create(
        self,
        outbound_interface: str,
        listen_port: int,
        keypair: KeyPair,
        approval: Optional[InstallApproval],
    ) -> ServerConfig:
        p = self.paths
        if not isinstance(approval, InstallApproval) or approval.root != str(p.root):
            raise PreconditionFailed("Host state has not been approved by the installation guard")

        outbound_interface = validate_interface(outbound_interface)
        listen_port = validate_port(listen_port)

        mark_pending(p)
        p.root.chmod(0o700)
        p.clients_dir.mkdir(mode=0o700, exist_ok=True)
        p.clients_dir.chmod(0o700)

        write_atomic(p.private_key, keypair.private_key + "\n")
        write_atomic(p.public_key, keypair.public_key + "\n")

        rules = FirewallRuleSet(outbound_interface, listen_port, subnet=str(self.network))
        header = render_interface_section(
            address=SERVER_ADDRESS,
            listen_port=listen_port,
            private_key=keypair.private_key,
            pre_up=rules.pre_up_commands(),
            post_up=rules.post_up_commands(),
            post_down=rules.post_down_commands(),
        )

        if self.exists():
            # réinstallation par nos soins : on garde les peers existants
            doc = self.read_document()
            logger.info("existing %s kept %d peer(s)", p.config_file, len(doc.blocks))
            doc.header = header
        else:
            doc = ConfigDocument(header=header)
        self.write_document(doc)

        save_port(p, listen_port)
        save_interface(p, outbound_interface)
        mark_installed(p)

        logger.info("server config created: %s (port %d, out %s)", p.config_file, listen_port, outbound_interface)
        return self.load()

    # --- lecture / écriture du document ---

    def read_document(self) -> ConfigDocument:
        path = self.paths.config_file
        if not path.exists():
            raise NotInstalled(f"Server configuration {path} not found. Run install first.")
        return ConfigDocument.parse(path.read_text(encoding="utf-8"), self.network)

    def write_document(self, doc: ConfigDocument) -> None:
        write_atomic(self.paths.config_file, doc.render())

    # --- valeurs durables ---

    def load_outbound_interface(self) -> str:
        return load_interface(self.paths)

    def load_port(self) -> int:
        return load_port(self.paths)

    def load_keypair(self) -> KeyPair:
        p = self.paths
        if not (p.private_key.exists() and p.public_key.exists()):
            raise NotInstalled(f"Server keys not found in {p.root}. Run install first.")
        return KeyPair(
            private_key=p.private_key.read_text(encoding="utf-8").strip(),
            public_key=p.public_key.read_text(encoding="utf-8").strip(),
        )

    def rule_set(self) -> FirewallRuleSet:
        return FirewallRuleSet(self.load_outbound_interface(), self.load_port(), subnet=str(self.network))

    def load(self) -> ServerConfig:
        doc = self.read_document()
        keys = self.load_keypair()
        return ServerConfig(
            address=doc.interface_values().get("Address", SERVER_ADDRESS),
            listen_port=self.load_port(),
            private_key=keys.private_key,
            public_key=keys.public_key,
            outbound_interface=self.load_outbound_interface(),
            peers=doc.peers,
        )
