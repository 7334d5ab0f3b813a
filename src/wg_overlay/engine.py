# src/wg_overlay/engine.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .clients import read_client_conf, remove_client_bundle, write_client_bundle
from .config import DEFAULT_PORT, Paths
from .errors import DuplicateName, InputValidationError
from .firewall import (
    FirewallBackend,
    IptablesBackend,
    read_persisted,
    reload_live_from_persisted,
    sync_persisted_file,
)
from .guard import GuardStatus, InstallationGuard
from .init_server import ServerConfigStore, validate_interface, validate_port
from .models import PeerEntry, ServerConfig
from .peers import PeerRegistry, validate_name
from .services import ServiceController, SystemdService, resolve_public_ip
from .state import locked
from .uninstall import UninstallCoordinator, UninstallReport
from .wireguard import WgKeyGenerator, render_client_conf

logger = logging.getLogger(__name__)


@dataclass
class AddedClient:
    peer: PeerEntry
    conf: str
    conf_path: Path


class OverlayEngine:
    """
    Point d'entrée des opérations : chaque mutation s'exécute sous le verrou
    exclusif du répertoire de configuration.
    """

    def __init__(
        self,
        paths: Optional[Paths] = None,
        backend: Optional[FirewallBackend] = None,
        keygen=None,
        service: Optional[ServiceController] = None,
        resolver: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.paths = paths or Paths.default()
        self.backend = backend or IptablesBackend()
        self.keygen = keygen or WgKeyGenerator()
        self.service = service or SystemdService()
        self.resolver = resolver or resolve_public_ip

        self.store = ServerConfigStore(self.paths)
        self.registry = PeerRegistry(self.store)
        self.guard = InstallationGuard(self.paths, self.backend)

    # ---------------------------------------------------
    # install
    # ---------------------------------------------------

    def install(
        self,
        outbound_interface: str,
        listen_port: int = DEFAULT_PORT,
        reload_firewall_confirmed: bool = False,
    ) -> ServerConfig:
        outbound_interface = validate_interface(outbound_interface)
        listen_port = validate_port(listen_port)

        with locked(self.paths):
            approval = self.guard.approve()

            if approval.status is GuardStatus.OWNED_INSTALL and self.paths.private_key.exists():
                keypair = self.store.load_keypair()
                logger.info("reusing existing server keys")
            else:
                keypair = self.keygen.generate()

            config = self.store.create(outbound_interface, listen_port, keypair, approval)
            rules = self.store.rule_set()

            self.service.enable()
            self.service.restart()

            sync_persisted_file(self.paths.rules_file, rules.filter_rules())
            if reload_firewall_confirmed:
                text = read_persisted(self.paths.rules_file)
                if text is not None:
                    reload_live_from_persisted(self.backend, text, confirm=True)

        return config

    # ---------------------------------------------------
    # clients
    # ---------------------------------------------------

    def suggest_endpoint(self) -> Optional[str]:
        return self.resolver()

    def add_client(self, name: str, endpoint: Optional[str] = None) -> AddedClient:
        validate_name(name)

        with locked(self.paths):
            port = self.store.load_port()
            self.store.load_outbound_interface()
            server_keys = self.store.load_keypair()

            if self.paths.client_dir(name).exists():
                raise DuplicateName(f"Client '{name}' already exists ({self.paths.client_dir(name)})")

            endpoint = (endpoint or self.suggest_endpoint() or "").strip()
            if not endpoint or any(c.isspace() for c in endpoint):
                raise InputValidationError("No usable server endpoint provided")

            keypair = self.keygen.generate()
            peer = self.registry.add(name, keypair.public_key)
            conf = render_client_conf(peer, keypair.private_key, server_keys.public_key, endpoint, port)

            try:
                path = write_client_bundle(self.paths, name, keypair, conf)
            except OSError:
                logger.error("writing client bundle for %s failed, rolling back", name)
                self.registry.remove(name)
                remove_client_bundle(self.paths, name)
                raise

            self.service.restart()

        return AddedClient(peer=peer, conf=conf, conf_path=path)

    def list_clients(self) -> List[PeerEntry]:
        return self.registry.list()

    def show_client(self, name: str) -> str:
        validate_name(name)
        self.registry.get(name)
        return read_client_conf(self.paths, name)

    def delete_client(self, name: str) -> bool:
        """False si le client n'existait pas (rien n'est modifié)."""
        validate_name(name)
        with locked(self.paths):
            self.store.load_outbound_interface()

            peer = self.registry.remove(name)
            dir_removed = remove_client_bundle(self.paths, name)
            if peer is None and not dir_removed:
                return False

            if peer is not None:
                self.service.restart()
        return True

    # ---------------------------------------------------
    # uninstall
    # ---------------------------------------------------

    def uninstall(self) -> UninstallReport:
        with locked(self.paths):
            return UninstallCoordinator(self.paths, self.backend, self.service).run()
