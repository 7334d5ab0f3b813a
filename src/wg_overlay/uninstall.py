# src/wg_overlay/uninstall.py
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from typing import List, Optional

from .config import Paths
from .errors import ExternalToolError, NotInstalled
from .firewall import FirewallBackend, remove_tagged_live, strip_persisted_file
from .services import ServiceController
from .state import clear_marker, is_installed

logger = logging.getLogger(__name__)


@dataclass
class UninstallReport:
    live_rules_removed: int = 0
    persisted_file_changed: bool = False
    removed_paths: List[str] = field(default_factory=list)
    root_removed: bool = False
    warnings: List[str] = field(default_factory=list)


class UninstallCoordinator:
    """
    Défait tout ce que l'installation a créé, et seulement ça.
    Le marqueur est effacé en dernier : une exécution interrompue peut être relancée.
    """

    def __init__(
        self,
        paths: Paths,
        backend: FirewallBackend,
        service: Optional[ServiceController] = None,
    ):
        self.paths = paths
        self.backend = backend
        self.service = service

    def owned_paths(self):
        p = self.paths
        files = [
            p.config_file,
            p.private_key,
            p.public_key,
            p.interface_file,
            p.port_file,
            p.pending_marker,
        ]
        # temporaires laissés par une écriture interrompue
        tmp = [f.with_name(f".{f.name}.tmp") for f in files]
        return files + tmp + [p.clients_dir]

    def run(self) -> UninstallReport:
        if not is_installed(self.paths):
            raise NotInstalled(
                f"WireGuard was not installed by this tool ({self.paths.marker} missing). Aborting uninstall."
            )

        report = UninstallReport()

        if self.service is not None:
            for action in (self.service.stop, self.service.disable):
                try:
                    action()
                except ExternalToolError as e:
                    # interface déjà arrêtée lors d'une relance
                    logger.warning("service %s failed: %s", action.__name__, e)
                    report.warnings.append(str(e))

        report.live_rules_removed = remove_tagged_live(self.backend)
        report.persisted_file_changed = strip_persisted_file(self.paths.rules_file)

        for path in self.owned_paths():
            if path.is_dir():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()
            else:
                continue
            report.removed_paths.append(str(path))

        clear_marker(self.paths)

        root = self.paths.root
        if root.exists() and not any(root.iterdir()):
            root.rmdir()
            report.root_removed = True
        elif root.exists():
            logger.warning("%s kept: it contains files not created by this tool", root)

        logger.info("uninstall complete (%d live rule(s) removed)", report.live_rules_removed)
        return report
