# src/wg_overlay/guard.py
from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from .config import Paths
from .errors import FirewallConflict, ForeignInstallation
from .firewall import FirewallBackend, foreign_live_rules
from .state import is_installed, is_pending

logger = logging.getLogger(__name__)

IGNORE_FIREWALL_ENV = "WG_IGNORE_IPTABLES_CHECK"


class GuardStatus(enum.Enum):
    CLEAN = "clean"
    OWNED_INSTALL = "owned"
    FOREIGN_CONFLICT = "foreign"


@dataclass(frozen=True)
class InstallApproval:
    """Jeton remis par approve(), exigé par ServerConfigStore.create()."""
    status: GuardStatus
    root: str


class InstallationGuard:
    def __init__(self, paths: Paths, backend: Optional[FirewallBackend] = None):
        self.paths = paths
        self.backend = backend
        self._firewall_override = False

    def check(self) -> GuardStatus:
        p = self.paths
        if not (p.config_file.exists() or p.private_key.exists()):
            return GuardStatus.CLEAN
        # .install_pending : installation de notre fait interrompue avant le marqueur
        if is_installed(p) or is_pending(p):
            return GuardStatus.OWNED_INSTALL
        return GuardStatus.FOREIGN_CONFLICT

    # --- règles iptables étrangères ---

    @property
    def firewall_override(self) -> bool:
        return self._firewall_override or os.environ.get(IGNORE_FIREWALL_ENV) == "1"

    def confirm_firewall_override(self) -> None:
        """Mémorisé pour la session uniquement, jamais persisté."""
        logger.warning("operator chose to ignore pre-existing iptables rules")
        self._firewall_override = True

    def foreign_rules(self) -> List[str]:
        if self.backend is None:
            return []
        return foreign_live_rules(self.backend)

    def approve(self) -> InstallApproval:
        status = self.check()
        if status is GuardStatus.FOREIGN_CONFLICT:
            raise ForeignInstallation(
                f"WireGuard appears to be already configured in {self.paths.root} "
                f"({self.paths.config_file.name} or privatekey present) but was not "
                "installed by this tool. Remove the existing configuration first."
            )

        if not is_installed(self.paths) and not self.firewall_override:
            rules = self.foreign_rules()
            if rules:
                raise FirewallConflict(rules)

        logger.info("install approved (%s)", status.value)
        return InstallApproval(status=status, root=str(self.paths.root))
