# src/wg_overlay/errors.py
from __future__ import annotations

from typing import Optional, Sequence


class EngineError(Exception):
    """Base de toutes les erreurs du moteur."""


# ---------- Préconditions (fatales, jamais corrigées automatiquement) ----------

class PreconditionFailed(EngineError):
    pass


class NotInstalled(PreconditionFailed):
    pass


class ForeignInstallation(PreconditionFailed):
    pass


class FirewallConflict(PreconditionFailed):
    """
    Règles iptables non gérées par nous détectées.
    Nécessite une confirmation explicite de l'opérateur.
    """

    def __init__(self, rules: Sequence[str]):
        self.rules = list(rules)
        super().__init__(
            f"{len(self.rules)} existing iptables rule(s) were not created by this tool"
        )


# ---------- Entrées ----------

class InputValidationError(EngineError, ValueError):
    pass


class InvalidName(InputValidationError):
    pass


class DuplicateName(InputValidationError):
    pass


# ---------- Ressources ----------

class ResourceExhaustionError(EngineError):
    pass


class AddressSpaceExhausted(ResourceExhaustionError):
    pass


class NotFound(EngineError, LookupError):
    pass


class CorruptConfig(EngineError):
    pass


# ---------- Outils externes ----------

class ExternalToolError(EngineError):
    def __init__(
        self,
        cmd: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        msg = f"Command failed: {' '.join(self.cmd)}"
        if returncode is not None:
            msg += f" (exit {returncode})"
        if self.stderr:
            msg += f": {self.stderr}"
        super().__init__(msg)
