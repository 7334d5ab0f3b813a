# src/wg_overlay/firewall.py
from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .config import OVERLAY_NETWORK, OWNERSHIP_TAG, WG_INTERFACE
from .errors import PreconditionFailed
from .models import FirewallRule
from .state import write_atomic
from .wireguard import _which, run_cmd

logger = logging.getLogger(__name__)


# -----------------------------
# Backend (table "live")
# -----------------------------

class FirewallBackend(Protocol):
    def check(self, rule: FirewallRule) -> bool: ...

    def add(self, rule: FirewallRule) -> None: ...

    def delete(self, rule: FirewallRule) -> None: ...

    def delete_spec(self, table: str, chain: str, spec: Sequence[str]) -> None: ...

    def list_rules(self, table: str) -> List[str]: ...

    def restore(self, text: str) -> None: ...


def _table_args(table: str) -> List[str]:
    return [] if table == "filter" else ["-t", table]


class IptablesBackend:
    """Accès à la table live via iptables(8)."""

    def _iptables(self, *args: str, check: bool = True):
        _which("iptables")
        return run_cmd(["iptables", *args], check=check)

    def check(self, rule: FirewallRule) -> bool:
        res = self._iptables(*_table_args(rule.table), "-C", rule.chain, *rule.spec(), check=False)
        return res.returncode == 0

    def add(self, rule: FirewallRule) -> None:
        if rule.insert_first:
            self._iptables(*_table_args(rule.table), "-I", rule.chain, "1", *rule.spec())
        else:
            self._iptables(*_table_args(rule.table), "-A", rule.chain, *rule.spec())

    def delete(self, rule: FirewallRule) -> None:
        self.delete_spec(rule.table, rule.chain, rule.spec())

    def delete_spec(self, table: str, chain: str, spec: Sequence[str]) -> None:
        self._iptables(*_table_args(table), "-D", chain, *spec)

    def list_rules(self, table: str) -> List[str]:
        return self._iptables(*_table_args(table), "-S").stdout.splitlines()

    def restore(self, text: str) -> None:
        _which("iptables-restore")
        run_cmd(["iptables-restore"], input=text)


# -----------------------------
# Jeu de règles
# -----------------------------

class FirewallRuleSet:
    """
    Règles nécessaires pour router l'overlay via l'interface de sortie.
    Toutes portent le tag de propriété.
    """

    def __init__(
        self,
        outbound_interface: str,
        listen_port: int,
        subnet: str = OVERLAY_NETWORK,
        wg_interface: str = WG_INTERFACE,
        tag: str = OWNERSHIP_TAG,
    ):
        self.outbound_interface = outbound_interface
        self.listen_port = listen_port
        self.subnet = subnet
        self.wg_interface = wg_interface
        self.tag = tag

    def activation_rules(self) -> List[FirewallRule]:
        out, wg, tag = self.outbound_interface, self.wg_interface, self.tag
        return [
            FirewallRule("nat", "POSTROUTING", ("-s", self.subnet, "-o", out), "MASQUERADE", tag),
            FirewallRule("filter", "INPUT", ("-i", wg), "ACCEPT", tag),
            FirewallRule("filter", "FORWARD", ("-i", out, "-o", wg), "ACCEPT", tag, insert_first=True),
            FirewallRule("filter", "FORWARD", ("-i", wg, "-o", out), "ACCEPT", tag, insert_first=True),
            FirewallRule(
                "filter", "INPUT",
                ("-p", "udp", "-m", "state", "--state", "NEW", "-m", "udp", "--dport", str(self.listen_port)),
                "ACCEPT", tag, insert_first=True,
            ),
        ]

    def revocation_rules(self) -> List[FirewallRule]:
        # mêmes spécifications : -D a besoin de la règle exacte
        return self.activation_rules()

    def filter_rules(self) -> List[FirewallRule]:
        return [r for r in self.activation_rules() if r.table == "filter"]

    # --- hooks wg-quick ---

    @staticmethod
    def _command(rule: FirewallRule, op: str) -> str:
        args = ["iptables", *_table_args(rule.table), op, rule.chain]
        if op == "-I":
            args.append("1")
        return shlex.join([*args, *rule.spec()])

    def pre_up_commands(self) -> List[str]:
        return ["sysctl -w net.ipv4.ip_forward=1"]

    def post_up_commands(self) -> List[str]:
        cmds = []
        for r in self.activation_rules():
            op = "-I" if r.insert_first else "-A"
            cmds.append(f"{self._command(r, '-C')} 2>/dev/null || {self._command(r, op)}")
        return cmds

    def post_down_commands(self) -> List[str]:
        return [f"{self._command(r, '-D')} 2>/dev/null || true" for r in self.revocation_rules()]


# -----------------------------
# Application live
# -----------------------------

def apply_live(backend: FirewallBackend, rules: Sequence[FirewallRule]) -> int:
    """N'insère une règle que si une règle équivalente est absente."""
    added = 0
    for rule in rules:
        if backend.check(rule):
            continue
        backend.add(rule)
        added += 1
    logger.info("firewall: %d rule(s) applied, %d already present", added, len(rules) - added)
    return added


def remove_live(backend: FirewallBackend, rules: Sequence[FirewallRule]) -> int:
    removed = 0
    for rule in rules:
        if not backend.check(rule):
            logger.debug("firewall: rule absent, skipped: %s", rule.save_line())
            continue
        backend.delete(rule)
        removed += 1
    return removed


def remove_tagged_live(backend: FirewallBackend, tag: str = OWNERSHIP_TAG) -> int:
    """
    Supprime toutes les règles live portant le tag, tables filter et nat.
    Les règles sans tag ne sont pas touchées.
    """
    removed = 0
    for table in ("filter", "nat"):
        for line in backend.list_rules(table):
            parts = shlex.split(line)
            if len(parts) < 2 or parts[0] != "-A" or tag not in parts:
                continue
            backend.delete_spec(table, parts[1], parts[2:])
            removed += 1
    logger.info("firewall: %d tagged live rule(s) removed", removed)
    return removed


def reload_live_from_persisted(backend: FirewallBackend, text: str, confirm: bool = False) -> None:
    """
    Remplace TOUTE la table live par le fichier persistant.
    Les règles présentes uniquement en live sont perdues, d'où la confirmation.
    """
    if not confirm:
        raise PreconditionFailed(
            "Reloading the persisted rule file replaces the entire live iptables table; "
            "explicit confirmation required"
        )
    logger.warning("firewall: replacing live rule table from persisted rules")
    backend.restore(text)


# -----------------------------
# Fichier persistant (rules.v4)
# -----------------------------

def merge_persisted(text: str, rules: Sequence[FirewallRule]) -> str:
    """
    Insère les règles de la table filter dans la section *filter,
    juste après les déclarations de chaînes. Idempotent.
    Sans section *filter, en ajoute une précédée d'un commentaire portant le
    tag : strip_persisted la retire entière si elle ne contient plus que nos règles.
    """
    existing = {l.strip() for l in text.splitlines()}
    new_lines: List[str] = []
    for rule in rules:
        if rule.table != "filter":
            continue
        line = rule.save_line()
        if line not in existing and line not in new_lines:
            new_lines.append(line)
    if not new_lines:
        return text

    lines = text.splitlines(keepends=True)
    start = next((i for i, l in enumerate(lines) if l.strip() == "*filter"), None)
    if start is None:
        prefix = text if not text or text.endswith("\n") else text + "\n"
        tag = next(r.tag for r in rules if r.table == "filter")
        return (
            prefix + f"# {tag}\n*filter\n" + "".join(l + "\n" for l in new_lines) + "COMMIT\n"
        )

    pos = start + 1
    while pos < len(lines) and lines[pos].startswith(":"):
        pos += 1
    return "".join(lines[:pos] + [l + "\n" for l in new_lines] + lines[pos:])


def _tagged(line: str, tag: str) -> bool:
    return tag in (t.strip("\"'") for t in line.split())


def strip_persisted(text: str, tag: str = OWNERSHIP_TAG) -> str:
    """
    Retire les lignes portant le tag (en tant que mot, pas en sous-chaîne).
    Une section créée par merge_persisted disparaît si elle ne contient plus
    que des règles taguées.
    """
    lines = text.splitlines(keepends=True)
    out: List[str] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith("#") and _tagged(line, tag) and i + 1 < len(lines) and lines[i + 1].startswith("*"):
            end = next((j for j in range(i + 2, len(lines)) if lines[j].strip() == "COMMIT"), None)
            if end is not None and all(_tagged(l, tag) for l in lines[i + 2:end]):
                i = end + 1
                continue
        if not _tagged(line, tag):
            out.append(line)
        i += 1
    return "".join(out)


def _rewrite(path: Path, new_text: str, old_text: str) -> bool:
    if new_text == old_text:
        return False
    write_atomic(path, new_text, mode=path.stat().st_mode & 0o777)
    return True


def sync_persisted_file(path: Path, rules: Sequence[FirewallRule]) -> bool:
    """Ne fait rien si le fichier n'existe pas (iptables-persistent absent)."""
    if not path.exists():
        logger.info("firewall: %s not found, persisted rules left alone", path)
        return False
    old = path.read_text(encoding="utf-8")
    changed = _rewrite(path, merge_persisted(old, rules), old)
    if changed:
        logger.info("firewall: managed rules merged into %s", path)
    return changed


def strip_persisted_file(path: Path, tag: str = OWNERSHIP_TAG) -> bool:
    if not path.exists():
        return False
    old = path.read_text(encoding="utf-8")
    changed = _rewrite(path, strip_persisted(old, tag), old)
    if changed:
        logger.info("firewall: managed rules removed from %s", path)
    return changed


def read_persisted(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def foreign_live_rules(backend: FirewallBackend, tag: str = OWNERSHIP_TAG) -> List[str]:
    """Règles (-A) sans tag. Les politiques (-P) et chaînes (-N) ne comptent pas."""
    found = []
    for table in ("filter", "nat"):
        for line in backend.list_rules(table):
            if line.startswith("-A ") and tag not in line.split():
                found.append(line if table == "filter" else f"-t {table} {line}")
    return found
