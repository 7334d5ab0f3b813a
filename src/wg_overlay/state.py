# src/wg_overlay/state.py
from __future__ import annotations
import contextlib
import fcntl
import logging
import os
from pathlib import Path
from typing import Iterator, Optional

from .config import Paths
from .errors import CorruptConfig, NotInstalled

logger = logging.getLogger(__name__)


# ---------- Écriture atomique ----------

def write_atomic(path: Path, content: str, mode: int = 0o600) -> None:
    """
    Écrit dans un fichier temporaire voisin puis renomme :
    soit l'ancien contenu, soit le nouveau, jamais un mélange.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    tmp.chmod(mode)
    os.replace(tmp, path)


# ---------- Valeurs scalaires (.interface, .port) ----------

def _read_scalar(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    value = path.read_text(encoding="utf-8").strip()
    return value or None


def save_interface(paths: Paths, interface: str) -> None:
    write_atomic(paths.interface_file, interface + "\n", mode=0o644)


def save_port(paths: Paths, port: int) -> None:
    write_atomic(paths.port_file, f"{port}\n", mode=0o644)


def load_interface(paths: Paths) -> str:
    value = _read_scalar(paths.interface_file)
    if value is None:
        raise NotInstalled(
            f"Unable to determine outbound interface ({paths.interface_file} missing). Run install first."
        )
    return value


def load_port(paths: Paths) -> int:
    value = _read_scalar(paths.port_file)
    if value is None:
        raise NotInstalled(f"Listen port unknown ({paths.port_file} missing). Run install first.")
    try:
        return int(value)
    except ValueError as e:
        raise CorruptConfig(f"{paths.port_file}: invalid port '{value}'") from e


# ---------- Marqueur d'installation ----------

def is_installed(paths: Paths) -> bool:
    return paths.marker.exists()


def is_pending(paths: Paths) -> bool:
    return paths.pending_marker.exists()


def mark_pending(paths: Paths) -> None:
    paths.root.mkdir(parents=True, exist_ok=True)
    paths.pending_marker.touch()


def mark_installed(paths: Paths) -> None:
    paths.marker.touch()
    paths.pending_marker.unlink(missing_ok=True)
    logger.info("installation marker written: %s", paths.marker)


def clear_marker(paths: Paths) -> None:
    paths.marker.unlink(missing_ok=True)
    logger.info("installation marker removed: %s", paths.marker)


# ---------- Verrou exclusif ----------

@contextlib.contextmanager
def locked(paths: Paths) -> Iterator[None]:
    """
    Verrou consultatif (flock) autour du répertoire de configuration.
    Relâché sur toutes les sorties, y compris en cas d'exception.
    """
    lock_path = paths.lock_file
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a") as fh:
        logger.debug("acquiring lock %s", lock_path)
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            logger.debug("released lock %s", lock_path)
