# src/wg_overlay/clients.py
from __future__ import annotations

import io
import logging
import shutil
from pathlib import Path

import qrcode

from .config import Paths
from .errors import NotFound
from .models import KeyPair
from .state import write_atomic

logger = logging.getLogger(__name__)


# ---------- Répertoire client : clients/<nom>/{privatekey,publickey,<nom>.conf} ----------

def conf_path(paths: Paths, name: str) -> Path:
    return paths.client_dir(name) / f"{name}.conf"


def write_client_bundle(paths: Paths, name: str, keypair: KeyPair, conf: str) -> Path:
    paths.clients_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    d = paths.client_dir(name)
    d.mkdir(mode=0o700, exist_ok=True)

    write_atomic(d / "privatekey", keypair.private_key + "\n")
    write_atomic(d / "publickey", keypair.public_key + "\n")
    path = conf_path(paths, name)
    write_atomic(path, conf)

    logger.info("client bundle written: %s", d)
    return path


def read_client_conf(paths: Paths, name: str) -> str:
    path = conf_path(paths, name)
    if not path.exists():
        raise NotFound(f"Client configuration {path} not found")
    return path.read_text(encoding="utf-8")


def remove_client_bundle(paths: Paths, name: str) -> bool:
    d = paths.client_dir(name)
    if not d.exists():
        return False
    shutil.rmtree(d)
    logger.info("client bundle removed: %s", d)
    return True


# ---------- QR code ----------

def render_qr(conf: str) -> str:
    """QR code en caractères, à scanner directement depuis le terminal."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(conf)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()


def save_qr_png(conf: str, path: Path) -> Path:
    img = qrcode.make(conf)
    path.parent.mkdir(parents=True, exist_ok=True)
    img.save(str(path))
    return path
