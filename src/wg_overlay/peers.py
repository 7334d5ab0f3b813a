# src/wg_overlay/peers.py
from __future__ import annotations

import logging
import re
from typing import List, Optional

from .errors import DuplicateName, InvalidName, NotFound
from .init_server import ServerConfigStore
from .ipam import allocate_address
from .models import PeerEntry
from .wireguard import PeerBlock

logger = logging.getLogger(__name__)

NAME_RE = re.compile(r"[A-Za-z0-9_-]+")


def validate_name(name: str) -> str:
    if not name or not NAME_RE.fullmatch(name):
        raise InvalidName(
            f"Invalid client name '{name}': use only letters, numbers, underscores or hyphens"
        )
    return name


class PeerRegistry:
    """
    Blocs [Peer] de wg0.conf, délimités par '# BEGIN <nom>' / '# END <nom>'.
    Ne modifie jamais la section [Interface]. Ne recharge pas l'interface.
    """

    def __init__(self, store: ServerConfigStore):
        self.store = store

    def list(self) -> List[PeerEntry]:
        return self.store.read_document().peers

    def get(self, name: str) -> PeerEntry:
        block = self.store.read_document().find(name)
        if block is None:
            raise NotFound(f"Client '{name}' does not exist")
        return block.peer

    def add(self, name: str, public_key: str) -> PeerEntry:
        validate_name(name)
        doc = self.store.read_document()
        if doc.find(name) is not None:
            raise DuplicateName(f"Client '{name}' already exists")

        used = {p.address for p in doc.peers} | doc.unmanaged_addresses(self.store.network)
        address = allocate_address(used, self.store.network)

        peer = PeerEntry(name=name, public_key=public_key, address=address)
        doc.blocks.append(PeerBlock.new(peer))
        self.store.write_document(doc)

        logger.info("peer %s added with address %s", name, address)
        return peer

    def remove(self, name: str) -> Optional[PeerEntry]:
        """
        Supprime le bloc et ses lignes de padding.
        Absent : aucun changement, retourne None.
        """
        doc = self.store.read_document()
        block = doc.find(name)
        if block is None:
            logger.warning("peer %s not found in %s, nothing removed", name, self.store.paths.config_file)
            return None

        doc.blocks.remove(block)
        self.store.write_document(doc)

        logger.info("peer %s removed (%s)", name, block.peer.address)
        return block.peer
