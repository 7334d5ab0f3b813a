# src/wg_overlay/ipam.py
from __future__ import annotations
import ipaddress
import logging
from typing import Iterable, Optional, Set

from .config import FIRST_HOST_ID, LAST_HOST_ID, OVERLAY_NETWORK
from .errors import AddressSpaceExhausted

logger = logging.getLogger(__name__)


def overlay_network(cidr: Optional[str] = None) -> ipaddress.IPv4Network:
    return ipaddress.IPv4Network(cidr or OVERLAY_NETWORK)


def candidate_addresses(network: Optional[ipaddress.IPv4Network] = None):
    net = network or overlay_network()
    base = int(net.network_address)
    for host_id in range(FIRST_HOST_ID, LAST_HOST_ID + 1):
        yield ipaddress.IPv4Address(base + host_id)


def allocate_address(
    used: Iterable[ipaddress.IPv4Address],
    network: Optional[ipaddress.IPv4Network] = None,
) -> ipaddress.IPv4Address:
    """
    Retourne la plus petite adresse libre de la plage .2 - .254.
    Fonction pure : aucune réservation, aucun état.
    """
    used_set: Set[ipaddress.IPv4Address] = set(used)

    for host in candidate_addresses(network):
        if host not in used_set:
            return host

    logger.error("overlay address space exhausted (%d addresses in use)", len(used_set))
    raise AddressSpaceExhausted(
        f"No free address left in {network or overlay_network()} "
        f"(hosts .{FIRST_HOST_ID}-.{LAST_HOST_ID} all assigned)"
    )
