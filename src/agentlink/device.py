"""Stable device identity derived from the hardware address."""

from __future__ import annotations

import hashlib
import platform
import socket
import time
import uuid

from agentlink.logger import logger

DEVICE_ID_LENGTH = 16


def _mac_address() -> str | None:
    node = uuid.getnode()
    # getnode() falls back to a random number with the multicast bit set.
    if node == 0 or (node >> 40) & 0x01:
        return None
    return ":".join(f"{(node >> shift) & 0xFF:02x}" for shift in range(40, -8, -8))


def _hash(source: str) -> str:
    return hashlib.sha256(source.encode()).hexdigest()[:DEVICE_ID_LENGTH]


def get_device_id() -> str:
    """Hash of the MAC address, or of the hostname when no MAC is available."""
    mac = _mac_address()
    if mac:
        return _hash(mac)
    hostname = socket.gethostname().strip()
    if hostname:
        logger.debug("No hardware address, using hostname for device id")
        return _hash(hostname)
    fallback = f"{platform.system()}-{platform.machine()}-{int(time.time() * 1000)}"
    logger.warning("No hardware address or hostname, device id will not be stable")
    return _hash(fallback)


def default_device_name(prefix: str) -> str:
    host = socket.gethostname().split(".")[0] or "device"
    return f"{prefix}-{host}"
