"""Client share links for the tunnel behind the public hostname.

Clients reach the backend through a CDN entry address, with the public
hostname as Host/SNI and the upgrade path as the WebSocket path.
"""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from typing import Any

from singleport.core.config import ShareLinkConfig


def build_vmess_payload(hostname: str, uuid: str, upgrade_path: str, config: ShareLinkConfig) -> dict[str, Any]:
    """Link fields in the order clients expect them."""
    return {
        "v": "2",
        "ps": config.link_name,
        "add": config.link_entry_host,
        "port": config.link_entry_port,
        "id": uuid,
        "aid": "0",
        "scy": "none",
        "net": "ws",
        "type": "none",
        "host": hostname,
        "path": f"{upgrade_path}?ed={config.link_early_data}",
        "tls": "tls",
        "sni": hostname,
        "alpn": "",
        "fp": "",
    }


def encode_vmess_link(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return "vmess://" + base64.b64encode(raw).decode("ascii")


def build_share_link(hostname: str, upgrade_path: str, config: ShareLinkConfig) -> str | None:
    """Share link for ``hostname``, or None when no user id is configured."""
    if not config.link_uuid:
        return None
    return encode_vmess_link(build_vmess_payload(hostname, config.link_uuid, upgrade_path, config))


async def write_share_link(link: str, path: str | Path) -> Path:
    path = Path(path)
    await asyncio.to_thread(path.write_text, link, encoding="utf-8")
    return path
