from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict

from avalanched.discovery.coordinator import BootstrapPeers

DEFAULT_HTTP_PORT = 9650
DEFAULT_STAKING_PORT = 9651


@dataclass(frozen=True)
class NodeRuntimeParams:
    network_id: int
    public_ip: str
    db_dir: str
    log_dir: str
    seed_file: str
    http_host: str = "0.0.0.0"
    http_port: int = DEFAULT_HTTP_PORT
    staking_port: int = DEFAULT_STAKING_PORT
    log_level: str = "info"


def render_node_config(params: NodeRuntimeParams, peers: BootstrapPeers) -> Dict[str, Any]:
    # Same inputs always render the same document; peers arrive sorted by node_id.
    return {
        "network-id": str(params.network_id),
        "public-ip": params.public_ip,
        "http-host": params.http_host,
        "http-port": int(params.http_port),
        "staking-port": int(params.staking_port),
        "db-dir": params.db_dir,
        "log-dir": params.log_dir,
        "log-level": params.log_level,
        "staking-signer-key-file": params.seed_file,
        "bootstrap-ips": ",".join(peers.ips),
        "bootstrap-ids": ",".join(peers.ids),
    }


def write_node_config(path: str, config: Dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(config, f, sort_keys=True, indent=2)
        f.write("\n")
    os.replace(tmp, path)
