from __future__ import annotations

from typing import Dict, Optional

import requests

from avalanched.errors import MetadataUnavailable

IMDS_URL = "http://169.254.169.254"
TOKEN_TTL_S = 21600


class InstanceMetadataClient:
    """
    Read-only IMDSv2 client (token PUT, then GETs carrying the token).

    Instance tags are read through the metadata service, which requires
    "instance metadata tags" to be enabled on the launch template.
    """

    def __init__(self, base_url: str = IMDS_URL, *, timeout_s: float = 2.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._token: Optional[str] = None

    def _fetch_token(self) -> str:
        try:
            r = requests.put(
                f"{self.base_url}/latest/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": str(TOKEN_TTL_S)},
                timeout=self.timeout_s,
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise MetadataUnavailable(f"IMDS token request failed: {e}") from e
        return r.text.strip()

    def _get(self, path: str, *, optional: bool = False) -> Optional[str]:
        if self._token is None:
            self._token = self._fetch_token()
        url = f"{self.base_url}/latest/{path.lstrip('/')}"
        try:
            r = requests.get(url, headers={"X-aws-ec2-metadata-token": self._token}, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise MetadataUnavailable(f"IMDS GET {path} failed: {e}") from e
        if r.status_code == 401:
            # Token expired; the next call fetches a fresh one.
            self._token = None
            raise MetadataUnavailable(f"IMDS GET {path}: token rejected")
        if r.status_code == 404 and optional:
            return None
        if r.status_code != 200:
            raise MetadataUnavailable(f"IMDS GET {path}: HTTP {r.status_code}")
        return r.text.strip()

    def instance_id(self) -> str:
        return self._get("meta-data/instance-id") or ""

    def region(self) -> str:
        return self._get("meta-data/placement/region") or ""

    def public_ipv4(self) -> Optional[str]:
        return self._get("meta-data/public-ipv4", optional=True)

    def local_ipv4(self) -> Optional[str]:
        return self._get("meta-data/local-ipv4", optional=True)

    def tags(self) -> Dict[str, str]:
        listing = self._get("meta-data/tags/instance", optional=True)
        if not listing:
            return {}
        out: Dict[str, str] = {}
        for key in listing.splitlines():
            key = key.strip()
            if key:
                out[key] = self._get(f"meta-data/tags/instance/{key}") or ""
        return out
