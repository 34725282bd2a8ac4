"""HTTP client for a running receita-db server.

Requires the 'client' extra: pip install receita-db[client]
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

_TIMEOUT = 30


def _get_httpx():
    """Lazy import httpx, raising a clear error if not installed."""
    try:
        import httpx
        return httpx
    except ImportError:
        raise ImportError(
            "httpx is required for ReceitaClient. "
            "Install it with: pip install receita-db[client]"
        )


class ReceitaClient:
    """Client for the receita-db HTTP API."""

    def __init__(self, server_url: str = "http://localhost:8000"):
        self.server_url = server_url.rstrip("/")
        self._httpx = _get_httpx()

    def health(self) -> dict:
        """Check server health."""
        resp = self._httpx.get(f"{self.server_url}/", timeout=_TIMEOUT)
        resp.raise_for_status()
        return resp.json()

    def get_company(self, number: str) -> Optional[dict]:
        """Company document for a CNPJ, or None if the server does not know it."""
        resp = self._httpx.get(f"{self.server_url}/{number}", timeout=_TIMEOUT)
        if resp.status_code == 404:
            logger.debug(f"CNPJ {number} not found")
            return None
        resp.raise_for_status()
        return resp.json()

    def search(
        self,
        uf: Optional[list[str]] = None,
        cnae_fiscal: Optional[list[int]] = None,
        cnae: Optional[list[int]] = None,
        cnpf: Optional[list[str]] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """One page of search results: ``{"data": [...], "cursor": ...}``."""
        params: dict = {}
        if uf:
            params["uf"] = ",".join(uf)
        if cnae_fiscal:
            params["cnae_fiscal"] = ",".join(str(c) for c in cnae_fiscal)
        if cnae:
            params["cnae"] = ",".join(str(c) for c in cnae)
        if cnpf:
            params["cnpf"] = ",".join(cnpf)
        if cursor:
            params["cursor"] = cursor
        if limit is not None:
            params["limit"] = limit
        resp = self._httpx.get(f"{self.server_url}/search", params=params, timeout=_TIMEOUT)
        resp.raise_for_status()
        return resp.json()

    def updated(self) -> str:
        """Date of the last import loaded on the server."""
        resp = self._httpx.get(f"{self.server_url}/updated", timeout=_TIMEOUT)
        resp.raise_for_status()
        return resp.json()["updated_at"]
