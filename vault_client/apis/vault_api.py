from __future__ import annotations

from typing import Any, Sequence

from vault_client.http import HttpClient

DEFAULT_SOURCE = "browser-extension"


class VaultApi:
    def __init__(self, http_client: HttpClient):
        self._http_client = http_client

    def search(
        self,
        query: str,
        kind: str | None = None,
        category: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        if not query.strip():
            raise ValueError("Search query is required")

        payload: dict[str, Any] = {"query": query}
        if kind:
            payload["kind"] = kind
        if category:
            payload["category"] = category
        if limit is not None:
            payload["limit"] = limit

        result = self._http_client.post_json("/api/vault/search", payload)
        if not isinstance(result, dict):
            return {"results": [], "count": 0, "query": query}
        results = result.get("results") or []
        return {
            "results": results,
            "count": result.get("count", len(results)),
            "query": result.get("query", query),
        }

    def create_entry(
        self,
        kind: str,
        body: str,
        title: str | None = None,
        tags: Sequence[str] | None = None,
        source: str | None = None,
        identity_key: str | None = None,
        folder: str | None = None,
    ) -> dict[str, Any]:
        if not kind.strip():
            raise ValueError("Entry kind is required")
        if not body.strip():
            raise ValueError("Entry body is required")

        payload: dict[str, Any] = {
            "kind": kind,
            "body": body,
            "source": source or DEFAULT_SOURCE,
        }
        if title:
            payload["title"] = title
        if tags:
            payload["tags"] = list(tags)
        if identity_key:
            payload["identity_key"] = identity_key
        if folder:
            payload["folder"] = folder

        return self._http_client.post_json("/api/vault/entries", payload)

    def ingest_url(
        self,
        url: str,
        kind: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        if not url.strip():
            raise ValueError("URL to ingest is required")

        payload: dict[str, Any] = {"url": url}
        if kind:
            payload["kind"] = kind
        if tags:
            payload["tags"] = list(tags)
        return self._http_client.post_json("/api/vault/ingest", payload)

    def get_status(self) -> dict[str, Any]:
        return self._http_client.get_json("/api/vault/status")

    def probe(self) -> bool:
        return self._http_client.probe()
