"""Registry client: npm-style search and per-package metadata fetch.

Search failures are fatal for the call. A package whose metadata cannot
be fetched or fails ETP validation is logged and skipped, so one broken
package never blanks a whole listing.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import TYPE_CHECKING, Any

import structlog

from etools.core.errors import NotFoundError, TransportError, ValidationError

from . import metadata as etp
from .models import MarketplacePlugin, PluginPage

if TYPE_CHECKING:
    from etools.core.config import Config

logger = structlog.get_logger(__name__)

USER_AGENT = "etools-marketplace/1.0.0"
MAX_RESPONSE_BYTES = 8 * 1024 * 1024
# one page of exact-name search results is enough to find a single plugin
LOOKUP_PAGE_SIZE = 20


def _latest_tag(doc: dict) -> str | None:
    tags = doc.get("dist-tags")
    latest = tags.get("latest") if isinstance(tags, dict) else None
    return latest if isinstance(latest, str) else None


class RegistryClient:
    """Search the registry and turn hits into validated marketplace records."""

    def __init__(self, config: Config):
        self.config = config

    # ── HTTP ────────────────────────────────────────────────────────

    def _get_json(self, url: str) -> Any:
        req = urllib.request.Request(
            url, headers={"User-Agent": USER_AGENT, "Accept": "application/json"}
        )
        try:
            with urllib.request.urlopen(req, timeout=self.config.http_timeout) as resp:
                raw = resp.read(MAX_RESPONSE_BYTES)
        except urllib.error.HTTPError as e:
            raise TransportError(f"registry returned HTTP {e.code} {e.reason}", e.code) from e
        except urllib.error.URLError as e:
            raise TransportError(f"registry unreachable: {e.reason}") from e
        except (TimeoutError, OSError) as e:
            raise TransportError(f"registry request failed: {e}") from e
        try:
            return json.loads(raw.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as e:
            raise TransportError(f"failed to parse registry response: {e}") from e

    def _search(self, text: str, page: int, page_size: int) -> tuple[list[dict], int, int]:
        offset = max(page - 1, 0) * page_size
        query = urllib.parse.urlencode({"text": text, "size": page_size, "from": offset})
        url = f"{self.config.search_url}?{query}"
        logger.debug("registry search", url=url)
        data = self._get_json(url)
        if not isinstance(data, dict) or not isinstance(data.get("objects"), list):
            raise TransportError("malformed search response: missing 'objects'")
        total = data.get("total", 0)
        if not isinstance(total, int):
            raise TransportError("malformed search response: 'total' is not a number")
        return data["objects"], total, offset

    def fetch_package(self, package: str) -> dict:
        """Fetch the full registry document (all versions) for *package*."""
        quoted = urllib.parse.quote(package, safe="@")
        data = self._get_json(f"{self.config.registry_url.rstrip('/')}/{quoted}")
        if not isinstance(data, dict):
            raise TransportError(f"malformed package document for {package}")
        return data

    def latest_version(self, package: str) -> str:
        latest = _latest_tag(self.fetch_package(package))
        if not isinstance(latest, str):
            raise NotFoundError(f"no published version for {package}")
        return latest

    # ── Conversion ──────────────────────────────────────────────────

    def _convert(self, hit: Any, category: str | None) -> MarketplacePlugin | None:
        package = hit.get("package") if isinstance(hit, dict) else None
        if not isinstance(package, dict) or not isinstance(package.get("name"), str):
            logger.warning("skipping malformed search hit")
            return None
        name = package["name"]

        try:
            doc = self.fetch_package(name)
        except TransportError as e:
            logger.warning("skipping package: metadata fetch failed", package=name, error=str(e))
            return None

        latest = _latest_tag(doc) or package.get("version")
        versions = doc.get("versions")
        version_json = (
            versions.get(latest) if isinstance(versions, dict) and isinstance(latest, str) else None
        )
        if not isinstance(version_json, dict):
            logger.warning("skipping package: missing version data", package=name, version=latest)
            return None

        try:
            meta = etp.parse(version_json, self.config.namespace)
        except ValidationError as e:
            logger.warning("skipping package: invalid ETP metadata", package=name, error=str(e))
            return None

        if category and category != "all" and meta.category.value != category.lower():
            return None

        keywords = package.get("keywords")
        repository = version_json.get("repository")
        if isinstance(repository, dict):
            repository = repository.get("url")
        logger.debug("loaded registry plugin", plugin_id=meta.id, package=name)
        return MarketplacePlugin(
            id=meta.id,
            name=meta.display_name,
            version=latest,
            description=meta.description or package.get("description") or "",
            author=etp.author_name(version_json.get("author"))
            or etp.author_name(package.get("author"))
            or "Unknown",
            category=meta.category.value,
            permissions=meta.permissions,
            triggers=[t.keyword for t in meta.triggers],
            icon=meta.icon,
            homepage=meta.homepage,
            repository=repository if isinstance(repository, str) else None,
            screenshots=meta.screenshots,
            tags=[k for k in keywords if isinstance(k, str)] if isinstance(keywords, list) else [],
            package_name=name,
            latest_version=latest,
        )

    def _page(self, text: str, category: str | None, page: int, page_size: int) -> PluginPage:
        hits, total, offset = self._search(text, page, page_size)
        plugins = [p for p in (self._convert(h, category) for h in hits) if p is not None]
        return PluginPage(
            plugins=plugins,
            total=total,
            page=page,
            page_size=page_size,
            has_more=(offset + len(hits)) < total,
        )

    # ── Public API ──────────────────────────────────────────────────

    def list(self, category: str | None = None, page: int = 1, page_size: int = 20) -> PluginPage:
        return self._page(f"keywords:{self.config.discovery_keyword}", category, page, page_size)

    def search(
        self, query: str, category: str | None = None, page: int = 1, page_size: int = 20
    ) -> PluginPage:
        text = f"{query} keywords:{self.config.discovery_keyword}".strip()
        return self._page(text, category, page, page_size)

    def get_plugin(self, plugin_id: str) -> MarketplacePlugin:
        result = self.search(plugin_id, page=1, page_size=LOOKUP_PAGE_SIZE)
        for plugin in result.plugins:
            if plugin.id == plugin_id or plugin.package_name == plugin_id:
                return plugin
        raise NotFoundError(f"plugin not found in registry: {plugin_id}")
