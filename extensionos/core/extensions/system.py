"""
System Updater

Update bookkeeping across every kind of extension: the remote update
check, the core build record, project binding and system wide
update/tear down.
"""

import hashlib
import logging
import time
from typing import Any, Dict, List, Optional

from extensionos.core.config import ExtensionOSConfig, get_config
from extensionos.core.extensions.cache import SQLiteCache
from extensionos.core.extensions.catalog import REQUEST_PROJECT_DETAIL, MarketplaceClient
from extensionos.core.extensions.coordinator import ExtensionCoordinator
from extensionos.core.extensions.exceptions import RemoteCatalogError
from extensionos.core.extensions.flags import FlagStore
from extensionos.core.extensions.ledger import MigrationLedger
from extensionos.core.extensions.manifest import VersionFileReader
from extensionos.core.extensions.models import ExtensionKind, UpdateReport
from extensionos.store.parameters import (
    CORE_BUILD,
    CORE_HASH,
    CORE_MODIFIED,
    PROJECT_ID,
    PROJECT_NAME,
    PROJECT_OWNER,
    UPDATE_COUNT,
    UPDATE_RETRY,
    ParameterStore,
)

logger = logging.getLogger(__name__)

UPDATE_ORDER = (ExtensionKind.MODULE, ExtensionKind.PLUGIN, ExtensionKind.THEME)
NULL_HASH = hashlib.md5(b"NULL").hexdigest()


class SystemUpdater:
    """Coordinates modules, plugins and themes over one shared ledger"""

    def __init__(
        self,
        config: Optional[ExtensionOSConfig] = None,
        ledger: Optional[MigrationLedger] = None,
        parameters: Optional[ParameterStore] = None,
        coordinators: Optional[Dict[ExtensionKind, ExtensionCoordinator]] = None,
        catalog: Optional[MarketplaceClient] = None
    ):
        """
        Initialize updater

        Args:
            config: Configuration (defaults to get_config())
            ledger: Ledger shared by every coordinator
            parameters: System parameter store
            coordinators: Coordinator per kind, built from config when omitted
            catalog: Marketplace client
        """
        self.config = config or get_config()
        self.ledger = ledger or MigrationLedger(self.config.ledger_db)
        self.parameters = parameters or ParameterStore(self.ledger.db_path)

        if coordinators is None:
            reader = VersionFileReader()
            coordinators = {
                kind: ExtensionCoordinator(
                    kind,
                    config=self.config,
                    ledger=self.ledger,
                    reader=reader,
                    flag_store=FlagStore(ttl_days=self.config.flag_cache_ttl_days),
                    parameters=self.parameters,
                )
                for kind in UPDATE_ORDER
            }
        self.coordinators = coordinators

        if catalog is None:
            cache = SQLiteCache(self.ledger.db_path)
            removed = cache.cleanup_expired()
            if removed:
                logger.debug(f"Dropped {removed} expired catalog responses")
            catalog = MarketplaceClient(self.config, cache=cache, parameters=self.parameters)
        self.catalog = catalog

    def coordinator(self, kind: ExtensionKind) -> ExtensionCoordinator:
        return self.coordinators[ExtensionKind(kind)]

    # ------------------------------------------------------------------
    # Core build
    # ------------------------------------------------------------------

    def get_hash(self) -> str:
        return self.parameters.get(CORE_HASH) or NULL_HASH

    def set_build(self, build: str, hash: Optional[str] = None, modified: bool = False) -> None:
        """Record the core build, and its hash when known"""
        self.parameters.set(CORE_BUILD, build)
        self.parameters.set(CORE_MODIFIED, modified)
        if hash:
            self.parameters.set(CORE_HASH, hash)
        logger.info(f"Core build set to {build}")

    # ------------------------------------------------------------------
    # Update check
    # ------------------------------------------------------------------

    def check(self, force: bool = False) -> int:
        """
        Number of available remote updates

        A stored positive count is returned as is. Otherwise the gateway is
        asked at most once per retry period unless force is set.
        """
        old_count = int(self.parameters.get(UPDATE_COUNT, 0) or 0)
        if old_count > 0:
            return old_count

        retry = self.parameters.get(UPDATE_RETRY)
        if not force and retry and float(retry) > time.time():
            return old_count

        try:
            new_count = int(self.request_update_list().get("update", 0))
        except RemoteCatalogError as e:
            logger.warning(f"Update check failed: {e}")
            new_count = 0

        self.parameters.set(UPDATE_COUNT, new_count)
        self.parameters.set(UPDATE_RETRY, time.time() + self.config.update_retry_hours * 3600)
        return new_count

    def request_update_list(self, force: bool = False) -> Dict[str, Any]:
        """
        Ask the gateway which core, plugin and theme updates exist

        Frozen plugins, themes already installed and (when core updates are
        disabled) the core are stripped from the result. Each stripped
        plugin or core entry discounts the update count, never below zero.

        Raises:
            RemoteCatalogError: If the gateway request fails
        """
        plugins = self.coordinator(ExtensionKind.PLUGIN)
        themes = self.coordinator(ExtensionKind.THEME)

        records = {record.code: record for record in self.ledger.list_records()}
        plugin_codes = {ext.identifier: ext for ext in plugins.all()}
        versions = {
            code: record.version for code, record in records.items() if code in plugin_codes
        }
        installed_themes = [ext.identifier for ext in themes.all() if themes.is_installed(ext)]

        params = {
            "core": self.get_hash(),
            "plugins": versions,
            "themes": installed_themes,
            "build": self.parameters.get(CORE_BUILD),
            "force": force,
        }

        data = self.catalog.fetch("core/update", params)
        result: Dict[str, Any] = dict(data) if isinstance(data, dict) else {}
        update_count = int(result.get("update", 0) or 0)

        if result.get("core"):
            core = dict(result["core"])
            core["old_build"] = self.parameters.get(CORE_BUILD)
            result["core"] = core

        available_plugins = {}
        for code, info in (result.get("plugins") or {}).items():
            info = dict(info or {})
            extension = plugin_codes.get(code)
            info["name"] = (extension.name if extension else None) or code
            info["old_version"] = versions.get(code)

            if code in records and records[code].is_frozen:
                update_count = max(0, update_count - 1)
            else:
                available_plugins[code] = info
        result["plugins"] = available_plugins

        result["themes"] = {
            code: info for code, info in (result.get("themes") or {}).items()
            if not themes.is_installed(code)
        }

        if result.get("core") and self.config.disable_core_updates:
            update_count = max(0, update_count - 1)
            result.pop("core")

        update_count += len(result["themes"])
        result["hasUpdates"] = update_count > 0
        result["update"] = update_count
        self.parameters.set(UPDATE_COUNT, update_count)
        return result

    # ------------------------------------------------------------------
    # Project
    # ------------------------------------------------------------------

    def request_project_details(self, project_id: str) -> Any:
        return self.catalog.request(REQUEST_PROJECT_DETAIL, project_id)

    def set_project(self, project_id: str) -> Dict[str, Any]:
        """Bind the installation to a marketplace project"""
        details = self.request_project_details(project_id)
        details = dict(details) if isinstance(details, dict) else {}
        self.parameters.set(PROJECT_ID, project_id)
        self.parameters.set(PROJECT_NAME, details.get("name"))
        self.parameters.set(PROJECT_OWNER, details.get("owner"))
        logger.info(f"Project set to {project_id}")
        return details

    # ------------------------------------------------------------------
    # System wide operations
    # ------------------------------------------------------------------

    def update(self) -> Dict[ExtensionKind, UpdateReport]:
        """Update modules, then plugins, then themes"""
        reports = {}
        for kind in UPDATE_ORDER:
            logger.info(f"Updating {kind.value}s")
            reports[kind] = self.coordinator(kind).update()

        for kind in UPDATE_ORDER:
            for target, replacement in self.coordinator(kind).replacement_notices().items():
                logger.warning(f"{replacement} replaces {target}, which is still present and disabled")

        self.parameters.set(UPDATE_COUNT, 0)
        return reports

    def warnings(self) -> List[str]:
        messages = []
        for kind in UPDATE_ORDER:
            messages.extend(self.coordinator(kind).warnings())
        return messages

    def tear_down(self) -> "SystemUpdater":
        """Roll back every extension of every kind, then drop the ledger storage once"""
        for kind in UPDATE_ORDER:
            self.coordinator(kind).tear_down(drop_storage=False)
        self.ledger.drop_storage()
        return self
