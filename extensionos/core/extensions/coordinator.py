"""
Extension Lifecycle Coordinator

One coordinator class serves plugins, themes and modules. Differences
between kinds live in the KIND_HANDLERS dispatch table; migration work is
delegated to a shared MigrationEngine.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, Union

from extensionos.core.config import ExtensionOSConfig, get_config
from extensionos.core.extensions.engine import MigrationEngine
from extensionos.core.extensions.exceptions import (
    ApplicationError,
    InvalidManifestError,
    TargetVersionNotFoundError,
    UnknownExtensionError,
)
from extensionos.core.extensions.flags import FlagStore
from extensionos.core.extensions.ledger import NOT_INSTALLED, MigrationLedger
from extensionos.core.extensions.manifest import VersionFileReader
from extensionos.core.extensions.models import (
    AvailableUpdate,
    DisabledFlag,
    Extension,
    ExtensionKind,
    UpdateReport,
)
from extensionos.core.extensions.packages import NullPackageManager, PackageManager
from extensionos.core.extensions.preserver import Preserver
from extensionos.core.extensions.registry import ExtensionRegistry
from extensionos.core.extensions.runner import MigrationRunner, PythonScriptRunner
from extensionos.core.extensions.versions import is_newer, is_valid_version
from extensionos.store.parameters import THEME_HISTORY, UPDATE_COUNT, ParameterStore

if TYPE_CHECKING:
    from extensionos.core.extensions.sources import ExtensionSource

logger = logging.getLogger(__name__)

ExtensionRef = Union[Extension, "ExtensionSource", str]


# ----------------------------------------------------------------------
# Kind handlers
# ----------------------------------------------------------------------

def extension_directory(kind: ExtensionKind, root: Path, code: str) -> Path:
    """Directory an extension with this code is installed to"""
    if kind == ExtensionKind.PLUGIN:
        return root.joinpath(*code.lower().split("."))
    return root / code.lower()


def theme_directory_name(code: str) -> str:
    return code.lower().replace(".", "-")


def _scaffold_plugin(root: Path, identifier: str) -> Path:
    parts = identifier.split(".")
    if len(parts) != 2 or not all(parts):
        raise ApplicationError(f"Plugin identifier must look like Vendor.Name, got '{identifier}'")

    directory = extension_directory(ExtensionKind.PLUGIN, root, identifier)
    directory.mkdir(parents=True)
    (directory / "plugin.py").write_text(
        f'"""{parts[1]} plugin"""\n\n'
        f'identifier = "{identifier}"\n'
        f'name = "{parts[1]}"\n'
        f'description = "No description provided yet..."\n'
        f'require = []\n',
        encoding="utf-8",
    )
    (directory / "updates").mkdir()
    (directory / "updates" / "version.yaml").write_text(
        f"1.0.0: First version of {parts[1]}\n", encoding="utf-8"
    )
    return directory


def _scaffold_module(root: Path, identifier: str) -> Path:
    directory = extension_directory(ExtensionKind.MODULE, root, identifier)
    directory.mkdir(parents=True)
    (directory / "module.py").write_text(
        f'"""{identifier} module"""\n\nidentifier = "{identifier}"\nname = "{identifier}"\n',
        encoding="utf-8",
    )
    (directory / "updates").mkdir()
    (directory / "updates" / "version.yaml").write_text(
        f"1.0.0: First version of {identifier}\n", encoding="utf-8"
    )
    return directory


def _scaffold_theme(root: Path, identifier: str) -> Path:
    directory = extension_directory(ExtensionKind.THEME, root, identifier)
    directory.mkdir(parents=True)
    (directory / "theme.yaml").write_text(
        f"code: {identifier}\nname: {identifier}\ndescription: No description provided yet...\n",
        encoding="utf-8",
    )
    return directory


@dataclass(frozen=True)
class KindHandler:
    """Kind specific behaviour of the coordinator"""
    kind: ExtensionKind
    root: Callable[[ExtensionOSConfig], Path]
    scaffold: Callable[[Path, str], Path]
    requires_manifest: bool
    records_theme_history: bool = False
    core_update: bool = False


KIND_HANDLERS: Dict[ExtensionKind, KindHandler] = {
    ExtensionKind.PLUGIN: KindHandler(
        kind=ExtensionKind.PLUGIN,
        root=lambda config: config.plugins_dir,
        scaffold=_scaffold_plugin,
        requires_manifest=True,
    ),
    ExtensionKind.THEME: KindHandler(
        kind=ExtensionKind.THEME,
        root=lambda config: config.themes_dir,
        scaffold=_scaffold_theme,
        requires_manifest=False,
        records_theme_history=True,
    ),
    ExtensionKind.MODULE: KindHandler(
        kind=ExtensionKind.MODULE,
        root=lambda config: config.modules_dir,
        scaffold=_scaffold_module,
        requires_manifest=False,
        core_update=True,
    ),
}


class ExtensionManagerInterface(ABC):
    """Lifecycle operations every kind of extension supports"""

    @abstractmethod
    def list(self) -> Dict[str, Extension]:
        pass

    @abstractmethod
    def create(self, identifier: str) -> Extension:
        pass

    @abstractmethod
    def install(self, extension: ExtensionRef) -> Extension:
        pass

    @abstractmethod
    def is_installed(self, extension: ExtensionRef) -> bool:
        pass

    @abstractmethod
    def get(self, extension: ExtensionRef) -> Optional[Extension]:
        pass

    @abstractmethod
    def enable(self, extension: ExtensionRef, flag: DisabledFlag = DisabledFlag.BY_USER) -> Optional[bool]:
        pass

    @abstractmethod
    def disable(self, extension: ExtensionRef, flag: DisabledFlag = DisabledFlag.BY_USER) -> Optional[bool]:
        pass

    @abstractmethod
    def update(self, extension: Optional[ExtensionRef] = None, migrations_only: bool = False) -> UpdateReport:
        pass

    @abstractmethod
    def refresh(self, extension: Optional[ExtensionRef] = None) -> UpdateReport:
        pass

    @abstractmethod
    def rollback(self, extension: Optional[ExtensionRef] = None, target_version: Optional[str] = None) -> List[str]:
        pass

    @abstractmethod
    def uninstall(self, extension: ExtensionRef, no_rollback: bool = False, preserve_files: bool = False) -> bool:
        pass


class ExtensionCoordinator(ExtensionManagerInterface):
    """Drives the lifecycle of one kind of extension"""

    def __init__(
        self,
        kind: ExtensionKind,
        config: Optional[ExtensionOSConfig] = None,
        ledger: Optional[MigrationLedger] = None,
        runner: Optional[MigrationRunner] = None,
        reader: Optional[VersionFileReader] = None,
        flag_store: Optional[FlagStore] = None,
        package_manager: Optional[PackageManager] = None,
        preserver: Optional[Preserver] = None,
        parameters: Optional[ParameterStore] = None
    ):
        """
        Initialize coordinator

        Args:
            kind: Kind of extension managed
            config: Configuration (defaults to get_config())
            ledger: Migration ledger, may be shared between coordinators
            runner: Migration script runner
            reader: Version file reader and its manifest cache
            flag_store: Disable flag store and its cache
            package_manager: Used for remote artifact updates
            preserver: Archives files before a remote update
            parameters: System parameter store
        """
        self.kind = ExtensionKind(kind)
        self.handler = KIND_HANDLERS[self.kind]
        self.config = config or get_config()
        self.ledger = ledger or MigrationLedger(self.config.ledger_db)
        self.reader = reader or VersionFileReader()
        self.engine = MigrationEngine(
            self.ledger,
            runner or PythonScriptRunner(self.config.app_db),
            self.reader,
        )
        self.flags = flag_store or FlagStore(ttl_days=self.config.flag_cache_ttl_days)
        self.packages = package_manager or NullPackageManager()
        self.preserver = preserver or Preserver(self.config.archive_dir)
        self.parameters = parameters or ParameterStore(self.ledger.db_path)
        self.registry = ExtensionRegistry(
            self.kind,
            self.root,
            only=self.config.load_modules if self.kind == ExtensionKind.MODULE else None,
        )
        self._loaded = False

    @property
    def root(self) -> Path:
        return self.handler.root(self.config)

    @property
    def label(self) -> str:
        return self.kind.value

    # ------------------------------------------------------------------
    # Loading and flags
    # ------------------------------------------------------------------

    def load(self) -> Dict[str, Extension]:
        """Rediscover extensions on disk and recompute their flags"""
        extensions = self.registry.discover()
        self.reader.invalidate()
        self._load_flags()
        self._loaded = True
        return extensions

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _config_disabled(self) -> List[str]:
        return list(self.config.disable_plugins) if self.kind == ExtensionKind.PLUGIN else []

    def _replaced_version(self, extension: Extension) -> str:
        try:
            latest = self.reader.load(extension).latest
        except InvalidManifestError as e:
            logger.warning(str(e))
            latest = None
        return latest or self.ledger.get_version(extension.identifier)

    def _build_flags(self, store: FlagStore) -> Dict[str, Dict[str, str]]:
        for code in self._config_disabled():
            store.flag(code, DisabledFlag.BY_CONFIG)

        for code in self.ledger.disabled_codes():
            if self.registry.find(code, ignore_replacements=True):
                store.flag(code, DisabledFlag.BY_USER)

        for extension in self.registry.all():
            missing = [d for d in self.registry.get_dependencies(extension) if not self.registry.has(d)]
            if missing:
                store.flag(extension.identifier, DisabledFlag.MISSING_DEPENDENCIES)
            else:
                store.unflag(extension.identifier, DisabledFlag.MISSING_DEPENDENCIES)

        replaced, failed = self.registry.detect_replacements(self._replaced_version)
        for target, replacement in replaced:
            store.flag(target, DisabledFlag.REPLACED)
            store.unflag(replacement, DisabledFlag.REPLACEMENT_FAILED)
        for target, replacement in failed:
            store.flag(replacement, DisabledFlag.REPLACEMENT_FAILED)
            store.unflag(target, DisabledFlag.REPLACED)

        return {
            "replacement_map": self.registry.replacement_map,
            "active_replacements": self.registry.active_replacements,
        }

    def _load_flags(self) -> None:
        self.flags.load(
            [ext.identifier for ext in self.registry.all()],
            self._config_disabled(),
            self._build_flags,
        )
        self.registry.restore_replacements(
            self.flags.extra.get("replacement_map", self.registry.replacement_map),
            self.flags.extra.get("active_replacements", self.registry.active_replacements),
        )

    def clear_flag_cache(self) -> None:
        self.flags.clear_cache()

    def is_disabled(self, extension: ExtensionRef) -> bool:
        self._ensure_loaded()
        return self.flags.is_disabled(self.resolve_identifier(extension))

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve_identifier(self, extension: ExtensionRef) -> str:
        if isinstance(extension, Extension):
            return extension.identifier
        if isinstance(extension, str):
            return self.registry.normalize_identifier(extension)
        code = extension.get_code()
        if not code:
            raise ApplicationError(f"Unable to determine the code of {extension}")
        return self.registry.normalize_identifier(code)

    def all(self) -> List[Extension]:
        """Every discovered extension, disabled or not, in dependency order"""
        self._ensure_loaded()
        return self.registry.all()

    def list(self) -> Dict[str, Extension]:
        """Active extensions in dependency order"""
        self._ensure_loaded()
        return {
            ext.identifier: ext for ext in self.registry.all()
            if not self.flags.is_disabled(ext.identifier)
        }

    def get(self, extension: ExtensionRef) -> Optional[Extension]:
        self._ensure_loaded()
        if isinstance(extension, Extension):
            return self.registry.find(extension.identifier, ignore_replacements=True) or extension
        return self.registry.find(self.resolve_identifier(extension))

    def resolve(self, extension: ExtensionRef) -> Extension:
        """
        Like get() but raises

        Raises:
            UnknownExtensionError: If the extension cannot be found
        """
        found = self.get(extension)
        if found is None:
            raise UnknownExtensionError(self.resolve_identifier(extension))
        return found

    def _theme_history(self) -> Dict[str, str]:
        return dict(self.parameters.get(THEME_HISTORY, {}) or {})

    def is_installed(self, extension: ExtensionRef) -> bool:
        code = self.resolve_identifier(extension)
        if self.handler.records_theme_history and code in self._theme_history():
            return True
        return self.ledger.get_version(code) != NOT_INSTALLED

    # ------------------------------------------------------------------
    # Install / create
    # ------------------------------------------------------------------

    def create(self, identifier: str) -> Extension:
        """Scaffold a new extension, then install it"""
        self._ensure_loaded()
        if self.registry.find(identifier, ignore_replacements=True):
            raise ApplicationError(f"{self.label.capitalize()} {identifier} already exists")

        try:
            directory = self.handler.scaffold(self.root, identifier)
        except FileExistsError as e:
            raise ApplicationError(f"Directory for {identifier} already exists: {e.filename}") from e
        logger.info(f"Created {self.label} {identifier} in {directory}")

        self.load()
        self.refresh(identifier)
        return self.resolve(identifier)

    def install(self, extension: ExtensionRef) -> Extension:
        """
        Install an extension and apply its migrations

        Raises:
            ApplicationError: If a plugin has no version file or the files
                of a source cannot be created
        """
        from extensionos.core.extensions.sources import ExtensionSource, SourceStatus

        if isinstance(extension, ExtensionSource):
            if extension.status(self) == SourceStatus.UNINSTALLED:
                extension.create_files(self)

        self.load()
        resolved = self.resolve(extension)
        code = resolved.identifier

        if self.handler.requires_manifest and not self.reader.has_manifest(resolved):
            raise ApplicationError(f"Unable to update {self.label} {code}: version file not found")

        result = self.engine.apply_up_to(resolved)
        for message in result.messages:
            logger.info(f"{code}: {message}")

        if self.handler.records_theme_history:
            history = self._theme_history()
            history[code] = theme_directory_name(code)
            self.parameters.set(THEME_HISTORY, history)

        logger.info(f"{self.label.capitalize()} {code} installed successfully")
        return resolved

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def enable(self, extension: ExtensionRef, flag: DisabledFlag = DisabledFlag.BY_USER) -> Optional[bool]:
        """Clear one disable flag; BY_USER is also persisted in the ledger"""
        found = self.get(extension)
        if found is None:
            return None

        self.flags.unflag(found.identifier, flag)
        if DisabledFlag(flag) == DisabledFlag.BY_USER:
            self.ledger.set_disabled(found.identifier, False)
            self.clear_flag_cache()
        logger.info(f"Enabled {self.label} {found.identifier} ({DisabledFlag(flag).value})")
        return True

    def disable(self, extension: ExtensionRef, flag: DisabledFlag = DisabledFlag.BY_USER) -> Optional[bool]:
        """Set one disable flag; BY_USER is also persisted in the ledger"""
        found = self.get(extension)
        if found is None:
            return None

        if DisabledFlag(flag) == DisabledFlag.BY_USER:
            if not self.ledger.set_disabled(found.identifier, True):
                raise ApplicationError(
                    f"{found.identifier} was not found in the ledger, install it before disabling"
                )
            self.clear_flag_cache()
        self.flags.flag(found.identifier, flag)
        logger.info(f"Disabled {self.label} {found.identifier} ({DisabledFlag(flag).value})")
        return True

    def _set_frozen(self, extension: ExtensionRef, frozen: bool) -> None:
        code = self.resolve_identifier(extension)
        if not self.ledger.set_frozen(code, frozen):
            raise ApplicationError(f"{code} was not found in the ledger")

    def freeze(self, extension: ExtensionRef) -> None:
        """Prevent remote updates of an extension"""
        self._set_frozen(extension, True)

    def unfreeze(self, extension: ExtensionRef) -> None:
        self._set_frozen(extension, False)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _update_files(self, extension: Extension) -> None:
        code = extension.identifier
        package = extension.composer_package
        if not package:
            return
        if self.ledger.is_frozen(code):
            logger.info(f"{code} is frozen, skipping file update")
            return
        if self.handler.core_update and self.config.disable_core_updates:
            return
        if not self.packages.update_available(package):
            return

        logger.info(f"Updating package {package} for {self.label} {code}")
        self.preserver.store(extension, self.ledger.get_version(code))
        versions = self.packages.update(package)
        if versions:
            logger.info(f"Updated {self.label} {code} from v{versions[0]} => v{versions[1]}")
        else:
            logger.error(f"Failed to update {self.label} {code} ({package})")
        self.reader.invalidate(code)

    def update(
        self,
        extension: Optional[ExtensionRef] = None,
        migrations_only: bool = False
    ) -> UpdateReport:
        """
        Update files and apply pending migrations

        With no extension every active extension is updated in dependency
        order and failures are collected in the report. For a single
        extension failures propagate.
        """
        batch = extension is None
        targets = list(self.list().values()) if batch else [self.resolve(extension)]
        report = UpdateReport()

        # Replacing extensions take over ledger state before their own migrations run
        self.migrate_replacements()

        for target in targets:
            code = target.identifier
            try:
                if not migrations_only:
                    self._update_files(target)

                logger.info(f"Migrating {self.label} {code}")
                result = self.engine.apply_up_to(target)
                report.messages[code] = result.messages
                if result.applied:
                    report.updated.append(code)
                else:
                    report.skipped.append(code)

                self.migrate_replacements()

            except Exception as e:
                if not batch:
                    raise
                logger.error(f"Update of {self.label} {code} failed: {e}", exc_info=True)
                report.failures[code] = str(e)

        self.parameters.set(UPDATE_COUNT, 0)
        return report

    def migrate_replacements(self) -> None:
        """
        Move ledger state of replaced extensions to the active replacing ones

        Raises:
            ApplicationError: If an extension replaces more than one extension
        """
        for extension in self.list().values():
            if not extension.replaces:
                continue
            if len(extension.replaces) > 1:
                raise ApplicationError(
                    f"{extension.identifier} replaces more than one {self.label}, "
                    f"which is not supported"
                )
            for target, constraint in extension.replaces.items():
                self.engine.replace_extension(
                    extension, self.registry.normalize_identifier(target), constraint
                )

    def available_updates(
        self,
        extension: Optional[ExtensionRef] = None,
        known: Optional[Dict[str, Tuple[str, str]]] = None
    ) -> Dict[str, AvailableUpdate]:
        """Newer package versions for one or all active extensions"""
        to_check = [self.resolve(extension)] if extension else list(self.list().values())
        if known is None:
            known = self.packages.available_updates()

        updates: Dict[str, AvailableUpdate] = {}
        for candidate in to_check:
            package = candidate.composer_package
            if not package or package not in known:
                continue

            current, latest = known[package]
            if not (is_valid_version(current) and is_valid_version(latest)):
                logger.debug(f"Ignoring non semantic versions of {package}: {current} => {latest}")
                continue
            if is_newer(latest, current):
                updates[candidate.identifier] = AvailableUpdate(
                    identifier=candidate.identifier, from_version=current, to_version=latest
                )
        return updates

    # ------------------------------------------------------------------
    # Rollback / uninstall
    # ------------------------------------------------------------------

    def _rollback_one(self, code: str, target_version: Optional[str]) -> bool:
        found = self.registry.find(code, ignore_replacements=True)
        if found is None:
            if self.engine.purge(code):
                logger.info(f"{code} purged from database")
                return True
            raise UnknownExtensionError(code)

        if target_version and not self.engine.has_version(found, target_version):
            raise TargetVersionNotFoundError(code, target_version)

        # Repeat until a pass removes no further history rows
        remaining: Optional[int] = None
        while True:
            if not self.engine.revert_to(found, target_version, stop_at_or_before=False):
                if remaining is None:
                    logger.warning(f"{code} has no version file, nothing to roll back")
                    return False
                break
            count = self.ledger.count_history(found.identifier)
            if count == remaining:
                break
            remaining = count

        current = self.engine.current_version(found)
        logger.info(
            f"{code} rolled back, current version: {current} "
            f"({self.engine.current_version_note(found)})"
        )
        return True

    def rollback(
        self,
        extension: Optional[ExtensionRef] = None,
        target_version: Optional[str] = None
    ) -> List[str]:
        """
        Revert migrations, keeping target_version applied when given

        Ledger rows of an extension whose files are gone are purged.

        Returns:
            Identifiers that were rolled back or purged

        Raises:
            TargetVersionNotFoundError: If target_version was never applied
            UnknownExtensionError: If nothing is known about the extension
        """
        self._ensure_loaded()
        if extension is None:
            codes = [ext.identifier for ext in reversed(self.registry.all())]
        else:
            codes = [self.resolve_identifier(extension)]

        return [code for code in codes if self._rollback_one(code, target_version)]

    def refresh(self, extension: Optional[ExtensionRef] = None) -> UpdateReport:
        """Roll back and reapply migrations"""
        self.rollback(extension)
        return self.update(extension, migrations_only=True)

    def uninstall(
        self,
        extension: ExtensionRef,
        no_rollback: bool = False,
        preserve_files: bool = False
    ) -> bool:
        """
        Roll back an extension and delete its files

        Args:
            extension: Extension to remove
            no_rollback: Keep ledger state and database changes
            preserve_files: Keep the files on disk
        """
        self._ensure_loaded()
        code = self.resolve_identifier(extension)
        found = self.registry.find(code, ignore_replacements=True)

        if not no_rollback:
            self.rollback(code)

        if found is not None and not preserve_files and found.path.is_dir():
            shutil.rmtree(found.path)
            self._loaded = False

        if self.handler.records_theme_history:
            history = self._theme_history()
            if history.pop(code, None) is not None:
                self.parameters.set(THEME_HISTORY, history)

        self.clear_flag_cache()
        logger.info(f"Deleted {self.label}: {code}")
        return True

    def tear_down(self, drop_storage: bool = True) -> "ExtensionCoordinator":
        """Uninstall every extension (files are kept), then optionally drop ledger storage"""
        for extension in reversed(self.all()):
            self.uninstall(extension, preserve_files=True)
        if drop_storage:
            self.ledger.drop_storage()
        return self

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def warnings(self) -> List[str]:
        """Missing dependencies and replaced extensions still present"""
        self._ensure_loaded()
        warnings = []
        missing = self.registry.find_missing_dependencies()
        if missing:
            self.clear_flag_cache()

        for parent, codes in missing.items():
            for code in codes:
                warnings.append(f"Required {self.label} {code} is missing (required by {parent})")

        for target, replacement in self.replacement_notices().items():
            warnings.append(f"{replacement} replaces {target}, which is still present and disabled")
        return warnings

    def replacement_notices(self) -> Dict[str, str]:
        """Active replacements as {replaced: replacing}"""
        self._ensure_loaded()
        notices = {}
        for target in self.registry.replacement_map:
            replacement = self.registry.get_active_replacement(target)
            if replacement:
                notices[self.registry.normalize_identifier(target)] = replacement
        return notices
