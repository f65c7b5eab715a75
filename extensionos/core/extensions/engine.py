"""
Migration Engine

Diffs an extension's version manifest against the ledger and applies or
unwinds the difference. State moves UNINSTALLED ("0") -> AT(v1) -> ... and
back; there is no persisted in-progress state, a failed step simply leaves
the ledger at the last completed version.
"""

import logging
from pathlib import Path
from typing import List, Optional

from extensionos.core.extensions.exceptions import (
    ScriptExecutionError,
    TargetVersionNotFoundError,
)
from extensionos.core.extensions.ledger import NOT_INSTALLED, MigrationLedger
from extensionos.core.extensions.manifest import VersionFileReader
from extensionos.core.extensions.models import (
    Extension,
    HistoryType,
    MigrationResult,
    MigrationStatus,
    VersionEntry,
)
from extensionos.core.extensions.runner import MigrationRunner
from extensionos.core.extensions.versions import normalize_version, satisfies

logger = logging.getLogger(__name__)

COMMENT_WIDTH = 120
VERSION_COLUMN = 10


def format_version_message(version: str, comments: List[str]) -> str:
    """Render '1.0.1:    First comment' for progress output"""
    comment = comments[0] if comments else ""
    if len(comment) > COMMENT_WIDTH:
        comment = comment[:COMMENT_WIDTH] + "..."
    return f"{version + ':':<{VERSION_COLUMN}}{comment}"


class MigrationEngine:
    """Applies and reverts versioned migrations for any kind of extension"""

    def __init__(
        self,
        ledger: MigrationLedger,
        runner: MigrationRunner,
        reader: Optional[VersionFileReader] = None
    ):
        self.ledger = ledger
        self.runner = runner
        self.reader = reader or VersionFileReader()

    def _script_path(self, extension: Extension, script: str) -> Path:
        return extension.updates_path / script.replace("\\", "/")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_version(self, extension: Extension) -> str:
        return self.ledger.get_version(extension.identifier)

    def list_new_versions(self, extension: Extension) -> List[VersionEntry]:
        """Manifest entries not applied yet"""
        manifest = self.reader.load(extension)
        return manifest.entries_after(self.current_version(extension))

    def has_version(self, extension: Extension, version: str) -> bool:
        """Whether any history row exists for version"""
        version = normalize_version(version)
        return any(entry.version == version for entry in self.ledger.get_history(extension.identifier))

    def current_version_note(self, extension: Extension) -> str:
        """Most recent comment recorded for the extension"""
        comments = [
            entry for entry in self.ledger.get_history(extension.identifier)
            if entry.type == HistoryType.COMMENT
        ]
        return (comments[-1].detail or "") if comments else ""

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_up_to(
        self,
        extension: Extension,
        target_version: Optional[str] = None
    ) -> MigrationResult:
        """
        Apply every pending manifest version, optionally stopping after target_version

        Args:
            extension: Extension to migrate
            target_version: Last version to apply (None for the latest)

        Returns:
            MigrationResult describing what was applied

        Raises:
            TargetVersionNotFoundError: If target_version is not in the manifest
            ScriptExecutionError: If a script fails; earlier versions stay applied
        """
        code = extension.identifier
        manifest = self.reader.load(extension)
        current = self.ledger.get_version(code)

        if manifest.is_empty:
            logger.info(f"{code}: nothing to migrate")
            return MigrationResult(
                extension=code, status=MigrationStatus.NO_MANIFEST, from_version=current
            )

        target_index = len(manifest.entries) - 1
        if target_version is not None:
            target_index = manifest.index_of(target_version)
            if target_index is None:
                raise TargetVersionNotFoundError(code, target_version)

        current_index = manifest.index_of(current)
        if current_index is not None and current_index >= target_index:
            logger.info(f"{code}: nothing to migrate, already at {current}")
            return MigrationResult(
                extension=code,
                status=MigrationStatus.UP_TO_DATE,
                from_version=current,
                to_version=current,
            )

        if current_index is None and current != NOT_INSTALLED:
            logger.warning(
                f"{code}: installed version {current} is not in the version file, "
                f"reapplying every version"
            )

        result = MigrationResult(
            extension=code, status=MigrationStatus.MIGRATED, from_version=current
        )
        logger.info(f"{code}: running migrations")

        pending = manifest.entries_after(current)
        for entry in pending:
            self._apply_entry(extension, entry)
            result.applied.append(entry.version)
            result.messages.append(format_version_message(entry.version, entry.comments))
            result.to_version = entry.version

            if manifest.index_of(entry.version) == target_index:
                break

        return result

    def _apply_entry(self, extension: Extension, entry: VersionEntry) -> None:
        code = extension.identifier

        for script in entry.scripts:
            if self.ledger.has_history(code, entry.version, script):
                continue

            path = self._script_path(extension, script)
            if not path.is_file():
                logger.error(f"{code}: migration file \"{script}\" not found")
                continue

            try:
                self.runner.up(path)
            except Exception as e:
                logger.error(f"{code}: {script} failed while applying {entry.version}", exc_info=True)
                raise ScriptExecutionError(code, entry.version, script, str(e)) from e

            self.ledger.append_history(code, HistoryType.SCRIPT, entry.version, script)

        with self.ledger.transaction():
            if not self.ledger.has_history(code, entry.version):
                for comment in entry.comments:
                    self.ledger.append_history(code, HistoryType.COMMENT, entry.version, comment)
            self.ledger.set_version(code, entry.version)

        logger.info(f"{code}: {format_version_message(entry.version, entry.comments)}")

    # ------------------------------------------------------------------
    # Revert
    # ------------------------------------------------------------------

    def revert_to(
        self,
        extension: Extension,
        stop_version: Optional[str] = None,
        stop_at_or_before: bool = False
    ) -> bool:
        """
        Unwind applied history, newest first

        Args:
            extension: Extension to revert
            stop_version: Version to stop at (None reverts everything)
            stop_at_or_before: False keeps stop_version applied; True
                reverts stop_version too and stops at the version before it

        Returns:
            False if the extension has no version file, True otherwise

        Raises:
            ScriptExecutionError: If a down-migration fails; the ledger is
                left at the version of the last remaining history row
        """
        code = extension.identifier
        if not self.reader.has_manifest(extension):
            return False

        if stop_version is not None:
            stop_version = normalize_version(stop_version)

        history = list(reversed(self.ledger.get_history(code)))
        stop_on_next_version = False
        new_version: Optional[str] = None

        try:
            for entry in history:
                if not stop_at_or_before and entry.version == stop_version:
                    new_version = entry.version
                    break

                # History can hold several rows (comments and scripts) per version
                if stop_on_next_version and entry.version != stop_version:
                    new_version = entry.version
                    break

                if entry.type == HistoryType.SCRIPT:
                    self._revert_script(extension, entry.version, entry.detail or "")
                self.ledger.delete_history_entry(code, entry.id)

                if entry.version == stop_version:
                    stop_on_next_version = True

        except Exception:
            last = self.ledger.get_last_history(code)
            self.ledger.set_version(code, last.version if last else None)
            raise

        self.ledger.set_version(code, new_version)
        self.reader.invalidate(code)
        return True

    def _revert_script(self, extension: Extension, version: str, script: str) -> None:
        code = extension.identifier
        path = self._script_path(extension, script)
        if not path.is_file():
            logger.warning(f"{code}: migration file \"{script}\" not found, dropping its history")
            return

        try:
            self.runner.down(path)
        except Exception as e:
            logger.error(f"{code}: {script} failed while reverting {version}", exc_info=True)
            raise ScriptExecutionError(code, version, script, str(e)) from e

    def purge(self, code: str) -> bool:
        """Delete all ledger rows of code, whether or not its files exist"""
        return self.ledger.purge(code)

    # ------------------------------------------------------------------
    # Replacement
    # ------------------------------------------------------------------

    def replace_extension(
        self,
        replacing: Extension,
        replaced_code: str,
        constraint: str = "*"
    ) -> bool:
        """
        Transfer the ledger state of a superseded extension to its replacement

        History of the replacing extension is written for every manifest
        version up to the replaced extension's installed version; scripts
        are recorded without running them.

        Returns:
            True if the ledger was transferred
        """
        installed = self.ledger.get_version(replaced_code)
        if installed == NOT_INSTALLED:
            return False

        try:
            accepted = satisfies(installed, constraint)
        except ValueError:
            logger.warning(
                f"{replacing.identifier}: cannot compare {replaced_code} {installed} "
                f"against '{constraint}'"
            )
            accepted = False
        if not accepted:
            return False

        code = replacing.identifier
        manifest = self.reader.load(replacing)
        versions = manifest.entries_up_to(installed)
        if not versions:
            return False

        with self.ledger.transaction():
            for entry in versions:
                for script in entry.scripts:
                    self.ledger.append_history(code, HistoryType.SCRIPT, entry.version, script)
                for comment in entry.comments:
                    self.ledger.append_history(code, HistoryType.COMMENT, entry.version, comment)

            self.ledger.delete_history(replaced_code)
            self.ledger.rename(replaced_code, code)

        logger.info(f"{code}: took over migration history of {replaced_code} at {installed}")
        return True
