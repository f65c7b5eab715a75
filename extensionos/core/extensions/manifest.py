"""Reader for extension version files (updates/version.yaml)"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

import yaml

from extensionos.core.extensions.cache import ExtensionCache, MemoryCache
from extensionos.core.extensions.exceptions import InvalidManifestError
from extensionos.core.extensions.models import (
    ChangeDescriptor,
    Extension,
    HistoryType,
    VersionEntry,
    VersionManifest,
)
from extensionos.core.extensions.versions import normalize_version, parse_version

logger = logging.getLogger(__name__)

VERSION_FILE = "version.yaml"

# Descriptors that look like a relative script path are executed, anything else is a comment
SCRIPT_PATTERN = re.compile(r'^[a-z0-9_\-./\\]+\.(?:php|py)$', re.IGNORECASE)

_NULL_TAG = "tag:yaml.org,2002:null"


def classify_descriptor(text: str) -> ChangeDescriptor:
    """Classify a manifest line as a Script or a Comment"""
    text = str(text).strip()
    kind = HistoryType.SCRIPT if SCRIPT_PATTERN.match(text) else HistoryType.COMMENT
    return ChangeDescriptor(text=text, type=kind)


class VersionFileReader:
    """Parses version files into sorted, cached VersionManifest objects"""

    def __init__(self, cache: Optional[ExtensionCache] = None):
        """
        Initialize reader

        Args:
            cache: Cache for parsed manifests, keyed per extension
        """
        self.cache = cache or MemoryCache()

    def _cache_key(self, identifier: str) -> str:
        return f"manifest:{identifier.lower()}"

    def load(self, extension: Extension) -> VersionManifest:
        """
        Load the version manifest of an extension

        A missing version file yields an empty manifest.

        Raises:
            InvalidManifestError: If the file cannot be parsed
        """
        return self.cache.remember(
            self._cache_key(extension.identifier),
            None,
            lambda: self.read_file(extension.identifier, extension.version_file),
        )

    def has_manifest(self, extension: Extension) -> bool:
        return extension.version_file.is_file()

    def invalidate(self, identifier: Optional[str] = None) -> None:
        """Drop the cached manifest of one extension, or all of them"""
        if identifier is None:
            self.cache.clear()
        else:
            self.cache.invalidate(self._cache_key(identifier))

    def read_file(self, identifier: str, path: Path) -> VersionManifest:
        if not path.is_file():
            logger.debug(f"No version file for {identifier} at {path}")
            return VersionManifest(extension=identifier)
        return self.parse(identifier, path.read_text(encoding="utf-8"))

    def parse(self, identifier: str, text: str) -> VersionManifest:
        """
        Parse version file content

        Keys are taken as written so '1.0' is never read as a float.

        Args:
            identifier: Extension the content belongs to, used in errors
            text: YAML content

        Returns:
            Manifest with entries sorted by version precedence

        Raises:
            InvalidManifestError: On YAML errors, non-version keys,
                duplicate versions or unsupported values
        """
        try:
            root = yaml.compose(text, Loader=yaml.SafeLoader)
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            where = f"line {mark.line + 1}: " if mark is not None else ""
            raise InvalidManifestError(identifier, f"{where}{e}") from e

        if root is None or (isinstance(root, yaml.ScalarNode) and root.tag == _NULL_TAG):
            return VersionManifest(extension=identifier)
        if not isinstance(root, yaml.MappingNode):
            raise InvalidManifestError(identifier, "expected a mapping of versions")

        entries: List[Tuple[object, VersionEntry]] = []
        seen = {}
        for key_node, value_node in root.value:
            line = key_node.start_mark.line + 1
            if not isinstance(key_node, yaml.ScalarNode):
                raise InvalidManifestError(identifier, f"line {line}: version key must be a scalar")

            raw = key_node.value
            version = normalize_version(raw)
            try:
                parsed = parse_version(version)
            except ValueError:
                raise InvalidManifestError(identifier, f"line {line}: '{raw}' is not a version")

            if parsed in seen:
                raise InvalidManifestError(
                    identifier,
                    f"line {line}: duplicate version '{raw}' (first seen on line {seen[parsed]})"
                )
            seen[parsed] = line

            descriptors = self._parse_descriptors(identifier, raw, line, value_node)
            entries.append((parsed, VersionEntry(version=version, descriptors=tuple(descriptors))))

        entries.sort(key=lambda item: item[0])
        return VersionManifest(extension=identifier, entries=tuple(entry for _, entry in entries))

    def _parse_descriptors(
        self,
        identifier: str,
        version: str,
        line: int,
        node: yaml.Node
    ) -> List[ChangeDescriptor]:
        if isinstance(node, yaml.ScalarNode):
            if node.tag == _NULL_TAG:
                return []
            return [classify_descriptor(node.value)]

        if isinstance(node, yaml.SequenceNode):
            descriptors = []
            for item in node.value:
                if not isinstance(item, yaml.ScalarNode):
                    raise InvalidManifestError(
                        identifier,
                        f"line {item.start_mark.line + 1}: entries of '{version}' must be strings"
                    )
                if item.tag == _NULL_TAG:
                    continue
                descriptors.append(classify_descriptor(item.value))
            return descriptors

        raise InvalidManifestError(identifier, f"line {line}: unsupported value for '{version}'")
