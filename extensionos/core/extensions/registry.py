"""
Extension Registry

Discovers extensions on disk by statically reading their descriptor files
(nothing is imported or executed) and orders them by their dependencies.
"""

import ast
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import yaml

from extensionos.core.extensions.exceptions import CircularDependencyError
from extensionos.core.extensions.models import Extension, ExtensionKind
from extensionos.core.extensions.versions import satisfies

logger = logging.getLogger(__name__)

DESCRIPTOR_FILES = {
    ExtensionKind.PLUGIN: "plugin.py",
    ExtensionKind.MODULE: "module.py",
    ExtensionKind.THEME: "theme.yaml",
}

# Directory levels between the kind root and a descriptor (plugins live in vendor/name)
DESCRIPTOR_DEPTH = {
    ExtensionKind.PLUGIN: 2,
    ExtensionKind.MODULE: 1,
    ExtensionKind.THEME: 1,
}

DEPENDENCY_LOOP_FACTOR = 16

_DESCRIPTOR_KEYS = {
    "identifier", "code", "namespace",
    "require", "requires", "replaces", "elevated",
    "package", "composer_package",
    "name", "description",
}


class DescriptorError(ValueError):
    """A descriptor file could not be read"""
    pass


def parse_python_descriptor(path: Path) -> Dict[str, Any]:
    """
    Read literal assignments from a plugin.py/module.py descriptor

    Module level and class level assignments are both accepted, e.g.
    ``identifier = "Acme.Blog"`` or ``require = ["Acme.User"]``.

    Raises:
        DescriptorError: If the file cannot be read or parsed
    """
    try:
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    except (OSError, SyntaxError, ValueError) as e:
        raise DescriptorError(f"Cannot parse {path}: {e}") from e

    values: Dict[str, Any] = {}

    def collect(body: List[ast.stmt]) -> None:
        for node in body:
            if isinstance(node, ast.Assign):
                names = [t.id for t in node.targets if isinstance(t, ast.Name)]
            elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name) and node.value:
                names = [node.target.id]
            else:
                continue

            for name in names:
                if name not in _DESCRIPTOR_KEYS:
                    continue
                try:
                    values[name] = ast.literal_eval(node.value)
                except (ValueError, TypeError):
                    logger.debug(f"{path}: '{name}' is not a literal, ignored")

    collect(tree.body)
    for node in tree.body:
        if isinstance(node, ast.ClassDef):
            collect(node.body)
    return values


def parse_theme_descriptor(path: Path) -> Dict[str, Any]:
    """
    Read a theme.yaml descriptor

    Raises:
        DescriptorError: If the file is not a YAML mapping
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise DescriptorError(f"Cannot parse {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DescriptorError(f"{path} must contain a mapping")
    return data


def default_identifier(kind: ExtensionKind, directory: Path) -> str:
    if kind == ExtensionKind.PLUGIN:
        return f"{directory.parent.name}.{directory.name}"
    return directory.name


def build_extension(
    kind: ExtensionKind,
    descriptor: Path,
    data: Dict[str, Any]
) -> Extension:
    """Create an Extension from descriptor values"""
    directory = descriptor.parent
    identifier = data.get("identifier") or data.get("code")
    if not identifier and data.get("namespace"):
        identifier = str(data["namespace"]).strip("\\").replace("\\", ".")
    if not identifier:
        identifier = default_identifier(kind, directory)

    return Extension(
        identifier=str(identifier),
        kind=kind,
        path=directory,
        descriptor_path=descriptor,
        name=data.get("name"),
        description=data.get("description"),
        composer_package=data.get("composer_package") or data.get("package"),
        requires=data.get("requires", data.get("require")),
        replaces=data.get("replaces"),
        elevated=bool(data.get("elevated", False)),
    )


def read_descriptor(kind: ExtensionKind, descriptor: Path) -> Extension:
    if kind == ExtensionKind.THEME:
        data = parse_theme_descriptor(descriptor)
    else:
        data = parse_python_descriptor(descriptor)
    return build_extension(kind, descriptor, data)


class ExtensionRegistry:
    """Registry of the extensions of one kind found under a root directory"""

    def __init__(
        self,
        kind: ExtensionKind,
        root: Path,
        only: Optional[Iterable[str]] = None
    ):
        """
        Initialize registry

        Args:
            kind: Kind of extension to discover
            root: Directory holding the extensions
            only: Restrict discovery to these identifiers (empty means all)
        """
        self.kind = kind
        self.root = Path(root)
        self.only = {code.lower() for code in only or ()}
        self.extensions: Dict[str, Extension] = {}
        self.normalized_map: Dict[str, str] = {}
        self.replacement_map: Dict[str, str] = {}
        self.active_replacements: Dict[str, str] = {}

    @property
    def descriptor_name(self) -> str:
        return DESCRIPTOR_FILES[self.kind]

    def find_descriptors(self, root: Path) -> List[Path]:
        if not root.is_dir():
            return []
        depth = DESCRIPTOR_DEPTH[self.kind]
        pattern = "/".join(["*"] * depth + [self.descriptor_name])
        return sorted(root.glob(pattern))

    def discover(self) -> Dict[str, Extension]:
        """
        Scan the root directory and rebuild the registry

        Candidates whose descriptor cannot be parsed are skipped.

        Returns:
            Extensions keyed by identifier, in dependency order
        """
        found: Dict[str, Extension] = {}
        for descriptor in self.find_descriptors(self.root):
            try:
                extension = read_descriptor(self.kind, descriptor)
            except (DescriptorError, ValueError) as e:
                logger.warning(f"Skipping {self.kind.value} at {descriptor.parent}: {e}")
                continue

            code = extension.identifier.lower()
            if self.only and code not in self.only:
                continue
            if code in found:
                logger.warning(
                    f"Duplicate {self.kind.value} {extension.identifier} at "
                    f"{extension.path}, keeping {found[code].path}"
                )
                continue
            found[code] = extension

        found = dict(sorted(found.items()))
        normalized_map = {code: ext.identifier for code, ext in found.items()}
        replacement_map: Dict[str, str] = {}
        for code, extension in found.items():
            for target in extension.replaces:
                normalized_map.setdefault(target.lower(), target)
                replacement_map[target.lower()] = code

        # Ordering resolves requirements through the replacement map
        self.extensions = {}
        self.normalized_map = {}
        self.replacement_map = replacement_map
        self.active_replacements = {}
        try:
            ordered = self.topological_order(found.values())
        except CircularDependencyError:
            self.replacement_map = {}
            raise

        self.normalized_map = normalized_map
        self.extensions = {ext.identifier.lower(): ext for ext in ordered}
        logger.debug(f"Discovered {len(self.extensions)} {self.kind.value}(s) in {self.root}")
        return {ext.identifier: ext for ext in self.extensions.values()}

    def all(self) -> List[Extension]:
        return list(self.extensions.values())

    def normalize_identifier(self, code: str) -> str:
        """Return the declared casing of an identifier"""
        return self.normalized_map.get(code.lower(), code)

    def resolve_replacement(self, identifier: str) -> str:
        """Identifier that is active for identifier after supersession"""
        code = identifier.lower()
        seen = {code}
        while code in self.replacement_map:
            code = self.replacement_map[code]
            if code in seen:
                break
            seen.add(code)
        return self.normalize_identifier(code)

    def find(self, identifier: str, ignore_replacements: bool = False) -> Optional[Extension]:
        code = identifier.lower()
        if not ignore_replacements:
            code = self.resolve_replacement(code).lower()
        return self.extensions.get(code)

    def has(self, identifier: str) -> bool:
        return self.find(identifier) is not None

    def get_dependencies(self, extension: Extension) -> List[str]:
        """Required identifiers with superseded ones substituted"""
        return [self.resolve_replacement(code) for code in extension.requires]

    def find_missing_dependencies(self) -> Dict[str, List[str]]:
        """
        Map each extension to the required identifiers that are not present

            {'Acme.Blog': ['Acme.User']}
        """
        missing: Dict[str, List[str]] = {}
        for extension in self.extensions.values():
            for required in self.get_dependencies(extension):
                if self.has(required):
                    continue
                missing.setdefault(extension.identifier, [])
                if required not in missing[extension.identifier]:
                    missing[extension.identifier].append(required)
        return missing

    def topological_order(self, extensions: Optional[Iterable[Extension]] = None) -> List[Extension]:
        """
        Order extensions so that each comes after the extensions it requires

        Requirements on identifiers outside the given set are ignored.

        Raises:
            CircularDependencyError: If no progress can be made
        """
        if extensions is None:
            extensions = self.extensions.values()
        pool = {ext.identifier.lower(): ext for ext in extensions}
        checklist = dict(sorted(pool.items()))
        bound = max(len(pool), 1) * DEPENDENCY_LOOP_FACTOR

        ordered: List[str] = []
        placed = set()
        loop_count = 0
        while checklist:
            loop_count += 1
            if loop_count > bound:
                raise CircularDependencyError(bound, [pool[c].identifier for c in checklist])

            progressed = False
            for code, extension in list(checklist.items()):
                depends = [self.resolve_replacement(d).lower() for d in extension.requires]
                depends = [d for d in depends if d in pool]

                if all(d in placed for d in depends):
                    ordered.append(code)
                    placed.add(code)
                    del checklist[code]
                    progressed = True

            if not progressed:
                raise CircularDependencyError(bound, [pool[c].identifier for c in checklist])

        return [pool[code] for code in ordered]

    def detect_replacements(
        self,
        version_of: Callable[[Extension], Optional[str]]
    ) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
        """
        Decide which of each replaced/replacing pair stays active

        A replacement takes effect when the replacing extension's constraint
        accepts the replaced extension's version; otherwise the replacement
        alias is dropped.

        Args:
            version_of: Returns the version of a replaced extension

        Returns:
            (replaced, failed) lists of (target, replacement) identifiers
        """
        replaced: List[Tuple[str, str]] = []
        failed: List[Tuple[str, str]] = []
        self.active_replacements = {}

        for target, replacement in list(self.replacement_map.items()):
            # A replaced extension that is not present can always be replaced
            if target not in self.extensions or replacement not in self.extensions:
                continue

            replacing = self.extensions[replacement]
            constraint = next(
                (c for code, c in replacing.replaces.items() if code.lower() == target), "*"
            )
            version = version_of(self.extensions[target]) or "0"

            try:
                accepted = satisfies(version, constraint)
            except ValueError:
                logger.warning(
                    f"{replacing.identifier}: invalid replacement constraint '{constraint}'"
                )
                accepted = False

            pair = (self.normalize_identifier(target), self.normalize_identifier(replacement))
            if accepted:
                self.active_replacements[target] = replacement
                replaced.append(pair)
            else:
                del self.replacement_map[target]
                failed.append(pair)

        return replaced, failed

    def restore_replacements(self, replacement_map: Dict[str, str], active: Dict[str, str]) -> None:
        """Reinstate replacement maps computed earlier (e.g. from the flag cache)"""
        self.replacement_map = dict(replacement_map)
        self.active_replacements = dict(active)

    def get_active_replacement(self, target: str) -> Optional[str]:
        code = self.active_replacements.get(target.lower())
        return self.normalize_identifier(code) if code else None

    def find_extensions_in_path(self, path: Path) -> Dict[str, Path]:
        """
        Find extensions of this kind anywhere below path

        Returns:
            Extension directories keyed by identifier
        """
        found: Dict[str, Path] = {}
        for descriptor in sorted(Path(path).rglob(self.descriptor_name)):
            try:
                extension = read_descriptor(self.kind, descriptor)
            except (DescriptorError, ValueError) as e:
                logger.warning(f"Ignoring {descriptor}: {e}")
                continue
            found[extension.identifier] = descriptor.parent
        return found
