"""Parse Maven pom.xml and maven-metadata.xml documents using lxml."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Mapping, Sequence

from lxml import etree
from pydantic import BaseModel, Field

from j_dep_core.exceptions import PomModelError, PomNotFoundError, PomParseError
from j_dep_core.models import (
    DEFAULT_TYPE,
    UNKNOWN_VERSION,
    Coordinate,
    Dependency,
    Exclusion,
    Scope,
    SnapshotMetadata,
)

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")

_PROJECT = "/*[local-name()='project']"
_DEPENDENCIES = _PROJECT + "/*[local-name()='dependencies']/*[local-name()='dependency']"
_MANAGED = (
    _PROJECT
    + "/*[local-name()='dependencyManagement']"
    + "/*[local-name()='dependencies']/*[local-name()='dependency']"
)


class PomDependency(BaseModel):
    """A <dependency> element as written, before management and interpolation."""

    group_id: str
    artifact_id: str
    version: str | None = None
    classifier: str = ""
    type: str = DEFAULT_TYPE
    scope: str | None = None
    optional: bool = False
    exclusions: list[Exclusion] = Field(default_factory=list)

    def management_key(self) -> tuple[str, str, str, str]:
        return (self.group_id, self.artifact_id, self.type, self.classifier)


class PomParent(BaseModel):
    group_id: str
    artifact_id: str
    version: str

    def coordinate(self) -> Coordinate:
        return Coordinate(group=self.group_id, name=self.artifact_id, version=self.version, type="pom")


class PomModel(BaseModel):
    """A parsed Maven project model."""

    group_id: str | None = None
    artifact_id: str
    version: str | None = None
    packaging: str = DEFAULT_TYPE
    parent: PomParent | None = None
    properties: dict[str, str] = Field(default_factory=dict)
    dependencies: list[PomDependency] = Field(default_factory=list)
    dependency_management: list[PomDependency] = Field(default_factory=list)

    def coordinate(self) -> Coordinate:
        return Coordinate(
            group=self.group_id or UNKNOWN_VERSION,
            name=self.artifact_id,
            version=self.version or UNKNOWN_VERSION,
            type="pom",
        )


def _text_first(node: etree._Element, xpath_expr: str) -> str | None:
    """Get text of the first matching element using namespace-agnostic XPath.

    Args:
        node: Root element to query under.
        xpath_expr: XPath expression (should use local-name()).

    Returns:
        Text content if found and non-empty, otherwise None.
    """
    found = node.xpath(xpath_expr)
    if not found:
        return None
    first = found[0]
    if isinstance(first, etree._Element):
        text = (first.text or "").strip()
        return text or None
    if isinstance(first, str):
        text = first.strip()
        return text or None
    return None


def _bool_text(value: str | None) -> bool | None:
    """Convert Maven boolean-ish text to bool.

    Args:
        value: String like 'true'/'false' or None.

    Returns:
        True/False for recognized values, otherwise None.
    """
    if value is None:
        return None
    v = value.strip().lower()
    if v == "true":
        return True
    if v == "false":
        return False
    return None


def _parse_xml(data: bytes, source: str) -> etree._Element:
    """Parse XML bytes and return the root element.

    Raises:
        PomParseError: If XML cannot be parsed.
    """
    try:
        parser = etree.XMLParser(resolve_entities=False, no_network=True, recover=False)
        return etree.fromstring(data, parser=parser)
    except (ValueError, etree.XMLSyntaxError) as exc:
        raise PomParseError(f"Failed to parse XML: {source}") from exc


def _read_source(pom: str | Path | bytes, source: str | None) -> tuple[bytes, str]:
    if isinstance(pom, bytes):
        return pom, source or "<bytes>"
    path = Path(pom)
    if not path.exists():
        raise PomNotFoundError(f"pom.xml not found: {path}")
    try:
        return path.read_bytes(), source or str(path)
    except OSError as exc:
        raise PomParseError(f"Failed to read pom.xml: {path}") from exc


def _resolve_placeholders(value: str, props: Mapping[str, str]) -> str:
    """Resolve ${...} placeholders using provided properties.

    Unknown placeholders are preserved as-is.
    """
    current = value
    for _ in range(5):
        changed = False

        def _sub(m: re.Match[str]) -> str:
            nonlocal changed
            key = m.group(1)
            replacement = props.get(key)
            if replacement:
                changed = True
                return replacement
            return m.group(0)

        nxt = _PLACEHOLDER_RE.sub(_sub, current)
        current = nxt
        if not changed:
            break
    return current


def _normalize_version(value: str | None, props: Mapping[str, str]) -> str:
    """Resolve and normalize a Maven version string.

    Rules:
      - Missing version => "Unknown"
      - If placeholders remain after resolution (e.g. "${x.y}"), treat as unresolved => "Unknown"
    """
    if value is None:
        return UNKNOWN_VERSION

    resolved = _resolve_placeholders(value, props).strip()
    if not resolved:
        return UNKNOWN_VERSION

    if _PLACEHOLDER_RE.search(resolved):
        return UNKNOWN_VERSION

    return resolved


def _parse_properties(root: etree._Element) -> dict[str, str]:
    props: dict[str, str] = {}
    nodes = root.xpath(_PROJECT + "/*[local-name()='properties']/*")
    for n in nodes:
        if not isinstance(n, etree._Element):
            continue
        key = etree.QName(n).localname
        val = (n.text or "").strip()
        if key and val:
            props[key] = val
    return props


def _parse_dependency_nodes(root: etree._Element, xpath_expr: str) -> list[PomDependency]:
    deps: list[PomDependency] = []
    for dep in root.xpath(xpath_expr):
        group_id = _text_first(dep, "./*[local-name()='groupId']")
        artifact_id = _text_first(dep, "./*[local-name()='artifactId']")
        if group_id is None or artifact_id is None:
            continue

        exclusions = []
        for ex in dep.xpath("./*[local-name()='exclusions']/*[local-name()='exclusion']"):
            exclusions.append(
                Exclusion(
                    group=_text_first(ex, "./*[local-name()='groupId']") or "*",
                    name=_text_first(ex, "./*[local-name()='artifactId']") or "*",
                )
            )

        deps.append(
            PomDependency(
                group_id=group_id,
                artifact_id=artifact_id,
                version=_text_first(dep, "./*[local-name()='version']"),
                classifier=_text_first(dep, "./*[local-name()='classifier']") or "",
                type=_text_first(dep, "./*[local-name()='type']") or DEFAULT_TYPE,
                scope=_text_first(dep, "./*[local-name()='scope']"),
                optional=_bool_text(_text_first(dep, "./*[local-name()='optional']")) or False,
                exclusions=exclusions,
            )
        )
    return deps


def parse_pom(pom: str | Path | bytes, source: str | None = None) -> PomModel:
    """Parse a Maven pom.xml as written, without parent merging or interpolation.

    Notes:
        - Namespace handling: uses `local-name()` XPath so it works with or without XML namespaces.
        - groupId and version may be missing here; they are inherited in `merge_parent`.

    Args:
        pom: Path to a pom.xml, or its raw bytes.
        source: Name used in error messages.

    Raises:
        PomNotFoundError: If a path is given and it does not exist.
        PomParseError: If XML cannot be parsed.
        PomModelError: If required fields are missing.

    Returns:
        A `PomModel` holding the raw project data.
    """
    data, source_name = _read_source(pom, source)
    root = _parse_xml(data, source_name)

    if etree.QName(root).localname != "project":
        raise PomModelError(f"Root element is not <project>: {source_name}")

    artifact_id = _text_first(root, _PROJECT + "/*[local-name()='artifactId']")
    if artifact_id is None:
        raise PomModelError(f"Missing required <artifactId> in {source_name}")

    parent = None
    parent_group_id = _text_first(root, _PROJECT + "/*[local-name()='parent']/*[local-name()='groupId']")
    parent_artifact_id = _text_first(
        root, _PROJECT + "/*[local-name()='parent']/*[local-name()='artifactId']"
    )
    parent_version = _text_first(root, _PROJECT + "/*[local-name()='parent']/*[local-name()='version']")
    if parent_group_id and parent_artifact_id and parent_version:
        parent = PomParent(group_id=parent_group_id, artifact_id=parent_artifact_id, version=parent_version)

    return PomModel(
        group_id=_text_first(root, _PROJECT + "/*[local-name()='groupId']"),
        artifact_id=artifact_id,
        version=_text_first(root, _PROJECT + "/*[local-name()='version']"),
        packaging=_text_first(root, _PROJECT + "/*[local-name()='packaging']") or DEFAULT_TYPE,
        parent=parent,
        properties=_parse_properties(root),
        dependencies=_parse_dependency_nodes(root, _DEPENDENCIES),
        dependency_management=_parse_dependency_nodes(root, _MANAGED),
    )


def merge_parent(child: PomModel, parent: PomModel) -> PomModel:
    """Apply Maven inheritance: the child keeps what it declares and gains the rest."""
    properties = dict(parent.properties)
    properties.update(child.properties)
    return child.model_copy(
        update={
            "group_id": child.group_id or parent.group_id,
            "version": child.version or parent.version,
            "properties": properties,
            "dependencies": child.dependencies + parent.dependencies,
            "dependency_management": child.dependency_management + parent.dependency_management,
        }
    )


def _builtin_properties(pom: PomModel) -> dict[str, str]:
    group_id = pom.group_id or ""
    version = pom.version or UNKNOWN_VERSION
    builtins: dict[str, str] = {
        "project.groupId": group_id,
        "project.artifactId": pom.artifact_id,
        "project.version": version,
        "project.packaging": pom.packaging,
        "pom.groupId": group_id,
        "pom.artifactId": pom.artifact_id,
        "pom.version": version,
        "groupId": group_id,
        "artifactId": pom.artifact_id,
        "version": version,
    }
    if pom.parent is not None:
        builtins["project.parent.groupId"] = pom.parent.group_id
        builtins["project.parent.version"] = pom.parent.version
    return builtins


def _interpolate_dependency(dep: PomDependency, props: Mapping[str, str]) -> PomDependency:
    return dep.model_copy(
        update={
            "group_id": _resolve_placeholders(dep.group_id, props),
            "artifact_id": _resolve_placeholders(dep.artifact_id, props),
            "version": None if dep.version is None else _normalize_version(dep.version, props),
            "classifier": _resolve_placeholders(dep.classifier, props),
            "type": _resolve_placeholders(dep.type, props),
            "scope": None if dep.scope is None else _resolve_placeholders(dep.scope, props).lower(),
        }
    )


def interpolate(pom: PomModel) -> PomModel:
    """Resolve ${...} placeholders everywhere they matter for resolution."""
    merged_props = {**pom.properties, **_builtin_properties(pom)}
    return pom.model_copy(
        update={
            "group_id": None if pom.group_id is None else _resolve_placeholders(pom.group_id, merged_props),
            "version": None if pom.version is None else _normalize_version(pom.version, merged_props),
            "packaging": _resolve_placeholders(pom.packaging, merged_props),
            "dependencies": [_interpolate_dependency(d, merged_props) for d in pom.dependencies],
            "dependency_management": [
                _interpolate_dependency(d, merged_props) for d in pom.dependency_management
            ],
        }
    )


def import_entries(pom: PomModel) -> list[Coordinate]:
    """BOM coordinates referenced by `<scope>import</scope>` in dependencyManagement."""
    imports = []
    for managed in pom.dependency_management:
        if managed.scope != "import":
            continue
        if managed.type != "pom":
            logger.warning(
                "Managed dependency %s:%s has scope import but type %s, ignoring",
                managed.group_id,
                managed.artifact_id,
                managed.type,
            )
            continue
        if not managed.version or managed.version == UNKNOWN_VERSION:
            continue
        imports.append(
            Coordinate(group=managed.group_id, name=managed.artifact_id, version=managed.version, type="pom")
        )
    return imports


def managed_entries(pom: PomModel) -> list[PomDependency]:
    """dependencyManagement templates of an interpolated POM; imports left out, first declaration per key."""
    managed: dict[tuple[str, str, str, str], PomDependency] = {}
    for entry in pom.dependency_management:
        if entry.scope == "import":
            continue
        managed.setdefault(entry.management_key(), entry)
    return list(managed.values())


def combine_management(
    transitive: Sequence[PomDependency], own: Sequence[PomDependency]
) -> tuple[PomDependency, ...]:
    """Management handed to the next level; entries of the requesting side win."""
    combined: dict[tuple[str, str, str, str], PomDependency] = {}
    for entry in (*transitive, *own):
        combined.setdefault(entry.management_key(), entry)
    return tuple(combined.values())


def apply_management(dependency: Dependency, management: Sequence[PomDependency]) -> Dependency:
    """Apply a requesting POM's dependencyManagement to a transitive dependency.

    A matching template (same group, name, type and classifier) replaces the
    version and the scope when it sets them. Exclusions are merged.
    """
    coordinate = dependency.coordinate
    key = (coordinate.group, coordinate.name, coordinate.type, coordinate.classifier)
    template = next((m for m in management if m.management_key() == key), None)
    if template is None:
        return dependency

    update: dict[str, object] = {}
    if template.version and template.version != UNKNOWN_VERSION:
        update["coordinate"] = coordinate.with_version(template.version)
    if template.scope:
        scope = Scope.parse(template.scope)
        if scope is None:
            logger.debug("Ignoring managed scope %s of %s", template.scope, coordinate)
        else:
            update["scope"] = scope
    if template.exclusions:
        update["exclusions"] = dependency.exclusions | frozenset(template.exclusions)
    managed = dependency.model_copy(update=update)
    if managed != dependency:
        logger.debug("Managed %s to %s", dependency.label(), managed.label())
    return managed


def effective_dependencies(pom: PomModel) -> list[Dependency]:
    """Turn an interpolated POM's <dependencies> into resolver input.

    Missing versions and scopes are taken from dependencyManagement (first
    declaration wins) and managed exclusions are added. A version that still
    cannot be determined stays "Unknown" so the resolver can report it.
    """
    managed = {entry.management_key(): entry for entry in managed_entries(pom)}

    result: list[Dependency] = []
    seen: set[tuple[str, str, str, str]] = set()
    for dep in pom.dependencies:
        key = dep.management_key()
        if key in seen:
            # A child redeclaring what its parent declares wins.
            continue
        seen.add(key)

        template = managed.get(key)
        version = dep.version
        scope_text = dep.scope
        exclusions = list(dep.exclusions)
        if template is not None:
            version = version or template.version
            scope_text = scope_text or template.scope
            exclusions.extend(template.exclusions)

        scope = Scope.parse(scope_text) if scope_text else Scope.COMPILE
        if scope is None:
            logger.debug(
                "Skipping %s:%s with unsupported scope %s", dep.group_id, dep.artifact_id, scope_text
            )
            continue

        result.append(
            Dependency(
                coordinate=Coordinate(
                    group=dep.group_id,
                    name=dep.artifact_id,
                    version=version or UNKNOWN_VERSION,
                    classifier=dep.classifier,
                    type=dep.type,
                ),
                scope=scope,
                exclusions=frozenset(exclusions),
                optional=dep.optional,
            )
        )
    return result


def parse_snapshot_metadata(data: bytes, source: str = "<maven-metadata.xml>") -> SnapshotMetadata:
    """Read <versioning><snapshot> from a maven-metadata.xml document.

    A document without a snapshot timestamp (or with localCopy=true) describes
    a non-unique snapshot.

    Raises:
        PomParseError: If the XML is malformed or is not a <metadata> document.
    """
    root = _parse_xml(data, source)
    if etree.QName(root).localname != "metadata":
        raise PomParseError(f"Root element is not <metadata>: {source}")

    base = "/*[local-name()='metadata']/*[local-name()='versioning']/*[local-name()='snapshot']"
    timestamp = _text_first(root, base + "/*[local-name()='timestamp']")
    build_text = _text_first(root, base + "/*[local-name()='buildNumber']")
    local_copy = _bool_text(_text_first(root, base + "/*[local-name()='localCopy']"))

    if local_copy or timestamp is None:
        return SnapshotMetadata()

    try:
        build_number = int(build_text) if build_text is not None else 0
    except ValueError as exc:
        raise PomParseError(f"Invalid snapshot buildNumber {build_text!r}: {source}") from exc
    return SnapshotMetadata(timestamp=timestamp, build_number=build_number)
