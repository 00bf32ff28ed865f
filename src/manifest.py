"""Manifest loading and validation for infrastructure orchestration.

Manifests declare the desired infrastructure as a list of resources. Each
resource has a type, a name, attributes and optional explicit dependencies.
Dependencies are also inferred from ${type.name.attr} references inside
attributes.

A manifest source may be a single YAML file or a directory of YAML files,
which are merged in filename order.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ON_ERROR_POLICIES
from errors import ValidationError
from orchestrator.references import REFERENCE_PATTERN, find_references

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')


@dataclass
class Resource:
    """A single declared resource.

    Attributes:
        type: Provider resource type (e.g. vpc, subnet, instance)
        name: Name unique within the type
        attributes: Desired attributes, may contain ${...} references
        depends_on: Explicit dependencies (resource ids)
        prevent_destroy: Refuse any plan that would destroy this resource
    """
    type: str
    name: str
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    prevent_destroy: bool = False

    @property
    def id(self) -> str:
        return f'{self.type}.{self.name}'

    @property
    def dependencies(self) -> set[str]:
        """Explicit dependencies plus every resource referenced in attributes."""
        try:
            refs = find_references(self.attributes)
        except ValueError as e:
            raise ValidationError(f"Resource '{self.id}': {e}")
        return set(self.depends_on) | refs

    @classmethod
    def from_dict(cls, data: dict) -> 'Resource':
        """Create Resource from dictionary."""
        lifecycle = data.get('lifecycle') or {}
        return cls(
            type=data['type'],
            name=data['name'],
            attributes=dict(data.get('attributes') or {}),
            depends_on=list(data.get('depends_on') or []),
            prevent_destroy=bool(lifecycle.get('prevent_destroy', False)),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
            'attributes': self.attributes,
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.prevent_destroy:
            d['lifecycle'] = {'prevent_destroy': True}
        return d


@dataclass
class ManifestSettings:
    """Optional settings for plan execution.

    Attributes:
        on_error: Failure policy override (continue, stop, rollback)
        max_workers: Parallelism override
    """
    on_error: Optional[str] = None
    max_workers: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ManifestSettings':
        """Create ManifestSettings from dictionary."""
        if not data:
            return cls()
        on_error = data.get('on_error')
        if on_error is not None and on_error not in ON_ERROR_POLICIES:
            raise ValidationError(
                f"Invalid settings.on_error '{on_error}'. "
                f"Expected one of: {', '.join(ON_ERROR_POLICIES)}"
            )
        max_workers = data.get('max_workers')
        if max_workers is not None and (not isinstance(max_workers, int) or max_workers < 1):
            raise ValidationError(f"settings.max_workers must be a positive integer, got {max_workers!r}")
        return cls(on_error=on_error, max_workers=max_workers)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.on_error is not None:
            d['on_error'] = self.on_error
        if self.max_workers is not None:
            d['max_workers'] = self.max_workers
        return d


@dataclass
class Manifest:
    """Desired infrastructure definition.

    Attributes:
        name: Human-readable manifest name
        resources: Declared resources in declaration order
        description: Optional description
        variables: Variable values after overrides (already interpolated)
        settings: Optional execution settings
        source_path: Path where manifest was loaded from (for debugging)
    """
    name: str
    resources: list[Resource]
    description: str = ''
    variables: dict = field(default_factory=dict)
    settings: ManifestSettings = field(default_factory=ManifestSettings)
    source_path: Optional[Path] = None

    def to_dict(self) -> dict:
        """Convert manifest to dictionary (for JSON serialization)."""
        result: dict[str, Any] = {
            'schema_version': 1,
            'name': self.name,
            'description': self.description,
            'resources': [r.to_dict() for r in self.resources],
        }
        if self.variables:
            result['variables'] = dict(self.variables)
        if settings := self.settings.to_dict():
            result['settings'] = settings
        return result

    @classmethod
    def from_dict(
        cls,
        data: dict,
        source_path: Optional[Path] = None,
        variables: Optional[dict] = None,
    ) -> 'Manifest':
        """Create Manifest from dictionary.

        Args:
            data: Manifest data dictionary
            source_path: Optional source path for error messages
            variables: Overrides for declared variables

        Returns:
            Validated Manifest instance

        Raises:
            ValidationError: If manifest is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValidationError(
                f"Unsupported manifest schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ValidationError("Manifest missing required field: name")
        if 'resources' not in data:
            raise ValidationError("Manifest missing required field: resources")
        if not isinstance(data['resources'], list):
            raise ValidationError("Manifest field 'resources' must be a list")

        declared = data.get('variables') or {}
        if not isinstance(declared, dict):
            raise ValidationError("Manifest field 'variables' must be a mapping")
        values = dict(declared)
        for key, value in (variables or {}).items():
            if key not in declared:
                raise ValidationError(f"Variable '{key}' is not declared in manifest '{data['name']}'")
            values[key] = value

        resources = []
        for i, resource_data in enumerate(data['resources']):
            if not isinstance(resource_data, dict):
                raise ValidationError(f"Resource {i} must be a mapping")
            for key in ('type', 'name'):
                if key not in resource_data:
                    raise ValidationError(
                        f"Resource {i} ({resource_data.get('name', 'unnamed')}) missing required field: {key}"
                    )
                if not IDENTIFIER_PATTERN.match(str(resource_data[key])):
                    raise ValidationError(
                        f"Resource {i} has invalid {key} '{resource_data[key]}' "
                        "(letters, digits, '_' and '-' only)"
                    )
            label = f"Resource {i} ({resource_data['name']})"
            if not isinstance(resource_data.get('attributes') or {}, dict):
                raise ValidationError(f"{label} attributes must be a mapping")
            if not isinstance(resource_data.get('depends_on') or [], list):
                raise ValidationError(f"{label} depends_on must be a list of resource ids")
            lifecycle = resource_data.get('lifecycle') or {}
            if not isinstance(lifecycle, dict):
                raise ValidationError(f"{label} lifecycle must be a mapping")
            if not isinstance(lifecycle.get('prevent_destroy', False), bool):
                raise ValidationError(f"{label} lifecycle.prevent_destroy must be true or false")
            resource = Resource.from_dict(resource_data)
            if not all(isinstance(d, str) for d in resource.depends_on):
                raise ValidationError(f"Resource '{resource.id}' depends_on must list resource ids")
            resource.attributes = interpolate_variables(resource.attributes, values, resource.id)
            resources.append(resource)

        _validate_resources(resources)

        return cls(
            name=data['name'],
            description=data.get('description', ''),
            resources=resources,
            variables=values,
            settings=ManifestSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str, variables: Optional[dict] = None) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid manifest JSON: {e}")
        if not isinstance(data, dict):
            raise ValidationError("Manifest JSON must be an object")
        return cls.from_dict(data, variables=variables)


def interpolate_variables(value: Any, variables: dict, owner: str) -> Any:
    """Substitute ${var.name} references; other references are left as-is.

    Raises:
        ValidationError: If a referenced variable is not defined
    """
    if isinstance(value, dict):
        return {k: interpolate_variables(v, variables, owner) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_variables(v, variables, owner) for v in value]
    if not isinstance(value, str) or '${var.' not in value:
        return value

    def _lookup(expression: str) -> Any:
        name = expression[len('var.'):]
        if name not in variables:
            raise ValidationError(f"Resource '{owner}' references undefined variable '{name}'")
        return variables[name]

    whole = REFERENCE_PATTERN.fullmatch(value.strip())
    if whole and whole.group(1).strip().startswith('var.'):
        return _lookup(whole.group(1).strip())

    def _substitute(match: re.Match) -> str:
        expression = match.group(1).strip()
        if not expression.startswith('var.'):
            return match.group(0)
        return str(_lookup(expression))

    return REFERENCE_PATTERN.sub(_substitute, value)


def _validate_resources(resources: list[Resource]) -> None:
    """Check for duplicate ids and dependencies on undeclared resources.

    Cycles are detected when the graph is built.

    Raises:
        ValidationError: If validation fails
    """
    seen: set[str] = set()
    for resource in resources:
        if resource.id in seen:
            raise ValidationError(f"Duplicate resource: '{resource.id}'")
        seen.add(resource.id)

    for resource in resources:
        for dep in sorted(resource.dependencies):
            if dep not in seen:
                raise ValidationError(
                    f"Resource '{resource.id}' references unknown resource '{dep}'"
                )


class ManifestLoader:
    """Loads manifests from a YAML file or a directory of YAML files."""

    def load_file(self, path: Path, variables: Optional[dict] = None) -> Manifest:
        """Load manifest from a single YAML file.

        Raises:
            ValidationError: If file not found or invalid
        """
        data = self._read(path)
        return Manifest.from_dict(data, source_path=path, variables=variables)

    def load_dir(self, path: Path, variables: Optional[dict] = None) -> Manifest:
        """Load and merge every *.yaml / *.yml file in a directory.

        The first file providing 'name' names the manifest; otherwise the
        directory name is used. Resources and variables are concatenated,
        settings are merged with later files winning.
        """
        files = sorted(p for p in path.iterdir() if p.suffix in ('.yaml', '.yml') and p.is_file())
        if not files:
            raise ValidationError(f"No manifest files (*.yaml) found in {path}")

        merged: dict[str, Any] = {'resources': [], 'variables': {}, 'settings': {}}
        for file in files:
            data = self._read(file)
            logger.debug(f"Merging manifest file {file}")
            if 'name' in data and 'name' not in merged:
                merged['name'] = data['name']
                merged['description'] = data.get('description', '')
            if 'schema_version' in data:
                merged['schema_version'] = data['schema_version']
            merged['resources'].extend(data.get('resources') or [])
            for key, value in (data.get('variables') or {}).items():
                if key in merged['variables']:
                    raise ValidationError(f"Variable '{key}' declared more than once ({file})")
                merged['variables'][key] = value
            merged['settings'].update(data.get('settings') or {})

        merged.setdefault('name', path.name)
        return Manifest.from_dict(merged, source_path=path, variables=variables)

    @staticmethod
    def _read(path: Path) -> dict:
        if not path.exists():
            raise ValidationError(f"Manifest file not found: {path}")
        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML in manifest {path}: {e}")
        if not isinstance(data, dict):
            raise ValidationError(f"Manifest {path} must be a YAML object (dict)")
        return data


def parse_var_args(pairs: Optional[list[str]]) -> dict:
    """Parse repeated --var key=value arguments.

    Values are parsed as YAML scalars so numbers and booleans keep their type.
    """
    result: dict[str, Any] = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise ValidationError(f"Invalid --var '{pair}': expected key=value")
        key, raw = pair.split('=', 1)
        try:
            result[key.strip()] = yaml.safe_load(raw) if raw else ''
        except yaml.YAMLError:
            result[key.strip()] = raw
    return result


def load_manifest(
    path: Optional[str] = None,
    json_str: Optional[str] = None,
    variables: Optional[dict] = None,
) -> Manifest:
    """Load manifest from various sources.

    Priority:
    1. json_str - Inline JSON
    2. path - YAML file or directory of YAML files

    Raises:
        ValidationError: If manifest not found or invalid
    """
    if json_str:
        return Manifest.from_json(json_str, variables=variables)
    if not path:
        raise ValidationError("No manifest specified")

    loader = ManifestLoader()
    source = Path(path)
    if source.is_dir():
        return loader.load_dir(source, variables=variables)
    return loader.load_file(source, variables=variables)
