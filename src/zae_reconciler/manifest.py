"""YAML manifest parsing and validation for declared stacks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ManifestError
from .models import LookupSpec, ResourceSpec
from .refs import parse_tokens, to_tokens

NAME_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_-]*")
"""Logical names must be usable inside ``${...}`` tokens."""

_TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"


class ManifestLoader(yaml.SafeLoader):
    """SafeLoader that leaves unquoted dates such as ``2012-10-17`` as strings."""


ManifestLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != _TIMESTAMP_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _check_json_value(owner: str, value: Any, path: str) -> None:
    """Reject values that cannot be stored in a JSON snapshot."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ManifestError(f"{owner}: key {key!r} in '{path}' must be a string")
            _check_json_value(owner, item, f"{path}.{key}")
    elif isinstance(value, list):
        for i, item in enumerate(value):
            _check_json_value(owner, item, f"{path}[{i}]")
    elif value is not None and not isinstance(value, (str, int, float, bool)):
        raise ManifestError(
            f"{owner}: '{path}' holds a {type(value).__name__}; quote it as a string"
        )


@dataclass(frozen=True)
class ResourceDecl:
    """A single resource declaration."""

    kind: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, name: str, d: Any) -> ResourceDecl:
        if not isinstance(d, dict):
            raise ManifestError(f"resource '{name}' must be a mapping")
        unknown = set(d) - {"kind", "properties", "depends_on"}
        if unknown:
            raise ManifestError(f"resource '{name}' has unknown keys: {', '.join(sorted(unknown))}")

        kind = d.get("kind")
        if not isinstance(kind, str) or not kind:
            raise ManifestError(f"resource '{name}' requires a 'kind'")

        properties = d.get("properties") or {}
        if not isinstance(properties, dict):
            raise ManifestError(f"resource '{name}': 'properties' must be a mapping")
        _check_json_value(f"resource '{name}'", properties, "properties")

        depends_on = d.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(x, str) for x in depends_on):
            raise ManifestError(f"resource '{name}': 'depends_on' must be a list of names")

        return cls(kind=kind, properties=properties, depends_on=tuple(depends_on))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind, "properties": self.properties}
        if self.depends_on:
            result["depends_on"] = list(self.depends_on)
        return result


@dataclass(frozen=True)
class LookupDecl:
    """A read-only reference to a resource the stack does not manage."""

    kind: str
    identifier: str | None = None
    match: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, d: Any) -> LookupDecl:
        if not isinstance(d, dict):
            raise ManifestError(f"lookup '{name}' must be a mapping")
        unknown = set(d) - {"kind", "identifier", "match"}
        if unknown:
            raise ManifestError(f"lookup '{name}' has unknown keys: {', '.join(sorted(unknown))}")

        kind = d.get("kind")
        if not isinstance(kind, str) or not kind:
            raise ManifestError(f"lookup '{name}' requires a 'kind'")

        identifier = d.get("identifier")
        if identifier is not None and not isinstance(identifier, str):
            raise ManifestError(f"lookup '{name}': 'identifier' must be a string")

        match = d.get("match") or {}
        if not isinstance(match, dict):
            raise ManifestError(f"lookup '{name}': 'match' must be a mapping")
        _check_json_value(f"lookup '{name}'", match, "match")

        if identifier is None and not match:
            raise ManifestError(f"lookup '{name}' requires an 'identifier' or a 'match'")
        return cls(kind=kind, identifier=identifier, match=match)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind}
        if self.identifier is not None:
            result["identifier"] = self.identifier
        if self.match:
            result["match"] = self.match
        return result


@dataclass(frozen=True)
class StackManifest:
    """
    Parsed YAML manifest for a declared stack.

    Example:
        name: app-stack
        resources:
          Network:
            kind: AWS::EC2::VPC
            properties:
              CidrBlock: 10.0.0.0/16
          PublicSubnet:
            kind: AWS::EC2::Subnet
            properties:
              VpcId: ${Network.VpcId}
        lookups:
          SharedZone:
            kind: AWS::Route53::HostedZone
            match:
              Name: example.com.
        outputs:
          NetworkId: ${Network}
    """

    name: str | None = None
    resources: dict[str, ResourceDecl] = field(default_factory=dict)
    lookups: dict[str, LookupDecl] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Any) -> StackManifest:
        if d is None:
            return cls()
        if not isinstance(d, dict):
            raise ManifestError("manifest must be a mapping")

        raw = d.get("resources") or {}
        if not isinstance(raw, dict):
            raise ManifestError("'resources' must be a mapping of name to declaration")

        resources: dict[str, ResourceDecl] = {}
        for name, decl in raw.items():
            if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name):
                raise ManifestError(
                    f"invalid resource name {name!r}: use letters, digits, '-' and '_'"
                )
            resources[name] = ResourceDecl.from_dict(name, decl)

        raw_lookups = d.get("lookups") or {}
        if not isinstance(raw_lookups, dict):
            raise ManifestError("'lookups' must be a mapping of name to declaration")

        lookups: dict[str, LookupDecl] = {}
        for name, decl in raw_lookups.items():
            if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name):
                raise ManifestError(
                    f"invalid lookup name {name!r}: use letters, digits, '-' and '_'"
                )
            if name in resources:
                raise ManifestError(f"'{name}' is declared as both a resource and a lookup")
            lookups[name] = LookupDecl.from_dict(name, decl)

        outputs = d.get("outputs") or {}
        if not isinstance(outputs, dict):
            raise ManifestError("'outputs' must be a mapping of name to value")
        for name in outputs:
            if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name):
                raise ManifestError(
                    f"invalid output name {name!r}: use letters, digits, '-' and '_'"
                )
        _check_json_value("outputs", outputs, "outputs")

        stack_name = d.get("name")
        return cls(
            name=str(stack_name) if stack_name is not None else None,
            resources=resources,
            lookups=lookups,
            outputs=outputs,
        )

    @classmethod
    def from_yaml(cls, yaml_str: str) -> StackManifest:
        try:
            data = yaml.load(yaml_str, Loader=ManifestLoader)
        except yaml.YAMLError as e:
            raise ManifestError(f"invalid YAML: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: str | Path) -> StackManifest:
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as e:
            raise ManifestError(f"cannot read manifest: {e.strerror}", str(path)) from e
        try:
            return cls.from_yaml(text)
        except ManifestError as e:
            raise ManifestError(str(e), str(path)) from e

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.name is not None:
            result["name"] = self.name
        result["resources"] = {name: decl.to_dict() for name, decl in self.resources.items()}
        if self.lookups:
            result["lookups"] = {name: decl.to_dict() for name, decl in self.lookups.items()}
        if self.outputs:
            result["outputs"] = self.outputs
        return result

    def to_specs(self) -> list[ResourceSpec]:
        """Convert to resource declarations, parsing reference tokens."""
        return [
            ResourceSpec(
                name=name,
                kind=decl.kind,
                properties=parse_tokens(decl.properties),
                depends_on=decl.depends_on,
            )
            for name, decl in self.resources.items()
        ]

    def to_lookups(self) -> list[LookupSpec]:
        return [
            LookupSpec(name=name, kind=decl.kind, identifier=decl.identifier, match=decl.match)
            for name, decl in self.lookups.items()
        ]

    def to_outputs(self) -> dict[str, Any]:
        """Output values with reference tokens parsed."""
        return {name: parse_tokens(value) for name, value in self.outputs.items()}

    @classmethod
    def from_specs(cls, specs: list[ResourceSpec], name: str | None = None) -> StackManifest:
        """Build a manifest from declarations, rendering references as tokens."""
        return cls(
            name=name,
            resources={
                spec.name: ResourceDecl(
                    kind=spec.kind,
                    properties=to_tokens(spec.properties),
                    depends_on=spec.depends_on,
                )
                for spec in specs
            },
        )
