"""
Declared configuration loader.

Turns a declaration tree (plain dicts, e.g. parsed JSON) into Units:

    {
        "variables": {"hardened": {"default": false}},
        "units": [
            {"id": "aws_vpc.main", "inputs": {"cidr_block": "10.0.0.0/16"}},
            {
                "id": "aws_instance.web",
                "inputs": {"subnet_id": {"$ref": "module.net", "output": "subnet_ids", "index": 0}},
                "variants": {"true": {"inputs": {"ami": "ami-hardened"}},
                             "false": {"inputs": {"ami": "ami-stock"}}},
                "variant": {"$var": "hardened"}
            }
        ],
        "modules": [
            {"name": "net",
             "variables": {"vpc_id": {"$ref": "aws_vpc.main", "output": "id"}},
             "source": {"variables": {"vpc_id": {}},
                        "units": [...],
                        "outputs": {"subnet_ids": [...]}}}
        ]
    }

Units inside a module are prefixed "module.<name>.". A reference to
"module.<name>" reads one of the module's outputs and becomes a reference
to whatever the output points at inside the module.
"""
from __future__ import annotations
import copy
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .engine.errors import DeclarationError
from .engine.unit import Lifecycle, Reference, Unit, UnitRegistry, UnitTemplate, UnitVariant

logger = logging.getLogger(__name__)

MODULE_PREFIX = "module."


# ---- Declaration schema -----------------------------------------------------

class LifecycleDecl(BaseModel):
    model_config = ConfigDict(extra="forbid")

    force_new: List[str] = Field(default_factory=list)
    create_before_destroy: bool = False
    ignore_changes: List[str] = Field(default_factory=list)
    prevent_destroy: bool = False

    def to_lifecycle(self) -> Lifecycle:
        return Lifecycle(
            force_new=frozenset(self.force_new),
            create_before_destroy=self.create_before_destroy,
            ignore_changes=frozenset(self.ignore_changes),
            prevent_destroy=self.prevent_destroy,
        )


class VariableDecl(BaseModel):
    """A module or root variable; without a default it must be supplied."""
    model_config = ConfigDict(extra="forbid")

    default: Any = None
    description: str = ""

    @property
    def required(self) -> bool:
        return "default" not in self.model_fields_set


class VariantDecl(BaseModel):
    model_config = ConfigDict(extra="forbid")

    inputs: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    lifecycle: Optional[LifecycleDecl] = None


class UnitDecl(BaseModel):
    """
    One declared unit. With `variants`, `variant` picks the shape; it is a
    variant name or {"$var": name}. Boolean selectors map to "true"/"false".
    """
    model_config = ConfigDict(extra="forbid")

    id: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    lifecycle: LifecycleDecl = Field(default_factory=LifecycleDecl)
    variants: Optional[Dict[str, VariantDecl]] = None
    variant: Union[str, bool, Dict[str, Any], None] = None

    @field_validator("id")
    @classmethod
    def _check_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("unit id must be non-empty")
        if v.startswith(MODULE_PREFIX):
            raise ValueError(f"unit id {v!r} uses the reserved {MODULE_PREFIX!r} prefix")
        return v

    @model_validator(mode="after")
    def _variant_needs_variants(self):
        if self.variants is None and self.variant is not None:
            raise ValueError(f"unit {self.id!r} selects a variant but declares no variants")
        if self.variants is not None:
            if not self.variants:
                raise ValueError(f"unit {self.id!r} declares an empty variants table")
            if self.variant is None:
                raise ValueError(f"unit {self.id!r} declares variants but no variant selector")
        return self


class ConfigDecl(BaseModel):
    """A declaration tree: the root configuration or a module body."""
    model_config = ConfigDict(extra="forbid")

    variables: Dict[str, VariableDecl] = Field(default_factory=dict)
    units: List[UnitDecl] = Field(default_factory=list)
    modules: List[ModuleDecl] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unique_module_names(self):
        seen: Set[str] = set()
        for module in self.modules:
            if module.name in seen:
                raise ValueError(f"module {module.name!r} declared twice")
            seen.add(module.name)
        return self


class ModuleDecl(BaseModel):
    """A module call: a named instance of a module body plus its variable values."""
    model_config = ConfigDict(extra="forbid")

    name: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    source: ConfigDecl

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not v or "." in v:
            raise ValueError(f"module name {v!r} must be non-empty and contain no dots")
        return v


ConfigDecl.model_rebuild()
ModuleDecl.model_rebuild()


# ---- Resolution -------------------------------------------------------------

class _Scope:
    """One module instance (or the root) while its declarations are resolved."""

    def __init__(
        self,
        decl: ConfigDecl,
        prefix: str = "",
        parent: Optional[_Scope] = None,
        passed: Optional[Mapping[str, Any]] = None,
    ):
        self.decl = decl
        self.prefix = prefix
        self.parent = parent
        self._passed: Dict[str, Any] = dict(passed or {})
        self._variables: Optional[Dict[str, Any]] = None
        self._resolving_variables = False
        self._outputs: Dict[str, Any] = {}
        self._exporting: Set[str] = set()
        self.children: Dict[str, _Scope] = {
            module.name: _Scope(
                module.source,
                prefix=f"{prefix}{MODULE_PREFIX}{module.name}.",
                parent=self,
                passed=module.variables,
            )
            for module in decl.modules
        }

    @property
    def label(self) -> str:
        return self.prefix.rstrip(".") or "root"

    # -- variables ------------------------------------------------------------

    @property
    def variables(self) -> Dict[str, Any]:
        if self._variables is None:
            if self._resolving_variables:
                raise DeclarationError(f"Variables of {self.label} depend on themselves")
            self._resolving_variables = True
            try:
                self._variables = self._resolve_variables()
            finally:
                self._resolving_variables = False
        return self._variables

    def _resolve_variables(self) -> Dict[str, Any]:
        unknown = sorted(set(self._passed) - set(self.decl.variables))
        if unknown:
            raise DeclarationError(f"{self.label} has no variable(s) {unknown}")

        resolved: Dict[str, Any] = {}
        for name, var in self.decl.variables.items():
            if name in self._passed:
                value = self._passed[name]
                if self.parent is not None:
                    # values handed to a module are expressions in the caller's scope
                    value = self.parent.convert(value, f"{self.label}.variables.{name}")
                resolved[name] = value
            elif not var.required:
                resolved[name] = copy.deepcopy(var.default)
            else:
                raise DeclarationError(f"Variable {name!r} of {self.label} is required")
        return resolved

    # -- values ---------------------------------------------------------------

    def convert(self, value: Any, path: str) -> Any:
        """Replace $ref/$var markers with References and variable values."""
        if isinstance(value, Mapping):
            if "$ref" in value:
                return self._convert_ref(value, path)
            if "$var" in value:
                return self._convert_var(value, path)
            return {key: self.convert(item, f"{path}.{key}") for key, item in value.items()}
        if isinstance(value, list):
            return [self.convert(item, f"{path}[{i}]") for i, item in enumerate(value)]
        return value

    def _convert_var(self, value: Mapping[str, Any], path: str) -> Any:
        if set(value) != {"$var"}:
            raise DeclarationError(f"{path}: $var takes no other keys, got {sorted(value)}")
        name = value["$var"]
        variables = self.variables
        if name not in variables:
            raise DeclarationError(f"{path}: unknown variable {name!r} in {self.label}")
        return copy.deepcopy(variables[name])

    def _convert_ref(self, value: Mapping[str, Any], path: str) -> Any:
        extra = set(value) - {"$ref", "output", "index"}
        if extra:
            raise DeclarationError(f"{path}: unexpected keys in $ref: {sorted(extra)}")
        target, output = value["$ref"], value.get("output")
        if not isinstance(target, str) or not target:
            raise DeclarationError(f"{path}: $ref must name a unit")
        if not isinstance(output, str) or not output:
            raise DeclarationError(f"{path}: $ref to {target!r} needs an output name")

        index = value.get("index")
        if index is not None:
            index = self.convert(index, f"{path}.index")
            if isinstance(index, (Mapping, list)):
                raise DeclarationError(f"{path}: index must be a literal or a reference")

        child = self._child_for(target, path)
        if child is not None:
            return _apply_index(child.export(output, path), index, path)
        return Reference(self.prefix + target, output, index)

    def _child_for(self, target: str, path: str) -> Optional[_Scope]:
        if not target.startswith(MODULE_PREFIX):
            return None
        name = target[len(MODULE_PREFIX):]
        if "." in name:
            raise DeclarationError(
                f"{path}: {target!r} reaches inside a module; reference one of its outputs"
            )
        if name not in self.children:
            raise DeclarationError(f"{path}: unknown module {name!r} in {self.label}")
        return self.children[name]

    def export(self, name: str, path: str) -> Any:
        """Value of one of this module's outputs, converted in this scope."""
        if name not in self.decl.outputs:
            raise DeclarationError(f"{path}: {self.label} has no output {name!r}")
        if name in self._outputs:
            return self._outputs[name]
        if name in self._exporting:
            raise DeclarationError(f"{path}: output {name!r} of {self.label} depends on itself")
        self._exporting.add(name)
        try:
            value = self.convert(self.decl.outputs[name], f"{self.label}.outputs.{name}")
        finally:
            self._exporting.discard(name)
        self._outputs[name] = value
        return value

    # -- units ----------------------------------------------------------------

    def unit_ids(self) -> List[str]:
        ids = [self.prefix + decl.id for decl in self.decl.units]
        for child in self.children.values():
            ids.extend(child.unit_ids())
        return ids

    def units(self) -> List[Unit]:
        self.variables  # missing or unknown variables fail even when unused
        result = [self._build_unit(decl) for decl in self.decl.units]
        for child in self.children.values():
            result.extend(child.units())
        return result

    def _depends_on(self, names: Iterable[str], path: str) -> frozenset:
        ids: Set[str] = set()
        for name in names:
            child = self._child_for(name, path)
            if child is not None:
                # depending on a module means depending on everything in it
                ids.update(child.unit_ids())
            else:
                ids.add(self.prefix + name)
        return frozenset(ids)

    def _build_unit(self, decl: UnitDecl) -> Unit:
        unit_id = self.prefix + decl.id
        inputs = self.convert(decl.inputs, f"{unit_id}.inputs")
        depends_on = self._depends_on(decl.depends_on, f"{unit_id}.depends_on")
        lifecycle = decl.lifecycle.to_lifecycle()

        if decl.variants is None:
            return Unit(unit_id=unit_id, inputs=inputs, depends_on=depends_on, lifecycle=lifecycle)

        variants = {
            name: UnitVariant(
                inputs=self.convert(variant.inputs, f"{unit_id}.variants.{name}.inputs"),
                depends_on=self._depends_on(variant.depends_on, f"{unit_id}.variants.{name}"),
                lifecycle=variant.lifecycle.to_lifecycle() if variant.lifecycle else None,
            )
            for name, variant in decl.variants.items()
        }
        template = UnitTemplate(
            unit_id=unit_id,
            variants=variants,
            inputs=inputs,
            depends_on=depends_on,
            lifecycle=lifecycle,
        )

        selector = decl.variant
        if isinstance(selector, Mapping):
            selector = self._convert_var(selector, f"{unit_id}.variant")
        if isinstance(selector, bool):
            selector = "true" if selector else "false"
        if isinstance(selector, Reference) or selector is None:
            raise DeclarationError(
                f"{unit_id}.variant must be known before planning, got {selector!r}"
            )
        try:
            return template.select(str(selector))
        except KeyError as e:
            raise DeclarationError(e.args[0]) from e


def _apply_index(value: Any, index: Any, path: str) -> Any:
    if index is None:
        return value
    if isinstance(value, Reference):
        if value.index is not None:
            raise DeclarationError(f"{path}: module output {value} is already indexed")
        return Reference(value.unit_id, value.output, index)
    if isinstance(index, Reference):
        raise DeclarationError(f"{path}: a literal module output cannot be indexed by a reference")
    try:
        return value[index]
    except (IndexError, KeyError, TypeError) as e:
        raise DeclarationError(f"{path}: cannot index module output with {index!r}: {e}") from e


def parse_declarations(data: Union[ConfigDecl, Mapping[str, Any]]) -> ConfigDecl:
    """
    Validate a declaration tree.

    Raises:
        DeclarationError: If the tree does not match the declaration schema
    """
    if isinstance(data, ConfigDecl):
        return data
    try:
        return ConfigDecl.model_validate(data)
    except ValidationError as e:
        raise DeclarationError(f"Invalid declarations: {e}") from e


def load_declarations(
    data: Union[ConfigDecl, Mapping[str, Any]],
    variables: Optional[Mapping[str, Any]] = None,
) -> List[Unit]:
    """
    Turn a declaration tree into the Units of one planning pass.

    Args:
        data: The declaration tree (or an already validated ConfigDecl)
        variables: Values for the root variables

    Returns:
        List[Unit]: Root units first, then module units, in declaration order

    Raises:
        DeclarationError: If the tree is malformed, a variable is missing
            or unknown, or a module reference cannot be resolved
        DuplicateIdentifier: If two units end up with the same id
    """
    config = parse_declarations(data)
    root = _Scope(config, passed=variables)
    registry = UnitRegistry(root.units())
    logger.info(
        f"[DECL] Loaded {len(registry)} units "
        f"({len(config.units)} at root, {len(config.modules)} modules)"
    )
    return registry.units


def load_declarations_file(path: str, variables: Optional[Mapping[str, Any]] = None) -> List[Unit]:
    """Load units from a JSON declaration file."""
    with open(path, "r", encoding="utf-8") as fh:
        try:
            data = json.load(fh)
        except json.JSONDecodeError as e:
            raise DeclarationError(f"{path}: not valid JSON: {e}") from e
    return load_declarations(data, variables)
