# Copyright (c) Syntropy Systems
"""Sweep configuration and parameter grid expansion."""
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Optional, TypedDict, Union, cast

import yaml

from sweeplab.errors import ConfigurationError
from sweeplab.models import Combination, ParameterSpec

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence
    from pathlib import Path

    from sweeplab.models import ParamValue

class SweepParamSpec(TypedDict, total=False):
    """Parameter entry of a sweep YAML file."""

    min: float
    max: float
    step: float
    values: list[float]


@dataclass
class SweepConfig:
    """A sweep definition: one prompt, a model and the parameter ranges."""

    prompt: str
    parameters: list[ParameterSpec]
    name: Optional[str] = None
    model: Optional[str] = None
    iterations: int = 1
    weights: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: Path) -> SweepConfig:
        """Load a sweep definition from a YAML file."""
        with path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> SweepConfig:
        """Build a sweep definition from parsed YAML or JSON."""
        if not data.get("prompt"):
            msg = "Sweep config must have 'prompt' field"
            raise ConfigurationError(msg)
        if "parameters" not in data:
            msg = "Sweep config must have 'parameters' field"
            raise ConfigurationError(msg)

        raw_params = data["parameters"]
        if not isinstance(raw_params, dict):
            msg = "'parameters' must be a mapping of parameter name to range"
            raise ConfigurationError(msg)

        iterations = data.get("iterations", 1)
        if isinstance(iterations, bool) or not isinstance(iterations, int):
            msg = f"'iterations' must be an integer, got {iterations!r}"
            raise ConfigurationError(msg)

        weights = data.get("weights") or {}
        if not isinstance(weights, dict):
            msg = "'weights' must be a mapping of metric name to weight"
            raise ConfigurationError(msg)

        return cls(
            prompt=str(data["prompt"]),
            parameters=parse_parameters(cast("dict[str, SweepParamSpec]", raw_params)),
            name=cast("Optional[str]", data.get("name")),
            model=cast("Optional[str]", data.get("model")),
            iterations=iterations,
            weights=cast("dict[str, float]", weights),
        )


def parse_parameters(parameters: dict[str, SweepParamSpec]) -> list[ParameterSpec]:
    """Turn the ``parameters`` mapping of a sweep file into specs.

    Each parameter either has min/max/step or a single-element ``values``
    list, which is shorthand for a fixed value.
    """
    specs: list[ParameterSpec] = []
    for name, entry in parameters.items():
        if not isinstance(entry, dict):
            msg = f"Parameter '{name}' must be a mapping with min/max/step"
            raise ConfigurationError(msg)
        if "values" in entry:
            values = entry["values"]
            if not isinstance(values, list) or len(values) != 1:
                msg = f"Parameter '{name}': 'values' must hold exactly one value"
                raise ConfigurationError(msg)
            value = _require_number(name, "values", values[0])
            specs.append(ParameterSpec(name=name, min=value, max=value, step=1))
            continue
        missing = [k for k in ("min", "max", "step") if k not in entry]
        if missing:
            msg = f"Parameter '{name}' is missing {', '.join(missing)}"
            raise ConfigurationError(msg)
        specs.append(
            ParameterSpec(
                name=name,
                min=_require_number(name, "min", entry["min"]),
                max=_require_number(name, "max", entry["max"]),
                step=_require_number(name, "step", entry["step"]),
            )
        )
    return specs


def _require_number(name: str, key: str, value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"Parameter '{name}': '{key}' must be a number, got {value!r}"
        raise ConfigurationError(msg)
    return value


def _decimal(value: float) -> Decimal:
    # str() keeps the literal the user wrote (0.1 stays 0.1, not 0.1000000000000000055)
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        msg = f"Not a finite number: {value!r}"
        raise ConfigurationError(msg) from e


def validate_spec(spec: ParameterSpec) -> None:
    """Raise ConfigurationError if the parameter spec cannot be expanded."""
    start, stop, step = _decimal(spec.min), _decimal(spec.max), _decimal(spec.step)
    if not (start.is_finite() and stop.is_finite() and step.is_finite()):
        msg = f"Parameter spec {spec.describe()} has a non-finite bound"
        raise ConfigurationError(msg)
    if step <= 0:
        msg = f"Parameter spec {spec.describe()} must have step > 0"
        raise ConfigurationError(msg)
    if start > stop:
        msg = f"Parameter spec {spec.describe()} must have min <= max"
        raise ConfigurationError(msg)


def validate_specs(specs: Sequence[ParameterSpec]) -> None:
    """Validate every spec and reject duplicate names."""
    seen: set[str] = set()
    for spec in specs:
        if not spec.name:
            msg = "Parameter spec must have a name"
            raise ConfigurationError(msg)
        if spec.name in seen:
            msg = f"Parameter '{spec.name}' is specified more than once"
            raise ConfigurationError(msg)
        seen.add(spec.name)
        validate_spec(spec)


def count_values(spec: ParameterSpec) -> int:
    """Number of values a spec expands to: floor((max - min) / step) + 1."""
    validate_spec(spec)
    span = _decimal(spec.max) - _decimal(spec.min)
    return int(span // _decimal(spec.step)) + 1


def _places(value: Decimal) -> int:
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 0


def spec_values(spec: ParameterSpec) -> list[ParamValue]:
    """Expand one spec into its ordered values.

    Values are computed in decimal arithmetic and rounded to the decimal
    places of min or step, whichever is finer, so 0.1 steps never produce
    0.30000000000000004 and no two values collapse into one.
    A spec whose bounds and step are all whole numbers yields ints.
    """
    start, step = _decimal(spec.min), _decimal(spec.step)
    quantum = Decimal(1).scaleb(-max(_places(start), _places(step)))
    integral = all(float(v).is_integer() for v in (spec.min, spec.max, spec.step))

    values: list[ParamValue] = []
    for i in range(count_values(spec)):
        value = (start + step * i).quantize(quantum, rounding=ROUND_HALF_EVEN)
        values.append(int(value) if integral else float(value))
    return values


def expand(specs: Sequence[ParameterSpec]) -> list[Combination]:
    """Expand specs into the full ordered cartesian product.

    The first spec is the outermost loop, so re-running with the same specs
    always produces the same indexing. Invalid specs raise ConfigurationError
    before anything is produced.
    """
    validate_specs(specs)
    return list(iter_combinations(specs))


def iter_combinations(specs: Iterable[ParameterSpec]) -> Iterator[Combination]:
    """Lazily yield combinations in expansion order. Specs must be validated."""
    spec_list = list(specs)
    names = [spec.name for spec in spec_list]
    value_lists = [spec_values(spec) for spec in spec_list]
    for index, combo in enumerate(itertools.product(*value_lists)):
        yield Combination(index=index, values=dict(zip(names, combo)))


def grid_size(specs: Sequence[ParameterSpec]) -> int:
    """Number of combinations expand() would produce."""
    validate_specs(specs)
    total = 1
    for spec in specs:
        total *= count_values(spec)
    return total


def format_value(value: Union[int, float]) -> str:
    """Format a parameter value for tables and CSV headers."""
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)
