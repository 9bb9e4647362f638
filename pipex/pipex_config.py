from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
import collections.abc

import yaml

from pipex.pipex_datatypes import ConfigurationError


STRATEGIES = ("nested", "eager", "lazy")
SCOPE_KINDS = ("current", "new", "closure")
NULLABLE_OPTIONS = frozenset({"max_depth"})

# Set to any value to print engine debug lines to stderr.
DEBUG_ENV_VAR = "PIPEX_DEBUG"


def debug_enabled() -> bool:
    return bool(os.environ.get(DEBUG_ENV_VAR))


@dataclass(frozen=True)
class PipeConfig:
    """The recognized options of a pipeline evaluation.

    - strategy: how the pipeline is rewritten ('nested' | 'eager' | 'lazy')
    - scope_kind: where the rewritten form runs ('current' | 'new' | 'closure')
    - placeholder_name: identifier standing for the upstream value
    - allow_multi_reference: when False, a stage naming the placeholder more
      than once is rejected at rewrite time
    - max_depth: evaluator nesting limit (None disables the check)
    - trace: record stage/cleanup/teardown events as side effects
    """
    strategy: str = "lazy"
    scope_kind: str = "current"
    placeholder_name: str = "_"
    allow_multi_reference: bool = True
    max_depth: Optional[int] = 150
    trace: bool = False

    def __post_init__(self):
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(f"unknown strategy {self.strategy!r}; expected one of {', '.join(STRATEGIES)}")
        if self.scope_kind not in SCOPE_KINDS:
            raise ConfigurationError(f"unknown scope_kind {self.scope_kind!r}; expected one of {', '.join(SCOPE_KINDS)}")
        name = self.placeholder_name
        if not isinstance(name, str) or not name or "." in name or any(c.isspace() for c in name):
            raise ConfigurationError(f"invalid placeholder_name {name!r}")
        if not isinstance(self.allow_multi_reference, bool):
            raise ConfigurationError("allow_multi_reference must be a bool")
        if self.max_depth is not None and (
            isinstance(self.max_depth, bool) or not isinstance(self.max_depth, int) or self.max_depth < 1
        ):
            raise ConfigurationError(f"max_depth must be a positive int or None, got {self.max_depth!r}")
        if not isinstance(self.trace, bool):
            raise ConfigurationError("trace must be a bool")

    @classmethod
    def from_mapping(cls, data: collections.abc.Mapping) -> 'PipeConfig':
        if not isinstance(data, collections.abc.Mapping):
            raise ConfigurationError(f"config must be a mapping, not {type(data).__name__}")
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"unknown config option(s): {', '.join(map(str, unknown))}")
        return cls(**dict(data))

    def replace(self, **overrides) -> 'PipeConfig':
        """A copy with the given options changed.

        `dataclasses.MISSING` means "not given". None is also skipped, except
        for options where None is itself a value (max_depth=None turns the
        depth check off).
        """
        changes = {
            k: v for k, v in overrides.items()
            if v is not dataclasses.MISSING and (v is not None or k in NULLABLE_OPTIONS)
        }
        if not changes:
            return self
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ConfigurationError(f"unknown config option(s): {', '.join(unknown)}")
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


# --------------------------
# Files
# --------------------------

def detect_format(path: str | Path, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml' from the file suffix, falling back to sniffing
    the text when the suffix is not recognized.
    """
    suffix = Path(path).suffix.lower()
    if suffix == ".json":
        return "json"
    if suffix in (".yaml", ".yml"):
        return "yaml"
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith("{"):
            return "json"
        # Anything else is read as YAML
        return "yaml"
    return None


def load_config(path: str | Path) -> PipeConfig:
    """Reads a PipeConfig from a YAML or JSON file.

    The options may sit at the top level or under a `pipex:` key.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"config file not found: {path}")
    fmt = detect_format(p, text)
    try:
        if fmt == "json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"could not parse {p.name}: {e}") from e
    if data is None:
        return PipeConfig()
    if isinstance(data, collections.abc.Mapping) and "pipex" in data:
        data = data["pipex"] or {}
    return PipeConfig.from_mapping(data)


def dump_config(config: PipeConfig, *, fmt: str = "yaml") -> str:
    f = (fmt or "").lower()
    data = config.to_dict()
    if f == "json":
        return json.dumps(data, indent=2)
    if f == "yaml":
        return yaml.safe_dump(data, sort_keys=False)
    raise ValueError(f"Unsupported config format: {fmt!r}")


__all__ = [
    "PipeConfig",
    "STRATEGIES",
    "SCOPE_KINDS",
    "NULLABLE_OPTIONS",
    "load_config",
    "dump_config",
    "detect_format",
    "debug_enabled",
]
