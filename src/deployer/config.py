from __future__ import annotations

import copy
import os
import string
from pathlib import Path
from typing import Iterable

import yaml

from .errors import ConfigError


DEFAULT_CONFIG = "configs/deploy.yaml"
ALL_ROLE = "all"

DEFAULTS: dict = {
    "application": "app",
    "default_environment": {},
    "max_workers": 4,
    "runs_dir": "runs",
    "ssh": {"options": []},
    "roles": {},
    "hooks": [],
}


def load_config(path: str | Path) -> dict:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    try:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {p} must be a mapping")
    return data


def deep_merge(base: dict, override: dict) -> dict:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def expand_env(value):
    """Expand ``${VAR}`` references in every string of a config tree.

    An unset variable is a ``ConfigError``; write ``$$`` for a literal ``$``.
    """
    if isinstance(value, str):
        try:
            return string.Template(value).substitute(os.environ)
        except KeyError as e:
            raise ConfigError(f"Environment variable not set: {e.args[0]}") from None
        except ValueError as e:
            raise ConfigError(f"Bad variable reference in {value!r}: {e}") from None
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def resolve_stage(config: dict, stage: str) -> dict:
    """Merge the stage overlay over the base config and validate the result.

    Stage roles replace the base roles instead of merging into them.
    """
    stages = config.get("stages") or {}
    if stage not in stages:
        known = ", ".join(sorted(stages)) or "none"
        raise ConfigError(f"Unknown stage: {stage} (known: {known})")
    overlay = stages[stage] or {}
    if not isinstance(overlay, dict):
        raise ConfigError(f"Stage {stage} must be a mapping")
    base = {k: v for k, v in config.items() if k != "stages"}
    merged = deep_merge(copy.deepcopy(DEFAULTS), deep_merge(base, overlay))
    if "roles" in overlay:
        merged["roles"] = overlay["roles"]
    merged["stage"] = stage
    merged = expand_env(merged)
    validate_roles(merged["roles"])
    if not isinstance(merged["default_environment"], dict):
        raise ConfigError("default_environment must be a mapping of NAME: value")
    merged["default_environment"] = {
        str(k): "" if v is None else str(v)
        for k, v in merged["default_environment"].items()
    }
    try:
        merged["max_workers"] = int(merged["max_workers"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"max_workers must be an integer: {merged['max_workers']!r}") from e
    if merged["max_workers"] < 1:
        raise ConfigError("max_workers must be at least 1")
    return merged


def validate_roles(roles) -> None:
    if not isinstance(roles, dict) or not roles:
        raise ConfigError("roles must be a non-empty mapping of role: [hosts]")
    for name, hosts in roles.items():
        if name == ALL_ROLE:
            raise ConfigError(f"Role name '{ALL_ROLE}' is reserved")
        if isinstance(hosts, str):
            hosts = [hosts]
        if not isinstance(hosts, list) or not hosts:
            raise ConfigError(f"Role {name} must list at least one host")
        for h in hosts:
            if not isinstance(h, str) or not h.strip():
                raise ConfigError(f"Role {name} has a malformed host: {h!r}")


def role_hosts(roles: dict, role: str) -> list[str]:
    if role == ALL_ROLE:
        out: list[str] = []
        for hosts in roles.values():
            for h in [hosts] if isinstance(hosts, str) else hosts:
                if h not in out:
                    out.append(h)
        return out
    if role not in roles:
        raise ConfigError(f"Unknown role: {role}")
    hosts = roles[role]
    return [hosts] if isinstance(hosts, str) else list(hosts)


def hosts_for(roles: dict, wanted: Iterable[str]) -> list[str]:
    """Ordered, de-duplicated hosts for a set of role names."""
    out: list[str] = []
    for role in wanted:
        for h in role_hosts(roles, role):
            if h not in out:
                out.append(h)
    return out
