"""Load the policy document from a YAML file or a directory of YAML files."""

from __future__ import annotations

import logging
import pathlib
from typing import Any, Dict

import yaml

from .errors import ConfigurationError
from .policy import CATEGORIES, Policy

YAML_SUFFIXES = (".yml", ".yaml")


def _normalize(document: Dict[str, Any]) -> Dict[str, Any]:
    """Expand the bare-list category shorthand so files using either form merge."""
    for name, _ in CATEGORIES:
        if isinstance(document.get(name), list):
            document[name] = {"rules": document[name]}
    return document


def _merge(base: Dict[str, Any], other: Dict[str, Any], source: str, path: str = "") -> Dict[str, Any]:
    for key, value in other.items():
        where = f"{path}.{key}" if path else key
        if key not in base:
            base[key] = value
        elif isinstance(base[key], dict) and isinstance(value, dict):
            _merge(base[key], value, source, where)
        elif isinstance(base[key], list) and isinstance(value, list):
            base[key] = base[key] + value
        else:
            raise ConfigurationError(f"{source}: {where} is already defined by another file")
    return base


def _read_yaml(path: pathlib.Path) -> Dict[str, Any]:
    try:
        with pathlib.Path.open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path} is not valid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    return data


def load_document(path) -> Dict[str, Any]:
    path = pathlib.Path(path)
    if not path.exists():
        raise ConfigurationError(f"config path {path} does not exist")
    if not path.is_dir():
        return _read_yaml(path)

    document: Dict[str, Any] = {}
    files = sorted(p for p in path.iterdir() if p.suffix in YAML_SUFFIXES and p.is_file())
    if not files:
        raise ConfigurationError(f"no {'/'.join(YAML_SUFFIXES)} files in {path}")
    for file in files:
        logging.debug(f"Loading policy file {file}")
        _merge(document, _normalize(_read_yaml(file)), str(file))
    return document


def load_policy(path) -> Policy:
    return Policy.from_dict(load_document(path))
