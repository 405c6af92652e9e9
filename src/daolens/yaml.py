"""Loading `daolens.yaml` files into a plain dict before pydantic validation.

- `${VAR}` and `${VAR:-default}` placeholders are substituted first; comment lines are dropped beforehand so
  placeholders in comments are ignored.
- Several files can be passed; later ones override earlier ones section by section, so an override file may
  set `cache.ttl` without repeating the rest of `cache`.
"""

from __future__ import annotations

import logging
import re
from io import StringIO
from os import environ as env
from typing import TYPE_CHECKING
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml import YAMLError

from daolens.exceptions import ConfigurationError

if TYPE_CHECKING:
    from pathlib import Path

ROOT_CONFIG = 'daolens.yaml'

# NOTE: ${VARIABLE:-default} | ${VARIABLE}
ENV_VARIABLE_REGEX = re.compile(r'\$\{(?P<var_name>\w+)(?::-(?P<default_value>.*?))?\}')

_logger = logging.getLogger(__name__)

yaml_loader = YAML()

yaml_dumper = YAML()
yaml_dumper.default_flow_style = False
yaml_dumper.indent(mapping=2, sequence=4, offset=2)


def exclude_none(value: Any) -> Any:
    if isinstance(value, list | tuple):
        return [exclude_none(i) for i in value if i is not None]
    if isinstance(value, dict):
        return {k: exclude_none(v) for k, v in value.items() if v is not None}
    return value


def _resolve_path(path: Path) -> Path:
    if path.is_dir():
        path /= ROOT_CONFIG
    for candidate in (path, path.with_suffix('.yml')):
        if candidate.is_file():
            return candidate
    raise ConfigurationError(f'Config file `{path}` is missing.')


def read_config_yaml(path: Path) -> str:
    path = _resolve_path(path)
    _logger.debug('Loading config file `%s`', path)
    try:
        lines = path.read_text().splitlines(keepends=True)
    except OSError as e:
        raise ConfigurationError(f'Config file `{path}` is not readable: {e}') from e
    return ''.join(line for line in lines if not line.lstrip().startswith('#'))


def substitute_env_variables(
    config_yaml: str,
    unsafe: bool,
) -> tuple[str, dict[str, str]]:
    """Replace `${VAR:-default}` placeholders; with `unsafe=False` only defaults are used"""
    environment: dict[str, str] = {}

    def _substitute(match: re.Match[str]) -> str:
        variable, default_value = match.group('var_name'), match.group('default_value')
        if not unsafe:
            value = default_value or ''
        # NOTE: Empty string is a valid value
        elif (value := env.get(variable, default_value)) is None:
            raise ConfigurationError(f'Environment variable `{variable}` is not set')
        environment[variable] = value
        return value

    return ENV_VARIABLE_REGEX.sub(_substitute, config_yaml), environment


def merge_sections(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = {**base[key], **value}
        else:
            base[key] = value


def dump(value: dict[str, Any]) -> str:
    buffer = StringIO()
    yaml_dumper.dump(exclude_none(value), buffer)
    return buffer.getvalue()


class DaoLensYAMLConfig(dict[str, Any]):
    @classmethod
    def load(
        cls,
        paths: list[Path],
        environment: bool = True,
        unsafe: bool = False,
    ) -> tuple[DaoLensYAMLConfig, dict[str, str]]:
        config = cls()
        config_environment: dict[str, str] = {}

        for path in paths:
            path_yaml = read_config_yaml(path)
            if environment:
                path_yaml, path_environment = substitute_env_variables(path_yaml, unsafe)
                config_environment.update(path_environment)

            try:
                loaded = yaml_loader.load(path_yaml) or {}
            except YAMLError as e:
                raise ConfigurationError(f'Config file `{path}` is not a valid YAML: {e}') from e
            if not isinstance(loaded, dict):
                raise ConfigurationError(f'Config file `{path}` must be a mapping')
            merge_sections(config, loaded)

        return config, config_environment

    def dump(self) -> str:
        return dump(self)
