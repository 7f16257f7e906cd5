# backgrounder/core/codec/serde.py
"""
Line codecs for WAL records.

Storage depends only on ``dump(value) -> str`` / ``load(text) -> value``.
Each dumped record must fit on one line.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Protocol, Union

import yaml

from backgrounder.core.errors import ConfigurationError, ErrorCode

Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be encoded, or a line cannot be decoded.
    """

    pass


class Serializer(Protocol):
    name: str

    def dump(self, value: Any) -> str: ...

    def load(self, text: str) -> Any: ...


class JsonSerializer:
    """Compact single-line JSON."""

    name = 'json'

    def dump(self, value: Any) -> str:
        try:
            return json.dumps(value, separators=(',', ':'), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(f'cannot encode record as JSON: {e}') from e

    def load(self, text: str) -> Any:
        try:
            return json.loads(text)
        except ValueError as e:
            raise SerializationError(f'invalid JSON record: {e}') from e


class YamlSerializer:
    """
    Single-line YAML flow mappings.

    All scalars are double-quoted so embedded newlines are escaped and a
    record never spans lines; non-string scalars carry explicit tags
    (``!!int "3"``) that ``safe_load`` restores.
    """

    name = 'yaml'

    def dump(self, value: Any) -> str:
        try:
            text = yaml.safe_dump(
                value,
                default_flow_style=True,
                default_style='"',
                width=float('inf'),
                allow_unicode=True,
                sort_keys=False,
            )
        except yaml.YAMLError as e:
            raise SerializationError(f'cannot encode record as YAML: {e}') from e
        return text.strip()

    def load(self, text: str) -> Any:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise SerializationError(f'invalid YAML record: {e}') from e


_SERIALIZERS: dict[str, type[JsonSerializer] | type[YamlSerializer]] = {
    JsonSerializer.name: JsonSerializer,
    YamlSerializer.name: YamlSerializer,
}


def get_serializer(name: str) -> Serializer:
    """Resolve a serializer by name ('json' or 'yaml')."""
    try:
        return _SERIALIZERS[name.lower()]()
    except KeyError:
        raise ConfigurationError(
            message=f"unknown serializer '{name}'",
            code=ErrorCode.CONFIG_INVALID_SERIALIZER,
            notes=[f'available: {sorted(_SERIALIZERS)}'],
            help_text="use serializer='json' (default) or serializer='yaml'",
        )
