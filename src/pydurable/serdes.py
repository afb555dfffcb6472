"""
Serialization layer: converts operation inputs and results to bytes.

Design Pattern: Strategy Pattern
A SerDes is chosen per operation (StepConfig.serdes, CallbackConfig.serdes,
...) and per engine (EngineConfig.serdes). The default is pickle, which
round-trips any picklable Python value. JsonSerDes gives a stable,
language-neutral wire form and is extensible per value type.

Example:
    ```python
    serdes = JsonSerDes()
    serdes.register_type(
        Money,
        "money",
        encode=lambda m: {"amount": str(m.amount), "currency": m.currency},
        decode=lambda d: Money(Decimal(d["amount"]), d["currency"]),
    )

    await ctx.step("price", quote, config=StepConfig(serdes=serdes))
    ```
"""

from __future__ import annotations

import base64
import json
import pickle
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydurable.models.errors import DurableError, ErrorCategory


class SerDesError(DurableError):
    """A value could not be serialized or deserialized."""

    category = ErrorCategory.CLIENT


class SerDes(ABC):
    """Converts values to bytes and back."""

    @abstractmethod
    def serialize(self, value: Any) -> bytes:
        """Convert a value to its wire form."""

    @abstractmethod
    def deserialize(self, data: bytes) -> Any:
        """Rebuild a value from its wire form."""


class PickleSerDes(SerDes):
    """Default SerDes: pickle, for any picklable Python value."""

    def __init__(self, protocol: int = pickle.DEFAULT_PROTOCOL):
        self._protocol = protocol

    def serialize(self, value: Any) -> bytes:
        return pickle.dumps(value, protocol=self._protocol)

    def deserialize(self, data: bytes) -> Any:
        return pickle.loads(data)

    def __repr__(self) -> str:
        return f"PickleSerDes(protocol={self._protocol})"


@dataclass(frozen=True)
class _TypeCodec:
    tag: str
    type_: type
    encode: Callable[[Any], Any]
    decode: Callable[[Any], Any]


_TYPE_KEY = "__pydurable_type__"
_VALUE_KEY = "value"


class JsonSerDes(SerDes):
    """
    JSON SerDes with a per-type extension registry.

    Registered types are written as {"__pydurable_type__": tag, "value": ...}
    and restored on read. datetime, date, timedelta, Decimal, UUID and bytes
    are registered by default. Tuples are written as JSON arrays and come
    back as lists.
    """

    def __init__(self, sort_keys: bool = True):
        self._sort_keys = sort_keys
        self._by_type: dict[type, _TypeCodec] = {}
        self._by_tag: dict[str, _TypeCodec] = {}

        self.register_type(datetime, "datetime", datetime.isoformat, datetime.fromisoformat)
        self.register_type(date, "date", date.isoformat, date.fromisoformat)
        self.register_type(
            timedelta, "timedelta", lambda td: td.total_seconds(), lambda s: timedelta(seconds=s)
        )
        self.register_type(Decimal, "decimal", str, Decimal)
        self.register_type(UUID, "uuid", str, UUID)
        self.register_type(
            bytes,
            "bytes",
            lambda b: base64.b64encode(b).decode("ascii"),
            lambda s: base64.b64decode(s.encode("ascii")),
        )

    def register_type(
        self,
        type_: type,
        tag: str,
        encode: Callable[[Any], Any],
        decode: Callable[[Any], Any],
    ) -> JsonSerDes:
        """
        Register a codec for a value type.

        Args:
            type_: Exact type to match (subclasses are not matched)
            tag: Stable name written to the wire
            encode: Converts a value to JSON-compatible data
            decode: Rebuilds the value from that data

        Returns:
            self for method chaining
        """
        codec = _TypeCodec(tag=tag, type_=type_, encode=encode, decode=decode)
        self._by_type[type_] = codec
        self._by_tag[tag] = codec
        return self

    def _default(self, value: Any) -> Any:
        codec = self._by_type.get(type(value))
        if codec is None:
            raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
        return {_TYPE_KEY: codec.tag, _VALUE_KEY: codec.encode(value)}

    def _object_hook(self, obj: dict[str, Any]) -> Any:
        tag = obj.get(_TYPE_KEY)
        if tag is None or len(obj) != 2 or _VALUE_KEY not in obj:
            return obj
        codec = self._by_tag.get(tag)
        if codec is None:
            raise SerDesError(f"Unknown type tag in payload: {tag!r}")
        return codec.decode(obj[_VALUE_KEY])

    def serialize(self, value: Any) -> bytes:
        text = json.dumps(value, default=self._default, sort_keys=self._sort_keys)
        return text.encode("utf-8")

    def deserialize(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"), object_hook=self._object_hook)

    def __repr__(self) -> str:
        return f"JsonSerDes(types={sorted(self._by_tag)})"


DEFAULT_SERDES: SerDes = PickleSerDes()


def serialize(value: Any, serdes: SerDes | None = None) -> bytes:
    """Serialize with the given SerDes (pickle by default), wrapping failures."""
    serdes = serdes or DEFAULT_SERDES
    try:
        return serdes.serialize(value)
    except SerDesError:
        raise
    except Exception as e:
        raise SerDesError(f"Failed to serialize {type(value).__name__} with {serdes!r}: {e}") from e


def deserialize(data: bytes | None, serdes: SerDes | None = None) -> Any:
    """Deserialize with the given SerDes (pickle by default). None stays None."""
    if data is None:
        return None
    serdes = serdes or DEFAULT_SERDES
    try:
        return serdes.deserialize(data)
    except SerDesError:
        raise
    except Exception as e:
        raise SerDesError(f"Failed to deserialize payload with {serdes!r}: {e}") from e
