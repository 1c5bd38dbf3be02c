"""Base classes for binary format parsers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from io import BytesIO
from typing import BinaryIO, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from treepatch.core.errors import DeltaCorruptError

T = TypeVar("T", bound=BaseModel)


class FormatParser(ABC, Generic[T]):
    """Base class for delta format parsers.

    Subclasses implement :meth:`_parse` and :meth:`build`. Malformed input
    raises ``ValueError`` (or a pydantic ``ValidationError``) inside
    ``_parse``; :meth:`parse` turns both into :class:`DeltaCorruptError`.
    """

    format_name: str = "delta"

    def parse(self, data: bytes | BinaryIO) -> T:
        """Parse binary data.

        Args:
            data: Binary data or stream

        Returns:
            Parsed format object

        Raises:
            DeltaCorruptError: If the data is malformed
        """
        stream = BytesIO(data) if isinstance(data, (bytes, bytearray)) else data
        try:
            return self._parse(stream)
        except (ValueError, ValidationError) as e:
            raise DeltaCorruptError(f"Invalid {self.format_name} data: {e}") from e

    @abstractmethod
    def _parse(self, stream: BinaryIO) -> T:
        ...

    @abstractmethod
    def build(self, obj: T) -> bytes:
        """Build binary data from object.

        Args:
            obj: Format object

        Returns:
            Binary data
        """
        ...

