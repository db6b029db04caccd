"""
Oatwalk Exceptions
===================

Two outcomes are kept strictly apart by every lookup in this package:

* *not found* -- the search completed and no entry matched.  Lookups
  return ``None``; no exception is raised.
* *failure* -- the bytes could not be decoded safely, so nothing past the
  failing record can be trusted.  Raised as :class:`OatDecodeError`.

A method that exists but has no ahead-of-time compiled code is neither:
it is a found :class:`~oatwalk.core.methods.OatMethod` whose
``oat_method_offsets`` is ``None``.
"""

from __future__ import annotations

from typing import Optional


class OatError(Exception):
    """Base class for every error raised by the OAT navigation core."""


class OatSetupError(OatError):
    """The caller supplied an unusable byte range (null or inverted)."""


class OatDecodeError(OatError):
    """A decode step ran past the valid byte range or met a malformed record.

    The optional context fields identify the record that failed so the
    caller can log or report it.
    """

    def __init__(
        self,
        message: str,
        *,
        index: Optional[int] = None,
        location: Optional[str] = None,
        descriptor: Optional[str] = None,
        address: Optional[int] = None,
    ) -> None:
        self.message = message
        self.index = index
        self.location = location
        self.descriptor = descriptor
        self.address = address
        super().__init__(self._render())

    def _render(self) -> str:
        parts: list[str] = []
        if self.descriptor is not None:
            parts.append(f"descriptor={self.descriptor}")
        if self.index is not None:
            parts.append(f"index={self.index}")
        if self.location is not None:
            parts.append(f"location={self.location}")
        if self.address is not None:
            parts.append(f"address={self.address:#x}")
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"

    def with_context(
        self,
        *,
        index: Optional[int] = None,
        location: Optional[str] = None,
        descriptor: Optional[str] = None,
    ) -> OatDecodeError:
        """Return a copy of this error carrying additional context.

        Fields already set on this error are kept.
        """
        return type(self)(
            self.message,
            index=self.index if self.index is not None else index,
            location=self.location if self.location is not None else location,
            descriptor=(
                self.descriptor if self.descriptor is not None else descriptor
            ),
            address=self.address,
        )


class DexFormatError(OatDecodeError):
    """The embedded DEX module is malformed or an index is out of range."""


class OatIndexError(OatError, IndexError):
    """A dex-file index is not below the header's ``dex_file_count``."""


class OatLoadError(OatError):
    """A file could not be turned into an in-memory OAT image."""
