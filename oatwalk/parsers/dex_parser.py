"""
Android DEX Format Parser
===========================

Struct-based parser for the Dalvik Executable (DEX) modules embedded in
an OAT image.  It supplies the class and method lookups the OAT
navigation core needs:

    - locate a class definition by type descriptor
    - fetch a class definition by its index
    - find a direct or virtual method by name and signature, reporting
      the method's position inside the class data (the index the OAT
      class record uses for its compiled-code table)

Unlike a whole-file parser, this one works directly on the mapped image
and decodes lazily: only the header is read up front, and strings,
types, prototypes and class data are read on demand through a
bounds-checked window.  Any read outside the module raises
:class:`~oatwalk.core.errors.DexFormatError`.

The parser supports DEX versions 035 through 039.

References:
    - Google. (2024). DEX Format. Android Open Source Project.
      https://source.android.com/docs/core/runtime/dex-format
    - Android Open Source Project. art/runtime/dex_file.h
      (``FindClassDef``, ``GetIndexForClassDef``, ``ClassDataItemIterator``).
"""

from __future__ import annotations

from typing import Optional, Protocol

from oatwalk.core.errors import DexFormatError, OatDecodeError
from oatwalk.core.memory import MappedRegion


# ---------------------------------------------------------------------------
# DEX Constants
# ---------------------------------------------------------------------------

DEX_MAGIC_PREFIX: bytes = b"dex\n"
DEX_SUPPORTED_VERSIONS: set[bytes] = {
    b"035\x00",
    b"036\x00",
    b"037\x00",
    b"038\x00",
    b"039\x00",
}

DEX_HEADER_SIZE: int = 112
DEX_FILE_SIZE_OFFSET: int = 32
DEX_CLASS_DEFS_SIZE_OFFSET: int = 96

# Endianness tags
ENDIAN_CONSTANT: int = 0x12345678

# Method access flags, in the order modifiers are listed
ACC_PUBLIC: int = 0x0001
ACC_PRIVATE: int = 0x0002
ACC_PROTECTED: int = 0x0004
ACC_STATIC: int = 0x0008
ACC_FINAL: int = 0x0010
ACC_SYNCHRONIZED: int = 0x0020
ACC_NATIVE: int = 0x0100
ACC_ABSTRACT: int = 0x0400
ACC_CONSTRUCTOR: int = 0x10000

_METHOD_MODIFIERS: tuple[tuple[int, str], ...] = (
    (ACC_PUBLIC, "public"),
    (ACC_PRIVATE, "private"),
    (ACC_PROTECTED, "protected"),
    (ACC_STATIC, "static"),
    (ACC_FINAL, "final"),
    (ACC_SYNCHRONIZED, "synchronized"),
    (ACC_NATIVE, "native"),
    (ACC_ABSTRACT, "abstract"),
    (ACC_CONSTRUCTOR, "constructor"),
)

# No-index sentinel
NO_INDEX: int = 0xFFFFFFFF

_CLASS_DEF_SIZE: int = 32
_PROTO_ID_SIZE: int = 12
_METHOD_ID_SIZE: int = 8


# ---------------------------------------------------------------------------
# Parsed structures
# ---------------------------------------------------------------------------

class _DEXHeader:
    """Parsed DEX file header fields used for navigation."""
    __slots__ = (
        "version", "file_size", "header_size", "endian_tag",
        "string_ids_size", "string_ids_off",
        "type_ids_size", "type_ids_off",
        "proto_ids_size", "proto_ids_off",
        "method_ids_size", "method_ids_off",
        "class_defs_size", "class_defs_off",
    )

    def __init__(self) -> None:
        self.version: str = ""
        self.file_size: int = 0
        self.header_size: int = 0
        self.endian_tag: int = 0
        self.string_ids_size: int = 0
        self.string_ids_off: int = 0
        self.type_ids_size: int = 0
        self.type_ids_off: int = 0
        self.proto_ids_size: int = 0
        self.proto_ids_off: int = 0
        self.method_ids_size: int = 0
        self.method_ids_off: int = 0
        self.class_defs_size: int = 0
        self.class_defs_off: int = 0


class DexClass:
    """A class definition together with its (lazily decoded) class data.

    Attributes:
        class_def_index: Position in the module's class_defs table.
        descriptor: Type descriptor, e.g. ``Lcom/example/Main;``.
        access_flags: Class access flags.
        class_data_off: Module-relative offset of the class_data_item, 0
            for classes without methods or fields.
    """
    __slots__ = (
        "dex", "class_def_index", "class_idx", "descriptor", "access_flags",
        "superclass_idx", "class_data_off", "_direct", "_virtual",
    )

    def __init__(self, dex: DexFile, class_def_index: int) -> None:
        self.dex: DexFile = dex
        self.class_def_index: int = class_def_index
        self.class_idx: int = 0
        self.descriptor: str = ""
        self.access_flags: int = 0
        self.superclass_idx: int = NO_INDEX
        self.class_data_off: int = 0
        self._direct: Optional[list[DexMethod]] = None
        self._virtual: Optional[list[DexMethod]] = None

    @property
    def direct_methods(self) -> list[DexMethod]:
        if self._direct is None:
            self.dex._decode_class_data(self)
        return self._direct  # type: ignore[return-value]

    @property
    def virtual_methods(self) -> list[DexMethod]:
        if self._virtual is None:
            self.dex._decode_class_data(self)
        return self._virtual  # type: ignore[return-value]

    def __repr__(self) -> str:
        return f"DexClass({self.descriptor!r}, class_def_index={self.class_def_index})"


class DexMethod:
    """An encoded method from a class_data_item.

    ``class_method_index`` counts direct methods first, then virtual
    methods, in class-data order.
    """
    __slots__ = (
        "dex_class", "method_idx", "access_flags", "code_off",
        "class_method_index", "is_direct",
    )

    def __init__(
        self,
        dex_class: DexClass,
        method_idx: int,
        access_flags: int,
        code_off: int,
        class_method_index: int,
        is_direct: bool,
    ) -> None:
        self.dex_class = dex_class
        self.method_idx = method_idx
        self.access_flags = access_flags
        self.code_off = code_off
        self.class_method_index = class_method_index
        self.is_direct = is_direct

    @property
    def name(self) -> str:
        return self.dex_class.dex.get_method_name(self.method_idx)

    @property
    def signature(self) -> str:
        return self.dex_class.dex.get_method_signature(self.method_idx)

    @property
    def modifiers(self) -> list[str]:
        """Names of the access flags set on this method."""
        return [name for flag, name in _METHOD_MODIFIERS if self.access_flags & flag]

    def __repr__(self) -> str:
        kind = "direct" if self.is_direct else "virtual"
        return (
            f"DexMethod({self.name}{self.signature}, {kind}, "
            f"class_method_index={self.class_method_index})"
        )


# ---------------------------------------------------------------------------
# Capability protocol
# ---------------------------------------------------------------------------

class DexCapability(Protocol):
    """Lookups the OAT core requires from an embedded-module parser."""

    def locate_class_by_descriptor(
        self, descriptor: str
    ) -> Optional[tuple[DexClass, int]]: ...

    def get_class_by_def_index(self, class_def_index: int) -> DexClass: ...

    def find_direct_method(
        self, dex_class: DexClass, name: str, signature: str
    ) -> Optional[DexMethod]: ...

    def find_virtual_method(
        self, dex_class: DexClass, name: str, signature: str
    ) -> Optional[DexMethod]: ...


# ---------------------------------------------------------------------------
# DEX Parser
# ---------------------------------------------------------------------------

def read_class_defs_size(region: MappedRegion, address: int) -> int:
    """Validate the module signature at *address* and return class_defs_size.

    This is the only piece of the DEX header the OAT dex-file record
    decoder needs: it sizes the record's class offset table.

    Raises:
        DexFormatError: Bad magic/version or the header is out of range.
    """
    _check_signature(region, address)
    try:
        return region.u32(address + DEX_CLASS_DEFS_SIZE_OFFSET, "DEX class_defs_size")
    except OatDecodeError as exc:
        raise DexFormatError(exc.message, address=exc.address) from exc


def _check_signature(region: MappedRegion, address: int) -> None:
    try:
        head = region.read_bytes(address, 8, "DEX magic")
    except OatDecodeError as exc:
        raise DexFormatError(exc.message, address=exc.address) from exc
    if head[:4] != DEX_MAGIC_PREFIX:
        raise DexFormatError("bad DEX magic", address=address)
    if head[4:8] not in DEX_SUPPORTED_VERSIONS:
        raise DexFormatError(
            f"unsupported DEX version {head[4:7].decode('ascii', errors='replace')!r}",
            address=address,
        )


class DexFile:
    """Lazy, bounds-checked DEX parser over an embedded module.

    Usage::

        dex = DexFile(region, dex_file_pointer)
        found = dex.locate_class_by_descriptor("Lcom/example/Main;")
        if found is not None:
            dex_class, class_def_index = found
            method = dex.find_direct_method(dex_class, "<init>", "()V")

    Args:
        region: Mapped image region containing the module.
        address: Absolute address of the module's ``dex\\n`` magic.

    Raises:
        DexFormatError: The module signature is invalid or its header
            (or declared ``file_size``) extends past the mapped range.
    """

    def __init__(self, region: MappedRegion, address: int) -> None:
        _check_signature(region, address)
        try:
            file_size = region.u32(address + DEX_FILE_SIZE_OFFSET, "DEX file_size")
            window = region.read(address, max(file_size, DEX_HEADER_SIZE), "DEX module")
        except OatDecodeError as exc:
            raise DexFormatError(exc.message, address=exc.address) from exc

        self._region: MappedRegion = MappedRegion(window, address, address + len(window))
        self._address: int = address
        self._header: _DEXHeader = _DEXHeader()
        self._strings: dict[int, str] = {}
        self._class_index: Optional[dict[str, int]] = None
        self._parse_header()

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    @property
    def address(self) -> int:
        return self._address

    @property
    def version(self) -> str:
        return self._header.version

    @property
    def file_size(self) -> int:
        return self._header.file_size

    @property
    def class_defs_size(self) -> int:
        return self._header.class_defs_size

    def locate_class_by_descriptor(
        self, descriptor: str
    ) -> Optional[tuple[DexClass, int]]:
        """Find a class definition by exact type descriptor.

        Returns:
            ``(dex_class, class_def_index)`` or ``None`` if the module
            defines no such class.
        """
        if self._class_index is None:
            index: dict[str, int] = {}
            for i in range(self._header.class_defs_size):
                class_idx = self._read_u32(self._class_def_address(i), "class_def")
                index.setdefault(self.get_type_descriptor(class_idx), i)
            self._class_index = index

        class_def_index = self._class_index.get(descriptor)
        if class_def_index is None:
            return None
        return self.get_class_by_def_index(class_def_index), class_def_index

    def get_class_by_def_index(self, class_def_index: int) -> DexClass:
        """Decode the class definition at *class_def_index*.

        Raises:
            DexFormatError: Index out of range or the entry is unreadable.
        """
        if not 0 <= class_def_index < self._header.class_defs_size:
            raise DexFormatError(
                f"class_def index out of range (class_defs_size="
                f"{self._header.class_defs_size})",
                index=class_def_index,
            )
        (
            class_idx, access_flags, superclass_idx, _interfaces_off,
            _source_file_idx, _annotations_off, class_data_off, _static_values_off,
        ) = self._read_u32s(self._class_def_address(class_def_index), 8, "class_def")

        cls = DexClass(self, class_def_index)
        cls.class_idx = class_idx
        cls.descriptor = self.get_type_descriptor(class_idx)
        cls.access_flags = access_flags
        cls.superclass_idx = superclass_idx
        cls.class_data_off = class_data_off
        return cls

    def find_direct_method(
        self, dex_class: DexClass, name: str, signature: str
    ) -> Optional[DexMethod]:
        """Find a direct (static, private or constructor) method."""
        return self._find_method(dex_class.direct_methods, name, signature)

    def find_virtual_method(
        self, dex_class: DexClass, name: str, signature: str
    ) -> Optional[DexMethod]:
        """Find a virtual method declared by *dex_class* itself."""
        return self._find_method(dex_class.virtual_methods, name, signature)

    def get_string(self, string_idx: int) -> str:
        """Return the string with id *string_idx*.

        Raises:
            DexFormatError: Index out of range or string data unreadable.
        """
        cached = self._strings.get(string_idx)
        if cached is not None:
            return cached
        h = self._header
        if not 0 <= string_idx < h.string_ids_size:
            raise DexFormatError("string index out of range", index=string_idx)
        data_off = self._read_u32(self._at(h.string_ids_off + string_idx * 4), "string_id")
        value = self._read_mutf8_string(data_off)
        self._strings[string_idx] = value
        return value

    def get_type_descriptor(self, type_idx: int) -> str:
        h = self._header
        if not 0 <= type_idx < h.type_ids_size:
            raise DexFormatError("type index out of range", index=type_idx)
        descriptor_idx = self._read_u32(self._at(h.type_ids_off + type_idx * 4), "type_id")
        return self.get_string(descriptor_idx)

    def get_method_name(self, method_idx: int) -> str:
        _class_idx, _proto_idx, name_idx = self._method_id(method_idx)
        return self.get_string(name_idx)

    def get_method_signature(self, method_idx: int) -> str:
        """Return the method's signature, e.g. ``(ILjava/lang/String;)V``."""
        _class_idx, proto_idx, _name_idx = self._method_id(method_idx)
        h = self._header
        if not 0 <= proto_idx < h.proto_ids_size:
            raise DexFormatError("proto index out of range", index=proto_idx)
        proto_addr = self._at(h.proto_ids_off + proto_idx * _PROTO_ID_SIZE)
        _shorty_idx, return_type_idx, parameters_off = self._read_u32s(proto_addr, 3, "proto_id")

        params: list[str] = []
        if parameters_off != 0:
            list_addr = self._at(parameters_off)
            count = self._read_u32(list_addr, "type_list")
            for i in range(count):
                type_idx = self._read_u16(list_addr + 4 + i * 2, "type_list")
                params.append(self.get_type_descriptor(type_idx))
        return "(" + "".join(params) + ")" + self.get_type_descriptor(return_type_idx)

    # ------------------------------------------------------------------ #
    #  Header parsing
    # ------------------------------------------------------------------ #

    def _parse_header(self) -> None:
        """Read the id-table sizes and offsets from the 112-byte header."""
        h = self._header
        base = self._address
        h.version = self._region.read_bytes(base + 4, 3, "DEX version").decode("ascii")
        h.file_size, h.header_size, h.endian_tag = self._read_u32s(
            base + DEX_FILE_SIZE_OFFSET, 3, "DEX header"
        )
        if h.endian_tag != ENDIAN_CONSTANT:
            raise DexFormatError(
                f"unsupported DEX endian tag {h.endian_tag:#x}", address=base
            )
        (
            h.string_ids_size, h.string_ids_off,
            h.type_ids_size, h.type_ids_off,
            h.proto_ids_size, h.proto_ids_off,
            _field_ids_size, _field_ids_off,
            h.method_ids_size, h.method_ids_off,
            h.class_defs_size, h.class_defs_off,
        ) = self._read_u32s(base + 56, 12, "DEX header")

    # ------------------------------------------------------------------ #
    #  Class data
    # ------------------------------------------------------------------ #

    def _decode_class_data(self, cls: DexClass) -> None:
        """Decode the class_data_item of *cls* into its method lists.

        Layout: four ULEB128 counts (static fields, instance fields,
        direct methods, virtual methods), then encoded fields as
        ``(field_idx_diff, access_flags)`` and encoded methods as
        ``(method_idx_diff, access_flags, code_off)``.  Index diffs
        restart at the beginning of each list.
        """
        direct: list[DexMethod] = []
        virtual: list[DexMethod] = []
        if cls.class_data_off != 0:
            cursor = self._at(cls.class_data_off)
            counts = []
            for _ in range(4):
                value, cursor = self._uleb128(cursor)
                counts.append(value)
            static_fields, instance_fields, direct_count, virtual_count = counts

            for _ in range(2 * (static_fields + instance_fields)):
                _value, cursor = self._uleb128(cursor)

            class_method_index = 0
            for target, count, is_direct in (
                (direct, direct_count, True),
                (virtual, virtual_count, False),
            ):
                method_idx = 0
                for _ in range(count):
                    diff, cursor = self._uleb128(cursor)
                    access_flags, cursor = self._uleb128(cursor)
                    code_off, cursor = self._uleb128(cursor)
                    method_idx += diff
                    target.append(DexMethod(
                        cls, method_idx, access_flags, code_off,
                        class_method_index, is_direct,
                    ))
                    class_method_index += 1

        cls._direct = direct
        cls._virtual = virtual

    @staticmethod
    def _find_method(
        methods: list[DexMethod], name: str, signature: str
    ) -> Optional[DexMethod]:
        for method in methods:
            if method.name == name and method.signature == signature:
                return method
        return None

    # ------------------------------------------------------------------ #
    #  Utility methods
    # ------------------------------------------------------------------ #

    def _at(self, offset: int) -> int:
        """Module-relative offset to absolute address."""
        return self._address + offset

    def _class_def_address(self, class_def_index: int) -> int:
        return self._at(self._header.class_defs_off + class_def_index * _CLASS_DEF_SIZE)

    def _method_id(self, method_idx: int) -> tuple[int, int, int]:
        h = self._header
        if not 0 <= method_idx < h.method_ids_size:
            raise DexFormatError("method index out of range", index=method_idx)
        addr = self._at(h.method_ids_off + method_idx * _METHOD_ID_SIZE)
        class_idx = self._read_u16(addr, "method_id")
        proto_idx = self._read_u16(addr + 2, "method_id")
        name_idx = self._read_u32(addr + 4, "method_id")
        return class_idx, proto_idx, name_idx

    def _read_u16(self, address: int, what: str) -> int:
        try:
            return self._region.u16(address, what)
        except OatDecodeError as exc:
            raise DexFormatError(exc.message, address=exc.address) from exc

    def _read_u32(self, address: int, what: str) -> int:
        try:
            return self._region.u32(address, what)
        except OatDecodeError as exc:
            raise DexFormatError(exc.message, address=exc.address) from exc

    def _read_u32s(self, address: int, count: int, what: str) -> tuple[int, ...]:
        try:
            return self._region.u32_array(address, count, what)
        except OatDecodeError as exc:
            raise DexFormatError(exc.message, address=exc.address) from exc

    def _uleb128(self, address: int) -> tuple[int, int]:
        try:
            return self._region.uleb128(address, "class_data ULEB128")
        except OatDecodeError as exc:
            raise DexFormatError(exc.message, address=exc.address) from exc

    def _read_mutf8_string(self, offset: int) -> str:
        """Read a MUTF-8 encoded string from a string_data_item.

        The format is: ULEB128 length (in UTF-16 code units) followed by
        MUTF-8 encoded bytes terminated by a null byte.
        """
        _length, str_start = self._uleb128(self._at(offset))
        null_pos = self._region.find_byte(str_start, 0, self._region.end)
        if null_pos < 0:
            raise DexFormatError("unterminated string_data_item", address=str_start)
        raw = self._region.read_bytes(str_start, null_pos - str_start)
        # MUTF-8: U+0000 is 0xC0 0x80 and supplementary characters are
        # two 3-byte surrogates; join the pairs through UTF-16.
        try:
            units = raw.replace(b"\xc0\x80", b"\x00").decode("utf-8", errors="surrogatepass")
        except UnicodeDecodeError as exc:
            raise DexFormatError(
                f"malformed MUTF-8 string: {exc.reason}", address=str_start
            ) from None
        return units.encode("utf-16-le", errors="surrogatepass").decode(
            "utf-16-le", errors="surrogatepass"
        )
