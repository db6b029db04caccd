"""
Instruction-Pointer Tagging
============================

Some instruction sets encode execution mode in the low bits of a code
address.  On ARM, an entry point with bit 0 set is entered in Thumb
mode; the machine code itself starts at the address with that bit
cleared.  Every other supported instruction set uses untagged
addresses.

A transform is selected once per image (from the OAT header or an
explicit override) and applied by the code locator; no other part of
the core branches on the instruction set.

References:
    - Android Open Source Project. art/runtime/arch/instruction_set.h
      (``InstructionSet``, ``GetInstructionSetInstructionAlignment``).
"""

from __future__ import annotations

from typing import Callable, Optional

from oatwalk.core.models import InstructionSet


InstructionPointerTransform = Callable[[int], int]

# Numeric values of ``art::InstructionSet`` as stored in the OAT header
_ISA_BY_CODE: dict[int, InstructionSet] = {
    0: InstructionSet.NONE,
    1: InstructionSet.ARM,
    2: InstructionSet.ARM64,
    3: InstructionSet.THUMB2,
    4: InstructionSet.X86,
    5: InstructionSet.X86_64,
    6: InstructionSet.MIPS,
    7: InstructionSet.MIPS64,
}

THUMB_BIT: int = 0x1


def instruction_set_from_code(code: int) -> InstructionSet:
    """Map the header's numeric instruction set to :class:`InstructionSet`.

    Unknown values map to ``InstructionSet.NONE``.
    """
    return _ISA_BY_CODE.get(code, InstructionSet.NONE)


def parse_instruction_set(name: str) -> Optional[InstructionSet]:
    """Parse a user-supplied ISA name; ``"auto"`` yields ``None``."""
    key = name.strip().lower().replace("-", "_")
    if key in ("", "auto"):
        return None
    if key == "thumb":
        key = "thumb2"
    try:
        return InstructionSet(key)
    except ValueError:
        raise ValueError(
            f"Unknown instruction set {name!r}; expected one of: auto, "
            + ", ".join(isa.value for isa in InstructionSet)
        ) from None


def _clear_thumb_bit(address: int) -> int:
    return address & ~THUMB_BIT


def _identity(address: int) -> int:
    return address


def select_transform(isa: InstructionSet) -> InstructionPointerTransform:
    """Return the instruction-pointer-to-code-pointer transform for *isa*.

    ART compiles for ``THUMB2`` whenever the image targets 32-bit ARM, so
    both ``ARM`` and ``THUMB2`` images carry Thumb-tagged entry points.
    """
    if isa in (InstructionSet.ARM, InstructionSet.THUMB2):
        return _clear_thumb_bit
    return _identity
