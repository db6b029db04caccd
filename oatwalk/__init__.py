"""
ArtScope Oatwalk -- Android Runtime OAT Image Navigator
========================================================

Oatwalk is the OAT inspection component of the ArtScope toolkit.  Given
the bytes of an OAT image (raw, or inside the ELF container the runtime
loads), it walks the embedded dex-file directory, resolves classes and
methods through the embedded DEX modules, and locates each method's
ahead-of-time compiled code.

Modules:
    - oatwalk.core.image: Image context (``OatFile``) and offset resolver
    - oatwalk.core.directory: Dex-file directory walker
    - oatwalk.core.classes: Class resolver
    - oatwalk.core.methods: Method resolver and code locator
    - oatwalk.core.engine: File loading and report orchestration
    - oatwalk.parsers: OAT header, class record, DEX and ELF decoders
    - oatwalk.output: Console output
    - oatwalk.cli: Click-based command-line interface

References:
    - Android Open Source Project. art/runtime/oat.h, oat_file.h.
    - Google. (2024). DEX Format.
    - TIS Committee. (1995). ELF Specification.
"""

__version__ = "1.0.0"
__tool_name__ = "oatwalk"
