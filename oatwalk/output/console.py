"""
Oatwalk Console Output
=======================

Rich-powered terminal display for Oatwalk inspection results: header
fields, the key-value store, the dex-file directory and method lookups.

Uses the ArtScopeConsole abstraction for consistent styling across
all ArtScope modules.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from typing import Optional

from rich.markup import escape

from shared.console import ArtScopeConsole

from oatwalk.core.models import (
    DexFileSummary,
    HeaderSummary,
    ImageReport,
    LookupStatus,
    MethodLookup,
)


def _hex(value: Optional[int]) -> str:
    return "-" if value is None else f"{value:#x}"


# ---------------------------------------------------------------------------
# OatwalkConsoleOutput
# ---------------------------------------------------------------------------

class OatwalkConsoleOutput:
    """Renders :class:`ImageReport` and :class:`MethodLookup` to the terminal.

    Usage::

        output = OatwalkConsoleOutput(console=ArtScopeConsole())
        output.display(report)
    """

    def __init__(self, console: ArtScopeConsole | None = None) -> None:
        self._con = console or ArtScopeConsole()

    # ------------------------------------------------------------------ #
    #  Full report
    # ------------------------------------------------------------------ #

    def display(self, report: ImageReport) -> None:
        """Render header, key-value store and dex files of *report*."""
        self.display_overview(report)
        self.display_header(report.header)
        self.display_key_value_store(report.key_value_store)
        self.display_dex_files(report.dex_files, report.header.dex_file_count)
        self.display_walk_error(report)

    def display_overview(self, report: ImageReport) -> None:
        self._con.section("Image")
        rows = [
            ("Path", escape(report.path)),
            ("Container", report.container.value),
            ("Base address", _hex(report.base_address)),
            ("Size", f"{report.size:,} bytes"),
        ]
        self._con.table("Image", ["Property", "Value"], rows, styles=["bold", ""])
        self._con.blank()

    # ------------------------------------------------------------------ #
    #  Header
    # ------------------------------------------------------------------ #

    def display_header(self, header: HeaderSummary) -> None:
        self._con.section("OAT Header")
        validity = (
            "[green]valid[/green]" if header.valid else "[bright_red]invalid[/bright_red]"
        )
        rows: list[tuple[str, str]] = [
            ("Version", f"{escape(header.version)} ({validity})"),
            ("Instruction set", header.instruction_set.value),
            ("ISA features", _hex(header.instruction_set_features)),
            ("Adler-32 checksum", _hex(header.adler32_checksum)),
            ("Dex files", str(header.dex_file_count)),
            ("Executable offset", _hex(header.executable_offset)),
            ("Image patch delta", str(header.image_patch_delta)),
            ("Header size", str(header.header_size)),
            ("Key-value store size", str(header.key_value_store_size)),
        ]
        for name, offset in header.trampolines.items():
            rows.append((name.replace("_", " ").capitalize(), _hex(offset)))
        self._con.table("Header", ["Field", "Value"], rows, styles=["bold", ""])
        self._con.blank()

    def display_key_value_store(self, store: dict[str, str]) -> None:
        if not store:
            return
        self._con.section("Key-Value Store")
        rows = [(escape(key), escape(value)) for key, value in store.items()]
        self._con.table(
            "Key-Value Store", ["Key", "Value"], rows, styles=["bright_cyan", ""]
        )
        self._con.blank()

    # ------------------------------------------------------------------ #
    #  Dex-file directory
    # ------------------------------------------------------------------ #

    def display_dex_files(
        self, dex_files: list[DexFileSummary], declared: Optional[int] = None
    ) -> None:
        self._con.section("Dex Files")
        if not dex_files:
            self._con.info("No dex-file records decoded.")
            return

        rows = [
            (
                d.index,
                escape(d.location),
                _hex(d.location_checksum),
                _hex(d.dex_file_offset),
                d.class_def_count,
                d.record_size,
            )
            for d in dex_files
        ]
        caption = None
        if declared is not None:
            caption = f"{len(dex_files)} of {declared} records decoded"
        self._con.table(
            "Dex Files",
            ["#", "Location", "Checksum", "Dex Offset", "Classes", "Record Size"],
            rows,
            caption=caption,
            styles=["dim", "bright_white", "", "bright_cyan", "", "dim"],
        )
        self._con.blank()

    def display_walk_error(self, report: ImageReport) -> None:
        if report.walk_error:
            self._con.error(escape(report.walk_error))

    # ------------------------------------------------------------------ #
    #  Method lookup
    # ------------------------------------------------------------------ #

    def display_method_lookup(self, lookup: MethodLookup) -> None:
        """Render the outcome of a method lookup."""
        target = escape(f"{lookup.class_descriptor}->{lookup.method_name}{lookup.signature}")
        self._con.section("Method Lookup")

        if lookup.status is LookupStatus.FAILURE:
            self._con.error(f"Lookup of {target} failed: {escape(lookup.error or '')}")
            return
        if lookup.class_def_index is None:
            self._con.warning(f"Class {escape(lookup.class_descriptor)} not found.")
            return
        if lookup.status is LookupStatus.NOT_FOUND:
            self._con.warning(f"Method {target} not found.")
            return

        rows: list[tuple[str, str]] = [
            ("Method", target),
            ("Dex file", escape(lookup.dex_location or "")),
            ("Class def index", str(lookup.class_def_index)),
            ("Class status", str(lookup.class_status)),
            ("Class type", lookup.class_type or "-"),
            ("Kind", lookup.method_kind or "-"),
            ("Modifiers", " ".join(lookup.modifiers) or "-"),
            ("Class method index", str(lookup.class_method_index)),
        ]
        if lookup.compiled:
            rows += [
                ("Code offset", _hex(lookup.code_offset)),
                ("Entry point", _hex(lookup.entry_point)),
                ("Code pointer", _hex(lookup.code_pointer)),
            ]
        self._con.table("Method", ["Field", "Value"], rows, styles=["bold", ""])

        if lookup.compiled:
            self._con.success(f"Compiled code at {_hex(lookup.code_pointer)}")
        else:
            self._con.info("No compiled code; the method runs interpreted.")
