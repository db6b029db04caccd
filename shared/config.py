"""
ArtScope Configuration Management
==================================

Centralized configuration for the ArtScope toolkit using Python
dataclasses and TOML-based persistence.

Configuration lives apart from code: every tunable (log verbosity, the
virtual base address used for raw OAT blobs, the instruction-set override
for code-pointer tagging) can be set in ``config.toml`` without touching
the analysis modules.

References:
    - Wiggins, A. (2011). The Twelve-Factor App. https://12factor.net/
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[no-redef]


# ---------------------------------------------------------------------------
# Default configuration file path relative to the ArtScope root
# ---------------------------------------------------------------------------
_DEFAULT_CONFIG_PATH: Path = Path(__file__).resolve().parent.parent / "config.toml"


# ========================== Tool-Specific Configs ==========================


@dataclass(frozen=False, slots=True)
class OatwalkConfig:
    """Configuration for Oatwalk -- OAT image navigator.

    Controls how on-disk images are loaded and how compiled-code
    addresses are reported.

    Attributes:
        base_address: Absolute address assigned to the first byte of a
            raw OAT blob (ELF-wrapped images use their ``oatdata`` vaddr).
        instruction_set: ``"auto"`` to trust the OAT header, or an ISA
            name (``arm``, ``thumb2``, ``arm64``, ``x86``, ``x86_64``,
            ``mips``, ``mips64``) to force the code-pointer transform.
        max_file_size: Refuse to load files larger than this many bytes.
        oatdata_symbol: ELF symbol marking the start of the OAT image.
        oatlastword_symbol: ELF symbol marking the last executable word.
    """

    base_address: int = 0
    instruction_set: str = "auto"
    max_file_size: int = 536_870_912  # 512 MiB
    oatdata_symbol: str = "oatdata"
    oatlastword_symbol: str = "oatlastword"
    output_format: str = "console"


# =========================== Global Settings ===============================


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Global settings shared across all ArtScope modules."""

    log_level: str = "INFO"
    log_file: str = ""
    log_json: bool = False
    debug: bool = False
    version: str = "1.0.0"


# =========================== Master Config =================================


@dataclass(frozen=False, slots=True)
class ArtScopeConfig:
    """Master configuration aggregating all tool-specific and global settings.

    Usage:
        >>> config = ArtScopeConfig.load()                  # from default path
        >>> config = ArtScopeConfig.load("custom.toml")     # from custom path
        >>> config.oatwalk.instruction_set
        'auto'
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    oatwalk: OatwalkConfig = field(default_factory=OatwalkConfig)

    # ------------------------------------------------------------------ #
    #  TOML Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(cls, path: str | Path | None = None) -> ArtScopeConfig:
        """Load configuration from a TOML file.

        If *path* is ``None`` the loader looks for ``config.toml`` in the
        ArtScope project root.  Missing keys gracefully fall back to
        dataclass defaults -- no ``KeyError`` is raised.

        Args:
            path: Filesystem path to a TOML configuration file.
                  Defaults to ``<project_root>/config.toml``.

        Returns:
            A fully-populated :class:`ArtScopeConfig` instance.

        Raises:
            FileNotFoundError: If the specified path does not exist
                *and* was explicitly provided by the caller.
        """
        config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH

        if not config_path.exists():
            if path is not None:
                raise FileNotFoundError(
                    f"Configuration file not found: {config_path}"
                )
            return cls()

        with open(config_path, "rb") as fh:
            raw: dict[str, Any] = tomllib.load(fh)

        return cls(
            global_settings=cls._build_section(GlobalConfig, raw.get("global", {})),
            oatwalk=cls._build_section(OatwalkConfig, raw.get("oatwalk", {})),
        )

    # ------------------------------------------------------------------ #
    #  Serialisation helpers
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict[str, Any]:
        """Serialise the entire configuration tree to a plain dictionary."""
        return asdict(self)

    # ------------------------------------------------------------------ #
    #  Internal helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _build_section(cls: type, data: dict[str, Any]) -> Any:
        """Instantiate a dataclass *cls* using only the keys it declares.

        Unknown keys in the TOML source are silently ignored so that
        forward-compatible config files do not break older code.
        """
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)

