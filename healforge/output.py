"""
Rich Output Utilities
=====================

Unified terminal output for HealForge using the Rich library.
Provides consistent styling for the check runner, ledger and sync CLIs,
and routes Python logging through a RichHandler.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class HealColors:
    """HealForge color palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    ember: str = "#F59E0B"     # warm accent
    mend: str = "#22D3EE"      # cool accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"        # success green
    warn: str = "#FBBF24"      # warning yellow
    err: str = "#EF4444"       # error red


def heal_theme(colors: HealColors = HealColors()) -> Theme:
    """
    Rich Theme for the HealForge CLI.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="hf.ok")
    """
    return Theme(
        {
            "hf.banner": f"bold {colors.mend}",
            "hf.border": f"{colors.mend}",
            "hf.accent": f"bold {colors.ember}",
            "hf.muted": f"{colors.dim}",
            "hf.text": f"{colors.ink}",

            # Status
            "hf.ok": f"bold {colors.ok}",
            "hf.warn": f"bold {colors.warn}",
            "hf.err": f"bold {colors.err}",
            "hf.info": f"{colors.mend}",

            # Data display
            "hf.key": f"{colors.steel}",
            "hf.value": f"{colors.ink}",
            "hf.number": f"bold {colors.ember}",
            "hf.path": f"{colors.mend}",
            "hf.timestamp": f"{colors.dim}",

            # Table styling
            "hf.table.header": f"bold {colors.mend}",

            # Ledger statuses
            "hf.status.pending": f"{colors.warn}",
            "hf.status.healing": f"bold {colors.ember}",
            "hf.status.success": f"bold {colors.ok}",
            "hf.status.exhausted": f"bold {colors.err}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠️",
    "info": "ℹ",
    "bullet": "•",
    "wrench": "\U0001F527",
    "cycle": "\U0001F504",
    "sparkle": "✨",
    "skip": "⏭️",
    "clipboard": "\U0001F4CB",
    "pending": "…",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "wrench": "[fix]",
    "cycle": "[~]",
    "sparkle": "[*]",
    "skip": "[>>]",
    "clipboard": "[#]",
    "pending": "[..]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=heal_theme(), force_terminal=None)


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[hf.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[hf.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[hf.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[hf.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    """Print muted/secondary text."""
    console.print(f"[hf.muted]{message}[/]", highlight=False)


# =============================================================================
# Headers & Sections
# =============================================================================

def print_header(title: str, style: str = "hf.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


# =============================================================================
# Data Display Functions
# =============================================================================

def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "hf.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="hf.key")
    table.add_column("Value", style="hf.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def status_style(status: str) -> str:
    """Map a ledger status to its theme style."""
    return f"hf.status.{status}" if status in ("pending", "healing", "success", "exhausted") else "hf.text"


# =============================================================================
# Table Functions
# =============================================================================

def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "hf.border",
    header_style: str = "hf.table.header",
) -> Table:
    """Create a styled Rich Table with the HealForge theme."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="hf.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    """Print a Rich Table to the console."""
    console.print(table)


# =============================================================================
# Panels
# =============================================================================

def print_success_panel(message: str, title: str = "Success") -> None:
    """Print a success panel with green border."""
    console.print(Panel(
        f"[hf.ok]{icon('check')} {message}[/]",
        title=f"[hf.ok]{title}[/]",
        border_style="hf.ok",
        padding=(1, 2),
    ))


def print_error_panel(message: str, title: str = "Error") -> None:
    """Print an error panel with red border."""
    console.print(Panel(
        f"[hf.err]{icon('cross')} {message}[/]",
        title=f"[hf.err]{title}[/]",
        border_style="hf.err",
        padding=(1, 2),
    ))


# =============================================================================
# Progress & Spinners
# =============================================================================

@contextmanager
def spinner(message: str, *, style: str = "hf.accent") -> Iterator[Status]:
    """
    Context manager for showing a spinner during long operations.

    Usage:
        with spinner("Pulling patterns..."):
            pull()
    """
    with console.status(f"[{style}]{message}[/]", spinner="dots") as status:
        yield status


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging()
        logging.getLogger("healforge").info("Webhook received")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
