"""CLI output styling helpers.

- Cyan bold for labels
- Green for success (with checkmark)
- Red for errors (with cross)
- Yellow for warnings
- Dim for neutral/empty states
"""

from __future__ import annotations

__all__ = [
    "style_dim",
    "style_error",
    "style_label",
    "style_success",
    "style_warning",
]

import click


def style_label(label: str) -> str:
    """Style a label, adding the colon.

    Example:
        >>> click.echo(style_label("Socket") + f" {path}")
        Socket: /path/to/daemon.sock
    """
    return click.style(f"{label}:", fg="cyan", bold=True)


def style_success(message: str) -> str:
    """Style a success message with a checkmark prefix.

    Example:
        >>> click.echo(style_success("Daemon stopped"))
        ✓ Daemon stopped
    """
    return click.style(f"✓ {message}", fg="green")


def style_error(message: str) -> str:
    """Style an error message with a cross prefix.

    Example:
        >>> click.echo(style_error("Cannot reach daemon"), err=True)
        ✗ Cannot reach daemon
    """
    return click.style(f"✗ {message}", fg="red")


def style_warning(message: str) -> str:
    """Style a warning in yellow bold with a "Warning:" prefix."""
    return click.style(f"Warning: {message}", fg="yellow", bold=True)


def style_dim(message: str) -> str:
    return click.style(message, dim=True)
