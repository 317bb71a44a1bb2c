"""Color output support for apkg CLI.

Color palette:
  - Red: failures and removed packages
  - Yellow: warnings (hooks not run, packages skipped)
  - Green: installed packages
  - Blue: upgraded packages and context
"""

import os
import sys

_RESET = '\033[0m'

# Semantic name -> ANSI code
_STYLES = {
    'error': '\033[91m',
    'warning': '\033[93m',
    'success': '\033[92m',
    'info': '\033[94m',
    'dim': '\033[2m',
    'bold': '\033[1m',
}

_colors_enabled = True


def init(nocolor: bool = False, stream=None):
    """Initialize color support.

    Colors are off when nocolor is set, NO_COLOR is exported
    (https://no-color.org/) or the stream is not a terminal.
    """
    global _colors_enabled
    stream = stream or sys.stdout
    _colors_enabled = not (nocolor or os.environ.get('NO_COLOR') or not stream.isatty())


def enabled() -> bool:
    """Return True if colors are enabled."""
    return _colors_enabled


def style(text: str, name: str) -> str:
    """Wrap text in the named style if colors are enabled."""
    if not _colors_enabled:
        return text
    return f"{_STYLES[name]}{text}{_RESET}"


def error(text: str) -> str:
    return style(text, 'error')


def warning(text: str) -> str:
    return style(text, 'warning')


def success(text: str) -> str:
    return style(text, 'success')


def info(text: str) -> str:
    return style(text, 'info')


def dim(text: str) -> str:
    return style(text, 'dim')


def bold(text: str) -> str:
    return style(text, 'bold')


# Package actions
pkg_install = success
pkg_upgrade = info
pkg_remove = error
