"""
Terminal output for clikit applications

ANSI styling that switches itself off when the stream cannot render it,
and the renderers ``CLI`` uses for parse errors and command results.
"""

import functools
import logging
import os
import platform
import re
import sys
from typing import Any, Dict, Iterable, Optional, TextIO

from .interfaces import OutputFormatter

if platform.system() == 'Windows':
    import colorama
    colorama.just_fix_windows_console()


def _sgr(*codes: int) -> str:
    return ''.join(f'\033[{code}m' for code in codes)


RESET = _sgr(0)

COLORS: Dict[str, str] = {
    'red': _sgr(31),
    'green': _sgr(32),
    'yellow': _sgr(33),
    'blue': _sgr(34),
    'magenta': _sgr(35),
    'cyan': _sgr(36),
    'white': _sgr(37),
    'gray': _sgr(90),
    'bold': _sgr(1),
    'dim': _sgr(2),
    'underline': _sgr(4),
}

# Semantic names used by the toolkit itself
STYLES: Dict[str, str] = {
    'success': COLORS['green'],
    'error': COLORS['red'],
    'warning': COLORS['yellow'],
    'info': COLORS['blue'],
    'debug': COLORS['gray'],
    'emphasis': COLORS['bold'],
    'heading': _sgr(1, 97),
}

_ANSI_ESCAPE = re.compile(r'\x1B\[[0-?]*[ -/]*[@-~]')


def _supports_color(stream: Optional[TextIO] = None) -> bool:
    """
    Decide whether ANSI codes should be written to ``stream``

    ``NO_COLOR`` always wins, then ``FORCE_COLOR`` / ``CLICOLOR_FORCE=1``,
    then a dumb terminal, then whether the stream is a TTY.
    """
    env = os.environ
    if 'NO_COLOR' in env:
        return False
    if env.get('FORCE_COLOR') or env.get('CLICOLOR_FORCE') == '1':
        return True
    if env.get('TERM', '').lower() == 'dumb':
        return False

    stream = sys.stdout if stream is None else stream
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub('', text)


class TerminalOutputFormatter(OutputFormatter):
    """ANSI formatter; ``use_colors=None`` detects support from stdout"""

    def __init__(self, use_colors: Optional[bool] = None):
        self.use_colors: bool = _supports_color() if use_colors is None else use_colors
        self._logger: logging.Logger = logging.getLogger('clikit.output')

    def supports_color(self) -> bool:
        return self.use_colors

    def format(self, text: str, style: Optional[str] = None) -> str:
        """
        Wrap ``text`` in the codes for ``style``

        Args:
            text: Text to format
            style: Semantic style (``success``, ``error``...) or a color name

        Returns:
            Styled text, or ``text`` unchanged when colors are off or the
            style is unknown
        """
        if not (self.use_colors and style):
            return text

        code = STYLES.get(style) or COLORS.get(style)
        if code is None:
            self._logger.warning(f"Unknown style: {style}")
            return text
        return f"{code}{text}{RESET}"

    def format_validation_errors(self, errors: Iterable[Any]) -> str:
        lines = [self.format('Invalid arguments:', 'error')]
        for error in errors:
            location = '.'.join(getattr(error, 'path', ()))
            message = getattr(error, 'message', str(error))
            if location:
                lines.append(f"  {self.format(location, 'emphasis')}: {message}")
            else:
                lines.append(f"  {message}")
        return '\n'.join(lines)

    def format_result(self, result: Any, verbose: bool = False) -> Optional[str]:
        """
        Render a command result for the terminal

        Successful results print their message, if any. Failures print
        ``Error: <message>``; with ``verbose`` the chained cause follows.
        """
        if result.success:
            return self.format(result.message, 'success') if result.message else None

        if result.message:
            reason = result.message
        elif result.error is not None:
            reason = str(result.error)
        else:
            reason = 'Command failed'

        lines = [self.format(f"Error: {reason}", 'error')]
        cause = getattr(result.error, '__cause__', None)
        if verbose and cause is not None:
            lines.append(self.format(f"Caused by: {cause!r}", 'debug'))
        return '\n'.join(lines)


@functools.lru_cache(maxsize=None)
def _default_formatter() -> TerminalOutputFormatter:
    return TerminalOutputFormatter()


def echo(text: str, style: Optional[str] = None, file: Optional[TextIO] = None,
         formatter: Optional[OutputFormatter] = None) -> None:
    """
    Print styled text

    Args:
        text: Text to print
        style: Style passed to the formatter
        file: Output stream (stdout, looked up at call time, when None)
        formatter: Formatter to use (a shared auto-detecting one when None)
    """
    formatter = formatter or _default_formatter()
    print(formatter.format(text, style), file=sys.stdout if file is None else file)
