"""
Lexical splitting of raw argument lists

The tokenizer only classifies strings; it never looks at option
definitions. Deciding whether a value token belongs to the option in
front of it is the parser's job.
"""

import enum
import logging
from typing import List, Optional, Sequence

_logger: logging.Logger = logging.getLogger('clikit.tokenizer')

END_OF_OPTIONS = '--'


class TokenType(enum.Enum):
    """Token classification"""
    LONG_OPTION = 'long_option'
    SHORT_OPTION = 'short_option'
    VALUE = 'value'
    SEPARATOR = 'separator'
    MALFORMED = 'malformed'


class Token:
    """Single classified argument (or one member of a combined short group)"""

    __slots__ = ('type', 'value', 'position', 'raw', 'group_index', 'literal')

    def __init__(self, type: TokenType, value: str, position: int,
                 raw: Optional[str] = None, group_index: int = 0,
                 literal: bool = False):
        self.type: TokenType = type
        self.value: str = value
        self.position: int = position
        self.raw: str = raw if raw is not None else value
        # Offset inside a combined short group such as -abc
        self.group_index: int = group_index
        # Value that can never be attached to an option (after -- or stop_at_positional)
        self.literal: bool = literal

    @property
    def is_option(self) -> bool:
        return self.type in (TokenType.LONG_OPTION, TokenType.SHORT_OPTION)

    @property
    def is_grouped(self) -> bool:
        return self.type is TokenType.SHORT_OPTION and len(self.raw) > 2

    @property
    def name(self) -> str:
        """Option name without dashes or inline value"""
        if self.type is TokenType.LONG_OPTION:
            return self.value[2:].split('=', 1)[0]
        if self.type is TokenType.SHORT_OPTION:
            return self.value[1:]
        return self.value

    @property
    def inline_value(self) -> Optional[str]:
        """Value embedded with '=' in a long option"""
        if self.type is TokenType.LONG_OPTION and '=' in self.value:
            return self.value.split('=', 1)[1]
        return None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Token):
            return NotImplemented
        return (self.type, self.value, self.position, self.raw, self.group_index, self.literal) == \
            (other.type, other.value, other.position, other.raw, other.group_index, other.literal)

    def __repr__(self) -> str:
        return f"Token({self.type.value}, {self.value!r}, position={self.position})"


class TokenStream:
    """Result of tokenization"""

    def __init__(self, tokens: List[Token]):
        self.tokens: List[Token] = tokens

    @property
    def options(self) -> List[Token]:
        return [t for t in self.tokens if t.is_option]

    @property
    def positional(self) -> List[Token]:
        return [t for t in self.tokens if t.type is TokenType.VALUE]

    @property
    def unknown(self) -> List[Token]:
        return [t for t in self.tokens if t.type is TokenType.MALFORMED]

    def __iter__(self):
        return iter(self.tokens)

    def __len__(self) -> int:
        return len(self.tokens)

    def __getitem__(self, index: int) -> Token:
        return self.tokens[index]


def _is_option_like(arg: str) -> bool:
    """True for '-x' or '--name'; a lone '-' is a value (stdin convention)"""
    return arg.startswith('-') and len(arg) > 1


class Tokenizer:
    """Split raw argument lists into option, value and separator tokens"""

    def __init__(self, stop_at_positional: bool = False):
        self.stop_at_positional: bool = stop_at_positional

    def tokenize(self, args: Sequence[str]) -> TokenStream:
        tokens: List[Token] = []
        in_options = True

        for position, arg in enumerate(args):
            if not isinstance(arg, str):
                raise TypeError(
                    f"Arguments must be strings, got {type(arg).__name__} at position {position}"
                )

            if not in_options:
                tokens.append(Token(TokenType.VALUE, arg, position, literal=True))
                continue

            if arg == END_OF_OPTIONS:
                tokens.append(Token(TokenType.SEPARATOR, arg, position))
                in_options = False
                continue

            if not _is_option_like(arg):
                tokens.append(Token(TokenType.VALUE, arg, position))
                if self.stop_at_positional:
                    in_options = False
                continue

            if arg.startswith('--'):
                name = arg[2:].split('=', 1)[0]
                if not name or name.startswith('-'):
                    _logger.debug(f"Malformed option token: {arg!r}")
                    tokens.append(Token(TokenType.MALFORMED, arg, position))
                else:
                    tokens.append(Token(TokenType.LONG_OPTION, arg, position))
                continue

            letters = arg[1:]
            if len(letters) == 1:
                tokens.append(Token(TokenType.SHORT_OPTION, arg, position))
                continue

            # -abc -> -a -b -c, keeping the raw group so the parser can
            # reinterpret "-ofile" as "-o file"
            for index, letter in enumerate(letters):
                tokens.append(Token(
                    TokenType.SHORT_OPTION, f"-{letter}", position,
                    raw=arg, group_index=index
                ))

        return TokenStream(tokens)


def tokenize(args: Sequence[str], stop_at_positional: bool = False) -> TokenStream:
    """Tokenize with a throwaway Tokenizer"""
    return Tokenizer(stop_at_positional=stop_at_positional).tokenize(args)
