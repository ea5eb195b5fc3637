"""
Argument and option declarations plus validation records

Definitions are frozen once created; parsers and commands share them
freely.
"""

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Pattern, Sequence, Tuple, Union


class ArgumentType(str, enum.Enum):
    """Semantic type of an argument or option"""
    STRING = 'string'
    NUMBER = 'number'
    BOOLEAN = 'boolean'
    ARRAY = 'array'
    FILE_PATH = 'file-path'
    DIRECTORY_PATH = 'directory-path'
    URL = 'url'
    EMAIL = 'email'
    JSON = 'json'
    ENUM = 'enum'


class ErrorCode:
    """Codes used in FieldError.code"""
    REQUIRED = 'required'
    MISSING_VALUE = 'missing_value'
    INVALID_TYPE = 'invalid_type'
    TOO_SMALL = 'too_small'
    TOO_BIG = 'too_big'
    INVALID_STRING = 'invalid_string'
    INVALID_ENUM_VALUE = 'invalid_enum_value'
    INVALID_EMAIL = 'invalid_email'
    INVALID_URL = 'invalid_url'
    UNKNOWN_OPTION = 'unknown_option'
    OPTION_CONFLICT = 'option_conflict'
    OPTION_REQUIREMENT = 'option_requirement'
    CUSTOM = 'custom'


@dataclass(frozen=True)
class FieldError:
    """Structured, field-level validation error"""
    path: Tuple[str, ...]
    message: str
    code: str
    expected: Any = None
    received: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'path': list(self.path), 'message': self.message, 'code': self.code}
        if self.expected is not None:
            data['expected'] = self.expected
        if self.received is not None:
            data['received'] = self.received
        return data

    def __str__(self) -> str:
        location = '.'.join(self.path)
        return f"{location}: {self.message}" if location else self.message


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation step"""
    success: bool
    data: Any = None
    errors: Tuple[FieldError, ...] = ()
    warnings: Tuple[str, ...] = ()

    @classmethod
    def ok(cls, data: Any = None, warnings: Sequence[str] = ()) -> 'ValidationResult':
        return cls(True, data, (), tuple(warnings))

    @classmethod
    def fail(cls, *errors: FieldError, warnings: Sequence[str] = ()) -> 'ValidationResult':
        return cls(False, None, tuple(errors), tuple(warnings))


@dataclass(frozen=True)
class ValidationContext:
    """Information handed to custom validators"""
    path: Tuple[str, ...]
    raw_input: Tuple[str, ...]
    parsed_args: Mapping[str, Any]
    command: Optional[str]
    env: Mapping[str, str]


# A custom validator returns a ValidationResult, a bool, or an error message
Validator = Callable[[Any, ValidationContext], Union[ValidationResult, bool, str, None]]


def _compile_pattern(pattern: Union[str, Pattern, None]) -> Optional[Pattern]:
    if pattern is None or isinstance(pattern, re.Pattern):
        return pattern
    return re.compile(pattern)


@dataclass(frozen=True)
class FieldDefinition:
    """Fields shared by arguments and options"""
    name: str
    description: str = ''
    type: ArgumentType = ArgumentType.STRING
    required: bool = False
    default: Any = None
    choices: Optional[Tuple[str, ...]] = None
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[Pattern] = None
    multiple: bool = False
    env_var: Optional[str] = None
    coerce: bool = True
    # JSON Schema (checked with jsonschema)
    schema: Optional[Mapping[str, Any]] = None
    validator: Optional[Validator] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name or not isinstance(self.name, str):
            raise ValueError("Field name must be a non-empty string")
        if not isinstance(self.type, ArgumentType):
            object.__setattr__(self, 'type', ArgumentType(self.type))
        object.__setattr__(self, 'pattern', _compile_pattern(self.pattern))
        if self.choices is not None:
            object.__setattr__(self, 'choices', tuple(str(c) for c in self.choices))
        if self.type is ArgumentType.ENUM and not self.choices:
            raise ValueError(f"Enum field '{self.name}' must declare choices")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"Field '{self.name}': min ({self.min}) is greater than max ({self.max})")
        if self.validator is not None and not callable(self.validator):
            raise TypeError(f"Field '{self.name}': validator must be callable")

    @property
    def has_default(self) -> bool:
        return self.default is not None


@dataclass(frozen=True)
class ArgumentDefinition(FieldDefinition):
    """Positional argument declaration"""


@dataclass(frozen=True)
class OptionDefinition(FieldDefinition):
    """Named option declaration"""
    alias: Optional[str] = None
    flag: bool = False
    conflicts: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.name.startswith('-'):
            object.__setattr__(self, 'name', self.name.lstrip('-'))
        if self.alias is not None:
            alias = self.alias.lstrip('-')
            if len(alias) != 1:
                raise ValueError(
                    f"Short option must be a single character, got: '{self.alias}'"
                )
            object.__setattr__(self, 'alias', alias)
        object.__setattr__(self, 'conflicts', tuple(self.conflicts))
        object.__setattr__(self, 'requires', tuple(self.requires))
        if self.flag and self.type in (ArgumentType.STRING, 'string'):
            object.__setattr__(self, 'type', ArgumentType.BOOLEAN)
        super().__post_init__()

    @property
    def takes_value(self) -> bool:
        """Boolean options and flags never consume the following token"""
        return not self.flag and self.type is not ArgumentType.BOOLEAN


@dataclass(frozen=True)
class SubcommandConfig:
    """Definitions used when the first token names a subcommand"""
    name: str
    description: str = ''
    aliases: Tuple[str, ...] = ()
    arguments: Tuple[ArgumentDefinition, ...] = ()
    options: Tuple[OptionDefinition, ...] = ()
    hidden: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, 'aliases', tuple(self.aliases))
        object.__setattr__(self, 'arguments', tuple(self.arguments))
        object.__setattr__(self, 'options', tuple(self.options))
