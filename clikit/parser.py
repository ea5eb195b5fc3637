"""
Argument parsing with type coercion and validation

Binds tokens produced by the tokenizer to declared arguments and options,
applies environment and default fallbacks, coerces values and validates
them. Validation problems are accumulated as structured FieldError records
on the result; parsing never stops at the first problem.
"""

import copy
import inspect
import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union
from urllib.parse import urlsplit

import jsonschema

from .errors import ValidationFailedError
from .fields import (
    ArgumentDefinition, ArgumentType, ErrorCode, FieldDefinition, FieldError,
    OptionDefinition, SubcommandConfig, ValidationContext, ValidationResult
)
from .tokenizer import Token, TokenType, Tokenizer, _is_option_like

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
URL_SCHEME_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9+.\-]*$')

TRUE_STRINGS = frozenset({'true', '1', 'yes', 'on'})
FALSE_STRINGS = frozenset({'false', '0', 'no', 'off'})

STRICT = 'strict'
PERMISSIVE = 'permissive'

SOURCE_ARGV = 'argv'
SOURCE_ENV = 'env'
SOURCE_DEFAULT = 'default'

HELP_OPTION = OptionDefinition(
    name='help', alias='h', flag=True, description='Show help information'
)
VERSION_OPTION = OptionDefinition(
    name='version', alias='V', flag=True, description='Show version information'
)

_MISSING = object()


@dataclass(frozen=True)
class ParseResult:
    """Frozen outcome of ArgumentParser.parse"""
    command: str = ''
    subcommand: Optional[str] = None
    arguments: Mapping[str, Any] = field(default_factory=dict)
    options: Mapping[str, Any] = field(default_factory=dict)
    positional: Tuple[str, ...] = ()
    unknown: Tuple[str, ...] = ()
    validation: ValidationResult = field(default_factory=lambda: ValidationResult(True))
    help: bool = False
    version: bool = False
    sources: Mapping[str, str] = field(default_factory=dict)
    raw_args: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.validation.success

    @property
    def errors(self) -> Tuple[FieldError, ...]:
        return self.validation.errors

    def raise_for_errors(self) -> None:
        """Raise ValidationFailedError when validation did not succeed"""
        if not self.validation.success:
            summary = '; '.join(str(e) for e in self.validation.errors)
            raise ValidationFailedError(f"Invalid arguments: {summary}", list(self.validation.errors))


class _ParseState:
    """Mutable scratch space; frozen into a ParseResult at the end"""

    def __init__(self, raw_args: Sequence[str]):
        self.raw_args: Tuple[str, ...] = tuple(raw_args)
        self.command: str = ''
        self.subcommand: Optional[str] = None
        self.arguments: Dict[str, Any] = {}
        self.options: Dict[str, Any] = {}
        self.positional: List[str] = []
        self.unknown: List[str] = []
        self.errors: List[FieldError] = []
        self.warnings: List[str] = []
        self.sources: Dict[str, str] = {}
        # Fields that already carry a token-level error
        self.invalid: Set[str] = set()
        self.help: bool = False
        self.version: bool = False

    def freeze(self) -> ParseResult:
        validation = ValidationResult(
            success=not self.errors,
            data={'arguments': dict(self.arguments), 'options': dict(self.options)},
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
        )
        return ParseResult(
            command=self.command,
            subcommand=self.subcommand,
            arguments=MappingProxyType(dict(self.arguments)),
            options=MappingProxyType(dict(self.options)),
            positional=tuple(self.positional),
            unknown=tuple(self.unknown),
            validation=validation,
            help=self.help,
            version=self.version,
            sources=MappingProxyType(dict(self.sources)),
            raw_args=self.raw_args,
        )


def _type_name(value: Any) -> str:
    """Name of a value's type in the vocabulary used by error records"""
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, (list, tuple)):
        return 'array'
    return 'object'


def _parse_number(text: str) -> Union[int, float, str]:
    candidate = text.strip()
    if not candidate or '_' in candidate:
        return text
    try:
        return int(candidate, 10)
    except ValueError:
        pass
    try:
        number = float(candidate)
    except ValueError:
        return text
    return number if math.isfinite(number) else text


def _as_occurrences(value: Any, definition: FieldDefinition) -> Any:
    """Wrap a single fallback value the way repeated argv occurrences are collected"""
    if definition.multiple and definition.type is not ArgumentType.ARRAY and not isinstance(value, list):
        return [value]
    return value


def _matches_choice(value: Any, definition: FieldDefinition) -> bool:
    if definition.type is ArgumentType.NUMBER and isinstance(value, (int, float)):
        return any(_parse_number(choice) == value for choice in definition.choices)
    return str(value) in definition.choices


def coerce_value(value: Any, arg_type: ArgumentType) -> Any:
    """
    Coerce a raw value towards the declared type

    Values that cannot be converted are returned unchanged so that type
    validation can report them.
    """
    if value is None:
        return value

    if arg_type is ArgumentType.NUMBER:
        if isinstance(value, str):
            return _parse_number(value)
        return value

    if arg_type is ArgumentType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUE_STRINGS:
                return True
            if lowered in FALSE_STRINGS:
                return False
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        return value

    if arg_type is ArgumentType.ARRAY:
        if isinstance(value, list):
            return value
        if isinstance(value, tuple):
            return list(value)
        return [value]

    if arg_type is ArgumentType.JSON:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value

    if isinstance(value, str):
        return value
    return str(value)


def _is_valid_url(value: Any) -> bool:
    if not isinstance(value, str) or ':' not in value:
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    if not parts.scheme or not URL_SCHEME_PATTERN.match(parts.scheme):
        return False
    return bool(parts.netloc or parts.path)


class ArgumentParser:
    """
    Field resolver for arguments and options

    Resolution order per field: explicit token, environment variable,
    declared default, then a 'required' error when the field is required.
    """

    def __init__(self,
                 prog: Optional[str] = None,
                 description: str = '',
                 mode: str = STRICT,
                 stop_at_positional: bool = False,
                 case_sensitive: bool = True,
                 add_help: bool = True,
                 add_version: bool = False,
                 env: Optional[Mapping[str, str]] = None):
        if mode not in (STRICT, PERMISSIVE):
            raise ValueError(f"Parser mode must be '{STRICT}' or '{PERMISSIVE}', got: '{mode}'")

        self.prog: Optional[str] = prog
        self.description: str = description
        self.mode: str = mode
        self.stop_at_positional: bool = stop_at_positional
        self.case_sensitive: bool = case_sensitive
        self._env: Mapping[str, str] = env if env is not None else os.environ
        self._arguments: List[ArgumentDefinition] = []
        self._options: List[OptionDefinition] = []
        self._builtin_options: List[OptionDefinition] = []
        self._subcommands: Dict[str, SubcommandConfig] = {}
        self._logger: logging.Logger = logging.getLogger('clikit.parser')

        if add_help:
            self._builtin_options.append(HELP_OPTION)
        if add_version:
            self._builtin_options.append(VERSION_OPTION)

    # -- declaration -------------------------------------------------------

    @property
    def arguments(self) -> Tuple[ArgumentDefinition, ...]:
        return tuple(self._arguments)

    @property
    def options(self) -> Tuple[OptionDefinition, ...]:
        return tuple(self._builtin_options + self._options)

    @property
    def subcommands(self) -> Dict[str, SubcommandConfig]:
        return dict(self._subcommands)

    def add_argument(self, definition: Union[ArgumentDefinition, str], **kwargs: Any) -> 'ArgumentParser':
        """Declare a positional argument (definition object or name plus fields)"""
        if isinstance(definition, str):
            definition = ArgumentDefinition(name=definition, **kwargs)
        elif kwargs:
            raise TypeError("Keyword fields are only accepted together with an argument name")

        self._check_definition_list(self._arguments + [definition], 'argument')
        self._check_schema(definition)
        self._warn_after_multiple(self._arguments, definition)
        self._arguments.append(definition)
        return self

    def add_option(self, definition: Union[OptionDefinition, str], **kwargs: Any) -> 'ArgumentParser':
        """Declare an option (definition object or name plus fields)"""
        if isinstance(definition, str):
            definition = OptionDefinition(name=definition, **kwargs)
        elif kwargs:
            raise TypeError("Keyword fields are only accepted together with an option name")

        self._check_option_names(self._builtin_options + self._options + [definition])
        self._check_schema(definition)
        self._options.append(definition)
        return self

    def add_subcommand(self, subcommand: SubcommandConfig) -> 'ArgumentParser':
        """Register a subcommand and its aliases"""
        names = [subcommand.name] + list(subcommand.aliases)
        for name in names:
            key = self._fold(name)
            existing = self._subcommands.get(key)
            if existing is not None and existing.name != subcommand.name:
                raise ValueError(
                    f"Subcommand name '{name}' is already used by '{existing.name}'"
                )

        self._check_definition_list(list(subcommand.arguments), 'argument')
        for index, definition in enumerate(subcommand.arguments):
            self._check_schema(definition)
            self._warn_after_multiple(list(subcommand.arguments[:index]), definition)
        self._check_option_names(self._builtin_options + list(subcommand.options))
        for definition in subcommand.options:
            self._check_schema(definition)

        for name in names:
            self._subcommands[self._fold(name)] = subcommand
        self._logger.debug(f"Registered subcommand '{subcommand.name}'")
        return self

    def _check_definition_list(self, definitions: Sequence[FieldDefinition], kind: str) -> None:
        seen: Set[str] = set()
        for definition in definitions:
            key = self._fold(definition.name)
            if key in seen:
                raise ValueError(f"Duplicate {kind} name: '{definition.name}'")
            seen.add(key)

    def _check_option_names(self, definitions: Sequence[OptionDefinition]) -> None:
        names: Dict[str, str] = {}
        aliases: Dict[str, str] = {}
        for definition in definitions:
            key = self._fold(definition.name)
            if key in names:
                raise ValueError(f"Duplicate option name: '--{definition.name}'")
            names[key] = definition.name
            if definition.alias:
                alias = self._fold(definition.alias)
                if alias in aliases:
                    raise ValueError(
                        f"Short option '-{definition.alias}' conflicts with existing option "
                        f"'--{aliases[alias]}'. Each short option must be unique."
                    )
                aliases[alias] = definition.name

    def _check_schema(self, definition: FieldDefinition) -> None:
        if definition.schema is not None:
            validator_cls = jsonschema.validators.validator_for(definition.schema)
            validator_cls.check_schema(definition.schema)

    def _warn_after_multiple(self, existing: Sequence[ArgumentDefinition],
                             definition: ArgumentDefinition) -> None:
        greedy = [d.name for d in existing if d.multiple]
        if greedy:
            self._logger.warning(
                f"Argument '{definition.name}' is declared after multi-value argument "
                f"'{greedy[0]}' and will never receive a value"
            )

    def _fold(self, name: str) -> str:
        return name if self.case_sensitive else name.lower()

    # -- parsing -----------------------------------------------------------

    def parse(self, args: Sequence[str]) -> ParseResult:
        """
        Parse an argv-style list

        Args:
            args: Raw argument strings (without the program name)

        Returns:
            Frozen ParseResult; inspect ``validation.success`` and
            ``validation.errors`` before using the values
        """
        args = list(args)
        state = _ParseState(args)
        argument_defs: Sequence[ArgumentDefinition] = self._arguments
        option_defs: Sequence[OptionDefinition] = self.options

        if args and not _is_option_like(args[0]) and self._subcommands:
            first = args[0]
            subcommand = self._subcommands.get(self._fold(first))
            state.command = first
            args = args[1:]
            if subcommand is not None:
                state.subcommand = subcommand.name
                argument_defs = subcommand.arguments
                option_defs = self._merge_builtin_options(subcommand.options)
            else:
                self._logger.debug(f"'{first}' is not a registered subcommand")

        stream = Tokenizer(stop_at_positional=self.stop_at_positional).tokenize(args)
        positional = self._resolve_options(stream.tokens, option_defs, state)

        if state.options.get('help') is True and any(d is HELP_OPTION for d in option_defs):
            state.help = True
            state.positional = [t.value for t in positional]
            return state.freeze()
        if state.options.get('version') is True and any(d is VERSION_OPTION for d in option_defs):
            state.version = True
            state.positional = [t.value for t in positional]
            return state.freeze()

        self._bind_arguments(positional, argument_defs, state)
        self._validate(state, argument_defs, option_defs)

        result = state.freeze()
        self._logger.debug(
            f"Parsed command={result.command!r} arguments={list(result.arguments)} "
            f"options={list(result.options)} errors={len(result.errors)}"
        )
        return result

    def _merge_builtin_options(self, options: Sequence[OptionDefinition]) -> List[OptionDefinition]:
        declared = {self._fold(d.name) for d in options}
        builtins = [d for d in self._builtin_options if self._fold(d.name) not in declared]
        return builtins + list(options)

    def _lookup(self, option_defs: Sequence[OptionDefinition]) -> Tuple[Dict[str, OptionDefinition],
                                                                      Dict[str, OptionDefinition]]:
        by_name: Dict[str, OptionDefinition] = {}
        by_alias: Dict[str, OptionDefinition] = {}
        for definition in option_defs:
            by_name[self._fold(definition.name)] = definition
            if definition.alias:
                by_alias[self._fold(definition.alias)] = definition
        return by_name, by_alias

    def _resolve_options(self, tokens: List[Token], option_defs: Sequence[OptionDefinition],
                         state: _ParseState) -> List[Token]:
        """Attach option tokens to definitions; return the positional tokens"""
        by_name, by_alias = self._lookup(option_defs)
        positional: List[Token] = []
        index = 0

        while index < len(tokens):
            token = tokens[index]

            if token.type is TokenType.SEPARATOR:
                index += 1
                continue

            if token.type is TokenType.VALUE:
                positional.append(token)
                index += 1
                continue

            if token.type is TokenType.MALFORMED:
                self._record_unknown(token, None, state)
                index += 1
                continue

            name = self._fold(token.name)
            if token.type is TokenType.LONG_OPTION:
                definition = by_name.get(name) or by_alias.get(name)
            else:
                definition = by_alias.get(name) or by_name.get(name)

            if definition is None:
                index += self._record_unknown(token, tokens[index + 1:index + 2], state)
                continue

            consumed = 1
            value: Any = True
            if token.inline_value is not None:
                value = token.inline_value
            elif definition.takes_value:
                last_in_group = token.group_index == len(token.raw) - 2
                if token.is_grouped and not last_in_group:
                    # -ofile: the rest of the group is the value
                    value = token.raw[token.group_index + 2:]
                    while index + consumed < len(tokens) and \
                            tokens[index + consumed].position == token.position:
                        consumed += 1
                else:
                    following = tokens[index + 1] if index + 1 < len(tokens) else None
                    if following is not None and following.type is TokenType.VALUE \
                            and not following.literal:
                        value = following.value
                        consumed = 2
                    else:
                        self._record_missing_value(token, definition, state)
                        index += consumed
                        continue

            self._assign_option(definition, value, state)
            index += consumed

        return positional

    def _assign_option(self, definition: OptionDefinition, value: Any, state: _ParseState) -> None:
        if definition.multiple:
            current = state.options.get(definition.name)
            if not isinstance(current, list):
                current = []
                state.options[definition.name] = current
            current.append(value)
        else:
            state.options[definition.name] = value
        state.sources[f"options.{definition.name}"] = SOURCE_ARGV

    def _record_missing_value(self, token: Token, definition: OptionDefinition,
                              state: _ParseState) -> None:
        state.invalid.add(f"options.{definition.name}")
        state.errors.append(FieldError(
            path=('options', definition.name),
            message=f"Option --{definition.name} requires a value",
            code=ErrorCode.MISSING_VALUE,
            expected=definition.type.value,
            received=token.value,
        ))

    def _record_unknown(self, token: Token, following: Sequence[Token], state: _ParseState) -> int:
        """Handle an option with no definition; return the number of tokens consumed"""
        text = token.value
        if self.mode == STRICT:
            state.errors.append(FieldError(
                path=('options', token.name),
                message=f"Unknown option: {text}",
                code=ErrorCode.UNKNOWN_OPTION,
                received=text,
            ))
            return 1

        state.unknown.append(text)
        can_take_value = token.inline_value is None and token.type is not TokenType.MALFORMED and (
            not token.is_grouped or token.group_index == len(token.raw) - 2
        )
        if can_take_value and following:
            candidate = following[0]
            if candidate.type is TokenType.VALUE and not candidate.literal:
                state.unknown.append(candidate.value)
                return 2
        return 1

    def _bind_arguments(self, positional: List[Token], argument_defs: Sequence[ArgumentDefinition],
                        state: _ParseState) -> None:
        values = [t.value for t in positional]
        cursor = 0
        for definition in argument_defs:
            if definition.multiple:
                rest = values[cursor:]
                cursor = len(values)
                if rest:
                    state.arguments[definition.name] = rest
                    state.sources[f"arguments.{definition.name}"] = SOURCE_ARGV
                break
            if cursor < len(values):
                state.arguments[definition.name] = values[cursor]
                state.sources[f"arguments.{definition.name}"] = SOURCE_ARGV
                cursor += 1
        state.positional = values[cursor:]

    # -- validation --------------------------------------------------------

    def _validate(self, state: _ParseState, argument_defs: Sequence[ArgumentDefinition],
                  option_defs: Sequence[OptionDefinition]) -> None:
        for definition in argument_defs:
            self._resolve_field(state.arguments, 'arguments', definition, state)
        for definition in option_defs:
            self._resolve_field(state.options, 'options', definition, state)
        self._check_constraints(state, option_defs)

    def _resolve_field(self, container: Dict[str, Any], section: str,
                       definition: FieldDefinition, state: _ParseState) -> None:
        name = definition.name
        key = f"{section}.{name}"
        path = (section, name)
        if key in state.invalid:
            return

        value = container.get(name, _MISSING)
        source = state.sources.get(key)

        if value is _MISSING and definition.env_var:
            env_value = self._env.get(definition.env_var)
            if env_value:
                value = _as_occurrences(env_value, definition)
                source = SOURCE_ENV

        if value is _MISSING and definition.has_default:
            value = _as_occurrences(copy.deepcopy(definition.default), definition)
            source = SOURCE_DEFAULT

        if value is _MISSING:
            if definition.required:
                kind = 'argument' if section == 'arguments' else 'option'
                state.errors.append(FieldError(
                    path=path,
                    message=f"Missing required {kind} '{name}'",
                    code=ErrorCode.REQUIRED,
                    expected=definition.type.value,
                ))
            return

        if definition.coerce:
            value = self._coerce_field(value, definition, state)

        state.errors.extend(self._check_builtin(value, definition, path))
        if definition.schema is not None:
            state.errors.extend(self._check_json_schema(value, definition, path))
        if definition.validator is not None:
            value = self._run_validator(value, definition, path, state)

        container[name] = value
        state.sources[key] = source or SOURCE_ARGV

    def _coerce_field(self, value: Any, definition: FieldDefinition, state: _ParseState) -> Any:
        if definition.multiple and definition.type is not ArgumentType.ARRAY and isinstance(value, list):
            coerced = [coerce_value(item, definition.type) for item in value]
        else:
            coerced = coerce_value(value, definition.type)

        if definition.type is ArgumentType.JSON and isinstance(value, str) and coerced is value:
            state.warnings.append(
                f"Value for '{definition.name}' is not valid JSON; using the raw string"
            )
        return coerced

    def _check_builtin(self, value: Any, definition: FieldDefinition,
                       path: Tuple[str, ...]) -> List[FieldError]:
        if definition.multiple and definition.type is not ArgumentType.ARRAY and isinstance(value, list):
            errors: List[FieldError] = []
            for index, item in enumerate(value):
                errors.extend(self._check_value(item, definition, path + (str(index),)))
            return errors
        return self._check_value(value, definition, path)

    def _check_value(self, value: Any, definition: FieldDefinition,
                     path: Tuple[str, ...]) -> List[FieldError]:
        arg_type = definition.type
        errors: List[FieldError] = []

        def add(message: str, code: str, expected: Any, received: Any) -> None:
            errors.append(FieldError(path, message, code, expected, received))

        if arg_type is ArgumentType.NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or \
                    (isinstance(value, float) and math.isnan(value)):
                add('Expected a number', ErrorCode.INVALID_TYPE, 'number', _type_name(value))
            else:
                if definition.min is not None and value < definition.min:
                    add(f"Value must be at least {definition.min:g}", ErrorCode.TOO_SMALL,
                        f">= {definition.min:g}", value)
                if definition.max is not None and value > definition.max:
                    add(f"Value must be at most {definition.max:g}", ErrorCode.TOO_BIG,
                        f"<= {definition.max:g}", value)

        elif arg_type in (ArgumentType.STRING, ArgumentType.FILE_PATH, ArgumentType.DIRECTORY_PATH):
            if not isinstance(value, str):
                add('Expected a string', ErrorCode.INVALID_TYPE, 'string', _type_name(value))
            else:
                if definition.min is not None and len(value) < definition.min:
                    add(f"String must be at least {definition.min:g} characters", ErrorCode.TOO_SMALL,
                        f"length >= {definition.min:g}", len(value))
                if definition.max is not None and len(value) > definition.max:
                    add(f"String must be at most {definition.max:g} characters", ErrorCode.TOO_BIG,
                        f"length <= {definition.max:g}", len(value))
                if definition.pattern is not None and not definition.pattern.search(value):
                    add('String does not match required pattern', ErrorCode.INVALID_STRING,
                        definition.pattern.pattern, value)

        elif arg_type is ArgumentType.BOOLEAN:
            if not isinstance(value, bool):
                add('Expected a boolean', ErrorCode.INVALID_TYPE, 'boolean', _type_name(value))

        elif arg_type is ArgumentType.ARRAY:
            if not isinstance(value, list):
                add('Expected an array', ErrorCode.INVALID_TYPE, 'array', _type_name(value))
            else:
                if definition.min is not None and len(value) < definition.min:
                    add(f"Array must contain at least {definition.min:g} items", ErrorCode.TOO_SMALL,
                        f"items >= {definition.min:g}", len(value))
                if definition.max is not None and len(value) > definition.max:
                    add(f"Array must contain at most {definition.max:g} items", ErrorCode.TOO_BIG,
                        f"items <= {definition.max:g}", len(value))

        elif arg_type is ArgumentType.EMAIL:
            if not isinstance(value, str) or not EMAIL_PATTERN.match(value):
                add('Invalid email address format', ErrorCode.INVALID_EMAIL, 'valid email', value)

        elif arg_type is ArgumentType.URL:
            if not _is_valid_url(value):
                add('Invalid URL format', ErrorCode.INVALID_URL, 'valid URL', value)

        if definition.choices and not errors and arg_type is not ArgumentType.ARRAY:
            if not _matches_choice(value, definition):
                add(f"Value must be one of: {', '.join(definition.choices)}",
                    ErrorCode.INVALID_ENUM_VALUE, list(definition.choices), value)

        return errors

    def _check_json_schema(self, value: Any, definition: FieldDefinition,
                           path: Tuple[str, ...]) -> List[FieldError]:
        validator_cls = jsonschema.validators.validator_for(definition.schema)
        validator = validator_cls(definition.schema)
        errors: List[FieldError] = []
        for error in sorted(validator.iter_errors(value), key=lambda e: [str(p) for p in e.absolute_path]):
            errors.append(FieldError(
                path=path + tuple(str(p) for p in error.absolute_path),
                message=error.message,
                code=str(error.validator),
                expected=error.validator_value,
                received=error.instance,
            ))
        return errors

    def _run_validator(self, value: Any, definition: FieldDefinition,
                       path: Tuple[str, ...], state: _ParseState) -> Any:
        context = ValidationContext(
            path=path,
            raw_input=state.raw_args,
            parsed_args=MappingProxyType({**state.arguments, **state.options}),
            command=state.command or None,
            env=self._env,
        )
        try:
            outcome = definition.validator(value, context)
        except Exception as e:
            self._logger.debug(f"Validator for '{definition.name}' raised: {e}")
            state.errors.append(FieldError(
                path, f"Validation error: {e}", ErrorCode.CUSTOM, received=value
            ))
            return value

        if inspect.isawaitable(outcome):
            if inspect.iscoroutine(outcome):
                outcome.close()
            raise TypeError(
                f"Validator for '{definition.name}' returned an awaitable; validators must be synchronous"
            )

        if outcome is None or outcome is True:
            return value
        if outcome is False:
            state.errors.append(FieldError(
                path, f"Validation failed for '{definition.name}'", ErrorCode.CUSTOM, received=value
            ))
            return value
        if isinstance(outcome, str):
            state.errors.append(FieldError(path, outcome, ErrorCode.CUSTOM, received=value))
            return value
        if isinstance(outcome, ValidationResult):
            state.warnings.extend(outcome.warnings)
            if not outcome.success:
                state.errors.extend(outcome.errors or (FieldError(
                    path, f"Validation failed for '{definition.name}'", ErrorCode.CUSTOM, received=value
                ),))
                return value
            return value if outcome.data is None else outcome.data

        raise TypeError(
            f"Validator for '{definition.name}' returned unsupported type {type(outcome).__name__}"
        )

    def _check_constraints(self, state: _ParseState, option_defs: Sequence[OptionDefinition]) -> None:
        """Conflicts count only supplied options; requirements accept defaults too"""
        supplied = {
            name for name in state.options
            if state.sources.get(f"options.{name}") in (SOURCE_ARGV, SOURCE_ENV)
        }

        for definition in option_defs:
            if definition.name not in supplied:
                continue
            for other in definition.conflicts:
                if other in supplied:
                    state.errors.append(FieldError(
                        path=('options', definition.name),
                        message=f"Option --{definition.name} conflicts with --{other}",
                        code=ErrorCode.OPTION_CONFLICT,
                        received=other,
                    ))
            for other in definition.requires:
                if other not in state.options:
                    state.errors.append(FieldError(
                        path=('options', definition.name),
                        message=f"Option --{definition.name} requires --{other}",
                        code=ErrorCode.OPTION_REQUIREMENT,
                        expected=other,
                    ))

    # -- help --------------------------------------------------------------

    def format_help(self, subcommand: Optional[str] = None) -> str:
        """Render usage text for the parser or one of its subcommands"""
        prog = self.prog or 'app'
        description = self.description
        argument_defs: Sequence[ArgumentDefinition] = self._arguments
        option_defs: Sequence[OptionDefinition] = self.options

        if subcommand is not None:
            config = self._subcommands.get(self._fold(subcommand))
            if config is None:
                return f"Unknown command: {subcommand}"
            prog = f"{prog} {config.name}"
            description = config.description
            argument_defs = config.arguments
            option_defs = self._merge_builtin_options(config.options)

        usage = [f"usage: {prog}"]
        if subcommand is None and self._subcommands:
            usage.append('<command>')
        if option_defs:
            usage.append('[options]')
        for definition in argument_defs:
            label = f"{definition.name}..." if definition.multiple else definition.name
            usage.append(f"<{label}>" if definition.required else f"[{label}]")

        lines = [' '.join(usage)]
        if description:
            lines.extend(['', description])

        if argument_defs:
            lines.extend(['', 'Arguments:'])
            lines.extend(self._help_rows((d.name, d) for d in argument_defs))

        if option_defs:
            lines.extend(['', 'Options:'])
            rows = []
            for definition in option_defs:
                label = f"-{definition.alias}, --{definition.name}" if definition.alias \
                    else f"    --{definition.name}"
                if definition.takes_value:
                    label += f" <{definition.type.value}>"
                rows.append((label, definition))
            lines.extend(self._help_rows(rows))

        if subcommand is None and self._subcommands:
            lines.extend(['', 'Commands:'])
            seen: Set[str] = set()
            for config in self._subcommands.values():
                if config.name in seen or config.hidden:
                    continue
                seen.add(config.name)
                label = config.name
                if config.aliases:
                    label += f" ({', '.join(config.aliases)})"
                lines.append(f"  {label:28} {config.description}".rstrip())

        return '\n'.join(lines) + '\n'

    def _help_rows(self, rows: Iterable[Tuple[str, FieldDefinition]]) -> List[str]:
        lines = []
        for label, definition in rows:
            notes = []
            if definition.required:
                notes.append('required')
            if definition.choices:
                notes.append(f"choices: {', '.join(definition.choices)}")
            if definition.has_default and definition.default is not False:
                notes.append(f"default: {definition.default}")
            if definition.env_var:
                notes.append(f"env: {definition.env_var}")
            text = definition.description
            if notes:
                text = f"{text} ({'; '.join(notes)})" if text else f"({'; '.join(notes)})"
            lines.append(f"  {label:28} {text}".rstrip())
        return lines
