"""
Decorators for defining commands from functions

Metadata is attached to the decorated function itself; nothing is
registered globally. ``build_command`` turns a decorated (or plain)
function into a FunctionCommand, inferring definitions from the signature
where none were declared.
"""

import inspect
import logging
import typing
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from .command import FunctionCommand
from .fields import ArgumentDefinition, ArgumentType, OptionDefinition

_logger: logging.Logger = logging.getLogger('clikit.decorators')

F = TypeVar('F', bound=Callable[..., Any])

METADATA_ATTR = '__clikit_command__'

# Parameter names filled in by FunctionCommand rather than parsed from argv
INJECTED_PARAMS = frozenset({'self', 'cls', 'context'})


def type_from_annotation(annotation: Any) -> ArgumentType:
    """Map a Python annotation to an ArgumentType"""
    if isinstance(annotation, ArgumentType):
        return annotation
    if isinstance(annotation, str):
        try:
            return ArgumentType(annotation)
        except ValueError:
            return ArgumentType.STRING

    origin = typing.get_origin(annotation)
    if origin is Union:
        non_none = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(non_none) == 1:
            return type_from_annotation(non_none[0])
        return ArgumentType.STRING
    if origin is not None:
        annotation = origin

    if annotation is bool:
        return ArgumentType.BOOLEAN
    if annotation in (int, float):
        return ArgumentType.NUMBER
    if annotation in (list, tuple, set):
        return ArgumentType.ARRAY
    if annotation is dict:
        return ArgumentType.JSON
    return ArgumentType.STRING


def _identifier(name: str) -> str:
    return name.replace('-', '_')


def _ensure_metadata(func: Callable[..., Any]) -> Dict[str, Any]:
    metadata = getattr(func, METADATA_ATTR, None)
    if metadata is None:
        metadata = {
            'name': None,
            'description': None,
            'aliases': [],
            'hidden': False,
            'arguments': [],
            'options': [],
            'examples': [],
        }
        setattr(func, METADATA_ATTR, metadata)
    return metadata


def get_command_metadata(func: Callable[..., Any]) -> Optional[Dict[str, Any]]:
    """Metadata attached by the decorators, or None"""
    return getattr(func, METADATA_ATTR, None)


def command(name: Optional[str] = None,
            description: Optional[str] = None,
            aliases: Optional[Sequence[str]] = None,
            hidden: bool = False) -> Callable[[F], F]:
    """Decorator to define a command"""

    def decorator(func: F) -> F:
        if not callable(func):
            raise TypeError("@command can only be applied to callable")

        metadata = _ensure_metadata(func)
        if name is not None:
            metadata['name'] = name
        if description is not None:
            metadata['description'] = description
        if aliases is not None:
            metadata['aliases'] = list(aliases)
        metadata['hidden'] = hidden
        return func

    return decorator


def argument(name: str,
             description: str = '',
             type: Any = ArgumentType.STRING,
             **fields: Any) -> Callable[[F], F]:
    """Decorator to declare a positional argument"""
    definition = ArgumentDefinition(
        name=name, description=description, type=type_from_annotation(type), **fields
    )

    def decorator(func: F) -> F:
        if not callable(func):
            raise TypeError("@argument can only be applied to callable")

        metadata = _ensure_metadata(func)
        arguments = [a for a in metadata['arguments'] if a.name != definition.name]
        # Decorators apply bottom-up; prepend to keep top-down reading order
        metadata['arguments'] = [definition] + arguments
        if any(_identifier(o.name) == _identifier(name) for o in metadata['options']):
            _logger.warning(f"Option '{name}' being redefined as argument")
            metadata['options'] = [
                o for o in metadata['options'] if _identifier(o.name) != _identifier(name)
            ]
        return func

    return decorator


def option(name: str,
           alias: Optional[str] = None,
           description: str = '',
           type: Any = None,
           default: Any = None,
           flag: bool = False,
           **fields: Any) -> Callable[[F], F]:
    """Decorator to declare an option"""
    if type is None:
        type = ArgumentType.BOOLEAN if flag or isinstance(default, bool) else ArgumentType.STRING
    definition = OptionDefinition(
        name=name, alias=alias, description=description,
        type=type_from_annotation(type), default=default, flag=flag, **fields
    )

    def decorator(func: F) -> F:
        if not callable(func):
            raise TypeError("@option can only be applied to callable")

        metadata = _ensure_metadata(func)
        options = [o for o in metadata['options'] if o.name != definition.name]
        if definition.alias is not None:
            for existing in options:
                if existing.alias == definition.alias:
                    raise ValueError(
                        f"Short option '-{definition.alias}' conflicts with existing option "
                        f"'--{existing.name}'. Each short option must be unique."
                    )
        metadata['options'] = [definition] + options
        if any(_identifier(a.name) == _identifier(definition.name) for a in metadata['arguments']):
            _logger.warning(f"Argument '{definition.name}' being redefined as option")
            metadata['arguments'] = [
                a for a in metadata['arguments'] if _identifier(a.name) != _identifier(definition.name)
            ]
        return func

    return decorator


def example(example_text: str) -> Callable[[F], F]:
    """Decorator to add a usage example"""

    def decorator(func: F) -> F:
        if not callable(func):
            raise TypeError("@example can only be applied to callable")

        metadata = _ensure_metadata(func)
        metadata['examples'] = [example_text] + metadata['examples']
        return func

    return decorator


def _infer_definitions(func: Callable[..., Any]) -> Tuple[List[ArgumentDefinition], List[OptionDefinition]]:
    arguments: List[ArgumentDefinition] = []
    options: List[OptionDefinition] = []
    hints: Dict[str, Any] = {}
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError) as e:
        _logger.debug(f"Could not resolve type hints for {func.__name__}: {e}")

    for param_name, param in inspect.signature(func).parameters.items():
        if param_name in INJECTED_PARAMS:
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue

        annotation = hints.get(param_name, param.annotation)
        if annotation is inspect.Parameter.empty:
            annotation = type(param.default) if param.default not in (inspect.Parameter.empty, None) else str
        arg_type = type_from_annotation(annotation)

        if param.default is inspect.Parameter.empty:
            arguments.append(ArgumentDefinition(name=param_name, type=arg_type, required=True))
        else:
            is_flag = isinstance(param.default, bool)
            options.append(OptionDefinition(
                name=param_name.replace('_', '-'),
                type=ArgumentType.BOOLEAN if is_flag else arg_type,
                default=param.default,
                flag=is_flag,
            ))

    return arguments, options


def build_command(func: Callable[..., Any]) -> FunctionCommand:
    """
    Create a FunctionCommand from a function and its decorator metadata

    Declared definitions take the place of inferred ones with the same
    name; the remaining parameters are inferred from the signature
    (no default: required argument; default: option, bool default: flag).
    """
    metadata = get_command_metadata(func) or _ensure_metadata(func)
    declared_args: List[ArgumentDefinition] = list(metadata['arguments'])
    declared_opts: List[OptionDefinition] = list(metadata['options'])
    declared_names = {_identifier(d.name) for d in declared_args + declared_opts}

    inferred_args, inferred_opts = _infer_definitions(func)

    arguments: List[ArgumentDefinition] = []
    declared_by_name = {_identifier(d.name): d for d in declared_args}
    for definition in inferred_args:
        key = _identifier(definition.name)
        if key in declared_by_name:
            arguments.append(declared_by_name.pop(key))
        elif key not in declared_names:
            arguments.append(definition)
    arguments.extend(d for d in declared_args if _identifier(d.name) in declared_by_name)

    options: List[OptionDefinition] = list(declared_opts)
    options.extend(d for d in inferred_opts if _identifier(d.name) not in declared_names)

    cmd = FunctionCommand(
        func,
        name=metadata['name'],
        description=metadata['description'],
        arguments=arguments,
        options=options,
        aliases=metadata['aliases'],
        examples=metadata['examples'],
        hidden=metadata['hidden'],
    )
    _logger.debug(
        f"Built {'async ' if inspect.iscoroutinefunction(func) else ''}command '{cmd.name}' "
        f"with {len(arguments)} argument(s) and {len(options)} option(s)"
    )
    return cmd
