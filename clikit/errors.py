"""
Exception hierarchy for the toolkit

Field-level validation problems are never raised one by one; they are
collected on the parse result. The exceptions below cover everything that
crosses a component boundary.
"""

from typing import Any, List, Optional


class CLIError(Exception):
    """Base exception for toolkit errors"""

    code: str = 'CLI_ERROR'

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message: str = message
        self.cause: Optional[BaseException] = cause


class ValidationFailedError(CLIError):
    """Parsed input did not pass validation"""

    code = 'VALIDATION_ERROR'

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.errors: List[Any] = list(errors or [])


class CommandNotFoundError(CLIError):
    """No command registered under the requested name"""

    code = 'COMMAND_NOT_FOUND'

    def __init__(self, command_name: str, suggestions: Optional[List[str]] = None):
        super().__init__(f"Command '{command_name}' not found")
        self.command_name: str = command_name
        self.suggestions: List[str] = list(suggestions or [])


class CommandExecutionError(CLIError):
    """Command execution failed"""

    code = 'COMMAND_EXECUTION_ERROR'

    def __init__(self, message: str, command_name: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.command_name: Optional[str] = command_name


class OperationCancelledError(CommandExecutionError):
    """Raised at a cancellation checkpoint once the token has been tripped"""

    code = 'OPERATION_CANCELLED'
    MARKER = 'Operation was cancelled'

    def __init__(self, reason: Optional[str] = None, command_name: Optional[str] = None):
        message = f"{self.MARKER}: {reason}" if reason else self.MARKER
        super().__init__(message, command_name)
        self.reason: Optional[str] = reason


class ExecutionTimeoutError(OperationCancelledError):
    """Execution exceeded its configured timeout"""

    code = 'EXECUTION_TIMEOUT'

    def __init__(self, timeout: float, command_name: Optional[str] = None):
        super().__init__(f"Execution timeout after {timeout:g}s", command_name)
        self.timeout: float = timeout


class ConcurrencyLimitError(CommandExecutionError):
    """Admission control rejected a new execution"""

    code = 'CONCURRENCY_LIMIT'

    def __init__(self, limit: int, command_name: Optional[str] = None):
        super().__init__(
            f"Maximum concurrent executions reached ({limit})", command_name
        )
        self.limit: int = limit


class SetupError(CommandExecutionError):
    """Command setup hook failed; the command body never ran"""

    code = 'SETUP_FAILED'


class ServiceNotFoundError(CLIError):
    """Service token is not registered in the container chain"""

    code = 'SERVICE_NOT_FOUND'

    def __init__(self, token: Any):
        super().__init__(f"Service not found: {token}")
        self.token: Any = token
