"""
Example CLI Application demonstrating clikit features

This example shows how to use:
- Regular and async commands
- Typed arguments and options with validation
- Environment-variable fallbacks and option constraints
- Middleware
- Cooperative cancellation (Ctrl+C)
- Nested command dispatch through a child context
"""

import asyncio
import time

from clikit import CLI, CommandResult, ExecutionContext, ServiceTokens, ValidationResult, echo

cli = CLI(
    name='example-app',
    version='1.0.0',
    description='Demonstration of clikit',
    log_level='INFO',
    timeout=30.0,
)


@cli.command(name='hello', aliases=['hi', 'greet'])
@cli.argument('name', description='Name to greet', required=True)
@cli.option('count', alias='c', type='number', default=1, min=1, max=10,
            description='Number of greetings')
@cli.option('uppercase', alias='u', flag=True, description='Use uppercase')
@cli.example('hello Alice --count=3')
@cli.example('hello Bob -u')
def hello_command(name: str, count: int = 1, uppercase: bool = False) -> int:
    """Greet someone"""
    greeting = f"Hello, {name}!"

    if uppercase:
        greeting = greeting.upper()

    for _ in range(count):
        echo(greeting, 'success')

    return 0


def _validate_region(value, context):
    if value.startswith('test-') and context.command == 'deploy':
        return ValidationResult.ok(warnings=[f"Deploying to test region {value}"])
    return True


@cli.command(name='deploy')
@cli.argument('environment', description='Target environment', type='enum',
              choices=['dev', 'staging', 'prod'], required=True)
@cli.option('region', alias='r', env_var='DEPLOY_REGION', default='eu-west-1',
            validator=_validate_region, description='Cloud region')
@cli.option('dry-run', flag=True, conflicts=['force'], description='Only print the plan')
@cli.option('force', flag=True, conflicts=['dry-run'], description='Skip confirmation')
@cli.option('api-token', env_var='DEPLOY_API_TOKEN', description='Deployment token')
@cli.example('deploy prod --dry-run')
async def deploy_command(context: ExecutionContext, environment: str, region: str,
                         dry_run: bool = False, force: bool = False,
                         api_token: str = None) -> CommandResult:
    """Deploy to an environment (async example)"""
    echo(f"Deploying to {environment} in {region}...", 'info')

    if dry_run:
        echo("Dry run: nothing was changed", 'warning')
        return CommandResult.ok(data={'environment': environment, 'dry_run': True})

    for step in ('package', 'upload', 'activate'):
        context.cancellation_token.throw_if_cancelled()
        echo(f"  {step}...", 'debug')
        await asyncio.sleep(0.5)

    return CommandResult.ok(message=f"Deployed to {environment}")


@cli.command(name='sum')
@cli.argument('numbers', type='number', multiple=True, required=True,
              description='Numbers to add')
def sum_command(numbers: list) -> CommandResult:
    """Add numbers"""
    total = sum(numbers)
    return CommandResult.ok(data=total, message=f"Total: {total:g}")


@cli.command(name='release')
@cli.argument('version', pattern=r'^\d+\.\d+\.\d+$', required=True,
              description='Semantic version to release')
async def release_command(context: ExecutionContext, version: str) -> int:
    """Run deploy for every environment through child contexts"""
    executor = context.services.resolve(ServiceTokens.EXECUTOR)
    deploy = cli.commands.get('deploy')

    for environment in ('dev', 'staging'):
        child = context.create_child(
            deploy,
            args={'environment': environment},
            options={'region': 'eu-west-1', 'dry_run': True},
        )
        result = await executor.execute_with_context(child, deploy)
        if not result.success:
            echo(f"Release {version} stopped at {environment}", 'error')
            return 1

    echo(f"Release {version} complete", 'success')
    return 0


@cli.command(name='sleep')
@cli.option('seconds', alias='s', type='number', default=60, description='How long to sleep')
async def sleep_command(context: ExecutionContext, seconds: float = 60) -> int:
    """Sleep until done or cancelled (press Ctrl+C)"""
    context.cancellation_token.on_cancelled(lambda: echo("\nCancellation requested", 'warning'))
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        context.cancellation_token.throw_if_cancelled()
        await asyncio.sleep(0.1)
    return 0


async def banner_middleware(context, next_handler):
    """Middleware that prints around command execution"""
    echo(f"[{context.command_name}] started", 'debug')
    result = await next_handler()
    duration = context.get_metadata('execution.duration')
    if duration is not None:
        echo(f"[{context.command_name}] finished in {duration:.2f}s", 'debug')
    return result


cli.use('banner', banner_middleware, priority=-60)


if __name__ == '__main__':
    import sys

    sys.exit(cli.run())
