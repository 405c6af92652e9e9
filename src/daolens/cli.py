# NOTE: All imports except the basic ones are lazy in this module. Let's keep it that way.
import asyncio
import logging
import sys
from collections.abc import Callable
from collections.abc import Coroutine
from contextlib import suppress
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any
from typing import TypeVar
from typing import cast

import click
import uvloop

from daolens import __version__
from daolens.enums import CacheCategory
from daolens.sys import set_up_process
from daolens.yaml import ROOT_CONFIG

if TYPE_CHECKING:
    from daolens.config import DaoLensConfig


# NOTE: Do not try to load config for these commands as they don't need it
NO_CONFIG_CMDS = {
    'config',
}

CATEGORIES = [c.value for c in CacheCategory]


_logger = logging.getLogger(__name__)


def _get_paths(params: dict[str, Any]) -> tuple[list[Path], list[Path]]:
    config_args: list[str] = params.pop('config', []) or [ROOT_CONFIG]
    env_file_args: list[str] = params.pop('env_file', [])
    return [Path(p) for p in config_args], [Path(p) for p in env_file_args]


def _load_env_files(env_file_paths: list[Path]) -> None:
    from daolens.exceptions import ConfigurationError

    for path in env_file_paths:
        from dotenv import load_dotenv

        if not path.is_file():
            raise ConfigurationError(f'env file `{path}` does not exist')
        _logger.info('Applying env_file `%s`', path)
        load_dotenv(path, override=True)


def echo(message: str, err: bool = False, **styles: Any) -> None:
    with suppress(BrokenPipeError):
        click.secho(message, err=err, **styles)


def red_echo(message: str) -> None:
    echo(message, err=True, fg='red')


WrappedCommandT = TypeVar('WrappedCommandT', bound=Callable[..., Coroutine[Any, Any, None]])


@dataclass
class CLIContext:
    config_paths: list[Path]
    config: 'DaoLensConfig'


def _cli_wrapper(fn: WrappedCommandT) -> WrappedCommandT:
    @wraps(fn)
    def wrapper(ctx: click.Context, *args: Any, **kwargs: Any) -> None:
        from daolens.exceptions import Error

        try:
            uvloop.run(fn(ctx, *args, **kwargs))
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        except Error as e:
            _logger.debug('Command failed', exc_info=True)
            red_echo(str(e))
            echo(e.help(), err=True)
            ctx.exit(1)

    return cast(WrappedCommandT, wrapper)


@click.group(
    context_settings={'max_content_width': 120},
    help='Governance analytics for ERC20Votes-style DAOs.',
)
@click.version_option(__version__)
@click.option(
    '--config',
    '-c',
    type=str,
    multiple=True,
    help='A path to daolens config.',
    default=[],
    metavar='PATH',
    envvar='DAOLENS_CONFIG',
)
@click.option(
    '--env-file',
    '-e',
    type=str,
    multiple=True,
    help='A path to .env file containing `KEY=value` strings.',
    default=[],
    metavar='PATH',
    envvar='DAOLENS_ENV_FILE',
)
@click.pass_context
@_cli_wrapper
async def cli(ctx: click.Context, config: list[str], env_file: list[str]) -> None:
    set_up_process()

    # NOTE: Ledger amounts are uint256
    sys.set_int_max_str_digits(0)

    from daolens.sys import set_up_logging

    set_up_logging()

    # NOTE: These commands load config themselves
    if ctx.invoked_subcommand in NO_CONFIG_CMDS:
        logging.getLogger('daolens').setLevel(logging.INFO)
        return

    from daolens.config import DaoLensConfig

    config_paths, env_file_paths = _get_paths(ctx.params)
    # NOTE: Apply env files before loading the config
    _load_env_files(env_file_paths)

    _config = DaoLensConfig.load(
        paths=config_paths,
        environment=True,
        unsafe=True,
    )
    _config.set_up_logging()

    ctx.obj = CLIContext(
        config_paths=config_paths,
        config=_config,
    )


@cli.command()
@click.argument('category', type=click.Choice(CATEGORIES))
@click.option('--account', '-a', type=str, multiple=True, help='Account to crawl first; repeatable.')
@click.pass_context
@_cli_wrapper
async def fetch(ctx: click.Context, category: str, account: tuple[str, ...]) -> None:
    """Print analytics of a single category as JSON.

    Fresh cached results are printed as is; otherwise data is loaded from the remote source or the ledger.
    """
    from contextlib import AsyncExitStack

    from daolens.orchestrator import RequestContext
    from daolens.orchestrator import create_orchestrator
    from daolens.utils import json_dumps

    async with AsyncExitStack() as stack:
        orchestrator = await create_orchestrator(ctx.obj.config, stack)
        payload = await orchestrator.request(
            CacheCategory(category),
            RequestContext(important=account),
        )

    if payload is None:
        red_echo('Request was cancelled')
        return
    echo(json_dumps(payload.to_json()).decode())


@cli.command()
@click.argument('categories', type=click.Choice(CATEGORIES), nargs=-1)
@click.pass_context
@_cli_wrapper
async def stats(ctx: click.Context, categories: tuple[str, ...]) -> None:
    """Fetch categories (all by default) and print runtime counters as JSON.

    Categories that fail to load are reported and skipped.
    """
    from contextlib import AsyncExitStack

    from daolens.exceptions import SourceUnavailableError
    from daolens.orchestrator import create_orchestrator
    from daolens.performance import get_stats
    from daolens.utils import json_dumps

    async with AsyncExitStack() as stack:
        orchestrator = await create_orchestrator(ctx.obj.config, stack)
        for category in categories or CATEGORIES:
            try:
                await orchestrator.request(CacheCategory(category))
            except SourceUnavailableError as e:
                red_echo(str(e))

    echo(json_dumps(get_stats()).decode())


@cli.group()
@click.pass_context
@_cli_wrapper
async def config(ctx: click.Context) -> None:
    """Commands to manage config."""
    pass


@config.command(name='export')
@click.option('--unsafe', is_flag=True, help='Use actual environment variables instead of default values.')
@click.pass_context
@_cli_wrapper
async def config_export(ctx: click.Context, unsafe: bool) -> None:
    """
    Print config after resolving environment variables and defaults.

    WARNING: Avoid sharing output with 3rd-parties when `--unsafe` flag set - it may contain secrets!
    """
    from daolens.config import DaoLensConfig

    # NOTE: Late loading; cli() was skipped.
    config_paths, env_file_paths = _get_paths(ctx.parent.parent.params)  # type: ignore[union-attr]
    _load_env_files(env_file_paths)

    _config = DaoLensConfig.load(
        paths=config_paths,
        environment=True,
        unsafe=unsafe,
    )
    echo(_config.dump())
