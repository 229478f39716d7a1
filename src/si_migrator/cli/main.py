"""Main CLI entry point for the service instance migrator."""

import sys
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from ..api.exceptions import PlatformAPIError
from ..config.config import Config, ConfigurationError
from ..io.parser import is_empty_dir
from ..migration.engine import MigrationEngine
from ..migration.exceptions import ImportDirectoryNotFoundError
from ..utils.logging import setup_logging

console = Console()

DEFAULT_CONFIG_PATHS = ['si-migrator.yml', 'si-migrator.yaml', 'config.yaml']


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def _parse_domains(ctx, param, value: Optional[str]) -> Dict[str, str]:
    """Parse ``old=new,old2=new2`` into a mapping."""
    domains = {}
    for pair in _split(value):
        old, sep, new = pair.partition('=')
        if not sep or not old.strip() or not new.strip():
            raise click.BadParameter(f'expected old=new, got {pair!r}')
        domains[old.strip()] = new.strip()
    return domains


@click.group()
@click.version_option(version='0.1.0', prog_name='si-migrator')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--non-interactive',
    '-n',
    is_flag=True,
    help='Do not prompt for confirmation',
)
@click.option(
    '--debug',
    is_flag=True,
    help='Enable debug logging and command tracing',
)
@click.option(
    '--dry-run',
    is_flag=True,
    help='Walk the foundation without migrating anything',
)
@click.option(
    '--services',
    help='Comma separated service offerings or migrator types to migrate',
)
@click.option(
    '--instances',
    help='Comma separated service instance names to migrate',
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Optional[str],
    non_interactive: bool,
    debug: bool,
    dry_run: bool,
    services: Optional[str],
    instances: Optional[str],
) -> None:
    """Service Instance Migrator - Move service instances between Cloud Foundry foundations."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj['config_path'] = config
    ctx.obj['overrides'] = {'non_interactive': non_interactive}
    if debug:
        ctx.obj['overrides']['debug'] = True
    if dry_run:
        ctx.obj['overrides']['dry_run'] = True
    if services:
        ctx.obj['overrides']['services'] = _split(services)
    if instances:
        ctx.obj['overrides']['instances'] = _split(instances)
    ctx.obj['debug'] = debug

    # Setup basic logging first (will be enhanced later with config)
    setup_logging('DEBUG' if debug else 'INFO')


@cli.command()
@click.option(
    '--output',
    '-o',
    default='si-migrator.yml',
    help='Output configuration file path',
)
def init(output: str) -> None:
    """Initialize a new configuration file."""
    console.print(
        Panel.fit(
            '[bold green]Service Instance Migrator[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)

        console.print(f'[green]✓[/green] Configuration template created at: {output}')
        console.print(
            f'[yellow]Please edit {output} with your foundation details[/yellow]'
        )

    except OSError as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)


_org_filter_options = [
    click.option(
        '--include-orgs',
        help='Comma separated regular expressions of orgs to include',
    ),
    click.option(
        '--exclude-orgs',
        help='Comma separated regular expressions of orgs to exclude',
    ),
]


def _with_org_filters(command):
    for option in reversed(_org_filter_options):
        command = option(command)
    return command


@cli.group(invoke_without_command=True)
@_with_org_filters
@click.option(
    '--export-dir',
    type=click.Path(file_okay=False),
    help='Directory the service instances are exported to',
)
@click.pass_context
def export(
    ctx: click.Context,
    include_orgs: Optional[str],
    exclude_orgs: Optional[str],
    export_dir: Optional[str],
) -> None:
    """Export service instances of every org from the source foundation."""
    _store_walk_options(ctx, include_orgs, exclude_orgs, export_dir=export_dir)
    if ctx.invoked_subcommand is None:
        _run_export(ctx, 'Exporting all orgs', lambda engine: engine.export_all())


@export.command('org')
@click.argument('name')
@click.pass_context
def export_org(ctx: click.Context, name: str) -> None:
    """Export service instances of one org."""
    _run_export(ctx, f'Exporting org {name}', lambda engine: engine.export_orgs([name]))


@export.command('space')
@click.argument('name')
@click.option('--org', '-o', required=True, help='Org the space belongs to')
@click.pass_context
def export_space(ctx: click.Context, name: str, org: str) -> None:
    """Export service instances of one space."""
    _run_export(
        ctx,
        f'Exporting space {org}/{name}',
        lambda engine: engine.export_space(org, name),
    )


@cli.group('import', invoke_without_command=True)
@_with_org_filters
@click.option(
    '--import-dir',
    type=click.Path(file_okay=False),
    help='Directory the service instances are imported from',
)
@click.option(
    '--ignore-service-keys',
    is_flag=True,
    help='Do not recreate service keys',
)
@click.option(
    '--domains-to-replace',
    callback=_parse_domains,
    help='Comma separated old=new domain pairs rewritten on import',
)
@click.pass_context
def import_(
    ctx: click.Context,
    include_orgs: Optional[str],
    exclude_orgs: Optional[str],
    import_dir: Optional[str],
    ignore_service_keys: bool,
    domains_to_replace: Dict[str, str],
) -> None:
    """Import service instances of every exported org into the target foundation."""
    overrides: Dict[str, Any] = {}
    if ignore_service_keys:
        overrides['ignore_service_keys'] = True
    if domains_to_replace:
        overrides['domains_to_replace'] = domains_to_replace
    _store_walk_options(ctx, include_orgs, exclude_orgs, export_dir=import_dir, **overrides)
    if ctx.invoked_subcommand is None:
        _run(ctx, 'Importing all orgs', lambda engine: engine.import_all())


@import_.command('org')
@click.argument('name')
@click.pass_context
def import_org(ctx: click.Context, name: str) -> None:
    """Import service instances of one org."""
    _run(ctx, f'Importing org {name}', lambda engine: engine.import_orgs([name]))


@import_.command('space')
@click.argument('name')
@click.option('--org', '-o', required=True, help='Org the space belongs to')
@click.pass_context
def import_space(ctx: click.Context, name: str, org: str) -> None:
    """Import service instances of one space."""
    _run(
        ctx,
        f'Importing space {org}/{name}',
        lambda engine: engine.import_space(org, name),
    )


def _store_walk_options(
    ctx: click.Context,
    include_orgs: Optional[str],
    exclude_orgs: Optional[str],
    export_dir: Optional[str] = None,
    **overrides: Any,
) -> None:
    if include_orgs:
        overrides['include_orgs'] = _split(include_orgs)
    if exclude_orgs:
        overrides['exclude_orgs'] = _split(exclude_orgs)
    if export_dir:
        overrides['export_dir'] = export_dir
    ctx.obj['overrides'].update(overrides)


def _run_export(
    ctx: click.Context, title: str, action: Callable[[MigrationEngine], Awaitable[Any]]
) -> None:
    _run(ctx, title, action, confirm_export=True)


def _run(
    ctx: click.Context,
    title: str,
    action: Callable[[MigrationEngine], Awaitable[Any]],
    confirm_export: bool = False,
) -> None:
    """Run one engine action and always display the summary."""
    console.print(
        Panel.fit(
            f'[bold blue]Service Instance Migrator[/bold blue]\n{title}...',
            border_style='blue',
        )
    )

    engine = None
    try:
        config = _config_for_command(ctx)
        if confirm_export and not _confirm_export_dir(config):
            console.print('[yellow]Export cancelled[/yellow]')
            return
        if config.dry_run:
            console.print(
                '[yellow]Running in dry-run mode - no changes will be made[/yellow]'
            )
        engine = MigrationEngine(config, console=console)
        asyncio.run(action(engine))
    except (
        ConfigurationError,
        ImportDirectoryNotFoundError,
        PlatformAPIError,
        ConnectionError,
        FileNotFoundError,
    ) as e:
        console.print(f'[red]✗[/red] {e}')
        if ctx.obj.get('debug'):
            console.print_exception()
        sys.exit(1)
    finally:
        if engine is not None:
            engine.summary.display()


def _confirm_export_dir(config: Config) -> bool:
    """Ask before writing into a non-empty export directory."""
    if config.non_interactive or is_empty_dir(config.export_dir):
        return True
    return click.confirm(
        'Export directory is not empty. Do you wish to continue?', default=False
    )


def _config_for_command(ctx: click.Context) -> Config:
    """Load configuration and apply command line overrides."""
    config = _load_config(ctx)
    overrides = ctx.obj.get('overrides', {})
    if overrides:
        data = config.model_dump(by_alias=True)
        data.update(overrides)
        try:
            config = Config.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f'Invalid configuration: {e}')
    _setup_logging_with_config(ctx, config)
    return config


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = ctx.obj.get('config_path')

    try:
        if config_path:
            if not Path(config_path).exists():
                raise FileNotFoundError(f'Configuration file not found: {config_path}')
            return Config.from_file(config_path)

        # Try to load from default locations
        for path in DEFAULT_CONFIG_PATHS:
            if Path(path).exists():
                return Config.from_file(path)

        # Fall back to environment variables
        return Config.from_env()
    except ValidationError as e:
        raise ConfigurationError(f'Invalid configuration: {e}')


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    """Setup logging with configuration from config file."""
    # Use config logging settings, but allow the debug flag to override level
    log_level = 'DEBUG' if config.debug else config.logging.level
    setup_logging(
        level=log_level,
        log_file=config.logging.file,
        log_format=config.logging.format,
    )


def main() -> None:
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print('\n[red]Migration interrupted by user[/red]')
        sys.exit(1)
    except Exception as e:
        console.print(f'[red]Error: {e}[/red]')
        sys.exit(1)


if __name__ == '__main__':
    main()
