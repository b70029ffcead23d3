"""Configuration management commands."""

import click


@click.group()
def config():
    """Manage jobpool configuration files."""
    pass


@config.command(name="init")
@click.option(
    "--location",
    type=click.Choice(["user", "project"], case_sensitive=False),
    default="user",
    help="Where to create the configuration file.",
)
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing configuration file.",
)
def config_init(location, force):
    """Create an example configuration file.

    By default, this creates a user-level config file at
    ~/.config/jobpool/config.toml (or platform equivalent). Use
    --location=project to create .jobpool/config.toml in the current directory.

    Examples:
        jobpool config init
        jobpool config init --location=project
        jobpool config init --force
    """
    from jobpool.infrastructure.config import get_config_file_locations, write_example_config

    config_path = get_config_file_locations()[location.lower()]

    if config_path.exists() and not force:
        click.echo(f"Configuration file already exists at {config_path}\nUse --force to overwrite.")
        return

    try:
        created_path = write_example_config(location=location.lower())
    except PermissionError as e:
        raise click.ClickException(f"Permission denied creating config file: {e}") from e
    click.echo(f"Created configuration file: {created_path}")


@config.command(name="show")
def config_show():
    """Show current configuration values from all sources."""
    from jobpool.infrastructure.config import get_config

    cfg = get_config(reload=True)

    click.echo("Current jobpool Configuration:")
    click.echo("=" * 60)

    click.echo("\n[Pool]")
    click.echo(f"  queue_name: {cfg.pool.queue_name or '(not set)'}")
    click.echo(f"  output_results: {cfg.pool.output_results}")
    click.echo(f"  async_mode: {cfg.pool.async_mode}")
    click.echo(f"  prefork_size: {cfg.pool.prefork_size}")
    click.echo(f"  command: {cfg.pool.command or '(not set)'}")
    click.echo(f"  worker_module: {cfg.pool.worker_module or '(not set)'}")
    click.echo(f"  poll_interval: {cfg.pool.poll_interval}")

    click.echo("\n[Payload Store]")
    click.echo(f"  backend: {cfg.payload_store.backend}")
    click.echo(f"  db_path: {cfg.payload_store.db_path}")

    click.echo("\n[Logging]")
    click.echo(f"  log_level: {cfg.logging.log_level}")
    click.echo(f"  console_logging: {cfg.logging.console_logging}")


@config.command(name="locate")
def config_locate():
    """Show where jobpool looks for configuration files."""
    from jobpool.infrastructure.config import find_config_files, get_config_file_locations

    locations = get_config_file_locations()
    existing = find_config_files()

    click.echo("Configuration File Locations:")
    click.echo("=" * 60)

    for location, label in (
        ("system", "System config (lowest priority)"),
        ("user", "User config"),
        ("project", "Project config (highest priority)"),
    ):
        click.echo(f"\n{label}:")
        click.echo(f"  Path: {locations[location]}")
        click.echo(f"  Status: {'Exists' if existing[location] else 'Not found'}")
