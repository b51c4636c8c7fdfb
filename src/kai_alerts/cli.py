"""
Command-line interface for KAI Alerts.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .api.weather_providers import create_provider
from .core.application import KaiAlertsApplication
from .core.config import AppConfig
from .core.stats import SchedulerRunStats
from .processing.monitor import RegionMonitor
from .processing.rules import RiskRuleEngine

console = Console()
logger = logging.getLogger(__name__)

DEFAULT_CONFIG = 'config/default.yaml'


def setup_logging():
    """Setup basic logging."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def load_config(config_path=None) -> AppConfig:
    """Load configuration, exiting with status 1 if it is invalid."""
    try:
        return AppConfig.from_yaml(config_path)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration ({config_path}):[/red]")
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            console.print(f"  [red]✗[/red] {location}: {error['msg']}")
        sys.exit(1)


async def run_application_with_config(config_path=None):
    """Run the main application with specified config."""
    console.print("[bold green]Starting KAI Alerts[/bold green]")
    config = load_config(config_path)

    if config.admin.enabled:
        console.print(f"[bold blue]Admin server:[/bold blue] http://{config.admin.host}:{config.admin.port}")
        console.print("[dim]Endpoints: /health, /admin/stats, /admin/run-now, /ws[/dim]")
        console.print()

    app = KaiAlertsApplication(config)
    try:
        await app.run()
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutdown requested by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Application error: {e}[/red]")
        logger.exception("Unhandled exception")
        raise
    finally:
        await app.shutdown()


async def run_now_with_config(config_path=None):
    """Run one hazard sweep with deliveries and exit."""
    config = load_config(config_path)
    app = KaiAlertsApplication(config)
    try:
        await app.initialize()
        console.print(f"[bold blue]Running hazard sweep across {len(config.regions)} regions[/bold blue]")
        result = await app.scheduler.run_now()
    finally:
        await app.shutdown()

    if not result.get("success"):
        console.print(f"[red]✗ Hazard sweep failed: {result.get('error')}[/red]")
        sys.exit(1)
    console.print(
        f"[green]✓ {result['alerts']} alerts, {result['delivered']} delivered, "
        f"{result['failed']} failed in {result['duration']} ms[/green]"
    )


async def retry_with_config(config_path=None):
    """Run the delivery retry sweep once."""
    config = load_config(config_path)
    app = KaiAlertsApplication(config)
    try:
        await app.initialize()
        summary = await app.delivery.retry_failed_deliveries()
    finally:
        await app.shutdown()

    console.print(
        f"[green]Retried {summary['processed']} deliveries: "
        f"{summary['succeeded']} succeeded, {summary['failed']} failed[/green]"
    )


async def check_weather_with_config(config_path=None, region_name: Optional[str] = None):
    """Fetch weather and evaluate hazards without storing or delivering anything."""
    config = load_config(config_path)
    regions = [r for r in config.regions if region_name is None or r.name == region_name]
    if not regions:
        console.print(f"[red]Unknown region: {region_name}[/red]")
        sys.exit(1)

    providers = [
        create_provider(p, max_retries=config.weather.max_retries)
        for p in config.weather.providers
        if p.enabled
    ]
    monitor = RegionMonitor(
        regions=regions,
        providers=providers,
        rule_engine=RiskRuleEngine(config.thresholds, config.alerts),
        database=None,
        run_stats=SchedulerRunStats(),
        region_delay=0,
    )

    table = Table(title="Hazard check")
    table.add_column("Region")
    table.add_column("Source")
    table.add_column("Temp °C", justify="right")
    table.add_column("Wind km/h", justify="right")
    table.add_column("Alerts")

    try:
        for region in regions:
            snapshot = await monitor.fetch_snapshot(region)
            if snapshot is None:
                table.add_row(region.name, "-", "-", "-", "[yellow]no data[/yellow]")
                continue
            alerts = monitor.rule_engine.evaluate(region, snapshot)
            summary = ", ".join(f"{a.type.value} ({a.severity.value})" for a in alerts) or "[green]none[/green]"
            table.add_row(
                region.name,
                snapshot.source,
                _fmt(snapshot.current.temperature, ".1f"),
                _fmt(snapshot.current.wind_speed, ".0f"),
                summary,
            )
    finally:
        await monitor.close()

    console.print(table)


def _fmt(value: Optional[float], spec: str) -> str:
    return "-" if value is None else format(value, spec)


def validate_config(config_path=None):
    """Validate configuration and print a summary."""
    config = load_config(config_path)
    console.print(f"[green]✓ Configuration valid[/green] ({config_path})")
    console.print(f"  Regions: {len(config.regions)}")
    console.print(f"  Providers: {', '.join(p.name for p in config.weather.providers if p.enabled) or 'none'}")
    primary = config.sms.primary.provider if config.sms.primary else "none"
    secondary = config.sms.secondary.provider if config.sms.secondary else "none"
    console.print(f"  SMS gateways: {primary} / {secondary}")
    console.print(f"  Timezone: {config.scheduler.timezone}")


def create_parser():
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description="KAI Climate Hazard Alerts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run --config config/default.yaml    Run the scheduler and admin server
  %(prog)s run-now                            Run one hazard sweep and deliver alerts
  %(prog)s check-weather --region Dodoma       Dry-run hazard evaluation
  %(prog)s retry                              Retry failed deliveries once
  %(prog)s validate-config                    Validate configuration
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    for name, help_text in [
        ('run', 'Run the scheduler and admin server'),
        ('run-now', 'Run one hazard sweep and exit'),
        ('check-weather', 'Fetch weather and evaluate hazards without storing'),
        ('retry', 'Retry failed deliveries once'),
        ('validate-config', 'Validate the configuration file'),
    ]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('--config', '-c',
                         help=f'Configuration file path (default: {DEFAULT_CONFIG})',
                         default=DEFAULT_CONFIG)
        if name == 'check-weather':
            sub.add_argument('--region', help='Only check this region')

    return parser


def main():
    """Main entry point."""
    setup_logging()

    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == 'run':
            asyncio.run(run_application_with_config(args.config))
        elif args.command == 'run-now':
            asyncio.run(run_now_with_config(args.config))
        elif args.command == 'check-weather':
            asyncio.run(check_weather_with_config(args.config, args.region))
        elif args.command == 'retry':
            asyncio.run(retry_with_config(args.config))
        elif args.command == 'validate-config':
            validate_config(args.config)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        logger.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main()
