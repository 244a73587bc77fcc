# src/pgwd/cli.py

"""
pgwd command line.

Every flag falls back to a PGWD_* environment variable (12-factor style);
an explicit flag wins over the environment.

Exit codes:
    0  clean shutdown (run-once finished, SIGINT/SIGTERM) or --version
    1  bootstrap or database connect failure
    2  invalid configuration
"""

import asyncio
import sys
from typing import Dict, List, Optional

import click

from . import __version__
from .backend.notify import Notifier, build_notifiers
from .config import (
    DEFAULT_KUBE_LOCAL_PORT,
    DEFAULT_KUBE_PASSWORD_VAR,
    DEFAULT_THRESHOLD_PERCENT,
    ThresholdConfig,
    WatchdogConfig,
    validate_config,
)
from .errors import BootstrapError, ConfigError, ConnectError
from .log import get_logger
from .watchdog import Watchdog

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def version_string() -> str:
    return f'pgwd {__version__}'


def config_from_options(options: Dict) -> WatchdogConfig:
    thresholds = ThresholdConfig(
        total=options['threshold_total'],
        active=options['threshold_active'],
        idle=options['threshold_idle'],
        stale=options['threshold_stale'],
        stale_age_seconds=options['stale_age'],
        default_percent=options['default_threshold_percent'],
    )
    return WatchdogConfig(
        db_url=options['db_url'],
        thresholds=thresholds,
        slack_webhook=options['slack_webhook'],
        loki_url=options['loki_url'],
        loki_labels=options['loki_labels'],
        interval=options['interval'],
        dry_run=options['dry_run'],
        force_notification=options['force_notification'],
        notify_on_connect_failure=options['notify_on_connect_failure'],
        test_max_connections=options['test_max_connections'],
        kube_postgres=options['kube_postgres'],
        kube_local_port=options['kube_local_port'],
        kube_password_var=options['kube_password_var'],
        kube_password_container=options['kube_password_container'],
        cluster=options['cluster'],
        client=options['client'],
        gcp_logging=options['gcp_logging'],
        log_level=options['log_level'],
    )


async def run(config: WatchdogConfig, logger, notifiers: Optional[List[Notifier]] = None,
              **watchdog_options) -> int:
    """Runs the watchdog to completion and maps the outcome to an exit code."""
    if notifiers is None:
        notifiers = build_notifiers(config)
    watchdog = Watchdog(config, notifiers, logger, **watchdog_options)
    watchdog.register_signal_handlers()
    try:
        await watchdog.start()
    except ConfigError as e:
        logger.log_struct({
            'event': 'config_error',
            'error': e.message,
            'details': e.details
        }, severity='CRITICAL')
        return EXIT_CONFIG
    except (BootstrapError, ConnectError) as e:
        logger.log_struct({
            'event': 'startup_failed',
            'error_type': type(e).__name__,
            'error': e.message,
            'details': e.details
        }, severity='CRITICAL')
        return EXIT_FAILURE
    return EXIT_OK


@click.command(context_settings={'help_option_names': ['-h', '--help']})
@click.version_option(__version__, '--version', prog_name='pgwd', message='%(prog)s %(version)s')
@click.option('--db-url', envvar='PGWD_DB_URL', default='',
              help='PostgreSQL connection URL.')
@click.option('--threshold-total', envvar='PGWD_THRESHOLD_TOTAL', type=int, default=0,
              help='Alert when total connections >= N (0 = default-threshold-percent of max_connections).')
@click.option('--threshold-active', envvar='PGWD_THRESHOLD_ACTIVE', type=int, default=0,
              help='Alert when active connections >= N (0 = default-threshold-percent of max_connections).')
@click.option('--threshold-idle', envvar='PGWD_THRESHOLD_IDLE', type=int, default=0,
              help='Alert when idle connections >= N (0 = disabled).')
@click.option('--stale-age', envvar='PGWD_STALE_AGE', type=int, default=0,
              help='Connection is stale when open longer than N seconds.')
@click.option('--threshold-stale', envvar='PGWD_THRESHOLD_STALE', type=int, default=0,
              help='Alert when stale connections >= N (needs --stale-age).')
@click.option('--slack-webhook', envvar='PGWD_SLACK_WEBHOOK', default='',
              help='Slack Incoming Webhook URL.')
@click.option('--loki-url', envvar='PGWD_LOKI_URL', default='',
              help='Loki push API URL, e.g. http://localhost:3100/loki/api/v1/push.')
@click.option('--loki-labels', envvar='PGWD_LOKI_LABELS', default='',
              help='Loki labels, e.g. job=pgwd,env=prod.')
@click.option('--interval', envvar='PGWD_INTERVAL', type=int, default=0,
              help='Run every N seconds; 0 = run once.')
@click.option('--dry-run', envvar='PGWD_DRY_RUN', is_flag=True, default=False,
              help='Only log, do not send notifications.')
@click.option('--force-notification', envvar='PGWD_FORCE_NOTIFICATION', is_flag=True, default=False,
              help='Always send a test notification to validate delivery and format.')
@click.option('--default-threshold-percent', envvar='PGWD_DEFAULT_THRESHOLD_PERCENT', type=int,
              default=DEFAULT_THRESHOLD_PERCENT,
              help='Percent of max_connections used when total/active thresholds are 0 (1-100).')
@click.option('--kube-postgres', envvar='PGWD_KUBE_POSTGRES', default='',
              help='Connect via kubectl port-forward: namespace/type/name (e.g. default/svc/postgres).')
@click.option('--kube-local-port', envvar='PGWD_KUBE_LOCAL_PORT', type=int, default=DEFAULT_KUBE_LOCAL_PORT,
              help='Local port for the port-forward.')
@click.option('--kube-password-var', envvar='PGWD_KUBE_PASSWORD_VAR', default=DEFAULT_KUBE_PASSWORD_VAR,
              help='Pod env var holding the password when the URL contains DISCOVER_MY_PASSWORD.')
@click.option('--kube-password-container', envvar='PGWD_KUBE_PASSWORD_CONTAINER', default='',
              help='Container in the pod used for password discovery.')
@click.option('--cluster', envvar='PGWD_CLUSTER', default='',
              help='Cluster name for notifications (detected from kubeconfig with --kube-postgres).')
@click.option('--client', envvar='PGWD_CLIENT', default='',
              help='Client name for notifications (defaults to the kube resource or hostname).')
@click.option('--notify-on-connect-failure', envvar='PGWD_NOTIFY_ON_CONNECT_FAILURE', is_flag=True,
              default=False, help='Alert the notifiers when Postgres is unreachable.')
@click.option('--test-max-connections', envvar='PGWD_TEST_MAX_CONNECTIONS', type=int, default=0,
              help='Override server max_connections for defaults and display (testing; 0 = server value).')
@click.option('--gcp-logging', envvar='PGWD_GCP_LOGGING', is_flag=True, default=False,
              help='Write logs through the Cloud Logging API instead of JSON lines on stderr.')
@click.option('--log-level', envvar='PGWD_LOG_LEVEL', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
              help='Minimum severity for stderr logging.')
@click.pass_context
def cli(ctx, **options):
    """Postgres connection watchdog: alerts on connection thresholds via Slack and/or Loki."""
    config = config_from_options(options)
    try:
        validate_config(config)
    except ConfigError as e:
        click.echo(f'pgwd: {e.message}', err=True)
        ctx.exit(EXIT_CONFIG)

    logger = get_logger(use_cloud_api=config.gcp_logging, level=config.log_level)
    ctx.exit(asyncio.run(run(config, logger)))


def main(argv: Optional[List[str]] = None):
    args = sys.argv[1:] if argv is None else list(argv)
    if args[:1] == ['version']:
        click.echo(version_string())
        sys.exit(EXIT_OK)
    cli.main(args=args, prog_name='pgwd')
