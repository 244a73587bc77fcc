# src/pgwd/config.py

"""
Run configuration.

Built once at startup by the CLI (flags, falling back to PGWD_* environment
variables) and passed explicitly to every component. The only later change is
`derive_defaults`, which returns a copy of `ThresholdConfig` with total/active
filled in before the loop starts.
"""

from dataclasses import dataclass, field

from .errors import ConfigError

DEFAULT_THRESHOLD_PERCENT = 80
DEFAULT_KUBE_LOCAL_PORT = 5432
DEFAULT_KUBE_PASSWORD_VAR = 'POSTGRES_PASSWORD'


@dataclass(frozen=True)
class ThresholdConfig:
    """All values are counts or seconds; 0 disables the condition."""
    total: int = 0
    active: int = 0
    idle: int = 0
    stale: int = 0
    stale_age_seconds: int = 0
    default_percent: int = DEFAULT_THRESHOLD_PERCENT

    def has_any(self) -> bool:
        return self.total > 0 or self.active > 0 or self.idle > 0 or self.stale > 0


@dataclass(frozen=True)
class WatchdogConfig:
    db_url: str = ''
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)

    # Notifications
    slack_webhook: str = ''
    loki_url: str = ''
    loki_labels: str = ''

    # Behaviour
    interval: int = 0
    dry_run: bool = False
    force_notification: bool = False
    notify_on_connect_failure: bool = False
    test_max_connections: int = 0

    # kubectl port-forward
    kube_postgres: str = ''
    kube_local_port: int = DEFAULT_KUBE_LOCAL_PORT
    kube_password_var: str = DEFAULT_KUBE_PASSWORD_VAR
    kube_password_container: str = ''

    # Notification context
    cluster: str = ''
    client: str = ''

    # Logging
    gcp_logging: bool = False
    log_level: str = 'INFO'

    def has_any_notifier(self) -> bool:
        return bool(self.slack_webhook or self.loki_url)

    @property
    def uses_tunnel(self) -> bool:
        return bool(self.kube_postgres)


def validate_config(config: WatchdogConfig):
    """Raises ConfigError for settings that can never produce a working run."""
    if not config.db_url:
        raise ConfigError('missing database URL: set PGWD_DB_URL or --db-url')
    if config.thresholds.stale > 0 and config.thresholds.stale_age_seconds <= 0:
        raise ConfigError(
            'when using threshold-stale, stale-age must be > 0 (PGWD_STALE_AGE or --stale-age)'
        )
    if not config.has_any_notifier() and not config.dry_run:
        raise ConfigError(
            'no notifier configured: set PGWD_SLACK_WEBHOOK and/or PGWD_LOKI_URL '
            '(or --slack-webhook / --loki-url), or use --dry-run'
        )
    if config.force_notification and not config.has_any_notifier():
        raise ConfigError('force-notification requires at least one notifier (slack-webhook or loki-url)')
    if config.notify_on_connect_failure and not config.has_any_notifier():
        raise ConfigError('notify-on-connect-failure requires at least one notifier (slack-webhook or loki-url)')
    if config.interval < 0:
        raise ConfigError('interval must be >= 0 (0 = run once)')
