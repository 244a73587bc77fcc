# src/pgwd/watchdog.py

"""
Watchdog
========
Control loop for pgwd.

States:
    BOOTSTRAPPING -> EVALUATING <-> SLEEPING -> TERMINATED

- BOOTSTRAPPING only when --kube-postgres is set (port-forward + password discovery).
- EVALUATING runs one full cycle: stats -> thresholds -> dispatch.
- A stop requested before a cycle starts skips it; the tunnel wait also
  watches the stop event.
- interval == 0 is run-once mode: TERMINATED after the first cycle.
- SLEEPING waits for the interval or the stop signal, whichever comes first.
- TERMINATED closes the pool and releases the tunnel exactly once, on every
  exit path (clean stop, startup failure, cancellation).

Cycles never overlap: the next one is scheduled only after the previous
cycle's dispatch has finished.
"""

import asyncio
import signal
import socket
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from .backend.notify import Notifier, dispatch, notify_connect_failure
from .backend.thresholds import (
    EventContext,
    connect_failure_event,
    derive_defaults,
    evaluate,
    require_thresholds,
)
from .config import WatchdogConfig
from .errors import BootstrapCancelled, ConfigError, ConnectError
from .infrastructure.bootstrap import ConnectionTarget, bootstrap
from .infrastructure.kube import Kubectl, cluster_name, parse_resource_reference
from .infrastructure.postgres import PostgresStatsCollector, open_collector
from .infrastructure.tunnel import TunnelHandle

SLOW_CYCLE_MS = 5000


class WatchdogState(str, Enum):
    BOOTSTRAPPING = 'bootstrapping'
    EVALUATING = 'evaluating'
    SLEEPING = 'sleeping'
    TERMINATED = 'terminated'


async def build_run_context(config: WatchdogConfig, kubectl: Optional[Kubectl] = None) -> EventContext:
    """cluster/client/namespace/database shown in every notification."""
    ref = None
    if config.kube_postgres:
        ref = parse_resource_reference(config.kube_postgres)

    cluster = config.cluster
    if not cluster and ref is not None and kubectl is not None:
        cluster = await cluster_name(kubectl)

    client = config.client
    if not client and ref is not None:
        client = ref.resource
    if not client:
        client = socket.gethostname()

    database = ''
    try:
        database = ConnectionTarget.from_url(config.db_url).database
    except ConfigError:
        pass

    return EventContext(
        cluster=cluster,
        client=client,
        namespace=ref.namespace if ref is not None else '',
        database=database,
    )


class Watchdog:
    """
    Owns the tunnel handle and the stats pool for the whole process lifetime.

    Collaborators are injectable so the loop runs against fakes in tests:
    `connect(dsn)` returns a stats collector, `kubectl` is the CLI capability.
    """

    def __init__(self, config: WatchdogConfig, notifiers: List[Notifier], logger,
                 kubectl: Optional[Kubectl] = None,
                 connect: Callable[[str], Awaitable[PostgresStatsCollector]] = open_collector,
                 stop_event: Optional[asyncio.Event] = None):
        self.config = config
        self.thresholds = config.thresholds
        self.notifiers = notifiers
        self.logger = logger
        self.kubectl = kubectl or Kubectl()
        self._connect = connect

        self.state = WatchdogState.BOOTSTRAPPING if config.uses_tunnel else WatchdogState.EVALUATING
        self.capacity = 0
        self.context = EventContext()
        self.cycles = 0

        self.collector: Optional[PostgresStatsCollector] = None
        self.tunnel: Optional[TunnelHandle] = None
        self._stop = stop_event or asyncio.Event()

    @property
    def capacity_is_override(self) -> bool:
        return self.config.test_max_connections > 0

    def request_stop(self):
        self._stop.set()

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    async def start(self):
        """Bootstrap, connect, derive defaults, then run the loop until stopped."""
        try:
            db_url = self.config.db_url
            if self.config.uses_tunnel:
                try:
                    db_url, self.tunnel = await bootstrap(
                        self.config, self.kubectl, logger=self.logger, stop_event=self._stop
                    )
                except BootstrapCancelled as e:
                    self.logger.log_struct({
                        'event': 'bootstrap_cancelled',
                        'details': e.details
                    }, severity='INFO')
                    return

            self.context = await build_run_context(self.config, self.kubectl)
            await self._open_pool(db_url)
            await self._apply_threshold_defaults()

            self.logger.log_struct({
                'event': 'watchdog_started',
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'config': {
                    'interval_sec': self.config.interval,
                    'dry_run': self.config.dry_run,
                    'force_notification': self.config.force_notification,
                    'thresholds': {
                        'total': self.thresholds.total,
                        'active': self.thresholds.active,
                        'idle': self.thresholds.idle,
                        'stale': self.thresholds.stale,
                        'stale_age_sec': self.thresholds.stale_age_seconds
                    },
                    'max_connections': self.capacity,
                    'channels': [n.name for n in self.notifiers],
                    'tunnel': self.tunnel.resource if self.tunnel else None
                }
            }, severity='INFO')

            await self._monitoring_loop()
        finally:
            await self.stop()

    async def _open_pool(self, db_url: str):
        try:
            self.collector = await self._connect(db_url)
        except ConnectError as e:
            self.logger.log_struct({
                'event': 'postgres_connect_failed',
                'error': e.details.get('error', e.message),
                'too_many_clients': e.too_many_clients
            }, severity='CRITICAL')
            if self.config.notify_on_connect_failure:
                await notify_connect_failure(
                    connect_failure_event(e, self.context), self.notifiers, self.logger
                )
            raise

    async def _apply_threshold_defaults(self):
        capacity_error = None
        try:
            server_capacity = await self.collector.server_capacity()
        except Exception as e:
            capacity_error = e
            server_capacity = 0
            self.logger.log_struct({
                'event': 'max_connections_unavailable',
                'error': str(e)
            }, severity='WARNING')

        self.thresholds, self.capacity = derive_defaults(
            self.thresholds, server_capacity, self.config.test_max_connections
        )
        if self.capacity > 0:
            # An override makes the server error irrelevant.
            capacity_error = None
        require_thresholds(
            self.thresholds, self.capacity,
            dry_run=self.config.dry_run,
            force_notification=self.config.force_notification,
            capacity_error=capacity_error,
        )

    async def _monitoring_loop(self):
        while True:
            if self._stop.is_set():
                return
            self.state = WatchdogState.EVALUATING
            cycle_start = time.time()
            await self.run_cycle()

            cycle_ms = (time.time() - cycle_start) * 1000
            if cycle_ms > SLOW_CYCLE_MS:
                self.logger.log_struct({
                    'event': 'slow_monitoring_cycle',
                    'duration_ms': cycle_ms
                }, severity='WARNING')

            if self.config.interval <= 0 or self._stop.is_set():
                return

            self.state = WatchdogState.SLEEPING
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.config.interval)
                return
            except asyncio.TimeoutError:
                continue

    async def run_cycle(self) -> int:
        """One evaluation + dispatch. Returns the number of successful sends."""
        self.cycles += 1
        try:
            stats = await self.collector.current_stats()
        except Exception as e:
            self.logger.log_struct({
                'event': 'stats_query_failed',
                'error': str(e),
                'cycle': self.cycles
            }, severity='ERROR')
            return 0

        capacity = self.capacity
        if not self.capacity_is_override:
            try:
                capacity = await self.collector.server_capacity()
            except Exception:
                capacity = 0

        if self.config.dry_run:
            self.logger.log_struct({
                'event': 'cycle_stats',
                'total': stats.total,
                'active': stats.active,
                'idle': stats.idle,
                'max_connections': capacity or None
            }, severity='INFO')

        events = await evaluate(
            stats, self.thresholds, capacity,
            stale_counter=self.collector.stale_connection_count,
            force_notification=self.config.force_notification,
            capacity_is_override=self.capacity_is_override,
            context=self.context,
            logger=self.logger,
        )
        return await dispatch(events, self.notifiers, dry_run=self.config.dry_run, logger=self.logger)

    # ------------------------------------------------------------------
    # SHUTDOWN
    # ------------------------------------------------------------------

    def register_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """SIGINT/SIGTERM set the stop event; a sleeping loop wakes immediately."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown, sig)

    def _handle_shutdown(self, signum):
        self.logger.log_struct({
            'event': 'shutdown_initiated',
            'signal': signal.Signals(signum).name,
            'timestamp': datetime.now(timezone.utc).isoformat()
        }, severity='INFO')
        self.request_stop()

    async def stop(self):
        """Idempotent cleanup: pool first, then the tunnel it was using."""
        if self.state is WatchdogState.TERMINATED:
            return
        self.state = WatchdogState.TERMINATED

        collector, self.collector = self.collector, None
        if collector is not None:
            try:
                await collector.close()
            except Exception as e:
                self.logger.log_struct({
                    'event': 'pool_close_error',
                    'error': str(e)
                }, severity='ERROR')

        tunnel, self.tunnel = self.tunnel, None
        if tunnel is not None:
            await tunnel.release()
            self.logger.log_struct({
                'event': 'tunnel_released',
                'resource': tunnel.resource,
                'local_port': tunnel.local_port
            }, severity='INFO')

        self.logger.log_struct({
            'event': 'watchdog_stopped',
            'cycles': self.cycles,
            'timestamp': datetime.now(timezone.utc).isoformat()
        }, severity='INFO')
