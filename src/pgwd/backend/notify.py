# src/pgwd/backend/notify.py

"""
Notification channels and dispatch.

Each channel renders an AlertEvent its own way and POSTs it with httpx.
Dispatch is best-effort fan-out: a failing channel is logged and skipped,
the remaining channels and events are still delivered. Nothing is retried
within a cycle.
"""

import json
import time
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from ..config import WatchdogConfig
from ..errors import NotificationError
from .thresholds import AlertEvent, AlertKind

HTTP_TIMEOUT_SEC = 10.0
DEFAULT_LOKI_JOB = 'pgwd'


class Notifier:
    name = 'notifier'

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = HTTP_TIMEOUT_SEC):
        self.url = url
        self.timeout = timeout
        self._client = client

    def render(self, event: AlertEvent) -> Dict:
        raise NotImplementedError

    async def send(self, event: AlertEvent):
        try:
            content = json.dumps(self.render(event))
        except (TypeError, ValueError) as e:
            raise NotificationError(f'{self.name} payload could not be encoded: {e}', {'channel': self.name})
        try:
            if self._client is not None:
                response = await self._post(self._client, content)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._post(client, content)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NotificationError(f'{self.name} request failed: {e}', {'channel': self.name})
        if not response.is_success:
            raise NotificationError(
                f'{self.name} returned {response.status_code}',
                {'channel': self.name, 'status_code': response.status_code,
                 'body': response.text[:200]}
            )

    async def _post(self, client: httpx.AsyncClient, content: str) -> httpx.Response:
        return await client.post(
            self.url,
            content=content,
            headers={'Content-Type': 'application/json'},
        )


def _connections_suffix(event: AlertEvent) -> str:
    if event.kind is AlertKind.TEST:
        return ' (delivery check)'
    if event.kind is AlertKind.CONNECT_FAILURE:
        return ' (connection failed)'
    if event.kind is AlertKind.TOO_MANY_CLIENTS:
        return ' (too many clients, DB saturated)'
    return f' (limit {event.kind.value}={event.threshold_value})'


def _capacity_suffix(event: AlertEvent) -> str:
    if event.capacity <= 0:
        return ''
    suffix = f' max_connections={event.capacity}'
    if event.capacity_is_override:
        suffix += ' (test override)'
    return suffix


class SlackNotifier(Notifier):
    """Slack Incoming Webhook; one colored attachment per event."""
    name = 'slack'

    def render(self, event: AlertEvent) -> Dict:
        if event.kind is AlertKind.TEST:
            header, color = ':white_check_mark: *pgwd* - Test notification', 'good'
        elif event.kind.is_connect_failure:
            header, color = ':warning: *pgwd* - Connection failure', 'danger'
        else:
            header, color = ':warning: *pgwd* - Threshold exceeded', 'warning'

        lines = [header, f'*{event.message}*',
                 f'• *Time*: {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}']
        ctx = event.context
        for label, value in (('Client', ctx.client), ('Database', ctx.database),
                             ('Cluster', ctx.cluster), ('Namespace', ctx.namespace)):
            if value:
                lines.append(f'• *{label}*: {value}')

        stats = event.stats
        lines.append(
            f'• *Connections*: total={stats.total}, active={stats.active}, idle={stats.idle}'
            f'{_capacity_suffix(event)}{_connections_suffix(event)}'
        )
        return {
            'attachments': [{
                'color': color,
                'text': '\n'.join(lines),
                'fallback': event.message,
            }]
        }


def parse_loki_labels(raw: str) -> Dict[str, str]:
    """`k1=v1,k2=v2` -> dict. Entries without `=` are ignored; values may contain `=`."""
    labels = {}
    for part in raw.split(','):
        part = part.strip()
        if not part or '=' not in part:
            continue
        key, value = part.split('=', 1)
        labels[key.strip()] = value.strip()
    return labels


class LokiNotifier(Notifier):
    """Loki push API (/loki/api/v1/push), one stream with one line per event."""
    name = 'loki'

    def __init__(self, url: str, labels: Optional[Dict[str, str]] = None, **kwargs):
        super().__init__(url, **kwargs)
        self.labels = dict(labels or {})

    def render(self, event: AlertEvent) -> Dict:
        labels = dict(self.labels)
        if not labels.get('job'):
            labels['job'] = DEFAULT_LOKI_JOB
        labels['threshold'] = event.kind.value

        stats = event.stats
        line = (f'pgwd: {event.message} | total={stats.total} active={stats.active} idle={stats.idle}'
                f'{_capacity_suffix(event)}{_connections_suffix(event)}')
        return {
            'streams': [{
                'stream': labels,
                'values': [[str(time.time_ns()), line]],
            }]
        }


def build_notifiers(config: WatchdogConfig, client: Optional[httpx.AsyncClient] = None) -> List[Notifier]:
    notifiers = []
    if config.slack_webhook:
        notifiers.append(SlackNotifier(config.slack_webhook, client=client))
    if config.loki_url:
        notifiers.append(LokiNotifier(config.loki_url, labels=parse_loki_labels(config.loki_labels),
                                      client=client))
    return notifiers


# ------------------------------------------------------------------
# DISPATCH
# ------------------------------------------------------------------


async def _send_all(event: AlertEvent, notifiers: List[Notifier], logger, failure_event: str) -> int:
    delivered = 0
    for notifier in notifiers:
        try:
            await notifier.send(event)
        except NotificationError as e:
            if logger:
                logger.log_struct({
                    'event': failure_event,
                    'channel': notifier.name,
                    'alert': event.kind.value,
                    'error': e.message,
                    'details': e.details
                }, severity='ERROR')
        except Exception as e:
            # A broken channel never blocks the others.
            if logger:
                logger.log_struct({
                    'event': failure_event,
                    'channel': notifier.name,
                    'alert': event.kind.value,
                    'error': str(e),
                    'error_type': type(e).__name__
                }, severity='ERROR')
        else:
            delivered += 1
    return delivered


async def dispatch(events: List[AlertEvent], notifiers: List[Notifier],
                   dry_run: bool = False, logger=None) -> int:
    """Sends every event to every channel. Returns the number of successful sends."""
    delivered = 0
    for event in events:
        if dry_run:
            if logger:
                logger.log_struct({
                    'event': 'dry_run_event',
                    'message': f'[dry-run] would send: {event.message}',
                    'alert': event.kind.value,
                    'measured': event.measured_value,
                    'threshold': event.threshold_value
                }, severity='INFO')
            continue
        delivered += await _send_all(event, notifiers, logger, 'notification_failed')
    return delivered


async def notify_connect_failure(event: AlertEvent, notifiers: List[Notifier], logger=None) -> int:
    """Infrastructure failure alert. Sent even in dry-run so the outage stays visible."""
    if not notifiers:
        return 0
    if logger:
        logger.log_struct({
            'event': 'connect_failure_notification',
            'alert': event.kind.value,
            'channels': [n.name for n in notifiers]
        }, severity='WARNING')
    return await _send_all(event, notifiers, logger, 'connect_failure_notification_failed')
