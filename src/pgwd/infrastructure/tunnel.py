# src/pgwd/infrastructure/tunnel.py

"""
Tunnel Manager
==============
Runs `kubectl port-forward` in the background and blocks until the local end
accepts TCP connections.

Readiness: up to PROBE_ATTEMPTS connects to 127.0.0.1:<local_port>, one every
PROBE_INTERVAL_SEC (about 10s in total). The first successful connect returns
the handle immediately. Setting `stop_event` ends the wait early with
BootstrapCancelled. On exhaustion, stop or cancellation the process is killed
and reaped before the error propagates, so a failed start never leaks a
kubectl process.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from ..errors import BootstrapCancelled, TunnelNotReady
from .kube import Kubectl, ResourceReference

REMOTE_POSTGRES_PORT = 5432
PROBE_ATTEMPTS = 40
PROBE_INTERVAL_SEC = 0.25
PROBE_TIMEOUT_SEC = 0.2
RELEASE_TIMEOUT_SEC = 5.0

Probe = Callable[[int], Awaitable[bool]]


async def tcp_probe(port: int, host: str = '127.0.0.1', timeout: float = PROBE_TIMEOUT_SEC) -> bool:
    """True if a TCP connection to host:port succeeds within `timeout`."""
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class TunnelHandle:
    """Owns one port-forward process. Only the caller that received it releases it."""

    def __init__(self, process: asyncio.subprocess.Process, local_port: int, resource: str,
                 release_timeout: float = RELEASE_TIMEOUT_SEC):
        self.process = process
        self.local_port = local_port
        self.resource = resource
        self.release_timeout = release_timeout
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self):
        """
        Sends SIGTERM and waits up to `release_timeout` for exit, then SIGKILL.
        Safe after exit and on repeated calls.
        """
        if self._released:
            return
        self._released = True
        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.release_timeout)
        except asyncio.TimeoutError:
            await _kill_and_reap(self.process)


async def _kill_and_reap(process: asyncio.subprocess.Process):
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


async def _sleep_or_stop(interval: float, stop_event: Optional[asyncio.Event]) -> bool:
    """Sleeps `interval`; returns True early if `stop_event` is set."""
    if stop_event is None:
        await asyncio.sleep(interval)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=interval)
    except asyncio.TimeoutError:
        return False
    return True


async def start_tunnel(kubectl: Kubectl, ref: ResourceReference, local_port: int,
                       remote_port: int = REMOTE_POSTGRES_PORT,
                       attempts: int = PROBE_ATTEMPTS,
                       interval: float = PROBE_INTERVAL_SEC,
                       probe: Optional[Probe] = None,
                       logger=None,
                       stop_event: Optional[asyncio.Event] = None) -> TunnelHandle:
    probe = probe or tcp_probe
    process = await kubectl.spawn(
        'port-forward', '-n', ref.namespace, ref.resource, f'{local_port}:{remote_port}'
    )

    stopped = False
    try:
        for attempt in range(1, attempts + 1):
            if stop_event is not None and stop_event.is_set():
                stopped = True
                break
            if await probe(local_port):
                if logger:
                    logger.log_struct({
                        'event': 'tunnel_ready',
                        'resource': ref.resource,
                        'namespace': ref.namespace,
                        'local_port': local_port,
                        'probe_attempts': attempt
                    }, severity='INFO')
                return TunnelHandle(process, local_port, ref.resource)
            if process.returncode is not None:
                # port-forward died (bad resource, RBAC, port in use); no point waiting.
                break
            if attempt < attempts and await _sleep_or_stop(interval, stop_event):
                stopped = True
                break
    except BaseException:
        await _kill_and_reap(process)
        raise

    await _kill_and_reap(process)
    if stopped:
        raise BootstrapCancelled(
            'stop requested while waiting for port-forward',
            {'resource': ref.resource, 'namespace': ref.namespace, 'local_port': local_port}
        )
    raise TunnelNotReady(
        f'port {local_port} did not become ready in time (port-forward may have failed)',
        {'resource': ref.resource, 'namespace': ref.namespace, 'local_port': local_port,
         'exit_code': process.returncode}
    )
