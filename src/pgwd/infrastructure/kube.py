# src/pgwd/infrastructure/kube.py

"""
kubectl integration
===================
Everything pgwd needs from a cluster, obtained by shelling out to kubectl
(pgwd never talks to the Kubernetes API directly).

- Resource references: `namespace/svc/name` or `namespace/pod/name`
- Pod resolution for a service: endpoints first, then the service selector
- Password discovery: `printenv` inside the pod, PGPASSWORD as fallback
- Cluster name for notifications

The subprocess is an injected capability (`Kubectl`) so resolution and
discovery are testable without a cluster.
"""

import asyncio
import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from ..errors import (
    CredentialNotFound,
    KubectlError,
    KubectlNotFound,
    MalformedReference,
    NoBackingInstance,
    SelectorEmpty,
)

DISCOVER_PASSWORD_PLACEHOLDER = 'DISCOVER_MY_PASSWORD'
FALLBACK_PASSWORD_VAR = 'PGPASSWORD'


class ResourceKind(str, Enum):
    SERVICE = 'svc'
    POD = 'pod'


@dataclass(frozen=True)
class ResourceReference:
    namespace: str
    kind: ResourceKind
    name: str

    @property
    def resource(self) -> str:
        """kubectl form, e.g. `svc/postgres`."""
        return f'{self.kind.value}/{self.name}'


def parse_resource_reference(ref: str) -> ResourceReference:
    """Parses `namespace/type/name` (type is svc or pod, case-insensitive)."""
    parts = ref.split('/', 2)
    if len(parts) != 3:
        raise MalformedReference(
            f'kube-postgres must be namespace/type/name (e.g. default/svc/postgres), got {ref!r}',
            {'reference': ref}
        )
    namespace, kind, name = parts[0], parts[1].lower(), parts[2]
    if not namespace or not name:
        raise MalformedReference('namespace and name must be non-empty', {'reference': ref})
    try:
        resource_kind = ResourceKind(kind)
    except ValueError:
        raise MalformedReference(f'type must be svc or pod, got {kind!r}', {'reference': ref})
    return ResourceReference(namespace=namespace, kind=resource_kind, name=name)


def contains_discover_placeholder(db_url: str) -> bool:
    return DISCOVER_PASSWORD_PLACEHOLDER in db_url


# ------------------------------------------------------------------
# SUBPROCESS CAPABILITY
# ------------------------------------------------------------------


class Kubectl:
    """Thin async wrapper over the kubectl binary."""

    def __init__(self, binary: str = 'kubectl'):
        self.binary = binary

    def check_available(self) -> str:
        path = shutil.which(self.binary)
        if path is None:
            raise KubectlNotFound(
                f'{self.binary} not found in PATH (required for --kube-postgres)',
                {'binary': self.binary}
            )
        return path

    async def run(self, *args: str) -> str:
        """Runs kubectl to completion and returns stripped stdout."""
        proc = await asyncio.create_subprocess_exec(
            self.binary, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        if proc.returncode != 0:
            raise KubectlError(
                f'kubectl {args[0] if args else ""} exited with {proc.returncode}',
                {'args': list(args), 'stderr': stderr.decode(errors='replace').strip()}
            )
        return stdout.decode(errors='replace').strip()

    async def spawn(self, *args: str) -> asyncio.subprocess.Process:
        """Starts a long-running kubectl process (port-forward) without waiting."""
        return await asyncio.create_subprocess_exec(
            self.binary, *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )


async def _run_or_empty(kubectl: Kubectl, *args: str) -> str:
    # Resolution strategies treat a failed lookup like an empty one.
    try:
        return await kubectl.run(*args)
    except KubectlError:
        return ''


# ------------------------------------------------------------------
# POD RESOLUTION
# ------------------------------------------------------------------


async def _pod_from_endpoints(kubectl: Kubectl, ref: ResourceReference) -> str:
    return await _run_or_empty(
        kubectl, 'get', 'endpoints', '-n', ref.namespace, ref.name,
        '-o', 'jsonpath={.subsets[0].addresses[0].targetRef.name}'
    )


async def _pod_from_selector(kubectl: Kubectl, ref: ResourceReference) -> str:
    raw = await _run_or_empty(
        kubectl, 'get', 'svc', '-n', ref.namespace, ref.name,
        '-o', 'go-template={{range $k,$v := .spec.selector}}{{$k}}={{$v}},{{end}}'
    )
    selector = raw.strip().rstrip(',')
    if not selector:
        raise SelectorEmpty(
            f'could not get pod from service {ref.name} (no endpoints and no selector)',
            {'namespace': ref.namespace, 'service': ref.name}
        )
    return await _run_or_empty(
        kubectl, 'get', 'pods', '-n', ref.namespace, '-l', selector,
        '-o', 'jsonpath={.items[0].metadata.name}'
    )


Strategy = Callable[[Kubectl, ResourceReference], Awaitable[str]]

# Tried in order; the first non-empty result wins.
POD_STRATEGIES: List[Strategy] = [_pod_from_endpoints, _pod_from_selector]


async def resolve_pod(kubectl: Kubectl, ref: ResourceReference,
                      strategies: Optional[List[Strategy]] = None) -> str:
    """Returns the name of a running pod backing `ref`."""
    if ref.kind is ResourceKind.POD:
        return ref.name

    for strategy in strategies or POD_STRATEGIES:
        pod = (await strategy(kubectl, ref)).strip()
        if pod:
            return pod

    raise NoBackingInstance(
        f'no pods found for service {ref.name}',
        {'namespace': ref.namespace, 'service': ref.name}
    )


# ------------------------------------------------------------------
# CREDENTIAL DISCOVERY
# ------------------------------------------------------------------


async def discover_password(kubectl: Kubectl, namespace: str, pod: str,
                            container: str = '', var_name: str = FALLBACK_PASSWORD_VAR) -> str:
    """Reads the password from the pod environment (`var_name`, then PGPASSWORD)."""
    candidates = [var_name]
    if var_name != FALLBACK_PASSWORD_VAR:
        candidates.append(FALLBACK_PASSWORD_VAR)

    for name in candidates:
        args = ['exec', '-n', namespace, pod]
        if container:
            args += ['-c', container]
        args += ['--', 'printenv', name]
        value = await _run_or_empty(kubectl, *args)
        if value:
            return value

    raise CredentialNotFound(
        f'could not find {" or ".join(candidates)} in pod {pod}',
        {'namespace': namespace, 'pod': pod, 'container': container}
    )


async def cluster_name(kubectl: Kubectl) -> str:
    """Current kubeconfig cluster name; empty string when unavailable."""
    try:
        kubectl.check_available()
    except KubectlNotFound:
        return ''
    return await _run_or_empty(
        kubectl, 'config', 'view', '--minify', '-o', 'jsonpath={.clusters[0].name}'
    )
