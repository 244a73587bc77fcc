"""
Unit tests for the kubectl layer.

Tests focus on:
1. Resource reference parsing (namespace/type/name)
2. Pod resolution: endpoints first, selector fallback, error kinds
3. Password discovery with the PGPASSWORD fallback
4. The subprocess wrapper itself (exit codes, missing binary)
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from pgwd.errors import (
    CredentialNotFound,
    KubectlError,
    KubectlNotFound,
    MalformedReference,
    NoBackingInstance,
    SelectorEmpty,
)
from pgwd.infrastructure.kube import (
    Kubectl,
    ResourceKind,
    ResourceReference,
    cluster_name,
    contains_discover_placeholder,
    discover_password,
    parse_resource_reference,
    resolve_pod,
)

SVC = ResourceReference(namespace='default', kind=ResourceKind.SERVICE, name='postgres')

# --- PARSING ---


def test_parse_service_reference():
    ref = parse_resource_reference('default/svc/postgres')
    assert ref == ResourceReference(namespace='default', kind=ResourceKind.SERVICE, name='postgres')
    assert ref.resource == 'svc/postgres'


def test_parse_pod_reference_is_case_insensitive():
    ref = parse_resource_reference('db/POD/postgres-0')
    assert ref.kind is ResourceKind.POD
    assert ref.resource == 'pod/postgres-0'


@pytest.mark.parametrize('raw', [
    'onlyonepart',
    'two/parts',
    'default/bad/x',
    'default/deployment/postgres',
    '/svc/postgres',
    'default/svc/',
])
def test_parse_rejects_malformed_references(raw):
    with pytest.raises(MalformedReference):
        parse_resource_reference(raw)


def test_discover_placeholder_detection():
    assert contains_discover_placeholder('postgres://app:DISCOVER_MY_PASSWORD@db/app')
    assert not contains_discover_placeholder('postgres://app:secret@db/app')


# --- POD RESOLUTION ---


@pytest.mark.asyncio
async def test_pod_reference_resolves_without_kubectl(kubectl_factory):
    kubectl = kubectl_factory()
    ref = ResourceReference(namespace='default', kind=ResourceKind.POD, name='postgres-0')

    assert await resolve_pod(kubectl, ref) == 'postgres-0'
    assert kubectl.calls == []


@pytest.mark.asyncio
async def test_service_resolves_from_endpoints_first(kubectl_factory):
    kubectl = kubectl_factory({'get endpoints': 'postgres-0\n'})

    assert await resolve_pod(kubectl, SVC) == 'postgres-0'
    # Selector strategy never consulted
    assert len(kubectl.calls) == 1
    assert kubectl.calls[0][:2] == ('get', 'endpoints')


@pytest.mark.asyncio
async def test_service_falls_back_to_selector(kubectl_factory):
    kubectl = kubectl_factory({
        'get endpoints': '',
        'get svc': 'app=postgres,tier=db,',
        'get pods': 'postgres-7f9c',
    })

    assert await resolve_pod(kubectl, SVC) == 'postgres-7f9c'
    pods_call = kubectl.calls[-1]
    assert '-l' in pods_call
    assert pods_call[pods_call.index('-l') + 1] == 'app=postgres,tier=db'


@pytest.mark.asyncio
async def test_endpoints_error_is_treated_as_empty(kubectl_factory):
    kubectl = kubectl_factory({
        'get endpoints': KubectlError('endpoints "postgres" not found'),
        'get svc': 'app=postgres,',
        'get pods': 'postgres-0',
    })

    assert await resolve_pod(kubectl, SVC) == 'postgres-0'


@pytest.mark.asyncio
async def test_service_without_selector_raises_selector_empty(kubectl_factory):
    kubectl = kubectl_factory({'get endpoints': '', 'get svc': ''})

    with pytest.raises(SelectorEmpty):
        await resolve_pod(kubectl, SVC)


@pytest.mark.asyncio
async def test_selector_matching_nothing_raises_no_backing_instance(kubectl_factory):
    kubectl = kubectl_factory({'get endpoints': '', 'get svc': 'app=postgres,', 'get pods': ''})

    with pytest.raises(NoBackingInstance):
        await resolve_pod(kubectl, SVC)


@pytest.mark.asyncio
async def test_custom_strategy_list_is_tried_in_order(kubectl_factory):
    first = AsyncMock(return_value='')
    second = AsyncMock(return_value='from-second')
    third = AsyncMock(return_value='from-third')

    pod = await resolve_pod(kubectl_factory(), SVC, strategies=[first, second, third])

    assert pod == 'from-second'
    third.assert_not_called()


# --- PASSWORD DISCOVERY ---


@pytest.mark.asyncio
async def test_discover_password_primary_var(kubectl_factory):
    kubectl = kubectl_factory({'printenv POSTGRES_PASSWORD': 's3cret'})

    password = await discover_password(kubectl, 'default', 'postgres-0', var_name='POSTGRES_PASSWORD')

    assert password == 's3cret'
    assert kubectl.calls == [('exec', '-n', 'default', 'postgres-0', '--', 'printenv', 'POSTGRES_PASSWORD')]


@pytest.mark.asyncio
async def test_discover_password_falls_back_to_pgpassword(kubectl_factory):
    kubectl = kubectl_factory({'printenv PGPASSWORD': 'fallback'})

    password = await discover_password(kubectl, 'default', 'postgres-0', container='db',
                                       var_name='POSTGRES_PASSWORD')

    assert password == 'fallback'
    assert len(kubectl.calls) == 2
    assert ('-c', 'db') == kubectl.calls[1][4:6]


@pytest.mark.asyncio
async def test_discover_password_does_not_retry_same_fallback(kubectl_factory):
    kubectl = kubectl_factory()

    with pytest.raises(CredentialNotFound):
        await discover_password(kubectl, 'default', 'postgres-0', var_name='PGPASSWORD')
    assert len(kubectl.calls) == 1


@pytest.mark.asyncio
async def test_discover_password_not_found(kubectl_factory):
    kubectl = kubectl_factory({'printenv': ''})

    with pytest.raises(CredentialNotFound) as exc:
        await discover_password(kubectl, 'default', 'postgres-0', var_name='DB_PASS')
    assert 'DB_PASS or PGPASSWORD' in exc.value.message


# --- CLUSTER NAME ---


@pytest.mark.asyncio
async def test_cluster_name_from_kubeconfig(kubectl_factory):
    kubectl = kubectl_factory({'config view': 'gke-prod-eu'})
    assert await cluster_name(kubectl) == 'gke-prod-eu'


@pytest.mark.asyncio
async def test_cluster_name_empty_without_kubectl(kubectl_factory):
    kubectl = kubectl_factory(available=False)
    assert await cluster_name(kubectl) == ''
    assert kubectl.calls == []


# --- SUBPROCESS WRAPPER ---


def test_check_available_raises_when_binary_missing():
    with patch('pgwd.infrastructure.kube.shutil.which', return_value=None):
        with pytest.raises(KubectlNotFound):
            Kubectl().check_available()


@pytest.mark.asyncio
async def test_run_returns_stripped_stdout():
    proc = MagicMock(spec=asyncio.subprocess.Process)
    proc.returncode = 0
    proc.communicate = AsyncMock(return_value=(b'postgres-0\n', b''))

    with patch('asyncio.create_subprocess_exec', AsyncMock(return_value=proc)) as create:
        out = await Kubectl().run('get', 'pods')

    assert out == 'postgres-0'
    assert create.call_args[0][:3] == ('kubectl', 'get', 'pods')


@pytest.mark.asyncio
async def test_run_raises_on_non_zero_exit():
    proc = MagicMock(spec=asyncio.subprocess.Process)
    proc.returncode = 1
    proc.communicate = AsyncMock(return_value=(b'', b'Error from server (NotFound)\n'))

    with patch('asyncio.create_subprocess_exec', AsyncMock(return_value=proc)):
        with pytest.raises(KubectlError) as exc:
            await Kubectl().run('get', 'svc', 'missing')

    assert exc.value.details['stderr'] == 'Error from server (NotFound)'
