"""Sandbox Manager — verifies control-plane requests through httpx.MockTransport.

Tests:
    - create_instance() sends the FaaS create headers and builds the instance URL
    - Creation failures raise SandboxProvisionError
    - Deleting a missing instance continues instead of raising
    - Liveness treats only the instance_not_found signature as absence, and a
      transport error as unreachable rather than alive
"""

import httpx
import pytest

from agent_server.core.domain_types import SandboxLiveness
from agent_server.core.errors import SandboxOperationError, SandboxProvisionError
from agent_server.infrastructure.sandbox_manager import SandboxManager


def _manager(handler, **kwargs) -> SandboxManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SandboxManager(base_url="sandbox.test", client=client, **kwargs)


async def test_create_instance_sends_faas_headers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, headers={"x-faas-instance-name": "inst-1"})

    manager = _manager(handler, default_ttl_minutes=30)
    instance = await manager.create_instance(user_id="u1")

    assert instance.id == "inst-1"
    assert instance.url == "https://inst-1.sandbox.test"
    assert instance.ttl_minutes == 30
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://tars.sandbox.test/v1/ping"
    assert request.headers["X-Faas-Create-Sandbox"] == "true"
    assert request.headers["X-Faas-Sandbox-TTL-Minutes"] == "30"


async def test_create_instance_http_error_raises():
    manager = _manager(lambda request: httpx.Response(503))
    with pytest.raises(SandboxProvisionError):
        await manager.create_instance()


async def test_create_instance_without_name_header_raises():
    manager = _manager(lambda request: httpx.Response(200))
    with pytest.raises(SandboxProvisionError):
        await manager.create_instance()


async def test_create_instance_connection_error_raises():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(SandboxProvisionError):
        await _manager(handler).create_instance()


async def test_create_mock_skips_the_network():
    def handler(request):
        raise AssertionError("network must not be used")

    manager = _manager(handler, create_mock="https://mock.sandbox.test")
    instance = await manager.create_instance()
    assert instance.url == "https://mock.sandbox.test"
    assert instance.id.startswith("ondemand-")


async def test_delete_instance_success():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    manager = _manager(handler, jwt_token="jwt")
    result = await manager.delete_instance("inst-1")
    assert result.success and result.should_continue
    assert seen[0].method == "DELETE"
    assert seen[0].headers["x-jwt-token"] == "jwt"
    assert seen[0].headers["X-Faas-Instance-Name"] == "inst-1"


@pytest.mark.parametrize("response", [
    httpx.Response(404),
    httpx.Response(500, json={"error_message": "delete sandbox pod ttl failed"}),
])
async def test_delete_missing_instance_continues(response):
    manager = _manager(lambda request: response, jwt_token="jwt")
    result = await manager.delete_instance("inst-1")
    assert result.success is False
    assert result.should_continue is True


async def test_delete_failure_checks_existence_then_raises():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200)
        return httpx.Response(502)

    manager = _manager(handler, jwt_token="jwt")
    with pytest.raises(SandboxOperationError):
        await manager.delete_instance("inst-1")


async def test_delete_failure_on_gone_instance_continues():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(500, json={"error_code": "instance_not_found"})
        return httpx.Response(502)

    manager = _manager(handler, jwt_token="jwt")
    result = await manager.delete_instance("inst-1")
    assert result.should_continue is True


async def test_delete_requires_jwt():
    manager = _manager(lambda request: httpx.Response(200))
    with pytest.raises(SandboxOperationError):
        await manager.delete_instance("inst-1")


@pytest.mark.parametrize("response, gone", [
    (httpx.Response(500, json={"error_code": "instance_not_found"}), True),
    (httpx.Response(500, json={"error_code": "other"}), False),
    (httpx.Response(200), False),
    (httpx.Response(500, text="not json"), False),
])
async def test_check_instance_not_exist(response, gone):
    manager = _manager(lambda request: response)
    assert await manager.check_instance_not_exist("https://inst-1.sandbox.test") is gone


@pytest.mark.parametrize("response, liveness", [
    (httpx.Response(500, json={"error_code": "instance_not_found"}), SandboxLiveness.GONE),
    (httpx.Response(500, json={"error_code": "other"}), SandboxLiveness.ALIVE),
    (httpx.Response(200), SandboxLiveness.ALIVE),
])
async def test_check_instance_liveness(response, liveness):
    manager = _manager(lambda request: response)
    assert await manager.check_instance_liveness("https://inst-1.sandbox.test") is liveness


async def test_unreachable_host_is_neither_alive_nor_gone():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    manager = _manager(handler)
    url = "https://inst-1.sandbox.test"
    assert await manager.check_instance_liveness(url) is SandboxLiveness.UNREACHABLE
    assert await manager.check_instance_not_exist(url) is False


async def test_refresh_ttl_and_image_version():
    def handler(request):
        if request.method == "PATCH":
            assert request.headers["X-Faas-Sandbox-TTL-Minutes"] == "90"
            return httpx.Response(200)
        return httpx.Response(200, json={"info": {"version": "1.4.2"}})

    manager = _manager(handler, jwt_token="jwt")
    await manager.refresh_instance_ttl("inst-1", 90)
    assert await manager.get_image_version("inst-1") == "1.4.2"
    assert await manager.test_instance("inst-1") is True
    await manager.close()
