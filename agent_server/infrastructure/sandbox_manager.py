"""Sandbox Manager — HTTP client for the remote sandbox (FaaS) control plane.

Invariants:
    - Instance URL is always https://{instance_id}.{base_url}
    - Creation never retries: a failed create raises SandboxProvisionError
    - Deleting an instance that is already gone (404, or the known TTL-failure
      signature) is reported as should_continue, never raised
    - check_instance_liveness() reports GONE only on the explicit instance_not_found
      signature and UNREACHABLE on a transport error; check_instance_not_exist() is
      True only for GONE, so an unreachable host is never proof of absence on delete

Design Decisions:
    - httpx.AsyncClient injected at construction: tests swap in httpx.MockTransport
      (ADR: no monkeypatching of network calls)
    - sandbox_create_mock short-circuits creation with a fixed URL for local runs
    - Results are small dataclasses rather than raw dicts so the scheduler reads fields,
      not string keys
"""

import logging
import random
import string
import time
from dataclasses import dataclass

import httpx

from agent_server.core.domain_types import SandboxLiveness
from agent_server.core.errors import (
    ErrorContext, SandboxOperationError, SandboxProvisionError,
)

logger = logging.getLogger(__name__)

TTL_FAILED_MESSAGE = "delete sandbox pod ttl failed"


@dataclass
class SandboxInstance:
    id: str
    url: str
    ttl_minutes: int


@dataclass
class SandboxDeleteResult:
    success: bool
    should_continue: bool
    error: str | None = None


class SandboxManager:
    """Creates, deletes, and checks remote sandbox instances."""

    def __init__(
        self,
        base_url: str,
        jwt_token: str = "",
        default_ttl_minutes: int = 24 * 60,
        create_mock: str = "",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url
        self.jwt_token = jwt_token
        self.default_ttl_minutes = default_ttl_minutes
        self.create_mock = create_mock
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    def get_instance_url(self, instance_id: str) -> str:
        return f"https://{instance_id}.{self.base_url}"

    def _auth_headers(self) -> dict[str, str]:
        if not self.jwt_token:
            raise SandboxOperationError("No JWT token configured", "auth")
        return {"Content-Type": "application/json", "x-jwt-token": self.jwt_token}

    async def create_instance(
        self,
        ttl_minutes: int | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> SandboxInstance:
        ttl = ttl_minutes or self.default_ttl_minutes or 60
        logger.info(
            f"Creating sandbox instance (ttl={ttl}m)",
            extra={"user_id": user_id, "session_id": session_id},
        )

        if self.create_mock:
            suffix = "".join(
                random.choices(string.ascii_lowercase + string.digits, k=13),  # nosec B311
            )
            instance_id = f"ondemand-{int(time.time() * 1000):x}-{suffix}"
            return SandboxInstance(instance_id, self.create_mock, ttl)

        try:
            response = await self._client.post(
                f"https://tars.{self.base_url}/v1/ping",
                headers={
                    "X-Faas-Create-Sandbox": "true",
                    "X-Faas-Sandbox-TTL-Minutes": str(ttl),
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Sandbox create request failed: {e}")
            raise SandboxProvisionError(
                str(e), ErrorContext(user_id=user_id, session_id=session_id),
            ) from e

        if response.is_error:
            raise SandboxProvisionError(
                f"{response.status_code} {response.reason_phrase}",
                ErrorContext(user_id=user_id, session_id=session_id),
            )
        instance_name = response.headers.get("x-faas-instance-name")
        if not instance_name:
            raise SandboxProvisionError(
                "Failed to get instance name from response headers",
            )

        instance = SandboxInstance(
            instance_name, self.get_instance_url(instance_name), ttl,
        )
        logger.info(
            f"Sandbox instance created: {instance.url}",
            extra={"sandbox_id": instance.id},
        )
        return instance

    async def delete_instance(self, instance_id: str) -> SandboxDeleteResult:
        url = f"{self.get_instance_url(instance_id)}/v1/ping"
        logger.info(
            f"Deleting sandbox instance {instance_id}",
            extra={"sandbox_id": instance_id},
        )
        try:
            response = await self._client.delete(url, headers={
                **self._auth_headers(),
                "X-Faas-Delete-Sandbox": "true",
                "X-Faas-Instance-Name": instance_id,
            })
        except httpx.HTTPError as e:
            return await self._delete_failed(instance_id, e)

        if response.is_success:
            logger.info(
                f"Sandbox instance {instance_id} deleted",
                extra={"sandbox_id": instance_id},
            )
            return SandboxDeleteResult(success=True, should_continue=True)

        if (
            response.status_code == 404
            or _json_field(response, "error_message") == TTL_FAILED_MESSAGE
        ):
            return SandboxDeleteResult(
                success=False,
                should_continue=True,
                error=(
                    f"Instance not found ({response.status_code}), "
                    "will clean up database records"
                ),
            )
        return await self._delete_failed(
            instance_id,
            SandboxOperationError(
                f"{response.status_code} {response.reason_phrase}", "delete",
            ),
        )

    async def _delete_failed(
        self, instance_id: str, error: Exception,
    ) -> SandboxDeleteResult:
        if await self.check_instance_not_exist(self.get_instance_url(instance_id)):
            return SandboxDeleteResult(
                success=False,
                should_continue=True,
                error="Instance does not exist, will clean up database records",
            )
        logger.error(
            f"Failed to delete sandbox instance {instance_id}: {error}",
            extra={"sandbox_id": instance_id},
        )
        if isinstance(error, SandboxOperationError):
            raise error
        raise SandboxOperationError(str(error), "delete") from error

    async def refresh_instance_ttl(self, instance_id: str, ttl_minutes: int) -> None:
        url = f"{self.get_instance_url(instance_id)}/v1/ping"
        try:
            response = await self._client.patch(url, headers={
                **self._auth_headers(),
                "X-Faas-Sandbox-TTL-Minutes": str(ttl_minutes),
                "X-Faas-Instance-Name": instance_id,
            })
        except httpx.HTTPError as e:
            raise SandboxOperationError(str(e), "ttl refresh") from e
        if response.is_error:
            raise SandboxOperationError(
                f"{response.status_code} {response.reason_phrase}", "ttl refresh",
            )
        logger.info(
            f"Sandbox TTL refreshed to {ttl_minutes}m",
            extra={"sandbox_id": instance_id},
        )

    async def check_instance_liveness(self, sandbox_url: str) -> SandboxLiveness:
        """Classify the instance behind `sandbox_url` as alive, gone, or unreachable."""
        try:
            response = await self._client.get(sandbox_url)
        except httpx.HTTPError as e:
            logger.warning(f"Sandbox unreachable at {sandbox_url}: {e}")
            return SandboxLiveness.UNREACHABLE
        if (
            response.status_code == 500
            and _json_field(response, "error_code") == "instance_not_found"
        ):
            return SandboxLiveness.GONE
        return SandboxLiveness.ALIVE

    async def check_instance_not_exist(self, sandbox_url: str) -> bool:
        """True if the control plane says the instance behind `sandbox_url` is gone."""
        return await self.check_instance_liveness(sandbox_url) == SandboxLiveness.GONE

    async def get_image_version(self, instance_id: str) -> str:
        url = f"{self.get_instance_url(instance_id)}/v1/openapi.json"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            return (response.json().get("info") or {}).get("version") or ""
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to get image version: {e}")
            return ""

    async def test_instance(self, instance_id: str) -> bool:
        url = f"{self.get_instance_url(instance_id)}/v1/ping"
        try:
            response = await self._client.get(url, timeout=5.0)
        except httpx.HTTPError:
            return False
        return response.is_success

    async def close(self) -> None:
        await self._client.aclose()


def _json_field(response: httpx.Response, key: str):
    try:
        data = response.json()
    except ValueError:
        return None
    return data.get(key) if isinstance(data, dict) else None
