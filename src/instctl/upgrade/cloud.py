"""
Upgrades of cloud-hosted instances.

The control plane does the actual migration, including its durability and
retries. Locally there is only a lookup, a confirmation gate and one upgrade
request; nothing on the local filesystem changes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from instctl.config import CloudConfig
from instctl.errors import (
    InstanceNotFoundError,
    NoMatchingPackageError,
    PermissionDeniedError,
    UnavailableError,
)
from instctl.logging import get_logger
from instctl.upgrade.result import UpgradeAction, UpgradeResult
from instctl.upgrade.version import Version, VersionQuery

logger = get_logger(__name__)

ConfirmCallback = Callable[[Version], bool]


class CloudInstance(BaseModel):
    """A cloud instance as reported by the control plane."""

    name: str
    org_slug: str
    version: str
    ui_url: str | None = None
    status: str | None = None


class CloudInstanceUpgrade(BaseModel):
    """Body of an upgrade request."""

    org: str
    name: str
    version: str
    force: bool = False


class CloudClient(ABC):
    """Operations of the cloud control plane used by upgrades."""

    @abstractmethod
    async def find_instance_by_name(self, name: str, org: str) -> CloudInstance | None:
        """Look up an instance; None if it does not exist."""

    @abstractmethod
    async def upgrade_instance(self, request: CloudInstanceUpgrade) -> None:
        """Ask the control plane to upgrade an instance."""

    @abstractmethod
    async def resolve_version(self, query: VersionQuery) -> Version:
        """
        Resolve ``query`` against the versions the cloud offers.

        Raises:
            NoMatchingPackageError: If no offered version matches.
        """

    def ensure_authenticated(self) -> None:
        """Fail early when the client has no usable credentials."""


class HttpCloudClient(CloudClient):
    """CloudClient talking to the REST API with a bearer secret key."""

    def __init__(self, config: CloudConfig) -> None:
        self.config = config

    def ensure_authenticated(self) -> None:
        """
        Raises:
            PermissionDeniedError: If no secret key is configured.
        """
        if not self.config.secret_key:
            raise PermissionDeniedError(
                "Not authenticated to the cloud",
                details={"hint": "Set cloud.secret_key or INSTCTL_CLOUD__SECRET_KEY"},
            )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        self.ensure_authenticated()
        url = f"{self.config.api_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.config.secret_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise UnavailableError(
                f"cloud API request failed: {e}",
                details={"method": method, "url": url},
            ) from e

        if response.status_code in (401, 403):
            raise PermissionDeniedError(
                "cloud API rejected the credentials",
                details={"status": response.status_code},
            )
        return response

    async def find_instance_by_name(self, name: str, org: str) -> CloudInstance | None:
        response = await self._request("GET", f"orgs/{org}/instances/{name}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        try:
            return CloudInstance.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UnavailableError(
                "invalid instance description from cloud API",
                details={"cause": str(e)},
            ) from e

    async def upgrade_instance(self, request: CloudInstanceUpgrade) -> None:
        response = await self._request(
            "PUT",
            f"orgs/{request.org}/instances/{request.name}",
            json={"version": request.version, "force": request.force},
        )
        self._raise_for_status(response)

    async def resolve_version(self, query: VersionQuery) -> Version:
        response = await self._request("GET", "versions")
        self._raise_for_status(response)
        try:
            offered = [Version.parse(item["version"]) for item in response.json()]
        except (ValueError, KeyError, TypeError) as e:
            raise UnavailableError(
                "invalid version list from cloud API",
                details={"cause": str(e)},
            ) from e

        matching = [v for v in offered if query.matches(v)]
        if not matching:
            raise NoMatchingPackageError(
                "no cloud version found according to your criteria",
                details={"query": str(query)},
            )
        return max(matching)

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UnavailableError(
                f"cloud API error {response.status_code}: {response.text.strip()}",
                details={"status": response.status_code},
            ) from e


async def upgrade_cloud(
    org: str,
    name: str,
    query: VersionQuery | None,
    client: CloudClient,
    force: bool,
    confirm: ConfirmCallback,
) -> UpgradeResult:
    """
    Upgrade a cloud instance.

    Args:
        org: Organization slug.
        name: Instance name.
        query: Target query; None means latest stable.
        client: Cloud control plane client.
        force: Upgrade even if the target is not newer.
        confirm: Called with the target version; returning False cancels.

    Raises:
        InstanceNotFoundError: If the instance does not exist.
    """
    instance = await client.find_instance_by_name(name, org)
    if instance is None:
        raise InstanceNotFoundError(
            f"instance {org}/{name} not found",
            details={"org": org, "name": name},
        )

    target = await client.resolve_version(query or VersionQuery.stable())
    current = Version.parse(instance.version)

    if target <= current and not force:
        return UpgradeResult(
            action=UpgradeAction.NONE,
            prior_version=current,
            requested_version=target,
        )

    if not confirm(target):
        return UpgradeResult(
            action=UpgradeAction.CANCELLED,
            prior_version=current,
            requested_version=target,
        )

    logger.info(
        "Requesting cloud upgrade",
        extra={"instance": f"{org}/{name}", "from": str(current), "to": str(target)},
    )
    await client.upgrade_instance(
        CloudInstanceUpgrade(org=org, name=name, version=str(target), force=force)
    )
    return UpgradeResult(
        action=UpgradeAction.UPGRADED,
        prior_version=current,
        requested_version=target,
    )
