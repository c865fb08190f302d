"""
Package catalog access and target version resolution.

The catalog publishes one JSON index per channel::

    GET <base_url>/stable.json
    {"packages": [{"version": "3.1", "url": "https://...", "sha256": "..."}]}

VersionResolver turns a VersionQuery plus the instance's current version into
the single package to install.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx
from pydantic import BaseModel, ValidationError

from instctl.config import CatalogConfig
from instctl.errors import NoMatchingPackageError, UnavailableError
from instctl.logging import get_logger
from instctl.upgrade.version import Channel, Version, VersionQuery

logger = get_logger(__name__)


class PackageInfo(BaseModel):
    """
    An installable server build.

    Attributes:
        version: Version of the build.
        url: Download location.
        sha256: Expected checksum of the download, if published.
    """

    version: str
    url: str
    sha256: str | None = None

    @property
    def specific(self) -> Version:
        return Version.parse(self.version)


class CatalogIndex(BaseModel):
    packages: list[PackageInfo]


class PackageCatalog(ABC):
    """Source of installable server builds."""

    @abstractmethod
    async def list_packages(self, channel: Channel) -> list[PackageInfo]:
        """
        List every package published on ``channel``.

        Raises:
            UnavailableError: If the catalog cannot be reached or is invalid.
        """

    async def find_package(self, query: VersionQuery) -> PackageInfo | None:
        """Return the newest package matching ``query``, or None."""
        channels = [query.channel]
        if query.channel is Channel.TESTING:
            channels.append(Channel.STABLE)

        candidates: list[PackageInfo] = []
        for channel in channels:
            candidates.extend(
                pkg for pkg in await self.list_packages(channel) if query.matches(pkg.specific)
            )

        if not candidates:
            return None
        return max(candidates, key=lambda pkg: pkg.specific)


class HttpPackageCatalog(PackageCatalog):
    """PackageCatalog reading JSON indexes over HTTP."""

    def __init__(self, config: CatalogConfig) -> None:
        self.config = config

    async def list_packages(self, channel: Channel) -> list[PackageInfo]:
        url = f"{self.config.base_url.rstrip('/')}/{channel.value}.json"
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.get(url)
                response.raise_for_status()
                index = CatalogIndex.model_validate(response.json())
        except httpx.HTTPError as e:
            raise UnavailableError(
                f"cannot fetch package index {url}: {e}",
                details={"url": url},
            ) from e
        except (ValueError, ValidationError) as e:
            raise UnavailableError(
                f"invalid package index {url}",
                details={"url": url, "cause": str(e)},
            ) from e

        logger.debug(
            "Fetched package index",
            extra={"channel": channel.value, "packages": len(index.packages)},
        )
        return index.packages


class VersionResolver:
    """Resolves a VersionQuery to a concrete package."""

    def __init__(self, catalog: PackageCatalog) -> None:
        self.catalog = catalog

    async def resolve_package(
        self,
        query: VersionQuery | None,
        current: Version | None = None,
    ) -> PackageInfo:
        """
        Find the package to install.

        Args:
            query: What the user asked for. None means "latest build of the
                current major version" when ``current`` is given, else latest
                stable.
            current: The instance's installed version.

        Raises:
            NoMatchingPackageError: If nothing in the catalog matches.
        """
        if query is None:
            query = VersionQuery.from_version(current) if current else VersionQuery.stable()

        package = await self.catalog.find_package(query)
        if package is None:
            raise NoMatchingPackageError(
                "no package found according to your criteria",
                details={"query": str(query)},
            )

        logger.info(
            "Resolved target version",
            extra={"query": str(query), "version": package.version},
        )
        return package

    async def resolve(
        self,
        query: VersionQuery | None,
        current: Version | None = None,
    ) -> Version:
        """Like :meth:`resolve_package` but return only the version."""
        return (await self.resolve_package(query, current)).specific

    async def available_upgrade(self, version: Version) -> Version | None:
        """
        Latest stable release newer than ``version``, if any.

        Only informational, so a catalog failure yields None.
        """
        try:
            package = await self.catalog.find_package(VersionQuery.stable())
        except UnavailableError as e:
            logger.debug(f"Cannot check for newer releases: {e.message}")
            return None
        if package is None or package.specific <= version:
            return None
        return package.specific


def version_hint(version: Version, query: VersionQuery | None = None) -> str | None:
    """Warning to print before installing a non-stable build, if any."""
    if version.channel is Channel.NIGHTLY:
        return (
            f"Note: {version} is a nightly build; nightly data directories "
            "cannot be upgraded in place and may need a dump/restore on every update."
        )
    if version.channel is Channel.TESTING:
        if query is not None and query.channel is Channel.TESTING:
            return f"Note: {version} is a testing release and is not for production use."
        return f"Note: {version} is a pre-release."
    return None
