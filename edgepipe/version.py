"""Startup check that the core services' major version matches this SDK's."""

from __future__ import annotations

import json
import logging
import time
import urllib.request
from typing import Any

from edgepipe.config import Container, configuration_from
from edgepipe.constants import API_BASE, CORE_METADATA_SERVICE_KEY

_log = logging.getLogger(__name__)

CORE_PRE_RELEASE_VERSION = "master"
CORE_DEVELOPER_VERSION = "0.0.0"
VERSION_MAJOR_INDEX = 0

_VERSION_ROUTE = API_BASE + "/version"


class StartupTimer:
    """Bounds how long startup keeps retrying, and how long it waits between tries."""

    def __init__(self, duration: float = 60.0, interval: float = 1.0) -> None:
        self.duration = duration
        self.interval = interval
        self._start = time.monotonic()

    def has_not_elapsed(self) -> bool:
        """True while the startup duration has not yet passed."""
        return time.monotonic() - self._start < self.duration

    def sleep_for_interval(self) -> None:
        """Wait one retry interval."""
        time.sleep(self.interval)


def _client_url(info: Any) -> str:
    return f"{info.protocol}://{info.host}:{info.port}"


class VersionValidator:
    """Verifies that Core Metadata's major version matches the SDK's major version."""

    def __init__(
        self,
        skip_version_check: bool = False,
        sdk_version: str = "0.0.0",
        request_timeout: float = 5.0,
    ) -> None:
        self.skip_version_check = skip_version_check
        self.sdk_version = sdk_version
        self.request_timeout = request_timeout

    def _fetch_core_version(self, base_url: str) -> str:
        with urllib.request.urlopen(
            base_url + _VERSION_ROUTE, timeout=self.request_timeout
        ) as response:
            body = response.read()
        doc = json.loads(body)
        if not isinstance(doc, dict):
            raise ValueError("version response must be a JSON object")
        version = doc.get("version", "")
        if not isinstance(version, str):
            raise ValueError("version in response must be a string")
        return version

    def bootstrap_handler(self, startup_timer: StartupTimer, container: Container) -> bool:
        """Return True when the versions are compatible or the check does not apply."""
        config = configuration_from(container)

        if self.skip_version_check:
            _log.info("Skipping core service version compatibility check")
            return True

        # The SDK version has the form "v{major}.{minor}.{patch}[-dev.{build}]".
        sdk_parts = self.sdk_version.split(".")
        if len(sdk_parts) < 3:
            _log.error("SDK version is malformed: version=%s", self.sdk_version)
            return False

        sdk_parts[VERSION_MAJOR_INDEX] = sdk_parts[VERSION_MAJOR_INDEX].replace("v", "", 1)
        if sdk_parts[VERSION_MAJOR_INDEX] == "0":
            _log.info(
                "Skipping version compatibility check for SDK Beta version or running in "
                "debugger: version=%s",
                self.sdk_version,
            )
            return True

        client_info = (config.clients or {}).get(CORE_METADATA_SERVICE_KEY)
        if client_info is None:
            _log.error(
                "Unable to get version of Core Metadata: Client configuration for "
                "core-metadata not found, missing common config? "
                "Use -cp or -cc flags for common config."
            )
            return False

        base_url = _client_url(client_info)
        core_version = None
        error: Exception | None = None
        while startup_timer.has_not_elapsed():
            try:
                core_version = self._fetch_core_version(base_url)
            except (OSError, ValueError) as exc:
                error = exc
                _log.warning("Unable to get version of Core Metadata: %s", exc)
                startup_timer.sleep_for_interval()
                continue
            error = None
            break

        if error is not None:
            _log.error("Unable to get version of Core Metadata after retries: %s", error)
            return False
        if core_version is None:
            core_version = ""

        if core_version == CORE_PRE_RELEASE_VERSION:
            _log.info(
                "Skipping version compatibility check for Core Services Pre-release version: "
                "version=%s",
                core_version,
            )
            return True

        if core_version == CORE_DEVELOPER_VERSION:
            _log.info(
                "Skipping version compatibility check for Core Services Developer version: "
                "version=%s",
                core_version,
            )
            return True

        # Core reports its version as "{major}.{minor}.{patch}".
        core_parts = core_version.split(".")
        if len(core_parts) < 3:
            _log.error("Core Services version is malformed: version=%s", core_version)
            return False

        if core_parts[0] == sdk_parts[VERSION_MAJOR_INDEX]:
            _log.debug(
                "Confirmed Core Services version (%s) is compatible with SDK's version (%s)",
                core_version,
                self.sdk_version,
            )
            return True

        _log.error(
            "Core Services version (%s) is not compatible with SDK's version(%s)",
            core_version,
            self.sdk_version,
        )
        return False