"""Per-message context handed to every function of a pipeline."""

from __future__ import annotations

import base64
import dataclasses
import json
import re
import uuid
from typing import Any, Optional

from edgepipe.config import (
    COMMAND_CLIENT_NAME,
    DEVICE_CLIENT_NAME,
    DEVICE_PROFILE_CLIENT_NAME,
    DEVICE_SERVICE_CLIENT_NAME,
    EVENT_CLIENT_NAME,
    LOGGING_CLIENT_NAME,
    MESSAGING_CLIENT_NAME,
    METRICS_MANAGER_NAME,
    NOTIFICATION_CLIENT_NAME,
    READING_CLIENT_NAME,
    SECRET_PROVIDER_NAME,
    SUBSCRIPTION_CLIENT_NAME,
    Container,
    configuration_from,
)
from edgepipe.constants import PIPELINEID

MESSAGE_BUS_DISABLED_ERR = "publish failed due to MessageBus disabled via configuration"
PUBLISH_DATA_ERR = "failed to publish data to messagebus"
TOPIC_FORMAT_ERR = "failed to format publish topic"

_API_VERSION = "v3"
_TOPIC_LEVEL_SEPARATOR = "/"
_PLACEHOLDER = re.compile(r"{[^}]*}")


class PublishError(RuntimeError):
    """Raised when data cannot be published to the message bus."""


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def _build_topic(*parts: str) -> str:
    return _TOPIC_LEVEL_SEPARATOR.join(parts)


class AppFunctionContext:
    """State and services available to pipeline functions while one message is processed.

    Values stored with :meth:`add_value` are keyed case-insensitively.
    """

    def __init__(
        self,
        correlation_id: str = "",
        container: Optional[Container] = None,
        input_content_type: str = "",
    ) -> None:
        self.container = container if container is not None else Container()
        self.correlation_id = correlation_id
        self.input_content_type = input_content_type
        self.response_data: Optional[bytes] = None
        self.response_content_type = ""
        self.retry_data: Optional[bytes] = None
        self._retry_triggered = False
        self._context_data: dict[str, str] = {}

    def clone(self) -> "AppFunctionContext":
        """Return a copy whose stored values can be changed independently."""
        copy = AppFunctionContext(self.correlation_id, self.container, self.input_content_type)
        copy.response_data = self.response_data
        copy.retry_data = self.retry_data
        copy.response_content_type = self.response_content_type
        copy._context_data = dict(self._context_data)
        return copy

    # Retry handling

    def trigger_retry_failed_data(self) -> None:
        """Ask for stored failed data to be retried."""
        self._retry_triggered = True

    def clear_retry_trigger_flag(self) -> None:
        """Withdraw a pending retry request."""
        self._retry_triggered = False

    @property
    def is_retry_triggered(self) -> bool:
        return self._retry_triggered

    # Services from the container

    @property
    def secret_provider(self) -> Any:
        return self.container.get(SECRET_PROVIDER_NAME)

    @property
    def logging_client(self) -> Any:
        return self.container.get(LOGGING_CLIENT_NAME)

    @property
    def event_client(self) -> Any:
        return self.container.get(EVENT_CLIENT_NAME)

    @property
    def reading_client(self) -> Any:
        return self.container.get(READING_CLIENT_NAME)

    @property
    def command_client(self) -> Any:
        return self.container.get(COMMAND_CLIENT_NAME)

    @property
    def device_service_client(self) -> Any:
        return self.container.get(DEVICE_SERVICE_CLIENT_NAME)

    @property
    def device_profile_client(self) -> Any:
        return self.container.get(DEVICE_PROFILE_CLIENT_NAME)

    @property
    def device_client(self) -> Any:
        return self.container.get(DEVICE_CLIENT_NAME)

    @property
    def notification_client(self) -> Any:
        return self.container.get(NOTIFICATION_CLIENT_NAME)

    @property
    def subscription_client(self) -> Any:
        return self.container.get(SUBSCRIPTION_CLIENT_NAME)

    @property
    def metrics_manager(self) -> Any:
        return self.container.get(METRICS_MANAGER_NAME)

    # Stored values

    def add_value(self, key: str, value: str) -> None:
        """Store a value for later functions of the pipeline."""
        self._context_data[key.lower()] = value

    def remove_value(self, key: str) -> None:
        """Delete the value stored under ``key``, if any."""
        self._context_data.pop(key.lower(), None)

    def get_value(self, key: str) -> Optional[str]:
        """Return the value stored under ``key``, or None if there is none."""
        return self._context_data.get(key.lower())

    def get_all_values(self) -> dict[str, str]:
        """Return a copy of every stored value."""
        return dict(self._context_data)

    def apply_values(self, format_string: str) -> str:
        """Replace each ``{key}`` placeholder with the value stored under that key.

        Raises ValueError if any placeholder has no stored value.
        """
        attempts: dict[str, bool] = {}
        result = format_string
        for placeholder in _PLACEHOLDER.findall(format_string):
            if placeholder in attempts:
                continue
            key = placeholder.lstrip("{").rstrip("}")
            value = self.get_value(key)
            attempts[placeholder] = value is not None
            if value is not None:
                result = result.replace(placeholder, value)

        if not all(attempts.values()):
            raise ValueError(
                "failed to replace all context placeholders in input "
                f"('{result}' after replacements)"
            )
        return result

    @property
    def pipeline_id(self) -> str:
        """Id of the pipeline executing, or an empty string."""
        return self.get_value(PIPELINEID) or ""

    # Metadata and message bus

    def get_device_resource(self, profile_name: str, resource_name: str) -> Any:
        """Look up a device resource through the device profile client."""
        client = self.device_profile_client
        if client is None:
            raise LookupError(
                "DeviceProfileClient not initialized. "
                "Core Metadata is missing from clients configuration"
            )
        response = client.device_resource_by_profile_name_and_resource_name(
            profile_name, resource_name
        )
        return response.resource

    def publish(self, data: Any, content_type: str) -> None:
        """Publish data to the message bus on the configured publish topic."""
        topic = configuration_from(self.container).trigger.publish_topic
        self.publish_with_topic(topic, data, content_type)

    def publish_with_topic(self, topic: str, data: Any, content_type: str) -> None:
        """Publish data to the message bus on ``topic``, after applying stored values."""
        message_client = self.container.get(MESSAGING_CLIENT_NAME)
        if message_client is None:
            raise PublishError(MESSAGE_BUS_DISABLED_ERR)

        config = configuration_from(self.container)

        try:
            formatted_topic = self.apply_values(topic)
        except ValueError as exc:
            raise PublishError(f"{TOPIC_FORMAT_ERR}: {exc}") from exc

        full_topic = _build_topic(config.message_bus.base_topic_prefix, formatted_topic)

        try:
            payload = json.dumps(
                data, default=_json_default, separators=(",", ":"), ensure_ascii=False
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise PublishError(
                f"failed to marshal data for publishing using given topic: {exc}"
            ) from exc

        message = {
            "apiVersion": _API_VERSION,
            "requestId": str(uuid.uuid4()),
            "correlationID": str(uuid.uuid4()),
            "payload": payload,
            "contentType": content_type,
        }

        try:
            message_client.publish(message, full_topic)
        except Exception as exc:
            raise PublishError(f"{PUBLISH_DATA_ERR}: {exc}") from exc