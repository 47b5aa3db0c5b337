"""Service configuration and the dependency container that holds it."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Mapping, Optional

Getter = Callable[[str], Any]
Constructor = Callable[[Getter], Any]

CONFIGURATION_NAME = "common.ConfigurationStruct"
STORE_CLIENT_NAME = "interfaces.StoreClient"
LOGGING_CLIENT_NAME = "logger.LoggingClient"
METRICS_MANAGER_NAME = "interfaces.MetricsManager"
MESSAGING_CLIENT_NAME = "messaging.MessageClient"
SECRET_PROVIDER_NAME = "interfaces.SecretProvider"
EVENT_CLIENT_NAME = "interfaces.EventClient"
READING_CLIENT_NAME = "interfaces.ReadingClient"
COMMAND_CLIENT_NAME = "interfaces.CommandClient"
DEVICE_SERVICE_CLIENT_NAME = "interfaces.DeviceServiceClient"
DEVICE_PROFILE_CLIENT_NAME = "interfaces.DeviceProfileClient"
DEVICE_CLIENT_NAME = "interfaces.DeviceClient"
NOTIFICATION_CLIENT_NAME = "interfaces.NotificationClient"
SUBSCRIPTION_CLIENT_NAME = "interfaces.SubscriptionClient"
CORE_METADATA_VERSION_CLIENT_NAME = "interfaces.CommonClient"


@dataclass
class PipelineFunction:
    """Configured parameters of one built-in pipeline function."""

    parameters: dict[str, str] = field(default_factory=dict)


@dataclass
class TopicPipeline:
    """A pipeline that runs only for matching incoming topics."""

    id: str = ""
    topics: str = ""
    execution_order: str = ""


@dataclass
class PipelineInfo:
    """Configurable pipelines: the default one and the per-topic ones."""

    execution_order: str = ""
    per_topic_pipelines: dict[str, TopicPipeline] = field(default_factory=dict)
    target_type: str = ""
    functions: dict[str, PipelineFunction] = field(default_factory=dict)


@dataclass
class StoreAndForwardInfo:
    enabled: bool = False
    retry_interval: str = ""
    max_retry_count: int = 0


@dataclass
class WritableInfo:
    """Configuration that may change while the service runs."""

    log_level: str = ""
    pipeline: PipelineInfo = field(default_factory=PipelineInfo)
    store_and_forward: StoreAndForwardInfo = field(default_factory=StoreAndForwardInfo)
    insecure_secrets: dict[str, Any] = field(default_factory=dict)
    telemetry: dict[str, Any] = field(default_factory=dict)


@dataclass
class HttpConfig:
    protocol: str = ""
    secret_name: str = ""
    https_cert_name: str = ""
    https_key_name: str = ""


@dataclass
class WillConfig:
    """Last Will settings of an MQTT client connection."""

    enabled: bool = False
    payload: str = ""
    qos: int = 0
    retained: bool = False
    topic: str = ""


@dataclass
class ExternalMqttConfig:
    url: str = ""
    client_id: str = ""
    connect_timeout: str = ""
    auto_reconnect: bool = False
    keep_alive: int = 0
    qos: int = 0
    retain: bool = False
    skip_cert_verify: bool = False
    secret_name: str = ""
    auth_mode: str = ""
    retry_duration: int = 0
    retry_interval: int = 0
    will: WillConfig = field(default_factory=WillConfig)


@dataclass
class TriggerInfo:
    """What starts the function pipelines and where their output goes."""

    type: str = ""
    subscribe_topics: str = ""
    publish_topic: str = ""
    external_mqtt: ExternalMqttConfig = field(default_factory=ExternalMqttConfig)


@dataclass
class MessageBusInfo:
    disabled: bool = False
    type: str = ""
    protocol: str = ""
    host: str = ""
    port: int = 0
    auth_mode: str = ""
    secret_name: str = ""
    base_topic_prefix: str = ""
    optional: dict[str, str] = field(default_factory=dict)


@dataclass
class ClientInfo:
    """Where a dependent service can be reached."""

    protocol: str = "http"
    host: str = ""
    port: int = 0

    @property
    def url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


@dataclass
class DatabaseInfo:
    type: str = ""
    host: str = ""
    port: int = 0
    timeout: str = ""
    max_idle: int = 0
    batch_size: int = 0


@dataclass
class Credentials:
    username: str = ""
    password: str = ""


@dataclass
class ConfigurationStruct:
    """Full configuration of an application service."""

    writable: WritableInfo = field(default_factory=WritableInfo)
    registry: dict[str, Any] = field(default_factory=dict)
    service: dict[str, Any] = field(default_factory=dict)
    http_server: HttpConfig = field(default_factory=HttpConfig)
    message_bus: MessageBusInfo = field(default_factory=MessageBusInfo)
    trigger: TriggerInfo = field(default_factory=TriggerInfo)
    application_settings: dict[str, str] = field(default_factory=dict)
    clients: dict[str, ClientInfo] = field(default_factory=dict)
    database: DatabaseInfo = field(default_factory=DatabaseInfo)

    def update_from_raw(self, raw_config: Any) -> bool:
        """Overwrite this configuration with another one; False if it is not one."""
        if not isinstance(raw_config, ConfigurationStruct):
            return False
        for f in fields(self):
            setattr(self, f.name, getattr(raw_config, f.name))
        return True

    def update_writable_from_raw(self, raw_writable: Any) -> bool:
        """Replace the writable section; False if the value is not a WritableInfo."""
        if not isinstance(raw_writable, WritableInfo):
            return False
        self.writable = raw_writable
        return True

    def empty_writable(self) -> WritableInfo:
        """Return a fresh, empty writable section."""
        return WritableInfo()


class AtomicBool:
    """A boolean guarded by a lock."""

    def __init__(self, value: bool = False) -> None:
        self._lock = threading.Lock()
        self._value = value

    @property
    def value(self) -> bool:
        with self._lock:
            return self._value

    def set(self, value: bool) -> None:
        with self._lock:
            self._value = value

    def __bool__(self) -> bool:
        return self.value


class Container:
    """Lazy dependency container keyed by service name.

    Each constructor receives the container's ``get`` and is called once, on
    first lookup; updating a name discards the instance built from it.
    """

    def __init__(self, services: Optional[Mapping[str, Constructor]] = None) -> None:
        self._lock = threading.RLock()
        self._constructors: dict[str, Constructor] = {}
        self._instances: dict[str, Any] = {}
        if services:
            self.update(services)

    def get(self, name: str) -> Any:
        """Return the service registered under ``name``, or None."""
        with self._lock:
            if name in self._instances:
                return self._instances[name]
            constructor = self._constructors.get(name)
            if constructor is None:
                return None
            instance = constructor(self.get)
            self._instances[name] = instance
            return instance

    def update(self, services: Mapping[str, Constructor]) -> None:
        """Register or replace constructors."""
        with self._lock:
            for name, constructor in services.items():
                self._constructors[name] = constructor
                self._instances.pop(name, None)


def configuration_from(container: Container) -> ConfigurationStruct:
    """Return the service configuration held by the container."""
    config = container.get(CONFIGURATION_NAME)
    if not isinstance(config, ConfigurationStruct):
        raise LookupError("service configuration is not available in the container")
    return config


def store_client_from(container: Container) -> Any:
    """Return the store client held by the container, or None."""
    return container.get(STORE_CLIENT_NAME)