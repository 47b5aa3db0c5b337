import json
import uuid
from types import SimpleNamespace

import pytest

from edgepipe.config import (
    COMMAND_CLIENT_NAME,
    CONFIGURATION_NAME,
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
    ConfigurationStruct,
    Container,
    MessageBusInfo,
    TriggerInfo,
)
from edgepipe.constants import (
    CONTENT_TYPE_CBOR,
    CONTENT_TYPE_JSON,
    CONTENT_TYPE_XML,
    PIPELINEID,
)
from edgepipe.context import AppFunctionContext, PublishError


class FakeMessageClient:
    def __init__(self, error=None):
        self.error = error
        self.published = []

    def publish(self, message, topic):
        self.published.append((message, topic))
        if self.error is not None:
            raise self.error


class FakeProfileClient:
    def __init__(self):
        self.calls = []

    def device_resource_by_profile_name_and_resource_name(self, profile, resource):
        self.calls.append((profile, resource))
        return SimpleNamespace(resource={"name": resource, "profile": profile})


@pytest.fixture
def secret_provider():
    return object()


@pytest.fixture
def container(secret_provider):
    return Container(
        {
            LOGGING_CLIENT_NAME: lambda get: object(),
            SECRET_PROVIDER_NAME: lambda get: secret_provider,
        }
    )


@pytest.fixture
def target(container):
    return AppFunctionContext("", container, "")


def publish_container(message_client, publish_topic="test", prefix="test"):
    config = ConfigurationStruct(
        trigger=TriggerInfo(publish_topic=publish_topic),
        message_bus=MessageBusInfo(disabled=message_client is None, base_topic_prefix=prefix),
    )
    return Container(
        {
            LOGGING_CLIENT_NAME: lambda get: object(),
            MESSAGING_CLIENT_NAME: lambda get: message_client,
            CONFIGURATION_NAME: lambda get: config,
        }
    )


@pytest.mark.parametrize(
    "name, attribute",
    [
        (EVENT_CLIENT_NAME, "event_client"),
        (READING_CLIENT_NAME, "reading_client"),
        (COMMAND_CLIENT_NAME, "command_client"),
        (DEVICE_SERVICE_CLIENT_NAME, "device_service_client"),
        (DEVICE_PROFILE_CLIENT_NAME, "device_profile_client"),
        (DEVICE_CLIENT_NAME, "device_client"),
        (NOTIFICATION_CLIENT_NAME, "notification_client"),
        (SUBSCRIPTION_CLIENT_NAME, "subscription_client"),
        (METRICS_MANAGER_NAME, "metrics_manager"),
    ],
)
def test_clients_come_from_container(target, container, name, attribute):
    assert getattr(target, attribute) is None
    client = object()
    container.update({name: lambda get: client})
    assert getattr(target, attribute) is client


def test_secret_provider(target, secret_provider):
    assert target.secret_provider is secret_provider


def test_secret_provider_replaced(target, container):
    replacement = object()
    container.update({SECRET_PROVIDER_NAME: lambda get: replacement})
    assert target.secret_provider is replacement


def test_constructor_stores_metadata(container):
    ctx = AppFunctionContext("123-3456", container, CONTENT_TYPE_XML)
    assert ctx.correlation_id == "123-3456"
    assert ctx.input_content_type == CONTENT_TYPE_XML
    assert ctx.container is container
    assert ctx.response_data is None
    assert ctx.retry_data is None


def test_add_value_lowercases_key(target):
    key = "MyKey-" + uuid.uuid4().hex
    value = uuid.uuid4().hex
    target.add_value(key, value)
    assert target.get_all_values()[key.lower()] == value


def test_get_value_case_insensitive(target):
    value = uuid.uuid4().hex
    target.add_value("somekey", value)
    assert target.get_value("SomeKey") == value


def test_get_value_not_present(target):
    assert target.get_value(uuid.uuid4().hex) is None


def test_remove_value(target):
    key = uuid.uuid4().hex
    target.add_value(key, "v")
    target.remove_value(key.upper())
    assert target.get_value(key) is None


def test_remove_value_not_present(target):
    key = uuid.uuid4().hex
    target.remove_value(key)
    assert target.get_value(key) is None
    assert target.get_all_values() == {}


def test_get_all_values_is_copy(target):
    target.add_value("key1", "val")
    target.add_value("key2", "val2")
    values = target.get_all_values()
    assert values == {"key1": "val", "key2": "val2"}
    values["key3"] = "other"
    assert target.get_value("key3") is None


def test_apply_values_no_placeholders(target):
    target.add_value("key1", "val")
    text = uuid.uuid4().hex
    assert target.apply_values(text) == text


def test_apply_values_placeholders(target):
    target.add_value("key1", "val")
    target.add_value("key2", "val2")
    assert target.apply_values("{key1}-{key2}") == "val-val2"


def test_apply_values_repeated_placeholder(target):
    target.add_value("key1", "val")
    assert target.apply_values("{key1}/{KEY1}/{key1}") == "val/val/val"


def test_apply_values_missing_placeholder(target):
    target.add_value("key1", "val")
    target.add_value("key2", "val2")
    with pytest.raises(ValueError) as info:
        target.apply_values("{key1}-{key2}-{key3}")
    assert str(info.value) == (
        "failed to replace all context placeholders in input "
        "('val-val2-{key3}' after replacements)"
    )


def test_pipeline_id(target):
    assert target.pipeline_id == ""
    target.add_value(PIPELINEID, "my-pipeline")
    assert target.pipeline_id == "my-pipeline"


def test_retry_trigger_flag(target):
    assert target.is_retry_triggered is False
    target.trigger_retry_failed_data()
    assert target.is_retry_triggered is True
    target.clear_retry_trigger_flag()
    assert target.is_retry_triggered is False


def test_get_device_resource(target, container):
    client = FakeProfileClient()
    container.update({DEVICE_PROFILE_CLIENT_NAME: lambda get: client})
    resource = target.get_device_resource("MyProfile", "MyResource")
    assert resource == {"name": "MyResource", "profile": "MyProfile"}
    assert client.calls == [("MyProfile", "MyResource")]


def test_get_device_resource_error(target, container):
    container.update({DEVICE_PROFILE_CLIENT_NAME: lambda get: None})
    with pytest.raises(LookupError):
        target.get_device_resource("MyProfile", "MyResource")


def test_publish_message_bus_disabled():
    ctx = AppFunctionContext("", publish_container(None), "")
    with pytest.raises(PublishError) as info:
        ctx.publish("test", CONTENT_TYPE_JSON)
    assert str(info.value) == "publish failed due to MessageBus disabled via configuration"


def test_publish_valid():
    client = FakeMessageClient()
    ctx = AppFunctionContext("", publish_container(client), "")
    ctx.publish("test", CONTENT_TYPE_JSON)
    assert len(client.published) == 1
    message, topic = client.published[0]
    assert topic == "test/test"
    assert json.loads(message["payload"]) == "test"
    assert message["contentType"] == CONTENT_TYPE_JSON


def test_publish_error():
    client = FakeMessageClient(error=RuntimeError("failed"))
    ctx = AppFunctionContext("", publish_container(client), "")
    with pytest.raises(PublishError) as info:
        ctx.publish("test", CONTENT_TYPE_JSON)
    assert str(info.value) == "failed to publish data to messagebus: failed"


def test_publish_with_topic_disabled():
    ctx = AppFunctionContext("", Container({MESSAGING_CLIENT_NAME: lambda get: None}), "")
    with pytest.raises(PublishError) as info:
        ctx.publish_with_topic("", "test", CONTENT_TYPE_JSON)
    assert str(info.value) == "publish failed due to MessageBus disabled via configuration"


def test_publish_with_topic_valid():
    client = FakeMessageClient()
    ctx = AppFunctionContext("", publish_container(client), "")
    ctx.publish_with_topic("test_topic", "test", CONTENT_TYPE_JSON)
    assert [topic for _, topic in client.published] == ["test/test_topic"]
    assert client.published[0][0]["payload"] == b'"test"'


def test_publish_with_topic_error():
    client = FakeMessageClient(error=RuntimeError("failed"))
    ctx = AppFunctionContext("", publish_container(client), "")
    with pytest.raises(PublishError) as info:
        ctx.publish_with_topic("test_topic", "test", CONTENT_TYPE_JSON)
    assert str(info.value) == "failed to publish data to messagebus: failed"
    assert client.published[0][1] == "test/test_topic"


def test_publish_with_topic_applies_values():
    client = FakeMessageClient()
    ctx = AppFunctionContext("", publish_container(client), "")
    ctx.add_value("devicename", "dev1")
    ctx.publish_with_topic("{devicename}/data", {"a": 1}, CONTENT_TYPE_JSON)
    message, topic = client.published[0]
    assert topic == "test/dev1/data"
    assert json.loads(message["payload"]) == {"a": 1}


def test_publish_with_topic_missing_placeholder():
    client = FakeMessageClient()
    ctx = AppFunctionContext("", publish_container(client), "")
    with pytest.raises(PublishError) as info:
        ctx.publish_with_topic("{missing}/data", "test", CONTENT_TYPE_JSON)
    assert str(info.value).startswith("failed to format publish topic: ")
    assert client.published == []


def test_publish_unserializable_data():
    client = FakeMessageClient()
    ctx = AppFunctionContext("", publish_container(client), "")
    with pytest.raises(PublishError) as info:
        ctx.publish_with_topic("t", object(), CONTENT_TYPE_JSON)
    assert str(info.value).startswith(
        "failed to marshal data for publishing using given topic: "
    )


def test_clone(container):
    original = AppFunctionContext(uuid.uuid4().hex, container, CONTENT_TYPE_JSON)
    original.response_content_type = CONTENT_TYPE_CBOR
    original.response_data = b"response"
    original.retry_data = b"retry"
    original.add_value("test", "val1")
    original.add_value("test2", "val2")
    original.trigger_retry_failed_data()

    clone = original.clone()

    assert clone is not original
    assert clone.container is original.container
    assert clone.correlation_id == original.correlation_id
    assert clone.input_content_type == original.input_content_type
    assert clone.response_data == original.response_data
    assert clone.retry_data == original.retry_data
    assert clone.response_content_type == original.response_content_type
    assert clone.get_all_values() == original.get_all_values()
    assert clone.is_retry_triggered is False

    clone.add_value("test", "changed")
    assert original.get_value("test") == "val1"