# edgepipe

`edgepipe` runs chains of application functions over messages arriving from
an edge message bus. It decodes incoming payloads (JSON or CBOR events, raw
bytes or custom types), routes them to the pipelines whose topics match,
keeps a per-message context with placeholder substitution, and stores failed
exports so they can be retried later.

## Installation

```
pip install edgepipe
```

For running the tests:

```
pip install "edgepipe[test]"
pytest
```

## Concepts

- **`Container`** (`edgepipe.config`) is a lazy dependency container. Services
  are registered as constructors under names such as `CONFIGURATION_NAME`,
  `STORE_CLIENT_NAME`, `MESSAGING_CLIENT_NAME` and `METRICS_MANAGER_NAME`;
  each constructor is called once, on first `get`. The configuration itself is
  a `ConfigurationStruct` dataclass.
- **`AppFunctionContext`** (`edgepipe.context`) travels with each message. It
  holds the correlation id, content types, response and retry data, and a
  case-insensitive key/value store (`add_value`, `get_value`, `remove_value`,
  `get_all_values`). `apply_values("{devicename}/out")` replaces placeholders
  with stored values and raises `ValueError` if any are missing.
  `publish` and `publish_with_topic` hand a JSON-encoded message to the
  messaging client in the container and raise `PublishError` on failure,
  including when no messaging client is registered.
- **`FunctionsPipelineRuntime`** (`edgepipe.runtime`) owns the pipelines. Add
  them with `add_functions_pipeline(pipeline_id, topics, transforms)` or
  `set_default_functions_pipeline(transforms)`, decode an incoming
  `MessageEnvelope` with `decode_message`, find pipelines with
  `get_matching_pipelines(topic)`, and run one with `process_message`.
  Failures are raised as `MessageError` (from `edgepipe.pipeline`), whose
  `error_code` is 400 for an undecodable payload, 500 for a bad target type or
  a pipeline without functions, and 422 when a function fails.
- **Topics** use `/` as a level separator, `+` for a single level and `#` for
  everything below; see `edgepipe.pipeline.topic_matches`.
- **Transforms** are callables `transform(context, data)` returning a
  `(continue_pipeline, result)` pair. Returning `False` with an exception as
  the result marks the message as failed; if the transform set
  `context.retry_data`, the data is stored for a later retry.
- **Store and forward** (`edgepipe.storeforward.StoreForward`, available as
  `runtime.store_forward`) reruns stored `StoredObject` items from the
  position where they failed, dropping them after success, once the retry
  limit is reached, or when the pipeline has changed since they were stored.
  `runtime.start_store_and_forward(app_stop, enabled_stop, service_key)`
  starts a background thread that retries at the configured interval until
  either `threading.Event` is set.
- **Stored objects** (`edgepipe.storedobject.StoredObject`) check their own
  contract with `validate_contract` and convert to and from JSON with
  `to_json` and `from_json`.
- **Encryption** (`edgepipe.etm`) offers AEAD_AES_256_CBC_HMAC_SHA_512 via
  `new_aes256_sha512(key)` with `seal` and `open`; `open` raises
  `AuthenticationError` for altered messages.
- **Version checks** (`edgepipe.version.VersionValidator`) ask Core Metadata
  for its version over HTTP and make sure it shares this SDK's major version,
  retrying within a `StartupTimer`.

## Example

```python
import json

from edgepipe.config import Container
from edgepipe.context import AppFunctionContext
from edgepipe.pipeline import MessageError
from edgepipe.runtime import Event, FunctionsPipelineRuntime, MessageEnvelope, Reading

container = Container()
runtime = FunctionsPipelineRuntime("my-service", None, container)


def show_device(ctx, event):
    print(event.device_name)
    return False, None


runtime.add_functions_pipeline("devices", ["edgex/events/+/D1/#"], [show_device])

event = Event(
    device_name="D1",
    profile_name="P1",
    source_name="S1",
    readings=[
        Reading(
            device_name="D1",
            resource_name="S1",
            profile_name="P1",
            value_type="Int64",
            value="72",
        )
    ],
)
envelope = MessageEnvelope(
    correlation_id="123",
    payload=json.dumps({"apiVersion": "v3", "event": event.to_dict()}).encode(),
    content_type="application/json",
    received_topic="edgex/events/P1/D1/S1",
)

ctx = AppFunctionContext("123", container, "")
try:
    data = runtime.decode_message(ctx, envelope)
    for pipeline in runtime.get_matching_pipelines(envelope.received_topic):
        runtime.process_message(ctx.clone(), data, pipeline)
except MessageError as exc:
    print(exc.error_code, exc)
```

Sealing and opening a message:

```python
import os

from edgepipe.etm import new_aes256_sha512

aead = new_aes256_sha512(os.urandom(64))
nonce = os.urandom(aead.nonce_size)
sealed = aead.seal(nonce, b"reading data", b"public header")
assert aead.open(None, sealed, b"public header") == b"reading data"
```

## What the package does not do

- It ships no storage backend. Store and forward works with whatever object
  is registered under `STORE_CLIENT_NAME`, which must provide `store`,
  `retrieve_from_store`, `update` and `remove_from_store` for `StoredObject`
  items.
- It ships no message bus connection, metrics manager or device clients;
  these too are taken from the container when they are registered there.
- It has no command-line program and starts no service on its own: the
  runtime is driven by the code that feeds it messages.