"""Runtime that decodes incoming messages and runs them through function pipelines."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import cbor2

from edgepipe.config import METRICS_MANAGER_NAME, Container
from edgepipe.constants import (
    CONTENT_TYPE_CBOR,
    CONTENT_TYPE_JSON,
    CORRELATION_HEADER,
    DEFAULT_PIPELINE_ID,
    DEVICENAME,
    PIPELINE_MESSAGE_PROCESSING_TIME_NAME,
    PIPELINE_MESSAGES_PROCESSED_NAME,
    PIPELINE_PROCESSING_ERRORS_NAME,
    PIPELINEID,
    PROFILENAME,
    RECEIVEDTOPIC,
    SOURCENAME,
    pipeline_metric_name,
)
from edgepipe.context import AppFunctionContext
from edgepipe.pipeline import (
    TOPIC_WILDCARD,
    AppFunction,
    FunctionPipeline,
    MessageError,
    calculate_pipeline_hash,
    new_function_pipeline,
    topic_matches,
)
from edgepipe.storedobject import ContractError
from edgepipe.storeforward import StoreForward

_log = logging.getLogger(__name__)

API_VERSION = "v3"
VALUE_TYPE_BINARY = "Binary"
VALUE_TYPE_OBJECT = "Object"

_HTTP_BAD_REQUEST = 400
_HTTP_INTERNAL_SERVER_ERROR = 500
_HTTP_UNPROCESSABLE_ENTITY = 422


def _text(doc: Mapping[str, Any], key: str) -> str:
    value = doc.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ContractError(f"field '{key}' must be a string")
    return value


def _integer(doc: Mapping[str, Any], key: str) -> int:
    value = doc.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ContractError(f"field '{key}' must be an integer")
    return value


def _binary(doc: Mapping[str, Any], key: str) -> bytes:
    value = doc.get(key)
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise ContractError(f"field '{key}' is not valid base64: {exc}") from None
    raise ContractError(f"field '{key}' must hold binary data")


def _tags(doc: Mapping[str, Any], key: str) -> Optional[dict[str, Any]]:
    value = doc.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ContractError(f"field '{key}' must be an object")
    return dict(value)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


@dataclass
class Reading:
    """One value read from a device resource."""

    device_name: str = ""
    resource_name: str = ""
    profile_name: str = ""
    value_type: str = ""
    value: str = ""
    binary_value: bytes = b""
    media_type: str = ""
    object_value: Any = None
    units: str = ""
    tags: Optional[dict[str, Any]] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    origin: int = field(default_factory=time.time_ns)

    @classmethod
    def from_dict(cls, data: Any) -> "Reading":
        """Build a reading from its decoded JSON or CBOR form."""
        if not isinstance(data, Mapping):
            raise ContractError("reading must be an object")
        return cls(
            id=_text(data, "id"),
            origin=_integer(data, "origin"),
            device_name=_text(data, "deviceName"),
            resource_name=_text(data, "resourceName"),
            profile_name=_text(data, "profileName"),
            value_type=_text(data, "valueType"),
            value=_text(data, "value"),
            binary_value=_binary(data, "binaryValue"),
            media_type=_text(data, "mediaType"),
            object_value=data.get("objectValue"),
            units=_text(data, "units"),
            tags=_tags(data, "tags"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the reading's JSON form."""
        doc: dict[str, Any] = {
            "id": self.id,
            "origin": self.origin,
            "deviceName": self.device_name,
            "resourceName": self.resource_name,
            "profileName": self.profile_name,
            "valueType": self.value_type,
        }
        if self.units:
            doc["units"] = self.units
        if self.tags:
            doc["tags"] = dict(self.tags)
        if self.binary_value:
            doc["binaryValue"] = base64.b64encode(bytes(self.binary_value)).decode("ascii")
        if self.media_type:
            doc["mediaType"] = self.media_type
        if self.value:
            doc["value"] = self.value
        if self.object_value is not None:
            doc["objectValue"] = self.object_value
        return doc

    def validate(self) -> None:
        """Raise ContractError if a required field is missing or malformed."""
        if self.id and not _is_uuid(self.id):
            raise ContractError("Reading.Id field must be a UUID")
        for name, value in (
            ("DeviceName", self.device_name),
            ("ResourceName", self.resource_name),
            ("ProfileName", self.profile_name),
            ("ValueType", self.value_type),
        ):
            if not value.strip():
                raise ContractError(f"Reading.{name} field is required")
        if self.origin == 0:
            raise ContractError("Reading.Origin field is required")
        kind = self.value_type.lower()
        if kind == VALUE_TYPE_BINARY.lower():
            if not self.binary_value:
                raise ContractError("Reading.BinaryValue field is required")
            if not self.media_type:
                raise ContractError("Reading.MediaType field is required")
        elif kind == VALUE_TYPE_OBJECT.lower():
            if self.object_value is None:
                raise ContractError("Reading.ObjectValue field is required")
        elif not self.value:
            raise ContractError("Reading.Value field is required")


@dataclass
class Event:
    """A set of readings taken from one device source at one time."""

    device_name: str = ""
    profile_name: str = ""
    source_name: str = ""
    readings: list[Reading] = field(default_factory=list)
    tags: Optional[dict[str, Any]] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    origin: int = field(default_factory=time.time_ns)
    api_version: str = API_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> "Event":
        """Build an event from its decoded JSON or CBOR form."""
        if not isinstance(data, Mapping):
            raise ContractError("event must be an object")
        readings_doc = data.get("readings")
        if readings_doc is None:
            readings: list[Reading] = []
        elif isinstance(readings_doc, list):
            readings = [Reading.from_dict(item) for item in readings_doc]
        else:
            raise ContractError("field 'readings' must be a list")
        return cls(
            api_version=_text(data, "apiVersion"),
            id=_text(data, "id"),
            device_name=_text(data, "deviceName"),
            profile_name=_text(data, "profileName"),
            source_name=_text(data, "sourceName"),
            origin=_integer(data, "origin"),
            readings=readings,
            tags=_tags(data, "tags"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the event's JSON form."""
        doc: dict[str, Any] = {
            "apiVersion": self.api_version,
            "id": self.id,
            "deviceName": self.device_name,
            "profileName": self.profile_name,
            "sourceName": self.source_name,
            "origin": self.origin,
            "readings": [reading.to_dict() for reading in self.readings],
        }
        if self.tags:
            doc["tags"] = dict(self.tags)
        return doc

    def validate(self) -> None:
        """Raise ContractError if a required field is missing or malformed."""
        if not self.api_version:
            raise ContractError("Event.ApiVersion field is required")
        if not _is_uuid(self.id):
            raise ContractError("Event.Id field must be a UUID")
        for name, value in (
            ("DeviceName", self.device_name),
            ("ProfileName", self.profile_name),
            ("SourceName", self.source_name),
        ):
            if not value.strip():
                raise ContractError(f"Event.{name} field is required")
        if self.origin == 0:
            raise ContractError("Event.Origin field is required")
        if not self.readings:
            raise ContractError("Event.Readings field must hold at least one reading")
        for reading in self.readings:
            reading.validate()


@dataclass
class MessageEnvelope:
    """A message received from the message bus or another trigger."""

    payload: Optional[bytes] = None
    content_type: str = ""
    correlation_id: str = ""
    received_topic: str = ""
    request_id: str = ""
    api_version: str = API_VERSION
    error_code: int = 0
    query_params: dict[str, str] = field(default_factory=dict)


def _event_from_add_request(doc: Any) -> Event:
    if not isinstance(doc, Mapping):
        raise ContractError("AddEventRequest must be an object")
    api_version = doc.get("apiVersion")
    if not isinstance(api_version, str) or not api_version:
        raise ContractError("AddEventRequest.ApiVersion field is required")
    request_id = doc.get("requestId") or ""
    if not isinstance(request_id, str) or (request_id and not _is_uuid(request_id)):
        raise ContractError("AddEventRequest.RequestId field must be empty or a UUID")
    event = Event.from_dict(doc.get("event", {}))
    event.validate()
    return event


class FunctionsPipelineRuntime:
    """Holds the function pipelines and runs decoded messages through them.

    ``target_type`` is the class messages are decoded into: None or Event for
    events, bytes for the raw payload, or any other class for a custom type.
    """

    def __init__(self, service_key: str, target_type: Any, container: Container) -> None:
        self.service_key = service_key
        self.target_type = target_type
        self._container = container
        self._pipelines: dict[str, FunctionPipeline] = {}
        self._lock = threading.Lock()
        self.store_forward = StoreForward(self, container, service_key)

    # Pipeline management

    def set_default_functions_pipeline(self, transforms: Optional[Sequence[AppFunction]]) -> None:
        """Set the functions of the default pipeline, creating it if needed."""
        pipeline = self.get_default_pipeline()
        self.set_functions_pipeline_transforms(pipeline.id, transforms)

    def set_functions_pipeline_transforms(
        self, pipeline_id: str, transforms: Optional[Sequence[AppFunction]]
    ) -> None:
        """Set the functions of an existing pipeline; unknown ids are ignored."""
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            _log.warning(
                "Unable to set transforms for `%s` pipeline: Pipeline not found", pipeline_id
            )
            return
        with self._lock:
            pipeline.transforms = list(transforms) if transforms is not None else None
            pipeline.hash = calculate_pipeline_hash(transforms)
        _log.info("Transforms set for `%s` pipeline", pipeline_id)

    def set_functions_pipeline_topics(self, pipeline_id: str, topics: Sequence[str]) -> None:
        """Set the topics of an existing pipeline; unknown ids are ignored."""
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            _log.warning("Unable to set topic for `%s` pipeline: Pipeline not found", pipeline_id)
            return
        with self._lock:
            pipeline.topics = list(topics)
        _log.info("Topics '%s' set for `%s` pipeline", list(topics), pipeline_id)

    def clear_all_functions_pipeline_transforms(self) -> None:
        """Remove the functions from every pipeline."""
        with self._lock:
            for pipeline in self._pipelines.values():
                pipeline.transforms = None
                pipeline.hash = ""

    def remove_all_function_pipelines(self) -> None:
        """Remove every pipeline and unregister its metrics."""
        metrics_manager = self._container.get(METRICS_MANAGER_NAME)
        with self._lock:
            for pipeline_id in list(self._pipelines):
                if metrics_manager is not None:
                    for name in (
                        PIPELINE_MESSAGES_PROCESSED_NAME,
                        PIPELINE_MESSAGE_PROCESSING_TIME_NAME,
                        PIPELINE_PROCESSING_ERRORS_NAME,
                    ):
                        metrics_manager.unregister(pipeline_metric_name(name, pipeline_id))
                del self._pipelines[pipeline_id]

    def add_functions_pipeline(
        self,
        pipeline_id: str,
        topics: Sequence[str],
        transforms: Optional[Sequence[AppFunction]],
    ) -> None:
        """Add a new pipeline; raises ValueError if the id is already in use."""
        if pipeline_id in self._pipelines:
            raise ValueError(f"pipeline with Id='{pipeline_id}' already exists")
        self._add_functions_pipeline(pipeline_id, topics, transforms)

    def _add_functions_pipeline(
        self,
        pipeline_id: str,
        topics: Sequence[str],
        transforms: Optional[Sequence[AppFunction]],
    ) -> FunctionPipeline:
        pipeline = new_function_pipeline(pipeline_id, topics, transforms)
        with self._lock:
            self._pipelines[pipeline_id] = pipeline

        metrics_manager = self._container.get(METRICS_MANAGER_NAME)
        if metrics_manager is not None:
            for name, metric in (
                (PIPELINE_MESSAGES_PROCESSED_NAME, pipeline.messages_processed),
                (PIPELINE_MESSAGE_PROCESSING_TIME_NAME, pipeline.message_processing_time),
                (PIPELINE_PROCESSING_ERRORS_NAME, pipeline.processing_errors),
            ):
                registered = pipeline_metric_name(name, pipeline_id)
                try:
                    metrics_manager.register(registered, metric, {"pipeline": pipeline_id})
                except Exception as exc:
                    _log.warning(
                        "Unable to register %s metric. Metric will not be reported : %s",
                        registered,
                        exc,
                    )
                else:
                    _log.info(
                        "%s metric has been registered and will be reported (if enabled)",
                        registered,
                    )
        return pipeline

    def get_default_pipeline(self) -> FunctionPipeline:
        """Return the default pipeline, creating an empty one if none exists."""
        pipeline = self._pipelines.get(DEFAULT_PIPELINE_ID)
        if pipeline is None:
            pipeline = self._add_functions_pipeline(DEFAULT_PIPELINE_ID, [TOPIC_WILDCARD], None)
        return pipeline

    def get_matching_pipelines(self, incoming_topic: str) -> list[FunctionPipeline]:
        """Return every pipeline whose topics match the incoming topic."""
        return [
            pipeline
            for pipeline in list(self._pipelines.values())
            if topic_matches(incoming_topic, pipeline.topics)
        ]

    def get_pipeline_by_id(self, pipeline_id: str) -> Optional[FunctionPipeline]:
        """Return the pipeline with the given id, or None."""
        return self._pipelines.get(pipeline_id)

    # Message handling

    def process_message(
        self, app_context: AppFunctionContext, target: Any, pipeline: FunctionPipeline
    ) -> None:
        """Run decoded data through a pipeline; raises MessageError on failure."""
        if not pipeline.transforms:
            err = ValueError(
                f"no transforms configured for pipleline Id='{pipeline.id}'. "
                "Please check log for earlier errors loading pipeline"
            )
            self._log_error(err, app_context.correlation_id)
            raise MessageError(err, _HTTP_INTERNAL_SERVER_ERROR)

        app_context.add_value(PIPELINEID, pipeline.id)
        _log.debug(
            "Pipeline '%s' processing message %d Transforms", pipeline.id, len(pipeline.transforms)
        )

        # Work on a copy so that pipeline updates do not disturb this run.
        with self._lock:
            exec_pipeline = dataclasses.replace(
                pipeline, transforms=list(pipeline.transforms), topics=list(pipeline.topics)
            )

        self.execute_pipeline(target, app_context, exec_pipeline, 0, False)

    def decode_message(self, app_context: AppFunctionContext, envelope: MessageEnvelope) -> Any:
        """Decode the envelope's payload into the target type.

        Raises MessageError with code 500 for a bad target type and 400 for a
        payload that cannot be decoded.
        """
        if self.target_type is None:
            self.target_type = Event
        target_type = self.target_type

        if not isinstance(target_type, type):
            err = TypeError("TargetType must be a class, not an instance of the target type")
            self._log_error(err, envelope.correlation_id)
            raise MessageError(err, _HTTP_INTERNAL_SERVER_ERROR)

        if issubclass(target_type, (bytes, bytearray)):
            _log.debug("Expecting raw byte data")
            target: Any = bytes(envelope.payload or b"")
        elif issubclass(target_type, Event):
            _log.debug("Expecting an AddEventRequest or Event DTO")
            try:
                event = self._process_event_payload(envelope)
            except ValueError as exc:
                err = ValueError(f"unable to process payload {exc}")
                self._log_error(err, envelope.correlation_id)
                raise MessageError(err, _HTTP_BAD_REQUEST) from exc

            if _log.isEnabledFor(logging.DEBUG):
                self._debug_log_event(event)

            app_context.add_value(DEVICENAME, event.device_name)
            app_context.add_value(PROFILENAME, event.profile_name)
            app_context.add_value(SOURCENAME, event.source_name)
            target = event
        else:
            type_name = f"{target_type.__module__}.{target_type.__qualname__}"
            _log.debug("Expecting a custom type of %s", type_name)
            try:
                target = self._decode_custom(envelope, target_type)
            except (TypeError, ValueError) as exc:
                err = ValueError(
                    f"unable to process custom object received of type '{type_name}': {exc}"
                )
                self._log_error(err, envelope.correlation_id)
                raise MessageError(err, _HTTP_BAD_REQUEST) from exc

        app_context.correlation_id = envelope.correlation_id
        app_context.input_content_type = envelope.content_type
        app_context.add_value(RECEIVEDTOPIC, envelope.received_topic)
        return target

    def execute_pipeline(
        self,
        target: Any,
        app_context: AppFunctionContext,
        pipeline: FunctionPipeline,
        start_position: int,
        is_retry: bool,
    ) -> None:
        """Run the pipeline's functions from ``start_position`` on.

        A function that stops the pipeline with an exception as its result
        makes this raise MessageError with code 422; its retry data, if any,
        is stored for a later retry unless this run is itself a retry.
        """
        result: Any = None
        for index, function in enumerate(pipeline.transforms or ()):
            if index < start_position:
                continue

            app_context.retry_data = None
            continue_pipeline, result = function(
                app_context, target if result is None else result
            )

            if not continue_pipeline:
                if isinstance(result, BaseException):
                    _log.error(
                        "Pipeline (%s) function #%d resulted in error: %s (%s=%s)",
                        pipeline.id,
                        index,
                        result,
                        CORRELATION_HEADER,
                        app_context.correlation_id,
                    )
                    if app_context.retry_data is not None and not is_retry:
                        self.store_forward.store_for_later_retry(
                            app_context.retry_data, app_context, pipeline, index
                        )
                    pipeline.processing_errors.inc(1)
                    raise MessageError(result, _HTTP_UNPROCESSABLE_ENTITY)
                break

            if not is_retry and app_context.is_retry_triggered:
                threading.Thread(
                    target=self.store_forward.trigger_retry, name="retry-trigger", daemon=True
                ).start()
                app_context.clear_retry_trigger_flag()

    def start_store_and_forward(
        self,
        app_stop: threading.Event,
        enabled_stop: threading.Event,
        service_key: str,
    ) -> threading.Thread:
        """Start the store-and-forward retry loop; returns its thread."""
        return self.store_forward.start_retry_loop(app_stop, enabled_stop, service_key)

    # Decoding helpers

    def _process_event_payload(self, envelope: MessageEnvelope) -> Event:
        _log.debug("Attempting to process Payload as an AddEventRequest DTO")
        doc = self._unmarshal_payload(envelope)
        try:
            event = _event_from_add_request(doc)
        except ContractError as request_err:
            _log.debug("Attempting to process Payload as an Event DTO")
            try:
                event = Event.from_dict(doc)
                event.validate()
            except ContractError:
                raise request_err from None
            _log.debug("Using Event DTO received")
            return event
        _log.debug("Using Event DTO from AddEventRequest DTO")
        return event

    def _decode_custom(self, envelope: MessageEnvelope, target_type: type) -> Any:
        doc = self._unmarshal_payload(envelope)
        from_dict = getattr(target_type, "from_dict", None)
        if callable(from_dict):
            return from_dict(doc)
        if isinstance(doc, target_type):
            return doc
        if dataclasses.is_dataclass(target_type):
            if not isinstance(doc, Mapping):
                raise TypeError(f"expected an object, got {type(doc).__name__}")
            names = {f.name for f in dataclasses.fields(target_type) if f.init}
            return target_type(**{key: value for key, value in doc.items() if key in names})
        return target_type(doc)

    @staticmethod
    def _unmarshal_payload(envelope: MessageEnvelope) -> Any:
        content_type = envelope.content_type.split(";")[0]
        payload = envelope.payload or b""
        if content_type == CONTENT_TYPE_JSON:
            try:
                return json.loads(payload)
            except ValueError as exc:
                raise ValueError(f"invalid JSON payload: {exc}") from exc
        if content_type == CONTENT_TYPE_CBOR:
            try:
                return cbor2.loads(payload)
            except Exception as exc:
                raise ValueError(f"invalid CBOR payload: {exc}") from exc
        raise ValueError(f"unsupported content-type '{envelope.content_type}' received")

    @staticmethod
    def _debug_log_event(event: Event) -> None:
        _log.debug(
            "Event Received with ProfileName=%s, DeviceName=%s and ReadingCount=%d",
            event.profile_name,
            event.device_name,
            len(event.readings),
        )
        if event.tags:
            _log.debug("Event tags are: [%s]", event.tags)
        else:
            _log.debug("Event has no tags")
        for number, reading in enumerate(event.readings, start=1):
            if reading.value_type.lower() == VALUE_TYPE_BINARY.lower():
                _log.debug(
                    "Reading #%d received with ResourceName=%s, ValueType=%s, MediaType=%s "
                    "and BinaryValue of size=`%d`",
                    number,
                    reading.resource_name,
                    reading.value_type,
                    reading.media_type,
                    len(reading.binary_value),
                )
            else:
                _log.debug(
                    "Reading #%d received with ResourceName=%s, ValueType=%s, Value=`%s`",
                    number,
                    reading.resource_name,
                    reading.value_type,
                    reading.value,
                )

    @staticmethod
    def _log_error(err: BaseException, correlation_id: str) -> None:
        _log.error("%s. %s=%s", err, CORRELATION_HEADER, correlation_id)