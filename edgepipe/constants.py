"""Names and fixed values shared across the service."""

from __future__ import annotations

# Overwritten by the build; both report the development version otherwise.
SDK_VERSION = "0.0.0"
APPLICATION_VERSION = "0.0.0"

API_BASE = "/api/v3"
API_TRIGGER_ROUTE = API_BASE + "/trigger"
MESSAGE_BUS_SUBSCRIBE_TOPICS = "SubscribeTopics"

# Application service metric names
MESSAGES_RECEIVED_NAME = "MessagesReceived"
INVALID_MESSAGES_RECEIVED_NAME = "InvalidMessagesReceived"
PIPELINE_ID_TXT = "{PipelineId}"
PIPELINE_MESSAGES_PROCESSED_NAME = "PipelineMessagesProcessed-" + PIPELINE_ID_TXT
PIPELINE_MESSAGE_PROCESSING_TIME_NAME = "PipelineMessageProcessingTime-" + PIPELINE_ID_TXT
PIPELINE_PROCESSING_ERRORS_NAME = "PipelineProcessingErrors-" + PIPELINE_ID_TXT
HTTP_EXPORT_SIZE_NAME = "HttpExportSize"
HTTP_EXPORT_ERRORS_NAME = "HttpExportErrors"
MQTT_EXPORT_SIZE_NAME = "MqttExportSize"
MQTT_EXPORT_ERRORS_NAME = "MqttExportErrors"
STORE_FORWARD_QUEUE_SIZE_NAME = "StoreForwardQueueSize"

# Default size of a metrics sample reservoir
METRICS_RESERVOIR_SIZE = 1028

# Database providers
REDIS_DB = "redisdb"
ERR_UNSUPPORTED_DATABASE = "unsupported database type"

# Keys under which pipeline metadata is kept in a function context
DEFAULT_PIPELINE_ID = "default-pipeline"
PIPELINEID = "pipelineid"
DEVICENAME = "devicename"
PROFILENAME = "profilename"
SOURCENAME = "sourcename"
RECEIVEDTOPIC = "receivedtopic"

# Message metadata
CORRELATION_HEADER = "X-Correlation-ID"
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_CBOR = "application/cbor"
CONTENT_TYPE_XML = "application/xml"
CONTENT_TYPE_TEXT = "text/plain"
CORE_METADATA_SERVICE_KEY = "core-metadata"


def pipeline_metric_name(metric_name: str, pipeline_id: str) -> str:
    """Return the metric name with its pipeline placeholder replaced by the pipeline id."""
    return metric_name.replace(PIPELINE_ID_TXT, pipeline_id, 1)