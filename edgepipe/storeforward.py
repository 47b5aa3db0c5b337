"""Store-and-forward: keep failed exports and retry them later."""

from __future__ import annotations

import dataclasses
import logging
import re
import threading
import time
from typing import Any, Optional, Sequence

from edgepipe.config import (
    METRICS_MANAGER_NAME,
    Container,
    configuration_from,
    store_client_from,
)
from edgepipe.constants import CORRELATION_HEADER, STORE_FORWARD_QUEUE_SIZE_NAME
from edgepipe.context import AppFunctionContext
from edgepipe.pipeline import Counter, FunctionPipeline, MessageError
from edgepipe.storedobject import StoredObject

_log = logging.getLogger(__name__)

DEFAULT_MIN_RETRY_INTERVAL = 1.0

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"([0-9]*\.?[0-9]*)(ns|us|µs|μs|ms|s|m|h)")
_POLL_SECONDS = 0.05


def parse_duration(text: str) -> float:
    """Parse a duration such as ``"1m30s"`` or ``"500ms"`` into seconds.

    Raises ValueError if the text is not a valid duration.
    """
    s = text
    sign = 1.0
    if s and s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ValueError(f"invalid duration {text!r}")

    total = 0.0
    pos = 0
    while pos < len(s):
        match = _DURATION_PART.match(s, pos)
        if match is None or match.group(1) in ("", "."):
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def _wait_for_any(events: Sequence[threading.Event], timeout: float) -> bool:
    """Wait up to ``timeout`` seconds; True as soon as any event is set."""
    deadline = time.monotonic() + timeout
    while True:
        if any(event.is_set() for event in events):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        events[0].wait(min(remaining, _POLL_SECONDS))


class StoreForward:
    """Stores data whose export failed and periodically retries it.

    ``runtime`` provides ``service_key``, ``get_pipeline_by_id`` and
    ``execute_pipeline``; the latter raises MessageError on failure.
    """

    def __init__(self, runtime: Any, container: Container, service_key: str = "") -> None:
        self._runtime = runtime
        self._container = container
        self.service_key = service_key
        self.data_count = Counter()
        self._retry_lock = threading.Lock()

        metrics_manager = container.get(METRICS_MANAGER_NAME)
        if metrics_manager is None:
            _log.error(
                "Unable to register %s metric: MetricsManager is not available.",
                STORE_FORWARD_QUEUE_SIZE_NAME,
            )
            return
        try:
            metrics_manager.register(STORE_FORWARD_QUEUE_SIZE_NAME, self.data_count, None)
        except Exception as exc:
            _log.error(
                "Unable to register metric %s. Collection will continue, "
                "but metric will not be reported: %s",
                STORE_FORWARD_QUEUE_SIZE_NAME,
                exc,
            )
            return
        _log.info(
            "%s metric has been registered and will be reported (if enabled)",
            STORE_FORWARD_QUEUE_SIZE_NAME,
        )

    def start_retry_loop(
        self,
        app_stop: threading.Event,
        enabled_stop: threading.Event,
        service_key: str,
    ) -> threading.Thread:
        """Start retrying stored data periodically until either event is set.

        Returns the background thread running the loop.
        """
        config = configuration_from(self._container)
        store_client = store_client_from(self._container)
        self.service_key = service_key

        items: list[StoredObject] = []
        try:
            items = list(store_client.retrieve_from_store(service_key) or [])
        except Exception as exc:
            _log.error(
                "Unable to initialize Store and Forward data count: "
                "Failed to load items from DB: %s",
                exc,
            )
        else:
            self.data_count.clear()
            self.data_count.inc(len(items))

        def loop() -> None:
            settings = config.writable.store_and_forward
            try:
                retry_interval = parse_duration(settings.retry_interval)
            except ValueError:
                _log.warning(
                    "StoreAndForward RetryInterval failed to parse, defaulting to %ss",
                    DEFAULT_MIN_RETRY_INTERVAL,
                )
                retry_interval = DEFAULT_MIN_RETRY_INTERVAL
            else:
                if retry_interval < DEFAULT_MIN_RETRY_INTERVAL:
                    _log.warning(
                        "StoreAndForward RetryInterval value %ss is less than the allowed "
                        "minimum value, defaulting to %ss",
                        retry_interval,
                        DEFAULT_MIN_RETRY_INTERVAL,
                    )
                    retry_interval = DEFAULT_MIN_RETRY_INTERVAL

            if settings.max_retry_count < 0:
                _log.warning("StoreAndForward MaxRetryCount can not be less than 0, defaulting to 1")
                settings.max_retry_count = 1

            _log.info(
                "Starting StoreAndForward Retry Loop with %ss RetryInterval and %d max retries. "
                "%d stored items waiting for retry.",
                retry_interval,
                settings.max_retry_count,
                len(items),
            )

            while not _wait_for_any((app_stop, enabled_stop), retry_interval):
                self.retry_stored_data(service_key)

            _log.info("Exiting StoreAndForward Retry Loop")

        thread = threading.Thread(target=loop, name="store-and-forward", daemon=True)
        thread.start()
        return thread

    def store_for_later_retry(
        self,
        payload: bytes,
        app_context: AppFunctionContext,
        pipeline: FunctionPipeline,
        pipeline_position: int,
    ) -> None:
        """Keep the payload so the pipeline can resume at ``pipeline_position`` later."""
        item = StoredObject(
            app_service_key=self._runtime.service_key,
            payload=payload,
            pipeline_id=pipeline.id,
            pipeline_position=pipeline_position,
            version=pipeline.hash,
            context_data=app_context.get_all_values(),
        )
        item.correlation_id = app_context.correlation_id

        _log.debug(
            "Storing data for later retry for pipeline '%s' (%s=%s)",
            pipeline.id,
            CORRELATION_HEADER,
            app_context.correlation_id,
        )

        config = configuration_from(self._container)
        if not config.writable.store_and_forward.enabled:
            _log.error(
                "Failed to store item for later retry for pipeline '%s': "
                "StoreAndForward not enabled",
                pipeline.id,
            )
            return

        store_client = store_client_from(self._container)
        try:
            store_client.store(item)
        except Exception as exc:
            _log.error(
                "Failed to store item for later retry for pipeline '%s': %s", pipeline.id, exc
            )

        self.data_count.inc(1)

    def retry_stored_data(self, service_key: str) -> None:
        """Retry every stored item of the service; skipped if a retry is already running."""
        if not self._retry_lock.acquire(blocking=False):
            return
        try:
            store_client = store_client_from(self._container)
            if store_client is None:
                _log.error("Unable to load store and forward items: no store client available")
                return
            try:
                items = list(store_client.retrieve_from_store(service_key) or [])
            except Exception as exc:
                _log.error("Unable to load store and forward items from DB: %s", exc)
                return

            _log.debug("%d stored data items found for retrying", len(items))
            if not items:
                return

            to_remove, to_update = self.process_retry_items(items)
            _log.debug(" %d stored data items will be removed post retry", len(to_remove))
            _log.debug(" %d stored data items will be updated post retry", len(to_update))

            for item in to_remove:
                try:
                    store_client.remove_from_store(item)
                except Exception as exc:
                    _log.error(
                        "Unable to remove stored data item for pipeline '%s' from DB, "
                        "objectID=%s: %s",
                        item.pipeline_id,
                        item.id,
                        exc,
                    )

            for item in to_update:
                try:
                    store_client.update(item)
                except Exception as exc:
                    _log.error(
                        "Unable to update stored data item for pipeline '%s' from DB, "
                        "objectID=%s: %s",
                        item.pipeline_id,
                        item.id,
                        exc,
                    )

            self.data_count.dec(len(to_remove))
        finally:
            self._retry_lock.release()

    def process_retry_items(
        self, items: Sequence[StoredObject]
    ) -> tuple[list[StoredObject], list[StoredObject]]:
        """Retry the items and split them into those to remove and those to update.

        An item is removed when its retry succeeds, its retries are used up, or
        its pipeline is gone or has changed.
        """
        config = configuration_from(self._container)
        max_retries = config.writable.store_and_forward.max_retry_count

        to_remove: list[StoredObject] = []
        to_update: list[StoredObject] = []

        for original in items:
            item = dataclasses.replace(original)
            pipeline = self._runtime.get_pipeline_by_id(item.pipeline_id)

            if pipeline is None:
                _log.error(
                    "Stored data item's pipeline '%s' no longer exists. Removing item from DB",
                    item.pipeline_id,
                )
                to_remove.append(item)
                continue

            if item.version != pipeline.hash:
                _log.error(
                    "Stored data item's pipeline Version doesn't match '%s' pipeline's Version. "
                    "Removing item from DB",
                    item.pipeline_id,
                )
                to_remove.append(item)
                continue

            if self._retry_export_function(item, pipeline):
                _log.debug(
                    "Retry successful for pipeline '%s'. Removing item from DB (%s=%s)",
                    item.pipeline_id,
                    CORRELATION_HEADER,
                    item.correlation_id,
                )
                to_remove.append(item)
                continue

            item.retry_count += 1
            if max_retries == 0 or item.retry_count < max_retries:
                _log.debug(
                    "Export retry failed for pipeline '%s'. retries=%d, "
                    "Incrementing retry count (%s=%s)",
                    item.pipeline_id,
                    item.retry_count,
                    CORRELATION_HEADER,
                    item.correlation_id,
                )
                to_update.append(item)
                continue

            _log.debug(
                "Max retries exceeded for pipeline '%s'. retries=%d, Removing item from DB (%s=%s)",
                item.pipeline_id,
                item.retry_count,
                CORRELATION_HEADER,
                item.correlation_id,
            )
            to_remove.append(item)

        return to_remove, to_update

    def _retry_export_function(self, item: StoredObject, pipeline: FunctionPipeline) -> bool:
        app_context = AppFunctionContext(item.correlation_id, self._container, "")
        for key, value in (item.context_data or {}).items():
            app_context.add_value(key.lower(), value)

        _log.debug(
            "Retrying stored data for pipeline '%s' (%s=%s)",
            item.pipeline_id,
            CORRELATION_HEADER,
            app_context.correlation_id,
        )
        try:
            self._runtime.execute_pipeline(
                item.payload, app_context, pipeline, item.pipeline_position, True
            )
        except MessageError:
            return False
        return True

    def trigger_retry(self) -> None:
        """Retry stored data now, if there is any and store-and-forward is enabled."""
        if self.data_count.count <= 0:
            return
        config = configuration_from(self._container)
        if not config.writable.store_and_forward.enabled:
            _log.debug("Store and Forward not enabled, skipping triggering retry of failed data")
            return
        _log.debug("Triggering Store and Forward retry of failed data")
        self.retry_stored_data(self.service_key)