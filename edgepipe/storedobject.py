"""Data kept in the store for later export retries, and its JSON form."""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from dataclasses import dataclass
from typing import Any, Optional


class ContractError(ValueError):
    """Raised when a stored object does not meet the store's contract."""


@dataclass
class StoredObject:
    """One item of data awaiting an export retry."""

    app_service_key: str = ""
    payload: bytes = b""
    pipeline_id: str = ""
    pipeline_position: int = 0
    version: str = ""
    context_data: Optional[dict[str, str]] = None
    id: str = ""
    retry_count: int = 0
    correlation_id: str = ""

    def validate_contract(self, id_required: bool) -> None:
        """Check the fields the store relies on.

        When an id is not required and none is set, a new one is assigned.
        Raises ContractError on any violation.
        """
        if self.id:
            try:
                uuid.UUID(self.id)
            except ValueError:
                raise ContractError("invalid contract, ID must be a UUID") from None
        elif id_required:
            raise ContractError("invalid contract, ID cannot be empty")
        else:
            self.id = str(uuid.uuid4())

        if not self.app_service_key:
            raise ContractError("invalid contract, app service key cannot be empty")
        if not self.payload:
            raise ContractError("invalid contract, payload cannot be empty")
        if not self.version:
            raise ContractError("invalid contract, version cannot be empty")

    def to_json(self) -> bytes:
        """Encode as compact JSON, leaving out empty fields."""
        doc: dict[str, Any] = {}
        if self.id:
            doc["id"] = self.id
        if self.app_service_key:
            doc["appServiceKey"] = self.app_service_key
        if self.payload:
            doc["payload"] = base64.b64encode(bytes(self.payload)).decode("ascii")
        if self.retry_count:
            doc["retryCount"] = self.retry_count
        if self.pipeline_id:
            doc["pipelineId"] = self.pipeline_id
        if self.pipeline_position:
            doc["pipelinePosition"] = self.pipeline_position
        if self.version:
            doc["version"] = self.version
        if self.correlation_id:
            doc["correlationID"] = self.correlation_id
        if self.context_data:
            doc["contextData"] = dict(self.context_data)
        return json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "StoredObject":
        """Decode from JSON; unknown keys are ignored, missing ones left empty."""
        doc = json.loads(data)
        if not isinstance(doc, dict):
            raise ValueError("stored object JSON must be an object")
        return cls(
            id=_string_field(doc, "id"),
            app_service_key=_string_field(doc, "appServiceKey"),
            payload=_bytes_field(doc, "payload"),
            retry_count=_int_field(doc, "retryCount"),
            pipeline_id=_string_field(doc, "pipelineId"),
            pipeline_position=_int_field(doc, "pipelinePosition"),
            version=_string_field(doc, "version"),
            correlation_id=_string_field(doc, "correlationID"),
            context_data=_map_field(doc, "contextData"),
        )


def _string_field(doc: dict[str, Any], key: str) -> str:
    value = doc.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' must be a string")
    return value


def _int_field(doc: dict[str, Any], key: str) -> int:
    value = doc.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field '{key}' must be an integer")
    return value


def _bytes_field(doc: dict[str, Any], key: str) -> bytes:
    value = doc.get(key)
    if value is None:
        return b""
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"field '{key}' is not valid base64: {exc}") from None
    if isinstance(value, list):
        if not all(
            isinstance(item, int) and not isinstance(item, bool) and 0 <= item <= 255
            for item in value
        ):
            raise ValueError(f"field '{key}' must hold byte values")
        return bytes(value)
    raise ValueError(f"field '{key}' must be base64 text or a list of bytes")


def _map_field(doc: dict[str, Any], key: str) -> Optional[dict[str, str]]:
    value = doc.get(key)
    if value is None:
        return None
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise ValueError(f"field '{key}' must map strings to strings")
    return dict(value)