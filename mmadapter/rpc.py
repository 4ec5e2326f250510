"""Messages and errors of the model runtime service."""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

MODEL_TYPE_JSON_KEY = "model_type"
DISK_SIZE_JSON_KEY = "disk_size_bytes"


class StatusCode(enum.IntEnum):
    """gRPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class AdapterError(Exception):
    """An error reported to the caller together with a status code."""

    def __init__(self, message: str, code: StatusCode = StatusCode.UNKNOWN):
        super().__init__(message)
        self.code = code


class ServingStatus(enum.IntEnum):
    """Readiness of the model runtime."""

    STARTING = 0
    READY = 1
    FAILING = 2


@dataclass
class MethodInfo:
    """Where the model id is injected into requests of one RPC method."""

    id_injection_path: list[int] = field(default_factory=list)


@dataclass
class RuntimeStatusResponse:
    status: ServingStatus = ServingStatus.STARTING
    capacity_in_bytes: int = 0
    max_loading_concurrency: int = 0
    model_loading_timeout_ms: int = 0
    default_model_size_in_bytes: int = 0
    runtime_version: str = ""
    limit_model_concurrency: bool = False
    method_infos: dict[str, MethodInfo] = field(default_factory=dict)


@dataclass
class LoadModelRequest:
    model_id: str = ""
    model_path: str = ""
    model_type: str = ""
    model_key: str = ""


@dataclass
class LoadModelResponse:
    size_in_bytes: int = 0
    max_concurrency: int = 0


@dataclass
class ModelSizeResponse:
    size_in_bytes: int = 0


def get_model_type(request: LoadModelRequest) -> str:
    """Return the model type from the request's model key, else its model_type."""
    fallback = request.model_type
    try:
        model_key = json.loads(request.model_key)
    except (json.JSONDecodeError, TypeError) as exc:
        log.info(
            "Model type falls back to model_type as model_key is not valid JSON "
            "(model_type=%r, model_key=%r, error=%s)",
            fallback, request.model_key, exc,
        )
        return fallback
    if not isinstance(model_key, dict):
        log.info("Model type falls back to model_type as model_key is not a JSON object")
        return fallback

    value = model_key.get(MODEL_TYPE_JSON_KEY)
    if value is None:
        log.info(
            "Model type falls back to model_type as model_key has no %r attribute (model_type=%r)",
            MODEL_TYPE_JSON_KEY, fallback,
        )
        return fallback
    if isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str):
            return name
        log.info(
            "Model type falls back to model_type as the %r name is not a string (value=%r)",
            MODEL_TYPE_JSON_KEY, value,
        )
        return fallback
    if isinstance(value, str):
        return value
    log.info(
        "Model type falls back to model_type as %r is neither a string nor an object (value=%r)",
        MODEL_TYPE_JSON_KEY, value,
    )
    return fallback


def calc_mem_capacity(model_key: str, default_size: int, multiplier: float) -> int:
    """Estimate a model's memory size from the disk size in its model key.

    Without a usable disk size, ``default_size`` is returned unchanged.
    """
    try:
        key = json.loads(model_key) if model_key else None
    except json.JSONDecodeError as exc:
        log.info("Using default model size as model_key is not valid JSON: %s", exc)
        return default_size
    disk_size = key.get(DISK_SIZE_JSON_KEY) if isinstance(key, dict) else None
    if isinstance(disk_size, bool) or not isinstance(disk_size, (int, float)) or disk_size <= 0:
        log.info("Using default model size of %d bytes", default_size)
        return default_size
    return int(disk_size * multiplier)