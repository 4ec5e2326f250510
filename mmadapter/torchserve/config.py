"""TorchServe adapter configuration read from the environment."""

from __future__ import annotations

from dataclasses import dataclass

from mmadapter.envutil import get_env_bool, get_env_float, get_env_int, get_env_string
from mmadapter.fsutil import secure_join

ADAPTER_PORT = "ADAPTER_PORT"
DEFAULT_ADAPTER_PORT = 8085
RUNTIME_PORT = "RUNTIME_PORT"
DEFAULT_RUNTIME_PORT = 7071
RUNTIME_DATA_ENDPOINT = "RUNTIME_DATA_ENDPOINT"
DEFAULT_RUNTIME_DATA_ENDPOINT = "port:7070"
TORCHSERVE_CONTAINER_MEM_REQ_BYTES = "CONTAINER_MEM_REQ_BYTES"
DEFAULT_TORCHSERVE_CONTAINER_MEM_REQ_BYTES = -1
TORCHSERVE_MEM_BUFFER_BYTES = "MEM_BUFFER_BYTES"
DEFAULT_TORCHSERVE_MEM_BUFFER_BYTES = 256 * 1024 * 1024
MAX_LOADING_CONCURRENCY = "LOADING_CONCURRENCY"
DEFAULT_MAX_LOADING_CONCURRENCY = 1
MAX_LOADING_TIMEOUT_MS = "LOADTIME_TIMEOUT"
DEFAULT_MAX_LOADING_TIMEOUT_MS = 30000
DEFAULT_MODEL_SIZE = "DEFAULT_MODELSIZE"
DEFAULT_MODEL_SIZE_IN_BYTES = 1000000
MODEL_SIZE_MULTIPLIER = "MODELSIZE_MULTIPLIER"
DEFAULT_MODEL_SIZE_MULTIPLIER = 2.75
RUNTIME_VERSION = "RUNTIME_VERSION"
DEFAULT_RUNTIME_VERSION = "v1"
LIMIT_PER_MODEL_CONCURRENCY = "LIMIT_PER_MODEL_CONCURRENCY"
DEFAULT_LIMIT_PER_MODEL_CONCURRENCY = 0  # 0 means no limit
ROOT_MODEL_DIR = "ROOT_MODEL_DIR"
DEFAULT_ROOT_MODEL_DIR = "/models"
TORCHSERVE_MODEL_STORE_DIR_NAME = "_torchserve_models"
USE_EMBEDDED_PULLER = "USE_EMBEDDED_PULLER"
DEFAULT_USE_EMBEDDED_PULLER = False

REQUEST_BATCH_SIZE = "REQUEST_BATCH_SIZE"
DEFAULT_REQUEST_BATCH_SIZE = 0
MAX_BATCH_DELAY_SECS = "MAX_BATCH_DELAY_SECS"
DEFAULT_MAX_BATCH_DELAY_SECS = 0

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


@dataclass
class AdapterConfiguration:
    port: int = DEFAULT_ADAPTER_PORT
    torchserve_management_port: int = DEFAULT_RUNTIME_PORT
    torchserve_inference_endpoint: str = DEFAULT_RUNTIME_DATA_ENDPOINT
    torchserve_container_mem_req_bytes: int = DEFAULT_TORCHSERVE_CONTAINER_MEM_REQ_BYTES
    torchserve_mem_buffer_bytes: int = DEFAULT_TORCHSERVE_MEM_BUFFER_BYTES
    capacity_in_bytes: int = 0
    max_loading_concurrency: int = DEFAULT_MAX_LOADING_CONCURRENCY
    model_loading_timeout_ms: int = DEFAULT_MAX_LOADING_TIMEOUT_MS
    default_model_size_in_bytes: int = DEFAULT_MODEL_SIZE_IN_BYTES
    model_size_multiplier: float = DEFAULT_MODEL_SIZE_MULTIPLIER
    runtime_version: str = DEFAULT_RUNTIME_VERSION
    limit_model_concurrency: int = DEFAULT_LIMIT_PER_MODEL_CONCURRENCY
    model_store_dir: str = ""
    use_embedded_puller: bool = DEFAULT_USE_EMBEDDED_PULLER
    request_batch_size: int = DEFAULT_REQUEST_BATCH_SIZE
    max_batch_delay_secs: int = DEFAULT_MAX_BATCH_DELAY_SECS


def _get_env_int32(name: str, default: int) -> int:
    value = get_env_int(name, default)
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(
            f"environment variable {name} must be a 32-bit integer, found {value}"
        )
    return value


def get_adapter_configuration_from_env() -> AdapterConfiguration:
    """Read the adapter configuration; raises ValueError on invalid settings."""
    mem_req = get_env_int(
        TORCHSERVE_CONTAINER_MEM_REQ_BYTES, DEFAULT_TORCHSERVE_CONTAINER_MEM_REQ_BYTES
    )
    mem_buffer = get_env_int(TORCHSERVE_MEM_BUFFER_BYTES, DEFAULT_TORCHSERVE_MEM_BUFFER_BYTES)
    config = AdapterConfiguration(
        port=get_env_int(ADAPTER_PORT, DEFAULT_ADAPTER_PORT),
        torchserve_management_port=get_env_int(RUNTIME_PORT, DEFAULT_RUNTIME_PORT),
        torchserve_inference_endpoint=get_env_string(
            RUNTIME_DATA_ENDPOINT, DEFAULT_RUNTIME_DATA_ENDPOINT
        ),
        torchserve_container_mem_req_bytes=mem_req,
        torchserve_mem_buffer_bytes=mem_buffer,
        capacity_in_bytes=mem_req - mem_buffer,
        max_loading_concurrency=get_env_int(MAX_LOADING_CONCURRENCY, DEFAULT_MAX_LOADING_CONCURRENCY),
        model_loading_timeout_ms=get_env_int(MAX_LOADING_TIMEOUT_MS, DEFAULT_MAX_LOADING_TIMEOUT_MS),
        default_model_size_in_bytes=get_env_int(DEFAULT_MODEL_SIZE, DEFAULT_MODEL_SIZE_IN_BYTES),
        model_size_multiplier=get_env_float(MODEL_SIZE_MULTIPLIER, DEFAULT_MODEL_SIZE_MULTIPLIER),
        runtime_version=get_env_string(RUNTIME_VERSION, DEFAULT_RUNTIME_VERSION),
        limit_model_concurrency=get_env_int(
            LIMIT_PER_MODEL_CONCURRENCY, DEFAULT_LIMIT_PER_MODEL_CONCURRENCY
        ),
        use_embedded_puller=get_env_bool(USE_EMBEDDED_PULLER, DEFAULT_USE_EMBEDDED_PULLER),
    )

    try:
        config.model_store_dir = secure_join(
            get_env_string(ROOT_MODEL_DIR, DEFAULT_ROOT_MODEL_DIR),
            TORCHSERVE_MODEL_STORE_DIR_NAME,
        )
    except OSError as exc:
        raise ValueError(f"Could not construct torchserve model store path: {exc}") from exc

    config.request_batch_size = _get_env_int32(REQUEST_BATCH_SIZE, DEFAULT_REQUEST_BATCH_SIZE)
    config.max_batch_delay_secs = _get_env_int32(MAX_BATCH_DELAY_SECS, DEFAULT_MAX_BATCH_DELAY_SECS)

    if config.torchserve_container_mem_req_bytes < 0:
        raise ValueError(
            f"{TORCHSERVE_CONTAINER_MEM_REQ_BYTES} environment variable must be set to a "
            f"positive integer, found value {config.torchserve_container_mem_req_bytes}"
        )
    if config.model_size_multiplier <= 0:
        raise ValueError(
            f"{MODEL_SIZE_MULTIPLIER} environment variable must be greater than 0, "
            f"found value {config.model_size_multiplier}"
        )
    return config