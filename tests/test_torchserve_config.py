import os

import pytest

from mmadapter.torchserve.config import (
    ADAPTER_PORT,
    DEFAULT_MODEL_SIZE,
    DEFAULT_TORCHSERVE_MEM_BUFFER_BYTES,
    LIMIT_PER_MODEL_CONCURRENCY,
    MAX_LOADING_CONCURRENCY,
    MAX_BATCH_DELAY_SECS,
    MAX_LOADING_TIMEOUT_MS,
    TORCHSERVE_MEM_BUFFER_BYTES,
    MODEL_SIZE_MULTIPLIER,
    REQUEST_BATCH_SIZE,
    ROOT_MODEL_DIR,
    RUNTIME_DATA_ENDPOINT,
    RUNTIME_PORT,
    RUNTIME_VERSION,
    TORCHSERVE_CONTAINER_MEM_REQ_BYTES,
    TORCHSERVE_MODEL_STORE_DIR_NAME,
    USE_EMBEDDED_PULLER,
    get_adapter_configuration_from_env,
)

SIX_GB = 6 * 1024 * 1024 * 1024

ALL_VARS = [
    ADAPTER_PORT,
    RUNTIME_PORT,
    RUNTIME_DATA_ENDPOINT,
    TORCHSERVE_CONTAINER_MEM_REQ_BYTES,
    TORCHSERVE_MEM_BUFFER_BYTES,
    MAX_LOADING_CONCURRENCY,
    MAX_LOADING_TIMEOUT_MS,
    DEFAULT_MODEL_SIZE,
    MODEL_SIZE_MULTIPLIER,
    RUNTIME_VERSION,
    LIMIT_PER_MODEL_CONCURRENCY,
    ROOT_MODEL_DIR,
    USE_EMBEDDED_PULLER,
    REQUEST_BATCH_SIZE,
    MAX_BATCH_DELAY_SECS,
]


@pytest.fixture
def env(monkeypatch, tmp_path):
    for name in ALL_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv(TORCHSERVE_CONTAINER_MEM_REQ_BYTES, str(SIX_GB))
    monkeypatch.setenv(ROOT_MODEL_DIR, str(tmp_path))
    return monkeypatch


def test_capacity_is_memory_request_minus_buffer(env):
    config = get_adapter_configuration_from_env()
    assert config.capacity_in_bytes == SIX_GB - DEFAULT_TORCHSERVE_MEM_BUFFER_BYTES


def test_defaults(env):
    config = get_adapter_configuration_from_env()
    assert config.port == 8085
    assert config.torchserve_management_port == 7071
    assert config.torchserve_inference_endpoint == "port:7070"
    assert config.model_size_multiplier == 2.75
    assert config.runtime_version == "v1"
    assert config.default_model_size_in_bytes == 1000000
    assert config.model_loading_timeout_ms == 30000
    assert config.max_loading_concurrency == 1
    assert config.limit_model_concurrency == 0
    assert config.use_embedded_puller is False
    assert config.request_batch_size == 0
    assert config.max_batch_delay_secs == 0


def test_model_store_dir_under_root(env, tmp_path):
    config = get_adapter_configuration_from_env()
    assert config.model_store_dir == os.path.join(str(tmp_path), TORCHSERVE_MODEL_STORE_DIR_NAME)


def test_default_root_model_dir(env):
    env.delenv(ROOT_MODEL_DIR)
    config = get_adapter_configuration_from_env()
    assert config.model_store_dir == "/models/_torchserve_models"


def test_values_from_environment(env):
    env.setenv(ADAPTER_PORT, "9000")
    env.setenv(MODEL_SIZE_MULTIPLIER, "1.5")
    env.setenv(REQUEST_BATCH_SIZE, "8")
    env.setenv(MAX_BATCH_DELAY_SECS, "3")
    env.setenv(USE_EMBEDDED_PULLER, "true")
    env.setenv(RUNTIME_DATA_ENDPOINT, "unix:/tmp/sock")
    config = get_adapter_configuration_from_env()
    assert config.port == 9000
    assert config.model_size_multiplier == 1.5
    assert config.request_batch_size == 8
    assert config.max_batch_delay_secs == 3
    assert config.use_embedded_puller is True
    assert config.torchserve_inference_endpoint == "unix:/tmp/sock"


def test_missing_memory_request_is_an_error(env):
    env.delenv(TORCHSERVE_CONTAINER_MEM_REQ_BYTES)
    with pytest.raises(ValueError, match=TORCHSERVE_CONTAINER_MEM_REQ_BYTES):
        get_adapter_configuration_from_env()


@pytest.mark.parametrize("value", ["0", "-1"])
def test_non_positive_multiplier_is_an_error(env, value):
    env.setenv(MODEL_SIZE_MULTIPLIER, value)
    with pytest.raises(ValueError, match=MODEL_SIZE_MULTIPLIER):
        get_adapter_configuration_from_env()


def test_batch_size_must_fit_int32(env):
    env.setenv(REQUEST_BATCH_SIZE, str(2**31))
    with pytest.raises(ValueError, match=REQUEST_BATCH_SIZE):
        get_adapter_configuration_from_env()


def test_non_integer_port_is_an_error(env):
    env.setenv(ADAPTER_PORT, "abc")
    with pytest.raises(ValueError):
        get_adapter_configuration_from_env()