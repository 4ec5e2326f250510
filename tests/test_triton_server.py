import json
import os

import pytest

from mmadapter.rpc import AdapterError, LoadModelRequest, ServingStatus, StatusCode
from mmadapter.triton.config import (
    DEFAULT_MODEL_SIZE_IN_BYTES,
    DEFAULT_TRITON_MEM_BUFFER_BYTES,
    get_adapter_configuration_from_env,
)
from mmadapter.triton.pbtxt import parse_model_config
from mmadapter.triton.server import TritonAdapterServer

TEST_MULTIPLIER = 1.35
TEST_MEM_REQ = 6 * 1024 * 1024 * 1024


class FakeTriton:
    def __init__(self):
        self.ready = True
        self.index = []
        self.loaded = []
        self.unloaded = []
        self.version = "2.19.0"
        self.failures = {}

    def _check(self, method):
        if method in self.failures:
            raise self.failures[method]

    def server_ready(self):
        self._check("server_ready")
        return self.ready

    def repository_index(self, ready):
        self._check("repository_index")
        return list(self.index)

    def repository_model_load(self, model_name):
        self._check("repository_model_load")
        self.loaded.append(model_name)

    def repository_model_unload(self, model_name):
        self._check("repository_model_unload")
        self.unloaded.append(model_name)

    def server_metadata(self):
        self._check("server_metadata")
        return self.version


class FakePuller:
    def __init__(self, model_path):
        self.model_path = model_path
        self.cleaned = []
        self.cleared = []

    def process_load_model_request(self, request):
        request.model_path = self.model_path
        return request

    def cleanup_model(self, model_id):
        self.cleaned.append(model_id)

    def clear_local_model_storage(self, exclude):
        self.cleared.append(exclude)


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.setenv("CONTAINER_MEM_REQ_BYTES", str(TEST_MEM_REQ))
    monkeypatch.setenv("MODELSIZE_MULTIPLIER", f"{TEST_MULTIPLIER:f}")
    monkeypatch.setenv("ROOT_MODEL_DIR", str(tmp_path))
    monkeypatch.delenv("USE_EMBEDDED_PULLER", raising=False)
    monkeypatch.delenv("RUNTIME_VERSION", raising=False)
    return get_adapter_configuration_from_env()


@pytest.fixture
def tfmnist(tmp_path):
    model_dir = tmp_path / "tfmnist"
    saved = model_dir / "1" / "model.savedmodel"
    saved.mkdir(parents=True)
    (saved / "saved_model.pb").write_bytes(b"")
    (model_dir / "config.pbtxt").write_text(
        'name: "tfmnist"\nplatform: "tensorflow_savedmodel"\nmax_batch_size: 0\n'
    )
    return model_dir


def test_runtime_status_reports_capacity(config):
    server = TritonAdapterServer(config, FakeTriton())
    status = server.runtime_status()
    assert status.status is ServingStatus.READY
    assert status.capacity_in_bytes == TEST_MEM_REQ - DEFAULT_TRITON_MEM_BUFFER_BYTES
    assert status.default_model_size_in_bytes == DEFAULT_MODEL_SIZE_IN_BYTES
    assert status.limit_model_concurrency is False


def test_runtime_status_method_infos_and_version(config):
    client = FakeTriton()
    server = TritonAdapterServer(config, client)
    status = server.runtime_status()
    assert sorted(status.method_infos) == [
        "inference.GRPCInferenceService/ModelInfer",
        "inference.GRPCInferenceService/ModelMetadata",
    ]
    assert all(info.id_injection_path == [1] for info in status.method_infos.values())
    assert status.runtime_version == "2.19.0"
    assert config.runtime_version == "2.19.0"


def test_runtime_status_keeps_version_when_metadata_fails(config):
    client = FakeTriton()
    client.failures["server_metadata"] = AdapterError("down", StatusCode.UNAVAILABLE)
    status = TritonAdapterServer(config, client).runtime_status()
    assert status.status is ServingStatus.READY
    assert status.runtime_version == "v1"


def test_runtime_status_not_ready(config):
    client = FakeTriton()
    client.ready = False
    status = TritonAdapterServer(config, client).runtime_status()
    assert status.status is ServingStatus.STARTING
    assert status.capacity_in_bytes == 0


def test_runtime_status_ready_error(config):
    client = FakeTriton()
    client.failures["server_ready"] = AdapterError("down", StatusCode.UNAVAILABLE)
    assert TritonAdapterServer(config, client).runtime_status().status is ServingStatus.STARTING


def test_runtime_status_unloads_existing_models_and_clears_dir(config):
    client = FakeTriton()
    client.index = ["a", "b"]
    os.makedirs(os.path.join(config.root_model_dir, "stale", "1"))
    status = TritonAdapterServer(config, client).runtime_status()
    assert status.status is ServingStatus.READY
    assert client.unloaded == ["a", "b"]
    assert os.listdir(config.root_model_dir) == []


def test_runtime_status_unload_failure_is_starting(config):
    client = FakeTriton()
    client.index = ["a"]
    client.failures["repository_model_unload"] = AdapterError("x", StatusCode.INTERNAL)
    assert TritonAdapterServer(config, client).runtime_status().status is ServingStatus.STARTING


def test_runtime_status_clears_puller_storage(config, tmp_path):
    config.use_embedded_puller = True
    puller = FakePuller(str(tmp_path))
    TritonAdapterServer(config, FakeTriton(), puller).runtime_status()
    assert puller.cleared == ["_triton_models"]


def test_load_model_with_default_size(config, tfmnist):
    client = FakeTriton()
    server = TritonAdapterServer(config, client)
    resp = server.load_model(
        LoadModelRequest(
            model_id="tfmnist", model_type="TensorFlow", model_path=str(tfmnist), model_key="{}"
        )
    )
    assert resp.size_in_bytes == DEFAULT_MODEL_SIZE_IN_BYTES
    assert client.loaded == ["tfmnist"]

    target = os.path.join(config.root_model_dir, "tfmnist")
    assert os.path.exists(os.path.join(target, "1", "model.savedmodel"))
    config_file = os.path.join(target, "config.pbtxt")
    with open(config_file, "rb") as handle:
        parsed = parse_model_config(handle.read())
    assert parsed.name == ""
    assert parsed.platform == "tensorflow_savedmodel"


def test_load_model_with_disk_size_and_type_in_key(config, tfmnist):
    server = TritonAdapterServer(config, FakeTriton())
    key = (
        '{"storage_key": "myStorage", "bucket": "bucket1", "disk_size_bytes": 54321, '
        '"model_type": {"name": "tensorflow", "version": "1.5"}}'
    )
    resp = server.load_model(
        LoadModelRequest(
            model_id="tfmnist", model_path=str(tfmnist), model_type="invalid", model_key=key
        )
    )
    assert resp.size_in_bytes == 73333
    assert resp.max_concurrency == 0


def test_unload_model_removes_directory(config, tfmnist):
    client = FakeTriton()
    server = TritonAdapterServer(config, client)
    server.load_model(
        LoadModelRequest(model_id="tfmnist", model_type="tensorflow", model_path=str(tfmnist))
    )
    server.unload_model("tfmnist")
    assert client.unloaded == ["tfmnist"]
    assert not os.path.exists(os.path.join(config.root_model_dir, "tfmnist"))
    assert os.path.exists(tfmnist / "1" / "model.savedmodel" / "saved_model.pb")


def test_unload_model_not_found_is_ignored(config):
    client = FakeTriton()
    client.failures["repository_model_unload"] = AdapterError("gone", StatusCode.NOT_FOUND)
    leftover = os.path.join(config.root_model_dir, "missing", "1")
    os.makedirs(leftover)
    TritonAdapterServer(config, client).unload_model("missing")
    assert not os.path.exists(os.path.join(config.root_model_dir, "missing"))
    assert client.unloaded == []


def test_unload_model_error_propagates_code(config):
    client = FakeTriton()
    client.failures["repository_model_unload"] = AdapterError("boom", StatusCode.UNAVAILABLE)
    with pytest.raises(AdapterError) as info:
        TritonAdapterServer(config, client).unload_model("m")
    assert info.value.code is StatusCode.UNAVAILABLE
    assert str(info.value) == "Failed to unload model from Triton"


def test_unload_model_cleans_puller_cache(config, tmp_path):
    config.use_embedded_puller = True
    puller = FakePuller(str(tmp_path))
    TritonAdapterServer(config, FakeTriton(), puller).unload_model("m1")
    assert puller.cleaned == ["m1"]


def test_load_model_triton_error(config, tfmnist):
    client = FakeTriton()
    client.failures["repository_model_load"] = AdapterError("bad", StatusCode.INVALID_ARGUMENT)
    with pytest.raises(AdapterError) as info:
        TritonAdapterServer(config, client).load_model(
            LoadModelRequest(model_id="tfmnist", model_type="tensorflow", model_path=str(tfmnist))
        )
    assert info.value.code is StatusCode.INVALID_ARGUMENT
    assert "Triton runtime error" in str(info.value)


def test_load_model_missing_path_is_adapter_error(config, tmp_path):
    client = FakeTriton()
    with pytest.raises(AdapterError, match="adapter error"):
        TritonAdapterServer(config, client).load_model(
            LoadModelRequest(
                model_id="m", model_type="onnx", model_path=str(tmp_path / "nothing-here")
            )
        )
    assert client.loaded == []


def test_load_model_uses_puller_path(config, tmp_path):
    model_file = tmp_path / "source" / "model.x"
    model_file.parent.mkdir()
    model_file.write_bytes(b"")
    config.use_embedded_puller = True
    puller = FakePuller(str(model_file))
    server = TritonAdapterServer(config, FakeTriton(), puller)
    server.load_model(LoadModelRequest(model_id="m", model_type="onnx", model_path="remote"))
    link = os.path.join(config.root_model_dir, "m", "1", "model.onnx")
    assert os.path.islink(link)
    assert os.readlink(link) == str(model_file)


def test_load_model_with_schema_writes_config(config, tmp_path):
    source = tmp_path / "src"
    source.mkdir()
    (source / "my-model.onnx").write_bytes(b"")
    schema = source / "schema.json"
    schema.write_text(
        json.dumps(
            {
                "inputs": [{"name": "INPUT", "datatype": "FP32", "shape": [3, 32, 32]}],
                "outputs": [{"name": "OUTPUT", "datatype": "INT64", "shape": [1]}],
            }
        )
    )
    server = TritonAdapterServer(config, FakeTriton())
    server.load_model(
        LoadModelRequest(
            model_id="s",
            model_type="onnx",
            model_path=str(source / "my-model.onnx"),
            model_key=json.dumps({"schema_path": str(schema)}),
        )
    )
    with open(os.path.join(config.root_model_dir, "s", "config.pbtxt"), "rb") as handle:
        parsed = parse_model_config(handle.read())
    assert parsed.backend == "onnxruntime"
    assert [t.name for t in parsed.inputs] == ["INPUT"]
    assert parsed.inputs[0].dims == [3, 32, 32]
    assert parsed.outputs[0].dims == [1]


def test_embedded_puller_required(config):
    config.use_embedded_puller = True
    with pytest.raises(ValueError):
        TritonAdapterServer(config, FakeTriton())