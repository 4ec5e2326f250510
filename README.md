# mmadapter

A model runtime adapter that sits between a model mesh and a Triton
inference server. It takes model files that are already on local disk,
arranges them into a Triton model repository, asks Triton to load or unload
them, and reports Triton's readiness and capacity back to the mesh. It also
reads the environment configuration of a TorchServe adapter.

The package has no third-party dependencies.

## Modules

| Module                        | What it holds |
|-------------------------------|---------------|
| `mmadapter.envutil`           | `get_env_int`, `get_env_float`, `get_env_bool`, `get_env_string` |
| `mmadapter.fsutil`            | `secure_join`, `remove_path`, `clear_directory_contents` |
| `mmadapter.rpc`               | request/response dataclasses, `StatusCode`, `AdapterError`, `get_model_type`, `calc_mem_capacity` |
| `mmadapter.triton.schema`     | `DataType`, `ModelSchema`, `ModelConfig`, schema loading and conversion |
| `mmadapter.triton.pbtxt`      | reading and writing `config.pbtxt`, Keras conversion |
| `mmadapter.triton.layout`     | `adapt_model_layout_for_runtime`, `process_model_config` |
| `mmadapter.triton.config`     | Triton `AdapterConfiguration` from the environment |
| `mmadapter.triton.server`     | `TritonAdapterServer` |
| `mmadapter.torchserve.config` | TorchServe `AdapterConfiguration` from the environment |

## Configuration

Each adapter reads its settings from the environment. An unset or empty
variable takes its default; a value that does not parse raises `ValueError`.

```python
from mmadapter.triton.config import get_adapter_configuration_from_env

config = get_adapter_configuration_from_env()
print(config.root_model_dir)      # e.g. /models/_triton_models
```

| Variable                      | Triton default | TorchServe default |
|-------------------------------|----------------|--------------------|
| `ADAPTER_PORT`                | 8085           | 8085               |
| `RUNTIME_PORT`                | 8001           | 7071               |
| `RUNTIME_DATA_ENDPOINT`       | –              | `port:7070`        |
| `CONTAINER_MEM_REQ_BYTES`     | required       | required           |
| `MEM_BUFFER_BYTES`            | 256 MiB        | 256 MiB            |
| `LOADING_CONCURRENCY`         | 1              | 1                  |
| `LOADTIME_TIMEOUT`            | 30000          | 30000              |
| `DEFAULT_MODELSIZE`           | 1000000        | 1000000            |
| `MODELSIZE_MULTIPLIER`        | 1.25           | 2.75               |
| `RUNTIME_VERSION`             | `v1`           | `v1`               |
| `LIMIT_PER_MODEL_CONCURRENCY` | 0 (no limit)   | 0 (no limit)       |
| `ROOT_MODEL_DIR`              | `/models`      | `/models`          |
| `USE_EMBEDDED_PULLER`         | false          | false              |
| `REQUEST_BATCH_SIZE`          | –              | 0 (32-bit int)     |
| `MAX_BATCH_DELAY_SECS`        | –              | 0 (32-bit int)     |

`CONTAINER_MEM_REQ_BYTES` must be set to a non-negative integer and
`MODELSIZE_MULTIPLIER` must be greater than zero; otherwise
`get_adapter_configuration_from_env` raises `ValueError`. The capacity
reported to the mesh is `CONTAINER_MEM_REQ_BYTES - MEM_BUFFER_BYTES`.
The Triton model directory is `ROOT_MODEL_DIR/_triton_models`; the
TorchServe model store directory is `ROOT_MODEL_DIR/_torchserve_models`.

Booleans accept `1`, `t`, `T`, `TRUE`, `true`, `True` and their `0`/`f`/`false`
counterparts.

## Triton model layout

`adapt_model_layout_for_runtime` turns a model on disk into a Triton
repository entry, using symlinks back to the original files. Failures are
raised as `mmadapter.rpc.AdapterError`.

```python
from mmadapter.triton.layout import adapt_model_layout_for_runtime

adapt_model_layout_for_runtime(
    "/models/_triton_models",      # root of the Triton repository
    "mnist",                       # model id
    "tensorflow:1.5",              # model type; case and anything after ':' are ignored
    "/models/mnist",               # path the model was pulled to
    "/models/mnist/_schema.json",  # schema file, or "" for none
)
```

The rules it follows:

- A single file is linked as `1/<name>`, where the name is chosen by model
  type (`model.graphdef` for tensorflow, `model.plan` for tensorrt,
  `model.onnx` for onnx, `model.pt` for pytorch) or kept as is for other
  types.
- A directory is linked as `1/model.savedmodel` (tensorflow, keras),
  `1/model.onnx` (onnx), or as `1` itself for other types.
- A directory whose subdirectories are all numbers is treated as a set of
  versions; the highest one is used as the version.
- A file named `_schema.json` is left out when looking at a directory. If
  what remains is one entry and the model type is known, that entry is used.
- A directory that holds `config.pbtxt` is taken to be a native Triton
  repository: every other entry is linked, and the config is rewritten by
  `process_model_config` without its `name` field.
- With a schema, the model's inputs and outputs are written into
  `config.pbtxt` together with the backend for the model type. If a native
  config has `max_batch_size > 0`, every schema input and output must start
  with a `-1` batch dimension, which is then removed; otherwise a
  `ValueError` is raised.
- A Keras `.h5` file is first converted to a TensorFlow SavedModel by
  running `python /opt/scripts/tf_pb.py <file> <target>`. At most
  `MAX_CONC_KERAS_CONV_PROCS` conversions (default 2) run at once.

Schemas can also be converted on their own:

```python
from mmadapter.triton.schema import convert_schema_to_config_from_file
from mmadapter.triton.pbtxt import format_model_config, parse_model_config

config = convert_schema_to_config_from_file("/models/mnist/_schema.json")
text = format_model_config(config)
assert parse_model_config(text) == config
```

A schema is a JSON object with optional `inputs` and `outputs` lists, each
entry holding `name`, `datatype` (`BOOL`, `UINT8` … `FP64`, `BYTES`) and
`shape`.

## Triton server

`TritonAdapterServer` carries out the runtime operations the mesh calls:

```python
from mmadapter.rpc import LoadModelRequest
from mmadapter.triton.server import TritonAdapterServer

server = TritonAdapterServer(config, client)
response = server.load_model(LoadModelRequest(
    model_id="mnist",
    model_path="/models/mnist",
    model_type="tensorflow",
    model_key='{"disk_size_bytes": 54321}',
))
server.unload_model("mnist")
status = server.runtime_status()
```

- `load_model` takes the model type from the model key's `model_type`
  (a string or an object with a `name`), falling back to the request's
  `model_type`; reads an optional `schema_path` from the model key; lays out
  the model and asks Triton to load it. The reported size is
  `disk_size_bytes × MODELSIZE_MULTIPLIER`, or `DEFAULT_MODELSIZE` when the
  key has no disk size.
- `unload_model` unloads the model from Triton (a `NOT_FOUND` error is
  ignored) and deletes its repository entry.
- `runtime_status` returns `STARTING` until Triton is ready; it then unloads
  any models Triton already has, empties the model directory, takes the
  runtime version from Triton's metadata when given, and returns `READY`
  with the configured capacity and the method infos for `ModelInfer` and
  `ModelMetadata`.

`client` is any object with the methods of the `TritonClient` protocol
(`server_ready`, `repository_index`, `repository_model_load`,
`repository_model_unload`, `server_metadata`). With
`USE_EMBEDDED_PULLER` set, a `Puller` object must be passed as well; it is
used to fetch model files before loading and to clean them up afterwards.

## What the package does not do

- It has no network transport and no command to start a server. Nothing
  here listens on `ADAPTER_PORT` or connects to Triton on `RUNTIME_PORT`;
  the caller supplies the `TritonClient` and exposes `TritonAdapterServer`
  over whatever transport it uses.
- It has no puller of its own: fetching models from storage is up to the
  `Puller` object passed in.
- For TorchServe it only reads the adapter configuration
  (`mmadapter.torchserve.config`). It does not write a TorchServe model
  store or config file, link model archives, register or size models, or
  report TorchServe's runtime status.