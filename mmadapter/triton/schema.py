"""Model schemas and their conversion to Triton model configurations."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any

TRITON_SERVICE_NAME = "inference.GRPCInferenceService"
MODEL_TYPE_JSON_KEY = "model_type"
TRITON_MODEL_SUBDIR = "_triton_models"
TRITON_REPOSITORY_CONFIG_FILENAME = "config.pbtxt"
TENSORFLOW_SAVED_MODEL_DIR_NAME = "model.savedmodel"
MODEL_SCHEMA_FILE = "_schema.json"


class DataType(enum.IntEnum):
    """Triton tensor data types."""

    TYPE_INVALID = 0
    TYPE_BOOL = 1
    TYPE_UINT8 = 2
    TYPE_UINT16 = 3
    TYPE_UINT32 = 4
    TYPE_UINT64 = 5
    TYPE_INT8 = 6
    TYPE_INT16 = 7
    TYPE_INT32 = 8
    TYPE_INT64 = 9
    TYPE_FP16 = 10
    TYPE_FP32 = 11
    TYPE_FP64 = 12
    TYPE_STRING = 13
    TYPE_BF16 = 14


TENSOR_TYPE: dict[str, DataType] = {
    "INVALID": DataType.TYPE_INVALID,
    "BOOL": DataType.TYPE_BOOL,
    "UINT8": DataType.TYPE_UINT8,
    "UINT16": DataType.TYPE_UINT16,
    "UINT32": DataType.TYPE_UINT32,
    "UINT64": DataType.TYPE_UINT64,
    "INT8": DataType.TYPE_INT8,
    "INT16": DataType.TYPE_INT16,
    "INT32": DataType.TYPE_INT32,
    "INT64": DataType.TYPE_INT64,
    "FP16": DataType.TYPE_FP16,
    "FP32": DataType.TYPE_FP32,
    "FP64": DataType.TYPE_FP64,
    "BYTES": DataType.TYPE_STRING,
}


@dataclass
class TensorMetadata:
    name: str
    datatype: str
    shape: list[int] = field(default_factory=list)


@dataclass
class ModelSchema:
    """Inputs and outputs of a model; ``None`` means the schema leaves them out."""

    inputs: list[TensorMetadata] | None = None
    outputs: list[TensorMetadata] | None = None


@dataclass
class ModelTensor:
    """An input or output of a Triton model configuration.

    ``extra`` keeps fields this package does not interpret, in text-format form.
    """

    name: str = ""
    data_type: DataType = DataType.TYPE_INVALID
    dims: list[int] = field(default_factory=list)
    extra: list[tuple[str, Any]] = field(default_factory=list)


@dataclass
class ModelConfig:
    """A Triton model configuration.

    ``extra`` keeps fields this package does not interpret, in text-format form.
    """

    name: str = ""
    platform: str = ""
    backend: str = ""
    max_batch_size: int = 0
    inputs: list[ModelTensor] = field(default_factory=list)
    outputs: list[ModelTensor] = field(default_factory=list)
    extra: list[tuple[str, Any]] = field(default_factory=list)


def _tensor_metadata(entry: Any) -> TensorMetadata:
    if not isinstance(entry, dict):
        raise ValueError(f"tensor entry must be an object, found {entry!r}")
    name = entry.get("name", "")
    datatype = entry.get("datatype", "")
    shape = entry.get("shape") or []
    if not isinstance(name, str) or not isinstance(datatype, str):
        raise ValueError(f"tensor name and datatype must be strings: {entry!r}")
    if not isinstance(shape, list) or any(
        isinstance(dim, bool) or not isinstance(dim, int) for dim in shape
    ):
        raise ValueError(f"tensor shape must be a list of integers: {entry!r}")
    return TensorMetadata(name=name, datatype=datatype, shape=list(shape))


def _tensor_list(value: Any, key: str) -> list[TensorMetadata] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValueError(f"schema {key!r} must be a list")
    return [_tensor_metadata(entry) for entry in value]


def load_model_schema(path: str) -> ModelSchema:
    """Read a JSON model schema file."""
    with open(path, encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid schema JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"schema in {path} must be a JSON object")
    return ModelSchema(
        inputs=_tensor_list(data.get("inputs"), "inputs"),
        outputs=_tensor_list(data.get("outputs"), "outputs"),
    )


def _to_tensor(meta: TensorMetadata) -> ModelTensor:
    return ModelTensor(
        name=meta.name,
        data_type=TENSOR_TYPE.get(meta.datatype, DataType.TYPE_INVALID),
        dims=list(meta.shape),
    )


def convert_schema_to_config(schema: ModelSchema) -> ModelConfig:
    """Build a model configuration holding the schema's inputs and outputs."""
    return ModelConfig(
        inputs=[_to_tensor(t) for t in schema.inputs or ()],
        outputs=[_to_tensor(t) for t in schema.outputs or ()],
    )


def convert_schema_to_config_from_file(schema_file: str) -> ModelConfig:
    """Read a schema file and convert it to a model configuration."""
    try:
        schema = load_model_schema(schema_file)
    except (OSError, ValueError) as exc:
        raise ValueError(f"Error trying to convert schema to config: {exc}") from exc
    return convert_schema_to_config(schema)