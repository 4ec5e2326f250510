"""Arrange downloaded model files into a Triton model repository layout."""

from __future__ import annotations

import logging
import os
import re
import stat

from mmadapter.fsutil import remove_path, secure_join
from mmadapter.rpc import AdapterError
from mmadapter.triton.pbtxt import (
    convert_keras_to_tf,
    format_model_config,
    parse_model_config,
    write_config_pbtxt,
)
from mmadapter.triton.schema import (
    MODEL_SCHEMA_FILE,
    TENSORFLOW_SAVED_MODEL_DIR_NAME,
    TRITON_REPOSITORY_CONFIG_FILENAME,
    ModelConfig,
    ModelSchema,
    convert_schema_to_config,
    convert_schema_to_config_from_file,
    load_model_schema,
)

log = logging.getLogger(__name__)

# Name used for the model when a directory is found.
MODEL_TYPE_TO_DIR_NAME: dict[str, str] = {
    "tensorflow": TENSORFLOW_SAVED_MODEL_DIR_NAME,
    "onnx": "model.onnx",
    "keras": "model.savedmodel",
}

MODEL_TYPE_TO_BACKEND: dict[str, str] = {
    "tensorflow": "tensorflow",
    "tensorrt": "tensorrt",
    "onnx": "onnxruntime",
    "pytorch": "pytorch",
    "keras": "tensorflow",
}

# Name used for the model when a single file is found.
MODEL_TYPE_TO_FILE_NAME: dict[str, str] = {
    "tensorflow": "model.graphdef",
    "tensorrt": "model.plan",
    "onnx": "model.onnx",
    "pytorch": "model.pt",
}

_BATCH_DIM_ERROR = (
    "Conflicting model configuration: If model has schema and config.pbtxt with "
    "max_batch_size > 0, then the first dimension of all inputs and outputs must have size -1."
)
_INT_RE = re.compile(r"[+-]?\d+")


def _read_dir(path: str) -> list[os.DirEntry]:
    with os.scandir(path) as entries:
        return sorted(entries, key=lambda entry: entry.name)


def adapt_model_layout_for_runtime(
    root_model_dir: str,
    model_id: str,
    model_type: str,
    model_path: str,
    schema_path: str,
) -> None:
    """Build the Triton repository for ``model_id`` under ``root_model_dir``.

    The repository links back to the files at ``model_path``; a schema file,
    if given, becomes the model's ``config.pbtxt``.
    """
    model_type = model_type.split(":")[0].lower()

    triton_model_dir = secure_join(root_model_dir, model_id)
    try:
        remove_path(triton_model_dir)
    except OSError as exc:
        log.info("Ignoring error trying to remove dir %s: %s", triton_model_dir, exc)
    try:
        os.makedirs(triton_model_dir, 0o755, exist_ok=True)
    except OSError as exc:
        raise AdapterError(
            f"Error creating directories for path {triton_model_dir}: {exc}"
        ) from exc

    try:
        is_dir = stat.S_ISDIR(os.stat(model_path).st_mode)
    except OSError as exc:
        raise AdapterError(f"Error calling stat on model file: {exc}") from exc

    if not is_dir and model_type == "keras":
        converted = secure_join(os.path.dirname(model_path), TENSORFLOW_SAVED_MODEL_DIR_NAME)
        try:
            convert_keras_to_tf(model_path, converted)
        except (OSError, RuntimeError, ValueError) as exc:
            raise AdapterError(
                f"Error while converting keras model {model_path} to tensorflow: {exc}"
            ) from exc
        model_path = converted

    try:
        if not is_dir:
            _create_repository_from_path(model_path, "1", schema_path, model_type, triton_model_dir)
        else:
            try:
                entries = _read_dir(model_path)
            except OSError as exc:
                raise OSError(f"Could not read files in dir {model_path}: {exc}") from exc
            if is_triton_model_repository(entries):
                _adapt_native_layout(entries, model_path, schema_path, triton_model_dir)
            else:
                _create_repository_from_directory(
                    entries, model_path, schema_path, model_type, triton_model_dir
                )
    except (OSError, ValueError) as exc:
        raise AdapterError(
            f"Error processing model/schema files for model {model_id}: {exc}"
        ) from exc


def _create_repository_from_directory(
    entries: list[os.DirEntry],
    model_path: str,
    schema_path: str,
    model_type: str,
    triton_model_dir: str,
) -> None:
    entries = [entry for entry in entries if entry.name != MODEL_SCHEMA_FILE]

    version = largest_number_dir(entries)
    if version:
        model_path = secure_join(model_path, version)
        try:
            entries = _read_dir(model_path)
        except OSError as exc:
            raise OSError(f"Could not read files in dir {model_path}: {exc}") from exc
    else:
        version = "1"

    known_type = model_type in MODEL_TYPE_TO_DIR_NAME or model_type in MODEL_TYPE_TO_FILE_NAME
    if len(entries) == 1 and known_type:
        model_path = secure_join(model_path, entries[0].name)

    _create_repository_from_path(model_path, version, schema_path, model_type, triton_model_dir)


def _create_repository_from_path(
    model_path: str,
    version: str,
    schema_path: str,
    model_type: str,
    triton_model_dir: str,
) -> None:
    try:
        info = os.stat(model_path)
    except OSError as exc:
        raise OSError(f"Error calling stat on {model_path}: {exc}") from exc

    if stat.S_ISDIR(info.st_mode):
        dir_name = MODEL_TYPE_TO_DIR_NAME.get(model_type)
        link_path = secure_join(version, dir_name) if dir_name else version
    else:
        file_name = MODEL_TYPE_TO_FILE_NAME.get(model_type) or os.path.basename(model_path)
        link_path = secure_join(version, file_name)
    link_path = secure_join(triton_model_dir, link_path)

    os.makedirs(os.path.dirname(link_path), 0o755, exist_ok=True)
    os.symlink(model_path, link_path)

    if not schema_path:
        return

    schema_config = convert_schema_to_config_from_file(schema_path)
    config = ModelConfig(
        backend=MODEL_TYPE_TO_BACKEND.get(model_type, ""),
        inputs=schema_config.inputs,
        outputs=schema_config.outputs,
    )
    write_config_pbtxt(
        secure_join(triton_model_dir, TRITON_REPOSITORY_CONFIG_FILENAME), config
    )


def _adapt_native_layout(
    entries: list[os.DirEntry],
    source_dir: str,
    schema_path: str,
    triton_model_dir: str,
) -> None:
    for entry in entries:
        source = secure_join(source_dir, entry.name)
        if entry.name == TRITON_REPOSITORY_CONFIG_FILENAME:
            try:
                with open(source, "rb") as handle:
                    pbtxt = handle.read()
            except OSError as exc:
                raise OSError(f"Error reading config file {source}: {exc}") from exc
            processed = process_model_config(pbtxt, schema_path)
            target = secure_join(triton_model_dir, TRITON_REPOSITORY_CONFIG_FILENAME)
            mode = stat.S_IMODE(entry.stat(follow_symlinks=False).st_mode)
            try:
                fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
                with os.fdopen(fd, "wb") as handle:
                    handle.write(processed)
            except OSError as exc:
                raise OSError(f"Error writing config file {source}: {exc}") from exc
            continue

        link = secure_join(triton_model_dir, entry.name)
        try:
            os.symlink(source, link)
        except OSError as exc:
            raise OSError(f"Error creating symlink to {source}: {exc}") from exc


def largest_number_dir(entries: list[os.DirEntry]) -> str:
    """Return the name of the largest positive numbered directory.

    Files are ignored. If any directory is not a number, or none is positive,
    the empty string is returned.
    """
    largest = 0
    largest_name = ""
    for entry in entries:
        if not entry.is_dir(follow_symlinks=False):
            continue
        if not _INT_RE.fullmatch(entry.name):
            return ""
        number = int(entry.name)
        if number > largest:
            largest = number
            largest_name = entry.name
    return largest_name


def is_triton_model_repository(entries: list[os.DirEntry]) -> bool:
    """True if the entries are the top level of a Triton model repository."""
    return any(entry.name == TRITON_REPOSITORY_CONFIG_FILENAME for entry in entries)


def _load_schema(schema_path: str) -> tuple[ModelSchema, ModelConfig]:
    try:
        schema = load_model_schema(schema_path)
    except (OSError, ValueError) as exc:
        raise ValueError(f"Error trying to convert schema to config: {exc}") from exc
    return schema, convert_schema_to_config(schema)


def process_model_config(pbtxt: bytes | str, schema_path: str) -> bytes:
    """Drop the ``name`` field from a config.pbtxt and apply a schema to it.

    Unparsable input is returned unchanged. With ``max_batch_size > 0`` the
    schema's leading ``-1`` batch dimension is removed, and its absence on
    any tensor raises ValueError.
    """
    raw = pbtxt.encode("utf-8") if isinstance(pbtxt, str) else pbtxt
    try:
        config = parse_model_config(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        log.error("Unable to unmarshal config.pbtxt: %s", exc)
        return raw

    log.info("Deleting `name` field from config.pbtxt (removed name %r)", config.name)
    config.name = ""

    if schema_path:
        schema, schema_config = _load_schema(schema_path)
        tensors = [*schema_config.inputs, *schema_config.outputs]
        if config.max_batch_size > 0:
            if not all(tensor.dims and tensor.dims[0] == -1 for tensor in tensors):
                raise ValueError(_BATCH_DIM_ERROR)
            for tensor in tensors:
                tensor.dims = tensor.dims[1:]
        if schema.inputs is not None:
            config.inputs = schema_config.inputs
        if schema.outputs is not None:
            config.outputs = schema_config.outputs

    return format_model_config(config).encode("utf-8")