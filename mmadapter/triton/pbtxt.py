"""Reading and writing Triton ``config.pbtxt`` files, and Keras conversion."""

from __future__ import annotations

import functools
import logging
import os
import re
import subprocess
import threading
from dataclasses import dataclass
from typing import Any

from mmadapter.triton.schema import DataType, ModelConfig, ModelTensor

log = logging.getLogger(__name__)

KERAS_CONVERSION_SCRIPT = "/opt/scripts/tf_pb.py"
KERAS_CONCURRENCY_ENV = "MAX_CONC_KERAS_CONV_PROCS"
_DEFAULT_KERAS_CONCURRENCY = 2

_STRING_PATTERN = r'"(?:[^"\\\n]|\\.)*"|\'(?:[^\'\\\n]|\\.)*\''
_STRING_RE = re.compile(_STRING_PATTERN)
_TOKEN_RE = re.compile(
    rf"(?P<ws>\s+|\#[^\n]*)|(?P<string>{_STRING_PATTERN})"
    r"|(?P<word>[A-Za-z0-9_.+\-]+)|(?P<punct>[{}\[\]<>:,;])"
)
_ESCAPE_RE = re.compile(r"\\(?:([0-7]{1,3})|[xX]([0-9A-Fa-f]{1,2})|(.))", re.S)
_SIMPLE_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "a": "\a", "b": "\b", "f": "\f", "v": "\v",
    "\\": "\\", '"': '"', "'": "'", "?": "?",
}
_CLOSERS = {"{": "}", "<": ">"}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str


def _tokenize(text: str) -> list[_Token]:
    tokens = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ValueError(f"unexpected character {text[pos]!r} at offset {pos}")
        pos = match.end()
        if match.lastgroup != "ws":
            tokens.append(_Token(match.lastgroup, match.group()))
    return tokens


class _Parser:
    """Parses protobuf text format into nested lists of (field, value) pairs.

    Scalars are kept as their source tokens; nested messages become lists.
    """

    def __init__(self, text: str):
        self._tokens = _tokenize(text)
        self._pos = 0

    def parse(self) -> list[tuple[str, Any]]:
        return self._message(None)

    def _peek(self) -> _Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept(self, punct: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "punct" and tok.text == punct:
            self._pos += 1
            return True
        return False

    def _is_punct(self, *chars: str) -> bool:
        tok = self._peek()
        return tok is not None and tok.kind == "punct" and tok.text in chars

    def _message(self, closer: str | None) -> list[tuple[str, Any]]:
        fields: list[tuple[str, Any]] = []
        while True:
            tok = self._peek()
            if tok is None:
                if closer is None:
                    return fields
                raise ValueError(f"expected {closer!r} before end of input")
            if closer is not None and self._accept(closer):
                return fields
            if tok.kind != "word":
                raise ValueError(f"expected a field name, found {tok.text!r}")
            self._pos += 1
            name = tok.text
            has_colon = self._accept(":")
            if self._is_punct("{", "<"):
                fields.append((name, self._nested()))
            elif self._accept("["):
                fields.extend((name, value) for value in self._list())
            else:
                if not has_colon:
                    raise ValueError(f"expected ':' after field {name!r}")
                fields.append((name, self._scalar()))
            if not self._accept(","):
                self._accept(";")

    def _nested(self) -> list[tuple[str, Any]]:
        opener = self._tokens[self._pos].text
        self._pos += 1
        return self._message(_CLOSERS[opener])

    def _list(self) -> list[Any]:
        values: list[Any] = []
        if self._accept("]"):
            return values
        while True:
            values.append(self._nested() if self._is_punct("{", "<") else self._scalar())
            if self._accept(","):
                continue
            if self._accept("]"):
                return values
            raise ValueError("expected ',' or ']' in list")

    def _scalar(self) -> str:
        tok = self._peek()
        if tok is None or tok.kind not in ("word", "string"):
            raise ValueError(f"expected a value, found {tok.text if tok else 'end of input'!r}")
        self._pos += 1
        if tok.kind == "word":
            return tok.text
        parts = [tok.text]
        while (nxt := self._peek()) is not None and nxt.kind == "string":
            parts.append(nxt.text)
            self._pos += 1
        return " ".join(parts)


def _unquote(token: str) -> str:
    body = token[1:-1]
    out = bytearray()
    pos = 0
    for match in _ESCAPE_RE.finditer(body):
        out += body[pos:match.start()].encode("utf-8")
        octal, hexa, simple = match.groups()
        if octal:
            out.append(int(octal, 8) & 0xFF)
        elif hexa:
            out.append(int(hexa, 16))
        elif simple in _SIMPLE_ESCAPES:
            out += _SIMPLE_ESCAPES[simple].encode("utf-8")
        else:
            raise ValueError(f"invalid escape sequence \\{simple}")
        pos = match.end()
    out += body[pos:].encode("utf-8")
    return out.decode("utf-8")


def _quote(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\").replace('"', '\\"')
        .replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")
    )
    return f'"{escaped}"'


def _as_string(name: str, value: Any) -> str:
    if isinstance(value, list) or value[:1] not in ('"', "'"):
        raise ValueError(f"field {name!r} expects a string, found {value!r}")
    return "".join(_unquote(part) for part in _STRING_RE.findall(value))


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, list):
        raise ValueError(f"field {name!r} expects an integer")
    try:
        return int(value, 0)
    except ValueError:
        try:
            return int(value, 10)
        except ValueError:
            raise ValueError(f"field {name!r} expects an integer, found {value!r}") from None


def _as_message(name: str, value: Any) -> list[tuple[str, Any]]:
    if not isinstance(value, list):
        raise ValueError(f"field {name!r} expects a message, found {value!r}")
    return value


def _as_data_type(value: Any) -> DataType:
    if isinstance(value, list):
        raise ValueError("field 'data_type' expects an enum value")
    if value in DataType.__members__:
        return DataType[value]
    try:
        return DataType(_as_int("data_type", value))
    except ValueError:
        raise ValueError(f"unknown data type {value!r}") from None


def _tensor_from_fields(fields: list[tuple[str, Any]]) -> ModelTensor:
    tensor = ModelTensor()
    for name, value in fields:
        if name == "name":
            tensor.name = _as_string(name, value)
        elif name == "data_type":
            tensor.data_type = _as_data_type(value)
        elif name == "dims":
            tensor.dims.append(_as_int(name, value))
        else:
            tensor.extra.append((name, value))
    return tensor


def parse_model_config(text: str | bytes) -> ModelConfig:
    """Parse a ``config.pbtxt`` document; raises ValueError on malformed input."""
    if isinstance(text, bytes):
        text = text.decode("utf-8")
    config = ModelConfig()
    for name, value in _Parser(text).parse():
        if name == "name":
            config.name = _as_string(name, value)
        elif name == "platform":
            config.platform = _as_string(name, value)
        elif name == "backend":
            config.backend = _as_string(name, value)
        elif name == "max_batch_size":
            config.max_batch_size = _as_int(name, value)
        elif name == "input":
            config.inputs.append(_tensor_from_fields(_as_message(name, value)))
        elif name == "output":
            config.outputs.append(_tensor_from_fields(_as_message(name, value)))
        else:
            config.extra.append((name, value))
    return config


def _tensor_fields(tensor: ModelTensor) -> list[tuple[str, Any]]:
    fields: list[tuple[str, Any]] = []
    if tensor.name:
        fields.append(("name", _quote(tensor.name)))
    if tensor.data_type is not DataType.TYPE_INVALID:
        fields.append(("data_type", DataType(tensor.data_type).name))
    fields.extend(("dims", str(dim)) for dim in tensor.dims)
    fields.extend(tensor.extra)
    return fields


def _config_fields(config: ModelConfig) -> list[tuple[str, Any]]:
    fields: list[tuple[str, Any]] = []
    if config.name:
        fields.append(("name", _quote(config.name)))
    if config.platform:
        fields.append(("platform", _quote(config.platform)))
    if config.max_batch_size:
        fields.append(("max_batch_size", str(config.max_batch_size)))
    fields.extend(("input", _tensor_fields(t)) for t in config.inputs)
    fields.extend(("output", _tensor_fields(t)) for t in config.outputs)
    fields.extend(config.extra)
    if config.backend:
        fields.append(("backend", _quote(config.backend)))
    return fields


def _emit(lines: list[str], depth: int, fields: list[tuple[str, Any]]) -> None:
    pad = "  " * depth
    for name, value in fields:
        if isinstance(value, list):
            lines.append(f"{pad}{name} {{")
            _emit(lines, depth + 1, value)
            lines.append(f"{pad}}}")
        else:
            lines.append(f"{pad}{name}: {value}")


def format_model_config(config: ModelConfig) -> str:
    """Render a model configuration as multi-line protobuf text."""
    lines: list[str] = []
    _emit(lines, 0, _config_fields(config))
    return "".join(line + "\n" for line in lines)


def write_config_pbtxt(filename: str, model_config: ModelConfig) -> None:
    """Write ``model_config`` to ``filename`` in text format."""
    with open(filename, "w", encoding="utf-8") as handle:
        handle.write(format_model_config(model_config))
    os.chmod(filename, 0o644)


@functools.cache
def _conversion_semaphore() -> threading.BoundedSemaphore:
    raw = os.environ.get(KERAS_CONCURRENCY_ENV)
    if raw is None:
        return threading.BoundedSemaphore(_DEFAULT_KERAS_CONCURRENCY)
    try:
        limit = int(raw)
    except ValueError:
        limit = 0
    if limit <= 0:
        raise ValueError(f"{KERAS_CONCURRENCY_ENV} env var must have a positive int value")
    return threading.BoundedSemaphore(limit)


def convert_keras_to_tf(keras_file: str, target_path: str) -> None:
    """Convert a Keras ``.h5`` file into a TensorFlow SavedModel at ``target_path``.

    Conversion runs in an external Python process; the number running at once
    is limited by ``MAX_CONC_KERAS_CONV_PROCS`` (default 2).
    """
    command = ["python", KERAS_CONVERSION_SCRIPT, keras_file, target_path]
    with _conversion_semaphore():
        try:
            proc = subprocess.Popen(
                command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
            )
        except OSError as exc:
            raise RuntimeError(
                f"Failed to start python process for keras model conversion: {exc}"
            ) from exc
        stderr_chunks: list[str] = []
        reader = threading.Thread(
            target=lambda: stderr_chunks.append(proc.stderr.read()), daemon=True
        )
        reader.start()
        with proc.stdout:
            for line in proc.stdout:
                log.info(line.rstrip("\n"))
        returncode = proc.wait()
        reader.join()
    if returncode != 0:
        stderr = "".join(stderr_chunks).strip()
        detail = f"{stderr}: " if stderr else ""
        log.error("keras model conversion failed: %sexit status %d", detail, returncode)
        raise RuntimeError(f"keras model conversion failed: {detail}exit status {returncode}")