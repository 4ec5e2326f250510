"""Model runtime service that manages models inside a Triton inference server."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Protocol

from mmadapter.fsutil import clear_directory_contents, remove_path, secure_join
from mmadapter.rpc import (
    AdapterError,
    LoadModelRequest,
    LoadModelResponse,
    MethodInfo,
    RuntimeStatusResponse,
    ServingStatus,
    StatusCode,
    calc_mem_capacity,
    get_model_type,
)
from mmadapter.triton.config import AdapterConfiguration
from mmadapter.triton.layout import adapt_model_layout_for_runtime
from mmadapter.triton.schema import TRITON_MODEL_SUBDIR, TRITON_SERVICE_NAME

log = logging.getLogger(__name__)

SCHEMA_PATH_JSON_KEY = "schema_path"


class TritonClient(Protocol):
    """The parts of the Triton inference service used by the adapter.

    Failures are raised as exceptions, ideally AdapterError with a status code.
    """

    def server_ready(self) -> bool: ...

    def repository_index(self, ready: bool) -> list[str]: ...

    def repository_model_load(self, model_name: str) -> None: ...

    def repository_model_unload(self, model_name: str) -> None: ...

    def server_metadata(self) -> str: ...


class Puller(Protocol):
    """Fetches model files from storage and manages the local copies."""

    def process_load_model_request(self, request: LoadModelRequest) -> LoadModelRequest: ...

    def cleanup_model(self, model_id: str) -> None: ...

    def clear_local_model_storage(self, exclude: str) -> None: ...


def _code_of(exc: BaseException) -> StatusCode:
    return exc.code if isinstance(exc, AdapterError) else StatusCode.UNKNOWN


def _schema_path(request: LoadModelRequest) -> str:
    """Return the schema file named by the request's model key, or ``""``."""
    try:
        key = json.loads(request.model_key) if request.model_key else None
    except json.JSONDecodeError:
        return ""
    if not isinstance(key, dict):
        return ""
    value = key.get(SCHEMA_PATH_JSON_KEY)
    return value if isinstance(value, str) else ""


class TritonAdapterServer:
    """Loads, unloads and reports on models served by Triton."""

    def __init__(
        self,
        config: AdapterConfiguration,
        client: TritonClient,
        puller: Puller | None = None,
    ):
        if config.use_embedded_puller and puller is None:
            raise ValueError("an embedded puller is configured but none was given")
        self.config = config
        self.client = client
        self.puller = puller if config.use_embedded_puller else None
        log.info("Triton runtime adapter started")

    def load_model(self, request: LoadModelRequest) -> LoadModelResponse:
        """Lay out the model's files for Triton and ask Triton to load it."""
        model_type = get_model_type(request)
        log.info("Using model type %r for model %s", model_type, request.model_id)

        if self.puller is not None:
            try:
                request = self.puller.process_load_model_request(replace(request))
            except Exception:
                log.exception("Failed to pull model %s from storage", request.model_id)
                raise

        schema_path = _schema_path(request)

        try:
            adapt_model_layout_for_runtime(
                self.config.root_model_dir,
                request.model_id,
                model_type,
                request.model_path,
                schema_path,
            )
        except (AdapterError, OSError, ValueError) as exc:
            log.error("Failed to create model directory and load model: %s", exc)
            raise AdapterError(
                f"Failed to load Model due to adapter error: {exc}", _code_of(exc)
            ) from exc

        try:
            self.client.repository_model_load(request.model_id)
        except (AdapterError, OSError) as exc:
            log.error("Triton failed to load model %s: %s", request.model_id, exc)
            raise AdapterError(
                f"Failed to load Model due to Triton runtime error: {exc}", _code_of(exc)
            ) from exc

        size = calc_mem_capacity(
            request.model_key,
            self.config.default_model_size_in_bytes,
            self.config.model_size_multiplier,
        )
        log.info("Triton model %s loaded", request.model_id)
        return LoadModelResponse(
            size_in_bytes=size,
            max_concurrency=self.config.limit_model_concurrency,
        )

    def unload_model(self, model_id: str) -> None:
        """Unload the model from Triton and delete its local files."""
        try:
            self.client.repository_model_unload(model_id)
        except (AdapterError, OSError) as exc:
            if _code_of(exc) is StatusCode.NOT_FOUND:
                log.info("Unload request for model %s not found in Triton: %s", model_id, exc)
            else:
                log.error("Failed to unload model %s from Triton: %s", model_id, exc)
                raise AdapterError("Failed to unload model from Triton", _code_of(exc)) from exc

        model_dir = secure_join(self.config.root_model_dir, model_id)
        try:
            remove_path(model_dir)
        except OSError as exc:
            raise AdapterError(f"Error while deleting the {model_dir} dir: {exc}") from exc

        if self.puller is not None:
            try:
                self.puller.cleanup_model(model_id)
            except Exception as exc:
                raise AdapterError(
                    f"Failed to delete model files from puller cache: {exc}", _code_of(exc)
                ) from exc

    def runtime_status(self) -> RuntimeStatusResponse:
        """Report readiness; on first readiness clear out any leftover models."""
        starting = RuntimeStatusResponse(status=ServingStatus.STARTING)

        try:
            ready = self.client.server_ready()
        except (AdapterError, OSError) as exc:
            log.info("Triton failed to get status or not ready: %s", exc)
            return starting
        if not ready:
            log.info("Triton runtime not ready")
            return starting

        try:
            loaded = self.client.repository_index(ready=True)
        except (AdapterError, OSError) as exc:
            log.info("Triton runtime status, getting model info failed: %s", exc)
            return starting

        for name in loaded:
            try:
                self.client.repository_model_unload(name)
            except (AdapterError, OSError) as exc:
                log.info("Triton runtime status, unload model failed: %s", exc)
                return starting

        try:
            clear_directory_contents(self.config.root_model_dir, None)
        except OSError as exc:
            log.error("Error cleaning up local model dir: %s", exc)
            return RuntimeStatusResponse(status=ServingStatus.FAILING)

        if self.puller is not None:
            try:
                self.puller.clear_local_model_storage(TRITON_MODEL_SUBDIR)
            except Exception as exc:
                log.error("Error cleaning up local model dir: %s", exc)
                return RuntimeStatusResponse(status=ServingStatus.FAILING)

        try:
            version = self.client.server_metadata()
        except (AdapterError, OSError) as exc:
            log.info("Warning: Triton failed to get version from server metadata: %s", exc)
            version = ""
        if version:
            log.info("Using runtime version returned by Triton: %s", version)
            self.config.runtime_version = version

        method_infos = {
            f"{TRITON_SERVICE_NAME}/ModelInfer": MethodInfo(id_injection_path=[1]),
            f"{TRITON_SERVICE_NAME}/ModelMetadata": MethodInfo(id_injection_path=[1]),
        }
        status = RuntimeStatusResponse(
            status=ServingStatus.READY,
            capacity_in_bytes=self.config.capacity_in_bytes,
            max_loading_concurrency=self.config.max_loading_concurrency,
            model_loading_timeout_ms=self.config.model_loading_timeout_ms,
            default_model_size_in_bytes=self.config.default_model_size_in_bytes,
            runtime_version=self.config.runtime_version,
            limit_model_concurrency=self.config.limit_model_concurrency > 0,
            method_infos=method_infos,
        )
        log.info("runtimeStatus: %s", status)
        return status