"""Model runtime adapter for the Triton inference server, with TorchServe configuration."""

__version__ = "0.1.0"