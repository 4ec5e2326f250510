"""Adapter for the Triton inference server: schemas, config files, model layout and server."""