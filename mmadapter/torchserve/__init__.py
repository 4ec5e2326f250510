"""Environment configuration of the TorchServe adapter."""