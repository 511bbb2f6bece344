"""
Inference engine adapter.

Loads a classifier artifact once and runs forward passes on normalized
[1, 3, 224, 224] tensors. ONNX artifacts run on onnxruntime; .pth/.pt
state dicts are loaded into the torch architectures in model_definitions.
The loaded engine is never mutated after construction and is shared by all
request threads.
"""

import os
import logging
from math import prod

import numpy as np
import onnxruntime as ort
import torch

from errors import InferenceError, ModelLoadError
from model_definitions import ARCHITECTURES, build_from_state_dict

logger = logging.getLogger(__name__)

INPUT_SHAPE = (1, 3, 224, 224)
ONNX_PROVIDERS = ["CPUExecutionProvider"]


class InferenceEngine:
    """Common contract: `run(tensor)` returns a flat float32 score vector."""

    kind = None

    def __init__(self, input_name, output_size=None, source=""):
        self.input_name = input_name
        self.input_shape = INPUT_SHAPE
        self.output_size = output_size
        self.source = source

    def run(self, tensor):
        if tuple(tensor.shape) != self.input_shape:
            raise InferenceError(
                f"Input tensor shape {tuple(tensor.shape)} does not match expected {self.input_shape}."
            )
        scores = self._forward(tensor)
        logger.debug("Forward pass on %s returned %d scores", self.source, scores.size)
        return scores

    def _forward(self, tensor):
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class OnnxEngine(InferenceEngine):
    kind = "onnx"

    def __init__(self, session, input_name, source=""):
        outputs = session.get_outputs()
        super().__init__(input_name, output_size=_static_size(outputs[0].shape[1:]) if outputs else None,
                         source=source)
        self._session = session

    def _forward(self, tensor):
        session = self._session
        if session is None:
            raise InferenceError("Inference session has been closed.")

        declared = {node.name: node.shape for node in session.get_inputs()}
        if self.input_name not in declared:
            raise InferenceError(
                f"Model has no input named '{self.input_name}' (declared: {', '.join(declared)})."
            )
        expected = declared[self.input_name]
        if len(expected) != len(INPUT_SHAPE) or any(
            isinstance(dim, int) and dim != actual for dim, actual in zip(expected, INPUT_SHAPE)
        ):
            raise InferenceError(f"Model input '{self.input_name}' expects shape {expected}, got {INPUT_SHAPE}.")

        try:
            outputs = session.run(None, {self.input_name: tensor.detach().cpu().numpy()})
        except Exception as exc:
            raise InferenceError(f"ONNX forward pass failed: {exc}") from exc
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)

    def close(self):
        self._session = None


class TorchEngine(InferenceEngine):
    kind = "torch"

    def __init__(self, model, input_name, source=""):
        super().__init__(input_name, output_size=model.num_classes, source=source)
        self._model = model

    def _forward(self, tensor):
        model = self._model
        if model is None:
            raise InferenceError("Model has been closed.")
        if self.input_name != model.input_name:
            raise InferenceError(
                f"Model has no input named '{self.input_name}' (declared: {model.input_name})."
            )
        try:
            with torch.no_grad():
                output = model(tensor)
        except RuntimeError as exc:
            raise InferenceError(f"Torch forward pass failed: {exc}") from exc
        return output.cpu().numpy().astype(np.float32).reshape(-1)

    def close(self):
        self._model = None


def _static_size(dims):
    if all(isinstance(dim, int) for dim in dims):
        return prod(dims)
    return None


def load_engine(model_path, input_name="data_0", arch="densenet121"):
    """Load and return the classifier at `model_path`."""
    if not os.path.isfile(model_path):
        raise ModelLoadError(f"Model artifact not found: {model_path}")

    suffix = os.path.splitext(model_path)[1].lower()
    if suffix == ".onnx":
        try:
            session = ort.InferenceSession(model_path, providers=ONNX_PROVIDERS)
        except Exception as exc:
            raise ModelLoadError(f"Unable to load ONNX model {model_path}: {exc}") from exc
        engine = OnnxEngine(session, input_name, source=model_path)

    elif suffix in (".pth", ".pt"):
        if arch not in ARCHITECTURES:
            raise ModelLoadError(f"Unknown model architecture '{arch}'.")
        try:
            state_dict = torch.load(model_path, map_location="cpu", weights_only=True)
            model = build_from_state_dict(arch, state_dict)
        except Exception as exc:
            raise ModelLoadError(f"Unable to load {arch} weights from {model_path}: {exc}") from exc
        engine = TorchEngine(model, input_name, source=model_path)

    else:
        raise ModelLoadError(f"Unsupported model artifact type '{suffix}' for {model_path}.")

    logger.info("Loaded %s model from %s (input '%s', %s outputs)",
                engine.kind, model_path, input_name, engine.output_size or "dynamic")
    return engine
