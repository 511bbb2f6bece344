"""Errors raised by the triage pipeline, one class per stage."""


class PipelineError(Exception):
    """Base class for every failure that aborts a single analysis."""

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class InputError(PipelineError):
    """The upload was empty or missing."""


class DecodeError(PipelineError):
    """The upload is not a readable medical image."""


class ResampleError(PipelineError):
    """The decoded raster has unusable dimensions."""


class ModelLoadError(PipelineError):
    """The model artifact is missing or could not be parsed."""


class InferenceError(PipelineError):
    """The forward pass failed or the tensor did not match the model input."""


class ConfigurationError(PipelineError):
    """Label table or settings are inconsistent."""


class PipelineTimeout(PipelineError):
    """The request deadline passed before the pipeline finished."""
