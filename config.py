import os
from dataclasses import dataclass

from errors import ConfigurationError

# Define the local paths for the model and label table
MODELS_DIR = "models"
DEFAULT_LABELS_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "labels.yaml")


@dataclass(frozen=True)
class Settings:
    model_path: str
    model_arch: str
    model_input_name: str
    labels_path: str
    host: str
    port: int
    request_timeout: float = None
    log_level: str = "INFO"


def _number(env, name, cast, default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def load_settings(env=None):
    """Read settings from environment variables."""
    env = os.environ if env is None else env
    models_dir = env.get("MODELS_DIR", MODELS_DIR)

    timeout = _number(env, "REQUEST_TIMEOUT", float, None)
    if timeout is not None and timeout <= 0:
        raise ConfigurationError("REQUEST_TIMEOUT must be positive")

    return Settings(
        model_path=env.get("MODEL_PATH", os.path.join(models_dir, "model.onnx")),
        model_arch=env.get("MODEL_ARCH", "densenet121"),
        model_input_name=env.get("MODEL_INPUT_NAME", "data_0"),
        labels_path=env.get("LABELS_PATH", DEFAULT_LABELS_PATH),
        host=env.get("HOST", "0.0.0.0"),
        port=_number(env, "PORT", int, 8080),
        request_timeout=timeout,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
