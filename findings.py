import math
import logging
from dataclasses import dataclass
from enum import Enum

import yaml

from errors import ConfigurationError

logger = logging.getLogger(__name__)

RISK_THRESHOLD = 50.0


class RiskLevel(str, Enum):
    HIGH = "HIGH"
    LOW = "LOW"


@dataclass(frozen=True)
class Finding:
    label: str
    score: float  # 0..100

    def to_dict(self):
        return {"name": self.label, "score": self.score}


@dataclass(frozen=True)
class LabelTable:
    """Ordered finding labels and the score index each one reads."""
    labels: tuple
    indices: tuple

    def __post_init__(self):
        if not self.labels:
            raise ConfigurationError("Label table is empty.")
        if len(self.labels) != len(self.indices):
            raise ConfigurationError(
                f"Label table has {len(self.labels)} labels but {len(self.indices)} indices."
            )
        if len(set(self.labels)) != len(self.labels):
            raise ConfigurationError("Label table contains duplicate labels.")
        for label, index in zip(self.labels, self.indices):
            if isinstance(index, bool) or not isinstance(index, int) or index < 0:
                raise ConfigurationError(f"Index for '{label}' must be a non-negative integer, got {index!r}.")

    def __len__(self):
        return len(self.labels)

    @property
    def max_index(self):
        return max(self.indices)

    def validate(self, output_size):
        """Check every index fits a score vector of `output_size` entries."""
        if output_size is None:
            return
        if self.max_index >= output_size:
            raise ConfigurationError(
                f"Label index {self.max_index} is out of range for a model with {output_size} outputs."
            )

    @classmethod
    def from_entries(cls, entries):
        labels, indices = [], []
        for entry in entries:
            if not isinstance(entry, dict) or "label" not in entry or "index" not in entry:
                raise ConfigurationError(f"Label entry must have 'label' and 'index': {entry!r}")
            labels.append(str(entry["label"]))
            indices.append(entry["index"])
        return cls(labels=tuple(labels), indices=tuple(indices))


def load_label_table(path):
    """Load the label table from a YAML file."""
    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Unable to read label table {path}: {exc}") from exc

    if not isinstance(config, dict) or not isinstance(config.get("findings"), list):
        raise ConfigurationError(f"Label table {path} must contain a 'findings' list.")

    table = LabelTable.from_entries(config["findings"])
    logger.info("Loaded %d finding labels from %s", len(table), path)
    return table


def sigmoid(x):
    # Stable for large |x|
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def map_findings(scores, table):
    """
    Turn raw model scores into ranked findings and a risk level.

    Each label reads its configured index, passes through the logistic
    function and is scaled to 0..100. Findings are sorted by score,
    highest first; equal scores keep table order.
    """
    if len(scores) <= table.max_index:
        raise ConfigurationError(
            f"Score vector has {len(scores)} entries but the label table reads index {table.max_index}."
        )

    findings = [
        Finding(label=label, score=sigmoid(float(scores[index])) * 100)
        for label, index in zip(table.labels, table.indices)
    ]
    # sorted() is stable, also with reverse=True
    findings = sorted(findings, key=lambda f: f.score, reverse=True)
    return findings, risk_level(findings)


def risk_level(findings):
    if findings and findings[0].score > RISK_THRESHOLD:
        return RiskLevel.HIGH
    return RiskLevel.LOW
