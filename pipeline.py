"""
Single-image triage pipeline.

decode -> resample (preview + model input) -> normalize -> inference
-> findings / risk -> assemble case -> append to the shared store.

Stages run sequentially; nothing is appended unless every stage succeeds.
"""

import time
import logging

from errors import InputError, PipelineTimeout
from utils import decode_image, resample, to_model_tensor
from findings import map_findings
from cases import assemble_case

logger = logging.getLogger(__name__)


def _check_deadline(deadline, stage):
    if deadline is not None and time.monotonic() > deadline:
        raise PipelineTimeout(f"Deadline exceeded before {stage}.")


def analyze(data, engine, label_table, store, deadline=None):
    """
    Run the full pipeline on one uploaded file and return the stored case.

    `deadline` is an absolute time.monotonic() value; when it passes the
    current run is abandoned with PipelineTimeout.
    """
    if not data:
        raise InputError("No file.")

    _check_deadline(deadline, "decode")
    raw = decode_image(data)
    logger.debug("Decoded %s image %dx%d", raw.metadata.get("format"), raw.height, raw.width)

    _check_deadline(deadline, "resample")
    preview, model_input = resample(raw)

    _check_deadline(deadline, "normalization")
    tensor = to_model_tensor(model_input)
    logger.debug("Model input tensor %s", tuple(tensor.shape))

    _check_deadline(deadline, "inference")
    scores = engine.run(tensor)

    _check_deadline(deadline, "finding mapping")
    findings, risk = map_findings(scores, label_table)

    _check_deadline(deadline, "case assembly")
    case = assemble_case(raw.metadata, preview, findings, risk)

    _check_deadline(deadline, "storing the case")
    store.append(case)
    return case
