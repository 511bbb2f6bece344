"""
Shared fixtures: synthetic DICOM/NIfTI uploads and a deterministic engine.
"""
import io
import threading
from pathlib import Path

import numpy as np
import pytest
import pydicom
from pydicom.dataset import Dataset, FileDataset
from pydicom.uid import ExplicitVRLittleEndian, SecondaryCaptureImageStorage, generate_uid

from findings import load_label_table

PROJECT_ROOT = Path(__file__).parent.parent


def make_dicom_bytes(pixels, patient_name="Doe^Jane", photometric="MONOCHROME2", include_pixels=True,
                     frames=False, window=None):
    """
    Build an in-memory Secondary Capture DICOM file.

    `pixels` is (rows, cols), (rows, cols, 3) for RGB, or has a leading frame
    axis when `frames` is set. `window` is an optional (center, width).
    """
    pixels = np.asarray(pixels)
    meta = Dataset()
    meta.MediaStorageSOPClassUID = SecondaryCaptureImageStorage
    meta.MediaStorageSOPInstanceUID = generate_uid()
    meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset("upload.dcm", {}, file_meta=meta, preamble=b"\0" * 128)
    ds.SOPClassUID = meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = meta.MediaStorageSOPInstanceUID
    ds.Modality = "CR"
    ds.StudyDate = "20240102"
    ds.PatientID = "P-0001"
    if patient_name is not None:
        ds.PatientName = patient_name

    frame_shape = pixels.shape[1:] if frames else pixels.shape
    if frames:
        ds.NumberOfFrames = pixels.shape[0]
    ds.Rows, ds.Columns = frame_shape[:2]
    if len(frame_shape) == 3:
        ds.SamplesPerPixel = 3
        ds.PhotometricInterpretation = "RGB"
        ds.PlanarConfiguration = 0
    else:
        ds.SamplesPerPixel = 1
        ds.PhotometricInterpretation = photometric
    if window is not None:
        ds.WindowCenter, ds.WindowWidth = window
    ds.PixelRepresentation = 0
    if pixels.dtype == np.uint16:
        ds.BitsAllocated, ds.BitsStored, ds.HighBit = 16, 16, 15
    else:
        pixels = pixels.astype(np.uint8)
        ds.BitsAllocated, ds.BitsStored, ds.HighBit = 8, 8, 7
    if include_pixels:
        ds.PixelData = pixels.tobytes()

    buffer = io.BytesIO()
    ds.save_as(buffer, enforce_file_format=True)
    return buffer.getvalue()


def gradient(rows=64, columns=48, dtype=np.uint8):
    high = 255 if dtype == np.uint8 else 4095
    values = np.linspace(0, high, rows * columns)
    return values.reshape(rows, columns).astype(dtype)


class FakeEngine:
    """Deterministic stand-in for a loaded classifier."""

    kind = "fake"
    source = "models/fake.onnx"
    input_name = "data_0"
    input_shape = (1, 3, 224, 224)
    output_size = 1000
    closed = False

    def __init__(self, error=None):
        self.error = error
        self.calls = 0
        self._lock = threading.Lock()

    def run(self, tensor):
        assert tuple(tensor.shape) == self.input_shape
        with self._lock:
            self.calls += 1
        if self.error is not None:
            raise self.error
        base = np.linspace(-4.0, 4.0, self.output_size, dtype=np.float32)
        return base + np.float32(tensor.mean().item())

    def close(self):
        self.closed = True


@pytest.fixture
def dicom_bytes():
    return make_dicom_bytes(gradient())


@pytest.fixture
def label_table():
    """Reference 14-label table."""
    return load_label_table(PROJECT_ROOT / "labels.yaml")


@pytest.fixture
def fake_engine():
    return FakeEngine()
