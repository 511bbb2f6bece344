import io
import gzip
import base64
from dataclasses import dataclass, field
from types import MappingProxyType

import pydicom
from pydicom.pixels import apply_modality_lut, apply_voi_lut
import nibabel as nib
import numpy as np
from skimage.transform import resize
from PIL import Image
import torch

from errors import DecodeError, ResampleError


PREVIEW_SIZE = (512, 512)
MODEL_INPUT_SIZE = (224, 224)

# ImageNet statistics, R, G, B
CHANNEL_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
CHANNEL_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)

UNKNOWN_PATIENT = "Unknown"


@dataclass(frozen=True)
class RawImage:
    """Decoded RGBA pixel buffer (H, W, 4, uint8) plus patient metadata."""
    pixels: np.ndarray
    metadata: dict = field(default_factory=dict)

    @property
    def height(self):
        return self.pixels.shape[0]

    @property
    def width(self):
        return self.pixels.shape[1] if self.pixels.ndim > 1 else 0


# --- DECODING ---

def decode_image(data):
    """Decode a DICOM file (or a single NIfTI volume) into a RawImage."""
    if not data:
        raise DecodeError("Empty image stream.")

    if len(data) > 132 and data[128:132] == b"DICM":
        return load_dicom_file(data)

    if data[:2] == b"\x1f\x8b":
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError) as exc:
            raise DecodeError(f"Corrupt gzip stream: {exc}") from exc

    if len(data) >= 348 and data[344:348] == b"n+1\x00":
        return load_nifti_file(data)

    # DICOM without preamble or file meta header
    try:
        return load_dicom_file(data, force=True)
    except DecodeError as exc:
        raise DecodeError(f"Not a DICOM or NIfTI file: {exc.message}") from exc


def load_dicom_file(data, force=False):
    """Reads a single DICOM file and renders its first frame to RGBA."""
    try:
        ds = pydicom.dcmread(io.BytesIO(data), force=force)
    except Exception as exc:
        raise DecodeError(f"Malformed DICOM file: {exc}") from exc

    if "PixelData" not in ds:
        raise DecodeError("DICOM file has no pixel data.")

    try:
        pixels = ds.pixel_array
    except Exception as exc:
        raise DecodeError(f"Unable to decode DICOM pixel data: {exc}") from exc

    frames = int(ds.get("NumberOfFrames", 1) or 1)
    if frames > 1:
        pixels = pixels[0]

    samples = int(ds.get("SamplesPerPixel", 1))
    if samples == 1:
        pixels = apply_modality_lut(pixels, ds)
        pixels = apply_voi_lut(pixels, ds, index=0)
        gray = scale_to_uint8(pixels)
        if ds.get("PhotometricInterpretation") == "MONOCHROME1":
            gray = 255 - gray
        rgba = gray_to_rgba(gray)
    elif pixels.ndim == 3 and pixels.shape[-1] == 3:
        rgb = scale_to_uint8(pixels) if pixels.dtype != np.uint8 else pixels
        rgba = np.dstack([rgb, np.full(rgb.shape[:2], 255, dtype=np.uint8)])
    else:
        raise DecodeError(f"Unsupported pixel layout {pixels.shape} with {samples} samples per pixel.")

    patient_name = str(ds.get("PatientName", "") or "").strip()
    metadata = {
        "format": "dicom",
        "patient_name": patient_name or UNKNOWN_PATIENT,
        "patient_id": str(ds.get("PatientID", "") or ""),
        "modality": str(ds.get("Modality", "") or ""),
        "study_date": str(ds.get("StudyDate", "") or ""),
        "rows": rgba.shape[0],
        "columns": rgba.shape[1],
    }
    return _freeze(rgba, metadata)


def load_nifti_file(data):
    """Reads a NIfTI volume and renders its middle slice to RGBA."""
    try:
        img = nib.Nifti1Image.from_bytes(data)
        volume = img.get_fdata().astype(np.float32)
    except Exception as exc:
        raise DecodeError(f"Malformed NIfTI file: {exc}") from exc

    if volume.ndim == 4:
        volume = volume[..., 0]
    if volume.ndim == 3:
        volume = volume[:, :, volume.shape[2] // 2]
    if volume.ndim != 2 or volume.size == 0:
        raise DecodeError(f"NIfTI file has no renderable slice (shape {volume.shape}).")

    # NIfTI stores (x, y); display as rows x columns
    rgba = gray_to_rgba(scale_to_uint8(volume.T))
    metadata = {
        "format": "nifti",
        "patient_name": UNKNOWN_PATIENT,
        "patient_id": "",
        "modality": "",
        "study_date": "",
        "rows": rgba.shape[0],
        "columns": rgba.shape[1],
    }
    return _freeze(rgba, metadata)


def scale_to_uint8(pixels):
    """Min-max scale an intensity array into 0..255."""
    pixels = np.asarray(pixels, dtype=np.float64)
    low, high = np.min(pixels), np.max(pixels)
    if high > low:
        pixels = (pixels - low) / (high - low) * 255.0
    return np.clip(np.rint(pixels), 0, 255).astype(np.uint8)


def gray_to_rgba(gray):
    alpha = np.full(gray.shape, 255, dtype=np.uint8)
    return np.dstack([gray, gray, gray, alpha])


def _freeze(pixels, metadata):
    pixels = np.ascontiguousarray(pixels, dtype=np.uint8)
    pixels.flags.writeable = False
    return RawImage(pixels=pixels, metadata=MappingProxyType(dict(metadata)))


# --- RESAMPLING ---

def resample(raw, preview_size=PREVIEW_SIZE, model_size=MODEL_INPUT_SIZE):
    """
    Produce the preview raster and the model-input raster.
    Both are resized straight from the decoded image.
    """
    pixels = raw.pixels
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise ResampleError(f"Expected an (H, W, C) raster, got shape {pixels.shape}.")
    if raw.height == 0 or raw.width == 0:
        raise ResampleError(f"Image has zero size ({raw.height}x{raw.width}).")

    preview = Image.fromarray(np.ascontiguousarray(pixels)).resize(
        (preview_size[1], preview_size[0]), Image.BILINEAR
    )

    model_input = resize(pixels, model_size, anti_aliasing=True, preserve_range=True)
    model_input = np.clip(np.rint(model_input), 0, 255).astype(np.uint8)

    return np.asarray(preview), model_input


# --- NORMALIZATION ---

def to_model_tensor(raster):
    """Convert a 224x224 RGB(A) raster into a normalized [1, 3, 224, 224] tensor."""
    raster = np.asarray(raster)
    if raster.ndim != 3 or raster.shape[:2] != MODEL_INPUT_SIZE or raster.shape[2] not in (3, 4):
        raise ValueError(
            f"Model input raster must be {MODEL_INPUT_SIZE} with 3 or 4 channels, got {raster.shape}"
        )

    rgb = raster[..., :3].astype(np.float32) / 255.0
    normalized = (rgb - CHANNEL_MEAN) / CHANNEL_STD
    # HWC -> CHW, then add the batch dimension
    chw = np.ascontiguousarray(np.transpose(normalized, (2, 0, 1)))
    return torch.from_numpy(chw).unsqueeze(0)


# --- PREVIEW ENCODING ---

def encode_preview(raster, image_format="JPEG"):
    """Encode a preview raster and return it as a base64 string."""
    img = Image.fromarray(np.ascontiguousarray(raster))
    if image_format.upper() == "JPEG":
        img = img.convert("RGB")
    buffered = io.BytesIO()
    img.save(buffered, format=image_format)
    return base64.b64encode(buffered.getvalue()).decode('utf-8')
