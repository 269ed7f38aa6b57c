"""Colorimetric conversion between RGB working spaces through linear CIE XYZ."""
import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np

from converter.conversion.models import ColorProfile, PixelBuffer, resolve_working_profile

logger = logging.getLogger("converter.color")

ArrayFloat = np.ndarray

ADOBE_GAMMA = 563 / 256

# D65 reference primaries; rows produce X, Y, Z (or R, G, B) from a column vector.
SRGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.072175],
    [0.0193339, 0.119192, 0.9503041],
])

XYZ_TO_SRGB = np.array([
    [3.2406, -1.5372, -0.4986],
    [-0.9689, 1.8758, 0.0415],
    [0.0557, -0.204, 1.057],
])

ADOBE_TO_XYZ = np.array([
    [0.5767309, 0.185554, 0.1881852],
    [0.2973769, 0.6273491, 0.0752741],
    [0.0270343, 0.0706872, 0.9911085],
])

XYZ_TO_ADOBE = np.array([
    [2.041369, -0.5649464, -0.3446944],
    [-0.969266, 1.8760108, 0.041556],
    [0.0134474, -0.1183897, 1.0154096],
])


def clamp01(values: ArrayFloat) -> ArrayFloat:
    return np.clip(values, 0.0, 1.0)


def srgb_to_linear(values: ArrayFloat) -> ArrayFloat:
    c = clamp01(values)
    return np.where(c <= 0.04045, c / 12.92, np.power((c + 0.055) / 1.055, 2.4))


def linear_to_srgb(values: ArrayFloat) -> ArrayFloat:
    c = clamp01(values)
    return np.where(c <= 0.0031308, c * 12.92, 1.055 * np.power(c, 1 / 2.4) - 0.055)


def adobe_rgb_to_linear(values: ArrayFloat) -> ArrayFloat:
    return np.power(clamp01(values), ADOBE_GAMMA)


def linear_to_adobe_rgb(values: ArrayFloat) -> ArrayFloat:
    return np.power(clamp01(values), 1 / ADOBE_GAMMA)


@dataclass(frozen=True)
class ProfileDefinition:
    to_linear: Callable[[ArrayFloat], ArrayFloat]
    from_linear: Callable[[ArrayFloat], ArrayFloat]
    rgb_to_xyz: ArrayFloat
    xyz_to_rgb: ArrayFloat


PROFILE_DEFINITIONS: dict[ColorProfile, ProfileDefinition] = {
    ColorProfile.SRGB: ProfileDefinition(srgb_to_linear, linear_to_srgb, SRGB_TO_XYZ, XYZ_TO_SRGB),
    ColorProfile.ADOBE_RGB: ProfileDefinition(adobe_rgb_to_linear, linear_to_adobe_rgb, ADOBE_TO_XYZ, XYZ_TO_ADOBE),
}


def convert_rgb(rgb: ArrayFloat, from_profile: ColorProfile, to_profile: ColorProfile) -> ArrayFloat:
    """
    Convert an (..., 3) array of gamma-encoded values in [0, 1] between working spaces.
    Output is gamma-encoded in the destination space and lies in [0, 1].
    """
    source = PROFILE_DEFINITIONS[from_profile]
    target = PROFILE_DEFINITIONS[to_profile]
    linear = source.to_linear(rgb)
    xyz = np.dot(linear, source.rgb_to_xyz.T)
    target_linear = np.dot(xyz, target.xyz_to_rgb.T)
    return target.from_linear(target_linear)


def convert_color_space(pixels: PixelBuffer, from_profile: ColorProfile, to_profile: ColorProfile) -> PixelBuffer:
    """Convert RGB samples in place. Alpha is untouched; equal profiles leave the buffer as is."""
    from_profile = resolve_working_profile(from_profile)
    to_profile = resolve_working_profile(to_profile)
    if from_profile == to_profile:
        return pixels

    samples = np.frombuffer(pixels.data, dtype=np.uint8).reshape(-1, 4)
    rgb = samples[:, :3].astype(np.float64) / 255.0
    converted = convert_rgb(rgb, from_profile, to_profile)
    # Round half up; clamp01 inside from_linear keeps this within 0..255
    samples[:, :3] = np.floor(converted * 255.0 + 0.5).astype(np.uint8)
    logger.debug(
        "Converted %sx%s pixels from %s to %s", pixels.width, pixels.height, from_profile.value, to_profile.value
    )
    return pixels
