"""Target language management module.

This module provides the factory creating a generation target for a platform.
"""

from fslc.compiler.models import NO_FEATURES, Feature, Platform
from fslc.compiler.target.base import GeneratedShader, Target
from fslc.compiler.target.glsl import GLSLTarget
from fslc.compiler.target.hlsl import HLSLTarget
from fslc.compiler.target.msl import MSLTarget

TARGET_CLASSES: dict[Platform, type[Target]] = {
    Platform.DIRECT3D12: HLSLTarget,
    Platform.VULKAN: GLSLTarget,
    Platform.ANDROID_VULKAN: GLSLTarget,
    Platform.MACOS: MSLTarget,
    Platform.IOS: MSLTarget,
}


def create_target(platform: Platform, features: Feature = NO_FEATURES) -> Target:
    """Create a fresh target for one generated shader.

    Args:
        platform: Target platform
        features: Feature flag set of the variant being generated

    Returns:
        A new Target instance

    Raises:
        ValueError: If the platform is not supported
    """
    try:
        return TARGET_CLASSES[platform](platform, features)
    except KeyError:
        raise ValueError(f"Unsupported platform: {platform}") from None


__all__ = [
    "GLSLTarget",
    "GeneratedShader",
    "HLSLTarget",
    "MSLTarget",
    "Target",
    "create_target",
]
