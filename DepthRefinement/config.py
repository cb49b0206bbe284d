"""
Configuration management for depth map refinement.

This module provides the refine/tile parameter objects, predefined presets,
validation, and JSON load/save utilities.
"""

import copy
import json
import os
from dataclasses import dataclass, asdict, fields
from typing import Dict, List, Any, Literal

from .logger import get_logger

logger = get_logger("config")


# =============================================================================
# Default Configurations
# =============================================================================


DEFAULT_REFINE_PARAMS = {
    'scale': 1,
    'step_xy': 1,
    'half_nb_depths': 15,
    'depth_step': 1.0,
    'wsh': 3,
    'gamma_c': 15.5,
    'gamma_p': 8.0,
    'subpixel_method': 'parabola',
    'nb_subsamples': 10,
    'sigma': 15.0,
    'use_refine_fuse': True,
    'use_color_optimization': True,
    'optimization_nb_iterations': 100,
    'optimization_smoothness': 1.0,
    'optimization_photo_weight': 1.0,
    'optimization_anchor_weight': 1.0,
    'optimization_variance_scale': 50.0,
    'optimization_step': 0.5,
    'use_normal_map': False,
    'export_intermediate_depth_sim_maps': False,
    'export_intermediate_cross_volumes': False,
    'export_intermediate_volume_9p_csv': False,
}


PRESET_CONFIGS = {
    'fast': {
        'half_nb_depths': 7,
        'wsh': 2,
        'optimization_nb_iterations': 20,
    },

    'balanced': {},

    'quality': {
        'half_nb_depths': 20,
        'wsh': 4,
        'subpixel_method': 'gaussian',
        'optimization_nb_iterations': 200,
    },

    'no_optimization': {
        'use_color_optimization': False,
        'optimization_nb_iterations': 0,
    },
}


SUBPIXEL_METHODS = ('parabola', 'gaussian')


# =============================================================================
# Parameter objects
# =============================================================================


def validate_refine_params(config: Dict[str, Any]) -> Dict[str, List[str]]:
    """
    Validate refine parameters and return any issues

    Args:
        config: Refine parameters as a dictionary

    Returns:
        Dictionary with validation results:
        {
            'errors': [list of error messages],
            'warnings': [list of warning messages]
        }
    """
    errors = []
    warnings = []

    for key in ('scale', 'step_xy'):
        value = config.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            errors.append(f"'{key}' must be a positive integer, got {value!r}")

    half_nb_depths = config.get('half_nb_depths')
    if not isinstance(half_nb_depths, int) or isinstance(half_nb_depths, bool) or half_nb_depths < 1:
        errors.append(f"'half_nb_depths' must be an integer >= 1, got {half_nb_depths!r}")

    nb_iterations = config.get('optimization_nb_iterations')
    if not isinstance(nb_iterations, int) or isinstance(nb_iterations, bool) or nb_iterations < 0:
        errors.append(f"'optimization_nb_iterations' must be a non-negative integer, got {nb_iterations!r}")

    wsh = config.get('wsh')
    if not isinstance(wsh, int) or isinstance(wsh, bool) or wsh < 1:
        errors.append(f"'wsh' must be a positive integer, got {wsh!r}")

    nb_subsamples = config.get('nb_subsamples')
    if not isinstance(nb_subsamples, int) or isinstance(nb_subsamples, bool) or nb_subsamples < 1:
        errors.append(f"'nb_subsamples' must be a positive integer, got {nb_subsamples!r}")

    for key in ('depth_step', 'gamma_c', 'gamma_p', 'sigma', 'optimization_variance_scale'):
        value = config.get(key)
        if not isinstance(value, (int, float)) or value <= 0:
            errors.append(f"'{key}' must be a positive number, got {value!r}")

    for key in ('optimization_smoothness', 'optimization_photo_weight', 'optimization_anchor_weight'):
        value = config.get(key)
        if not isinstance(value, (int, float)) or value < 0:
            errors.append(f"'{key}' must be a non-negative number, got {value!r}")

    step = config.get('optimization_step')
    if not isinstance(step, (int, float)) or not 0 < step <= 1:
        errors.append(f"'optimization_step' must be in (0, 1], got {step!r}")

    if config.get('subpixel_method') not in SUBPIXEL_METHODS:
        errors.append(f"'subpixel_method' must be one of: {list(SUBPIXEL_METHODS)}")

    # Check for ineffective combinations
    if config.get('use_color_optimization') and nb_iterations == 0:
        warnings.append("Color optimization enabled with 0 iterations, optimization is skipped")

    weights = [config.get(k) for k in ('optimization_smoothness', 'optimization_photo_weight',
                                       'optimization_anchor_weight')]
    if config.get('use_color_optimization') and all(w == 0 for w in weights):
        errors.append("At least one optimization weight must be positive")

    if not config.get('use_refine_fuse') and (config.get('export_intermediate_cross_volumes') or
                                              config.get('export_intermediate_volume_9p_csv')):
        warnings.append("Volume exports requested but refine/fuse is disabled, no volume is built")

    return {'errors': errors, 'warnings': warnings}


@dataclass(frozen=True)
class RefineParams:
    """
    Refine step parameters (immutable after construction).

    Attributes:
        scale: Working downscale factor of the images
        step_xy: Pixel stride at the working scale
        half_nb_depths: Half-width of the depth hypothesis window
        depth_step: Spacing between hypotheses, in pixel-size units
        wsh: Half-size of the matching patch
        gamma_c: Bilateral color weighting strength
        gamma_p: Bilateral spatial weighting strength
        subpixel_method: 'parabola' (3-point fit) or 'gaussian' (sliding gaussian)
        nb_subsamples: Gaussian sub-samples per hypothesis
        sigma: Gaussian width, in sub-samples
        use_refine_fuse: Build and fuse the similarity volume (else pass-through)
        use_color_optimization: Run the variance-guided smoothing pass
        optimization_nb_iterations: Smoothing iterations (0 disables)
        use_normal_map: Allocate and upscale a normal map for patch orientation
    """

    scale: int = 1
    step_xy: int = 1
    half_nb_depths: int = 15
    depth_step: float = 1.0
    wsh: int = 3
    gamma_c: float = 15.5
    gamma_p: float = 8.0
    subpixel_method: Literal['parabola', 'gaussian'] = 'parabola'
    nb_subsamples: int = 10
    sigma: float = 15.0
    use_refine_fuse: bool = True
    use_color_optimization: bool = True
    optimization_nb_iterations: int = 100
    optimization_smoothness: float = 1.0
    optimization_photo_weight: float = 1.0
    optimization_anchor_weight: float = 1.0
    optimization_variance_scale: float = 50.0
    optimization_step: float = 0.5
    use_normal_map: bool = False
    export_intermediate_depth_sim_maps: bool = False
    export_intermediate_cross_volumes: bool = False
    export_intermediate_volume_9p_csv: bool = False

    def __post_init__(self):
        self.check()

    @property
    def nb_depths_to_refine(self) -> int:
        """Number of depth hypotheses per pixel"""
        return self.half_nb_depths * 2 + 1

    @property
    def downscale(self) -> int:
        """Full resolution to working resolution factor"""
        return self.scale * self.step_xy

    @property
    def use_optimization(self) -> bool:
        return self.use_color_optimization and self.optimization_nb_iterations > 0

    @property
    def export_volume(self) -> bool:
        return self.export_intermediate_cross_volumes or self.export_intermediate_volume_9p_csv

    def check(self):
        """Raise ValueError on invalid parameter combinations"""
        issues = validate_refine_params(self.to_dict())
        if issues['errors']:
            raise ValueError("Invalid refine parameters: " + "; ".join(issues['errors']))
        for warning in issues['warnings']:
            logger.warning(warning)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "RefineParams":
        """Create parameters from a dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            logger.warning(f"Ignoring unknown refine parameters: {sorted(unknown)}")
        return cls(**{k: v for k, v in config.items() if k in known})


@dataclass(frozen=True)
class TileParams:
    """
    Tiling dimensions of a depth map job.

    Attributes:
        buffer_width: Maximum tile width at full resolution
        buffer_height: Maximum tile height at full resolution
        padding: Overlap between neighbouring tiles at full resolution
    """

    buffer_width: int = 1024
    buffer_height: int = 1024
    padding: int = 128

    def __post_init__(self):
        if self.buffer_width < 1 or self.buffer_height < 1:
            raise ValueError(
                f"Tile buffer dimensions must be positive, got {self.buffer_width}x{self.buffer_height}"
            )
        if self.padding < 0:
            raise ValueError(f"Tile padding must be non-negative, got {self.padding}")


# =============================================================================
# Configuration Functions
# =============================================================================

def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge two configuration dictionaries

    Args:
        base_config: Base configuration
        override_config: Configuration to override base with

    Returns:
        Merged configuration
    """
    merged = copy.deepcopy(base_config)

    for key, value in override_config.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)

    return merged


def create_params_from_preset(preset: str, **overrides) -> RefineParams:
    """
    Create refine parameters from a preset

    Args:
        preset: Preset name ('fast', 'balanced', 'quality', 'no_optimization')
        **overrides: Individual parameters overriding the preset

    Returns:
        RefineParams

    Raises:
        ValueError: If preset is not available
    """
    if preset not in PRESET_CONFIGS:
        available = ', '.join(PRESET_CONFIGS.keys())
        raise ValueError(f"Unknown preset: {preset}. Available: {available}")

    config = merge_configs(DEFAULT_REFINE_PARAMS, PRESET_CONFIGS[preset])
    config = merge_configs(config, overrides)
    return RefineParams.from_dict(config)


def save_params(params: RefineParams, filepath: str):
    """
    Save refine parameters to JSON file

    Args:
        params: Parameters to save
        filepath: Path to save file
    """
    with open(filepath, 'w') as f:
        json.dump(params.to_dict(), f, indent=2)
    logger.info(f"Refine parameters saved to: {filepath}")


def load_params(filepath: str) -> RefineParams:
    """
    Load refine parameters from JSON file

    Missing keys take their default values.

    Args:
        filepath: Path to configuration file

    Returns:
        Loaded parameters

    Raises:
        FileNotFoundError: If file doesn't exist
        json.JSONDecodeError: If file is not valid JSON
        ValueError: If the parameters are invalid
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    with open(filepath, 'r') as f:
        config = json.load(f)

    params = RefineParams.from_dict(merge_configs(DEFAULT_REFINE_PARAMS, config))
    logger.info(f"Refine parameters loaded from: {filepath}")
    return params
