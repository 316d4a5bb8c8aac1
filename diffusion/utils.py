# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Diffusion utilities — noise helpers, guidance, and schedule builders.

Shared helpers used across schedulers and pipelines:

- ``randn_tensor``              — seeded standard-normal float32 noise.
- ``combine_guidance``          — classifier-free guidance combination.
- ``classifier_free_guidance``  — run a model with CFG in one call.
- ``get_beta_schedule``         — public API for building β schedules.
- ``check_shape``               — raise ``ShapeMismatchError`` on mismatch.
"""
from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from latentloop.errors import ConfigurationError, ShapeMismatchError
from latentloop.options import BetaSchedule, validate_beta_range


# ═════════════════════════════════════════════════════════════════════
#  Noise generation
# ═════════════════════════════════════════════════════════════════════

def randn_tensor(
    shape: Union[Tuple[int, ...], Sequence[int]],
    seed: Optional[int] = None,
    dtype: np.dtype = np.float32,
) -> np.ndarray:
    """Generate an array filled with standard normal noise.

    Args:
        shape:  Shape of the output array.
        seed:   Optional seed for reproducibility.
        dtype:  NumPy dtype (default ``float32``).

    Returns:
        An array with i.i.d. N(0, 1) entries.
    """
    rng = np.random.default_rng(seed)
    return rng.standard_normal(tuple(shape), dtype=np.float32).astype(
        dtype, copy=False)


def check_shape(tensor: np.ndarray, expected: Sequence[int],
                what: str = 'tensor') -> np.ndarray:
    if tuple(tensor.shape) != tuple(expected):
        raise ShapeMismatchError(expected, tensor.shape, what)
    return tensor


# ═════════════════════════════════════════════════════════════════════
#  Classifier-Free Guidance
# ═════════════════════════════════════════════════════════════════════

def combine_guidance(
    noise_cond: np.ndarray,
    noise_uncond: Optional[np.ndarray],
    guidance_scale: float,
) -> np.ndarray:
    """Combine conditional and unconditional predictions::

        guided = uncond + guidance_scale * (cond - uncond)

    With ``guidance_scale == 1`` (or no unconditional prediction) the
    conditional prediction is returned unchanged.
    """
    if guidance_scale == 1.0 or noise_uncond is None:
        return noise_cond
    check_shape(noise_uncond, noise_cond.shape, 'unconditional prediction')
    guided = noise_uncond + guidance_scale * (noise_cond - noise_uncond)
    return guided.astype(np.float32, copy=False)


def classifier_free_guidance(
    model,
    latents: np.ndarray,
    timestep: int,
    prompt_embeds: np.ndarray,
    negative_prompt_embeds: np.ndarray,
    guidance_scale: float = 7.5,
) -> np.ndarray:
    """Run a denoising model with classifier-free guidance.

    Performs two forward passes (conditional + unconditional), checks
    both against the latent shape and combines them with
    :func:`combine_guidance`.

    Args:
        model:                  Inference callable
                                ``(latents, conditioning, timestep)``.
        latents:                (B, …) current (scaled) noisy sample.
        timestep:               Current diffusion timestep.
        prompt_embeds:          Conditional prompt embeddings.
        negative_prompt_embeds: Unconditional prompt embeddings.
        guidance_scale:         CFG weight (1.0 = no guidance).

    Returns:
        (B, …) guided noise prediction.
    """
    noise_cond = check_shape(
        np.asarray(model(latents, prompt_embeds, timestep), dtype=np.float32),
        latents.shape, 'conditional prediction')
    noise_uncond = check_shape(
        np.asarray(model(latents, negative_prompt_embeds, timestep),
                   dtype=np.float32),
        latents.shape, 'unconditional prediction')
    return combine_guidance(noise_cond, noise_uncond, guidance_scale)


# ═════════════════════════════════════════════════════════════════════
#  Beta-schedule builder (public API)
# ═════════════════════════════════════════════════════════════════════

def _alpha_bar_cosine(t: float) -> float:
    return math.cos((t + 0.008) / 1.008 * math.pi / 2) ** 2


def get_beta_schedule(
    schedule: Union[str, BetaSchedule],
    num_timesteps: int = 1000,
    beta_start: float = 0.0001,
    beta_end: float = 0.02,
    maximum_beta: float = 0.999,
) -> np.ndarray:
    """Construct a beta noise schedule.

    Args:
        schedule:       One of ``'linear'``, ``'scaled_linear'``,
                        ``'squaredcos_cap_v2'``.
        num_timesteps:  Number of diffusion timesteps.
        beta_start:     Starting beta value (for linear / scaled_linear).
        beta_end:       Ending beta value.
        maximum_beta:   Cap for the cosine-squared schedule.

    Returns:
        1-D float32 numpy array of length ``num_timesteps``.
    """
    try:
        schedule = BetaSchedule(schedule)
    except ValueError:
        raise ConfigurationError(
            f"Unknown beta schedule: {schedule!r}") from None
    if num_timesteps <= 0:
        raise ConfigurationError(
            f"num_timesteps must be positive, got {num_timesteps}")
    validate_beta_range(beta_start, beta_end)

    if schedule is BetaSchedule.LINEAR:
        return np.linspace(beta_start, beta_end, num_timesteps,
                           dtype=np.float32)
    if schedule is BetaSchedule.SCALED_LINEAR:
        return (np.linspace(beta_start ** 0.5, beta_end ** 0.5,
                            num_timesteps, dtype=np.float32) ** 2)
    betas = [
        min(1.0 - _alpha_bar_cosine((i + 1) / num_timesteps)
            / _alpha_bar_cosine(i / num_timesteps), maximum_beta)
        for i in range(num_timesteps)
    ]
    return np.asarray(betas, dtype=np.float32)


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'randn_tensor',
    'check_shape',
    'combine_guidance',
    'classifier_free_guidance',
    'get_beta_schedule',
]
