# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Collaborator interfaces and the model-set container.

The sampling core never runs a network itself.  It reaches the outside
world through four narrow callables:

- **InferenceModel** — ``(latents, conditioning, timestep) → noise
  prediction`` of the same shape as ``latents`` (the UNet / DiT).
- **PromptEncoder** — ``prompt → conditioning tensor``.
- **LatentEncoder** — ``image → latent`` (VAE encoder, image-to-image).
- **LatentDecoder** — ``latent → image`` (VAE decoder).

A :class:`ModelSet` bundles them with the latent geometry the pipeline
needs, plus optional load / unload hooks used by the service layer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Tuple, runtime_checkable

import numpy as np


@runtime_checkable
class InferenceModel(Protocol):
    def __call__(self, latents: np.ndarray, conditioning: np.ndarray,
                 timestep: int) -> np.ndarray: ...


@runtime_checkable
class PromptEncoder(Protocol):
    def __call__(self, prompt: str) -> np.ndarray: ...


@runtime_checkable
class LatentEncoder(Protocol):
    def __call__(self, image: np.ndarray) -> np.ndarray: ...


@runtime_checkable
class LatentDecoder(Protocol):
    def __call__(self, latents: np.ndarray) -> Any: ...


@dataclass
class ModelSet:
    """Everything one generation needs from the outside world.

    Args:
        name:            Unique name, used by the service's load registry.
        unet:            Noise-prediction callable.
        prompt_encoder:  Prompt → conditioning callable.
        vae_encoder:     Image → latent callable (image-to-image only).
        vae_decoder:     Latent → image callable.
        latent_channels: Channels in latent space (4 for SD).
        scale_factor:    Spatial down-sampling of the VAE (8 for SD).
        scaling_factor:  Multiplied with encoded latents; decoded latents
                         are divided by it first.
        on_load:         Called by ``DiffusionService.load_model``.
        on_unload:       Called by ``DiffusionService.unload_model``.
    """

    name: str
    unet: InferenceModel
    prompt_encoder: PromptEncoder
    vae_encoder: Optional[LatentEncoder] = None
    vae_decoder: Optional[LatentDecoder] = None
    latent_channels: int = 4
    scale_factor: int = 8
    scaling_factor: float = 0.18215
    on_load: Optional[Callable[['ModelSet'], None]] = field(
        default=None, repr=False, compare=False)
    on_unload: Optional[Callable[['ModelSet'], None]] = field(
        default=None, repr=False, compare=False)

    def latent_shape(self, batch: int, height: int,
                     width: int) -> Tuple[int, int, int, int]:
        return (batch, self.latent_channels,
                height // self.scale_factor, width // self.scale_factor)


__all__ = [
    'InferenceModel',
    'PromptEncoder',
    'LatentEncoder',
    'LatentDecoder',
    'ModelSet',
]
