# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Diffusion pipeline — the end-to-end generation loop.

:class:`DiffusionPipeline` orchestrates one generation over a
:class:`~latentloop.diffusion.models.ModelSet`:

1. Build a private scheduler from the :class:`SchedulerOptions`.
2. Encode the prompt (and the negative prompt when guidance is on).
3. Initialise latents — pure noise for text-to-image, or the encoded
   source image noised to a ``strength``-dependent timestep for
   image-to-image.
4. Iterate the timesteps: scale input → inference (×2 with guidance) →
   guidance combination → scheduler step → progress → cancellation check.
5. Return the final latents.

Cancellation is checked once before the first step and once after every
completed step; a set signal raises
:class:`~latentloop.errors.GenerationCancelled` and no latents are
returned.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

import numpy as np
from loguru import logger
from tqdm.auto import tqdm

from latentloop.diffusion.models import ModelSet
from latentloop.diffusion.schedulers import SchedulerBase, create_scheduler
from latentloop.diffusion.utils import (
    check_shape,
    classifier_free_guidance,
    randn_tensor,
)
from latentloop.errors import ConfigurationError, GenerationCancelled
from latentloop.options import PromptOptions, SchedulerOptions


class CancellationSignal(Protocol):
    """Anything with ``is_set()`` — typically a :class:`threading.Event`."""

    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class DiffusionProgress:
    """Snapshot emitted after each completed step.

    ``preview`` is a read-only view of the current latents; copy it if it
    must outlive the callback.
    """

    step: int
    total_steps: int
    timestep: int
    preview: Optional[np.ndarray] = None


ProgressCallback = Callable[[DiffusionProgress], None]


def _readonly_view(latents: np.ndarray) -> np.ndarray:
    view = latents.view()
    view.flags.writeable = False
    return view


# ═════════════════════════════════════════════════════════════════════
#  DiffusionPipeline
# ═════════════════════════════════════════════════════════════════════

class DiffusionPipeline:
    """Runs complete generations against one model set.

    The pipeline holds no per-run state: every :meth:`run` builds its own
    scheduler and tensors, so one pipeline may serve consecutive runs.

    Args:
        model_set:     Collaborators and latent geometry.
        show_progress: Display a ``tqdm`` bar over the denoising loop.
    """

    def __init__(self, model_set: ModelSet, show_progress: bool = False):
        self.model_set = model_set
        self.show_progress = show_progress

    # ---- building blocks ----

    def encode_prompt(
        self,
        prompt: PromptOptions,
        options: SchedulerOptions,
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Return ``(conditional, unconditional)`` embeddings.

        The unconditional embedding is only computed when guidance is on.
        """
        encoder = self.model_set.prompt_encoder
        cond = np.asarray(encoder(prompt.prompt), dtype=np.float32)
        uncond = None
        if options.guidance_enabled:
            uncond = np.asarray(encoder(prompt.negative_prompt),
                                dtype=np.float32)
        return cond, uncond

    def prepare_latents(
        self,
        prompt: PromptOptions,
        options: SchedulerOptions,
        scheduler: SchedulerBase,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Create initial latents and the timesteps left to run.

        Text-to-image starts from ``randn * init_noise_sigma`` over the full
        schedule.  Image-to-image keeps the last ``int(N * strength)``
        timesteps and noises the encoded image to the first of them.
        """
        shape = self.model_set.latent_shape(
            prompt.batch_count, options.height, options.width)
        noise = randn_tensor(shape, seed=options.seed)

        if not prompt.is_image_to_image:
            latents = (noise * np.float32(scheduler.init_noise_sigma)).astype(
                np.float32, copy=False)
            return latents, scheduler.timesteps

        if self.model_set.vae_encoder is None:
            raise ConfigurationError(
                f"model set {self.model_set.name!r} has no vae_encoder; "
                "image_to_image is unavailable")

        total = len(scheduler.timesteps)
        init_steps = min(int(total * options.strength), total)
        if init_steps == 0:
            raise ConfigurationError(
                f"strength {options.strength} leaves no denoising steps "
                f"out of {total}")
        begin = total - init_steps
        scheduler.set_begin_index(begin)
        timesteps = scheduler.timesteps[begin:]

        image_latents = np.asarray(
            self.model_set.vae_encoder(prompt.input_image), dtype=np.float32)
        image_latents = image_latents * np.float32(self.model_set.scaling_factor)
        if image_latents.shape[0] == 1 and shape[0] > 1:
            image_latents = np.repeat(image_latents, shape[0], axis=0)
        check_shape(image_latents, shape, 'encoded image latents')

        latents = scheduler.add_noise(image_latents, noise, timesteps[:1])
        return latents, timesteps

    def predict_noise(
        self,
        latents: np.ndarray,
        timestep: int,
        cond: np.ndarray,
        uncond: Optional[np.ndarray],
        guidance_scale: float,
    ) -> np.ndarray:
        """One (or, with guidance, two) inference calls for ``timestep``."""
        unet = self.model_set.unet
        if uncond is None:
            noise_pred = np.asarray(unet(latents, cond, timestep),
                                    dtype=np.float32)
            return check_shape(noise_pred, latents.shape, 'noise prediction')
        return classifier_free_guidance(unet, latents, timestep, cond,
                                        uncond, guidance_scale)

    def decode_latents(self, latents: np.ndarray):
        """Decode latent-space tensor through the VAE decoder, if any."""
        decoder = self.model_set.vae_decoder
        if decoder is None:
            return latents
        z = (latents / np.float32(self.model_set.scaling_factor)).astype(
            np.float32)
        return decoder(z)

    def progress_bar(self, total: int, desc: str = ''):
        return tqdm(total=total, desc=desc, leave=False,
                    disable=not self.show_progress)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[CancellationSignal],
                         completed: int, total: int) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.warning(
                f"Generation cancelled after {completed}/{total} steps")
            raise GenerationCancelled(completed, total)

    # ---- main entry point ----

    def run(
        self,
        prompt: PromptOptions,
        options: SchedulerOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[CancellationSignal] = None,
    ) -> np.ndarray:
        """Run one complete generation and return the final latents.

        Raises:
            ConfigurationError:  Invalid options for this model set.
            ShapeMismatchError:  A collaborator returned a wrongly shaped
                                 tensor.
            StateViolationError: Scheduler stepped out of order.
            GenerationCancelled: ``cancel_event`` was set.
        """
        scheduler = create_scheduler(options)
        cond, uncond = self.encode_prompt(prompt, options)
        latents, timesteps = self.prepare_latents(prompt, options, scheduler)
        total = len(timesteps)

        logger.info(
            f"Generating {prompt.diffuser_type.value} with "
            f"{type(scheduler).__name__}: {total} steps, "
            f"guidance {options.guidance_scale}, seed {options.seed}")
        started = time.perf_counter()

        self._check_cancelled(cancel_event, 0, total)
        with self.progress_bar(total, desc=type(scheduler).__name__) as bar:
            for i, t in enumerate(timesteps):
                t = int(t)
                model_input = scheduler.scale_model_input(latents, t)
                noise_pred = self.predict_noise(
                    model_input, t, cond, uncond, options.guidance_scale)
                latents = scheduler.step(noise_pred, t, latents)
                bar.update(1)

                if progress_callback is not None:
                    progress_callback(DiffusionProgress(
                        i + 1, total, t, _readonly_view(latents)))
                self._check_cancelled(cancel_event, i + 1, total)

        logger.info(
            f"Generation finished in {time.perf_counter() - started:.2f}s")
        return latents

    __call__ = run


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'CancellationSignal',
    'DiffusionProgress',
    'DiffusionPipeline',
    'ProgressCallback',
]
