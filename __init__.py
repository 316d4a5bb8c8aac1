# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
Latentloop — the noise-schedule / solver core of latent diffusion sampling.

Given a noisy latent, a model that predicts noise, and a solver family,
latentloop runs the denoising loop: schedule construction, per-step
solver updates, classifier-free guidance, progress reporting,
cancellation and lazy batch sweeps.  Networks, prompt encoders and
image codecs are plugged in as plain callables.

Usage::

    import latentloop
    from latentloop import (
        DiffusionService, ModelSet,
        PromptOptions, SchedulerOptions, BatchOptions,
    )

    options = SchedulerOptions(scheduler_type='lms', inference_steps=25)
    scheduler = latentloop.create_scheduler(options)
"""
from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Pictofeed, LLC"

# ── Errors ──
from .errors import (
    DiffusionError,
    ConfigurationError,
    StateViolationError,
    ShapeMismatchError,
    ModelNotLoadedError,
    GenerationCancelled,
)

# ── Options ──
from .options import (
    SchedulerType,
    BetaSchedule,
    TimestepSpacing,
    PredictionType,
    DiffuserType,
    BatchOptionType,
    SchedulerOptions,
    PromptOptions,
    BatchOptions,
)

# ── Core ──
from .diffusion import (
    NoiseSchedule,
    SchedulerBase,
    create_scheduler,
    ModelSet,
    DiffusionPipeline,
    DiffusionProgress,
    BatchDriver,
    BatchResult,
)
from .service import DiffusionService

# ── Sub-packages ──
from . import diffusion

__all__ = [
    "__version__",
    "__author__",

    # Errors
    'DiffusionError', 'ConfigurationError', 'StateViolationError',
    'ShapeMismatchError', 'ModelNotLoadedError', 'GenerationCancelled',

    # Options
    'SchedulerType', 'BetaSchedule', 'TimestepSpacing', 'PredictionType',
    'DiffuserType', 'BatchOptionType',
    'SchedulerOptions', 'PromptOptions', 'BatchOptions',

    # Core
    'NoiseSchedule', 'SchedulerBase', 'create_scheduler',
    'ModelSet', 'DiffusionPipeline', 'DiffusionProgress',
    'BatchDriver', 'BatchResult',
    'DiffusionService',

    # Sub-packages
    'diffusion',
]
