# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""latentloop.diffusion — Noise schedules, solvers, and the sampling loop.

Provides noise schedulers (DDPM, DDIM, PNDM, DPM-Solver++, Euler,
Euler ancestral, LMS), the generation pipeline that drives them, and a
lazy batch driver for parameter sweeps.

Usage::

    from latentloop.diffusion import (
        create_scheduler,
        DDIMScheduler,
        EulerDiscreteScheduler,
        DiffusionPipeline,
        BatchDriver,
        ModelSet,
    )
"""
from __future__ import annotations

# ── Schedulers ──
from .schedulers import (
    NoiseSchedule,
    StepHistory,
    SchedulerBase,
    DDPMScheduler,
    DDIMScheduler,
    PNDMScheduler,
    DPMSolverMultistepScheduler,
    EulerDiscreteScheduler,
    EulerAncestralDiscreteScheduler,
    LMSDiscreteScheduler,
    SCHEDULERS,
    compute_timesteps,
    create_scheduler,
)

# ── Collaborators ──
from .models import (
    InferenceModel,
    PromptEncoder,
    LatentEncoder,
    LatentDecoder,
    ModelSet,
)

# ── Pipelines ──
from .pipelines import (
    CancellationSignal,
    DiffusionProgress,
    DiffusionPipeline,
    ProgressCallback,
)
from .batch import BatchDriver, BatchResult

# ── Utilities ──
from .utils import (
    randn_tensor,
    check_shape,
    combine_guidance,
    classifier_free_guidance,
    get_beta_schedule,
)

__all__ = [
    # Schedulers
    'NoiseSchedule',
    'StepHistory',
    'SchedulerBase',
    'DDPMScheduler',
    'DDIMScheduler',
    'PNDMScheduler',
    'DPMSolverMultistepScheduler',
    'EulerDiscreteScheduler',
    'EulerAncestralDiscreteScheduler',
    'LMSDiscreteScheduler',
    'SCHEDULERS',
    'compute_timesteps',
    'create_scheduler',
    # Collaborators
    'InferenceModel',
    'PromptEncoder',
    'LatentEncoder',
    'LatentDecoder',
    'ModelSet',
    # Pipelines
    'CancellationSignal',
    'DiffusionProgress',
    'DiffusionPipeline',
    'ProgressCallback',
    'BatchDriver',
    'BatchResult',
    # Utilities
    'randn_tensor',
    'check_shape',
    'combine_guidance',
    'classifier_free_guidance',
    'get_beta_schedule',
]
