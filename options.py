# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Option objects passed to schedulers, pipelines and the batch driver.

All options are frozen dataclasses validated on construction; an invalid
value raises :class:`~latentloop.errors.ConfigurationError` immediately
instead of surfacing mid-run.  Enumerated fields accept either the enum
member or its string value::

    opts = SchedulerOptions(scheduler_type='euler', inference_steps=20)
    opts = SchedulerOptions.from_dict({'scheduler_type': 'lms', 'seed': 7})
"""
from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Type, TypeVar

import numpy as np

from latentloop.errors import ConfigurationError


# ═════════════════════════════════════════════════════════════════════
#  Enumerations
# ═════════════════════════════════════════════════════════════════════

class SchedulerType(str, Enum):
    """Solver families available through :func:`create_scheduler`."""
    DDPM = 'ddpm'
    DDIM = 'ddim'
    EULER = 'euler'
    EULER_ANCESTRAL = 'euler_ancestral'
    LMS = 'lms'
    PNDM = 'pndm'
    DPM_SOLVER_MULTISTEP = 'dpmsolver_multistep'


class BetaSchedule(str, Enum):
    LINEAR = 'linear'
    SCALED_LINEAR = 'scaled_linear'
    SQUARED_COS_CAP_V2 = 'squaredcos_cap_v2'


class TimestepSpacing(str, Enum):
    LINSPACE = 'linspace'
    LEADING = 'leading'
    TRAILING = 'trailing'


class PredictionType(str, Enum):
    EPSILON = 'epsilon'
    V_PREDICTION = 'v_prediction'
    SAMPLE = 'sample'


class DiffuserType(str, Enum):
    TEXT_TO_IMAGE = 'text_to_image'
    IMAGE_TO_IMAGE = 'image_to_image'


class BatchOptionType(str, Enum):
    """Which SchedulerOptions field a batch sweeps."""
    SEED = 'seed'
    STRENGTH = 'strength'
    STEP = 'step'
    GUIDANCE = 'guidance'


_E = TypeVar('_E', bound=Enum)


def _coerce_enum(enum_cls: Type[_E], value: Any, name: str) -> _E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        choices = ', '.join(repr(m.value) for m in enum_cls)
        raise ConfigurationError(
            f"Unknown {name}: {value!r} (expected one of {choices})"
        ) from None


def _from_mapping(cls, data: Mapping[str, Any]):
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        raise ConfigurationError(
            f"Unknown {cls.__name__} field(s): {', '.join(unknown)}")
    return cls(**data)


# ═════════════════════════════════════════════════════════════════════
#  SchedulerOptions
# ═════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SchedulerOptions:
    """Noise-schedule, solver and sampling configuration for one run.

    Args:
        scheduler_type:   Solver family.
        inference_steps:  Number of denoising steps N.
        train_timesteps:  Trained diffusion timesteps T (1000 by convention).
        beta_start / beta_end: Beta range; both positive, start < end.
        beta_schedule:    ``'linear'``, ``'scaled_linear'`` or
                          ``'squaredcos_cap_v2'``.
        maximum_beta:     Cap applied by the cosine-squared schedule.
        guidance_scale:   Classifier-free guidance weight (1.0 = disabled).
        strength:         Fraction of the schedule applied in image-to-image.
        eta:              Stochasticity; ``None`` selects the family default.
        seed:             Seed for initial noise and stochastic steps.
        solver_order:     History depth for multistep solvers; ``None``
                          selects the family default.
        timestep_spacing: ``'trailing'``, ``'leading'`` or ``'linspace'``.
        steps_offset:     Offset added to ``'leading'`` timesteps.
        prediction_type:  What the model predicts.
        clip_sample:      Clip the predicted x₀ to ``±clip_sample_range``.
        set_alpha_to_one: Use ᾱ = 1 past the final timestep (DDIM / PNDM).
        width / height:   Output size in pixels (multiples of 8).
    """

    scheduler_type: SchedulerType = SchedulerType.DDIM
    inference_steps: int = 30
    train_timesteps: int = 1000
    beta_start: float = 0.00085
    beta_end: float = 0.012
    beta_schedule: BetaSchedule = BetaSchedule.SCALED_LINEAR
    maximum_beta: float = 0.999
    guidance_scale: float = 7.5
    strength: float = 0.6
    eta: Optional[float] = None
    seed: int = 0
    solver_order: Optional[int] = None
    timestep_spacing: TimestepSpacing = TimestepSpacing.TRAILING
    steps_offset: int = 0
    prediction_type: PredictionType = PredictionType.EPSILON
    clip_sample: bool = False
    clip_sample_range: float = 1.0
    set_alpha_to_one: bool = True
    width: int = 512
    height: int = 512

    def __post_init__(self):
        for name, enum_cls in (('scheduler_type', SchedulerType),
                               ('beta_schedule', BetaSchedule),
                               ('timestep_spacing', TimestepSpacing),
                               ('prediction_type', PredictionType)):
            object.__setattr__(
                self, name, _coerce_enum(enum_cls, getattr(self, name), name))
        self.validate()

    def validate(self) -> None:
        if self.train_timesteps <= 0:
            raise ConfigurationError(
                f"train_timesteps must be positive, got {self.train_timesteps}")
        if self.inference_steps <= 0:
            raise ConfigurationError(
                f"inference_steps must be positive, got {self.inference_steps}")
        if self.inference_steps > self.train_timesteps:
            raise ConfigurationError(
                f"inference_steps ({self.inference_steps}) cannot exceed "
                f"train_timesteps ({self.train_timesteps})")
        validate_beta_range(self.beta_start, self.beta_end)
        if not 0.0 < self.maximum_beta < 1.0:
            raise ConfigurationError(
                f"maximum_beta must lie in (0, 1), got {self.maximum_beta}")
        if not 0.0 < self.strength <= 1.0:
            raise ConfigurationError(
                f"strength must lie in (0, 1], got {self.strength}")
        if self.guidance_scale < 0:
            raise ConfigurationError(
                f"guidance_scale must be non-negative, got {self.guidance_scale}")
        if self.eta is not None and self.eta < 0:
            raise ConfigurationError(f"eta must be non-negative, got {self.eta}")
        if self.seed < 0:
            raise ConfigurationError(f"seed must be non-negative, got {self.seed}")
        if self.solver_order is not None and self.solver_order < 1:
            raise ConfigurationError(
                f"solver_order must be >= 1, got {self.solver_order}")
        if self.steps_offset < 0:
            raise ConfigurationError(
                f"steps_offset must be non-negative, got {self.steps_offset}")
        if self.clip_sample_range <= 0:
            raise ConfigurationError("clip_sample_range must be positive")
        for name in ('width', 'height'):
            size = getattr(self, name)
            if size <= 0 or size % 8:
                raise ConfigurationError(
                    f"{name} must be a positive multiple of 8, got {size}")

    @property
    def guidance_enabled(self) -> bool:
        return self.guidance_scale != 1.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SchedulerOptions':
        """Build options from a plain mapping (e.g. parsed JSON / YAML)."""
        return _from_mapping(cls, data)

    def to_dict(self) -> dict:
        out = dataclasses.asdict(self)
        for key, value in out.items():
            if isinstance(value, Enum):
                out[key] = value.value
        return out


def validate_beta_range(beta_start: float, beta_end: float) -> None:
    if beta_start <= 0 or beta_end <= 0:
        raise ConfigurationError(
            f"beta bounds must be positive, got ({beta_start}, {beta_end})")
    if beta_start >= beta_end:
        raise ConfigurationError(
            f"beta_start ({beta_start}) must be below beta_end ({beta_end})")


# ═════════════════════════════════════════════════════════════════════
#  PromptOptions
# ═════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PromptOptions:
    """What to generate.

    ``input_image`` is the source image handed to the model set's latent
    encoder for image-to-image runs; it is required for that diffuser type
    and ignored otherwise.
    """

    prompt: str = ''
    negative_prompt: str = ''
    diffuser_type: DiffuserType = DiffuserType.TEXT_TO_IMAGE
    input_image: Optional[np.ndarray] = field(default=None, compare=False)
    batch_count: int = 1

    def __post_init__(self):
        object.__setattr__(
            self, 'diffuser_type',
            _coerce_enum(DiffuserType, self.diffuser_type, 'diffuser_type'))
        if self.batch_count < 1:
            raise ConfigurationError(
                f"batch_count must be >= 1, got {self.batch_count}")
        if (self.diffuser_type is DiffuserType.IMAGE_TO_IMAGE
                and self.input_image is None):
            raise ConfigurationError(
                "image_to_image generation requires an input_image")

    @property
    def is_image_to_image(self) -> bool:
        return self.diffuser_type is DiffuserType.IMAGE_TO_IMAGE


# ═════════════════════════════════════════════════════════════════════
#  BatchOptions
# ═════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BatchOptions:
    """A deterministic parameter sweep.

    Value *i* of the sweep is ``start + i * increment`` for
    ``i in range(count)``.  ``seed`` and ``step`` sweeps are integral.

    Args:
        mode:             Field to sweep.
        start:            First value.
        increment:        Distance between consecutive values.
        count:            Number of generations.
        isolate_failures: Report per-item ``DiffusionError``s in the
                          result instead of stopping the sweep.
    """

    mode: BatchOptionType = BatchOptionType.SEED
    start: float = 0
    increment: float = 1
    count: int = 1
    isolate_failures: bool = False

    def __post_init__(self):
        object.__setattr__(
            self, 'mode', _coerce_enum(BatchOptionType, self.mode, 'mode'))
        if self.count < 1:
            raise ConfigurationError(f"count must be >= 1, got {self.count}")
        for name in ('start', 'increment'):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ConfigurationError(f"{name} must be finite, got {value}")
        if self.count > 1 and self.increment == 0:
            raise ConfigurationError(
                "increment must be non-zero when count > 1")
        if self.is_integral:
            for name in ('start', 'increment'):
                value = getattr(self, name)
                if float(value) != int(value):
                    raise ConfigurationError(
                        f"{self.mode.value} sweeps need an integral "
                        f"{name}, got {value}")

    @property
    def is_integral(self) -> bool:
        return self.mode in (BatchOptionType.SEED, BatchOptionType.STEP)

    def values(self) -> list:
        """All sweep values, in order."""
        if self.is_integral:
            start, inc = int(self.start), int(self.increment)
            return [start + i * inc for i in range(self.count)]
        return [float(self.start) + i * float(self.increment)
                for i in range(self.count)]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'BatchOptions':
        return _from_mapping(cls, data)


__all__ = [
    'SchedulerType',
    'BetaSchedule',
    'TimestepSpacing',
    'PredictionType',
    'DiffuserType',
    'BatchOptionType',
    'SchedulerOptions',
    'PromptOptions',
    'BatchOptions',
    'validate_beta_range',
]
