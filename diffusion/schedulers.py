# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Noise schedules and solver state machines.

Every scheduler is built from one :class:`SchedulerOptions` and owns a
fixed :class:`NoiseSchedule`, a fixed, strictly decreasing ``timesteps``
array and a small amount of mutable stepping state.  ``step`` must be fed
the timesteps in exact order; anything else raises
:class:`StateViolationError`.

Solver families:

- **DDPMScheduler** — ancestral posterior sampling (Ho et al. 2020)
- **DDIMScheduler** — implicit sampling, stochastic when ``eta > 0``
  (Song et al. 2020)
- **EulerDiscreteScheduler** — Euler method on the probability-flow ODE
- **EulerAncestralDiscreteScheduler** — Euler with ancestral noise
- **LMSDiscreteScheduler** — linear multistep over sigma-space derivatives
- **PNDMScheduler** — pseudo linear multistep (Liu et al. 2022)
- **DPMSolverMultistepScheduler** — DPM-Solver++ (Lu et al. 2022)

Alpha-parameterized families (DDPM, DDIM, PNDM, DPM-Solver++) sample in
``sqrt(ᾱ)·x₀ + sqrt(1 − ᾱ)·ε`` space and start from unit-variance noise.
Sigma-parameterized families (Euler, Euler ancestral, LMS) sample in
``x₀ + σ·ε`` space, pre-scale the model input by ``1 / sqrt(σ² + 1)`` and
start from noise scaled by ``init_noise_sigma``.
"""
from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional, Type, Union

import numpy as np
from loguru import logger
from numpy.polynomial import Polynomial

from latentloop.diffusion.utils import get_beta_schedule
from latentloop.errors import (
    ConfigurationError,
    ShapeMismatchError,
    StateViolationError,
)
from latentloop.options import (
    BetaSchedule,
    PredictionType,
    SchedulerOptions,
    SchedulerType,
    TimestepSpacing,
)


# ═════════════════════════════════════════════════════════════════════
#  Helpers
# ═════════════════════════════════════════════════════════════════════

def _broadcast_to_ndim(arr: np.ndarray, ndim: int) -> np.ndarray:
    """Reshape a 1-D array to broadcast against an ndim tensor: (B,) → (B,1,…,1)."""
    shape = [-1] + [1] * (ndim - 1)
    return arr.reshape(shape)


def _as_float32(x) -> np.ndarray:
    return np.asarray(x, dtype=np.float32)


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


def compute_timesteps(
    num_inference_steps: int,
    num_train_timesteps: int = 1000,
    spacing: Union[str, TimestepSpacing] = TimestepSpacing.TRAILING,
    steps_offset: int = 0,
) -> np.ndarray:
    """Stride ``num_inference_steps`` timesteps over the trained range.

    ``trailing`` anchors the first timestep at ``T − 1``
    (``N=20, T=1000`` → ``[999, 949, …, 49]``), ``leading`` anchors the
    last at ``steps_offset``, ``linspace`` spans ``[0, T − 1]``.

    Returns:
        Strictly decreasing int64 array of length ``num_inference_steps``.
    """
    T, N = num_train_timesteps, num_inference_steps
    if N <= 0 or N > T:
        raise ConfigurationError(
            f"inference steps must lie in [1, {T}], got {N}")
    spacing = TimestepSpacing(spacing)

    if spacing is TimestepSpacing.TRAILING:
        timesteps = np.round(T - np.arange(N) * (T / N)).astype(np.int64) - 1
    elif spacing is TimestepSpacing.LEADING:
        step_ratio = T // N
        timesteps = (np.arange(N)[::-1] * step_ratio).astype(np.int64)
        timesteps = timesteps + steps_offset
    else:
        timesteps = np.round(np.linspace(0, T - 1, N)).astype(np.int64)[::-1]

    timesteps = np.ascontiguousarray(timesteps)
    if timesteps[0] > T - 1 or timesteps[-1] < 0:
        raise ConfigurationError(
            f"{spacing.value} timesteps {timesteps[-1]}..{timesteps[0]} fall "
            f"outside the trained range [0, {T - 1}]")
    if N > 1 and np.any(np.diff(timesteps) >= 0):
        raise ConfigurationError(
            f"{spacing.value} spacing produced repeated timesteps for "
            f"{N} steps over {T}")
    return timesteps


# ═════════════════════════════════════════════════════════════════════
#  NoiseSchedule
# ═════════════════════════════════════════════════════════════════════

class NoiseSchedule:
    """Per-trained-timestep β / α / ᾱ tables.

    Tables are float32 and read-only once built.

    Args:
        num_train_timesteps: Total number of diffusion timesteps T.
        beta_start:          Starting β value.
        beta_end:            Ending β value.
        beta_schedule:       One of ``'linear'``, ``'scaled_linear'``,
                             ``'squaredcos_cap_v2'``.
        maximum_beta:        Cap for the cosine-squared schedule.
    """

    def __init__(
        self,
        num_train_timesteps: int = 1000,
        beta_start: float = 0.00085,
        beta_end: float = 0.012,
        beta_schedule: Union[str, BetaSchedule] = BetaSchedule.SCALED_LINEAR,
        maximum_beta: float = 0.999,
    ):
        self.num_train_timesteps = num_train_timesteps
        self.beta_schedule = beta_schedule

        betas = get_beta_schedule(beta_schedule, num_train_timesteps,
                                  beta_start, beta_end, maximum_beta)
        alphas = (1.0 - betas).astype(np.float32)
        alphas_cumprod = np.cumprod(alphas, dtype=np.float32)

        self.betas = _readonly(betas)
        self.alphas = _readonly(alphas)
        self.alphas_cumprod = _readonly(alphas_cumprod)
        # sigma = sqrt((1 - alpha_bar) / alpha_bar)
        self.sigmas = _readonly(np.sqrt(
            (1.0 - alphas_cumprod) / alphas_cumprod).astype(np.float32))

    @classmethod
    def from_options(cls, options: SchedulerOptions) -> 'NoiseSchedule':
        return cls(options.train_timesteps, options.beta_start,
                   options.beta_end, options.beta_schedule,
                   options.maximum_beta)

    def __len__(self) -> int:
        return self.num_train_timesteps


# ═════════════════════════════════════════════════════════════════════
#  StepHistory
# ═════════════════════════════════════════════════════════════════════

class StepHistory:
    """Fixed-capacity ring buffer of per-step solver values.

    Slot ``count % capacity`` is overwritten on every push, so the
    oldest entry is discarded first once the buffer is full.

    Every :meth:`SchedulerBase.step` pushes exactly one entry: the raw
    model output for single-step families, ε for PNDM, the data
    prediction x₀ for DPM-Solver++ and the ODE derivative for LMS.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ConfigurationError(
                f"history capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._slots: List[Optional[np.ndarray]] = [None] * capacity
        self._count = 0

    def push(self, value: np.ndarray) -> None:
        self._slots[self._count % self.capacity] = value
        self._count += 1

    def latest(self, n: Optional[int] = None) -> List[np.ndarray]:
        """Return up to ``n`` entries, newest first."""
        size = len(self)
        n = size if n is None else min(n, size)
        return [self._slots[(self._count - 1 - i) % self.capacity]
                for i in range(n)]

    def clear(self) -> None:
        self._slots = [None] * self.capacity
        self._count = 0

    @property
    def total_pushed(self) -> int:
        return self._count

    def __len__(self) -> int:
        return min(self._count, self.capacity)


# ═════════════════════════════════════════════════════════════════════
#  SchedulerBase
# ═════════════════════════════════════════════════════════════════════

class SchedulerBase:
    """Shared state machine for every solver family.

    Lifecycle: *Constructed* (timesteps fixed) → *Stepping(i)* on each
    :meth:`step` → *Exhausted* after the final timestep.  Subclasses
    implement ``_step`` and, for sigma-space families, override
    :meth:`scale_model_input`, :meth:`add_noise` and
    :attr:`init_noise_sigma`.

    Args:
        options: Full scheduler configuration.  When omitted, one is built
                 from ``**kwargs`` for this family; when given, ``**kwargs``
                 override individual fields.
    """

    family: SchedulerType
    default_order: int = 1
    max_order: int = 1
    default_eta: float = 0.0

    def __init__(self, options: Optional[SchedulerOptions] = None,
                 **kwargs: Any):
        if options is None:
            options = SchedulerOptions(scheduler_type=self.family, **kwargs)
        elif kwargs:
            options = dataclasses.replace(options, **kwargs)
        if options.scheduler_type is not self.family:
            raise ConfigurationError(
                f"{type(self).__name__} cannot run scheduler_type "
                f"{options.scheduler_type.value!r}")

        self.options = options
        self.schedule = NoiseSchedule.from_options(options)
        self.num_train_timesteps = options.train_timesteps
        self.num_inference_steps = options.inference_steps
        self.prediction_type = options.prediction_type

        self._timesteps = _readonly(compute_timesteps(
            options.inference_steps, options.train_timesteps,
            options.timestep_spacing, options.steps_offset))
        self._positions: Dict[int, int] = {
            int(t): i for i, t in enumerate(self._timesteps)}

        self.order = min(options.solver_order or self.default_order,
                         self.max_order)
        self.eta = options.eta if options.eta is not None else self.default_eta
        self._history = StepHistory(self.order)
        self._step_index = 0
        self._begin_index = 0
        self._steps_taken = 0
        self._rng = self._make_rng()

        self._post_init()
        logger.debug(
            f"{type(self).__name__}: {self.num_inference_steps} steps, "
            f"order {self.order}, timesteps {int(self._timesteps[0])}"
            f"..{int(self._timesteps[-1])}, "
            f"init_noise_sigma {self.init_noise_sigma:.4f}")

    def _post_init(self) -> None:
        """Hook for family-specific tables derived from the timesteps."""

    def _make_rng(self) -> np.random.Generator:
        # Separate stream from the initial-latent noise, which uses the bare seed.
        return np.random.default_rng([self.options.seed, 1])

    # ---- state ----

    @property
    def timesteps(self) -> np.ndarray:
        return self._timesteps

    @property
    def step_index(self) -> int:
        return self._step_index

    @property
    def begin_index(self) -> int:
        return self._begin_index

    @property
    def is_exhausted(self) -> bool:
        return self._step_index >= len(self._timesteps)

    @property
    def history(self) -> StepHistory:
        return self._history

    @property
    def init_noise_sigma(self) -> float:
        """Standard deviation of the initial noise (1.0 for α families)."""
        return 1.0

    def set_begin_index(self, begin_index: int) -> None:
        """Start stepping from ``timesteps[begin_index]`` (image-to-image).

        Only legal before the first :meth:`step`.
        """
        if self._steps_taken:
            raise StateViolationError(
                "set_begin_index called after stepping started")
        if not 0 <= begin_index < len(self._timesteps):
            raise ConfigurationError(
                f"begin_index must lie in [0, {len(self._timesteps) - 1}], "
                f"got {begin_index}")
        self._begin_index = begin_index
        self._step_index = begin_index

    def reset(self) -> None:
        """Return to the *Constructed* state with a fresh noise stream."""
        self._history.clear()
        self._step_index = 0
        self._begin_index = 0
        self._steps_taken = 0
        self._rng = self._make_rng()

    def index_for_timestep(self, timestep: int) -> int:
        try:
            return self._positions[int(timestep)]
        except KeyError:
            raise StateViolationError(
                f"timestep {timestep} is not part of this schedule") from None

    def _check_timestep(self, timestep: int) -> int:
        if self.is_exhausted:
            raise StateViolationError(
                f"scheduler exhausted after {len(self._timesteps)} steps; "
                f"got timestep {timestep}")
        expected = int(self._timesteps[self._step_index])
        if int(timestep) != timestep or int(timestep) != expected:
            raise StateViolationError(
                f"expected timestep {expected} at step {self._step_index}, "
                f"got {timestep}")
        return self._step_index

    def _prev_timestep(self, index: int) -> int:
        """Timestep that ``step`` at ``index`` moves to (−1 past the end)."""
        if index + 1 < len(self._timesteps):
            return int(self._timesteps[index + 1])
        return -1

    def _noise(self, shape) -> np.ndarray:
        return self._rng.standard_normal(shape, dtype=np.float32)

    # ---- public API ----

    def scale_model_input(self, sample: np.ndarray,
                          timestep: int) -> np.ndarray:
        """No-op for α-parameterized families."""
        self.index_for_timestep(timestep)
        return sample

    def step(self, model_output: np.ndarray, timestep: int,
             sample: np.ndarray, order: Optional[int] = None) -> np.ndarray:
        """Advance one timestep and return the previous-timestep sample.

        Args:
            model_output: Model prediction at ``timestep``.
            timestep:     Must equal ``timesteps[step_index]``.
            sample:       Current sample x_t.
            order:        Optional cap on the effective solver order;
                          values above the history capacity are clamped.

        Returns:
            New float32 array x_{t-1}; inputs are not modified.
        """
        index = self._check_timestep(timestep)
        model_output = _as_float32(model_output)
        sample = _as_float32(sample)
        if model_output.shape != sample.shape:
            raise ShapeMismatchError(sample.shape, model_output.shape,
                                     'model_output')
        if order is None:
            effective = self.order
        elif order < 1:
            raise ConfigurationError(f"order must be >= 1, got {order}")
        else:
            effective = min(int(order), self.order)

        prev = self._step(model_output, index, sample, effective)
        self._step_index += 1
        self._steps_taken += 1
        return prev.astype(np.float32, copy=False)

    def _step(self, model_output: np.ndarray, index: int,
              sample: np.ndarray, order: int) -> np.ndarray:
        raise NotImplementedError

    def _timestep_indices(self, original: np.ndarray, noise: np.ndarray,
                          timesteps) -> np.ndarray:
        if original.shape != noise.shape:
            raise ShapeMismatchError(original.shape, noise.shape, 'noise')
        t = np.asarray(timesteps).astype(np.int64).ravel()
        batch = original.shape[0]
        if t.size == 1:
            t = np.repeat(t, batch)
        elif t.size != batch:
            raise ShapeMismatchError((batch,), t.shape, 'timesteps')
        if t.min() < 0 or t.max() >= self.num_train_timesteps:
            raise ConfigurationError(
                f"timesteps must lie in [0, {self.num_train_timesteps - 1}], "
                f"got {t.tolist()}")
        return t

    def add_noise(self, original: np.ndarray, noise: np.ndarray,
                  timesteps) -> np.ndarray:
        """Forward diffusion q(x_t | x_0), one timestep per batch element."""
        original = _as_float32(original)
        noise = _as_float32(noise)
        t = self._timestep_indices(original, noise, timesteps)
        ndim = original.ndim
        alphas_cumprod = self.schedule.alphas_cumprod
        s_a = _broadcast_to_ndim(np.sqrt(alphas_cumprod[t]), ndim)
        s_1a = _broadcast_to_ndim(np.sqrt(1.0 - alphas_cumprod[t]), ndim)
        noisy = s_a * original + s_1a * noise
        return noisy.astype(np.float32, copy=False)

    def __len__(self) -> int:
        return len(self._timesteps)

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(steps={self.num_inference_steps}, "
                f"order={self.order}, step_index={self._step_index})")


# ═════════════════════════════════════════════════════════════════════
#  α-parameterized families
# ═════════════════════════════════════════════════════════════════════

class _AlphaScheduler(SchedulerBase):

    def _alpha_prev(self, prev_t: int) -> float:
        if prev_t >= 0:
            return float(self.schedule.alphas_cumprod[prev_t])
        if self.options.set_alpha_to_one:
            return 1.0
        return float(self.schedule.alphas_cumprod[0])

    def _predict_x0(self, model_output: np.ndarray, sample: np.ndarray,
                    alpha_prod_t: float):
        """Return ``(x0, epsilon)`` implied by the model output."""
        sqrt_a = np.sqrt(alpha_prod_t)
        sqrt_b = np.sqrt(1.0 - alpha_prod_t)
        if self.prediction_type is PredictionType.EPSILON:
            x0 = (sample - sqrt_b * model_output) / sqrt_a
            eps = model_output
        elif self.prediction_type is PredictionType.V_PREDICTION:
            x0 = sqrt_a * sample - sqrt_b * model_output
            eps = sqrt_a * model_output + sqrt_b * sample
        else:
            x0 = model_output
            eps = (sample - sqrt_a * x0) / sqrt_b

        if self.options.clip_sample:
            r = self.options.clip_sample_range
            x0 = np.clip(x0, -r, r)
            eps = (sample - sqrt_a * x0) / sqrt_b
        return x0, eps


# ═════════════════════════════════════════════════════════════════════
#  DDPMScheduler
# ═════════════════════════════════════════════════════════════════════

class DDPMScheduler(_AlphaScheduler):
    """Denoising Diffusion Probabilistic Models (Ho et al. 2020).

    Samples the posterior q(x_{t'} | x_t, x₀) between consecutive
    inference timesteps; Gaussian noise is added on every step but the
    last.  Always stochastic, seeded by ``options.seed``.
    """

    family = SchedulerType.DDPM

    def _step(self, model_output, index, sample, order):
        t = int(self._timesteps[index])
        prev_t = self._prev_timestep(index)
        alpha_prod_t = float(self.schedule.alphas_cumprod[t])
        alpha_prod_prev = (float(self.schedule.alphas_cumprod[prev_t])
                           if prev_t >= 0 else 1.0)
        beta_prod_t = 1.0 - alpha_prod_t
        beta_prod_prev = 1.0 - alpha_prod_prev
        current_alpha = alpha_prod_t / alpha_prod_prev
        current_beta = 1.0 - current_alpha

        self._history.push(model_output)
        pred_x0, _ = self._predict_x0(model_output, sample, alpha_prod_t)

        # Posterior mean coefficients
        coef_x0 = np.sqrt(alpha_prod_prev) * current_beta / beta_prod_t
        coef_xt = np.sqrt(current_alpha) * beta_prod_prev / beta_prod_t
        prev = coef_x0 * pred_x0 + coef_xt * sample

        if prev_t >= 0:
            variance = max(beta_prod_prev / beta_prod_t * current_beta, 1e-20)
            prev = prev + np.sqrt(variance) * self._noise(sample.shape)
        return prev


# ═════════════════════════════════════════════════════════════════════
#  DDIMScheduler
# ═════════════════════════════════════════════════════════════════════

class DDIMScheduler(_AlphaScheduler):
    """Denoising Diffusion Implicit Models (Song et al. 2020).

    Deterministic with ``eta = 0`` (the default); ``eta > 0`` adds seeded
    Gaussian noise with standard deviation ``eta · σ_t``.
    """

    family = SchedulerType.DDIM

    def _step(self, model_output, index, sample, order):
        t = int(self._timesteps[index])
        alpha_prod_t = float(self.schedule.alphas_cumprod[t])
        alpha_prod_prev = self._alpha_prev(self._prev_timestep(index))

        self._history.push(model_output)
        pred_x0, pred_eps = self._predict_x0(model_output, sample,
                                             alpha_prod_t)

        variance = ((1 - alpha_prod_prev) / (1 - alpha_prod_t)
                    * (1 - alpha_prod_t / alpha_prod_prev))
        std = self.eta * np.sqrt(max(variance, 0.0))
        pred_dir = np.sqrt(max(1 - alpha_prod_prev - std ** 2, 0.0)) * pred_eps
        prev = np.sqrt(alpha_prod_prev) * pred_x0 + pred_dir

        if std > 0:
            prev = prev + std * self._noise(sample.shape)
        return prev


# ═════════════════════════════════════════════════════════════════════
#  PNDMScheduler
# ═════════════════════════════════════════════════════════════════════

_PLMS_COEFFICIENTS = {
    1: (1.0,),
    2: (3 / 2, -1 / 2),
    3: (23 / 12, -16 / 12, 5 / 12),
    4: (55 / 24, -59 / 24, 37 / 24, -9 / 24),
}


class PNDMScheduler(_AlphaScheduler):
    """Pseudo Numerical Diffusion Model scheduler (Liu et al. 2022).

    Combines up to four most recent ε predictions with Adams–Bashforth
    coefficients, then transfers the sample with the deterministic DDIM
    update.  The first steps run at lower order until the history fills;
    no Runge–Kutta warm-up is performed, so each timestep is visited once.
    """

    family = SchedulerType.PNDM
    default_order = 4
    max_order = 4

    def _step(self, model_output, index, sample, order):
        t = int(self._timesteps[index])
        alpha_prod_t = float(self.schedule.alphas_cumprod[t])
        alpha_prod_prev = self._alpha_prev(self._prev_timestep(index))

        _, eps = self._predict_x0(model_output, sample, alpha_prod_t)
        self._history.push(eps)
        ets = self._history.latest(order)
        coeffs = _PLMS_COEFFICIENTS[len(ets)]
        et = sum(c * e for c, e in zip(coeffs, ets))

        pred_x0 = (sample - np.sqrt(1 - alpha_prod_t) * et) / np.sqrt(alpha_prod_t)
        pred_dir = np.sqrt(1 - alpha_prod_prev) * et
        return np.sqrt(alpha_prod_prev) * pred_x0 + pred_dir


# ═════════════════════════════════════════════════════════════════════
#  DPMSolverMultistepScheduler (DPM-Solver++)
# ═════════════════════════════════════════════════════════════════════

class DPMSolverMultistepScheduler(_AlphaScheduler):
    """DPM-Solver++ multistep scheduler (Lu et al. 2022).

    A fast ODE solver in data-prediction form that achieves high-quality
    samples in 15–25 steps.  Supports orders 1 (DDIM-equivalent),
    2 (midpoint) and 3.  The final step is always first order and lands
    on ᾱ = 1; with fewer than 15 steps the penultimate step is capped at
    second order.
    """

    family = SchedulerType.DPM_SOLVER_MULTISTEP
    default_order = 2
    max_order = 3

    def _post_init(self):
        ac = self.schedule.alphas_cumprod[self._timesteps].astype(np.float64)
        self._alpha_t = np.append(np.sqrt(ac), 1.0)
        self._sigma_t = np.append(np.sqrt(1.0 - ac), 0.0)
        # Continuous-time log-SNR; +inf at the clean end.
        self._lambda_t = np.append(
            np.log(self._alpha_t[:-1]) - np.log(self._sigma_t[:-1]), np.inf)

    def _first_order(self, x0, sample, s0, t):
        h = self._lambda_t[t] - self._lambda_t[s0]
        return ((self._sigma_t[t] / self._sigma_t[s0]) * sample
                - (self._alpha_t[t] * np.expm1(-h)) * x0)

    def _second_order(self, outputs, sample, s0, t):
        m0, m1 = outputs[0], outputs[1]
        lam_t, lam_s0, lam_s1 = (self._lambda_t[t], self._lambda_t[s0],
                                 self._lambda_t[s0 - 1])
        h, h_0 = lam_t - lam_s0, lam_s0 - lam_s1
        r0 = h_0 / h
        D0, D1 = m0, (1.0 / r0) * (m0 - m1)
        phi = self._alpha_t[t] * np.expm1(-h)
        return ((self._sigma_t[t] / self._sigma_t[s0]) * sample
                - phi * D0 - 0.5 * phi * D1)

    def _third_order(self, outputs, sample, s0, t):
        m0, m1, m2 = outputs[0], outputs[1], outputs[2]
        lam_t = self._lambda_t[t]
        lam_s0, lam_s1, lam_s2 = (self._lambda_t[s0], self._lambda_t[s0 - 1],
                                  self._lambda_t[s0 - 2])
        h, h_0, h_1 = lam_t - lam_s0, lam_s0 - lam_s1, lam_s1 - lam_s2
        r0, r1 = h_0 / h, h_1 / h
        D0 = m0
        D1_0, D1_1 = (1.0 / r0) * (m0 - m1), (1.0 / r1) * (m1 - m2)
        D1 = D1_0 + (r0 / (r0 + r1)) * (D1_0 - D1_1)
        D2 = (1.0 / (r0 + r1)) * (D1_0 - D1_1)
        alpha_t = self._alpha_t[t]
        em1 = np.expm1(-h)
        return ((self._sigma_t[t] / self._sigma_t[s0]) * sample
                - (alpha_t * em1) * D0
                + (alpha_t * (em1 / h + 1.0)) * D1
                - (alpha_t * ((em1 + h) / h ** 2 - 0.5)) * D2)

    def _step(self, model_output, index, sample, order):
        t = int(self._timesteps[index])
        alpha_prod_t = float(self.schedule.alphas_cumprod[t])
        x0, _ = self._predict_x0(model_output, sample, alpha_prod_t)
        self._history.push(x0)

        n = len(self._timesteps)
        order = min(order, len(self._history))
        if index == n - 1:
            order = 1
        elif index == n - 2 and n < 15:
            order = min(order, 2)

        outputs = self._history.latest(order)
        if order == 1:
            return self._first_order(x0, sample, index, index + 1)
        if order == 2:
            return self._second_order(outputs, sample, index, index + 1)
        return self._third_order(outputs, sample, index, index + 1)


# ═════════════════════════════════════════════════════════════════════
#  σ-parameterized families
# ═════════════════════════════════════════════════════════════════════

class _SigmaScheduler(SchedulerBase):
    """Common tables and I/O scaling for samplers integrating in σ space."""

    def _post_init(self):
        sigmas = self.schedule.sigmas[self._timesteps]
        self._sigmas = _readonly(np.append(sigmas, 0.0).astype(np.float32))

    @property
    def sigmas(self) -> np.ndarray:
        """σ at each inference timestep, followed by a terminal 0."""
        return self._sigmas

    @property
    def init_noise_sigma(self) -> float:
        sigma_max = float(self._sigmas.max())
        if self.options.timestep_spacing in (TimestepSpacing.LINSPACE,
                                             TimestepSpacing.TRAILING):
            return sigma_max
        return float(np.sqrt(sigma_max ** 2 + 1))

    def scale_model_input(self, sample: np.ndarray,
                          timestep: int) -> np.ndarray:
        """Pre-scale the model input by ``1 / sqrt(σ² + 1)``."""
        sigma = float(self._sigmas[self.index_for_timestep(timestep)])
        return (_as_float32(sample) / np.sqrt(sigma ** 2 + 1)).astype(
            np.float32, copy=False)

    def add_noise(self, original: np.ndarray, noise: np.ndarray,
                  timesteps) -> np.ndarray:
        """Forward process in σ space: ``x₀ + σ_t · ε``."""
        original = _as_float32(original)
        noise = _as_float32(noise)
        t = self._timestep_indices(original, noise, timesteps)
        sigma = _broadcast_to_ndim(self.schedule.sigmas[t], original.ndim)
        return (original + sigma * noise).astype(np.float32, copy=False)

    def _predict_x0(self, model_output: np.ndarray, sample: np.ndarray,
                    sigma: float) -> np.ndarray:
        if self.prediction_type is PredictionType.EPSILON:
            x0 = sample - sigma * model_output
        elif self.prediction_type is PredictionType.V_PREDICTION:
            x0 = (model_output * (-sigma / np.sqrt(sigma ** 2 + 1))
                  + sample / (sigma ** 2 + 1))
        else:
            x0 = model_output
        if self.options.clip_sample:
            r = self.options.clip_sample_range
            x0 = np.clip(x0, -r, r)
        return x0


# ═════════════════════════════════════════════════════════════════════
#  EulerDiscreteScheduler
# ═════════════════════════════════════════════════════════════════════

class EulerDiscreteScheduler(_SigmaScheduler):
    """Euler method on the ODE probability flow (Karras et al. 2022)."""

    family = SchedulerType.EULER

    def _step(self, model_output, index, sample, order):
        sigma = float(self._sigmas[index])
        sigma_next = float(self._sigmas[index + 1])
        self._history.push(model_output)
        pred_x0 = self._predict_x0(model_output, sample, sigma)

        # Derivative
        d = (sample - pred_x0) / sigma
        return sample + d * (sigma_next - sigma)


class EulerAncestralDiscreteScheduler(_SigmaScheduler):
    """Ancestral Euler sampling.

    Each step descends to ``σ_down`` deterministically and re-injects
    seeded noise of scale ``σ_up``; ``eta`` (default 1.0) scales ``σ_up``,
    so ``eta = 0`` reduces to plain Euler.
    """

    family = SchedulerType.EULER_ANCESTRAL
    default_eta = 1.0

    def _step(self, model_output, index, sample, order):
        sigma_from = float(self._sigmas[index])
        sigma_to = float(self._sigmas[index + 1])
        self._history.push(model_output)
        pred_x0 = self._predict_x0(model_output, sample, sigma_from)

        sigma_up = min(sigma_to, self.eta * np.sqrt(
            sigma_to ** 2 * (sigma_from ** 2 - sigma_to ** 2)
            / sigma_from ** 2))
        sigma_down = np.sqrt(sigma_to ** 2 - sigma_up ** 2)

        d = (sample - pred_x0) / sigma_from
        prev = sample + d * (sigma_down - sigma_from)
        if sigma_up > 0:
            prev = prev + self._noise(sample.shape) * sigma_up
        return prev


# ═════════════════════════════════════════════════════════════════════
#  LMSDiscreteScheduler
# ═════════════════════════════════════════════════════════════════════

class LMSDiscreteScheduler(_SigmaScheduler):
    """Linear multistep sampler in σ space.

    Keeps the last ``order`` ODE derivatives; each coefficient is the
    exact integral over ``[σ_i, σ_{i+1}]`` of the corresponding Lagrange
    basis polynomial through the previous σ values.
    """

    family = SchedulerType.LMS
    default_order = 4
    max_order = 8

    def _lms_coefficient(self, order: int, index: int,
                         current_order: int) -> float:
        sigmas = self._sigmas.astype(np.float64)
        basis = Polynomial([1.0])
        for k in range(order):
            if k == current_order:
                continue
            denom = sigmas[index - current_order] - sigmas[index - k]
            basis = basis * Polynomial([-sigmas[index - k], 1.0]) / denom
        integral = basis.integ()
        return float(integral(sigmas[index + 1]) - integral(sigmas[index]))

    def _step(self, model_output, index, sample, order):
        sigma = float(self._sigmas[index])
        pred_x0 = self._predict_x0(model_output, sample, sigma)
        self._history.push((sample - pred_x0) / sigma)

        derivatives = self._history.latest(order)
        n = len(derivatives)
        coeffs = [self._lms_coefficient(n, index, j) for j in range(n)]
        return sample + sum(c * d for c, d in zip(coeffs, derivatives))


# ═════════════════════════════════════════════════════════════════════
#  Registry / factory
# ═════════════════════════════════════════════════════════════════════

SCHEDULERS: Dict[SchedulerType, Type[SchedulerBase]] = {
    SchedulerType.DDPM: DDPMScheduler,
    SchedulerType.DDIM: DDIMScheduler,
    SchedulerType.EULER: EulerDiscreteScheduler,
    SchedulerType.EULER_ANCESTRAL: EulerAncestralDiscreteScheduler,
    SchedulerType.LMS: LMSDiscreteScheduler,
    SchedulerType.PNDM: PNDMScheduler,
    SchedulerType.DPM_SOLVER_MULTISTEP: DPMSolverMultistepScheduler,
}


def create_scheduler(options: SchedulerOptions) -> SchedulerBase:
    """Build the scheduler selected by ``options.scheduler_type``."""
    return SCHEDULERS[options.scheduler_type](options)


# ═════════════════════════════════════════════════════════════════════
#  Public exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
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
]
