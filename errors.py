# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Exception taxonomy for schedulers, pipelines and the service layer.

- ``ConfigurationError``  — invalid options, raised at construction.
- ``StateViolationError`` — scheduler driven out of sequence.
- ``ShapeMismatchError``  — a collaborator returned a tensor of the wrong shape.
- ``ModelNotLoadedError`` — generation requested on an unloaded model set.
- ``GenerationCancelled`` — the run was cancelled; deliberately *not* a
  ``DiffusionError`` so that ``except DiffusionError`` never swallows it.
"""
from __future__ import annotations

from typing import Sequence


class DiffusionError(Exception):
    """Base class for every failure raised by latentloop."""


class ConfigurationError(DiffusionError, ValueError):
    """Invalid scheduler, prompt or batch options."""


class StateViolationError(DiffusionError, RuntimeError):
    """``step`` called out of sequence, twice, or after exhaustion."""


class ShapeMismatchError(DiffusionError, ValueError):
    """A tensor's shape differs from the shape the loop expects."""

    def __init__(self, expected: Sequence[int], actual: Sequence[int],
                 what: str = 'tensor'):
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(
            f"{what} shape mismatch: expected {self.expected}, "
            f"got {self.actual}")


class ModelNotLoadedError(DiffusionError):
    """The requested model set has not been loaded."""


class GenerationCancelled(Exception):
    """A generation stopped because its cancellation signal was set.

    Carries the number of completed denoising steps; no partial latents
    are returned.
    """

    def __init__(self, completed_steps: int = 0, total_steps: int = 0):
        self.completed_steps = completed_steps
        self.total_steps = total_steps
        super().__init__(
            f"generation cancelled after {completed_steps}/{total_steps} steps")


__all__ = [
    'DiffusionError',
    'ConfigurationError',
    'StateViolationError',
    'ShapeMismatchError',
    'ModelNotLoadedError',
    'GenerationCancelled',
]
