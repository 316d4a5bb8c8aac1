# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Batch generation — lazy parameter sweeps over the pipeline.

:class:`BatchDriver` runs a :class:`DiffusionPipeline` once per sweep
value and yields one :class:`BatchResult` at a time.  Nothing is computed
ahead of the consumer: closing the generator (or breaking out of the
``for`` loop) skips every remaining value.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Iterator, Optional, Union

import numpy as np
from loguru import logger

from latentloop.diffusion.pipelines import (
    CancellationSignal,
    DiffusionPipeline,
    ProgressCallback,
)
from latentloop.errors import DiffusionError
from latentloop.options import (
    BatchOptions,
    BatchOptionType,
    PromptOptions,
    SchedulerOptions,
)


_SWEPT_FIELD = {
    BatchOptionType.SEED: 'seed',
    BatchOptionType.STRENGTH: 'strength',
    BatchOptionType.STEP: 'inference_steps',
    BatchOptionType.GUIDANCE: 'guidance_scale',
}


@dataclass(frozen=True)
class BatchResult:
    """One sweep item.

    ``latents`` is ``None`` only when the item failed and the sweep runs
    with ``isolate_failures``; ``error`` then holds the failure.
    """

    index: int
    value: Union[int, float]
    options: Optional[SchedulerOptions]
    latents: Optional[np.ndarray]
    error: Optional[DiffusionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchDriver:
    """Serial, pull-based sweep over one SchedulerOptions field.

    Args:
        pipeline: Pipeline that performs each generation.
    """

    def __init__(self, pipeline: DiffusionPipeline):
        self.pipeline = pipeline

    @staticmethod
    def sweep_options(options: SchedulerOptions, batch: BatchOptions,
                      value: Union[int, float]) -> SchedulerOptions:
        """``options`` with the swept field replaced by ``value``."""
        return dataclasses.replace(options, **{_SWEPT_FIELD[batch.mode]: value})

    def run(
        self,
        prompt: PromptOptions,
        options: SchedulerOptions,
        batch: BatchOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[CancellationSignal] = None,
    ) -> Iterator[BatchResult]:
        """Yield exactly ``batch.count`` results in sweep order.

        A failing item raises and ends the sweep unless
        ``batch.isolate_failures`` is set, in which case its
        ``DiffusionError`` is reported in the result.
        :class:`~latentloop.errors.GenerationCancelled` always ends the
        sweep.
        """
        values = batch.values()
        logger.info(
            f"Batch sweep over {batch.mode.value}: {len(values)} generations")
        for index, value in enumerate(values):
            logger.debug(
                f"Batch item {index + 1}/{len(values)}: "
                f"{batch.mode.value}={value}")
            swept = None
            try:
                swept = self.sweep_options(options, batch, value)
                latents = self.pipeline.run(
                    prompt, swept, progress_callback, cancel_event)
            except DiffusionError as exc:
                if not batch.isolate_failures:
                    raise
                logger.warning(
                    f"Batch item {index + 1} ({batch.mode.value}={value}) "
                    f"failed: {exc}")
                yield BatchResult(index, value, swept, None, exc)
                continue
            yield BatchResult(index, value, swept, latents)

    __call__ = run


__all__ = [
    'BatchDriver',
    'BatchResult',
]
