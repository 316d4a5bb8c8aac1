# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Service front door: model lifecycle plus generate / batch calls.

Usage::

    service = DiffusionService()
    service.load_model(model_set)
    latents = service.generate(model_set, PromptOptions('a red fox'),
                               SchedulerOptions(scheduler_type='euler'))
    for result in service.generate_batch(model_set, prompt, options,
                                         BatchOptions('seed', 0, 1, 4)):
        ...
"""
from __future__ import annotations

import threading
from typing import Any, Dict, Iterator, Optional

import numpy as np
from loguru import logger

from latentloop.diffusion.batch import BatchDriver, BatchResult
from latentloop.diffusion.models import ModelSet
from latentloop.diffusion.pipelines import (
    CancellationSignal,
    DiffusionPipeline,
    ProgressCallback,
)
from latentloop.errors import ModelNotLoadedError
from latentloop.options import BatchOptions, PromptOptions, SchedulerOptions


class DiffusionService:
    """Tracks loaded model sets and runs generations against them.

    Args:
        show_progress: Forwarded to every :class:`DiffusionPipeline`.
    """

    def __init__(self, show_progress: bool = False):
        self.show_progress = show_progress
        self._loaded: Dict[str, ModelSet] = {}
        self._lock = threading.Lock()

    # ---- model lifecycle ----

    def load_model(self, model_set: ModelSet) -> bool:
        """Load ``model_set``; returns False if it was already loaded."""
        with self._lock:
            if model_set.name in self._loaded:
                return False
            if model_set.on_load is not None:
                model_set.on_load(model_set)
            self._loaded[model_set.name] = model_set
        logger.info(f"Loaded model set {model_set.name!r}")
        return True

    def unload_model(self, model_set: ModelSet) -> bool:
        """Unload ``model_set``; returns False if it was not loaded."""
        with self._lock:
            if model_set.name not in self._loaded:
                return False
            if model_set.on_unload is not None:
                model_set.on_unload(model_set)
            del self._loaded[model_set.name]
        logger.info(f"Unloaded model set {model_set.name!r}")
        return True

    def is_model_loaded(self, model_set: ModelSet) -> bool:
        with self._lock:
            return model_set.name in self._loaded

    def _pipeline(self, model_set: ModelSet) -> DiffusionPipeline:
        if not self.is_model_loaded(model_set):
            raise ModelNotLoadedError(
                f"model set {model_set.name!r} is not loaded")
        return DiffusionPipeline(model_set, show_progress=self.show_progress)

    # ---- generation ----

    def generate(
        self,
        model_set: ModelSet,
        prompt: PromptOptions,
        options: SchedulerOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[CancellationSignal] = None,
    ) -> np.ndarray:
        """Run one generation and return the final latents."""
        return self._pipeline(model_set).run(
            prompt, options, progress_callback, cancel_event)

    def generate_decoded(
        self,
        model_set: ModelSet,
        prompt: PromptOptions,
        options: SchedulerOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[CancellationSignal] = None,
    ) -> Any:
        """Run one generation and pass the latents through the decoder."""
        pipeline = self._pipeline(model_set)
        latents = pipeline.run(prompt, options, progress_callback,
                               cancel_event)
        return pipeline.decode_latents(latents)

    def generate_batch(
        self,
        model_set: ModelSet,
        prompt: PromptOptions,
        options: SchedulerOptions,
        batch: BatchOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[CancellationSignal] = None,
    ) -> Iterator[BatchResult]:
        """Lazily yield one :class:`BatchResult` per sweep value."""
        driver = BatchDriver(self._pipeline(model_set))
        return driver.run(prompt, options, batch, progress_callback,
                          cancel_event)


__all__ = ['DiffusionService']
