"""
Shared fixtures: tiny in-memory collaborators standing in for real networks.
"""
import numpy as np
import pytest

from latentloop import ModelSet, SchedulerOptions


class RecordingUNet:
    """Predicts a constant derived from the conditioning and records calls."""

    def __init__(self):
        self.calls = []

    def __call__(self, latents, conditioning, timestep):
        self.calls.append(int(timestep))
        value = 0.01 * float(np.mean(conditioning))
        return np.full(latents.shape, value, dtype=np.float32)


class RecordingEncoder:
    """Maps a prompt to an embedding filled with its length."""

    def __init__(self):
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        return np.full((1, 8), float(len(prompt)), dtype=np.float32)


def encode_image(image):
    return np.ones((1, 4, 8, 8), dtype=np.float32)


def decode_latents(latents):
    return latents * 2.0


@pytest.fixture
def unet():
    return RecordingUNet()


@pytest.fixture
def prompt_encoder():
    return RecordingEncoder()


@pytest.fixture
def model_set(unet, prompt_encoder):
    return ModelSet(
        name='tiny-sd',
        unet=unet,
        prompt_encoder=prompt_encoder,
        vae_encoder=encode_image,
        vae_decoder=decode_latents,
    )


@pytest.fixture
def options():
    """64×64 output (8×8 latents), six steps, guidance off."""
    return SchedulerOptions(
        scheduler_type='ddim',
        inference_steps=6,
        guidance_scale=1.0,
        seed=3,
        width=64,
        height=64,
    )
