"""
Tests for latentloop.options — validation and mapping round-trips.
"""
import numpy as np
import pytest

from latentloop import (
    BatchOptions,
    BatchOptionType,
    ConfigurationError,
    DiffuserType,
    PromptOptions,
    SchedulerOptions,
    SchedulerType,
    TimestepSpacing,
)


def test_scheduler_options_defaults():
    opts = SchedulerOptions()
    assert opts.scheduler_type is SchedulerType.DDIM
    assert opts.timestep_spacing is TimestepSpacing.TRAILING
    assert opts.guidance_enabled
    assert not SchedulerOptions(guidance_scale=1.0).guidance_enabled


def test_scheduler_options_coerces_strings():
    opts = SchedulerOptions(scheduler_type='euler_ancestral',
                            timestep_spacing='leading')
    assert opts.scheduler_type is SchedulerType.EULER_ANCESTRAL
    assert opts.timestep_spacing is TimestepSpacing.LEADING


@pytest.mark.parametrize('kwargs', [
    {'scheduler_type': 'heun'},
    {'inference_steps': 0},
    {'inference_steps': 1001},
    {'train_timesteps': 0},
    {'beta_start': 0.02, 'beta_end': 0.01},
    {'beta_start': -0.1},
    {'maximum_beta': 1.0},
    {'strength': 0.0},
    {'strength': 1.5},
    {'guidance_scale': -1.0},
    {'eta': -0.5},
    {'seed': -1},
    {'solver_order': 0},
    {'steps_offset': -1},
    {'clip_sample_range': 0.0},
    {'width': 500},
    {'height': 0},
])
def test_scheduler_options_rejects_invalid(kwargs):
    with pytest.raises(ConfigurationError):
        SchedulerOptions(**kwargs)


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        SchedulerOptions(inference_steps=-5)


def test_scheduler_options_dict_round_trip():
    opts = SchedulerOptions(scheduler_type='lms', seed=7, inference_steps=25)
    data = opts.to_dict()
    assert data['scheduler_type'] == 'lms'
    assert data['timestep_spacing'] == 'trailing'
    assert SchedulerOptions.from_dict(data) == opts


def test_scheduler_options_from_dict_rejects_unknown_keys():
    with pytest.raises(ConfigurationError, match='sampler'):
        SchedulerOptions.from_dict({'sampler': 'euler'})


def test_scheduler_options_are_frozen():
    opts = SchedulerOptions()
    with pytest.raises(AttributeError):
        opts.seed = 3


def test_prompt_options():
    prompt = PromptOptions('a lighthouse at dusk', negative_prompt='blurry')
    assert prompt.diffuser_type is DiffuserType.TEXT_TO_IMAGE
    assert not prompt.is_image_to_image

    image = np.zeros((1, 3, 64, 64), dtype=np.float32)
    img2img = PromptOptions('x', diffuser_type='image_to_image',
                            input_image=image)
    assert img2img.is_image_to_image


def test_prompt_options_validation():
    with pytest.raises(ConfigurationError):
        PromptOptions('x', diffuser_type='image_to_image')
    with pytest.raises(ConfigurationError):
        PromptOptions('x', batch_count=0)
    with pytest.raises(ConfigurationError):
        PromptOptions('x', diffuser_type='inpaint')


def test_batch_values_seed():
    batch = BatchOptions('seed', start=100, increment=5, count=4)
    assert batch.mode is BatchOptionType.SEED
    assert batch.values() == [100, 105, 110, 115]
    assert all(isinstance(v, int) for v in batch.values())


def test_batch_values_float_modes():
    batch = BatchOptions('strength', start=0.25, increment=0.25, count=4)
    assert batch.values() == pytest.approx([0.25, 0.5, 0.75, 1.0])
    guidance = BatchOptions('guidance', start=1.0, increment=2.0, count=3)
    assert guidance.values() == pytest.approx([1.0, 3.0, 5.0])


def test_batch_options_validation():
    with pytest.raises(ConfigurationError):
        BatchOptions('seed', count=0)
    with pytest.raises(ConfigurationError):
        BatchOptions('seed', increment=0, count=2)
    with pytest.raises(ConfigurationError):
        BatchOptions('step', start=10, increment=0.5, count=2)
    with pytest.raises(ConfigurationError):
        BatchOptions('colour')
    # a single value needs no increment
    assert BatchOptions('seed', start=9, increment=0, count=1).values() == [9]


@pytest.mark.parametrize('kwargs', [
    {'mode': 'seed', 'start': float('nan'), 'count': 2},
    {'mode': 'step', 'start': float('inf'), 'count': 2},
    {'mode': 'strength', 'start': 0.5, 'increment': float('inf'), 'count': 2},
    {'mode': 'guidance', 'start': 1.0, 'increment': float('nan'), 'count': 2},
])
def test_batch_options_rejects_non_finite(kwargs):
    with pytest.raises(ConfigurationError):
        BatchOptions(**kwargs)


def test_batch_options_from_dict():
    batch = BatchOptions.from_dict(
        {'mode': 'step', 'start': 10, 'increment': 10, 'count': 3})
    assert batch.values() == [10, 20, 30]
    with pytest.raises(ConfigurationError):
        BatchOptions.from_dict({'mode': 'seed', 'repeat': 2})
