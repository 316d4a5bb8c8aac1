"""
Tests for latentloop.diffusion.schedulers — schedules, solvers and the
stepping state machine.
"""
import numpy as np
import pytest

from latentloop import (
    ConfigurationError,
    SchedulerOptions,
    ShapeMismatchError,
    StateViolationError,
)
from latentloop.diffusion import (
    SCHEDULERS,
    DDIMScheduler,
    DDPMScheduler,
    DPMSolverMultistepScheduler,
    EulerAncestralDiscreteScheduler,
    EulerDiscreteScheduler,
    LMSDiscreteScheduler,
    NoiseSchedule,
    PNDMScheduler,
    StepHistory,
    compute_timesteps,
    create_scheduler,
    get_beta_schedule,
    randn_tensor,
)

ALL_FAMILIES = list(SCHEDULERS.values())
DETERMINISTIC = [DDIMScheduler, PNDMScheduler, DPMSolverMultistepScheduler,
                 EulerDiscreteScheduler, LMSDiscreteScheduler]


# ── timesteps ──

def test_trailing_timesteps_twenty_steps():
    ts = compute_timesteps(20, 1000, 'trailing')
    assert ts.tolist() == list(range(999, 0, -50))
    assert ts[0] == 999 and ts[-1] == 49


def test_leading_and_linspace_timesteps():
    leading = compute_timesteps(20, 1000, 'leading', steps_offset=1)
    assert leading[0] == 951 and leading[-1] == 1
    linspace = compute_timesteps(20, 1000, 'linspace')
    assert linspace[0] == 999 and linspace[-1] == 0


@pytest.mark.parametrize('spacing', ['trailing', 'leading', 'linspace'])
@pytest.mark.parametrize('steps', [1, 7, 30, 1000])
def test_timesteps_strictly_decreasing(spacing, steps):
    ts = compute_timesteps(steps, 1000, spacing)
    assert len(ts) == steps
    assert np.all(np.diff(ts) < 0)
    assert ts.min() >= 0 and ts.max() <= 999


@pytest.mark.parametrize('steps', [0, -3, 1001])
def test_timesteps_rejects_out_of_range_counts(steps):
    with pytest.raises(ConfigurationError):
        compute_timesteps(steps, 1000)


@pytest.mark.parametrize('cls', ALL_FAMILIES)
def test_every_family_has_n_timesteps(cls):
    s = cls(inference_steps=20)
    assert len(s.timesteps) == 20
    assert len(s) == 20
    assert s.timesteps[0] == 999
    assert not s.timesteps.flags.writeable


# ── noise schedule ──

def test_beta_schedule_linear_endpoints():
    betas = get_beta_schedule('linear', 1000, 0.0001, 0.02)
    assert betas.shape == (1000,)
    assert betas.dtype == np.float32
    assert betas[0] == pytest.approx(0.0001)
    assert betas[-1] == pytest.approx(0.02)


def test_beta_schedule_scaled_linear_endpoints():
    betas = get_beta_schedule('scaled_linear', 1000, 0.00085, 0.012)
    assert betas[0] == pytest.approx(0.00085, rel=1e-4)
    assert betas[-1] == pytest.approx(0.012, rel=1e-4)
    assert np.all(np.diff(betas) > 0)


def test_beta_schedule_cosine_is_capped():
    betas = get_beta_schedule('squaredcos_cap_v2', 1000, maximum_beta=0.5)
    assert betas.shape == (1000,)
    assert betas.min() > 0
    assert betas.max() <= 0.5


@pytest.mark.parametrize('kwargs', [
    {'schedule': 'cosine'},
    {'schedule': 'linear', 'beta_start': 0.02, 'beta_end': 0.01},
    {'schedule': 'linear', 'beta_start': 0.0, 'beta_end': 0.01},
    {'schedule': 'linear', 'num_timesteps': 0},
])
def test_beta_schedule_rejects_bad_input(kwargs):
    with pytest.raises(ConfigurationError):
        get_beta_schedule(**kwargs)


def test_noise_schedule_tables():
    sched = NoiseSchedule(1000, 0.00085, 0.012, 'scaled_linear')
    assert len(sched) == 1000
    assert np.all(np.diff(sched.alphas_cumprod) < 0)
    assert 0 < sched.alphas_cumprod[-1] < sched.alphas_cumprod[0] < 1
    np.testing.assert_allclose(
        sched.sigmas,
        np.sqrt((1 - sched.alphas_cumprod) / sched.alphas_cumprod),
        rtol=1e-5)
    with pytest.raises(ValueError):
        sched.betas[0] = 1.0


# ── construction ──

def test_create_scheduler_selects_family():
    for kind, cls in SCHEDULERS.items():
        s = create_scheduler(SchedulerOptions(scheduler_type=kind,
                                              inference_steps=10))
        assert type(s) is cls


def test_scheduler_rejects_foreign_options():
    with pytest.raises(ConfigurationError):
        DDIMScheduler(SchedulerOptions(scheduler_type='euler'))


def test_scheduler_kwargs_override_options():
    base = SchedulerOptions(scheduler_type='lms', inference_steps=30)
    s = LMSDiscreteScheduler(base, inference_steps=12)
    assert len(s.timesteps) == 12
    assert s.options.inference_steps == 12


def test_solver_order_defaults_and_caps():
    assert DPMSolverMultistepScheduler().order == 2
    assert DPMSolverMultistepScheduler(solver_order=5).order == 3
    assert PNDMScheduler().order == 4
    assert LMSDiscreteScheduler().order == 4
    assert LMSDiscreteScheduler(solver_order=8).order == 8
    assert DDIMScheduler(solver_order=3).order == 1


def test_init_noise_sigma():
    assert DDIMScheduler().init_noise_sigma == 1.0
    trailing = EulerDiscreteScheduler(inference_steps=20)
    assert trailing.init_noise_sigma == pytest.approx(
        float(trailing.sigmas.max()))
    leading = EulerDiscreteScheduler(inference_steps=20,
                                     timestep_spacing='leading')
    assert leading.init_noise_sigma == pytest.approx(
        np.sqrt(float(leading.sigmas.max()) ** 2 + 1))


def test_sigmas_end_at_zero():
    s = EulerDiscreteScheduler(inference_steps=10)
    assert len(s.sigmas) == 11
    assert s.sigmas[-1] == 0.0
    assert np.all(np.diff(s.sigmas) < 0)


# ── state machine ──

def _latents(seed=0):
    return randn_tensor((1, 4, 8, 8), seed=seed)


def test_step_advances_and_exhausts():
    s = DDIMScheduler(inference_steps=5)
    x = _latents()
    for i, t in enumerate(s.timesteps):
        assert s.step_index == i
        x = s.step(np.zeros_like(x), t, x)
        assert x.dtype == np.float32
    assert s.is_exhausted
    with pytest.raises(StateViolationError):
        s.step(np.zeros_like(x), s.timesteps[-1], x)


def test_step_same_timestep_twice_raises():
    s = EulerDiscreteScheduler(inference_steps=5)
    x = _latents()
    t0 = s.timesteps[0]
    s.step(np.zeros_like(x), t0, x)
    with pytest.raises(StateViolationError):
        s.step(np.zeros_like(x), t0, x)
    assert s.step_index == 1


def test_step_out_of_order_raises():
    s = LMSDiscreteScheduler(inference_steps=5)
    x = _latents()
    with pytest.raises(StateViolationError):
        s.step(np.zeros_like(x), s.timesteps[1], x)
    assert s.step_index == 0


def test_step_shape_mismatch_leaves_state_unchanged():
    s = PNDMScheduler(inference_steps=5)
    x = _latents()
    with pytest.raises(ShapeMismatchError) as info:
        s.step(np.zeros((1, 4, 4, 4), np.float32), s.timesteps[0], x)
    assert info.value.expected == (1, 4, 8, 8)
    assert info.value.actual == (1, 4, 4, 4)
    assert s.step_index == 0
    assert len(s.history) == 0


def test_step_does_not_modify_inputs():
    s = DPMSolverMultistepScheduler(inference_steps=5)
    x = _latents()
    eps = _latents(1)
    x_before, eps_before = x.copy(), eps.copy()
    s.step(eps, s.timesteps[0], x)
    np.testing.assert_array_equal(x, x_before)
    np.testing.assert_array_equal(eps, eps_before)


def test_step_order_argument():
    s = LMSDiscreteScheduler(inference_steps=5)
    x = _latents()
    with pytest.raises(ConfigurationError):
        s.step(np.zeros_like(x), s.timesteps[0], x, order=0)
    out = s.step(np.zeros_like(x), s.timesteps[0], x, order=20)
    assert out.shape == x.shape


def test_scale_model_input_unknown_timestep():
    s = DDIMScheduler(inference_steps=10)
    with pytest.raises(StateViolationError):
        s.scale_model_input(_latents(), 5)


def test_set_begin_index():
    s = DDIMScheduler(inference_steps=10)
    s.set_begin_index(4)
    assert s.begin_index == 4 and s.step_index == 4
    x = _latents()
    with pytest.raises(StateViolationError):
        s.step(np.zeros_like(x), s.timesteps[0], x)
    s.step(np.zeros_like(x), s.timesteps[4], x)
    assert s.step_index == 5
    with pytest.raises(StateViolationError):
        s.set_begin_index(0)


def test_set_begin_index_out_of_range():
    s = DDIMScheduler(inference_steps=10)
    with pytest.raises(ConfigurationError):
        s.set_begin_index(10)
    with pytest.raises(ConfigurationError):
        s.set_begin_index(-1)


def test_reset_restarts_schedule():
    s = DDPMScheduler(inference_steps=4, seed=11)
    x = _latents()
    eps = _latents(1)
    first = s.step(eps, s.timesteps[0], x)
    s.reset()
    assert s.step_index == 0
    np.testing.assert_array_equal(s.step(eps, s.timesteps[0], x), first)


# ── step history ──

def test_step_history_ring_buffer():
    h = StepHistory(3)
    for i in range(5):
        h.push(np.full((2,), i, dtype=np.float32))
    assert len(h) == 3
    assert h.total_pushed == 5
    assert [int(v[0]) for v in h.latest()] == [4, 3, 2]
    assert [int(v[0]) for v in h.latest(2)] == [4, 3]
    h.clear()
    assert len(h) == 0 and h.latest() == []


def test_step_history_rejects_zero_capacity():
    with pytest.raises(ConfigurationError):
        StepHistory(0)


@pytest.mark.parametrize('cls', ALL_FAMILIES)
def test_every_step_records_history(cls):
    s = cls(inference_steps=6)
    x = _latents() * np.float32(s.init_noise_sigma)
    for i, t in enumerate(s.timesteps):
        x = s.step(_latents(int(t)), t, x)
        assert s.history.total_pushed == i + 1
        assert len(s.history) == min(s.order, i + 1)


@pytest.mark.parametrize('cls', [DDPMScheduler, DDIMScheduler,
                                 EulerDiscreteScheduler,
                                 EulerAncestralDiscreteScheduler])
def test_single_step_history_holds_model_output(cls):
    s = cls(inference_steps=4)
    x = _latents()
    out = _latents(1)
    s.step(out, s.timesteps[0], x)
    np.testing.assert_array_equal(s.history.latest(1)[0], out)


# ── input scaling / forward process ──

def test_scale_model_input():
    ddim = DDIMScheduler(inference_steps=10)
    x = _latents()
    assert ddim.scale_model_input(x, ddim.timesteps[0]) is x

    euler = EulerDiscreteScheduler(inference_steps=10)
    sigma = float(euler.sigmas[0])
    np.testing.assert_allclose(
        euler.scale_model_input(x, euler.timesteps[0]),
        x / np.sqrt(sigma ** 2 + 1), rtol=1e-6)


def test_add_noise_per_batch_timesteps():
    s = DDIMScheduler()
    x0 = randn_tensor((2, 4, 8, 8), seed=0)
    noise = randn_tensor((2, 4, 8, 8), seed=1)
    noisy = s.add_noise(x0, noise, np.array([10, 500]))
    ac = s.schedule.alphas_cumprod
    for b, t in enumerate((10, 500)):
        expected = np.sqrt(ac[t]) * x0[b] + np.sqrt(1 - ac[t]) * noise[b]
        np.testing.assert_allclose(noisy[b], expected, rtol=1e-5, atol=1e-6)


def test_add_noise_sigma_space():
    s = EulerDiscreteScheduler()
    x0 = randn_tensor((1, 4, 8, 8), seed=0)
    noise = randn_tensor((1, 4, 8, 8), seed=1)
    noisy = s.add_noise(x0, noise, 700)
    np.testing.assert_allclose(
        noisy, x0 + s.schedule.sigmas[700] * noise, rtol=1e-5, atol=1e-6)


def test_add_noise_validates_inputs():
    s = DDIMScheduler()
    x0 = randn_tensor((2, 4, 8, 8), seed=0)
    with pytest.raises(ShapeMismatchError):
        s.add_noise(x0, x0[:1], 10)
    with pytest.raises(ShapeMismatchError):
        s.add_noise(x0, x0, np.array([1, 2, 3]))
    with pytest.raises(ConfigurationError):
        s.add_noise(x0, x0, 1000)
    with pytest.raises(ConfigurationError):
        s.add_noise(x0, x0, np.array([-1, 3]))


# ── numerics ──

@pytest.mark.parametrize('cls', DETERMINISTIC)
def test_constant_noise_recovers_clean_sample(cls):
    """With the true noise as model output every solver lands on x₀."""
    s = cls(inference_steps=12)
    x0 = randn_tensor((1, 4, 8, 8), seed=0)
    eps = randn_tensor((1, 4, 8, 8), seed=1)
    sample = s.add_noise(x0, eps, s.timesteps[:1])
    for t in s.timesteps:
        sample = s.step(eps, t, sample)
    np.testing.assert_allclose(sample, x0, atol=1e-3)


def test_ddim_without_eta_ignores_seed():
    x = _latents()
    eps = _latents(1)
    a = DDIMScheduler(inference_steps=5, seed=1)
    b = DDIMScheduler(inference_steps=5, seed=2)
    np.testing.assert_array_equal(a.step(eps, a.timesteps[0], x),
                                  b.step(eps, b.timesteps[0], x))


@pytest.mark.parametrize('cls', [DDPMScheduler,
                                 EulerAncestralDiscreteScheduler])
def test_stochastic_steps_are_seeded(cls):
    x = _latents()
    eps = _latents(1)
    a, b, c = cls(seed=7), cls(seed=7), cls(seed=8)
    out_a = a.step(eps, a.timesteps[0], x)
    np.testing.assert_array_equal(out_a, b.step(eps, b.timesteps[0], x))
    assert not np.allclose(out_a, c.step(eps, c.timesteps[0], x))


def test_ddpm_final_step_adds_no_noise():
    x = _latents()
    eps = _latents(1)
    a = DDPMScheduler(inference_steps=1, seed=1)
    b = DDPMScheduler(inference_steps=1, seed=2)
    np.testing.assert_array_equal(a.step(eps, 999, x), b.step(eps, 999, x))


def test_euler_ancestral_without_eta_matches_euler():
    x = _latents()
    eps = _latents(1)
    euler = EulerDiscreteScheduler(inference_steps=8)
    ancestral = EulerAncestralDiscreteScheduler(inference_steps=8, eta=0.0)
    for t in euler.timesteps:
        a = euler.step(eps, t, x)
        b = ancestral.step(eps, t, x)
        np.testing.assert_allclose(a, b, rtol=1e-5, atol=1e-5)
        x = a


@pytest.mark.parametrize('prediction_type', ['v_prediction', 'sample'])
@pytest.mark.parametrize('cls', ALL_FAMILIES)
def test_prediction_types_produce_finite_output(cls, prediction_type):
    s = cls(inference_steps=6, prediction_type=prediction_type,
            clip_sample=True)
    x = _latents() * np.float32(s.init_noise_sigma)
    for t in s.timesteps:
        model_input = s.scale_model_input(x, t)
        out = _latents(int(t)) + np.float32(0.1) * model_input
        x = s.step(out, t, x)
    assert np.all(np.isfinite(x))


# ── multistep coefficients against hand-computed references ──

def _varying_noise(n):
    """A different ε for every step, so multistep history terms differ."""
    base = _latents(100)
    return [base + np.float32(0.3) * _latents(200 + i) for i in range(n)]


def test_pndm_matches_plms_reference():
    s = PNDMScheduler(inference_steps=8)
    ac = s.schedule.alphas_cumprod.astype(np.float64)
    ts = [int(t) for t in s.timesteps]
    eps = _varying_noise(len(ts))

    sample = _latents(7)
    ref = sample.astype(np.float64)
    ets = []
    for i, t in enumerate(ts):
        ets.append(eps[i].astype(np.float64))
        if len(ets) == 1:
            et = ets[-1]
        elif len(ets) == 2:
            et = (3 * ets[-1] - ets[-2]) / 2
        elif len(ets) == 3:
            et = (23 * ets[-1] - 16 * ets[-2] + 5 * ets[-3]) / 12
        else:
            et = (55 * ets[-1] - 59 * ets[-2] + 37 * ets[-3]
                  - 9 * ets[-4]) / 24
        a_t = ac[t]
        a_prev = ac[ts[i + 1]] if i + 1 < len(ts) else 1.0
        x0 = (ref - np.sqrt(1 - a_t) * et) / np.sqrt(a_t)
        ref = np.sqrt(a_prev) * x0 + np.sqrt(1 - a_prev) * et

        sample = s.step(eps[i], t, sample)
        np.testing.assert_allclose(sample, ref, rtol=1e-4, atol=1e-3)


def _dpm_tables(s):
    ac = s.schedule.alphas_cumprod[s.timesteps].astype(np.float64)
    alpha = np.append(np.sqrt(ac), 1.0)
    sigma = np.append(np.sqrt(1.0 - ac), 0.0)
    with np.errstate(divide='ignore'):
        lam = np.log(alpha) - np.log(sigma)
    return alpha, sigma, lam


def _dpm_update(order, ms, x, i, alpha, sigma, lam):
    """DPM-Solver++ step from index i to i + 1; ``ms`` newest first."""
    h = lam[i + 1] - lam[i]
    phi = np.expm1(-h)
    x_next = sigma[i + 1] / sigma[i] * x - alpha[i + 1] * phi * ms[0]
    if order == 1:
        return x_next
    r0 = (lam[i] - lam[i - 1]) / h
    d1_0 = (ms[0] - ms[1]) / r0
    if order == 2:
        return x_next - 0.5 * alpha[i + 1] * phi * d1_0
    r1 = (lam[i - 1] - lam[i - 2]) / h
    d1_1 = (ms[1] - ms[2]) / r1
    d1 = d1_0 + r0 / (r0 + r1) * (d1_0 - d1_1)
    d2 = (d1_0 - d1_1) / (r0 + r1)
    return (x_next
            + alpha[i + 1] * (phi / h + 1.0) * d1
            - alpha[i + 1] * ((phi + h) / h ** 2 - 0.5) * d2)


@pytest.mark.parametrize('steps,solver_order,orders', [
    (8, 2, [1, 2, 2, 2, 2, 2, 2, 1]),
    # fewer than 15 steps: the penultimate step drops to second order
    (8, 3, [1, 2, 3, 3, 3, 3, 2, 1]),
    (16, 3, [1, 2] + [3] * 13 + [1]),
])
def test_dpm_solver_matches_reference(steps, solver_order, orders):
    s = DPMSolverMultistepScheduler(inference_steps=steps,
                                    solver_order=solver_order)
    alpha, sigma, lam = _dpm_tables(s)
    eps = _varying_noise(steps)

    sample = _latents(7)
    ref = sample.astype(np.float64)
    ms = []
    for i, t in enumerate(s.timesteps):
        ms.insert(0, (ref - sigma[i] * eps[i]) / alpha[i])
        ref = _dpm_update(orders[i], ms, ref, i, alpha, sigma, lam)

        sample = s.step(eps[i], t, sample)
        np.testing.assert_allclose(sample, ref, rtol=1e-4, atol=1e-3)


def test_dpm_penultimate_step_is_not_third_order():
    s = DPMSolverMultistepScheduler(inference_steps=8, solver_order=3)
    alpha, sigma, lam = _dpm_tables(s)
    eps = _varying_noise(8)
    sample = _latents(7)
    ms = []
    for i, t in enumerate(s.timesteps[:6]):
        x = sample.astype(np.float64)
        ms.insert(0, (x - sigma[i] * eps[i]) / alpha[i])
        sample = s.step(eps[i], t, sample)

    x = sample.astype(np.float64)
    ms.insert(0, (x - sigma[6] * eps[6]) / alpha[6])
    third = _dpm_update(3, ms, x, 6, alpha, sigma, lam)
    second = _dpm_update(2, ms, x, 6, alpha, sigma, lam)
    out = s.step(eps[6], s.timesteps[6], sample)
    np.testing.assert_allclose(out, second, rtol=1e-4, atol=1e-3)
    assert not np.allclose(out, third, rtol=1e-4, atol=1e-3)


def _lagrange_integral(nodes, j, a, b):
    """Integral over [a, b] of the Lagrange basis polynomial for nodes[j]."""
    points, weights = np.polynomial.legendre.leggauss(8)
    s = 0.5 * (b - a) * points + 0.5 * (a + b)
    basis = np.ones_like(s)
    for k, node in enumerate(nodes):
        if k != j:
            basis *= (s - node) / (nodes[j] - node)
    return 0.5 * (b - a) * np.sum(weights * basis)


@pytest.mark.parametrize('solver_order', [2, 4])
def test_lms_matches_lagrange_quadrature(solver_order):
    s = LMSDiscreteScheduler(inference_steps=8, solver_order=solver_order)
    sigmas = s.sigmas.astype(np.float64)
    eps = _varying_noise(8)

    sample = _latents(7) * np.float32(s.init_noise_sigma)
    ref = sample.astype(np.float64)
    derivatives = []
    for i, t in enumerate(s.timesteps):
        x0 = ref - sigmas[i] * eps[i]
        derivatives.insert(0, (ref - x0) / sigmas[i])
        derivatives = derivatives[:solver_order]
        nodes = [sigmas[i - k] for k in range(len(derivatives))]
        ref = ref + sum(
            _lagrange_integral(nodes, j, sigmas[i], sigmas[i + 1]) * d
            for j, d in enumerate(derivatives))

        sample = s.step(eps[i], t, sample)
        np.testing.assert_allclose(sample, ref, rtol=1e-4, atol=1e-3)
