"""
Tests for the sampling policy.
"""

import pytest
import torch

from llm_session_lite.sampling.sampling import (
    SamplingParams,
    SamplingPolicy,
    apply_repetition_penalty,
    greedy_sampling,
    temperature_scaling,
    top_k_filtering,
    top_p_filtering,
)


def logits_from_probs(probs):
    return torch.log(torch.tensor(probs, dtype=torch.float32))


@pytest.mark.unit
def test_sampling_params_defaults():
    """Test the default policy configuration."""
    params = SamplingParams()

    assert params.top_k == 40
    assert params.top_p == 0.95
    assert params.temperature == 1.0
    assert params.seed is None
    assert params.repetition_penalty == 1.0


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs",
    [
        {"top_k": -1},
        {"top_p": 0.0},
        {"top_p": 1.5},
        {"temperature": -0.1},
        {"repetition_penalty": 0.0},
    ],
)
def test_sampling_params_validation(kwargs):
    """Test that invalid parameters are rejected."""
    with pytest.raises(ValueError):
        SamplingParams(**kwargs)


@pytest.mark.unit
def test_greedy_sampling():
    """Test argmax selection."""
    assert greedy_sampling(torch.tensor([0.1, 2.0, -1.0])) == 1


@pytest.mark.unit
def test_temperature_scaling():
    """Test that logits are divided by the temperature."""
    scaled = temperature_scaling(torch.tensor([2.0, 4.0]), 2.0)

    assert torch.equal(scaled, torch.tensor([1.0, 2.0]))


@pytest.mark.unit
def test_top_k_filtering_keeps_k_largest():
    """Test that only the k highest logits survive."""
    logits = torch.tensor([1.0, 5.0, 3.0, 4.0, 2.0])

    filtered = top_k_filtering(logits, 2)

    assert torch.isfinite(filtered).tolist() == [False, True, False, True, False]
    assert filtered[1] == 5.0
    assert filtered[3] == 4.0


@pytest.mark.unit
def test_top_k_filtering_disabled():
    """Test that k=0 and k >= vocab leave logits untouched."""
    logits = torch.tensor([1.0, 2.0, 3.0])

    assert torch.equal(top_k_filtering(logits, 0), logits)
    assert torch.equal(top_k_filtering(logits, 3), logits)


@pytest.mark.unit
def test_top_p_filtering_smallest_prefix():
    """Test that the nucleus is the smallest prefix reaching p."""
    logits = logits_from_probs([0.5, 0.3, 0.15, 0.05])

    filtered = top_p_filtering(logits, 0.75)

    assert torch.isfinite(filtered).tolist() == [True, True, False, False]


@pytest.mark.unit
def test_top_p_filtering_includes_crossing_token():
    """Test that the token crossing the threshold is kept."""
    logits = logits_from_probs([0.5, 0.3, 0.15, 0.05])

    filtered = top_p_filtering(logits, 0.85)

    assert torch.isfinite(filtered).tolist() == [True, True, True, False]


@pytest.mark.unit
def test_top_p_filtering_always_keeps_one():
    """Test that a dominant token is kept even for tiny p."""
    logits = logits_from_probs([0.1, 0.7, 0.2])

    filtered = top_p_filtering(logits, 0.01)

    assert torch.isfinite(filtered).tolist() == [False, True, False]


@pytest.mark.unit
def test_top_p_filtering_unsorted_input():
    """Test nucleus selection when logits are not sorted."""
    logits = logits_from_probs([0.05, 0.15, 0.5, 0.3])

    filtered = top_p_filtering(logits, 0.75)

    assert torch.isfinite(filtered).tolist() == [False, False, True, True]


@pytest.mark.unit
def test_apply_repetition_penalty():
    """Test that seen tokens are pushed down regardless of sign."""
    logits = torch.tensor([2.0, -2.0, 1.0])

    penalized = apply_repetition_penalty(logits, [0, 1, 1], 2.0)

    assert penalized.tolist() == [1.0, -4.0, 1.0]
    assert logits.tolist() == [2.0, -2.0, 1.0]


@pytest.mark.unit
def test_policy_same_seed_same_sequence():
    """Test that a seed reproduces the whole draw sequence."""
    logits = torch.randn(100, generator=torch.Generator().manual_seed(0))
    params = SamplingParams(top_k=50, top_p=1.0, seed=42)

    first = SamplingPolicy(params)
    second = SamplingPolicy(params)

    draws_a = [first.sample_next(logits) for _ in range(20)]
    draws_b = [second.sample_next(logits) for _ in range(20)]
    assert draws_a == draws_b
    assert len(set(draws_a)) > 1


@pytest.mark.unit
def test_policy_does_not_touch_global_rng():
    """Test that sampling leaves the global torch RNG alone."""
    logits = torch.randn(10)
    torch.manual_seed(123)
    expected = torch.rand(1)

    torch.manual_seed(123)
    SamplingPolicy(SamplingParams(seed=7)).sample_next(logits)
    assert torch.equal(torch.rand(1), expected)


@pytest.mark.unit
def test_policy_draws_only_from_top_k():
    """Test that draws never leave the top-k pool."""
    logits = torch.arange(10, dtype=torch.float32)
    policy = SamplingPolicy(SamplingParams(top_k=3, top_p=1.0, seed=0))

    draws = {policy.sample_next(logits) for _ in range(200)}

    assert draws <= {7, 8, 9}


@pytest.mark.unit
def test_policy_draws_only_from_nucleus():
    """Test that draws never leave the nucleus."""
    logits = logits_from_probs([0.6, 0.3, 0.05, 0.05])
    policy = SamplingPolicy(SamplingParams(top_k=0, top_p=0.85, seed=0))

    draws = {policy.sample_next(logits) for _ in range(200)}

    assert draws <= {0, 1}


@pytest.mark.unit
def test_policy_zero_temperature_is_greedy():
    """Test that temperature 0 always returns the argmax."""
    logits = torch.tensor([0.5, 3.0, 2.9])
    policy = SamplingPolicy(SamplingParams(temperature=0.0))

    assert all(policy.sample_next(logits) == 1 for _ in range(10))


@pytest.mark.unit
def test_policy_low_temperature_sharpens():
    """Test that a low temperature concentrates draws on the best token."""
    logits = torch.tensor([1.0, 1.5, 1.2])
    policy = SamplingPolicy(SamplingParams(top_k=0, top_p=1.0, temperature=0.01, seed=3))

    draws = [policy.sample_next(logits) for _ in range(50)]

    assert all(token == 1 for token in draws)


@pytest.mark.unit
def test_policy_repetition_penalty_changes_greedy_choice():
    """Test that the penalty applies before selection."""
    logits = torch.tensor([2.0, 1.5, 0.0])
    policy = SamplingPolicy(SamplingParams(temperature=0.0, repetition_penalty=2.0))

    assert policy.sample_next(logits) == 0
    assert policy.sample_next(logits, history=[0]) == 1


@pytest.mark.unit
def test_policy_accepts_batched_logits():
    """Test that [1, vocab] logits are flattened."""
    logits = torch.tensor([[0.0, 9.0, 0.0]])
    policy = SamplingPolicy(SamplingParams(temperature=0.0))

    assert policy.sample_next(logits) == 1
