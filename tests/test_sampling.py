"""Tests for sampling options, clamping and chain layout."""

import logging
import math

import pytest

from llama_session import SamplingOptions, SamplingParams, ValidationError, build_sampler_stages


def test_defaults():
    params = SamplingParams()
    assert params.temperature == 0.8
    assert params.top_k == 40
    assert params.top_p == 0.95
    assert params.min_p == 0.05
    assert params.repeat_penalty == 1.1
    assert params.repeat_last_n == 64
    assert params.num_predict == -1
    assert params.mirostat == 0
    assert params.seed == -1


@pytest.mark.parametrize(
    "options,field,expected",
    [
        ({"temperature": 5.0}, "temperature", 2.0),
        ({"temperature": -1.0}, "temperature", 0.0),
        ({"top_k": 0}, "top_k", 1),
        ({"top_k": -7}, "top_k", 1),
        ({"top_p": 1.5}, "top_p", 1.0),
        ({"top_p": -0.5}, "top_p", 0.0),
        ({"min_p": 2.0}, "min_p", 1.0),
        ({"repeat_penalty": -0.3}, "repeat_penalty", 1.0),
        ({"repeat_last_n": -5}, "repeat_last_n", -1),
        ({"presence_penalty": -1.0}, "presence_penalty", 0.0),
        ({"frequency_penalty": -1.0}, "frequency_penalty", 0.0),
        ({"num_predict": -10}, "num_predict", -1),
        ({"mirostat": 3}, "mirostat", 0),
        ({"mirostat": -1}, "mirostat", 0),
        ({"mirostat_tau": -2.0}, "mirostat_tau", 5.0),
        ({"mirostat_eta": -2.0}, "mirostat_eta", 0.1),
        ({"seed": -99}, "seed", -1),
    ],
)
def test_clamping(options, field, expected):
    params = SamplingParams().merge(options)
    assert getattr(params, field) == pytest.approx(expected)


def test_in_range_values_survive():
    params = SamplingParams().merge(
        {"temperature": 0.2, "top_k": 5, "top_p": 0.5, "repeat_last_n": 0, "seed": 42}
    )
    assert params.temperature == 0.2
    assert params.top_k == 5
    assert params.top_p == 0.5
    assert params.repeat_last_n == 0
    assert params.seed == 42


def test_absent_options_keep_current_values():
    base = SamplingParams().merge({"temperature": 0.3, "top_k": 7})
    merged = base.merge({"top_p": 0.5})
    assert merged.temperature == 0.3
    assert merged.top_k == 7
    assert merged.top_p == 0.5


def test_numeric_strings_are_accepted():
    options = SamplingOptions.from_mapping({"temperature": "0.5", "top_k": "12"})
    assert options.temperature == 0.5
    assert options.top_k == 12


def test_max_tokens_is_num_predict():
    assert SamplingOptions.from_mapping({"max_tokens": 64}).num_predict == 64


@pytest.mark.parametrize(
    "options",
    [
        {"temperature": "hot"},
        {"top_k": 4.5},
        {"top_k": "many"},
        {"seed": True},
        {"top_p": math.nan},
        {"min_p": [0.1]},
    ],
)
def test_non_numeric_option_raises(options):
    with pytest.raises(ValidationError, match=next(iter(options))):
        SamplingOptions.from_mapping(options)


def test_unknown_option_is_ignored_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        options = SamplingOptions.from_mapping({"typical_p": 0.9, "top_k": 3})
    assert options.top_k == 3
    assert "typical_p" in caplog.text


def test_none_values_are_absent():
    assert SamplingOptions.from_mapping({"temperature": None}) == SamplingOptions()


def test_chain_order_without_mirostat():
    stages = build_sampler_stages(SamplingParams(), n_vocab=32000)
    assert [s.name for s in stages] == [
        "penalties",
        "top_k",
        "top_p",
        "min_p",
        "temp",
        "dist",
    ]
    assert stages[0].args == {"last_n": 64, "repeat": 1.1, "freq": 0.0, "present": 0.0}
    assert stages[-1].args == {"seed": -1}


@pytest.mark.parametrize("mode,final", [(1, "mirostat"), (2, "mirostat_v2")])
def test_mirostat_replaces_plain_draw(mode, final):
    params = SamplingParams().merge({"mirostat": mode, "seed": 7})
    names = [s.name for s in build_sampler_stages(params, n_vocab=32000)]
    assert names[-1] == final
    assert "dist" not in names
    assert sum(n in ("dist", "mirostat", "mirostat_v2") for n in names) == 1


def test_mirostat_v1_arguments():
    params = SamplingParams().merge({"mirostat": 1, "mirostat_tau": 3.0, "seed": 9})
    final = build_sampler_stages(params, n_vocab=151936)[-1]
    assert final.args == {"n_vocab": 151936, "seed": 9, "tau": 3.0, "eta": 0.1, "m": 100}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"seed": None},
        {"top_k": 4.5},
        {"temperature": "hot"},
        {"mirostat": True},
        {"top_p": float("nan")},
    ],
)
def test_params_reject_bad_field_types(kwargs):
    with pytest.raises(ValidationError):
        SamplingParams(**kwargs)


def test_params_accept_integer_floats():
    assert SamplingParams(temperature=1, repeat_penalty=2).temperature == 1
