import json
import logging

import pytest

from media_rec.scoring_weights import (
    DEFAULT_WEIGHTS,
    SLOT_NAMES,
    ScoringWeights,
    load_scoring_weights,
    save_scoring_weights,
)


def test_default_weights_sum_to_one():
    assert DEFAULT_WEIGHTS.total == pytest.approx(1.0)
    assert set(DEFAULT_WEIGHTS.slots()) == set(SLOT_NAMES)
    assert DEFAULT_WEIGHTS.source == 0.60
    # Similar items keep a third of the source slot
    assert DEFAULT_WEIGHTS.source * DEFAULT_WEIGHTS.similar_source_value == pytest.approx(0.20)


def test_weights_not_summing_to_one_are_rejected():
    with pytest.raises(ValueError, match="sum"):
        ScoringWeights(source=0.5)


def test_negative_and_non_numeric_weights_are_rejected():
    with pytest.raises(ValueError):
        ScoringWeights(source=0.8, genre=-0.05)
    with pytest.raises(ValueError):
        ScoringWeights(genre="high")


def test_similar_source_value_must_be_a_fraction():
    with pytest.raises(ValueError):
        ScoringWeights(similar_source_value=1.5)


def test_custom_table_is_accepted():
    weights = ScoringWeights(source=0.5, genre=0.25)
    assert weights.total == pytest.approx(1.0)


def test_load_missing_file_uses_defaults(tmp_path):
    assert load_scoring_weights(tmp_path / "missing.json") is DEFAULT_WEIGHTS


def test_load_unreadable_file_uses_defaults(tmp_path, caplog):
    path = tmp_path / "weights.json"
    path.write_text("{not json")
    with caplog.at_level(logging.WARNING):
        assert load_scoring_weights(path) is DEFAULT_WEIGHTS
    assert "Failed to read scoring weights" in caplog.text


def test_load_invalid_table_raises(tmp_path):
    path = tmp_path / "weights.json"
    path.write_text(json.dumps({"source": 0.9}))
    with pytest.raises(ValueError):
        load_scoring_weights(path)


def test_save_then_load(tmp_path):
    weights = ScoringWeights(source=0.5, genre=0.25, similar_source_value=0.5)
    path = save_scoring_weights(weights, tmp_path / "nested" / "weights.json")
    assert load_scoring_weights(path) == weights


def test_unknown_keys_are_ignored_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        weights = ScoringWeights.from_dict({"source": 0.6, "director": 0.3})
    assert weights == DEFAULT_WEIGHTS
    assert "director" in caplog.text
