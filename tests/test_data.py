"""
Tests for training data loading and example construction.

Tests cover:
- JSON and CSV corpus loading, error reporting
- Dataset validation
- Example windows: shift-by-one targets, </s> handling, long texts
- Epoch ordering: fixed and seeded shuffle
"""

import json

import pytest


def _write_json(path, value):
    path.write_text(json.dumps(value), encoding="utf-8")
    return str(path)


class TestLoadTexts:
    def test_json(self, tmp_path):
        from scratchgpt.data import load_texts

        path = _write_json(tmp_path / "texts.json", ["one", "two"])

        assert load_texts(path) == ["one", "two"]

    def test_csv_joins_fields(self, tmp_path):
        from scratchgpt.data import load_texts

        path = tmp_path / "texts.csv"
        path.write_text('first,row\n\n"quoted, field",x\n', encoding="utf-8")

        assert load_texts(str(path), "csv") == ["first,row", "quoted, field,x"]

    def test_missing_file(self, tmp_path):
        from scratchgpt.data import load_texts
        from scratchgpt.errors import DataLoadError

        with pytest.raises(DataLoadError):
            load_texts(str(tmp_path / "missing.json"))

    def test_malformed_json(self, tmp_path):
        from scratchgpt.data import load_texts
        from scratchgpt.errors import DataLoadError

        path = tmp_path / "bad.json"
        path.write_text("[\"unterminated", encoding="utf-8")

        with pytest.raises(DataLoadError):
            load_texts(str(path))

    def test_json_must_be_list_of_strings(self, tmp_path):
        from scratchgpt.data import load_texts
        from scratchgpt.errors import DataLoadError

        path = _write_json(tmp_path / "bad.json", {"texts": ["a"]})

        with pytest.raises(DataLoadError):
            load_texts(path)

    def test_unknown_format(self, tmp_path):
        from scratchgpt.data import load_texts
        from scratchgpt.errors import DataLoadError

        path = _write_json(tmp_path / "texts.json", ["a"])

        with pytest.raises(DataLoadError):
            load_texts(path, "yaml")


class TestDataset:
    def test_load(self, tmp_path):
        from scratchgpt.data import Dataset

        dataset = Dataset.load(
            _write_json(tmp_path / "pre.json", ["fact one", "fact two"]),
            _write_json(tmp_path / "chat.json", ["User: hi Assistant: hello"]),
        )

        assert dataset.total_samples() == 3
        assert dataset.all_texts()[-1] == "User: hi Assistant: hello"

    def test_both_empty_raises(self, tmp_path):
        from scratchgpt.data import Dataset
        from scratchgpt.errors import DataLoadError

        with pytest.raises(DataLoadError):
            Dataset.load(
                _write_json(tmp_path / "pre.json", []),
                _write_json(tmp_path / "chat.json", []),
            )

    def test_empty_strings_warn(self, caplog):
        from scratchgpt.data import Dataset

        with caplog.at_level("WARNING", logger="scratchgpt.data"):
            Dataset(pretraining=["ok", ""], chat=[]).validate()

        assert "1 empty strings" in caplog.text

    def test_shipped_corpora_load(self):
        from pathlib import Path

        from scratchgpt.data import Dataset

        root = Path(__file__).resolve().parent.parent / "data"
        dataset = Dataset.load(
            str(root / "pretraining_data.json"), str(root / "chat_training_data.json")
        )

        assert dataset.pretraining
        assert all(text.startswith("User:") for text in dataset.chat)


class TestBuildExamples:
    @pytest.fixture
    def vocab(self):
        from scratchgpt.vocab import Vocabulary

        return Vocabulary.build(["a b c d e f g"])

    def test_targets_are_inputs_shifted_by_one(self, vocab):
        from scratchgpt.data import build_examples

        (example,) = build_examples(["a b c"], vocab, max_seq_len=10)
        ids = vocab.encode_text("a b c", add_eos=True)

        assert example.input_ids == tuple(ids[:-1])
        assert example.target_ids == tuple(ids[1:])
        assert example.target_ids[-1] == vocab.eos_id

    def test_long_text_is_windowed(self, vocab):
        from scratchgpt.data import build_examples

        examples = build_examples(["a b c d e f g"], vocab, max_seq_len=3)
        ids = vocab.encode_text("a b c d e f g", add_eos=True)

        assert [len(example) for example in examples] == [3, 3, 1]
        assert all(len(example) <= 3 for example in examples)
        # Every next-token pair appears exactly once
        pairs = [
            pair
            for example in examples
            for pair in zip(example.input_ids, example.target_ids)
        ]
        assert pairs == list(zip(ids[:-1], ids[1:]))

    def test_empty_text_is_skipped(self, vocab):
        from scratchgpt.data import build_examples

        assert build_examples(["", "a"], vocab, max_seq_len=4) == build_examples(
            ["a"], vocab, max_seq_len=4
        )

    def test_invalid_max_seq_len(self, vocab):
        from scratchgpt.data import build_examples

        with pytest.raises(ValueError):
            build_examples(["a"], vocab, max_seq_len=0)

    def test_example_validates_lengths(self):
        from scratchgpt.data import TrainingExample

        with pytest.raises(ValueError):
            TrainingExample(input_ids=(1, 2), target_ids=(2,))
        with pytest.raises(ValueError):
            TrainingExample(input_ids=(), target_ids=())


class TestExampleOrder:
    def test_fixed_order(self):
        from scratchgpt.data import example_order

        assert example_order(4) == [0, 1, 2, 3]

    def test_shuffle_is_reproducible_per_epoch(self):
        from scratchgpt.data import example_order

        first = example_order(20, shuffle=True, seed=7, epoch=1)

        assert first == example_order(20, shuffle=True, seed=7, epoch=1)
        assert sorted(first) == list(range(20))
        assert first != example_order(20, shuffle=True, seed=7, epoch=2)
