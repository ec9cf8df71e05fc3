"""Unit tests for saving and loading BERT models."""

import os

import pytest
import torch

from bertstack.bert_model import BERT, ModelState
from bertstack.exceptions import (
  DeserializationError,
  IncompatibleModelError,
  ModelNotFoundError,
  ModelWriteError,
)
from bertstack.heads import SequenceClassificationHead
from bertstack.io import load_checkpoint, save_checkpoint
from bertstack.utils import causal_attention_mask

SIZES = dict(src_vocab_size=60, src_seq_len=6, num_encoder_layers=2, d_model=16, num_heads=2)


def _bert(**kwargs) -> BERT:
  params = dict(SIZES, dropout=0.0)
  params.update(kwargs)
  return BERT(**params)


def test_save_then_load_reproduces_outputs(tmp_path) -> None:
  path = tmp_path / "bert.bin"
  source = _bert().eval()
  source.save_model(path)

  target = _bert().eval()
  input_ids = torch.randint(0, 60, (3, 6))
  assert not torch.equal(source(input_ids), target(input_ids))

  target.load_model(path)
  assert torch.equal(source(input_ids), target(input_ids))
  assert target.state is ModelState.BUILT


def test_load_replaces_the_network(tmp_path) -> None:
  path = tmp_path / "bert.bin"
  _bert().save_model(path)
  target = _bert()
  old_network = target.network
  target.load_model(path)
  assert target.network is not old_network
  assert all(layer.masks is target.masks for layer in target.network.encoder.layers)


def test_unbuilt_object_adopts_saved_model(tmp_path) -> None:
  path = tmp_path / "nested" / "dir" / "bert.bin"
  source = _bert(
    attention_mask=causal_attention_mask(6),
    output_layer=SequenceClassificationHead,
    output_layer_kwargs={"num_labels": 4},
  ).eval()
  source.save_model(path)

  restored = BERT()
  restored.load_model(path)
  restored.eval()
  assert restored.config == source.config
  assert isinstance(restored.output_layer, SequenceClassificationHead)
  assert torch.equal(restored.masks.attention_mask, source.masks.attention_mask)
  input_ids = torch.randint(0, 60, (2, 6))
  assert torch.equal(source(input_ids), restored(input_ids))


def test_missing_file_leaves_object_untouched(tmp_path) -> None:
  bert = _bert()
  config = bert.config
  network = bert.network
  with pytest.raises(ModelNotFoundError):
    bert.load_model(tmp_path / "missing.bin")
  with pytest.raises(FileNotFoundError):
    bert.load_model(tmp_path / "missing.bin")
  assert bert.config is config
  assert bert.network is network


def test_missing_file_on_unbuilt_object() -> None:
  bert = BERT()
  with pytest.raises(ModelNotFoundError):
    bert.load_model("missing.bin")
  assert bert.state is ModelState.UNBUILT


def test_incompatible_configuration_is_detected(tmp_path) -> None:
  path = tmp_path / "bert.bin"
  _bert(num_encoder_layers=3).save_model(path)
  bert = _bert()
  network = bert.network
  with pytest.raises(IncompatibleModelError) as excinfo:
    bert.load_model(path)
  assert excinfo.value.differences["num_encoder_layers"] == (2, 3)
  assert bert.network is network


def test_incompatible_output_layer_is_detected(tmp_path) -> None:
  path = tmp_path / "bert.bin"
  _bert(output_layer=SequenceClassificationHead).save_model(path)
  with pytest.raises(IncompatibleModelError):
    _bert().load_model(path)


def test_corrupt_file_raises_deserialization_error(tmp_path) -> None:
  path = tmp_path / "corrupt.bin"
  path.write_bytes(b"definitely not a checkpoint")
  bert = _bert()
  network = bert.network
  with pytest.raises(DeserializationError):
    bert.load_model(path)
  assert bert.network is network


def test_foreign_payload_raises_deserialization_error(tmp_path) -> None:
  path = tmp_path / "foreign.pt"
  torch.save({"weights": torch.zeros(2)}, path)
  with pytest.raises(DeserializationError):
    _bert().load_model(path)


def test_unsupported_version_raises_deserialization_error(tmp_path) -> None:
  path = tmp_path / "bert.bin"
  _bert().save_model(path)
  payload = load_checkpoint(path)
  payload["version"] = 99
  torch.save(payload, path)
  with pytest.raises(DeserializationError):
    _bert().load_model(path)


def test_mismatched_parameters_raise_deserialization_error(tmp_path) -> None:
  path = tmp_path / "bert.bin"
  _bert().save_model(path)
  payload = load_checkpoint(path)
  payload["state_dict"].pop("embeddings.word_embeddings.weight")
  torch.save(payload, path)
  bert = _bert()
  network = bert.network
  with pytest.raises(DeserializationError):
    bert.load_model(path)
  assert bert.network is network


def test_save_overwrites_existing_checkpoint(tmp_path) -> None:
  path = tmp_path / "bert.bin"
  first = _bert().eval()
  second = _bert().eval()
  first.save_model(path)
  second.save_model(path)
  restored = _bert().eval()
  restored.load_model(path)
  input_ids = torch.randint(0, 60, (1, 6))
  assert torch.equal(restored(input_ids), second(input_ids))
  assert [p.name for p in tmp_path.iterdir()] == ["bert.bin"]


def test_failed_save_keeps_existing_checkpoint(tmp_path, monkeypatch) -> None:
  path = tmp_path / "bert.bin"
  _bert().save_model(path)
  original = path.read_bytes()

  def broken_replace(src, dst):
    raise OSError("disk full")

  monkeypatch.setattr(os, "replace", broken_replace)
  with pytest.raises(ModelWriteError):
    _bert().save_model(path)
  assert path.read_bytes() == original
  assert [p.name for p in tmp_path.iterdir()] == ["bert.bin"]


def test_unwritable_path_raises_model_write_error(tmp_path) -> None:
  blocker = tmp_path / "file"
  blocker.write_text("not a directory")
  with pytest.raises(ModelWriteError):
    _bert().save_model(blocker / "bert.bin")


def test_checkpoint_helpers_stamp_format(tmp_path) -> None:
  path = save_checkpoint(tmp_path / "ckpt.bin", {"config": {}, "output_layer": "x", "state_dict": {}})
  payload = load_checkpoint(path)
  assert payload["format"] == "bertstack"
  assert payload["version"] == 1


@pytest.mark.parametrize(
  "field, value",
  [
    ("output_layer_kwargs", {"bogus": 1}),
    ("output_layer_kwargs", {"num_labels": -3}),
    ("output_layer_kwargs", ["num_labels", 3]),
    ("output_layer", ["SequenceClassificationHead"]),
  ],
)
def test_malformed_output_layer_raises_deserialization_error(tmp_path, field, value) -> None:
  path = tmp_path / "bert.bin"
  _bert(output_layer=SequenceClassificationHead).save_model(path)
  payload = load_checkpoint(path)
  payload[field] = value
  torch.save(payload, path)

  restored = BERT()
  with pytest.raises(DeserializationError):
    restored.load_model(path)
  assert restored.state is ModelState.UNBUILT


def test_full_disk_during_save_raises_model_write_error(tmp_path, monkeypatch) -> None:
  path = tmp_path / "bert.bin"
  _bert().save_model(path)
  original = path.read_bytes()

  def full_disk_save(obj, f):
    raise RuntimeError("[enforce fail at inline_container.cc:672] . unexpected pos")

  monkeypatch.setattr(torch, "save", full_disk_save)
  with pytest.raises(ModelWriteError):
    _bert().save_model(path)
  assert path.read_bytes() == original
  assert [p.name for p in tmp_path.iterdir()] == ["bert.bin"]
