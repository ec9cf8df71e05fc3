"""Unit tests for the helper functions."""

import pytest
import torch

from bertstack.bert_model import BERT
from bertstack.exceptions import InvalidConfigurationError
from bertstack.utils import (
  causal_attention_mask,
  load_pretrained_encoder,
  padding_mask_from_ids,
  rename_state_dict_keys,
)


def _hf_like_state_dict(num_layers: int, d_model: int, dim_ffn: int, vocab: int, max_pos: int):
  state = {
    "bert.embeddings.word_embeddings.weight": torch.randn(vocab, d_model),
    "bert.embeddings.position_embeddings.weight": torch.randn(max_pos, d_model),
    "bert.embeddings.token_type_embeddings.weight": torch.randn(2, d_model),
    "bert.embeddings.LayerNorm.gamma": torch.randn(d_model),
    "bert.embeddings.LayerNorm.beta": torch.randn(d_model),
    "bert.embeddings.position_ids": torch.arange(max_pos).unsqueeze(0),
    "bert.pooler.dense.weight": torch.randn(d_model, d_model),
    "bert.pooler.dense.bias": torch.randn(d_model),
    "cls.seq_relationship.weight": torch.randn(2, d_model),
  }
  shapes = {
    "attention.self.query": (d_model, d_model),
    "attention.self.key": (d_model, d_model),
    "attention.self.value": (d_model, d_model),
    "attention.output.dense": (d_model, d_model),
    "intermediate.dense": (dim_ffn, d_model),
    "output.dense": (d_model, dim_ffn),
  }
  for idx in range(num_layers):
    prefix = f"bert.encoder.layer.{idx}."
    for name, shape in shapes.items():
      state[f"{prefix}{name}.weight"] = torch.randn(*shape)
      state[f"{prefix}{name}.bias"] = torch.randn(shape[0])
    for norm in ("attention.output.LayerNorm", "output.LayerNorm"):
      state[f"{prefix}{norm}.weight"] = torch.randn(d_model)
      state[f"{prefix}{norm}.bias"] = torch.randn(d_model)
  return state


def test_masks_helpers() -> None:
  assert torch.equal(
    padding_mask_from_ids(torch.tensor([[3, 0, 0]])), torch.tensor([[False, True, True]])
  )
  mask = causal_attention_mask(3)
  assert mask.dtype == torch.bool
  assert torch.equal(mask, torch.tensor([[False, True, True], [False, False, True], [False, False, False]]))


def test_rename_folds_segment_embeddings_into_positions() -> None:
  state = _hf_like_state_dict(1, 8, 16, 20, 12)
  renamed = rename_state_dict_keys(state, src_seq_len=5)
  expected = state["bert.embeddings.position_embeddings.weight"][:5] + state[
    "bert.embeddings.token_type_embeddings.weight"
  ][0]
  assert torch.equal(renamed["embeddings.position_embeddings.weight"], expected)
  assert "embeddings.layer_norm.weight" in renamed
  assert "encoder.layers.0.attention.out_proj.weight" in renamed
  assert "encoder.layers.0.norm2.bias" in renamed
  assert "output_layer.pooler.weight" in renamed
  assert not any(key.startswith("cls.") for key in renamed)


def test_load_pretrained_encoder_fills_the_stack() -> None:
  bert = BERT(
    src_vocab_size=20, src_seq_len=5, num_encoder_layers=2, d_model=8, num_heads=2,
    dim_ffn=16, dropout=0.0,
  )
  state = _hf_like_state_dict(2, 8, 16, 20, 12)
  missing, unexpected = load_pretrained_encoder(bert, state)
  # The default output layer has no pretrained counterpart; nor does it pool.
  assert set(missing) == {"output_layer.decoder.weight", "output_layer.decoder.bias"}
  assert unexpected == ["output_layer.pooler.bias", "output_layer.pooler.weight"]
  assert torch.equal(
    bert.network.encoder.layers[1].intermediate.weight,
    state["bert.encoder.layer.1.intermediate.dense.weight"],
  )


def test_load_pretrained_encoder_requires_learned_positions() -> None:
  bert = BERT(
    src_vocab_size=20, src_seq_len=5, num_encoder_layers=1, d_model=8, num_heads=2,
    positional_encoding="sinusoidal",
  )
  with pytest.raises(InvalidConfigurationError):
    load_pretrained_encoder(bert, _hf_like_state_dict(1, 8, 32, 20, 12))
