"""Unit tests for the transformer encoder layer."""

import torch

from bertstack.masks import MaskProvider
from bertstack.transformer_encoder_layer import TransformerEncoderLayer


def test_transformer_encoder_layer_shape(small_config) -> None:
  layer = TransformerEncoderLayer(small_config)
  layer.eval()
  batch_size, seq_len = 3, 7
  hidden_states = torch.randn(batch_size, seq_len, small_config.d_model)
  output, attn_probs = layer(hidden_states)
  assert output.shape == (batch_size, seq_len, small_config.d_model)
  assert attn_probs.shape == (batch_size, small_config.num_heads, seq_len, seq_len)


def test_layer_reads_shared_masks(small_config) -> None:
  seq_len = small_config.src_seq_len
  masks = MaskProvider(seq_len, key_padding_mask=torch.arange(seq_len) >= 4)
  layer = TransformerEncoderLayer(small_config, masks)
  layer.eval()
  assert layer.masks is masks
  _, attn_probs = layer(torch.randn(2, seq_len, small_config.d_model))
  assert torch.all(attn_probs[..., 4:] == 0)


def test_layer_is_stateless_between_calls(small_config) -> None:
  layer = TransformerEncoderLayer(small_config)
  layer.eval()
  hidden_states = torch.randn(1, small_config.src_seq_len, small_config.d_model)
  first, _ = layer(hidden_states)
  layer(torch.randn_like(hidden_states))
  second, _ = layer(hidden_states)
  assert torch.equal(first, second)
