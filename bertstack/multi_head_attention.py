"""Multi‑head self‑attention for the BERT encoder.

This module contains the :class:`MultiHeadSelfAttention` class, which
projects the input into ``num_heads`` query/key/value subspaces, computes
scaled dot‑product attention under an additive mask bias and recombines
the heads with a final output projection.  Rows whose keys are all
masked out produce zero attention weights instead of NaN.
"""

from __future__ import annotations

import math
from typing import Optional, Tuple

import torch
from torch import nn
import torch.nn.functional as F

from .config import BertConfig


class MultiHeadSelfAttention(nn.Module):
  """Multi‑head self‑attention layer.

  Parameters
  ----------
  config:
      Instance of :class:`BertConfig` specifying model sizes.
  """

  def __init__(self, config: BertConfig) -> None:
    super().__init__()
    self.num_heads = config.num_heads
    self.d_model = config.d_model
    self.head_dim = config.head_dim
    self.scale = 1.0 / math.sqrt(self.head_dim)

    # Each projection maps d_model -> d_model and is split into heads
    # in the forward pass.
    self.query = nn.Linear(self.d_model, self.d_model)
    self.key = nn.Linear(self.d_model, self.d_model)
    self.value = nn.Linear(self.d_model, self.d_model)
    self.out_proj = nn.Linear(self.d_model, self.d_model)

    self.dropout = nn.Dropout(config.dropout)

  def transpose_for_scores(self, x: torch.Tensor) -> torch.Tensor:
    """Reshape ``(batch, seq, d_model)`` to ``(batch, heads, seq, head_dim)``."""
    new_shape = x.size()[:-1] + (self.num_heads, self.head_dim)
    x = x.view(*new_shape)
    return x.permute(0, 2, 1, 3)

  def forward(
    self,
    hidden_states: torch.Tensor,
    attention_bias: Optional[torch.Tensor] = None,
  ) -> Tuple[torch.Tensor, torch.Tensor]:
    """Compute self‑attention over the input.

    Parameters
    ----------
    hidden_states:
        Tensor of shape ``(batch_size, seq_len, d_model)``.
    attention_bias:
        Optional additive bias broadcastable to
        ``(batch_size, num_heads, seq_len, seq_len)``, as produced by
        :meth:`bertstack.masks.MaskProvider.combined_bias`.  ``-inf``
        entries block the corresponding key.

    Returns
    -------
    Tuple[torch.Tensor, torch.Tensor]
        ``(attention_output, attention_probs)`` with shapes
        ``(batch_size, seq_len, d_model)`` and
        ``(batch_size, num_heads, seq_len, seq_len)``.
    """
    query_layer = self.transpose_for_scores(self.query(hidden_states))
    key_layer = self.transpose_for_scores(self.key(hidden_states))
    value_layer = self.transpose_for_scores(self.value(hidden_states))

    # (batch, heads, seq, head_dim) x (batch, heads, head_dim, seq) -> (batch, heads, seq, seq)
    attention_scores = torch.matmul(query_layer, key_layer.transpose(-1, -2)) * self.scale

    blocked_rows = None
    if attention_bias is not None:
      attention_scores = attention_scores + attention_bias
      # A row with every key at -inf would softmax to NaN.
      blocked_rows = torch.isneginf(attention_scores).all(dim=-1, keepdim=True)
      attention_scores = attention_scores.masked_fill(blocked_rows, 0.0)

    attention_probs = F.softmax(attention_scores, dim=-1)
    if blocked_rows is not None:
      attention_probs = attention_probs.masked_fill(blocked_rows, 0.0)
    attention_probs = self.dropout(attention_probs)

    context_layer = torch.matmul(attention_probs, value_layer)
    # Concatenate heads and project
    context_layer = context_layer.permute(0, 2, 1, 3).contiguous()
    new_context_shape = context_layer.size()[:-2] + (self.d_model,)
    context_layer = context_layer.view(*new_context_shape)
    attention_output = self.out_proj(context_layer)
    return attention_output, attention_probs
