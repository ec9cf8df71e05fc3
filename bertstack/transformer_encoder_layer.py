"""Transformer encoder layer used in the BERT encoder stack.

The :class:`TransformerEncoderLayer` encapsulates a single transformer
block: multi‑head self‑attention followed by a position‑wise feed‑forward
network.  Each sub‑layer output passes through dropout, is added back to
its input and normalised.  The layer reads its masks from the shared
:class:`~bertstack.masks.MaskProvider` on every call and keeps no state
between calls.
"""

from __future__ import annotations

from typing import Optional, Tuple

import torch
from torch import nn
import torch.nn.functional as F

from .config import BertConfig
from .masks import MaskProvider
from .multi_head_attention import MultiHeadSelfAttention


class TransformerEncoderLayer(nn.Module):
  """Single transformer encoder layer.

  Parameters
  ----------
  config:
      Configuration containing model hyper‑parameters.
  masks:
      Provider shared with every other layer of the stack.  The layer
      keeps a reference to it and never copies or modifies the masks.
  """

  def __init__(self, config: BertConfig, masks: Optional[MaskProvider] = None) -> None:
    super().__init__()
    self.masks = masks if masks is not None else MaskProvider(config.src_seq_len)

    self.attention = MultiHeadSelfAttention(config)
    self.dropout1 = nn.Dropout(config.dropout)
    self.norm1 = nn.LayerNorm(config.d_model, eps=config.layer_norm_eps)

    # Feed‑forward network
    self.intermediate = nn.Linear(config.d_model, config.dim_ffn)
    self.intermediate_act_fn = F.gelu
    self.output = nn.Linear(config.dim_ffn, config.d_model)
    self.dropout2 = nn.Dropout(config.dropout)
    self.norm2 = nn.LayerNorm(config.d_model, eps=config.layer_norm_eps)

  def forward(self, hidden_states: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Apply the transformer layer to the hidden states.

    Parameters
    ----------
    hidden_states:
        Tensor of shape ``(batch_size, seq_len, d_model)``.

    Returns
    -------
    Tuple[torch.Tensor, torch.Tensor]
        ``(hidden_states, attention_probs)``; the first element has the
        same shape as the input.
    """
    attention_bias = self.masks.combined_bias(hidden_states.dtype, hidden_states.device)

    # Self‑attention with residual connection and layer norm
    attn_output, attn_probs = self.attention(hidden_states, attention_bias)
    hidden_states = hidden_states + self.dropout1(attn_output)
    hidden_states = self.norm1(hidden_states)

    # Feed‑forward network
    intermediate_output = self.intermediate_act_fn(self.intermediate(hidden_states))
    layer_output = self.output(intermediate_output)
    hidden_states = hidden_states + self.dropout2(layer_output)
    hidden_states = self.norm2(hidden_states)
    return hidden_states, attn_probs
